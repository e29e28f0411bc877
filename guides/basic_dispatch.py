"""Simple example showing a purchase order going through the stage queues."""

import asyncio

from poflow import Collaborators, PoflowConfig, build_runtime
from poflow.collaborators import AggregateSummary, AggregateUpsert, ExtractionResult, SyncAck


class StaticExtractor:
    """Pretends every document is the same one-line purchase order."""

    async def extract(self, document, workflow_id, options):
        return ExtractionResult(
            fields={
                "supplier": "Acme Office Supply",
                "currency": "usd",
                "line_items": [
                    {"sku": "A-1", "description": "Copy paper", "quantity": 10, "unit_price": 2.5}
                ],
                "totals": {"subtotal": 25.0, "tax": 2.5, "total": 27.5},
            },
            confidence_score=0.95,
            model_used="static",
        )


class DictAggregates:
    def __init__(self):
        self.orders = {}

    async def upsert_aggregate(self, workflow_id, fields):
        self.orders[workflow_id] = fields
        return AggregateUpsert(
            aggregate_id=f"po_{workflow_id}", child_record_count=len(fields["line_items"])
        )

    async def describe(self, workflow_id):
        fields = self.orders.get(workflow_id)
        if fields is None:
            return None
        return AggregateSummary(
            aggregate_id=f"po_{workflow_id}",
            child_record_count=len(fields["line_items"]),
            confidence_score=0.95,
        )


class PrintingSync:
    async def push(self, aggregate_id):
        print(f"📤 Pushed {aggregate_id} to the commerce platform")
        return SyncAck(external_id=f"ext-{aggregate_id}")


async def main():
    """Basic workflow dispatch example."""
    aggregates = DictAggregates()
    runtime = build_runtime(
        PoflowConfig(),
        collaborators=Collaborators(
            extraction=StaticExtractor(), aggregates=aggregates, sync=PrintingSync()
        ),
    )

    async with runtime:
        workflow_id = await runtime.dispatcher.submit(
            "merchant-123", document=b"%PDF-1.7 ...", file_name="po-1001.pdf"
        )
        print(f"✅ Workflow dispatched: {workflow_id}")

        # Consume every stage queue until nothing is left
        await runtime.queued.run_until_idle()

        workflow = await runtime.repository.get_workflow(workflow_id)
        print(f"📋 Status: {workflow.status.value} ({workflow.progress_percent}%)")
        for stage in workflow.stages:
            print(f"🔗 {stage.stage_name}: {stage.status.value}")
        print(f"🧾 Stored order: {aggregates.orders[workflow_id]}")


if __name__ == "__main__":
    asyncio.run(main())
