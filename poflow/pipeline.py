"""Stage handlers of the purchase-order pipeline.

Handlers are plain coroutines taking a ``StageContext`` and returning a
``StageResult``. They know nothing about queues or persistence of workflow
state; the executors take care of that.
"""

from __future__ import annotations

import base64
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field

from .collaborators import Collaborators, ExtractionResult
from .constants import (
    DEFAULT_ACCEPTANCE_THRESHOLD,
    ENRICHMENT,
    EXTRACTION,
    NORMALIZATION,
    PERSISTENCE,
    STATUS_UPDATE,
    SYNC,
    UPLOAD_SLOT,
)
from .errors import FatalConfigurationError, ValidationError
from .persistence.models import WorkflowRecord, WorkflowStatus
from .stages import StageDefinition

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"


class StageContext(BaseModel):
    """Everything a handler may look at for one stage run."""

    workflow: WorkflowRecord
    stage: StageDefinition
    inputs: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1

    @property
    def workflow_id(self) -> str:
        return self.workflow.workflow_id

    @property
    def options(self) -> Dict[str, Any]:
        return dict(self.workflow.metadata.get("options") or {})

    def require(self, slot: str) -> Any:
        value = self.inputs.get(slot)
        if value is None:
            raise FatalConfigurationError(
                f"missing input '{slot}'", stage=self.stage.name
            )
        return value


class StageResult(BaseModel):
    """Outcome of a handler.

    ``output`` is published to the metadata store. ``workflow_updates`` are
    extra workflow columns to set and ``metadata_updates`` extra keys merged
    into the workflow's metadata, both applied with the stage transition.
    """

    output: Optional[Dict[str, Any]] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    workflow_updates: Dict[str, Any] = Field(default_factory=dict)
    metadata_updates: Dict[str, Any] = Field(default_factory=dict)


StageHandler = Callable[[StageContext], Awaitable[StageResult]]


def encode_upload(
    content: bytes, file_name: Optional[str] = None, mime_type: Optional[str] = None
) -> Dict[str, Any]:
    """Metadata store entry holding an uploaded document."""
    return {
        "content": base64.b64encode(content).decode("ascii"),
        "file_name": file_name,
        "mime_type": mime_type,
    }


def decode_upload(entry: Dict[str, Any]) -> bytes:
    try:
        return base64.b64decode(entry["content"])
    except (KeyError, TypeError, ValueError) as e:
        raise FatalConfigurationError(f"malformed upload entry: {e}") from e


_NUMBER_NOISE = re.compile(r"[^\d.\-]")


def to_number(value: Any) -> Optional[float]:
    """Coerce ``12``, ``"12.5"`` or ``"$1,200.00"`` to a float; ``None`` if blank."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = _NUMBER_NOISE.sub("", str(value))
    if text in ("", "-", "."):
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_line(raw: Dict[str, Any], index: int) -> Optional[Dict[str, Any]]:
    sku = _clean_text(raw.get("sku"))
    description = _clean_text(raw.get("description"))
    quantity = to_number(raw.get("quantity"))
    unit_price = to_number(raw.get("unit_price"))
    total = to_number(raw.get("total"))

    if sku is None and description is None:
        return None
    if quantity is None:
        quantity = 1.0
    if unit_price is None and total is not None and quantity:
        unit_price = round(total / quantity, 4)
    if unit_price is None:
        raise ValidationError(f"line {index + 1} has no price", stage=NORMALIZATION)
    if total is None:
        total = round(quantity * unit_price, 2)

    return {
        "sku": sku,
        "description": description,
        "quantity": quantity,
        "unit_price": unit_price,
        "total": total,
    }


def normalize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Clean extracted purchase-order fields and check that they add up."""
    raw_lines = fields.get("line_items") or []
    lines = [
        line
        for index, raw in enumerate(raw_lines)
        if isinstance(raw, dict)
        for line in [_normalize_line(raw, index)]
        if line is not None
    ]
    if not lines:
        raise ValidationError("no line items extracted", stage=NORMALIZATION)

    raw_totals = fields.get("totals") or {}
    line_sum = round(sum(line["total"] for line in lines), 2)
    subtotal = to_number(raw_totals.get("subtotal"))
    if subtotal is not None:
        tolerance = max(0.01, 0.01 * len(lines))
        if abs(subtotal - line_sum) > tolerance:
            raise ValidationError(
                f"line totals {line_sum:.2f} do not match subtotal {subtotal:.2f}",
                stage=NORMALIZATION,
            )
    else:
        subtotal = line_sum
    tax = to_number(raw_totals.get("tax"))
    total = to_number(raw_totals.get("total"))
    if total is None:
        total = round(subtotal + (tax or 0.0), 2)

    currency = _clean_text(fields.get("currency"))
    return {
        "supplier": _clean_text(fields.get("supplier")),
        "po_number": _clean_text(fields.get("po_number")),
        "currency": currency.upper() if currency else DEFAULT_CURRENCY,
        "line_items": lines,
        "totals": {"subtotal": subtotal, "tax": tax, "total": total},
    }


class PurchaseOrderPipeline:
    """Handlers for every stage of the default sequence."""

    def __init__(
        self,
        collaborators: Collaborators,
        acceptance_threshold: float = DEFAULT_ACCEPTANCE_THRESHOLD,
    ) -> None:
        self.collaborators = collaborators
        self.acceptance_threshold = acceptance_threshold
        self._handlers: Dict[str, StageHandler] = {
            EXTRACTION: self.extract,
            NORMALIZATION: self.normalize,
            PERSISTENCE: self.persist,
            ENRICHMENT: self.enrich,
            SYNC: self.sync,
            STATUS_UPDATE: self.update_status,
        }

    def handler_for(self, stage_name: str) -> StageHandler:
        try:
            return self._handlers[stage_name]
        except KeyError:
            raise FatalConfigurationError(
                f"no handler registered for stage '{stage_name}'", stage=stage_name
            ) from None

    async def run(self, context: StageContext) -> StageResult:
        return await self.handler_for(context.stage.name)(context)

    async def _load_document(self, context: StageContext) -> bytes:
        upload = context.inputs.get(UPLOAD_SLOT)
        if upload:
            return decode_upload(upload)
        document_ref = context.workflow.document_ref
        storage = self.collaborators.storage
        if document_ref and storage is not None:
            logger.info(
                f"Upload for workflow_id={context.workflow_id} expired, "
                f"downloading {document_ref}"
            )
            return await storage.download(document_ref)
        raise FatalConfigurationError("uploaded document not available", stage=EXTRACTION)

    async def extract(self, context: StageContext) -> StageResult:
        document = await self._load_document(context)
        service = self.collaborators.require("extraction")
        result = await service.extract(document, context.workflow_id, context.options)
        if not isinstance(result, ExtractionResult):
            result = ExtractionResult.model_validate(result)
        if result.confidence_score is None:
            raise ValidationError("extraction returned no confidence score", stage=EXTRACTION)
        return StageResult(output=result.model_dump())

    async def normalize(self, context: StageContext) -> StageResult:
        extraction = context.require(EXTRACTION)
        return StageResult(output=normalize_fields(extraction.get("fields") or {}))

    async def persist(self, context: StageContext) -> StageResult:
        normalized = context.require(NORMALIZATION)
        store = self.collaborators.require("aggregates")
        upsert = await store.upsert_aggregate(context.workflow_id, normalized)
        return StageResult(
            output=upsert.model_dump(),
            workflow_updates={"aggregate_id": upsert.aggregate_id},
        )

    async def enrich(self, context: StageContext) -> StageResult:
        enricher = self.collaborators.enrichment
        if enricher is None:
            return StageResult(skipped=True, skip_reason="no enricher configured")
        normalized = context.require(NORMALIZATION)
        persisted = context.require(PERSISTENCE)
        attributes = await enricher.enrich(persisted["aggregate_id"], normalized)
        return StageResult(output={"attributes": dict(attributes or {})})

    async def sync(self, context: StageContext) -> StageResult:
        if context.options.get("sync", True) is False:
            return StageResult(skipped=True, skip_reason="sync disabled for workflow")
        persisted = context.require(PERSISTENCE)
        service = self.collaborators.require("sync")
        ack = await service.push(persisted["aggregate_id"])
        return StageResult(output=ack.model_dump())

    async def update_status(self, context: StageContext) -> StageResult:
        extraction = context.require(EXTRACTION)
        persisted = context.require(PERSISTENCE)
        confidence = extraction.get("confidence_score") or 0.0
        outcome = (
            WorkflowStatus.COMPLETED
            if confidence >= self.acceptance_threshold
            else WorkflowStatus.REVIEW_NEEDED
        )
        return StageResult(
            output={
                "outcome": outcome.value,
                "confidence_score": confidence,
                "aggregate_id": persisted["aggregate_id"],
            },
            metadata_updates={"outcome": outcome.value},
        )
