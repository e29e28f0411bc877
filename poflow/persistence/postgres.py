"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from .models import (
    STAGE_PATCH_FIELDS,
    WORKFLOW_PATCH_FIELDS,
    StageRecord,
    WorkflowRecord,
    WorkflowStatus,
    check_patch,
    utcnow,
)
from .repository import UNSET, WorkflowRepository

_WORKFLOW_COLUMNS = (
    "workflow_id",
    "owner_id",
    "status",
    "current_stage",
    "stages_total",
    "stages_completed",
    "progress_percent",
    "retry_count",
    "reattempt_count",
    "error_message",
    "failed_stage",
    "aggregate_id",
    "document_name",
    "document_ref",
    "metadata",
    "created_at",
    "started_at",
    "updated_at",
    "completed_at",
)

_STAGE_COLUMNS = (
    "workflow_id",
    "stage_name",
    "stage_order",
    "status",
    "attempt",
    "started_at",
    "completed_at",
    "duration_ms",
    "error_message",
)


def _to_db(column: str, value: Any) -> Any:
    if column == "metadata":
        return json.dumps(value or {})
    if column == "status" and value is not None:
        return getattr(value, "value", value)
    return value


def _placeholder(column: str, index: int) -> str:
    return f"${index}::jsonb" if column == "metadata" else f"${index}"


def _workflow_from_row(row: asyncpg.Record) -> WorkflowRecord:
    data = dict(row)
    if isinstance(data.get("metadata"), str):
        data["metadata"] = json.loads(data["metadata"])
    return WorkflowRecord.model_validate(data)


def _rowcount(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1"
    try:
        return int(status.split()[-1])
    except (IndexError, ValueError):
        return 0


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT PRIMARY KEY,
                owner_id TEXT,
                status TEXT NOT NULL,
                current_stage TEXT,
                stages_total INTEGER NOT NULL DEFAULT 0,
                stages_completed INTEGER NOT NULL DEFAULT 0,
                progress_percent INTEGER NOT NULL DEFAULT 0,
                retry_count INTEGER NOT NULL DEFAULT 0,
                reattempt_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                failed_stage TEXT,
                aggregate_id TEXT,
                document_name TEXT,
                document_ref TEXT,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS workflows_status_updated_idx ON workflows (status, updated_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS stage_records (
                workflow_id TEXT NOT NULL REFERENCES workflows (workflow_id),
                stage_name TEXT NOT NULL,
                stage_order INTEGER NOT NULL,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                duration_ms DOUBLE PRECISION,
                error_message TEXT,
                PRIMARY KEY (workflow_id, stage_name)
            )
            """
        )

    async def _upsert_stage(
        self, conn: asyncpg.Connection, workflow_id: str, stage_name: str, patch: dict[str, Any]
    ) -> None:
        values: dict[str, Any] = {
            "workflow_id": workflow_id,
            "stage_name": stage_name,
            "stage_order": 0,
            "status": "pending",
        }
        values.update(patch)
        columns = list(values)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in patch) or "stage_name = EXCLUDED.stage_name"
        await conn.execute(
            f"""
            INSERT INTO stage_records ({', '.join(columns)}) VALUES ({placeholders})
            ON CONFLICT (workflow_id, stage_name) DO UPDATE SET {updates}
            """,
            *[_to_db(c, values[c]) for c in columns],
        )

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: WorkflowRecord) -> str:
        data = workflow.model_dump(exclude={"stages"})
        placeholders = ", ".join(
            _placeholder(c, i) for i, c in enumerate(_WORKFLOW_COLUMNS, start=1)
        )
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"INSERT INTO workflows ({', '.join(_WORKFLOW_COLUMNS)}) VALUES ({placeholders})",
                    *[_to_db(c, data[c]) for c in _WORKFLOW_COLUMNS],
                )
                for stage in workflow.stages:
                    patch = stage.model_dump(exclude={"workflow_id", "stage_name"})
                    await self._upsert_stage(conn, workflow.workflow_id, stage.stage_name, patch)
        finally:
            await conn.close()
        return workflow.workflow_id

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {', '.join(_WORKFLOW_COLUMNS)} FROM workflows WHERE workflow_id = $1",
                workflow_id,
            )
            if not row:
                return None
            stage_rows = await conn.fetch(
                f"SELECT {', '.join(_STAGE_COLUMNS)} FROM stage_records WHERE workflow_id = $1 ORDER BY stage_order",
                workflow_id,
            )
        finally:
            await conn.close()
        workflow = _workflow_from_row(row)
        workflow.stages = [StageRecord.model_validate(dict(r)) for r in stage_rows]
        return workflow

    async def update_workflow(
        self,
        workflow_id: str,
        patch: dict[str, Any],
        expected_status: WorkflowStatus | str,
        expected_stage: Optional[str] = UNSET,
    ) -> bool:
        check_patch(patch, WORKFLOW_PATCH_FIELDS)
        values = dict(patch)
        values["updated_at"] = utcnow()
        columns = list(values)
        assignments = ", ".join(
            f"{c} = {_placeholder(c, i)}" for i, c in enumerate(columns, start=1)
        )
        params = [_to_db(c, values[c]) for c in columns]
        params += [workflow_id, WorkflowStatus(expected_status).value]
        where = f"workflow_id = ${len(columns) + 1} AND status = ${len(columns) + 2}"
        if expected_stage is not UNSET:
            if expected_stage is None:
                where += " AND current_stage IS NULL"
            else:
                params.append(expected_stage)
                where += f" AND current_stage = ${len(params)}"
        conn = await self._connect()
        try:
            status = await conn.execute(
                f"UPDATE workflows SET {assignments} WHERE {where}", *params
            )
        finally:
            await conn.close()
        return _rowcount(status) == 1

    async def upsert_stage_record(
        self,
        workflow_id: str,
        stage_name: str,
        patch: dict[str, Any],
        expected_status: WorkflowStatus | str | None = None,
        expected_stage: Optional[str] = UNSET,
    ) -> bool:
        check_patch(patch, STAGE_PATCH_FIELDS)
        conn = await self._connect()
        try:
            async with conn.transaction():
                if expected_status is not None:
                    # the row lock holds off a concurrent status change until we commit
                    row = await conn.fetchrow(
                        "SELECT status, current_stage FROM workflows "
                        "WHERE workflow_id = $1 FOR UPDATE",
                        workflow_id,
                    )
                    if row is None or row["status"] != WorkflowStatus(expected_status).value:
                        return False
                    if expected_stage is not UNSET and row["current_stage"] != expected_stage:
                        return False
                await self._upsert_stage(conn, workflow_id, stage_name, patch)
        finally:
            await conn.close()
        return True

    async def list_stuck_workflows(
        self, status: WorkflowStatus | str, older_than: datetime, limit: int | None = None
    ) -> list[WorkflowRecord]:
        query = (
            f"SELECT {', '.join(_WORKFLOW_COLUMNS)} FROM workflows "
            "WHERE status = $1 AND updated_at < $2 ORDER BY updated_at"
        )
        params: list[Any] = [WorkflowStatus(status).value, older_than]
        if limit is not None:
            query += " LIMIT $3"
            params.append(limit)
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [_workflow_from_row(r) for r in rows]

    async def list_workflows(
        self, status: WorkflowStatus | str | None = None, limit: int | None = None
    ) -> list[WorkflowRecord]:
        query = f"SELECT {', '.join(_WORKFLOW_COLUMNS)} FROM workflows"
        params: list[Any] = []
        if status is not None:
            params.append(WorkflowStatus(status).value)
            query += " WHERE status = $1"
        query += " ORDER BY created_at"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [_workflow_from_row(r) for r in rows]
