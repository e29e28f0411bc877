"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

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

_TIMESTAMP_COLUMNS = {"created_at", "started_at", "updated_at", "completed_at"}


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so text comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _to_db(column: str, value: Any) -> Any:
    if column in _TIMESTAMP_COLUMNS:
        return _ts(value)
    if column == "metadata":
        return json.dumps(value or {})
    if column == "status" and value is not None:
        return getattr(value, "value", value)
    return value


def _from_db(row: sqlite3.Row, columns: tuple[str, ...]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for column in columns:
        value = row[column]
        if column in _TIMESTAMP_COLUMNS and value is not None:
            value = datetime.fromisoformat(value)
        elif column == "metadata":
            value = json.loads(value) if value else {}
        data[column] = value
    return data


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
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
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                started_at TEXT,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS workflows_status_updated_idx ON workflows (status, updated_at)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stage_records (
                workflow_id TEXT NOT NULL,
                stage_name TEXT NOT NULL,
                stage_order INTEGER NOT NULL,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                completed_at TEXT,
                duration_ms REAL,
                error_message TEXT,
                PRIMARY KEY (workflow_id, stage_name)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _load_stages(self, workflow_id: str) -> list[StageRecord]:
        rows = self._fetchall(
            f"SELECT {', '.join(_STAGE_COLUMNS)} FROM stage_records WHERE workflow_id = ? ORDER BY stage_order",
            workflow_id,
        )
        return [StageRecord.model_validate(_from_db(r, _STAGE_COLUMNS)) for r in rows]

    def _select_workflows(self, where: str, *params: Any) -> list[WorkflowRecord]:
        rows = self._fetchall(
            f"SELECT {', '.join(_WORKFLOW_COLUMNS)} FROM workflows {where}", *params
        )
        return [WorkflowRecord.model_validate(_from_db(r, _WORKFLOW_COLUMNS)) for r in rows]

    def _upsert_stage(
        self,
        workflow_id: str,
        stage_name: str,
        patch: dict[str, Any],
        guard: str = "1",
        guard_params: tuple[Any, ...] = (),
    ) -> int:
        columns = ["workflow_id", "stage_name"] + list(patch)
        values = [workflow_id, stage_name] + [_to_db(c, v) for c, v in patch.items()]
        if "stage_order" not in patch:
            columns.append("stage_order")
            values.append(0)
        if "status" not in patch:
            columns.append("status")
            values.append("pending")
        updates = ", ".join(f"{c} = excluded.{c}" for c in patch) or "workflow_id = excluded.workflow_id"
        # INSERT ... SELECT keeps the guard and the write in one statement
        return self._execute(
            f"""
            INSERT INTO stage_records ({', '.join(columns)})
            SELECT {', '.join('?' for _ in columns)} WHERE {guard}
            ON CONFLICT (workflow_id, stage_name) DO UPDATE SET {updates}
            """,
            *values,
            *guard_params,
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(self, workflow: WorkflowRecord) -> str:
        data = workflow.model_dump(exclude={"stages"})
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflows ({', '.join(_WORKFLOW_COLUMNS)}) VALUES ({', '.join('?' for _ in _WORKFLOW_COLUMNS)})",
            *[_to_db(c, data[c]) for c in _WORKFLOW_COLUMNS],
        )
        for stage in workflow.stages:
            patch = stage.model_dump(exclude={"workflow_id", "stage_name"})
            await asyncio.to_thread(
                self._upsert_stage, workflow.workflow_id, stage.stage_name, patch
            )
        return workflow.workflow_id

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        rows = await asyncio.to_thread(
            self._select_workflows, "WHERE workflow_id = ?", workflow_id
        )
        if not rows:
            return None
        workflow = rows[0]
        workflow.stages = await asyncio.to_thread(self._load_stages, workflow_id)
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
        assignments = ", ".join(f"{c} = ?" for c in values)
        params = [_to_db(c, v) for c, v in values.items()]
        where = "workflow_id = ? AND status = ?"
        params += [workflow_id, WorkflowStatus(expected_status).value]
        if expected_stage is not UNSET:
            if expected_stage is None:
                where += " AND current_stage IS NULL"
            else:
                where += " AND current_stage = ?"
                params.append(expected_stage)
        rowcount = await asyncio.to_thread(
            self._execute, f"UPDATE workflows SET {assignments} WHERE {where}", *params
        )
        return rowcount == 1

    async def upsert_stage_record(
        self,
        workflow_id: str,
        stage_name: str,
        patch: dict[str, Any],
        expected_status: WorkflowStatus | str | None = None,
        expected_stage: Optional[str] = UNSET,
    ) -> bool:
        check_patch(patch, STAGE_PATCH_FIELDS)
        guard = "1"
        guard_params: list[Any] = []
        if expected_status is not None:
            guard = "EXISTS (SELECT 1 FROM workflows WHERE workflow_id = ? AND status = ?"
            guard_params = [workflow_id, WorkflowStatus(expected_status).value]
            if expected_stage is not UNSET:
                if expected_stage is None:
                    guard += " AND current_stage IS NULL"
                else:
                    guard += " AND current_stage = ?"
                    guard_params.append(expected_stage)
            guard += ")"
        rowcount = await asyncio.to_thread(
            self._upsert_stage, workflow_id, stage_name, patch, guard, tuple(guard_params)
        )
        return rowcount == 1

    async def list_stuck_workflows(
        self, status: WorkflowStatus | str, older_than: datetime, limit: int | None = None
    ) -> list[WorkflowRecord]:
        query = "WHERE status = ? AND updated_at < ? ORDER BY updated_at"
        params: list[Any] = [WorkflowStatus(status).value, _ts(older_than)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return await asyncio.to_thread(self._select_workflows, query, *params)

    async def list_workflows(
        self, status: WorkflowStatus | str | None = None, limit: int | None = None
    ) -> list[WorkflowRecord]:
        query = ""
        params: list[Any] = []
        if status is not None:
            query = "WHERE status = ?"
            params.append(WorkflowStatus(status).value)
        query += " ORDER BY created_at"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return await asyncio.to_thread(self._select_workflows, query, *params)
