"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..contracts import (
    ActionResult,
    Execution,
    ExecutionStatus,
    FiringKey,
    Workflow,
    WorkflowFilter,
)
from ..errors import ExecutionAlreadyCompletedError
from .repository import WorkflowRepository

_STAT_COLUMNS = "total_runs, succeeded, failed, partial, avg_duration_ms, last_run_at"


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text so ISO strings compare in time order.
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    else:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _status_increments(status: ExecutionStatus) -> tuple[int, int, int]:
    """Return (succeeded, failed, partial) counter increments.

    Every run that did not succeed counts as failed; ``partial`` breaks those
    down further.
    """
    if status == ExecutionStatus.SUCCEEDED:
        return 1, 0, 0
    if status == ExecutionStatus.PARTIAL:
        return 0, 1, 1
    return 0, 1, 0


def workflow_document(workflow: Workflow) -> dict[str, Any]:
    """Serialized workflow without the columns maintained by stats updates."""
    return workflow.model_dump(mode="json", by_alias=True, exclude={"stats", "last_run_at"})


def workflow_from_row(document: dict[str, Any], row: Any) -> Workflow:
    last_run_at = row["last_run_at"]
    if isinstance(last_run_at, str):
        last_run_at = _parse_ts(last_run_at)
    return Workflow.model_validate(
        {
            **document,
            "stats": {
                "totalRuns": row["total_runs"],
                "succeeded": row["succeeded"],
                "failed": row["failed"],
                "partial": row["partial"],
                "avgDurationMs": row["avg_duration_ms"],
            },
            "lastRunAt": last_run_at,
        }
    )


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows, executions, ledger entries and locks using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._guard = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                archived_at TEXT,
                document TEXT NOT NULL,
                total_runs INTEGER NOT NULL DEFAULT 0,
                succeeded INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                partial INTEGER NOT NULL DEFAULT 0,
                avg_duration_ms REAL NOT NULL DEFAULT 0,
                last_run_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                trigger_kind TEXT NOT NULL,
                triggered_by TEXT NOT NULL,
                entity_id TEXT,
                context TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                duration_ms INTEGER,
                error TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS executions_by_workflow ON executions (workflow_id, started_at)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_actions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                idx INTEGER NOT NULL,
                action_type TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL,
                error_kind TEXT,
                last_error TEXT,
                output TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS firing_ledger (
                workflow_id TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                window_key TEXT NOT NULL,
                fired_at TEXT NOT NULL,
                PRIMARY KEY (workflow_id, entity_id, window_key)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_locks (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        stats = workflow.stats
        await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO workflows (id, owner, status, trigger_type, archived_at, document, {_STAT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner = excluded.owner,
                status = excluded.status,
                trigger_type = excluded.trigger_type,
                archived_at = excluded.archived_at,
                document = excluded.document
            """,
            workflow.id,
            workflow.owner,
            workflow.status.value,
            workflow.trigger.type,
            _ts(workflow.archived_at),
            _dumps(workflow_document(workflow)),
            stats.total_runs,
            stats.succeeded,
            stats.failed,
            stats.partial,
            stats.avg_duration_ms,
            _ts(workflow.last_run_at),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT document, {_STAT_COLUMNS} FROM workflows WHERE id = ?",
            workflow_id,
        )
        if not row:
            return None
        return workflow_from_row(json.loads(row["document"]), row)

    async def list_workflows(
        self, workflow_filter: WorkflowFilter | None = None
    ) -> list[Workflow]:
        workflow_filter = workflow_filter or WorkflowFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_filter.status is not None:
            clauses.append("status = ?")
            params.append(workflow_filter.status.value)
        if workflow_filter.owner is not None:
            clauses.append("owner = ?")
            params.append(workflow_filter.owner)
        if workflow_filter.trigger_type is not None:
            clauses.append("trigger_type = ?")
            params.append(workflow_filter.trigger_type)
        if not workflow_filter.include_archived:
            clauses.append("archived_at IS NULL")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT document, {_STAT_COLUMNS} FROM workflows{where} ORDER BY rowid",
            *params,
        )
        workflows = [workflow_from_row(json.loads(r["document"]), r) for r in rows]
        # template flags live only in the document
        return [wf for wf in workflows if workflow_filter.accepts(wf)]

    async def update_workflow_stats(
        self,
        workflow_id: str,
        status: ExecutionStatus,
        duration_ms: int,
        completed_at: datetime,
    ) -> None:
        succeeded, failed, partial = _status_increments(status)
        # SQLite evaluates every SET expression against the pre-update row.
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows SET
                total_runs = total_runs + 1,
                succeeded = succeeded + ?,
                failed = failed + ?,
                partial = partial + ?,
                avg_duration_ms = avg_duration_ms + (? - avg_duration_ms) / (total_runs + 1),
                last_run_at = ?
            WHERE id = ?
            """,
            succeeded,
            failed,
            partial,
            float(duration_ms),
            _ts(completed_at),
            workflow_id,
        )

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO executions
                (id, workflow_id, trigger_kind, triggered_by, entity_id, context, status, started_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            execution.id,
            execution.workflow_id,
            execution.trigger_kind,
            execution.triggered_by,
            execution.entity_id,
            _dumps(execution.context_snapshot),
            execution.status.value,
            _ts(execution.started_at),
        )

    async def append_action_result(
        self, execution_id: str, result: ActionResult
    ) -> None:
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO execution_actions
                (execution_id, idx, action_type, status, attempts, error_kind, last_error, output)
            SELECT ?, ?, ?, ?, ?, ?, ?, ?
            WHERE EXISTS (SELECT 1 FROM executions WHERE id = ? AND completed_at IS NULL)
            """,
            execution_id,
            result.index,
            result.action_type,
            result.status.value,
            result.attempts,
            result.error_kind.value if result.error_kind else None,
            result.last_error,
            _dumps(result.model_dump(mode="json")["output"]),
            execution_id,
        )
        if not inserted and await self.get_execution(execution_id) is not None:
            raise ExecutionAlreadyCompletedError(execution_id)

    async def complete_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        completed_at: datetime,
        duration_ms: int,
        error: str | None = None,
    ) -> Execution:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE executions SET status = ?, completed_at = ?, duration_ms = ?, error = ?
            WHERE id = ? AND completed_at IS NULL
            """,
            status.value,
            _ts(completed_at),
            duration_ms,
            error,
            execution_id,
        )
        execution = await self.get_execution(execution_id)
        if execution is None:
            raise KeyError(execution_id)
        if not updated:
            raise ExecutionAlreadyCompletedError(execution_id)
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM executions WHERE id = ?", execution_id
        )
        if not row:
            return None
        return await self._hydrate(row)

    async def list_executions(
        self, workflow_id: str, limit: int | None = None
    ) -> list[Execution]:
        query = "SELECT * FROM executions WHERE workflow_id = ? ORDER BY started_at DESC, rowid DESC"
        params: list[Any] = [workflow_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [await self._hydrate(r) for r in rows]

    async def _hydrate(self, row: sqlite3.Row) -> Execution:
        action_rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM execution_actions WHERE execution_id = ? ORDER BY id",
            row["id"],
        )
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            trigger_kind=row["trigger_kind"],
            triggered_by=row["triggered_by"],
            entity_id=row["entity_id"],
            context_snapshot=json.loads(row["context"]),
            status=row["status"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            duration_ms=row["duration_ms"],
            error=row["error"],
            per_action=[
                ActionResult(
                    index=a["idx"],
                    action_type=a["action_type"],
                    status=a["status"],
                    attempts=a["attempts"],
                    error_kind=a["error_kind"],
                    last_error=a["last_error"],
                    output=json.loads(a["output"]) if a["output"] else None,
                )
                for a in action_rows
            ],
        )

    # ------------------------------------------------------------------
    # Firing ledger and locks
    async def record_firing(self, key: FiringKey, fired_at: datetime) -> bool:
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO firing_ledger (workflow_id, entity_id, window_key, fired_at)
            VALUES (?, ?, ?, ?)
            """,
            key.workflow_id,
            key.entity_id,
            key.window_key,
            _ts(fired_at),
        )
        return inserted == 1

    async def has_fired(self, key: FiringKey) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 FROM firing_ledger WHERE workflow_id = ? AND entity_id = ? AND window_key = ?",
            key.workflow_id,
            key.entity_id,
            key.window_key,
        )
        return row is not None

    async def acquire_lock(
        self, name: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        acquired = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_locks (name, owner, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                owner = excluded.owner,
                expires_at = excluded.expires_at
            WHERE workflow_locks.owner = excluded.owner OR workflow_locks.expires_at <= ?
            """,
            name,
            owner,
            _ts(now + timedelta(seconds=ttl_seconds)),
            _ts(now),
        )
        return acquired == 1

    async def release_lock(self, name: str, owner: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflow_locks WHERE name = ? AND owner = ?",
            name,
            owner,
        )
