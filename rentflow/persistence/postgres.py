"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

import asyncpg

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
from .sqlite import _STAT_COLUMNS, _status_increments, workflow_document, workflow_from_row


def _encode_json(value: Any) -> str:
    return json.dumps(value, default=str)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflows, executions, ledger entries and locks using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=_encode_json, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                archived_at TIMESTAMPTZ,
                document JSONB NOT NULL,
                total_runs INTEGER NOT NULL DEFAULT 0,
                succeeded INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                partial INTEGER NOT NULL DEFAULT 0,
                avg_duration_ms DOUBLE PRECISION NOT NULL DEFAULT 0,
                last_run_at TIMESTAMPTZ,
                created_seq BIGSERIAL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                trigger_kind TEXT NOT NULL,
                triggered_by TEXT NOT NULL,
                entity_id TEXT,
                context JSONB NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                duration_ms INTEGER,
                error TEXT
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS executions_by_workflow ON executions (workflow_id, started_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_actions (
                id BIGSERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL,
                idx INTEGER NOT NULL,
                action_type TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL,
                error_kind TEXT,
                last_error TEXT,
                output JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS firing_ledger (
                workflow_id TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                window_key TEXT NOT NULL,
                fired_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (workflow_id, entity_id, window_key)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_locks (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        stats = workflow.stats
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO workflows (id, owner, status, trigger_type, archived_at, document, {_STAT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (id) DO UPDATE SET
                    owner = EXCLUDED.owner,
                    status = EXCLUDED.status,
                    trigger_type = EXCLUDED.trigger_type,
                    archived_at = EXCLUDED.archived_at,
                    document = EXCLUDED.document
                """,
                workflow.id,
                workflow.owner,
                workflow.status.value,
                workflow.trigger.type,
                workflow.archived_at,
                workflow_document(workflow),
                stats.total_runs,
                stats.succeeded,
                stats.failed,
                stats.partial,
                stats.avg_duration_ms,
                workflow.last_run_at,
            )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT document, {_STAT_COLUMNS} FROM workflows WHERE id = $1",
                workflow_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return workflow_from_row(row["document"], row)

    async def list_workflows(
        self, workflow_filter: WorkflowFilter | None = None
    ) -> list[Workflow]:
        workflow_filter = workflow_filter or WorkflowFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_filter.status is not None:
            params.append(workflow_filter.status.value)
            clauses.append(f"status = ${len(params)}")
        if workflow_filter.owner is not None:
            params.append(workflow_filter.owner)
            clauses.append(f"owner = ${len(params)}")
        if workflow_filter.trigger_type is not None:
            params.append(workflow_filter.trigger_type)
            clauses.append(f"trigger_type = ${len(params)}")
        if not workflow_filter.include_archived:
            clauses.append("archived_at IS NULL")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT document, {_STAT_COLUMNS} FROM workflows{where} ORDER BY created_seq",
                *params,
            )
        finally:
            await conn.close()
        workflows = [workflow_from_row(r["document"], r) for r in rows]
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
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE workflows SET
                    total_runs = total_runs + 1,
                    succeeded = succeeded + $1,
                    failed = failed + $2,
                    partial = partial + $3,
                    avg_duration_ms = avg_duration_ms + ($4 - avg_duration_ms) / (total_runs + 1),
                    last_run_at = $5
                WHERE id = $6
                """,
                succeeded,
                failed,
                partial,
                float(duration_ms),
                completed_at,
                workflow_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_execution(self, execution: Execution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO executions
                    (id, workflow_id, trigger_kind, triggered_by, entity_id, context, status, started_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                execution.id,
                execution.workflow_id,
                execution.trigger_kind,
                execution.triggered_by,
                execution.entity_id,
                execution.model_dump(mode="json")["context_snapshot"],
                execution.status.value,
                execution.started_at,
            )
        finally:
            await conn.close()

    async def append_action_result(
        self, execution_id: str, result: ActionResult
    ) -> None:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                INSERT INTO execution_actions
                    (execution_id, idx, action_type, status, attempts, error_kind, last_error, output)
                SELECT $1::text, $2::int, $3::text, $4::text, $5::int, $6::text, $7::text, $8::jsonb
                WHERE EXISTS (SELECT 1 FROM executions WHERE id = $1::text AND completed_at IS NULL)
                """,
                execution_id,
                result.index,
                result.action_type,
                result.status.value,
                result.attempts,
                result.error_kind.value if result.error_kind else None,
                result.last_error,
                result.model_dump(mode="json")["output"],
            )
            exists = await conn.fetchval(
                "SELECT 1 FROM executions WHERE id = $1", execution_id
            )
        finally:
            await conn.close()
        if status.endswith(" 0") and exists:
            raise ExecutionAlreadyCompletedError(execution_id)

    async def complete_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        completed_at: datetime,
        duration_ms: int,
        error: str | None = None,
    ) -> Execution:
        conn = await self._connect()
        try:
            updated = await conn.fetchval(
                """
                UPDATE executions SET status = $1, completed_at = $2, duration_ms = $3, error = $4
                WHERE id = $5 AND completed_at IS NULL
                RETURNING id
                """,
                status.value,
                completed_at,
                duration_ms,
                error,
                execution_id,
            )
        finally:
            await conn.close()
        execution = await self.get_execution(execution_id)
        if execution is None:
            raise KeyError(execution_id)
        if updated is None:
            raise ExecutionAlreadyCompletedError(execution_id)
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM executions WHERE id = $1", execution_id)
            if not row:
                return None
            return await self._hydrate(conn, row)
        finally:
            await conn.close()

    async def list_executions(
        self, workflow_id: str, limit: int | None = None
    ) -> list[Execution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM executions WHERE workflow_id = $1
                ORDER BY started_at DESC LIMIT $2
                """,
                workflow_id,
                limit,
            )
            return [await self._hydrate(conn, r) for r in rows]
        finally:
            await conn.close()

    async def _hydrate(self, conn: asyncpg.Connection, row: asyncpg.Record) -> Execution:
        action_rows = await conn.fetch(
            "SELECT * FROM execution_actions WHERE execution_id = $1 ORDER BY id",
            row["id"],
        )
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            trigger_kind=row["trigger_kind"],
            triggered_by=row["triggered_by"],
            entity_id=row["entity_id"],
            context_snapshot=row["context"],
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
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
                    output=a["output"],
                )
                for a in action_rows
            ],
        )

    # ------------------------------------------------------------------
    async def record_firing(self, key: FiringKey, fired_at: datetime) -> bool:
        conn = await self._connect()
        try:
            inserted = await conn.fetchval(
                """
                INSERT INTO firing_ledger (workflow_id, entity_id, window_key, fired_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT DO NOTHING
                RETURNING 1
                """,
                key.workflow_id,
                key.entity_id,
                key.window_key,
                fired_at,
            )
        finally:
            await conn.close()
        return inserted is not None

    async def has_fired(self, key: FiringKey) -> bool:
        conn = await self._connect()
        try:
            row = await conn.fetchval(
                "SELECT 1 FROM firing_ledger WHERE workflow_id = $1 AND entity_id = $2 AND window_key = $3",
                key.workflow_id,
                key.entity_id,
                key.window_key,
            )
        finally:
            await conn.close()
        return row is not None

    async def acquire_lock(
        self, name: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        conn = await self._connect()
        try:
            acquired = await conn.fetchval(
                """
                INSERT INTO workflow_locks (name, owner, expires_at) VALUES ($1, $2, $3)
                ON CONFLICT (name) DO UPDATE SET
                    owner = EXCLUDED.owner,
                    expires_at = EXCLUDED.expires_at
                WHERE workflow_locks.owner = EXCLUDED.owner OR workflow_locks.expires_at <= $4
                RETURNING owner
                """,
                name,
                owner,
                now + timedelta(seconds=ttl_seconds),
                now,
            )
        finally:
            await conn.close()
        return acquired is not None

    async def release_lock(self, name: str, owner: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM workflow_locks WHERE name = $1 AND owner = $2", name, owner
            )
        finally:
            await conn.close()
