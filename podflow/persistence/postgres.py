"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

import asyncpg

from ..contracts import (
    ACTIVE_STEP_STATUSES,
    ExecutionStatus,
    StepLog,
    StepStatus,
    WebhookBinding,
    WorkflowDefinition,
    WorkflowExecution,
)
from ..errors import PersistenceError, WebhookConflictError
from .repository import WorkflowRepository

_ACTIVE = [s.value for s in ACTIVE_STEP_STATUSES]


def _dump(value: Any) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _load(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    return json.loads(value)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
            raise PersistenceError(f"Cannot connect to PostgreSQL: {e}") from e
        try:
            if not self._initialized:
                await self._ensure_schema(conn)
                self._initialized = True
            yield conn
        except asyncpg.UniqueViolationError:
            raise
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"PostgreSQL operation failed: {e}") from e
        finally:
            await conn.close()

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                owner TEXT,
                name TEXT NOT NULL,
                active BOOLEAN NOT NULL,
                version INTEGER NOT NULL,
                definition JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                instance_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                record JSONB NOT NULL,
                UNIQUE (workflow_id, instance_id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_logs (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                input JSONB,
                output JSONB,
                error TEXT,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                duration_ms INTEGER
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS webhooks (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                path TEXT NOT NULL,
                method TEXT NOT NULL,
                record JSONB NOT NULL,
                UNIQUE (path, method)
            )
            """
        )

    @staticmethod
    def _row_to_log(r: asyncpg.Record) -> StepLog:
        return StepLog(
            id=r["id"],
            execution_id=r["execution_id"],
            node_id=r["node_id"],
            step_name=r["step_name"],
            status=r["status"],
            attempt=r["attempt"],
            input=_load(r["input"]),
            output=_load(r["output"]),
            error=r["error"],
            started_at=r["started_at"],
            completed_at=r["completed_at"],
            duration_ms=r["duration_ms"],
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO workflows (id, owner, name, active, version, definition)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO UPDATE SET
                    owner = EXCLUDED.owner, name = EXCLUDED.name, active = EXCLUDED.active,
                    version = EXCLUDED.version, definition = EXCLUDED.definition
                """,
                definition.id,
                definition.owner,
                definition.name,
                definition.active,
                definition.version,
                definition.model_dump_json(),
            )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        async with self._connect() as conn:
            row = await conn.fetchrow(
                "SELECT definition FROM workflows WHERE id = $1", workflow_id
            )
        return WorkflowDefinition.model_validate(_load(row["definition"])) if row else None

    async def list_workflows(self, owner: str | None = None) -> list[WorkflowDefinition]:
        async with self._connect() as conn:
            if owner is None:
                rows = await conn.fetch("SELECT definition FROM workflows")
            else:
                rows = await conn.fetch(
                    "SELECT definition FROM workflows WHERE owner = $1", owner
                )
        return [WorkflowDefinition.model_validate(_load(r["definition"])) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self._connect() as conn:
            status = await conn.execute("DELETE FROM workflows WHERE id = $1", workflow_id)
        return not status.endswith(" 0")

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> None:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO executions (id, workflow_id, instance_id, status, created_at, record)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    execution.id,
                    execution.workflow_id,
                    execution.instance_id,
                    execution.status.value,
                    execution.created_at,
                    execution.model_dump_json(),
                )
        except asyncpg.UniqueViolationError as e:
            raise PersistenceError(f"Execution {execution.id} already exists: {e}") from e

    async def save_execution(self, execution: WorkflowExecution) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE executions SET status = $1, record = $2 WHERE id = $3",
                execution.status.value,
                execution.model_dump_json(),
                execution.id,
            )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        async with self._connect() as conn:
            row = await conn.fetchrow(
                "SELECT record FROM executions WHERE id = $1", execution_id
            )
        return WorkflowExecution.model_validate(_load(row["record"])) if row else None

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[WorkflowExecution]:
        clauses, params = [], []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(ExecutionStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connect() as conn:
            rows = await conn.fetch(
                f"SELECT record FROM executions{where} ORDER BY created_at DESC", *params
            )
        return [WorkflowExecution.model_validate(_load(r["record"])) for r in rows]

    async def find_execution(
        self, workflow_id: str, instance_id: str
    ) -> WorkflowExecution | None:
        async with self._connect() as conn:
            row = await conn.fetchrow(
                "SELECT record FROM executions WHERE workflow_id = $1 AND instance_id = $2",
                workflow_id,
                instance_id,
            )
        return WorkflowExecution.model_validate(_load(row["record"])) if row else None

    # ------------------------------------------------------------------
    # Step logs
    async def append_step_log(self, log: StepLog) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO step_logs (id, execution_id, node_id, step_name, status, attempt,
                                       input, output, error, started_at, completed_at, duration_ms)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                log.id,
                log.execution_id,
                log.node_id,
                log.step_name,
                log.status.value,
                log.attempt,
                _dump(log.input),
                _dump(log.output),
                log.error,
                log.started_at,
                log.completed_at,
                log.duration_ms,
            )

    async def update_step_log(
        self,
        log_id: str,
        status: StepStatus,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        duration_ms: Optional[int] = None,
        only_active: bool = True,
    ) -> bool:
        query = """
            UPDATE step_logs
            SET status = $1, output = COALESCE($2::jsonb, output), error = COALESCE($3, error),
                completed_at = COALESCE($4, completed_at),
                duration_ms = COALESCE($5, duration_ms)
            WHERE id = $6
        """
        params: list[Any] = [
            StepStatus(status).value,
            _dump(output),
            error,
            completed_at,
            duration_ms,
            log_id,
        ]
        if only_active:
            query += " AND status = ANY($7::text[])"
            params.append(_ACTIVE)
        async with self._connect() as conn:
            result = await conn.execute(query, *params)
        return not result.endswith(" 0")

    async def list_step_logs(
        self, execution_id: str, node_id: str | None = None
    ) -> list[StepLog]:
        async with self._connect() as conn:
            if node_id is None:
                rows = await conn.fetch(
                    "SELECT * FROM step_logs WHERE execution_id = $1 ORDER BY seq",
                    execution_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM step_logs WHERE execution_id = $1 AND node_id = $2 ORDER BY seq",
                    execution_id,
                    node_id,
                )
        return [self._row_to_log(r) for r in rows]

    # ------------------------------------------------------------------
    # Webhooks
    async def create_webhook(self, binding: WebhookBinding) -> None:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    "INSERT INTO webhooks (id, workflow_id, path, method, record) VALUES ($1, $2, $3, $4, $5)",
                    binding.id,
                    binding.workflow_id,
                    binding.path,
                    binding.method,
                    binding.model_dump_json(),
                )
        except asyncpg.UniqueViolationError as e:
            raise WebhookConflictError(binding.path, binding.method) from e

    async def find_webhook(self, path: str, method: str) -> WebhookBinding | None:
        async with self._connect() as conn:
            row = await conn.fetchrow(
                "SELECT record FROM webhooks WHERE path = $1 AND method = $2",
                path.strip("/"),
                method.upper(),
            )
        return WebhookBinding.model_validate(_load(row["record"])) if row else None

    async def list_webhooks(self, workflow_id: str | None = None) -> list[WebhookBinding]:
        async with self._connect() as conn:
            if workflow_id is None:
                rows = await conn.fetch("SELECT record FROM webhooks")
            else:
                rows = await conn.fetch(
                    "SELECT record FROM webhooks WHERE workflow_id = $1", workflow_id
                )
        return [WebhookBinding.model_validate(_load(r["record"])) for r in rows]

    async def record_webhook_trigger(self, binding_id: str, at: datetime) -> None:
        async with self._connect() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT record FROM webhooks WHERE id = $1 FOR UPDATE", binding_id
                )
                if not row:
                    return
                binding = WebhookBinding.model_validate(_load(row["record"]))
                binding.trigger_count += 1
                binding.last_triggered_at = at
                await conn.execute(
                    "UPDATE webhooks SET record = $1 WHERE id = $2",
                    binding.model_dump_json(),
                    binding_id,
                )

    async def delete_webhook(self, binding_id: str) -> bool:
        async with self._connect() as conn:
            status = await conn.execute("DELETE FROM webhooks WHERE id = $1", binding_id)
        return not status.endswith(" 0")
