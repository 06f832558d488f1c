"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

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

_ACTIVE = tuple(s.value for s in ACTIVE_STEP_STATUSES)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open SQLite database {self.db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                owner TEXT,
                name TEXT NOT NULL,
                active INTEGER NOT NULL,
                version INTEGER NOT NULL,
                definition TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                instance_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                record TEXT NOT NULL,
                UNIQUE (workflow_id, instance_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_logs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                started_at TEXT,
                completed_at TEXT,
                duration_ms INTEGER
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS webhooks (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                path TEXT NOT NULL,
                method TEXT NOT NULL,
                record TEXT NOT NULL,
                UNIQUE (path, method)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
                return cur.rowcount
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise
            except sqlite3.Error as e:
                self._conn.rollback()
                raise PersistenceError(f"SQLite write failed: {e}") from e

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite read failed: {e}") from e

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite read failed: {e}") from e

    @staticmethod
    def _row_to_log(r: sqlite3.Row) -> StepLog:
        return StepLog(
            id=r["id"],
            execution_id=r["execution_id"],
            node_id=r["node_id"],
            step_name=r["step_name"],
            status=r["status"],
            attempt=r["attempt"],
            input=json.loads(r["input"]) if r["input"] else None,
            output=json.loads(r["output"]) if r["output"] else None,
            error=r["error"],
            started_at=_parse_ts(r["started_at"]),
            completed_at=_parse_ts(r["completed_at"]),
            duration_ms=r["duration_ms"],
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, owner, name, active, version, definition)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner = excluded.owner, name = excluded.name, active = excluded.active,
                version = excluded.version, definition = excluded.definition
            """,
            definition.id,
            definition.owner,
            definition.name,
            int(definition.active),
            definition.version,
            definition.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT definition FROM workflows WHERE id = ?", workflow_id
        )
        return WorkflowDefinition.model_validate_json(row["definition"]) if row else None

    async def list_workflows(self, owner: str | None = None) -> list[WorkflowDefinition]:
        if owner is None:
            rows = await asyncio.to_thread(self._fetchall, "SELECT definition FROM workflows")
        else:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT definition FROM workflows WHERE owner = ?", owner
            )
        return [WorkflowDefinition.model_validate_json(r["definition"]) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )
        return count > 0

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO executions (id, workflow_id, instance_id, status, created_at, record) VALUES (?, ?, ?, ?, ?, ?)",
                execution.id,
                execution.workflow_id,
                execution.instance_id,
                execution.status.value,
                _ts(execution.created_at),
                execution.model_dump_json(),
            )
        except sqlite3.IntegrityError as e:
            raise PersistenceError(f"Execution {execution.id} already exists: {e}") from e

    async def save_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET status = ?, record = ? WHERE id = ?",
            execution.status.value,
            execution.model_dump_json(),
            execution.id,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT record FROM executions WHERE id = ?", execution_id
        )
        return WorkflowExecution.model_validate_json(row["record"]) if row else None

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[WorkflowExecution]:
        clauses, params = [], []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT record FROM executions{where} ORDER BY created_at DESC",
            *params,
        )
        return [WorkflowExecution.model_validate_json(r["record"]) for r in rows]

    async def find_execution(
        self, workflow_id: str, instance_id: str
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT record FROM executions WHERE workflow_id = ? AND instance_id = ?",
            workflow_id,
            instance_id,
        )
        return WorkflowExecution.model_validate_json(row["record"]) if row else None

    # ------------------------------------------------------------------
    # Step logs
    async def append_step_log(self, log: StepLog) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_logs (id, execution_id, node_id, step_name, status, attempt,
                                   input, output, error, started_at, completed_at, duration_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            log.id,
            log.execution_id,
            log.node_id,
            log.step_name,
            log.status.value,
            log.attempt,
            json.dumps(log.input, default=str) if log.input is not None else None,
            json.dumps(log.output, default=str) if log.output is not None else None,
            log.error,
            _ts(log.started_at),
            _ts(log.completed_at),
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
            SET status = ?, output = COALESCE(?, output), error = COALESCE(?, error),
                completed_at = COALESCE(?, completed_at), duration_ms = COALESCE(?, duration_ms)
            WHERE id = ?
        """
        params: list[Any] = [
            StepStatus(status).value,
            json.dumps(output, default=str) if output is not None else None,
            error,
            _ts(completed_at),
            duration_ms,
            log_id,
        ]
        if only_active:
            query += f" AND status IN ({', '.join('?' for _ in _ACTIVE)})"
            params.extend(_ACTIVE)
        count = await asyncio.to_thread(self._execute, query, *params)
        return count > 0

    async def list_step_logs(
        self, execution_id: str, node_id: str | None = None
    ) -> list[StepLog]:
        if node_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM step_logs WHERE execution_id = ? ORDER BY seq",
                execution_id,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM step_logs WHERE execution_id = ? AND node_id = ? ORDER BY seq",
                execution_id,
                node_id,
            )
        return [self._row_to_log(r) for r in rows]

    # ------------------------------------------------------------------
    # Webhooks
    async def create_webhook(self, binding: WebhookBinding) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO webhooks (id, workflow_id, path, method, record) VALUES (?, ?, ?, ?, ?)",
                binding.id,
                binding.workflow_id,
                binding.path,
                binding.method,
                binding.model_dump_json(),
            )
        except sqlite3.IntegrityError as e:
            raise WebhookConflictError(binding.path, binding.method) from e

    async def find_webhook(self, path: str, method: str) -> WebhookBinding | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT record FROM webhooks WHERE path = ? AND method = ?",
            path.strip("/"),
            method.upper(),
        )
        return WebhookBinding.model_validate_json(row["record"]) if row else None

    async def list_webhooks(self, workflow_id: str | None = None) -> list[WebhookBinding]:
        if workflow_id is None:
            rows = await asyncio.to_thread(self._fetchall, "SELECT record FROM webhooks")
        else:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT record FROM webhooks WHERE workflow_id = ?", workflow_id
            )
        return [WebhookBinding.model_validate_json(r["record"]) for r in rows]

    async def record_webhook_trigger(self, binding_id: str, at: datetime) -> None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT record FROM webhooks WHERE id = ?", binding_id
        )
        if not row:
            return
        binding = WebhookBinding.model_validate_json(row["record"])
        binding.trigger_count += 1
        binding.last_triggered_at = at
        await asyncio.to_thread(
            self._execute,
            "UPDATE webhooks SET record = ? WHERE id = ?",
            binding.model_dump_json(),
            binding_id,
        )

    async def delete_webhook(self, binding_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM webhooks WHERE id = ?", binding_id
        )
        return count > 0
