"""Repository abstraction for workflow and execution persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from ..contracts import (
    ExecutionStatus,
    StepLog,
    StepStatus,
    WebhookBinding,
    WorkflowDefinition,
    WorkflowExecution,
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Backends raise :class:`~podflow.errors.PersistenceError` when the store
    fails. Returned models are copies; mutating them does not change the store.
    """

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_workflows(self, owner: str | None = None) -> list[WorkflowDefinition]:
        """Return stored workflow definitions."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Remove a workflow definition; returns whether it existed."""

    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Persist a new execution record."""

    async def save_execution(self, execution: WorkflowExecution) -> None:
        """Overwrite an existing execution record."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[WorkflowExecution]:
        """Return executions, newest first."""

    async def find_execution(
        self, workflow_id: str, instance_id: str
    ) -> WorkflowExecution | None:
        """Look up an execution by its client-supplied instance id."""

    async def append_step_log(self, log: StepLog) -> None:
        """Append one attempt row."""

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
        """Update an attempt row.

        With ``only_active`` the row is changed only while its status is
        ``running``, ``retrying`` or ``waiting``. Returns whether it changed.
        """

    async def list_step_logs(
        self, execution_id: str, node_id: str | None = None
    ) -> list[StepLog]:
        """Return attempt rows in insertion order."""

    async def create_webhook(self, binding: WebhookBinding) -> None:
        """Persist a binding; raises WebhookConflictError on duplicates."""

    async def find_webhook(self, path: str, method: str) -> WebhookBinding | None:
        """Return the binding for ``(path, method)``."""

    async def list_webhooks(self, workflow_id: str | None = None) -> list[WebhookBinding]:
        """Return stored bindings."""

    async def record_webhook_trigger(self, binding_id: str, at: datetime) -> None:
        """Bump the binding's trigger counter."""

    async def delete_webhook(self, binding_id: str) -> bool:
        """Remove a binding; returns whether it existed."""
