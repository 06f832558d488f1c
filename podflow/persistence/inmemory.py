"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..contracts import (
    ACTIVE_STEP_STATUSES,
    ExecutionStatus,
    StepLog,
    StepStatus,
    WebhookBinding,
    WorkflowDefinition,
    WorkflowExecution,
)
from ..errors import WebhookConflictError
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._logs: List[StepLog] = []
        self._webhooks: Dict[str, WebhookBinding] = {}

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        self._workflows[definition.id] = definition.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(self, owner: str | None = None) -> list[WorkflowDefinition]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if owner is None or wf.owner == owner
        ]

    async def delete_workflow(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def save_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        ex = self._executions.get(execution_id)
        return ex.model_copy(deep=True) if ex else None

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[WorkflowExecution]:
        executions = [
            ex.model_copy(deep=True)
            for ex in self._executions.values()
            if (workflow_id is None or ex.workflow_id == workflow_id)
            and (status is None or ex.status == status)
        ]
        return sorted(executions, key=lambda ex: ex.created_at, reverse=True)

    async def find_execution(
        self, workflow_id: str, instance_id: str
    ) -> WorkflowExecution | None:
        for ex in self._executions.values():
            if ex.workflow_id == workflow_id and ex.instance_id == instance_id:
                return ex.model_copy(deep=True)
        return None

    # ------------------------------------------------------------------
    # Step logs
    async def append_step_log(self, log: StepLog) -> None:
        self._logs.append(log.model_copy(deep=True))

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
        for log in self._logs:
            if log.id != log_id:
                continue
            if only_active and log.status not in ACTIVE_STEP_STATUSES:
                return False
            log.status = status
            if output is not None:
                log.output = output
            if error is not None:
                log.error = error
            if completed_at is not None:
                log.completed_at = completed_at
            if duration_ms is not None:
                log.duration_ms = duration_ms
            return True
        return False

    async def list_step_logs(
        self, execution_id: str, node_id: str | None = None
    ) -> list[StepLog]:
        return [
            log.model_copy(deep=True)
            for log in self._logs
            if log.execution_id == execution_id
            and (node_id is None or log.node_id == node_id)
        ]

    # ------------------------------------------------------------------
    # Webhooks
    async def create_webhook(self, binding: WebhookBinding) -> None:
        if await self.find_webhook(binding.path, binding.method) is not None:
            raise WebhookConflictError(binding.path, binding.method)
        self._webhooks[binding.id] = binding.model_copy(deep=True)

    async def find_webhook(self, path: str, method: str) -> WebhookBinding | None:
        path = path.strip("/")
        method = method.upper()
        for binding in self._webhooks.values():
            if binding.path == path and binding.method == method:
                return binding.model_copy(deep=True)
        return None

    async def list_webhooks(self, workflow_id: str | None = None) -> list[WebhookBinding]:
        return [
            b.model_copy(deep=True)
            for b in self._webhooks.values()
            if workflow_id is None or b.workflow_id == workflow_id
        ]

    async def record_webhook_trigger(self, binding_id: str, at: datetime) -> None:
        binding = self._webhooks.get(binding_id)
        if binding:
            binding.trigger_count += 1
            binding.last_triggered_at = at

    async def delete_webhook(self, binding_id: str) -> bool:
        return self._webhooks.pop(binding_id, None) is not None
