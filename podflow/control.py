"""Control surface for podflow: workflows, executions and webhooks.

:class:`WorkflowEngine` is the single entry point used by the HTTP API and the
CLI. Every control command takes an explicit execution id; there is no notion
of a "current" execution.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from .compiler import ValidationResult, compile_workflow, validate_workflow
from .config import PodflowConfig, load_config
from .constants import CANCELLED_STEP_ERROR, TRIGGER_NODE_TYPES
from .contracts import (
    ACTIVE_STEP_STATUSES,
    ExecutionStatus,
    NodeKind,
    RetryPolicy,
    StepLog,
    StepStatus,
    TriggerType,
    WebhookBinding,
    WorkflowDefinition,
    WorkflowExecution,
    utcnow,
)
from .errors import (
    ControlError,
    NotFoundError,
    PersistenceError,
    WebhookAuthError,
    WorkflowInactiveError,
    WorkflowValidationError,
)
from .execute import StepExecutor
from .frontier import executed_edges, node_statuses
from .nodes import NodeRegistry, default_registry
from .persistence import WorkflowRepository, get_repository
from .scheduler import ExecutionLocks, ExecutionScheduler

logger = logging.getLogger(__name__)


class ExecutionSnapshot(BaseModel):
    """Execution record plus the derived per-node view shown to clients."""

    execution: WorkflowExecution
    nodes: Dict[str, StepStatus] = Field(default_factory=dict)
    edges: List[Tuple[str, str, str]] = Field(default_factory=list)


def _select_start_nodes(
    definition: WorkflowDefinition,
    trigger_type: TriggerType,
    trigger_node_id: Optional[str],
) -> List[str]:
    triggers = [n for n in definition.nodes if n.kind == NodeKind.TRIGGER]
    if trigger_node_id is not None:
        if trigger_node_id not in {n.id for n in triggers}:
            raise NotFoundError("Trigger node", trigger_node_id)
        return [trigger_node_id]
    matching = [
        n.id
        for n in triggers
        if TRIGGER_NODE_TYPES.get(n.executor_type) == trigger_type.value
    ]
    return matching or [n.id for n in triggers]


def _check_webhook_auth(binding: WebhookBinding, headers: Mapping[str, str]) -> None:
    if binding.auth_mode == "none":
        return
    lowered = {k.lower(): v for k, v in headers.items()}
    config = binding.auth_config

    if binding.auth_mode == "header":
        name = str(config.get("header_name", "x-webhook-token")).lower()
        expected = str(config.get("header_value", ""))
        supplied = lowered.get(name)
        if not expected or supplied is None or not hmac.compare_digest(supplied, expected):
            raise WebhookAuthError(f"Missing or invalid {name} header")
        return

    auth = lowered.get("authorization", "")
    scheme, _, encoded = auth.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        raise WebhookAuthError("Basic authentication required")
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise WebhookAuthError("Malformed basic credentials") from e
    username, _, password = decoded.partition(":")
    if not (
        hmac.compare_digest(username, str(config.get("username", "")))
        and hmac.compare_digest(password, str(config.get("password", "")))
    ):
        raise WebhookAuthError("Invalid basic credentials")


class WorkflowEngine:
    """Validate, store and run workflows."""

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        registry: Optional[NodeRegistry] = None,
        config: Optional[PodflowConfig] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.registry = registry or default_registry()
        engine = self.config.engine
        default_retry = RetryPolicy(
            max_attempts=engine.default_max_attempts,
            backoff=engine.default_backoff,
            delay=engine.default_retry_delay,
            max_delay=engine.max_retry_delay,
        )
        self.locks = ExecutionLocks()
        self.step_executor = StepExecutor(self.registry, self.repository, default_retry)
        self.scheduler = ExecutionScheduler(self.repository, self.step_executor, self.locks)
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Workflows
    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        return validate_workflow(definition, self.registry.types())

    async def save_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store ``definition``, bumping its version on update."""
        result = self.validate(definition)
        if not result.valid:
            raise WorkflowValidationError(result)
        definition = definition.model_copy(deep=True)
        existing = await self.repository.get_workflow(definition.id)
        if existing is not None:
            definition.version = existing.version + 1
            definition.created_at = existing.created_at
        definition.updated_at = utcnow()
        await self.repository.save_workflow(definition)
        logger.info(f"Saved workflow {definition.id} version {definition.version}")
        return definition

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.repository.get_workflow(workflow_id)
        if definition is None:
            raise NotFoundError("Workflow", workflow_id)
        return definition

    async def list_workflows(self, owner: Optional[str] = None) -> List[WorkflowDefinition]:
        return await self.repository.list_workflows(owner)

    async def delete_workflow(self, workflow_id: str) -> None:
        if not await self.repository.delete_workflow(workflow_id):
            raise NotFoundError("Workflow", workflow_id)

    # ------------------------------------------------------------------
    # Executions
    async def execute(
        self,
        workflow_id: str,
        trigger_payload: Optional[Dict[str, Any]] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        instance_id: Optional[str] = None,
        trigger_node_id: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> WorkflowExecution:
        """Create a queued execution and start it in the background.

        Returns as soon as the record is stored. Supplying an ``instance_id``
        already used for this workflow returns the existing execution.

        Raises:
            NotFoundError: Unknown workflow or trigger node.
            WorkflowInactiveError: The workflow is deactivated.
            WorkflowValidationError: The stored definition no longer compiles.
        """
        definition = await self.get_workflow(workflow_id)
        if not definition.active:
            raise WorkflowInactiveError(workflow_id)
        compile_workflow(definition, self.registry.types())
        trigger_type = TriggerType(trigger_type)

        lock_key = f"instance:{workflow_id}:{instance_id}" if instance_id else None
        if lock_key is not None:
            async with self.locks.get(lock_key):
                existing = await self.repository.find_execution(workflow_id, instance_id)
                if existing is not None:
                    logger.info(
                        f"Instance {instance_id} of workflow {workflow_id} already "
                        f"exists as execution {existing.id}"
                    )
                    return existing
                execution = await self._create_execution(
                    definition, trigger_payload, trigger_type, instance_id, trigger_node_id, owner
                )
        else:
            execution = await self._create_execution(
                definition, trigger_payload, trigger_type, None, trigger_node_id, owner
            )

        self._start(execution.id)
        return execution

    async def _create_execution(
        self,
        definition: WorkflowDefinition,
        trigger_payload: Optional[Dict[str, Any]],
        trigger_type: TriggerType,
        instance_id: Optional[str],
        trigger_node_id: Optional[str],
        owner: Optional[str],
    ) -> WorkflowExecution:
        fields: Dict[str, Any] = {}
        if instance_id is not None:
            fields["instance_id"] = instance_id
        execution = WorkflowExecution(
            workflow_id=definition.id,
            workflow=definition,
            owner=owner or definition.owner,
            trigger_type=trigger_type,
            trigger_payload=dict(trigger_payload or {}),
            start_nodes=_select_start_nodes(definition, trigger_type, trigger_node_id),
            **fields,
        )
        await self.repository.create_execution(execution)
        logger.info(
            f"Created execution {execution.id} of workflow {definition.id} "
            f"(trigger={trigger_type.value}, start={execution.start_nodes})"
        )
        return execution

    def _start(self, execution_id: str, resume_payload: Optional[Dict[str, Any]] = None) -> None:
        task = asyncio.create_task(self._drive(execution_id, resume_payload))
        self._tasks[execution_id] = task

    async def _drive(
        self, execution_id: str, resume_payload: Optional[Dict[str, Any]]
    ) -> None:
        try:
            await self.scheduler.run(execution_id, resume_payload)
        except PersistenceError as e:
            logger.error(f"Execution {execution_id} interrupted by storage failure: {e}")
            await self._suspend_after_storage_failure(execution_id)
        except Exception as e:
            logger.exception(f"Scheduler crashed for execution {execution_id}")
            await self._mark_crashed(execution_id, e)
        finally:
            if self._tasks.get(execution_id) is asyncio.current_task():
                self._tasks.pop(execution_id, None)

    async def _suspend_after_storage_failure(self, execution_id: str) -> None:
        try:
            async with self.locks.get(execution_id):
                execution = await self.repository.get_execution(execution_id)
                if execution is None or execution.status != ExecutionStatus.RUNNING:
                    return
                execution.status = ExecutionStatus.WAITING
                execution.pause_requested = False
                await self.repository.save_execution(execution)
        except PersistenceError as e:
            logger.error(
                f"Execution {execution_id} is still marked running but has no scheduler "
                f"({e}); resume it once storage is back"
            )
            return
        logger.warning(f"Execution {execution_id} suspended; resume it to retry")

    def _is_driven(self, execution_id: str) -> bool:
        task = self._tasks.get(execution_id)
        return task is not None and not task.done()

    async def _mark_crashed(self, execution_id: str, error: Exception) -> None:
        async with self.locks.get(execution_id):
            execution = await self.repository.get_execution(execution_id)
            if execution is None or execution.is_terminal:
                return
            execution.status = ExecutionStatus.ERRORED
            execution.error = str(error) or type(error).__name__
            execution.completed_at = utcnow()
            await self.repository.save_execution(execution)

    async def wait_for(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> WorkflowExecution:
        """Await the background run of ``execution_id`` and return its record."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.get_execution(execution_id)

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[WorkflowExecution]:
        return await self.repository.list_executions(workflow_id, status)

    async def get_step_logs(
        self, execution_id: str, node_id: Optional[str] = None
    ) -> List[StepLog]:
        await self.get_execution(execution_id)
        return await self.repository.list_step_logs(execution_id, node_id)

    async def get_status(self, execution_id: str) -> ExecutionSnapshot:
        execution = await self.get_execution(execution_id)
        plan = compile_workflow(execution.workflow)
        logs = await self.repository.list_step_logs(execution_id)
        return ExecutionSnapshot(
            execution=execution,
            nodes=node_statuses(plan, execution, logs),
            edges=sorted(executed_edges(plan, execution)),
        )

    # ------------------------------------------------------------------
    # Control commands
    async def pause(self, execution_id: str) -> WorkflowExecution:
        """Ask a running execution to suspend at its next step boundary.

        A running execution with no live scheduler (left behind by a storage
        failure or a restart) is suspended on the spot.
        """
        async with self.locks.get(execution_id):
            execution = await self.get_execution(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                raise ControlError(execution_id, "pause", execution.status.value)
            if not self._is_driven(execution_id):
                execution.status = ExecutionStatus.WAITING
                execution.pause_requested = False
                await self.repository.save_execution(execution)
                logger.info(f"Execution {execution_id} had no scheduler; paused directly")
            elif not execution.pause_requested:
                execution.pause_requested = True
                await self.repository.save_execution(execution)
                logger.info(f"Pause requested for execution {execution_id}")
            return execution

    async def resume(
        self, execution_id: str, payload: Optional[Dict[str, Any]] = None
    ) -> WorkflowExecution:
        """Continue a waiting execution, optionally supplying data to its wait node.

        Queued or running executions are accepted only when nothing is driving
        them, which restarts their scheduler.
        """
        async with self.locks.get(execution_id):
            execution = await self.get_execution(execution_id)
            orphaned = execution.status in (
                ExecutionStatus.QUEUED,
                ExecutionStatus.RUNNING,
            ) and not self._is_driven(execution_id)
            if execution.status != ExecutionStatus.WAITING and not orphaned:
                raise ControlError(execution_id, "resume", execution.status.value)
            execution.status = ExecutionStatus.RUNNING
            execution.pause_requested = False
            await self.repository.save_execution(execution)
        logger.info(f"Resuming execution {execution_id} from {execution.current_step}")
        self._start(execution_id, payload)
        return execution

    async def terminate(self, execution_id: str) -> WorkflowExecution:
        """Cancel an execution. Terminal executions are returned unchanged."""
        async with self.locks.get(execution_id):
            execution = await self.get_execution(execution_id)
            if execution.is_terminal:
                return execution
            now = utcnow()
            execution.status = ExecutionStatus.CANCELLED
            execution.pause_requested = False
            execution.completed_at = now
            if execution.started_at is not None:
                execution.duration_ms = int(
                    (now - execution.started_at).total_seconds() * 1000
                )
            await self.repository.save_execution(execution)
            for log in await self.repository.list_step_logs(execution_id):
                if log.status in ACTIVE_STEP_STATUSES:
                    await self.repository.update_step_log(
                        log.id,
                        StepStatus.ERROR,
                        error=CANCELLED_STEP_ERROR,
                        completed_at=now,
                    )
        logger.info(f"Execution {execution_id} cancelled")
        return execution

    # ------------------------------------------------------------------
    # Webhooks
    async def register_webhook(self, binding: WebhookBinding) -> WebhookBinding:
        definition = await self.get_workflow(binding.workflow_id)
        if binding.node_id is not None:
            node = definition.get_node(binding.node_id)
            if node is None or node.kind != NodeKind.TRIGGER:
                raise NotFoundError("Trigger node", binding.node_id)
        await self.repository.create_webhook(binding)
        logger.info(
            f"Registered webhook {binding.method} /{binding.path} for workflow {binding.workflow_id}"
        )
        return binding

    async def list_webhooks(self, workflow_id: Optional[str] = None) -> List[WebhookBinding]:
        return await self.repository.list_webhooks(workflow_id)

    async def trigger_webhook(
        self,
        path: str,
        method: str,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WorkflowExecution:
        """Start the workflow bound to ``(path, method)`` with ``body`` as payload.

        Raises:
            NotFoundError: No binding for the path and method.
            WebhookAuthError: The request failed the binding's authentication.
        """
        binding = await self.repository.find_webhook(path, method)
        if binding is None:
            raise NotFoundError("Webhook", f"{method.upper()} /{path.strip('/')}")
        _check_webhook_auth(binding, headers or {})
        execution = await self.execute(
            binding.workflow_id,
            trigger_payload=body,
            trigger_type=TriggerType.WEBHOOK,
            trigger_node_id=binding.node_id,
        )
        await self.repository.record_webhook_trigger(binding.id, utcnow())
        return execution
