"""Pause, resume, terminate and webhook control commands."""

import asyncio
import base64

import pytest

from podflow.config import PodflowConfig
from podflow.constants import CANCELLED_STEP_ERROR, INTERRUPTED_STEP_ERROR
from podflow.contracts import (
    ExecutionStatus,
    NodeDefinition,
    NodeKind,
    RetryPolicy,
    StepLog,
    StepStatus,
    TriggerType,
    WebhookBinding,
    WorkflowDefinition,
    WorkflowExecution,
)
from podflow.control import WorkflowEngine
from podflow.errors import (
    ControlError,
    NotFoundError,
    PersistenceError,
    WebhookAuthError,
    WebhookConflictError,
    WorkflowInactiveError,
    WorkflowValidationError,
)
from podflow.execute import Failure, Success
from podflow.persistence import InMemoryWorkflowRepository


class GateExecutor:
    """Blocks until released so tests can act while a step is in flight."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def execute(self, node, step_input):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return Success(output={"gated": True})


@pytest.fixture
def gate(registry):
    executor = GateExecutor()
    registry.register("gate", executor)
    return executor


@pytest.fixture
def gated_workflow(linear_workflow):
    linear_workflow.nodes[1].type = "gate"
    return linear_workflow


async def _start_gated(engine, gate, definition):
    await engine.save_workflow(definition)
    execution = await engine.execute(definition.id)
    await asyncio.wait_for(gate.started.wait(), timeout=5)
    return execution


@pytest.mark.asyncio
async def test_pause_suspends_at_next_boundary_and_resumes(engine, gate, gated_workflow):
    execution = await _start_gated(engine, gate, gated_workflow)

    paused = await engine.pause(execution.id)
    assert paused.pause_requested
    again = await engine.pause(execution.id)
    assert again.pause_requested

    gate.release.set()
    waiting = await engine.wait_for(execution.id, timeout=5)
    assert waiting.status == ExecutionStatus.WAITING
    assert waiting.completed_steps == ["trigger", "first"]
    assert not waiting.pause_requested
    assert await engine.get_step_logs(execution.id, "second") == []

    await engine.resume(execution.id)
    with pytest.raises(ControlError):
        await engine.resume(execution.id)
    done = await engine.wait_for(execution.id, timeout=5)

    assert done.status == ExecutionStatus.COMPLETED
    assert done.completed_steps == ["trigger", "first", "second"]
    assert gate.calls == 1
    assert len(await engine.get_step_logs(execution.id, "trigger")) == 1


@pytest.mark.asyncio
async def test_terminate_running_execution_is_idempotent(engine, gate, gated_workflow):
    execution = await _start_gated(engine, gate, gated_workflow)

    cancelled = await engine.terminate(execution.id)
    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.completed_at is not None
    logs = await engine.get_step_logs(execution.id, "first")
    assert logs[-1].status == StepStatus.ERROR
    assert logs[-1].error == CANCELLED_STEP_ERROR

    gate.release.set()
    final = await engine.wait_for(execution.id, timeout=5)
    assert final.status == ExecutionStatus.CANCELLED
    assert final.completed_steps == ["trigger"]
    assert "first" not in final.results
    logs = await engine.get_step_logs(execution.id, "first")
    assert [log.status for log in logs] == [StepStatus.ERROR]
    assert await engine.get_step_logs(execution.id, "second") == []

    repeat = await engine.terminate(execution.id)
    assert repeat.model_dump() == final.model_dump()


@pytest.mark.asyncio
async def test_terminate_waiting_execution(engine, wait_workflow):
    await engine.save_workflow(wait_workflow)
    execution = await engine.execute(wait_workflow.id)
    waiting = await engine.wait_for(execution.id, timeout=5)
    assert waiting.status == ExecutionStatus.WAITING

    cancelled = await engine.terminate(execution.id)
    assert cancelled.status == ExecutionStatus.CANCELLED
    logs = await engine.get_step_logs(execution.id, "approve")
    assert [log.status for log in logs] == [StepStatus.ERROR]

    with pytest.raises(ControlError):
        await engine.resume(execution.id)
    with pytest.raises(ControlError):
        await engine.pause(execution.id)


@pytest.mark.asyncio
async def test_pause_rejected_outside_running(engine, linear_workflow):
    await engine.save_workflow(linear_workflow)
    execution = await engine.execute(linear_workflow.id)
    done = await engine.wait_for(execution.id, timeout=5)
    assert done.status == ExecutionStatus.COMPLETED

    with pytest.raises(ControlError) as exc:
        await engine.pause(execution.id)
    assert exc.value.status == "completed"
    assert (await engine.terminate(execution.id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_instance_id_returns_existing_execution(engine, linear_workflow):
    await engine.save_workflow(linear_workflow)
    first = await engine.execute(linear_workflow.id, instance_id="order-42")
    second = await engine.execute(linear_workflow.id, instance_id="order-42")
    assert first.id == second.id
    await engine.wait_for(first.id, timeout=5)
    assert len(await engine.list_executions(linear_workflow.id)) == 1


@pytest.mark.asyncio
async def test_execute_rejections(engine, linear_workflow):
    with pytest.raises(NotFoundError):
        await engine.execute("missing")
    with pytest.raises(NotFoundError):
        await engine.get_execution("missing")

    linear_workflow.active = False
    await engine.save_workflow(linear_workflow)
    with pytest.raises(WorkflowInactiveError):
        await engine.execute(linear_workflow.id)

    linear_workflow.active = True
    await engine.save_workflow(linear_workflow)
    with pytest.raises(NotFoundError):
        await engine.execute(linear_workflow.id, trigger_node_id="first")
    assert await engine.list_executions() == []


@pytest.mark.asyncio
async def test_save_rejects_invalid_graph_and_bumps_version(engine, linear_workflow):
    saved = await engine.save_workflow(linear_workflow)
    assert saved.version == 1
    updated = await engine.save_workflow(saved)
    assert updated.version == 2
    assert updated.created_at == saved.created_at

    broken = linear_workflow.model_copy(deep=True)
    broken.connect("second", "nowhere")
    with pytest.raises(WorkflowValidationError) as exc:
        await engine.save_workflow(broken)
    assert not exc.value.result.valid
    assert (await engine.get_workflow(linear_workflow.id)).version == 2


@pytest.fixture
def webhook_workflow():
    wf = WorkflowDefinition(
        id="wf-hook",
        name="Hooked",
        nodes=[
            NodeDefinition(id="manual", kind=NodeKind.TRIGGER, type="manual-trigger"),
            NodeDefinition(id="hook", kind=NodeKind.TRIGGER, type="webhook-trigger"),
            NodeDefinition(id="action", type="set", parameters={"values": {"seen": True}}),
        ],
    )
    return wf.connect("manual", "action").connect("hook", "action")


@pytest.mark.asyncio
async def test_webhook_header_auth_and_trigger_count(engine, webhook_workflow):
    await engine.save_workflow(webhook_workflow)
    binding = await engine.register_webhook(
        WebhookBinding(
            workflow_id=webhook_workflow.id,
            path="/orders/new/",
            auth_mode="header",
            auth_config={"header_name": "X-Token", "header_value": "s3cret"},
        )
    )
    assert binding.path == "orders/new"

    with pytest.raises(WebhookAuthError):
        await engine.trigger_webhook("orders/new", "POST", {"id": 1}, {"X-Token": "wrong"})
    with pytest.raises(NotFoundError):
        await engine.trigger_webhook("orders/old", "POST", {}, {"x-token": "s3cret"})

    execution = await engine.trigger_webhook(
        "/orders/new", "post", {"id": 1}, {"x-token": "s3cret"}
    )
    assert execution.trigger_type == TriggerType.WEBHOOK
    assert execution.start_nodes == ["hook"]
    done = await engine.wait_for(execution.id, timeout=5)
    assert done.status == ExecutionStatus.COMPLETED
    assert done.completed_steps == ["hook", "action"]
    assert done.results["action"].output == {"id": 1, "seen": True}

    [stored] = await engine.list_webhooks(webhook_workflow.id)
    assert stored.trigger_count == 1
    assert stored.last_triggered_at is not None


@pytest.mark.asyncio
async def test_webhook_basic_auth(engine, webhook_workflow):
    await engine.save_workflow(webhook_workflow)
    await engine.register_webhook(
        WebhookBinding(
            workflow_id=webhook_workflow.id,
            path="ping",
            method="get",
            auth_mode="basic",
            auth_config={"username": "bot", "password": "pw"},
        )
    )
    good = "Basic " + base64.b64encode(b"bot:pw").decode()
    bad = "Basic " + base64.b64encode(b"bot:nope").decode()

    with pytest.raises(WebhookAuthError):
        await engine.trigger_webhook("ping", "GET", {}, {"Authorization": bad})
    with pytest.raises(WebhookAuthError):
        await engine.trigger_webhook("ping", "GET", {}, {"Authorization": "Basic !!"})
    with pytest.raises(WebhookAuthError):
        await engine.trigger_webhook("ping", "GET", {}, {})

    execution = await engine.trigger_webhook("ping", "GET", {}, {"Authorization": good})
    assert (await engine.wait_for(execution.id, timeout=5)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_webhook_registration_conflicts(engine, webhook_workflow):
    await engine.save_workflow(webhook_workflow)
    await engine.register_webhook(WebhookBinding(workflow_id=webhook_workflow.id, path="dup"))
    with pytest.raises(WebhookConflictError):
        await engine.register_webhook(
            WebhookBinding(workflow_id=webhook_workflow.id, path="/dup")
        )
    # Same path on another method is a separate binding.
    await engine.register_webhook(
        WebhookBinding(workflow_id=webhook_workflow.id, path="dup", method="PUT")
    )
    with pytest.raises(NotFoundError):
        await engine.register_webhook(
            WebhookBinding(workflow_id=webhook_workflow.id, path="x", node_id="action")
        )
    with pytest.raises(NotFoundError):
        await engine.register_webhook(WebhookBinding(workflow_id="missing", path="y"))
    assert len(await engine.list_webhooks()) == 2


@pytest.mark.asyncio
async def test_pause_during_retry_backoff_takes_effect_promptly(
    engine, registry, linear_workflow
):
    failed_once = asyncio.Event()
    healthy = False

    @registry.executor("flaky")
    async def flaky(node, step_input):
        if healthy:
            return Success(output={"recovered": True})
        failed_once.set()
        return Failure(error="upstream down", retryable=True)

    linear_workflow.nodes[1].type = "flaky"
    linear_workflow.nodes[1].retry = RetryPolicy(max_attempts=3, delay=30)
    await engine.save_workflow(linear_workflow)
    execution = await engine.execute(linear_workflow.id)
    await asyncio.wait_for(failed_once.wait(), timeout=5)

    await engine.pause(execution.id)
    paused = await engine.wait_for(execution.id, timeout=5)
    assert paused.status == ExecutionStatus.WAITING
    assert paused.current_step == "first"
    assert not paused.pause_requested
    logs = await engine.get_step_logs(execution.id, "first")
    assert [(log.attempt, log.status) for log in logs] == [(1, StepStatus.RETRYING)]

    healthy = True
    await engine.resume(execution.id)
    done = await engine.wait_for(execution.id, timeout=5)
    assert done.status == ExecutionStatus.COMPLETED
    assert done.results["first"].attempts == 2
    logs = await engine.get_step_logs(execution.id, "first")
    assert [log.attempt for log in logs] == [1, 2]
    assert [log.status for log in logs] == [StepStatus.RETRYING, StepStatus.SUCCESS]


class FlakyRepository(InMemoryWorkflowRepository):
    """Fails the next ``failures`` execution writes once the trigger is recorded."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.armed = False

    async def save_execution(self, execution):
        if self.failures and (self.armed or "trigger" in execution.completed_steps):
            self.armed = True
            self.failures -= 1
            raise PersistenceError("database unavailable")
        await super().save_execution(execution)


@pytest.mark.asyncio
async def test_storage_failure_suspends_execution_for_resume(registry, linear_workflow):
    engine = WorkflowEngine(
        repository=FlakyRepository(failures=1), registry=registry, config=PodflowConfig()
    )
    await engine.save_workflow(linear_workflow)
    execution = await engine.execute(linear_workflow.id)

    suspended = await engine.wait_for(execution.id, timeout=5)
    assert suspended.status == ExecutionStatus.WAITING
    assert suspended.completed_steps == []

    await engine.resume(execution.id)
    done = await engine.wait_for(execution.id, timeout=5)
    assert done.status == ExecutionStatus.COMPLETED
    assert done.completed_steps == ["trigger", "first", "second"]
    logs = await engine.get_step_logs(execution.id, "trigger")
    assert [log.attempt for log in logs] == [1, 2]


@pytest.mark.asyncio
async def test_orphaned_running_execution_can_be_paused_and_resumed(
    registry, linear_workflow
):
    engine = WorkflowEngine(
        repository=FlakyRepository(failures=2), registry=registry, config=PodflowConfig()
    )
    await engine.save_workflow(linear_workflow)
    execution = await engine.execute(linear_workflow.id)

    stuck = await engine.wait_for(execution.id, timeout=5)
    assert stuck.status == ExecutionStatus.RUNNING
    assert not engine._is_driven(execution.id)

    paused = await engine.pause(execution.id)
    assert paused.status == ExecutionStatus.WAITING
    await engine.resume(execution.id)
    done = await engine.wait_for(execution.id, timeout=5)
    assert done.status == ExecutionStatus.COMPLETED
    assert done.completed_steps == ["trigger", "first", "second"]


@pytest.mark.asyncio
async def test_resume_restarts_running_execution_left_without_scheduler(
    repo, registry, linear_workflow
):
    engine = WorkflowEngine(repository=repo, registry=registry, config=PodflowConfig())
    await engine.save_workflow(linear_workflow)
    execution = WorkflowExecution(
        workflow_id=linear_workflow.id,
        workflow=linear_workflow,
        status=ExecutionStatus.RUNNING,
        start_nodes=["trigger"],
    )
    await repo.create_execution(execution)
    await repo.append_step_log(
        StepLog(
            execution_id=execution.id,
            node_id="trigger",
            step_name="Trigger",
            status=StepStatus.RUNNING,
        )
    )

    await engine.resume(execution.id)
    done = await engine.wait_for(execution.id, timeout=5)
    assert done.status == ExecutionStatus.COMPLETED
    logs = await engine.get_step_logs(execution.id, "trigger")
    assert [(log.attempt, log.status) for log in logs] == [
        (1, StepStatus.ERROR),
        (2, StepStatus.SUCCESS),
    ]
    assert logs[0].error == INTERRUPTED_STEP_ERROR
