"""Retry accounting and step logging."""

import asyncio

import pytest

from podflow.contracts import NodeDefinition, RetryPolicy, StepStatus
from podflow.errors import StepFailed
from podflow.execute import Failure, StepExecutor, StepInput, Success
from podflow.nodes import NodeRegistry
from podflow.utils.retry import compute_backoff, wait_backoff


def _step_input():
    return StepInput(execution_id="ex-1", node_id="n", trigger_payload={"k": "v"})


def test_compute_backoff_fixed_and_exponential():
    fixed = RetryPolicy(max_attempts=3, delay=2.0)
    assert [compute_backoff(fixed, a) for a in (1, 2, 3)] == [2.0, 2.0, 2.0]

    exp = RetryPolicy(max_attempts=5, backoff="exponential", delay=1.0, max_delay=5.0)
    assert [compute_backoff(exp, a) for a in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_wait_backoff_stops_when_asked():
    calls = []

    async def should_stop():
        calls.append(1)
        return len(calls) > 1

    assert await wait_backoff(10.0, should_stop, tick=0.01) is True
    assert await wait_backoff(0.0) is False


@pytest.mark.asyncio
async def test_always_failing_node_logs_every_attempt(repo):
    registry = NodeRegistry()

    @registry.executor("flaky")
    async def flaky(node, step_input):
        return Failure(error="upstream down", retryable=True)

    node = NodeDefinition(id="n", type="flaky", retry=RetryPolicy(max_attempts=3, delay=0))
    outcome = await StepExecutor(registry, repo).run(node, _step_input())

    assert not outcome.succeeded
    assert outcome.attempts == 3
    logs = await repo.list_step_logs("ex-1", "n")
    assert [log.attempt for log in logs] == [1, 2, 3]
    assert [log.status for log in logs] == [
        StepStatus.RETRYING,
        StepStatus.RETRYING,
        StepStatus.ERROR,
    ]
    assert all(log.error == "upstream down" for log in logs)
    assert logs[0].input == {"data": {"k": "v"}}


@pytest.mark.asyncio
async def test_non_retryable_failure_stops_immediately(repo):
    registry = NodeRegistry()

    @registry.executor("strict")
    async def strict(node, step_input):
        raise StepFailed("bad input", retryable=False)

    node = NodeDefinition(id="n", type="strict", retry=RetryPolicy(max_attempts=5, delay=0))
    outcome = await StepExecutor(registry, repo).run(node, _step_input())
    assert outcome.attempts == 1
    assert outcome.result.error == "bad input"
    assert len(await repo.list_step_logs("ex-1")) == 1


@pytest.mark.asyncio
async def test_exception_then_success_and_plain_return_is_wrapped(repo):
    registry = NodeRegistry()
    attempts = []

    @registry.executor("eventually")
    async def eventually(node, step_input):
        attempts.append(1)
        if len(attempts) < 2:
            raise RuntimeError("transient")
        return {"ok": True}

    node = NodeDefinition(id="n", type="eventually", retry=RetryPolicy(max_attempts=3, delay=0))
    outcome = await StepExecutor(registry, repo).run(node, _step_input())
    assert isinstance(outcome.result, Success)
    assert outcome.result.output == {"ok": True}
    logs = await repo.list_step_logs("ex-1")
    assert [log.status for log in logs] == [StepStatus.RETRYING, StepStatus.SUCCESS]
    assert logs[1].output == {"result": {"ok": True}}
    assert logs[1].completed_at is not None


@pytest.mark.asyncio
async def test_timeout_and_unknown_type(repo):
    registry = NodeRegistry()

    @registry.executor("slow")
    async def slow(node, step_input):
        await asyncio.sleep(1)

    node = NodeDefinition(id="n", type="slow", timeout=0.01)
    outcome = await StepExecutor(registry, repo).run(node, _step_input())
    assert "timed out" in outcome.result.error

    unknown = NodeDefinition(id="u", type="mystery")
    outcome = await StepExecutor(registry, repo).run(unknown, _step_input())
    assert outcome.result.error == "Unknown node type: mystery"


@pytest.mark.asyncio
async def test_engine_default_policy_applies_when_node_has_none(repo):
    registry = NodeRegistry()

    @registry.executor("flaky")
    async def flaky(node, step_input):
        return Failure(error="nope", retryable=True)

    executor = StepExecutor(registry, repo, default_retry=RetryPolicy(max_attempts=2, delay=0))
    outcome = await executor.run(NodeDefinition(id="n", type="flaky"), _step_input())
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_backoff_interrupted_by_stop_signal(repo):
    registry = NodeRegistry()

    @registry.executor("flaky")
    async def flaky(node, step_input):
        return Failure(error="nope", retryable=True)

    async def stop():
        return True

    node = NodeDefinition(id="n", type="flaky", retry=RetryPolicy(max_attempts=3, delay=30))
    outcome = await StepExecutor(registry, repo).run(node, _step_input(), should_stop=stop)
    assert outcome.interrupted
    assert outcome.attempts == 1


@pytest.mark.asyncio
async def test_rerun_after_stop_continues_attempt_numbering(repo):
    registry = NodeRegistry()
    calls = []

    @registry.executor("flaky")
    async def flaky(node, step_input):
        calls.append(1)
        return Failure(error="nope", retryable=True)

    async def stop():
        return True

    node = NodeDefinition(id="n", type="flaky", retry=RetryPolicy(max_attempts=3, delay=0.05))
    executor = StepExecutor(registry, repo)
    first = await executor.run(node, _step_input(), should_stop=stop)
    assert first.interrupted and first.attempts == 1

    second = await executor.run(node, _step_input())
    assert not second.succeeded
    assert second.attempts == 3
    assert len(calls) == 3
    logs = await repo.list_step_logs("ex-1", "n")
    assert [log.attempt for log in logs] == [1, 2, 3]
    assert [log.status for log in logs] == [
        StepStatus.RETRYING,
        StepStatus.RETRYING,
        StepStatus.ERROR,
    ]


@pytest.mark.asyncio
async def test_parameters_are_interpolated_per_attempt(repo):
    registry = NodeRegistry()
    seen = []

    @registry.executor("echo")
    async def echo(node, step_input):
        seen.append(node.parameters)
        return node.parameters

    node = NodeDefinition(
        id="n",
        type="echo",
        parameters={
            "url": "https://api.local/users/{{trigger.data.k}}",
            "body": {"prev": "{{steps.fetch.data.items[1]}}", "missing": "{{steps.nope.data}}"},
            "count": 3,
        },
    )
    step_input = StepInput(
        execution_id="ex-1",
        node_id="n",
        trigger_payload={"k": "v"},
        steps={"fetch": {"items": ["a", {"id": 2}]}},
    )
    outcome = await StepExecutor(registry, repo).run(node, step_input)

    assert outcome.result.output == {
        "url": "https://api.local/users/v",
        "body": {"prev": '{"id": 2}', "missing": "{{steps.nope.data}}"},
        "count": 3,
    }
    assert node.parameters["url"] == "https://api.local/users/{{trigger.data.k}}"
