"""Client polling reducer tests."""

import pytest

from podflow.config import PollingConfig
from podflow.contracts import ExecutionStatus, WorkflowExecution
from podflow.polling import PollState, is_done, next_delay, poll_execution, reduce


def _snapshot(definition, status):
    return WorkflowExecution(
        id="ex-1", workflow_id=definition.id, workflow=definition, status=status
    )


def test_reduce_tracks_attempts_and_cadence(linear_workflow):
    config = PollingConfig(running_interval=1.0, waiting_interval=2.0, max_attempts=10)
    state = reduce(PollState(), _snapshot(linear_workflow, ExecutionStatus.RUNNING), config)
    assert state.attempts == 1
    assert not is_done(state)
    assert next_delay(state, config) == 1.0

    state = reduce(state, _snapshot(linear_workflow, ExecutionStatus.WAITING), config)
    assert state.attempts == 2
    assert next_delay(state, config) == 2.0

    state = reduce(state, _snapshot(linear_workflow, ExecutionStatus.COMPLETED), config)
    assert is_done(state)
    assert not state.timed_out


def test_reduce_times_out_after_max_attempts(linear_workflow):
    config = PollingConfig(max_attempts=2)
    state = PollState()
    for _ in range(2):
        state = reduce(state, _snapshot(linear_workflow, ExecutionStatus.WAITING), config)
    assert state.timed_out
    assert is_done(state)
    assert state.status == ExecutionStatus.WAITING


@pytest.mark.asyncio
async def test_poll_execution_sleeps_by_status(linear_workflow):
    statuses = iter(
        [ExecutionStatus.QUEUED, ExecutionStatus.RUNNING, ExecutionStatus.WAITING, ExecutionStatus.COMPLETED]
    )
    delays = []

    async def fetch():
        return _snapshot(linear_workflow, next(statuses))

    async def fake_sleep(seconds):
        delays.append(seconds)

    seen = []
    state = await poll_execution(fetch, PollingConfig(), on_update=seen.append, sleep=fake_sleep)
    assert state.status == ExecutionStatus.COMPLETED
    assert state.attempts == 4
    assert delays == [1.0, 1.0, 2.0]
    assert [s.attempts for s in seen] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_poll_execution_can_stop_on_waiting(linear_workflow):
    async def fetch():
        return _snapshot(linear_workflow, ExecutionStatus.WAITING)

    async def fake_sleep(seconds):
        raise AssertionError("should not sleep")

    state = await poll_execution(fetch, stop_on_waiting=True, sleep=fake_sleep)
    assert state.status == ExecutionStatus.WAITING
    assert state.attempts == 1
