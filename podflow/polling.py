"""Client-side status polling.

The client never owns execution state: :func:`reduce` folds server snapshots
into an immutable :class:`PollState` and :func:`next_delay` decides the
cadence from the last observed status.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

from .compiler import ValidationResult
from .config import PodflowConfig, PollingConfig
from .contracts import (
    ExecutionStatus,
    StepLog,
    WorkflowDefinition,
    WorkflowExecution,
)
from .errors import ApiError

logger = logging.getLogger(__name__)


class PollState(BaseModel):
    """What the client has seen so far."""

    execution: Optional[WorkflowExecution] = None
    attempts: int = 0
    timed_out: bool = False

    @property
    def status(self) -> Optional[ExecutionStatus]:
        return self.execution.status if self.execution else None


def reduce(
    state: PollState,
    snapshot: WorkflowExecution,
    config: Optional[PollingConfig] = None,
) -> PollState:
    """Fold one snapshot into ``state``; marks a timeout once attempts run out."""
    config = config or PollingConfig()
    attempts = state.attempts + 1
    timed_out = not snapshot.is_terminal and attempts >= config.max_attempts
    return PollState(execution=snapshot, attempts=attempts, timed_out=timed_out)


def is_done(state: PollState) -> bool:
    return state.timed_out or (state.execution is not None and state.execution.is_terminal)


def next_delay(state: PollState, config: Optional[PollingConfig] = None) -> float:
    config = config or PollingConfig()
    if state.status == ExecutionStatus.WAITING:
        return config.waiting_interval
    return config.running_interval


async def poll_execution(
    fetch: Callable[[], Awaitable[WorkflowExecution]],
    config: Optional[PollingConfig] = None,
    on_update: Optional[Callable[[PollState], None]] = None,
    stop_on_waiting: bool = False,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollState:
    """Poll ``fetch`` until the execution is terminal or attempts run out.

    Args:
        fetch: Coroutine returning the latest execution record.
        config: Interval and attempt settings.
        on_update: Called with every new state.
        stop_on_waiting: Return as soon as the execution is ``waiting``.
        sleep: Awaitable used between polls.
    """
    config = config or PollingConfig()
    state = PollState()
    while True:
        state = reduce(state, await fetch(), config)
        if on_update is not None:
            on_update(state)
        if is_done(state):
            if state.timed_out:
                logger.warning(
                    f"Gave up polling execution {state.execution.id} after "
                    f"{state.attempts} attempts"
                )
            return state
        if stop_on_waiting and state.status == ExecutionStatus.WAITING:
            return state
        await sleep(next_delay(state, config))


class PodflowClient:
    """Async HTTP client for the podflow control API."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8080",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @classmethod
    def from_config(cls, config: PodflowConfig) -> "PodflowClient":
        api = config.api
        return cls(base_url=api.base_url or f"http://{api.host}:{api.port}")

    async def __aenter__(self) -> "PodflowClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, url, **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ApiError(response.status_code, str(detail))
        return response.json()

    async def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        data = await self._request(
            "POST", "/workflows/validate", json=definition.model_dump(mode="json")
        )
        return ValidationResult.model_validate(data)

    async def save_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        data = await self._request("POST", "/workflows", json=definition.model_dump(mode="json"))
        return WorkflowDefinition.model_validate(data)

    async def execute(
        self,
        workflow_id: str,
        trigger_payload: Optional[Dict[str, Any]] = None,
        instance_id: Optional[str] = None,
    ) -> WorkflowExecution:
        data = await self._request(
            "POST",
            f"/workflows/{workflow_id}/execute",
            json={"trigger_payload": trigger_payload or {}, "instance_id": instance_id},
        )
        return WorkflowExecution.model_validate(data)

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        data = await self._request("GET", f"/executions/{execution_id}")
        return WorkflowExecution.model_validate(data)

    async def get_step_logs(self, execution_id: str) -> List[StepLog]:
        data = await self._request("GET", f"/executions/{execution_id}/steps")
        return [StepLog.model_validate(item) for item in data]

    async def pause(self, execution_id: str) -> WorkflowExecution:
        data = await self._request("POST", f"/executions/{execution_id}/pause")
        return WorkflowExecution.model_validate(data)

    async def resume(
        self, execution_id: str, payload: Optional[Dict[str, Any]] = None
    ) -> WorkflowExecution:
        data = await self._request(
            "POST", f"/executions/{execution_id}/resume", json=payload
        )
        return WorkflowExecution.model_validate(data)

    async def terminate(self, execution_id: str) -> WorkflowExecution:
        data = await self._request("POST", f"/executions/{execution_id}/terminate")
        return WorkflowExecution.model_validate(data)

    async def wait(
        self,
        execution_id: str,
        config: Optional[PollingConfig] = None,
        stop_on_waiting: bool = False,
    ) -> PollState:
        return await poll_execution(
            lambda: self.get_execution(execution_id),
            config,
            stop_on_waiting=stop_on_waiting,
        )
