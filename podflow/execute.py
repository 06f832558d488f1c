"""Step execution for podflow workflows.

A node executor is supplied by the caller and only has to return a
:class:`Success` or :class:`Failure`. Retries, backoff and step logging are
owned by :class:`StepExecutor`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from pydantic import BaseModel, Field

from .contracts import (
    NodeDefinition,
    RetryPolicy,
    StepLog,
    StepStatus,
    TriggerType,
    utcnow,
)
from .errors import StepFailed
from .utils.interpolation import has_variables, interpolate
from .utils.retry import compute_backoff, wait_backoff

if TYPE_CHECKING:
    from .nodes import NodeRegistry
    from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class Success(BaseModel):
    """Successful node invocation.

    Conditional nodes must set ``branch`` to the selected output group tag.
    """

    output: Any = None
    branch: Optional[str] = None


class Failure(BaseModel):
    """Failed node invocation."""

    error: str
    retryable: bool = False


StepResult = Union[Success, Failure]


class StepInput(BaseModel):
    """Everything a node executor may read when it runs."""

    execution_id: str
    node_id: str
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    steps: Dict[str, Any] = Field(default_factory=dict)

    @property
    def data(self) -> Any:
        """Output of the single upstream node, or a mapping for several."""
        if not self.inputs:
            return self.trigger_payload
        if len(self.inputs) == 1:
            return next(iter(self.inputs.values()))
        return dict(self.inputs)

    def snapshot(self) -> Dict[str, Any]:
        return {"data": self.data}

    def variables(self) -> Dict[str, Any]:
        """Context for resolving `{{...}}` placeholders in node parameters."""
        return {
            "trigger": {"type": self.trigger_type.value, "data": self.trigger_payload},
            "steps": {node_id: {"data": output} for node_id, output in self.steps.items()},
            "input": {"data": self.data},
            "execution": {"id": self.execution_id},
        }


@runtime_checkable
class NodeExecutor(Protocol):
    """Side-effecting logic for one node type."""

    async def execute(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        ...


class FunctionExecutor:
    """Adapt an ``async def fn(node, step_input)`` callable to ``NodeExecutor``."""

    def __init__(
        self, func: Callable[[NodeDefinition, StepInput], Awaitable[Any]]
    ) -> None:
        self._func = func

    async def execute(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        return await self._func(node, step_input)


class StepOutcome(BaseModel):
    """Result of running one node through its retry policy."""

    result: Union[Success, Failure]
    attempts: int
    duration_ms: int
    log_ids: List[str] = Field(default_factory=list)
    interrupted: bool = False

    @property
    def succeeded(self) -> bool:
        return isinstance(self.result, Success)


def _as_snapshot(value: Any) -> Dict[str, Any]:
    return {"result": value}


class StepExecutor:
    """Runs a node with its retry policy and records one log row per attempt."""

    def __init__(
        self,
        registry: "NodeRegistry",
        repository: "WorkflowRepository",
        default_retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._default_retry = default_retry or RetryPolicy()

    def retry_policy(self, node: NodeDefinition) -> RetryPolicy:
        return node.retry or self._default_retry

    async def _invoke(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        executor = self._registry.get(node)
        if executor is None:
            return Failure(error=f"Unknown node type: {node.executor_type}")
        if has_variables(node.parameters):
            node = node.model_copy(
                update={"parameters": interpolate(node.parameters, step_input.variables())}
            )
        try:
            call = executor.execute(node, step_input)
            if node.timeout:
                result = await asyncio.wait_for(call, timeout=node.timeout)
            else:
                result = await call
        except StepFailed as e:
            return Failure(error=str(e), retryable=e.retryable)
        except asyncio.TimeoutError:
            return Failure(
                error=f"Node {node.id} timed out after {node.timeout}s", retryable=True
            )
        except Exception as e:
            logger.warning(f"Node {node.id} raised {type(e).__name__}: {e}")
            return Failure(error=str(e) or type(e).__name__, retryable=True)

        if isinstance(result, (Success, Failure)):
            return result
        return Success(output=result)

    async def run(
        self,
        node: NodeDefinition,
        step_input: StepInput,
        should_stop: Optional[Callable[[], Awaitable[bool]]] = None,
        success_status: StepStatus = StepStatus.SUCCESS,
    ) -> StepOutcome:
        """Execute ``node`` until it succeeds or its attempts are exhausted.

        Args:
            node: Node to run.
            step_input: Input handed to the node executor on every attempt.
            should_stop: Coroutine checked during backoff waits; returning
                ``True`` abandons the remaining attempts.
            success_status: Status written to the log row on success. Wait
                nodes use ``waiting``.

        A node that was stopped during backoff and is run again continues
        its attempt numbering, and the attempts it already used count
        against ``max_attempts``.
        """
        policy = self.retry_policy(node)
        execution_id = step_input.execution_id
        previous = await self._repository.list_step_logs(execution_id, node.id)
        attempt = max((log.attempt for log in previous), default=0)
        used = sum(1 for log in previous if log.status == StepStatus.RETRYING)
        last_attempt = attempt + max(policy.max_attempts - used, 1)
        log_ids: List[str] = []
        started = time.monotonic()
        result: StepResult = Failure(error="Node was not executed")

        while attempt < last_attempt:
            attempt += 1
            log = StepLog(
                execution_id=execution_id,
                node_id=node.id,
                step_name=node.display_name,
                status=StepStatus.RUNNING,
                attempt=attempt,
                input=step_input.snapshot(),
            )
            await self._repository.append_step_log(log)
            log_ids.append(log.id)
            attempt_started = time.monotonic()

            result = await self._invoke(node, step_input)
            elapsed = int((time.monotonic() - attempt_started) * 1000)

            if isinstance(result, Success):
                output = _as_snapshot(result.output)
                if result.branch is not None:
                    output["branch"] = result.branch
                await self._repository.update_step_log(
                    log.id,
                    status=success_status,
                    output=output,
                    completed_at=None if success_status == StepStatus.WAITING else utcnow(),
                    duration_ms=elapsed,
                )
                logger.info(
                    f"Node {node.id} succeeded on attempt {attempt} "
                    f"for execution_id={execution_id}"
                )
                break

            retry = result.retryable and attempt < last_attempt
            await self._repository.update_step_log(
                log.id,
                status=StepStatus.RETRYING if retry else StepStatus.ERROR,
                error=result.error,
                completed_at=utcnow(),
                duration_ms=elapsed,
            )
            if not retry:
                logger.error(
                    f"Node {node.id} failed on attempt {attempt}/{last_attempt} "
                    f"for execution_id={execution_id}: {result.error}"
                )
                break

            delay = compute_backoff(policy, attempt)
            logger.info(
                f"Retrying node {node.id} in {delay:.2f}s "
                f"(attempt {attempt + 1}/{last_attempt})"
            )
            if await wait_backoff(delay, should_stop):
                logger.info(f"Retry of node {node.id} abandoned: execution stopping")
                return StepOutcome(
                    result=result,
                    attempts=attempt,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    log_ids=log_ids,
                    interrupted=True,
                )

        return StepOutcome(
            result=result,
            attempts=attempt,
            duration_ms=int((time.monotonic() - started) * 1000),
            log_ids=log_ids,
        )
