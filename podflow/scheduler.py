"""Execution scheduler: drives one execution through its plan.

All traversal state lives in the stored :class:`WorkflowExecution` record. Each
write re-reads that record under the execution's lock, so a terminate or pause
issued through the control surface is observed at the next step boundary and a
cancelled record is never overwritten.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .compiler import ExecutionPlan, compile_workflow
from .constants import INTERRUPTED_STEP_ERROR
from .contracts import (
    ExecutionStatus,
    NodeDefinition,
    NodeKind,
    NodeResult,
    StepLog,
    StepStatus,
    WorkflowExecution,
    utcnow,
)
from .errors import NotFoundError, StepError
from .execute import StepExecutor, StepInput, StepOutcome, Success
from .frontier import compute_frontier, unexecuted_nodes

logger = logging.getLogger(__name__)


class ExecutionLocks:
    """One ``asyncio.Lock`` per execution id."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    def discard(self, execution_id: str) -> None:
        lock = self._locks.get(execution_id)
        if lock is not None and not lock.locked():
            del self._locks[execution_id]


def _duration_ms(execution: WorkflowExecution) -> Optional[int]:
    if execution.started_at is None or execution.completed_at is None:
        return None
    return int((execution.completed_at - execution.started_at).total_seconds() * 1000)


class ExecutionScheduler:
    """Runs executions to completion, suspension or failure."""

    def __init__(
        self,
        repository,
        step_executor: StepExecutor,
        locks: Optional[ExecutionLocks] = None,
    ) -> None:
        self._repository = repository
        self._steps = step_executor
        self.locks = locks or ExecutionLocks()

    # ------------------------------------------------------------------
    # Record access
    async def _load(self, execution_id: str) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    async def _should_stop(self, execution_id: str) -> bool:
        execution = await self._repository.get_execution(execution_id)
        return (
            execution is None
            or execution.status != ExecutionStatus.RUNNING
            or execution.pause_requested
        )

    def _build_input(
        self,
        plan: ExecutionPlan,
        execution: WorkflowExecution,
        node_id: str,
    ) -> StepInput:
        inputs: Dict[str, Any] = {}
        for edge in plan.incoming.get(node_id, []):
            result = execution.results.get(edge.source)
            if result is None:
                continue
            if (
                plan.is_conditional(edge.source)
                and not result.skipped
                and edge.branch != result.branch
            ):
                continue
            inputs[edge.source] = result.output
        return StepInput(
            execution_id=execution.id,
            node_id=node_id,
            trigger_type=execution.trigger_type,
            trigger_payload=execution.trigger_payload,
            inputs=inputs,
            steps={nid: r.output for nid, r in execution.results.items()},
        )

    # ------------------------------------------------------------------
    # Entry point
    async def run(
        self, execution_id: str, resume_payload: Optional[Dict[str, Any]] = None
    ) -> WorkflowExecution:
        """Advance ``execution_id`` until it completes, suspends or fails.

        Args:
            execution_id: Execution to drive. It must be ``queued``, ``running``
                or ``waiting``; terminal executions are returned unchanged.
            resume_payload: Data supplied by a resume command. A node left
                ``waiting`` completes with this payload merged into its output.
                Nodes after it see the payload only through that output.
        """
        lock = self.locks.get(execution_id)
        async with lock:
            execution = await self._load(execution_id)
            if execution.is_terminal:
                logger.info(
                    f"Execution {execution_id} already {execution.status.value}; nothing to run"
                )
                return execution
            if execution.status in (ExecutionStatus.QUEUED, ExecutionStatus.WAITING):
                execution.status = ExecutionStatus.RUNNING
                execution.started_at = execution.started_at or utcnow()
                await self._repository.save_execution(execution)
            logger.info(f"Running execution {execution_id} of workflow {execution.workflow_id}")

        plan = compile_workflow(execution.workflow)
        await self._close_interrupted_steps(execution)
        await self._complete_waiting_nodes(plan, execution_id, resume_payload)

        while True:
            async with lock:
                execution = await self._load(execution_id)
                if execution.status != ExecutionStatus.RUNNING:
                    return execution
                if execution.pause_requested:
                    execution.pause_requested = False
                    execution.status = ExecutionStatus.WAITING
                    await self._repository.save_execution(execution)
                    logger.info(
                        f"Execution {execution_id} paused at {execution.current_step}"
                    )
                    return execution

            frontier = compute_frontier(plan, execution)
            if frontier.exhausted:
                return await self._finish(plan, execution_id)

            disabled = [n for n in frontier.ready if plan.node(n).disabled]
            if disabled:
                for node_id in disabled:
                    await self._pass_through(plan, execution, node_id)
                continue

            runnable = [n for n in frontier.ready if plan.node(n).kind != NodeKind.WAIT]
            if runnable:
                await asyncio.gather(
                    *(
                        self._run_node(
                            plan,
                            plan.node(node_id),
                            self._build_input(plan, execution, node_id),
                        )
                        for node_id in runnable
                    )
                )
                continue

            node = plan.node(frontier.ready[0])
            suspended = await self._suspend_on(
                plan, node, self._build_input(plan, execution, node.id)
            )
            if suspended is not None:
                return suspended

    async def _close_interrupted_steps(self, execution: WorkflowExecution) -> None:
        now = utcnow()
        for log in await self._repository.list_step_logs(execution.id):
            if log.status == StepStatus.RUNNING and log.node_id not in execution.results:
                await self._repository.update_step_log(
                    log.id, StepStatus.ERROR, error=INTERRUPTED_STEP_ERROR, completed_at=now
                )
                logger.warning(
                    f"Closed attempt {log.attempt} of node {log.node_id}: "
                    f"execution {execution.id} was interrupted"
                )

    # ------------------------------------------------------------------
    # Steps
    async def _run_node(
        self, plan: ExecutionPlan, node: NodeDefinition, step_input: StepInput
    ) -> None:
        execution_id = step_input.execution_id
        async with self.locks.get(execution_id):
            execution = await self._load(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                return
            execution.current_step = node.id
            await self._repository.save_execution(execution)

        outcome = await self._steps.run(
            node, step_input, should_stop=lambda: self._should_stop(execution_id)
        )
        if outcome.interrupted:
            logger.info(f"Node {node.id} stopped during retry backoff")
            return

        error = None
        if isinstance(outcome.result, Success):
            if node.is_conditional and not outcome.result.branch:
                error = StepError(
                    node.id,
                    f"{node.kind.value.capitalize()} node {node.id} did not select a branch",
                    outcome.attempts,
                )
                await self._repository.update_step_log(
                    outcome.log_ids[-1],
                    StepStatus.ERROR,
                    error=str(error),
                    only_active=False,
                )
        else:
            error = StepError(node.id, outcome.result.error, outcome.attempts)

        if error is not None:
            await self._fail(execution_id, error)
            return
        await self._record(execution_id, node, outcome)

    async def _record(
        self, execution_id: str, node: NodeDefinition, outcome: StepOutcome
    ) -> None:
        async with self.locks.get(execution_id):
            execution = await self._load(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                logger.info(
                    f"Discarding result of node {node.id}: execution {execution_id} "
                    f"is {execution.status.value}"
                )
                return
            execution.results[node.id] = NodeResult(
                output=outcome.result.output,
                branch=outcome.result.branch,
                attempts=outcome.attempts,
                duration_ms=outcome.duration_ms,
            )
            execution.completed_steps.append(node.id)
            execution.current_step = node.id
            await self._repository.save_execution(execution)

    async def _fail(self, execution_id: str, error: StepError) -> None:
        async with self.locks.get(execution_id):
            execution = await self._load(execution_id)
            if execution.is_terminal:
                return
            execution.status = ExecutionStatus.ERRORED
            execution.error = str(error)
            execution.error_node = error.node_id
            execution.current_step = error.node_id
            execution.completed_at = utcnow()
            execution.duration_ms = _duration_ms(execution)
            await self._repository.save_execution(execution)
        logger.error(
            f"Execution {execution_id} errored at node {error.node_id} "
            f"after {error.attempts} attempt(s): {error}"
        )

    async def _pass_through(
        self, plan: ExecutionPlan, execution: WorkflowExecution, node_id: str
    ) -> None:
        node = plan.node(node_id)
        step_input = self._build_input(plan, execution, node_id)
        now = utcnow()
        await self._repository.append_step_log(
            StepLog(
                execution_id=execution.id,
                node_id=node_id,
                step_name=node.display_name,
                status=StepStatus.SKIPPED,
                input=step_input.snapshot(),
                output={"result": step_input.data},
                started_at=now,
                completed_at=now,
                duration_ms=0,
            )
        )
        async with self.locks.get(execution.id):
            current = await self._load(execution.id)
            if current.status != ExecutionStatus.RUNNING:
                return
            current.results[node_id] = NodeResult(
                output=step_input.data, attempts=0, duration_ms=0, skipped=True
            )
            await self._repository.save_execution(current)
        logger.info(f"Node {node_id} is disabled; passing input through")

    # ------------------------------------------------------------------
    # Wait nodes
    async def _suspend_on(
        self, plan: ExecutionPlan, node: NodeDefinition, step_input: StepInput
    ) -> Optional[WorkflowExecution]:
        """Run a wait node and suspend on it.

        Returns ``None`` when its retries were stopped; the run loop then
        re-reads the record and decides.
        """
        execution_id = step_input.execution_id
        lock = self.locks.get(execution_id)
        async with lock:
            execution = await self._load(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                return execution
            execution.current_step = node.id
            await self._repository.save_execution(execution)

        outcome = await self._steps.run(
            node,
            step_input,
            should_stop=lambda: self._should_stop(execution_id),
            success_status=StepStatus.WAITING,
        )
        if outcome.interrupted:
            return None
        if not outcome.succeeded:
            await self._fail(
                execution_id, StepError(node.id, outcome.result.error, outcome.attempts)
            )
            return await self._load(execution_id)

        async with lock:
            execution = await self._load(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                return execution
            execution.status = ExecutionStatus.WAITING
            execution.current_step = node.id
            execution.pause_requested = False
            await self._repository.save_execution(execution)
        logger.info(f"Execution {execution_id} waiting on node {node.id}")
        return execution

    async def _complete_waiting_nodes(
        self,
        plan: ExecutionPlan,
        execution_id: str,
        resume_payload: Optional[Dict[str, Any]],
    ) -> None:
        logs = await self._repository.list_step_logs(execution_id)
        latest: Dict[str, StepLog] = {}
        for log in logs:
            latest[log.node_id] = log
        waiting: List[StepLog] = [
            log for log in latest.values() if log.status == StepStatus.WAITING
        ]
        if not waiting:
            return

        async with self.locks.get(execution_id):
            execution = await self._load(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                return
            for log in waiting:
                if log.node_id in execution.results or log.node_id not in plan.nodes:
                    continue
                pending = (log.output or {}).get("result")
                if isinstance(pending, dict):
                    output: Any = {**pending, **(resume_payload or {})}
                elif resume_payload:
                    output = {"result": pending, **resume_payload}
                else:
                    output = pending
                completed_at = utcnow()
                await self._repository.update_step_log(
                    log.id,
                    StepStatus.SUCCESS,
                    output={"result": output},
                    completed_at=completed_at,
                    duration_ms=int(
                        (completed_at - log.started_at).total_seconds() * 1000
                    ),
                )
                execution.results[log.node_id] = NodeResult(
                    output=output, attempts=log.attempt
                )
                execution.completed_steps.append(log.node_id)
                execution.current_step = log.node_id
                logger.info(f"Node {log.node_id} resumed for execution {execution_id}")
            await self._repository.save_execution(execution)

    # ------------------------------------------------------------------
    # Completion
    async def _finish(self, plan: ExecutionPlan, execution_id: str) -> WorkflowExecution:
        async with self.locks.get(execution_id):
            execution = await self._load(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                return execution
            now = utcnow()
            for node_id in unexecuted_nodes(plan, execution):
                await self._repository.append_step_log(
                    StepLog(
                        execution_id=execution_id,
                        node_id=node_id,
                        step_name=plan.node(node_id).display_name,
                        status=StepStatus.SKIPPED,
                        started_at=now,
                        completed_at=now,
                        duration_ms=0,
                    )
                )
            execution.status = ExecutionStatus.COMPLETED
            execution.pause_requested = False
            execution.completed_at = now
            execution.duration_ms = _duration_ms(execution)
            await self._repository.save_execution(execution)
        logger.info(
            f"Execution {execution_id} completed in {execution.duration_ms}ms: "
            f"{execution.completed_steps}"
        )
        return execution
