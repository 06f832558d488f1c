"""Traversal state derived from an execution plan and recorded results.

Nothing here keeps state between calls: the ready set, the dead (never to run)
set and the per-node display statuses are all recomputed from the plan and the
execution record, which is what lets a paused execution resume in any process.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from .compiler import ExecutionPlan, PlanEdge
from .contracts import ExecutionStatus, StepLog, StepStatus, WorkflowExecution

ACTIVE = "active"
DEAD = "dead"
PENDING = "pending"


class Frontier(BaseModel):
    ready: List[str] = Field(default_factory=list)
    dead: Set[str] = Field(default_factory=set)

    @property
    def exhausted(self) -> bool:
        return not self.ready


def _edge_state(
    plan: ExecutionPlan,
    execution: WorkflowExecution,
    edge: PlanEdge,
    dead: Set[str],
) -> str:
    if edge.source in dead:
        return DEAD
    result = execution.results.get(edge.source)
    if result is None:
        return PENDING
    if result.skipped or not plan.is_conditional(edge.source):
        return ACTIVE
    return ACTIVE if edge.branch == result.branch else DEAD


def compute_frontier(plan: ExecutionPlan, execution: WorkflowExecution) -> Frontier:
    """Return the nodes that can run now and those that never will.

    A node is ready once every incoming edge is resolved and at least one of
    them is active; it is dead when all incoming edges are dead. An edge is
    active when its source completed and either the source is not conditional
    or the edge belongs to the branch the source selected.
    """
    start = set(execution.start_nodes)
    dead: Set[str] = set()
    ready: List[str] = []
    for node_id in plan.order:
        if node_id in execution.results:
            continue
        if node_id in start:
            ready.append(node_id)
            continue
        incoming = plan.incoming.get(node_id, [])
        if not incoming:
            dead.add(node_id)
            continue
        states = {_edge_state(plan, execution, edge, dead) for edge in incoming}
        if PENDING in states:
            continue
        if ACTIVE in states:
            ready.append(node_id)
        else:
            dead.add(node_id)
    return Frontier(ready=ready, dead=dead)


def unexecuted_nodes(plan: ExecutionPlan, execution: WorkflowExecution) -> List[str]:
    """Plan nodes that have no recorded result, in plan order."""
    return [node_id for node_id in plan.order if node_id not in execution.results]


def executed_edges(
    plan: ExecutionPlan, execution: WorkflowExecution
) -> Set[Tuple[str, str, str]]:
    """Edges actually traversed, as ``(source, target, branch)`` triples."""
    def done(node_id: str) -> bool:
        result = execution.results.get(node_id)
        return result is not None and not result.skipped

    edges: Set[Tuple[str, str, str]] = set()
    for edge in plan.edges():
        if not (done(edge.source) and done(edge.target)):
            continue
        if plan.is_conditional(edge.source):
            if edge.branch != execution.results[edge.source].branch:
                continue
        edges.add((edge.source, edge.target, edge.branch))
    return edges


def _latest_logs(logs: Iterable[StepLog]) -> Dict[str, StepLog]:
    latest: Dict[str, StepLog] = {}
    for log in logs:
        current = latest.get(log.node_id)
        if current is None or log.attempt >= current.attempt:
            latest[log.node_id] = log
    return latest


def node_statuses(
    plan: ExecutionPlan,
    execution: WorkflowExecution,
    logs: Optional[Iterable[StepLog]] = None,
) -> Dict[str, StepStatus]:
    """Status of every plan node as shown to clients.

    Nodes never reached count as ``skipped`` once the execution completed or
    was cancelled, and as ``pending`` otherwise.
    """
    latest = _latest_logs(logs or [])
    unreached = (
        StepStatus.SKIPPED
        if execution.status in (ExecutionStatus.COMPLETED, ExecutionStatus.CANCELLED)
        else StepStatus.PENDING
    )
    statuses: Dict[str, StepStatus] = {}
    for node_id in plan.order:
        result = execution.results.get(node_id)
        if result is not None:
            statuses[node_id] = StepStatus.SKIPPED if result.skipped else StepStatus.SUCCESS
            continue
        log = latest.get(node_id)
        if log is not None and log.status != StepStatus.PENDING:
            statuses[node_id] = log.status
        else:
            statuses[node_id] = unreached
    return statuses
