"""Graph compiler: validates workflow definitions and lowers them to plans.

Validation is pure: it only inspects the definition and never touches node
executors or storage. A valid definition is lowered to an
:class:`ExecutionPlan`, an adjacency structure keyed by node id with outgoing
edges grouped by branch tag and a topological order for the scheduler.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional, Set

from pydantic import BaseModel, Field

from .constants import MAIN_BRANCH
from .contracts import (
    Connection,
    ConnectionMap,
    NodeDefinition,
    NodeKind,
    WorkflowDefinition,
)
from .errors import WorkflowValidationError

logger = logging.getLogger(__name__)


class ValidationIssue(BaseModel):
    """A single validation finding."""

    code: str
    message: str
    severity: Literal["error", "warning"] = "error"
    node_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


class PlanEdge(BaseModel):
    """A resolved connection inside an execution plan."""

    source: str
    target: str
    branch: str = MAIN_BRANCH
    index: int = 0
    label: Optional[str] = None


class ExecutionPlan(BaseModel):
    """Executable form of a workflow definition."""

    workflow_id: str
    name: str
    version: int = 1
    nodes: Dict[str, NodeDefinition] = Field(default_factory=dict)
    outgoing: Dict[str, Dict[str, List[PlanEdge]]] = Field(default_factory=dict)
    incoming: Dict[str, List[PlanEdge]] = Field(default_factory=dict)
    order: List[str] = Field(default_factory=list)
    triggers: List[str] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    def node(self, node_id: str) -> NodeDefinition:
        return self.nodes[node_id]

    def is_conditional(self, node_id: str) -> bool:
        return self.nodes[node_id].is_conditional

    def edges(self) -> List[PlanEdge]:
        return [
            edge
            for groups in self.outgoing.values()
            for group in groups.values()
            for edge in group
        ]

    def successors(self, node_id: str, branch: Optional[str] = None) -> List[str]:
        """Targets reachable from ``node_id``, limited to ``branch`` if given."""
        groups = self.outgoing.get(node_id, {})
        targets: List[str] = []
        for tag, group in groups.items():
            if branch is not None and tag != branch:
                continue
            for edge in group:
                if edge.target not in targets:
                    targets.append(edge.target)
        return targets

    def predecessors(self, node_id: str) -> List[str]:
        sources: List[str] = []
        for edge in self.incoming.get(node_id, []):
            if edge.source not in sources:
                sources.append(edge.source)
        return sources


def _issue(
    code: str,
    message: str,
    node_id: Optional[str] = None,
    severity: Literal["error", "warning"] = "error",
    **context: Any,
) -> ValidationIssue:
    return ValidationIssue(
        code=code, message=message, severity=severity, node_id=node_id, context=context
    )


def _iter_connections(connections: ConnectionMap):
    for source_id, groups in connections.items():
        for branch, group in groups.items():
            for connection in group:
                yield source_id, branch, connection


def find_unreachable_nodes(definition: WorkflowDefinition) -> List[str]:
    """Return ids of nodes not reachable from any trigger."""
    node_ids = {node.id for node in definition.nodes}
    triggers = [n.id for n in definition.nodes if n.kind == NodeKind.TRIGGER]
    if not triggers:
        return [node.id for node in definition.nodes]

    reachable: Set[str] = set(triggers)
    queue = deque(triggers)
    while queue:
        current = queue.popleft()
        for group in definition.connections.get(current, {}).values():
            for connection in group:
                if connection.node in node_ids and connection.node not in reachable:
                    reachable.add(connection.node)
                    queue.append(connection.node)
    return [node.id for node in definition.nodes if node.id not in reachable]


def detect_cycles(definition: WorkflowDefinition) -> List[List[str]]:
    """Find cycles using depth-first search with three-colour marking.

    The search keeps an explicit stack of ``(node_id, targets)`` iterators so
    long chains do not hit the interpreter's recursion limit.
    """
    white, grey, black = 0, 1, 2
    node_ids = [node.id for node in definition.nodes]
    known = set(node_ids)
    colour = {node_id: white for node_id in node_ids}
    cycles: List[List[str]] = []

    def targets(node_id: str) -> Iterator[str]:
        for group in definition.connections.get(node_id, {}).values():
            for connection in group:
                if connection.node in known:
                    yield connection.node

    for root in node_ids:
        if colour[root] != white:
            continue
        colour[root] = grey
        path = [root]
        stack = [(root, targets(root))]
        while stack:
            node_id, pending = stack[-1]
            for target in pending:
                if colour[target] == white:
                    colour[target] = grey
                    path.append(target)
                    stack.append((target, targets(target)))
                    break
                if colour[target] == grey:
                    start = path.index(target)
                    cycles.append(path[start:] + [target])
            else:
                stack.pop()
                path.pop()
                colour[node_id] = black
    return cycles


def topological_order(
    node_ids: Iterable[str], edges: Iterable[PlanEdge]
) -> List[str]:
    """Kahn's algorithm, stable with respect to declaration order."""
    ordered_ids = list(node_ids)
    in_degree = {node_id: 0 for node_id in ordered_ids}
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in ordered_ids}
    for edge in edges:
        adjacency[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    queue = deque(node_id for node_id in ordered_ids if in_degree[node_id] == 0)
    result: List[str] = []
    while queue:
        node_id = queue.popleft()
        result.append(node_id)
        for target in adjacency[node_id]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                queue.append(target)

    if len(result) != len(ordered_ids):
        remaining = [n for n in ordered_ids if n not in result]
        raise ValueError(f"Cycle detected in workflow. Nodes involved: {remaining}")
    return result


def validate_workflow(
    definition: WorkflowDefinition, known_types: Optional[Iterable[str]] = None
) -> ValidationResult:
    """Check a workflow definition without side effects.

    Args:
        definition: Workflow to check.
        known_types: Optional collection of executor types. When given, nodes
            whose type is not in the collection are reported as errors.
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    if not definition.name or not definition.name.strip():
        errors.append(_issue("MISSING_NAME", "Workflow name is required"))

    if not definition.nodes:
        errors.append(_issue("NO_NODES", "Workflow must have at least one node"))

    seen: Set[str] = set()
    for node in definition.nodes:
        if not node.id or not node.id.strip():
            errors.append(_issue("MISSING_NODE_ID", "Node ID is required"))
        elif node.id in seen:
            errors.append(
                _issue("DUPLICATE_NODE_ID", f"Duplicate node ID: {node.id}", node.id)
            )
        else:
            seen.add(node.id)
        if node.disabled:
            warnings.append(
                _issue(
                    "DISABLED_NODE",
                    f'Node "{node.display_name}" is disabled',
                    node.id,
                    severity="warning",
                )
            )

    if definition.nodes and not any(
        node.kind == NodeKind.TRIGGER for node in definition.nodes
    ):
        errors.append(
            _issue("NO_TRIGGER", "Workflow must have at least one trigger node")
        )

    dangling = False
    for source_id, branch, connection in _iter_connections(definition.connections):
        if source_id not in seen:
            dangling = True
            errors.append(
                _issue(
                    "UNKNOWN_SOURCE",
                    f'Connection source node "{source_id}" does not exist',
                    source_id,
                    branch=branch,
                )
            )
        elif connection.node not in seen:
            dangling = True
            errors.append(
                _issue(
                    "DANGLING_CONNECTION",
                    f'Connection target node "{connection.node}" does not exist',
                    source_id,
                    branch=branch,
                    target=connection.node,
                )
            )
        elif connection.node == source_id:
            errors.append(
                _issue(
                    "SELF_REFERENCE",
                    f'Node "{source_id}" has a self-referencing connection',
                    source_id,
                )
            )

    for node in definition.nodes:
        if not node.is_conditional:
            continue
        groups = definition.connections.get(node.id, {})
        labeled = [tag for tag, group in groups.items() if tag != MAIN_BRANCH and group]
        if not labeled:
            errors.append(
                _issue(
                    "MISSING_BRANCHES",
                    f'{node.kind.value.capitalize()} node "{node.display_name}" '
                    "needs at least one labeled output branch",
                    node.id,
                )
            )

    if known_types is not None:
        types = set(known_types)
        for node in definition.nodes:
            if node.executor_type not in types and node.kind.value not in types:
                errors.append(
                    _issue(
                        "UNKNOWN_NODE_TYPE",
                        f"Unknown node type: {node.executor_type} (node: {node.display_name})",
                        node.id,
                        node_type=node.executor_type,
                    )
                )

    if not dangling:
        for cycle in detect_cycles(definition):
            errors.append(
                _issue(
                    "CYCLE",
                    f"Cycle detected: {' -> '.join(cycle)}",
                    cycle[0],
                    cycle=cycle,
                )
            )

    if any(node.kind == NodeKind.TRIGGER for node in definition.nodes):
        for node_id in find_unreachable_nodes(definition):
            warnings.append(
                _issue(
                    "UNREACHABLE_NODE",
                    "Node is unreachable from any trigger",
                    node_id,
                    severity="warning",
                )
            )

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def compile_workflow(
    definition: WorkflowDefinition, known_types: Optional[Iterable[str]] = None
) -> ExecutionPlan:
    """Validate ``definition`` and lower it into an :class:`ExecutionPlan`.

    Raises:
        WorkflowValidationError: If the definition has validation errors.
    """
    result = validate_workflow(definition, known_types)
    if not result.valid:
        raise WorkflowValidationError(result)

    nodes = definition.node_map()
    outgoing: Dict[str, Dict[str, List[PlanEdge]]] = {}
    incoming: Dict[str, List[PlanEdge]] = {node_id: [] for node_id in nodes}
    for source_id, branch, connection in _iter_connections(definition.connections):
        edge = PlanEdge(
            source=source_id,
            target=connection.node,
            branch=branch,
            index=connection.index,
            label=connection.label,
        )
        outgoing.setdefault(source_id, {}).setdefault(branch, []).append(edge)
        incoming[connection.node].append(edge)

    plan = ExecutionPlan(
        workflow_id=definition.id,
        name=definition.name,
        version=definition.version,
        nodes=nodes,
        outgoing=outgoing,
        incoming=incoming,
        order=topological_order(nodes, [e for es in incoming.values() for e in es]),
        triggers=[n.id for n in definition.nodes if n.kind == NodeKind.TRIGGER],
        warnings=result.warnings,
    )
    logger.debug(f"Compiled workflow {definition.id}: order={plan.order}")
    return plan


def decompile(plan: ExecutionPlan) -> WorkflowDefinition:
    """Rebuild an authoring-time definition from a compiled plan."""
    connections: ConnectionMap = {}
    for source_id, groups in plan.outgoing.items():
        connections[source_id] = {
            branch: [
                Connection(node=edge.target, index=edge.index, label=edge.label)
                for edge in group
            ]
            for branch, group in groups.items()
        }
    return WorkflowDefinition(
        id=plan.workflow_id,
        name=plan.name,
        version=plan.version,
        nodes=list(plan.nodes.values()),
        connections=connections,
    )
