"""Conversion between the visual editor graph and workflow definitions."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import MAIN_BRANCH
from .contracts import NodeDefinition, NodeKind, WorkflowDefinition

# Keys of ``EditorNode.data`` that are not node parameters
_RESERVED_DATA_KEYS = ("label", "nodeType", "disabled", "retry", "timeout", "notes")


class EditorPosition(BaseModel):
    x: float = 0.0
    y: float = 0.0


class EditorNode(BaseModel):
    id: str
    type: NodeKind = NodeKind.ACTION
    position: EditorPosition = Field(default_factory=EditorPosition)
    data: Dict[str, Any] = Field(default_factory=dict)


class EditorEdge(BaseModel):
    id: str
    source: str
    target: str
    sourceHandle: Optional[str] = None
    targetHandle: Optional[str] = None
    label: Optional[str] = None


class EditorGraph(BaseModel):
    nodes: List[EditorNode] = Field(default_factory=list)
    edges: List[EditorEdge] = Field(default_factory=list)


def _node_to_editor(node: NodeDefinition) -> EditorNode:
    data: Dict[str, Any] = dict(node.parameters)
    data["label"] = node.display_name
    data["nodeType"] = node.executor_type
    if node.disabled:
        data["disabled"] = True
    if node.retry is not None:
        data["retry"] = node.retry.model_dump()
    if node.timeout is not None:
        data["timeout"] = node.timeout
    if node.notes:
        data["notes"] = node.notes
    return EditorNode(
        id=node.id,
        type=node.kind,
        position=EditorPosition(x=node.position[0], y=node.position[1]),
        data=data,
    )


def _node_from_editor(node: EditorNode) -> NodeDefinition:
    data = node.data
    parameters = {k: v for k, v in data.items() if k not in _RESERVED_DATA_KEYS}
    fields: Dict[str, Any] = {
        "id": node.id,
        "name": data.get("label") or node.id,
        "kind": node.type,
        "type": data.get("nodeType"),
        "position": (node.position.x, node.position.y),
        "parameters": parameters,
        "disabled": bool(data.get("disabled", False)),
        "timeout": data.get("timeout"),
        "notes": data.get("notes"),
    }
    if data.get("retry"):
        fields["retry"] = data["retry"]
    return NodeDefinition(**fields)


def to_editor_graph(definition: WorkflowDefinition) -> EditorGraph:
    """Render ``definition`` as editor nodes and edges."""
    edges: List[EditorEdge] = []
    for source_id, groups in definition.connections.items():
        for branch, group in groups.items():
            for position, connection in enumerate(group):
                edges.append(
                    EditorEdge(
                        id=f"{source_id}:{branch}:{position}->{connection.node}",
                        source=source_id,
                        target=connection.node,
                        sourceHandle=None if branch == MAIN_BRANCH else branch,
                        targetHandle=str(connection.index) if connection.index else None,
                        label=connection.label,
                    )
                )
    return EditorGraph(
        nodes=[_node_to_editor(node) for node in definition.nodes], edges=edges
    )


def from_editor_graph(
    graph: EditorGraph,
    name: str,
    workflow_id: Optional[str] = None,
    **fields: Any,
) -> WorkflowDefinition:
    """Build a workflow definition from editor nodes and edges.

    Edges are grouped per source by ``sourceHandle`` (the branch tag), keeping
    the ``main`` group first and the edges in their original order.
    """
    definition = WorkflowDefinition(
        name=name,
        nodes=[_node_from_editor(node) for node in graph.nodes],
        **({"id": workflow_id} if workflow_id else {}),
        **fields,
    )
    by_source: Dict[str, List[EditorEdge]] = {}
    for edge in graph.edges:
        by_source.setdefault(edge.source, []).append(edge)

    for source_id, edges in by_source.items():
        handles: List[str] = []
        for edge in edges:
            handle = edge.sourceHandle or MAIN_BRANCH
            if handle not in handles:
                handles.append(handle)
        if MAIN_BRANCH in handles:
            handles.remove(MAIN_BRANCH)
            handles.insert(0, MAIN_BRANCH)
        for handle in handles:
            for edge in edges:
                if (edge.sourceHandle or MAIN_BRANCH) != handle:
                    continue
                definition.connect(
                    source_id,
                    edge.target,
                    branch=handle,
                    index=_input_index(edge.targetHandle),
                    label=edge.label,
                )
    return definition


def _input_index(handle: Optional[str]) -> int:
    if not handle:
        return 0
    digits = handle.rsplit("-", 1)[-1]
    return int(digits) if digits.isdigit() else 0
