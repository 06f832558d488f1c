"""Shared fixtures: small workflow graphs and an in-memory engine."""

import pytest

import podflow.persistence as persistence
from podflow.config import PodflowConfig
from podflow.contracts import NodeDefinition, NodeKind, WorkflowDefinition
from podflow.control import WorkflowEngine
from podflow.nodes import default_registry
from podflow.persistence import InMemoryWorkflowRepository


def _trigger(node_id: str = "trigger") -> NodeDefinition:
    return NodeDefinition(id=node_id, name="Trigger", kind=NodeKind.TRIGGER, type="manual-trigger")


@pytest.fixture(autouse=True)
def _reset_repository_singleton(monkeypatch):
    monkeypatch.delenv("PODFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    persistence.reset_repository()
    yield
    persistence.reset_repository()


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def engine(repo, registry):
    return WorkflowEngine(repository=repo, registry=registry, config=PodflowConfig())


@pytest.fixture
def linear_workflow():
    """Trigger -> first -> second."""
    wf = WorkflowDefinition(
        id="wf-linear",
        name="Linear",
        nodes=[
            _trigger(),
            NodeDefinition(id="first", type="set", parameters={"values": {"first": True}}),
            NodeDefinition(id="second", type="set", parameters={"values": {"second": True}}),
        ],
    )
    return wf.connect("trigger", "first").connect("first", "second")


@pytest.fixture
def switch_workflow():
    """Trigger -> Switch{a, b} -> (a: node_a), (b: node_b)."""
    wf = WorkflowDefinition(
        id="wf-switch",
        name="Switch",
        nodes=[
            _trigger(),
            NodeDefinition(
                id="switch",
                kind=NodeKind.SWITCH,
                parameters={
                    "field": "route",
                    "cases": [
                        {"value": "a", "outputBranch": "a"},
                        {"value": "b", "outputBranch": "b"},
                    ],
                },
            ),
            NodeDefinition(id="node_a", type="set", parameters={"values": {"took": "a"}}),
            NodeDefinition(id="node_b", type="set", parameters={"values": {"took": "b"}}),
        ],
    )
    return (
        wf.connect("trigger", "switch")
        .connect("switch", "node_a", branch="a")
        .connect("switch", "node_b", branch="b")
    )


@pytest.fixture
def wait_workflow():
    """Trigger -> approve (wait) -> action."""
    wf = WorkflowDefinition(
        id="wf-wait",
        name="Approval",
        nodes=[
            _trigger(),
            NodeDefinition(
                id="approve",
                kind=NodeKind.WAIT,
                type="approval",
                parameters={"message": "Ship it?", "approvers": ["ops"]},
            ),
            NodeDefinition(id="action", type="set", parameters={"values": {"shipped": True}}),
        ],
    )
    return wf.connect("trigger", "approve").connect("approve", "action")
