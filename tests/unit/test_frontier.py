"""Traversal state derived from plans and recorded results."""

from podflow.compiler import compile_workflow
from podflow.contracts import (
    ExecutionStatus,
    NodeDefinition,
    NodeKind,
    NodeResult,
    StepLog,
    StepStatus,
    WorkflowDefinition,
    WorkflowExecution,
)
from podflow.frontier import compute_frontier, executed_edges, node_statuses


def _execution(definition, **fields):
    return WorkflowExecution(
        workflow_id=definition.id, workflow=definition, start_nodes=["trigger"], **fields
    )


def test_initial_frontier_is_start_trigger(switch_workflow):
    plan = compile_workflow(switch_workflow)
    frontier = compute_frontier(plan, _execution(switch_workflow))
    assert frontier.ready == ["trigger"]
    assert frontier.dead == set()


def test_unselected_branch_is_dead(switch_workflow):
    plan = compile_workflow(switch_workflow)
    execution = _execution(
        switch_workflow,
        results={
            "trigger": NodeResult(output={"route": "a"}),
            "switch": NodeResult(output={"route": "a"}, branch="a"),
        },
    )
    frontier = compute_frontier(plan, execution)
    assert frontier.ready == ["node_a"]
    assert frontier.dead == {"node_b"}


def test_join_waits_for_pending_inputs_and_survives_one_dead_branch():
    wf = WorkflowDefinition(
        name="join",
        nodes=[
            NodeDefinition(id="trigger", kind=NodeKind.TRIGGER),
            NodeDefinition(id="check", kind=NodeKind.CONDITION),
            NodeDefinition(id="yes"),
            NodeDefinition(id="no"),
            NodeDefinition(id="side"),
            NodeDefinition(id="join"),
        ],
    )
    (
        wf.connect("trigger", "check")
        .connect("trigger", "side")
        .connect("check", "yes", branch="true")
        .connect("check", "no", branch="false")
        .connect("yes", "join")
        .connect("no", "join")
        .connect("side", "join")
    )
    plan = compile_workflow(wf)
    results = {
        "trigger": NodeResult(),
        "check": NodeResult(branch="true"),
        "yes": NodeResult(),
    }
    execution = _execution(wf, results=results)
    frontier = compute_frontier(plan, execution)
    assert frontier.ready == ["side"]
    assert "no" in frontier.dead
    assert "join" not in frontier.ready

    results["side"] = NodeResult()
    frontier = compute_frontier(plan, _execution(wf, results=results))
    assert frontier.ready == ["join"]


def test_skipped_conditional_activates_all_branches(switch_workflow):
    plan = compile_workflow(switch_workflow)
    execution = _execution(
        switch_workflow,
        results={"trigger": NodeResult(), "switch": NodeResult(skipped=True)},
    )
    assert compute_frontier(plan, execution).ready == ["node_a", "node_b"]


def test_executed_edges_follow_selected_branch(switch_workflow):
    plan = compile_workflow(switch_workflow)
    execution = _execution(
        switch_workflow,
        results={
            "trigger": NodeResult(),
            "switch": NodeResult(branch="a"),
            "node_a": NodeResult(),
        },
    )
    assert executed_edges(plan, execution) == {
        ("trigger", "switch", "main"),
        ("switch", "node_a", "a"),
    }


def test_node_statuses_infer_skipped_only_when_finished(switch_workflow):
    plan = compile_workflow(switch_workflow)
    results = {"trigger": NodeResult(), "switch": NodeResult(branch="a")}
    running = _execution(switch_workflow, status=ExecutionStatus.RUNNING, results=results)
    logs = [
        StepLog(
            execution_id=running.id,
            node_id="node_a",
            step_name="node_a",
            status=StepStatus.RETRYING,
            attempt=1,
        ),
        StepLog(
            execution_id=running.id,
            node_id="node_a",
            step_name="node_a",
            status=StepStatus.RUNNING,
            attempt=2,
        ),
    ]
    statuses = node_statuses(plan, running, logs)
    assert statuses == {
        "trigger": StepStatus.SUCCESS,
        "switch": StepStatus.SUCCESS,
        "node_a": StepStatus.RUNNING,
        "node_b": StepStatus.PENDING,
    }

    cancelled = running.model_copy(update={"status": ExecutionStatus.CANCELLED})
    assert node_statuses(plan, cancelled)["node_b"] == StepStatus.SKIPPED
