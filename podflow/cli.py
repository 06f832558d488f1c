"""Command line interface for podflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml

from podflow.config import load_config
from podflow.contracts import ExecutionStatus, WorkflowDefinition
from podflow.control import WorkflowEngine
from podflow.editor import EditorGraph, from_editor_graph
from podflow.errors import PodflowError
from podflow.persistence import get_repository

app = typer.Typer(help="CLI for podflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
execution_app = typer.Typer(help="Commands for inspecting and controlling executions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")

_state: Dict[str, Any] = {}


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config YAML"),
) -> None:
    """podflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config_path"] = str(config) if config is not None else None


def _engine() -> WorkflowEngine:
    config_path = _state.get("config_path")
    if config_path is None:
        return WorkflowEngine(repository=get_repository(), config=load_config())
    config = load_config(config_path)
    return WorkflowEngine(repository=get_repository(config=config), config=config)


def _load_definition(path: Path) -> WorkflowDefinition:
    """Read a workflow from JSON or YAML, in storage or editor format."""
    text = path.read_text()
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if "edges" in data:
        graph = EditorGraph(nodes=data.get("nodes", []), edges=data.get("edges", []))
        fields = {k: v for k, v in data.items() if k not in ("nodes", "edges", "name", "id")}
        return from_editor_graph(
            graph, data.get("name") or path.stem, workflow_id=data.get("id"), **fields
        )
    return WorkflowDefinition.model_validate(data)


def _parse_payload(payload: Optional[str]) -> Dict[str, Any]:
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except ValueError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    if not isinstance(data, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    return data


def _run(coro):
    try:
        return asyncio.run(coro)
    except PodflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_execution(execution) -> None:
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Workflow: {execution.workflow_id}")
    if execution.current_step:
        typer.echo(f"Current step: {execution.current_step}")
    if execution.completed_steps:
        typer.echo(f"Completed: {', '.join(execution.completed_steps)}")
    if execution.error:
        typer.echo(f"Error ({execution.error_node}): {execution.error}")


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Validate a workflow definition file without storing it.

    Example:
        podflow workflow validate ./flows/approval.yaml
    """
    definition = _load_definition(path)
    result = _engine().validate(definition)
    for issue in result.errors:
        typer.secho(f"error   {issue.code}: {issue.message}", fg=typer.colors.RED)
    for issue in result.warnings:
        typer.secho(f"warning {issue.code}: {issue.message}", fg=typer.colors.YELLOW)
    if not result.valid:
        raise typer.Exit(code=1)
    typer.echo(f"Workflow '{definition.name}' is valid")


@workflow_app.command("save")
def workflow_save(path: Path) -> None:
    """Validate and store a workflow definition file."""
    definition = _load_definition(path)
    saved = _run(_engine().save_workflow(definition))
    typer.echo(f"Saved workflow {saved.id} (version {saved.version})")


@workflow_app.command("list")
def workflow_list() -> None:
    """List stored workflows."""
    workflows = _run(_engine().list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "active" if wf.active else "inactive"
        typer.echo(f"{wf.id}\t{wf.name}\tv{wf.version}\t{state}")


@workflow_app.command("run")
def workflow_run(
    target: str,
    payload: Optional[str] = typer.Option(None, help="Trigger payload as JSON"),
    instance_id: Optional[str] = typer.Option(None, help="Idempotency key"),
    timeout: Optional[float] = typer.Option(None, help="Seconds to wait for the run"),
) -> None:
    """
    Run a workflow given a definition file or a stored workflow id.

    A file is saved first. The command waits until the execution completes,
    errors or suspends on a wait node.

    Example:
        podflow workflow run ./flows/switch.json --payload '{"route": "a"}'
    """
    trigger_payload = _parse_payload(payload)

    async def _go():
        engine = _engine()
        path = Path(target)
        if path.exists():
            workflow_id = (await engine.save_workflow(_load_definition(path))).id
        else:
            workflow_id = target
        execution = await engine.execute(
            workflow_id, trigger_payload=trigger_payload, instance_id=instance_id
        )
        return await engine.wait_for(execution.id, timeout)

    execution = _run(_go())
    _echo_execution(execution)
    if execution.status == ExecutionStatus.ERRORED:
        raise typer.Exit(code=1)


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Option(None, help="Filter by workflow"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List executions, newest first."""
    executions = _run(_engine().list_executions(workflow_id, status))
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(f"{ex.id}\t{ex.workflow_id}\t{ex.status.value}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show an execution and its step history.

    Every attempt of every node is listed in the order it was recorded.
    """

    async def _go():
        engine = _engine()
        return await engine.get_execution(execution_id), await engine.get_step_logs(execution_id)

    execution, logs = _run(_go())
    _echo_execution(execution)
    for log in logs:
        typer.echo(
            f"- {log.step_name}: {log.status.value} (attempt {log.attempt})"
            + (f" {log.error}" if log.error else "")
        )


@execution_app.command("pause")
def execution_pause(execution_id: str) -> None:
    """Request a running execution to pause at its next step boundary."""
    execution = _run(_engine().pause(execution_id))
    typer.echo(f"Pause requested for execution {execution.id}")


@execution_app.command("resume")
def execution_resume(
    execution_id: str,
    payload: Optional[str] = typer.Option(None, help="Resume payload as JSON"),
) -> None:
    """Resume a waiting execution and wait for it to stop again."""
    resume_payload = _parse_payload(payload) or None

    async def _go():
        engine = _engine()
        await engine.resume(execution_id, resume_payload)
        return await engine.wait_for(execution_id)

    _echo_execution(_run(_go()))


@execution_app.command("terminate")
def execution_terminate(execution_id: str) -> None:
    """Cancel an execution. Already finished executions are left unchanged."""
    execution = _run(_engine().terminate(execution_id))
    _echo_execution(execution)


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
) -> None:
    """Serve the HTTP control API with uvicorn."""
    import uvicorn

    from podflow.api import create_app

    engine = _engine()
    config = engine.config
    uvicorn.run(
        create_app(engine),
        host=host or config.api.host,
        port=port or config.api.port,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
