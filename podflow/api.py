"""HTTP control surface built on FastAPI."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .compiler import ValidationResult
from .contracts import (
    ExecutionStatus,
    StepLog,
    TriggerType,
    WebhookBinding,
    WorkflowDefinition,
    WorkflowExecution,
)
from .control import ExecutionSnapshot, WorkflowEngine
from .errors import (
    ControlError,
    NotFoundError,
    PersistenceError,
    WebhookAuthError,
    WebhookConflictError,
    WorkflowInactiveError,
    WorkflowValidationError,
)

logger = logging.getLogger(__name__)

HOOK_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


class ExecuteRequest(BaseModel):
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    trigger_type: TriggerType = TriggerType.MANUAL
    instance_id: Optional[str] = None
    trigger_node_id: Optional[str] = None


def _error(status_code: int, exc: Exception, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc), **extra},
    )


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(WorkflowValidationError)
    async def _validation(request: Request, exc: WorkflowValidationError):
        return _error(400, exc, validation=exc.result.model_dump(mode="json"))

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error(404, exc)

    @app.exception_handler(ControlError)
    async def _control(request: Request, exc: ControlError):
        return _error(409, exc, status=exc.status)

    @app.exception_handler(WebhookConflictError)
    async def _webhook_conflict(request: Request, exc: WebhookConflictError):
        return _error(409, exc)

    @app.exception_handler(WorkflowInactiveError)
    async def _inactive(request: Request, exc: WorkflowInactiveError):
        return _error(409, exc)

    @app.exception_handler(WebhookAuthError)
    async def _webhook_auth(request: Request, exc: WebhookAuthError):
        return _error(401, exc)

    @app.exception_handler(PersistenceError)
    async def _persistence(request: Request, exc: PersistenceError):
        logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
        return _error(503, exc)


def build_router(engine: WorkflowEngine) -> APIRouter:
    router = APIRouter()

    @router.post("/workflows", status_code=201, response_model=WorkflowDefinition)
    async def save_workflow(definition: WorkflowDefinition):
        return await engine.save_workflow(definition)

    @router.post("/workflows/validate", response_model=ValidationResult)
    async def validate_workflow(definition: WorkflowDefinition):
        return engine.validate(definition)

    @router.get("/workflows", response_model=List[WorkflowDefinition])
    async def list_workflows(owner: Optional[str] = None):
        return await engine.list_workflows(owner)

    @router.get("/workflows/{workflow_id}", response_model=WorkflowDefinition)
    async def get_workflow(workflow_id: str):
        return await engine.get_workflow(workflow_id)

    @router.post(
        "/workflows/{workflow_id}/execute",
        status_code=202,
        response_model=WorkflowExecution,
    )
    async def execute_workflow(workflow_id: str, request: Optional[ExecuteRequest] = None):
        request = request or ExecuteRequest()
        return await engine.execute(
            workflow_id,
            trigger_payload=request.trigger_payload,
            trigger_type=request.trigger_type,
            instance_id=request.instance_id,
            trigger_node_id=request.trigger_node_id,
        )

    @router.get("/executions", response_model=List[WorkflowExecution])
    async def list_executions(
        workflow_id: Optional[str] = None, status: Optional[ExecutionStatus] = None
    ):
        return await engine.list_executions(workflow_id, status)

    @router.get("/executions/{execution_id}", response_model=WorkflowExecution)
    async def get_execution(execution_id: str):
        return await engine.get_execution(execution_id)

    @router.get("/executions/{execution_id}/status", response_model=ExecutionSnapshot)
    async def get_status(execution_id: str):
        return await engine.get_status(execution_id)

    @router.get("/executions/{execution_id}/steps", response_model=List[StepLog])
    async def get_steps(execution_id: str, node_id: Optional[str] = None):
        return await engine.get_step_logs(execution_id, node_id)

    @router.post("/executions/{execution_id}/pause", response_model=WorkflowExecution)
    async def pause(execution_id: str):
        return await engine.pause(execution_id)

    @router.post("/executions/{execution_id}/resume", response_model=WorkflowExecution)
    async def resume(
        execution_id: str, payload: Optional[Dict[str, Any]] = Body(default=None)
    ):
        return await engine.resume(execution_id, payload)

    @router.post("/executions/{execution_id}/terminate", response_model=WorkflowExecution)
    async def terminate(execution_id: str):
        return await engine.terminate(execution_id)

    @router.post("/webhooks", status_code=201, response_model=WebhookBinding)
    async def register_webhook(binding: WebhookBinding):
        return await engine.register_webhook(binding)

    @router.get("/webhooks", response_model=List[WebhookBinding])
    async def list_webhooks(workflow_id: Optional[str] = None):
        return await engine.list_webhooks(workflow_id)

    @router.api_route(
        "/hooks/{path:path}",
        methods=HOOK_METHODS,
        status_code=202,
        response_model=WorkflowExecution,
    )
    async def webhook_ingress(path: str, request: Request):
        raw = await request.body()
        body: Dict[str, Any] = dict(request.query_params)
        if raw:
            try:
                parsed = json.loads(raw)
            except ValueError:
                parsed = {"body": raw.decode("utf-8", errors="replace")}
            body.update(parsed if isinstance(parsed, dict) else {"body": parsed})
        return await engine.trigger_webhook(
            path, request.method, body=body, headers=dict(request.headers)
        )

    return router


def create_app(engine: Optional[WorkflowEngine] = None) -> FastAPI:
    """Build the FastAPI application around ``engine``."""
    engine = engine or WorkflowEngine()
    app = FastAPI(title="podflow", version="0.1.0")
    app.state.engine = engine
    _install_error_handlers(app)
    app.include_router(build_router(engine))

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "podflow"}

    return app
