"""podflow: graph workflow engine with durable, resumable executions."""

from .compiler import ExecutionPlan, compile_workflow, decompile, validate_workflow
from .contracts import (
    Connection,
    ExecutionStatus,
    NodeDefinition,
    NodeKind,
    RetryPolicy,
    StepLog,
    StepStatus,
    TriggerType,
    WebhookBinding,
    WorkflowDefinition,
    WorkflowExecution,
)
from .control import WorkflowEngine
from .execute import Failure, StepInput, Success
from .nodes import NodeRegistry, default_registry
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "Connection",
    "ExecutionPlan",
    "ExecutionStatus",
    "Failure",
    "NodeDefinition",
    "NodeKind",
    "NodeRegistry",
    "RetryPolicy",
    "StepInput",
    "StepLog",
    "StepStatus",
    "Success",
    "TriggerType",
    "WebhookBinding",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecution",
    "compile_workflow",
    "decompile",
    "default_registry",
    "get_repository",
    "validate_workflow",
]
