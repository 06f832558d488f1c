"""Core data contracts for podflow workflows and executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from .constants import DEFAULT_MAX_RETRY_DELAY, DEFAULT_RETRY_DELAY, MAIN_BRANCH


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    AI_AGENT = "ai-agent"
    CONDITION = "condition"
    SWITCH = "switch"
    WAIT = "wait"

    @property
    def is_conditional(self) -> bool:
        return self in (NodeKind.CONDITION, NodeKind.SWITCH)


class ExecutionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.ERRORED,
            ExecutionStatus.CANCELLED,
        )


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    RETRYING = "retrying"
    SKIPPED = "skipped"
    WAITING = "waiting"


ACTIVE_STEP_STATUSES = (StepStatus.RUNNING, StepStatus.RETRYING, StepStatus.WAITING)


class TriggerType(str, Enum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    EVENT = "event"


class RetryPolicy(BaseModel):
    """Engine-owned retry settings for a single node."""

    max_attempts: int = Field(default=1, ge=1)
    backoff: Literal["fixed", "exponential"] = "fixed"
    delay: float = Field(default=DEFAULT_RETRY_DELAY, ge=0)
    max_delay: float = Field(default=DEFAULT_MAX_RETRY_DELAY, ge=0)
    multiplier: float = Field(default=2.0, ge=1)


class NodeDefinition(BaseModel):
    """One unit of work in a workflow graph."""

    id: str
    name: Optional[str] = None
    kind: NodeKind = NodeKind.ACTION
    type: Optional[str] = Field(
        default=None, description="Executor key; defaults to the node kind"
    )
    position: Tuple[float, float] = (0.0, 0.0)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    disabled: bool = False
    retry: Optional[RetryPolicy] = Field(
        default=None, description="Engine default applies when unset"
    )
    timeout: Optional[float] = Field(default=None, gt=0)
    notes: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def executor_type(self) -> str:
        return self.type or self.kind.value

    @property
    def is_conditional(self) -> bool:
        return self.kind.is_conditional


class Connection(BaseModel):
    """Directed link to a target node's input."""

    node: str
    index: int = Field(default=0, ge=0)
    label: Optional[str] = None


# source node id -> branch tag -> ordered connections
ConnectionMap = Dict[str, Dict[str, List[Connection]]]


class WorkflowDefinition(BaseModel):
    """Authoring-time workflow graph."""

    id: str = Field(default_factory=_new_id)
    owner: Optional[str] = None
    name: str
    description: Optional[str] = None
    nodes: List[NodeDefinition] = Field(default_factory=list)
    connections: ConnectionMap = Field(default_factory=dict)
    active: bool = True
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def node_map(self) -> Dict[str, NodeDefinition]:
        return {node.id: node for node in self.nodes}

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        return self.node_map().get(node_id)

    def connect(
        self,
        source: str,
        target: str,
        branch: str = MAIN_BRANCH,
        index: int = 0,
        label: Optional[str] = None,
    ) -> "WorkflowDefinition":
        """Append a connection; returns ``self`` for chaining."""
        groups = self.connections.setdefault(source, {})
        groups.setdefault(branch, []).append(
            Connection(node=target, index=index, label=label)
        )
        return self


class WebhookBinding(BaseModel):
    """Maps an inbound ``(path, method)`` pair to a workflow."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    path: str
    method: str = "POST"
    auth_mode: Literal["none", "header", "basic"] = "none"
    auth_config: Dict[str, Any] = Field(default_factory=dict)
    node_id: Optional[str] = None
    trigger_count: int = 0
    last_triggered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, v: str) -> str:
        v = v.strip().strip("/")
        if not v:
            raise ValueError("webhook path must not be empty")
        return v

    @field_validator("method")
    @classmethod
    def _normalize_method(cls, v: str) -> str:
        return v.upper()


class NodeResult(BaseModel):
    """Recorded outcome of a completed step."""

    output: Any = None
    branch: Optional[str] = None
    attempts: int = 1
    duration_ms: Optional[int] = None
    skipped: bool = False


class WorkflowExecution(BaseModel):
    """One run of a workflow definition."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    workflow: WorkflowDefinition
    instance_id: str = Field(default_factory=_new_id)
    owner: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.QUEUED
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    start_nodes: List[str] = Field(default_factory=list)
    current_step: Optional[str] = None
    completed_steps: List[str] = Field(default_factory=list)
    results: Dict[str, NodeResult] = Field(default_factory=dict)
    error: Optional[str] = None
    error_node: Optional[str] = None
    pause_requested: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class StepLog(BaseModel):
    """A single attempt of one node within an execution."""

    id: str = Field(default_factory=_new_id)
    execution_id: str
    node_id: str
    step_name: str
    status: StepStatus = StepStatus.PENDING
    attempt: int = 1
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
