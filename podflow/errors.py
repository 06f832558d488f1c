"""Exception types raised by podflow."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .compiler import ValidationResult


class PodflowError(Exception):
    """Base class for all podflow errors."""


class WorkflowValidationError(PodflowError):
    """The workflow graph is malformed; no execution was created."""

    def __init__(self, result: "ValidationResult") -> None:
        self.result = result
        messages = "; ".join(issue.message for issue in result.errors)
        super().__init__(f"Workflow validation failed: {messages}")


class StepError(PodflowError):
    """A node failed after exhausting its retry policy."""

    def __init__(self, node_id: str, message: str, attempts: int = 1) -> None:
        self.node_id = node_id
        self.attempts = attempts
        super().__init__(message)


class StepFailed(PodflowError):
    """Raised by node executors to signal a failed attempt.

    ``retryable`` tells the engine whether another attempt may succeed.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class ControlError(PodflowError):
    """A control command was issued against an execution in the wrong state."""

    def __init__(self, execution_id: str, operation: str, status: str) -> None:
        self.execution_id = execution_id
        self.operation = operation
        self.status = status
        super().__init__(
            f"Cannot {operation} execution {execution_id} in status '{status}'"
        )


class PersistenceError(PodflowError):
    """The backing store failed or is unavailable."""


class NotFoundError(PodflowError):
    """A workflow, execution or webhook does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class WebhookConflictError(PodflowError):
    """A webhook is already bound to the same path and method."""

    def __init__(self, path: str, method: str) -> None:
        self.path = path
        self.method = method
        super().__init__(f"Webhook {method} {path} is already registered")


class WebhookAuthError(PodflowError):
    """Inbound webhook request failed authentication."""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "Webhook authentication failed")


class WorkflowInactiveError(PodflowError):
    """The workflow is deactivated and cannot start new executions."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} is not active")


class ApiError(PodflowError):
    """The control API answered a client request with an error status."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}")
