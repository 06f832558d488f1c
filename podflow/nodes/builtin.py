"""Built-in node executors."""

from __future__ import annotations

import logging
import os
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from ..constants import DEFAULT_AGENT_BASE_URL, DEFAULT_AGENT_TIMEOUT, TRIGGER_NODE_TYPES
from ..contracts import NodeDefinition
from ..execute import Failure, StepInput, StepResult, Success
from .conditions import evaluate, resolve_field

if TYPE_CHECKING:
    from . import NodeRegistry

logger = logging.getLogger(__name__)


class TriggerExecutor:
    """Emits the trigger payload that started the execution."""

    async def execute(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        return Success(output=dict(step_input.trigger_payload))


class ConditionExecutor:
    """Selects a branch from predicate-per-branch rules.

    ``parameters`` either hold a single predicate (``field``, ``operator``,
    ``value``) selecting ``"true"`` or ``"false"``, or a ``conditions`` list
    whose first matching entry's ``outputBranch`` wins, falling back to
    ``defaultBranch``.
    """

    async def execute(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        params = node.parameters
        data = step_input.data
        try:
            conditions: Optional[List[Dict[str, Any]]] = params.get("conditions")
            if conditions:
                for condition in conditions:
                    actual = resolve_field(step_input, condition.get("field"))
                    if evaluate(actual, condition.get("operator", "equals"), condition.get("value")):
                        return Success(output=data, branch=condition["outputBranch"])
                return Success(output=data, branch=params.get("defaultBranch", "default"))

            actual = resolve_field(step_input, params.get("field"))
            matched = evaluate(actual, params.get("operator", "isTrue"), params.get("value"))
        except (KeyError, ValueError) as e:
            return Failure(error=f"Invalid condition on node {node.id}: {e}")
        return Success(output=data, branch="true" if matched else "false")


class SwitchExecutor:
    """Routes on the value of ``field`` matched against ``cases``."""

    async def execute(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        params = node.parameters
        if not params.get("field"):
            return Failure(error="Field is required for switch node")
        cases = params.get("cases") or []
        if not cases:
            return Failure(error="At least one case is required for switch node")

        if any(not isinstance(case, dict) or "outputBranch" not in case for case in cases):
            return Failure(error=f"Every case of switch node {node.id} needs an outputBranch")

        actual = resolve_field(step_input, params["field"])
        for case in cases:
            if evaluate(actual, "equals", case.get("value")):
                return Success(output=step_input.data, branch=case["outputBranch"])
        return Success(output=step_input.data, branch=params.get("defaultCase", "default"))


class ApprovalExecutor:
    """Opens a pending approval request; the engine suspends on wait nodes."""

    async def execute(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        message = node.parameters.get("message")
        if node.executor_type == "approval" and not message:
            return Failure(error="Approval message is required")
        return Success(
            output={
                "status": "pending",
                "approvalId": f"approval_{node.id}_{uuid.uuid4().hex[:8]}",
                "message": message,
                "approvers": list(node.parameters.get("approvers", [])),
                "executionId": step_input.execution_id,
            }
        )


class SetExecutor:
    """Merges ``parameters.values`` over the incoming data."""

    async def execute(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        values = node.parameters.get("values") or {}
        data = step_input.data
        if isinstance(data, dict):
            return Success(output={**data, **values})
        return Success(output=values or data)


class HttpRequestExecutor:
    """Performs an HTTP call with ``httpx``.

    Server errors and transport failures are retryable; client errors are not.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client

    async def execute(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        params = node.parameters
        url = params.get("url")
        if not url:
            return Failure(error="URL is required for http-request node")
        method = str(params.get("method", "GET")).upper()
        request_kwargs: Dict[str, Any] = {
            "headers": params.get("headers") or {},
            "params": params.get("query") or None,
        }
        if params.get("body") is not None and method not in ("GET", "HEAD"):
            request_kwargs["json"] = params["body"]

        try:
            if self._client is not None:
                response = await self._client.request(method, url, **request_kwargs)
            else:
                async with httpx.AsyncClient(timeout=params.get("timeout", 30.0)) as client:
                    response = await client.request(method, url, **request_kwargs)
        except httpx.HTTPError as e:
            return Failure(error=f"HTTP request failed: {e}", retryable=True)

        if response.status_code >= 400:
            return Failure(
                error=f"HTTP {response.status_code} from {method} {url}",
                retryable=response.status_code >= 500,
            )
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return Success(
            output={
                "status": response.status_code,
                "headers": dict(response.headers),
                "body": body,
            }
        )


class AgentExecutor:
    """Single-turn chat completion against an OpenAI-compatible endpoint.

    ``parameters`` require ``model`` and ``prompt``; ``systemPrompt``,
    ``temperature``, ``maxTokens``, ``baseUrl`` and ``apiKey`` are optional.
    The key falls back to the ``OPENAI_API_KEY`` environment variable.
    Rate limits, server errors and transport failures are retryable.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client

    async def execute(self, node: NodeDefinition, step_input: StepInput) -> StepResult:
        params = node.parameters
        model, prompt = params.get("model"), params.get("prompt")
        if not model or not prompt:
            return Failure(error="Model and prompt are required for ai-agent node")
        api_key = params.get("apiKey") or os.getenv("OPENAI_API_KEY")
        if not api_key:
            return Failure(error=f"No API key configured for ai-agent node {node.id}")

        messages: List[Dict[str, str]] = []
        if params.get("systemPrompt"):
            messages.append({"role": "system", "content": str(params["systemPrompt"])})
        messages.append({"role": "user", "content": str(prompt)})
        payload: Dict[str, Any] = {"model": model, "messages": messages}
        if params.get("temperature") is not None:
            payload["temperature"] = params["temperature"]
        if params.get("maxTokens") is not None:
            payload["max_tokens"] = params["maxTokens"]

        base_url = str(params.get("baseUrl") or DEFAULT_AGENT_BASE_URL).rstrip("/")
        url = f"{base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                timeout = params.get("timeout", DEFAULT_AGENT_TIMEOUT)
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            return Failure(error=f"Agent request failed: {e}", retryable=True)

        if response.status_code >= 400:
            return Failure(
                error=f"Agent provider returned HTTP {response.status_code}",
                retryable=response.status_code == 429 or response.status_code >= 500,
            )
        try:
            data = response.json()
            content = data["choices"][0]["message"].get("content")
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            return Failure(error="Malformed response from agent provider")
        logger.debug(f"Agent node {node.id} answered with model {data.get('model', model)}")
        return Success(
            output={
                "response": content or "",
                "model": data.get("model", model),
                "usage": data.get("usage", {}),
            }
        )


def register_builtins(registry: "NodeRegistry") -> None:
    trigger = TriggerExecutor()
    for node_type in list(TRIGGER_NODE_TYPES) + ["trigger"]:
        registry.register(node_type, trigger)
    registry.register("condition", ConditionExecutor())
    registry.register("switch", SwitchExecutor())
    approval = ApprovalExecutor()
    registry.register("wait", approval)
    registry.register("approval", approval)
    setter = SetExecutor()
    for node_type in ("set", "set-variable", "noop", "action"):
        registry.register(node_type, setter)
    registry.register("http-request", HttpRequestExecutor())
    registry.register("ai-agent", AgentExecutor())
