"""Node executor registry."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..contracts import NodeDefinition
from ..execute import FunctionExecutor, NodeExecutor, StepInput

logger = logging.getLogger(__name__)

ExecutorLike = Union[NodeExecutor, Callable[[NodeDefinition, StepInput], Awaitable[Any]]]


class NodeRegistry:
    """Maps node types to executors.

    Lookups use the node's ``type`` first and fall back to its ``kind`` so a
    single executor can serve every node of a kind.
    """

    def __init__(self) -> None:
        self._executors: Dict[str, NodeExecutor] = {}

    def register(self, node_type: str, executor: ExecutorLike) -> None:
        if not hasattr(executor, "execute"):
            executor = FunctionExecutor(executor)
        if node_type in self._executors:
            logger.debug(f"Replacing executor for node type {node_type}")
        self._executors[node_type] = executor

    def executor(self, node_type: str):
        """Decorator form of :meth:`register`."""

        def decorator(func):
            self.register(node_type, func)
            return func

        return decorator

    def get(self, node: NodeDefinition) -> Optional[NodeExecutor]:
        return self._executors.get(node.executor_type) or self._executors.get(
            node.kind.value
        )

    def types(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._executors


def default_registry() -> NodeRegistry:
    """Registry pre-populated with the built-in executors."""
    from .builtin import register_builtins

    registry = NodeRegistry()
    register_builtins(registry)
    return registry


__all__ = ["NodeRegistry", "default_registry"]
