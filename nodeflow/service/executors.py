"""Executor contract shared by every node type, and the type registry.

An executor turns ``(node, state, context)`` into an ``ExecutionResult``.
Expected failures come back as error results; only bugs raise. Executors
never mutate ``state``; they hand changes back in ``state_updates``.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Union

from nodeflow.logging import get_logger
from nodeflow.models import ExecutionContext, ExecutionError, ExecutionResult, Node
from nodeflow.service.errors import ExecutorNotFoundError
from nodeflow.service.variables import resolve_variable, resolve_variables


class NodeType(str, Enum):
    """Node types with a built-in executor."""

    START = "start"
    DECISION = "decision"
    END = "end"


class NodeExecutor:
    """Base class for node executors.

    Subclasses implement ``execute`` either as a plain method or as a
    coroutine; the scheduler accepts both.
    """

    def __init__(self, *, logger: Any = None) -> None:
        self.logger = (logger or get_logger(__name__)).bind(
            component=type(self).__name__
        )

    def execute(
        self, node: Node, state: Mapping[str, Any], context: ExecutionContext
    ) -> Union[ExecutionResult, Awaitable[ExecutionResult]]:
        raise NotImplementedError(
            f"{type(self).__name__} does not implement execute() "
            f"for node type '{node.type}'"
        )

    @property
    def type_name(self) -> str:
        name = type(self).__name__
        for suffix in ("NodeExecutor", "Executor"):
            if name.endswith(suffix):
                name = name[: -len(suffix)]
                break
        return name.lower() or "base"

    def resolve_variable(self, path: Any, state: Mapping[str, Any]) -> Any:
        return resolve_variable(path, state)

    def resolve_variables(self, value: Any, state: Mapping[str, Any]) -> Any:
        return resolve_variables(value, state)

    def create_success_result(
        self,
        output: Any,
        *,
        state_updates: Optional[Dict[str, Any]] = None,
        branch: Optional[str] = None,
        terminal: bool = False,
    ) -> ExecutionResult:
        return ExecutionResult(
            success=True,
            output=output,
            state_updates=state_updates,
            branch=branch,
            terminal=terminal,
        )

    def create_error_result(
        self, message: str, details: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        details = dict(details or {})
        self.logger.error(
            "node_execution_error",
            node_id=details.get("nodeId"),
            error=message,
            details=details,
        )
        return ExecutionResult(
            success=False,
            output=None,
            error=ExecutionError(message=message, details=details),
        )


class ExecutorRegistry:
    """Maps node type strings to executor instances.

    Lookup is a single dictionary access; adding a node type is a
    ``register`` call, not a subclass of the scheduler.
    """

    def __init__(self) -> None:
        self._executors: Dict[str, NodeExecutor] = {}
        self.logger = get_logger(__name__)

    def register(self, node_type: Union[str, NodeType], executor: NodeExecutor) -> None:
        key = node_type.value if isinstance(node_type, NodeType) else node_type
        if not key or not isinstance(key, str):
            raise ValueError("node type must be a non-empty string")
        if not callable(getattr(executor, "execute", None)):
            raise TypeError("executor must provide an execute() method")
        if key in self._executors:
            self.logger.info("executor_replaced", node_type=key)
        self._executors[key] = executor

    def unregister(self, node_type: str) -> None:
        self._executors.pop(node_type, None)

    def has(self, node_type: str) -> bool:
        return node_type in self._executors

    def get(self, node_type: str) -> NodeExecutor:
        executor = self._executors.get(node_type)
        if executor is None:
            raise ExecutorNotFoundError(
                f"No executor found for node type: '{node_type}'. "
                f"Available types are: {', '.join(self.registered_types()) or 'none'}",
                detail={"node_type": node_type, "available": self.registered_types()},
            )
        return executor

    def registered_types(self) -> List[str]:
        return sorted(self._executors)


def default_registry() -> ExecutorRegistry:
    """Registry with the built-in start, decision and end executors."""
    from nodeflow.service.decision import DecisionNodeExecutor
    from nodeflow.service.end_node import EndNodeExecutor
    from nodeflow.service.start_node import StartNodeExecutor

    registry = ExecutorRegistry()
    registry.register(NodeType.START, StartNodeExecutor())
    registry.register(NodeType.DECISION, DecisionNodeExecutor())
    registry.register(NodeType.END, EndNodeExecutor())
    return registry
