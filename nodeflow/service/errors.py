from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for engine exceptions.

    Every subclass carries a stable ``error_code`` so callers can map run-level
    failures without parsing messages:
    - graph_invalid / cycle_detected / start_node_invalid (pre-run)
    - routing_error (decision branch without a matching edge)
    - executor_not_found
    - expression_error / unsafe_expression (caught by the decision executor)
    - run_not_found / invalid_run_state
    """

    error_code: str = "workflow_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"code": self.error_code, "message": self.message, "details": self.detail}


class GraphValidationError(WorkflowError):
    """Workflow definition is malformed; the run never starts."""
    error_code = "graph_invalid"


class CycleDetectedError(GraphValidationError):
    """Workflow graph contains a cycle."""
    error_code = "cycle_detected"


class StartNodeError(GraphValidationError):
    """Workflow has zero or several start nodes, or a start node with inputs."""
    error_code = "start_node_invalid"


class RoutingError(WorkflowError):
    """A decision branch matched none of the node's labeled edges."""
    error_code = "routing_error"


class ExecutorNotFoundError(WorkflowError):
    """No executor is registered for a node type."""
    error_code = "executor_not_found"


class ExpressionError(WorkflowError):
    """Expression could not be parsed or evaluated."""
    error_code = "expression_error"


class UnsafeExpressionError(ExpressionError):
    """Expression contains a forbidden pattern."""
    error_code = "unsafe_expression"


class RunNotFoundError(WorkflowError):
    """Requested run is not tracked by the registry."""
    error_code = "run_not_found"


class RunStateError(WorkflowError):
    """Operation is not valid for the run's current status."""
    error_code = "invalid_run_state"


__all__ = [
    "WorkflowError",
    "GraphValidationError",
    "CycleDetectedError",
    "StartNodeError",
    "RoutingError",
    "ExecutorNotFoundError",
    "ExpressionError",
    "UnsafeExpressionError",
    "RunNotFoundError",
    "RunStateError",
]
