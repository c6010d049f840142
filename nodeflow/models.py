from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class NodeStatus(str, Enum):
    """Outcome of a single node within a run."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # never executed: every incoming edge was dead
    BYPASSED = "bypassed"  # executed, failed, and the skip policy let the run continue


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in {RunStatus.PENDING, RunStatus.RUNNING}


class ErrorPolicy(str, Enum):
    """What the scheduler does when a node returns an error result."""

    ABORT = "abort"
    SKIP = "skip"

    @classmethod
    def parse(cls, value: Any) -> Optional["ErrorPolicy"]:
        if value is None:
            return None
        if isinstance(value, ErrorPolicy):
            return value
        aliases = {"fail": cls.ABORT, "continue": cls.SKIP, "bypass": cls.SKIP}
        lowered = str(value).strip().lower()
        if lowered in aliases:
            return aliases[lowered]
        return cls(lowered)


@dataclass(frozen=True)
class Node:
    id: str
    type: str
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    # Optional per-node policy: {timeout, retries, retryDelay, errorHandler}
    execution: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        name = data.get("name") or ""
        if isinstance(name, dict):
            # Localized names: prefer English, else the first entry
            name = name.get("en") or next(iter(name.values()), "")
        return cls(
            id=data["id"],
            type=data["type"],
            name=str(name),
            config=dict(data.get("config") or {}),
            execution=dict(data.get("execution") or {}),
        )


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    # None marks an "always" edge, taken regardless of the emitted branch
    branch: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        branch = data.get("branch")
        if isinstance(branch, bool):
            # decision nodes emit the lowercase "true"/"false" labels
            branch = "true" if branch else "false"
        return cls(
            source=data["source"],
            target=data["target"],
            branch=str(branch) if branch is not None else None,
        )


@dataclass
class WorkflowDefinition:
    id: str
    nodes: List[Node]
    edges: List[Edge] = field(default_factory=list)
    name: str = ""
    # Workflow-wide defaults: {errorHandler, timeout, maxConcurrency}
    execution: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        return cls(
            id=str(data.get("id") or "unknown"),
            name=str(data.get("name") or ""),
            nodes=[Node.from_dict(n) for n in data.get("nodes") or []],
            edges=[Edge.from_dict(e) for e in data.get("edges") or []],
            execution=dict(data.get("execution") or {}),
        )

    @property
    def node_map(self) -> Dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def outgoing(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def incoming(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.target == node_id]


@dataclass
class ExecutionContext:
    """Per-run, read-mostly context handed to every executor call."""

    initial_data: Dict[str, Any] = field(default_factory=dict)
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str = "unknown"
    started_at: datetime = field(default_factory=datetime.utcnow)
    logger: Any = None
    services: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionError:
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "details": dict(self.details)}


@dataclass
class ExecutionResult:
    """Value returned by every executor.

    ``branch`` is only meaningful for routing nodes; ``state_updates`` is
    None when the node contributes nothing to the state bag.
    """

    success: bool
    output: Any = None
    state_updates: Optional[Dict[str, Any]] = None
    branch: Optional[str] = None
    error: Optional[ExecutionError] = None
    terminal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "output": self.output}
        if self.state_updates is not None:
            data["stateUpdates"] = self.state_updates
        if self.branch is not None:
            data["branch"] = self.branch
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.terminal:
            data["terminal"] = True
        return data


@dataclass
class NodeRunEntry:
    node_id: str
    node_type: str
    status: NodeStatus
    result: Optional[ExecutionResult] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
        }


@dataclass
class RunRecord:
    run_id: str
    workflow_id: str
    status: RunStatus = RunStatus.PENDING
    state: Dict[str, Any] = field(default_factory=dict)
    node_results: List[NodeRunEntry] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped_nodes: List[str] = field(default_factory=list)
    unreachable_nodes: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    # Run-level failure: {code, message, nodeId?}
    error: Optional[Dict[str, Any]] = None

    def result_for(self, node_id: str) -> Optional[NodeRunEntry]:
        for entry in self.node_results:
            if entry.node_id == node_id:
                return entry
        return None

    @property
    def executed_nodes(self) -> List[str]:
        return [
            e.node_id
            for e in self.node_results
            if e.status in {NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.BYPASSED}
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "state": self.state,
            "node_results": [e.to_dict() for e in self.node_results],
            "errors": list(self.errors),
            "skipped_nodes": list(self.skipped_nodes),
            "unreachable_nodes": list(self.unreachable_nodes),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }
