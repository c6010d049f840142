from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from jsonschema import Draft202012Validator

from nodeflow.logging import get_logger
from nodeflow.models import Edge, Node, WorkflowDefinition
from nodeflow.service.errors import (
    CycleDetectedError,
    GraphValidationError,
    StartNodeError,
)

logger = get_logger(__name__)

START_NODE_TYPE = "start"

WORKFLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": ["string", "object"]},
        "nodes": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"type": "string", "minLength": 1},
                    "name": {"type": ["string", "object"]},
                    "config": {"type": "object"},
                    "execution": {"$ref": "#/$defs/execution"},
                },
                "required": ["id", "type"],
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "source": {"type": "string", "minLength": 1},
                    "target": {"type": "string", "minLength": 1},
                    "branch": {"type": ["string", "number", "boolean", "null"]},
                },
                "required": ["source", "target"],
            },
        },
        "execution": {"$ref": "#/$defs/execution"},
    },
    "required": ["nodes"],
    "$defs": {
        "execution": {
            "type": "object",
            "properties": {
                "timeout": {"type": "number", "exclusiveMinimum": 0},
                "retries": {"type": "integer", "minimum": 0},
                "retryDelay": {"type": "number", "minimum": 0},
                "errorHandler": {
                    "enum": ["abort", "skip", "fail", "continue", "bypass"],
                },
                "maxConcurrency": {"type": "integer", "minimum": 1},
            },
        },
    },
}

_validator = Draft202012Validator(WORKFLOW_SCHEMA)


@dataclass
class GraphReport:
    """Static facts about a validated workflow graph."""

    start_node_id: str
    end_node_ids: List[str] = field(default_factory=list)
    execution_order: List[str] = field(default_factory=list)
    unreachable_nodes: List[str] = field(default_factory=list)


def check_workflow_schema(data: Mapping[str, Any]) -> None:
    """Validate the wire form of a workflow definition."""
    errors = sorted(
        _validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]
    )
    if errors:
        messages = [
            f"{'/'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
        ]
        raise GraphValidationError(
            "workflow definition failed schema validation",
            detail={"errors": messages},
        )


def load_workflow(data: Any) -> WorkflowDefinition:
    """Accept a ``WorkflowDefinition`` or its dict form."""
    if isinstance(data, WorkflowDefinition):
        return data
    if not isinstance(data, Mapping):
        raise GraphValidationError(
            "workflow definition must be an object",
            detail={"errors": [f"<root>: got {type(data).__name__}"]},
        )
    check_workflow_schema(data)
    return WorkflowDefinition.from_dict(dict(data))


def _build_graph(
    nodes: Sequence[Node], edges: Sequence[Edge]
) -> Tuple[Dict[str, int], Dict[str, List[str]]]:
    in_degree: Dict[str, int] = {n.id: 0 for n in nodes}
    adjacency: Dict[str, List[str]] = {n.id: [] for n in nodes}
    for edge in edges:
        if edge.source in adjacency and edge.target in in_degree:
            adjacency[edge.source].append(edge.target)
            in_degree[edge.target] += 1
    return in_degree, adjacency


def _kahn(nodes: Sequence[Node], edges: Sequence[Edge]) -> List[str]:
    in_degree, adjacency = _build_graph(nodes, edges)
    queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
    order: List[str] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for neighbor in adjacency[node_id]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)
    return order


def detect_cycles(
    nodes: Sequence[Node], edges: Sequence[Edge]
) -> Tuple[bool, List[str]]:
    """Return ``(has_cycle, cycle_nodes)``.

    ``cycle_nodes`` holds every node Kahn's algorithm could not order, which
    includes nodes downstream of a cycle.
    """
    if not nodes:
        return False, []
    processed = set(_kahn(nodes, edges))
    if len(processed) == len(nodes):
        return False, []
    cycle_nodes = [n.id for n in nodes if n.id not in processed]
    logger.warning("workflow_cycle_detected", cycle_nodes=cycle_nodes)
    return True, cycle_nodes


def topological_sort(nodes: Sequence[Node], edges: Sequence[Edge]) -> List[str]:
    has_cycle, cycle_nodes = detect_cycles(nodes, edges)
    if has_cycle:
        raise CycleDetectedError(
            "Cannot perform topological sort: graph contains cycles involving nodes: "
            + ", ".join(cycle_nodes),
            detail={"cycle_nodes": cycle_nodes},
        )
    order = _kahn(nodes, edges)
    logger.debug("workflow_topological_sort", node_count=len(order), order=order)
    return order


def find_start_nodes(definition: WorkflowDefinition) -> List[str]:
    """Nodes with no incoming edges."""
    targets = {e.target for e in definition.edges}
    return [n.id for n in definition.nodes if n.id not in targets]


def find_end_nodes(definition: WorkflowDefinition) -> List[str]:
    """Nodes with no outgoing edges."""
    sources = {e.source for e in definition.edges}
    return [n.id for n in definition.nodes if n.id not in sources]


def find_unreachable_nodes(definition: WorkflowDefinition, start_id: str) -> List[str]:
    adjacency: Dict[str, List[str]] = {}
    for edge in definition.edges:
        adjacency.setdefault(edge.source, []).append(edge.target)
    seen = {start_id}
    queue = deque([start_id])
    while queue:
        for target in adjacency.get(queue.popleft(), []):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return [n.id for n in definition.nodes if n.id not in seen]


def validate_workflow(
    definition: WorkflowDefinition,
    registry: Optional[Any] = None,
    *,
    reject_unreachable: bool = False,
) -> GraphReport:
    """Check graph shape before a run starts.

    Raises:
        GraphValidationError: empty graph, duplicate ids, dangling edges,
            unknown node types, or rejected unreachable nodes.
        StartNodeError: not exactly one start node, or a start node with
            incoming edges.
        CycleDetectedError: the graph is not acyclic.
    """
    nodes = definition.nodes
    if not nodes:
        raise GraphValidationError(
            f"Workflow '{definition.id}' has no nodes",
            detail={"workflow_id": definition.id},
        )

    seen: set = set()
    duplicates: List[str] = []
    for node in nodes:
        if node.id in seen and node.id not in duplicates:
            duplicates.append(node.id)
        seen.add(node.id)
    if duplicates:
        raise GraphValidationError(
            f"Workflow '{definition.id}' has duplicate node ids: {', '.join(duplicates)}",
            detail={"duplicate_ids": duplicates},
        )

    dangling = [
        {"source": e.source, "target": e.target}
        for e in definition.edges
        if e.source not in seen or e.target not in seen
    ]
    if dangling:
        raise GraphValidationError(
            f"Workflow '{definition.id}' has edges referencing unknown nodes",
            detail={"dangling_edges": dangling},
        )

    start_ids = [n.id for n in nodes if n.type == START_NODE_TYPE]
    if len(start_ids) != 1:
        raise StartNodeError(
            f"Workflow '{definition.id}' must have exactly one start node, "
            f"found {len(start_ids)}",
            detail={"start_nodes": start_ids},
        )
    start_id = start_ids[0]
    if definition.incoming(start_id):
        raise StartNodeError(
            f"Start node '{start_id}' must not have incoming edges",
            detail={"start_nodes": start_ids},
        )

    order = topological_sort(nodes, definition.edges)

    if registry is not None:
        unknown = sorted({n.type for n in nodes if not registry.has(n.type)})
        if unknown:
            raise GraphValidationError(
                f"No executor registered for node types: {', '.join(unknown)}",
                detail={"unknown_types": unknown, "available": registry.registered_types()},
            )

    unreachable = find_unreachable_nodes(definition, start_id)
    if unreachable:
        if reject_unreachable:
            raise GraphValidationError(
                f"Workflow '{definition.id}' has nodes unreachable from the start node",
                detail={"unreachable_nodes": unreachable},
            )
        logger.warning(
            "workflow_unreachable_nodes",
            workflow_id=definition.id,
            unreachable_nodes=unreachable,
        )

    return GraphReport(
        start_node_id=start_id,
        end_node_ids=find_end_nodes(definition),
        execution_order=order,
        unreachable_nodes=unreachable,
    )
