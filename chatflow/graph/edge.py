"""
Edge Protocol - How nodes connect in a conversation graph.

Edges define:
1. Source and target nodes
2. An optional source handle naming the branch they leave from

Handles disambiguate multiple outgoing paths from one node:
- "true" / "false": condition results
- "success" / "error": REST call outcomes
- a button id or list-row id: question answers
- "default" (or no handle): the fallback path

The graph is a flat arena of nodes and edges with id-based indices built once
at load time, so it can be traversed and serialized without back-references.
"""

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, model_validator

from chatflow.errors import MalformedGraphError
from chatflow.graph.node import (
    HANDLE_DEFAULT,
    NodeKind,
    NodeSpec,
    normalize_node_document,
)

logger = logging.getLogger(__name__)


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Plain sequential edge
        EdgeSpec(id="e1", source="start", target="welcome")

        # Condition branch
        EdgeSpec(id="e2", source="is-adult", target="adult-menu", source_handle="true")

        # Button branch
        EdgeSpec(id="e3", source="menu", target="orders", source_handle="btn-orders")
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    source_handle: str | None = Field(
        default=None,
        alias="sourceHandle",
        description="Branch this edge leaves from; None means the default path",
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    @property
    def is_default(self) -> bool:
        return self.source_handle is None or self.source_handle == HANDLE_DEFAULT


class GraphSpec(BaseModel):
    """
    Complete specification of a conversation graph.

    Example:
        graph = GraphSpec.load({
            "id": "welcome-bot",
            "nodes": [
                {"id": "start", "kind": "start"},
                {"id": "hello", "kind": "message", "config": {"content": "Hi {{name}}!"}},
            ],
            "edges": [{"id": "e1", "source": "start", "target": "hello"}],
        })

        graph.outgoing("start")            # [EdgeSpec(... target="hello")]
        graph.outgoing_by_handle("x", "true")
    """

    id: str = ""
    name: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    _nodes_by_id: dict[str, Any] = PrivateAttr(default_factory=dict)
    _outgoing: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)
    _incoming: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)
    _by_handle: dict[tuple[str, str | None], EdgeSpec] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def _build_indices(self) -> "GraphSpec":
        nodes_by_id: dict[str, Any] = {}
        for node in self.nodes:
            if node.id in nodes_by_id:
                raise ValueError(f"Duplicate node id '{node.id}'")
            nodes_by_id[node.id] = node

        outgoing: dict[str, list[EdgeSpec]] = {}
        incoming: dict[str, list[EdgeSpec]] = {}
        by_handle: dict[tuple[str, str | None], EdgeSpec] = {}
        for edge in self.edges:
            if edge.source not in nodes_by_id:
                raise ValueError(f"Edge '{edge.id}' references unknown source '{edge.source}'")
            if edge.target not in nodes_by_id:
                raise ValueError(f"Edge '{edge.id}' references unknown target '{edge.target}'")
            outgoing.setdefault(edge.source, []).append(edge)
            incoming.setdefault(edge.target, []).append(edge)
            # First edge wins for a duplicated (source, handle); the validator reports the rest
            by_handle.setdefault((edge.source, edge.source_handle), edge)

        self._nodes_by_id = nodes_by_id
        self._outgoing = outgoing
        self._incoming = incoming
        self._by_handle = by_handle
        return self

    # === LOADING ===

    @classmethod
    def load(cls, raw: dict[str, Any] | str | bytes) -> "GraphSpec":
        """
        Load a graph document.

        Accepts a dict or a JSON string, in either canonical or editor shape.

        Raises:
            MalformedGraphError: duplicate node ids, dangling edges, unknown
                node kinds or an unparseable document
        """
        if isinstance(raw, str | bytes):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise MalformedGraphError(f"Graph document is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise MalformedGraphError(f"Graph document must be an object, got {type(raw).__name__}")

        raw_nodes = raw.get("nodes") or []
        raw_edges = raw.get("edges") or []
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise MalformedGraphError("Graph 'nodes' and 'edges' must be arrays")

        nodes = [normalize_node_document(n) for n in raw_nodes if isinstance(n, dict)]
        edges = []
        for index, e in enumerate(raw_edges):
            if not isinstance(e, dict):
                continue
            handle = e.get("sourceHandle", e.get("source_handle"))
            edges.append(
                {
                    "id": e.get("id") or f"edge-{index}",
                    "source": e.get("source"),
                    "target": e.get("target"),
                    "source_handle": handle or None,
                }
            )

        try:
            graph = cls(
                id=str(raw.get("id") or ""),
                name=str(raw.get("name") or ""),
                nodes=nodes,
                edges=edges,
            )
        except ValidationError as e:
            raise MalformedGraphError(_summarize_validation_error(e)) from e

        logger.debug(f"Loaded graph '{graph.id}' with {len(graph.nodes)} nodes")
        return graph

    def to_dict(self) -> dict[str, Any]:
        """Canonical document (snake_case configs, no editor fields)."""
        return self.model_dump(mode="json")

    # === LOOKUPS ===

    def node(self, node_id: str) -> Any | None:
        """Get a node by ID."""
        return self._nodes_by_id.get(node_id)

    def outgoing(self, node_id: str) -> list[EdgeSpec]:
        """All edges leaving a node, in document order."""
        return list(self._outgoing.get(node_id, []))

    def incoming(self, node_id: str) -> list[EdgeSpec]:
        """All edges entering a node."""
        return list(self._incoming.get(node_id, []))

    def outgoing_by_handle(self, node_id: str, handle: str | None) -> EdgeSpec | None:
        """The edge leaving ``node_id`` from ``handle``, if any."""
        return self._by_handle.get((node_id, handle or None))

    def default_edge(self, node_id: str) -> EdgeSpec | None:
        """
        The edge to follow when a node has a single outgoing path.

        Tie-break: a handle-less or "default" edge wins, otherwise the first
        outgoing edge in document order.
        """
        edges = self._outgoing.get(node_id, [])
        for edge in edges:
            if edge.is_default:
                return edge
        return edges[0] if edges else None

    def fallback_edge(self, node_id: str) -> EdgeSpec | None:
        """The "default"-handled edge, else a handle-less edge. Never a named branch."""
        return self.outgoing_by_handle(node_id, HANDLE_DEFAULT) or self.outgoing_by_handle(
            node_id, None
        )

    def start_nodes(self) -> list[Any]:
        return [n for n in self.nodes if n.kind == NodeKind.START]

    def start_node(self) -> Any | None:
        starts = self.start_nodes()
        return starts[0] if starts else None


def _summarize_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"])
        parts.append(f"{loc}: {item['msg']}" if loc else item["msg"])
    return "Malformed graph: " + "; ".join(parts)
