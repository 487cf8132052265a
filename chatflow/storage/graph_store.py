"""
Graph Store - Flow documents by flow id.

File layout:
  {base_path}/graphs/{flow_id}.json
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

from chatflow.errors import GraphNotFoundError
from chatflow.graph.edge import GraphSpec
from chatflow.utils.io import atomic_write

logger = logging.getLogger(__name__)

_SAFE_FLOW_ID = re.compile(r"^[\w.-]+$")


class GraphStore(ABC):
    @abstractmethod
    async def load(self, flow_id: str) -> GraphSpec:
        """Load a graph. Raises GraphNotFoundError or MalformedGraphError."""

    @abstractmethod
    async def save(self, flow_id: str, graph: GraphSpec) -> None: ...


class FileGraphStore(GraphStore):
    """Graphs as canonical JSON documents on disk."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.graphs_dir = self.base_path / "graphs"

    def get_graph_path(self, flow_id: str) -> Path:
        if not _SAFE_FLOW_ID.match(flow_id):
            raise ValueError(f"Invalid flow id '{flow_id}'")
        return self.graphs_dir / f"{flow_id}.json"

    async def load(self, flow_id: str) -> GraphSpec:
        def _read():
            path = self.get_graph_path(flow_id)
            if not path.exists():
                raise GraphNotFoundError(f"Graph '{flow_id}' not found")
            return path.read_text(encoding="utf-8")

        raw = await asyncio.to_thread(_read)
        return GraphSpec.load(raw)

    async def save(self, flow_id: str, graph: GraphSpec) -> None:
        def _write():
            path = self.get_graph_path(flow_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(path) as f:
                f.write(graph.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Saved graph {flow_id}")


class InMemoryGraphStore(GraphStore):
    def __init__(self, graphs: dict[str, GraphSpec] | None = None) -> None:
        self._graphs: dict[str, GraphSpec] = dict(graphs or {})

    async def load(self, flow_id: str) -> GraphSpec:
        graph = self._graphs.get(flow_id)
        if graph is None:
            raise GraphNotFoundError(f"Graph '{flow_id}' not found")
        return graph

    async def save(self, flow_id: str, graph: GraphSpec) -> None:
        self._graphs[flow_id] = graph
