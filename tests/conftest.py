"""Shared fixtures: graph builders, recording collaborators and a fixed clock."""

from datetime import UTC, datetime, timedelta

import pytest

from chatflow.config import EngineConfig
from chatflow.graph.edge import GraphSpec
from chatflow.runtime.collaborators import (
    RecordingFlowLauncher,
    RecordingMessenger,
    RecordingRestCaller,
)
from chatflow.runtime.event_bus import EventBus
from chatflow.runtime.session_machine import SessionMachine
from chatflow.schemas.session_state import Session

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    """Returns T0, advancing one second per call so timestamps stay ordered."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current

    def jump(self, delta: timedelta) -> None:
        self.now = self.now + delta


def build_graph(nodes: list[dict], edges: list[tuple], graph_id: str = "test-flow") -> GraphSpec:
    """
    Build a graph from node dicts and (source, target[, handle]) tuples.

    Example:
        build_graph(
            [{"id": "start", "kind": "start"}, {"id": "m", "kind": "message", "config": {...}}],
            [("start", "m")],
        )
    """
    edge_docs = []
    for index, edge in enumerate(edges):
        source, target, *rest = edge
        edge_docs.append(
            {
                "id": f"e{index}",
                "source": source,
                "target": target,
                "sourceHandle": rest[0] if rest else None,
            }
        )
    return GraphSpec.load({"id": graph_id, "nodes": nodes, "edges": edge_docs})


def greeting_graph() -> GraphSpec:
    """start -> message -> question(name) -> condition(name == Alice) -> true/false messages."""
    return build_graph(
        [
            {"id": "start", "kind": "start"},
            {"id": "message", "kind": "message", "config": {"content": "Hi {{name}}!"}},
            {
                "id": "question",
                "kind": "question",
                "config": {"content": "What is your name?", "questionType": "text", "variable": "name"},
            },
            {
                "id": "condition",
                "kind": "condition",
                "config": {"conditionVar": "name", "conditionOp": "==", "conditionVal": "Alice"},
            },
            {"id": "messageTrue", "kind": "message", "config": {"content": "Hi Alice"}},
            {"id": "messageFalse", "kind": "message", "config": {"content": "Hi stranger"}},
        ],
        [
            ("start", "message"),
            ("message", "question"),
            ("question", "condition"),
            ("condition", "messageTrue", "true"),
            ("condition", "messageFalse", "false"),
        ],
        graph_id="greeting",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    return EngineConfig(
        max_steps_per_advance=100,
        flow_timeout_minutes=10,
        inactivity_timeout_minutes=60,
        rest_timeout_seconds=5,
        storage_path=tmp_path,
    )


@pytest.fixture
def messenger() -> RecordingMessenger:
    return RecordingMessenger()


@pytest.fixture
def rest_caller() -> RecordingRestCaller:
    return RecordingRestCaller()


@pytest.fixture
def flow_launcher() -> RecordingFlowLauncher:
    return RecordingFlowLauncher()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def delivered() -> list:
    """Completion events routed back by the machine, as (session_id, event)."""
    return []


@pytest.fixture
def machine(messenger, rest_caller, flow_launcher, event_bus, engine_config, clock, delivered):
    async def sink(session_id, event):
        delivered.append((session_id, event))

    return SessionMachine(
        messenger=messenger,
        rest_caller=rest_caller,
        flow_launcher=flow_launcher,
        event_bus=event_bus,
        config=engine_config,
        completion_sink=sink,
        clock=clock,
    )


@pytest.fixture
def session() -> Session:
    return Session(id="s1", conversation_id="conv-1", graph_ref="test-flow")
