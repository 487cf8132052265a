"""
Flow Runtime - Wires stores, collaborators and the state machine together.

The runtime is the entry point applications call:

    runtime = FlowRuntime(graph_store, session_store, messenger=...)
    session = await runtime.start_session("welcome-bot", conversation_id="+4915...")
    await runtime.handle_event(session.id, UserReply(value="Alice"))

It loads the session and its graph, serialises events per session with an
asyncio.Lock, drives the state machine and persists the result.
"""

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import datetime, timedelta

from chatflow.config import EngineConfig
from chatflow.errors import (
    InvalidGraphError,
    SessionTerminatedError,
    UnexpectedEventError,
)
from chatflow.graph.edge import GraphSpec
from chatflow.graph.node_executor import NodeExecutor
from chatflow.graph.validator import Severity, validate_graph
from chatflow.observability import session_context
from chatflow.runtime.collaborators import FlowLauncher, Messenger, RestCaller
from chatflow.runtime.event_bus import EventBus
from chatflow.runtime.session_machine import SessionMachine
from chatflow.schemas.events import DrivingEvent, Expire, Start, Stop
from chatflow.schemas.session_state import Session, SessionStatus, utc_now
from chatflow.storage.graph_store import GraphStore
from chatflow.storage.session_store import SessionStore, generate_session_id

logger = logging.getLogger(__name__)


class FlowRuntime:
    """
    Runs sessions against stored graphs.

    - one asyncio.Lock per session id: at most one advance in flight per session
    - graphs are validated before the first session starts on them
    - sessions are saved after every event, including failed deliveries
    """

    def __init__(
        self,
        graph_store: GraphStore,
        session_store: SessionStore,
        messenger: Messenger,
        rest_caller: RestCaller | None = None,
        flow_launcher: FlowLauncher | None = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.graph_store = graph_store
        self.session_store = session_store
        self.event_bus = event_bus
        self.config = config or EngineConfig()
        self.clock = clock
        self.machine = SessionMachine(
            messenger=messenger,
            rest_caller=rest_caller,
            flow_launcher=flow_launcher,
            event_bus=event_bus,
            config=self.config,
            executor=NodeExecutor(),
            completion_sink=self.deliver,
            clock=clock,
        )
        # A lock lives only while some call holds or waits on it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._graphs: dict[str, GraphSpec] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _graph_for(self, flow_id: str) -> GraphSpec:
        graph = self._graphs.get(flow_id)
        if graph is None:
            graph = await self.graph_store.load(flow_id)
            self._graphs[flow_id] = graph
        return graph

    def invalidate_graph(self, flow_id: str) -> None:
        """Drop a cached graph so the next session picks up a saved edit."""
        self._graphs.pop(flow_id, None)

    # === SESSION LIFECYCLE ===

    async def start_session(
        self,
        flow_id: str,
        conversation_id: str,
        session_id: str | None = None,
        variables: dict | None = None,
    ) -> Session:
        """
        Create a session for a conversation and run it until it first pauses.

        Raises:
            GraphNotFoundError / MalformedGraphError: the graph cannot be loaded
            InvalidGraphError: the graph has error-severity validation issues
            MessageDeliveryError: the first messages could not be delivered
                (the session is saved and accepts Retry)
        """
        graph = await self._graph_for(flow_id)
        blocking = [i for i in validate_graph(graph) if i.severity == Severity.ERROR]
        if blocking:
            raise InvalidGraphError(blocking)

        now = self.clock()
        session = Session(
            id=session_id or generate_session_id(),
            conversation_id=conversation_id,
            graph_ref=flow_id,
            variables=dict(variables or {}),
            started_at=now,
            updated_at=now,
        )
        await self.session_store.write_state(session)
        if self.event_bus is not None:
            await self.event_bus.emit_session_started(session.id, conversation_id, flow_id)

        return await self.handle_event(session.id, Start())

    async def handle_event(self, session_id: str, event: DrivingEvent) -> Session:
        """
        Apply a driving event to a stored session and persist the result.

        Raises whatever the state machine raises; the session is saved first.
        """
        async with self._lock_for(session_id):
            session = await self.session_store.load(session_id)
            graph = await self._graph_for(session.graph_ref)
            with session_context(
                session_id=session.id,
                flow_id=session.graph_ref,
                conversation_id=session.conversation_id,
            ):
                try:
                    await self.machine.advance(graph, session, event)
                finally:
                    await self.session_store.write_state(session)
            return session

    async def deliver(self, session_id: str, event: DrivingEvent) -> Session | None:
        """
        Entry point for collaborator callbacks (REST completions, Flow results).

        Late callbacks for finished sessions and stale callbacks for a node the
        session already left are logged and ignored.
        """
        try:
            return await self.handle_event(session_id, event)
        except SessionTerminatedError as e:
            logger.info(f"Ignoring {type(event).__name__} for finished session: {e}")
        except UnexpectedEventError as e:
            logger.warning(f"Ignoring stale {type(event).__name__}: {e}")
        return None

    async def stop(self, session_id: str, reason: str | None = None) -> Session:
        return await self.handle_event(session_id, Stop(reason=reason))

    async def expire(self, session_id: str) -> Session:
        return await self.handle_event(session_id, Expire())

    async def get_session(self, session_id: str) -> Session:
        return await self.session_store.load(session_id)

    async def active_session_for(self, conversation_id: str) -> Session | None:
        """The conversation's non-terminal session, if any."""
        for session in await self.session_store.list_sessions(conversation_id=conversation_id):
            if not session.status.is_terminal:
                return session
        return None

    # === EXPIRY ===

    def _is_expired(self, session: Session, now: datetime) -> bool:
        if session.awaiting is not None and session.awaiting.expires_at is not None:
            if session.awaiting.expires_at <= now:
                return True
        window = timedelta(minutes=self.config.inactivity_timeout_minutes)
        return session.updated_at + window <= now

    async def sweep_expired(self, now: datetime | None = None) -> list[str]:
        """
        Expire waiting sessions past their deadline.

        Meant to be called periodically by an external scheduler.

        Returns:
            IDs of the sessions that were expired
        """
        now = now or self.clock()
        expired: list[str] = []
        for session in await self.session_store.list_sessions(limit=None):
            if session.status.is_terminal or session.status == SessionStatus.IDLE:
                continue
            if not self._is_expired(session, now):
                continue
            try:
                await self.handle_event(session.id, Expire())
            except SessionTerminatedError:
                # Finished between the scan and the lock
                continue
            expired.append(session.id)
        if expired:
            logger.info(f"Expired {len(expired)} session(s)")
        return expired
