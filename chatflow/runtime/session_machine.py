"""
Session State Machine - Drives one session through its graph.

Statuses and the events each accepts:

    idle           Start, Stop, Expire
    running        Retry, Stop, Expire
    waiting_input  UserReply, Skip, Stop, Expire
    waiting_flow   FlowCompleted, Skip, Stop, Expire
    waiting_rest   RestCompleted, Skip, Stop, Expire
    completed | stopped | expired | error    (terminal, nothing)

``advance`` executes nodes until the session pauses, runs out of edges
(completed) or fails (error). Every executed node is appended to ``history``
once, after its side effect succeeded and before the next transition.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from chatflow.config import EngineConfig
from chatflow.errors import MessageDeliveryError, SessionTerminatedError, UnexpectedEventError
from chatflow.graph.edge import GraphSpec
from chatflow.graph.node_executor import NodeContext, NodeExecutor, OutcomeKind, StepOutcome
from chatflow.observability import set_trace_context
from chatflow.runtime.collaborators import FlowLauncher, Messenger, RestCaller
from chatflow.runtime.event_bus import EventBus
from chatflow.schemas.events import (
    DrivingEvent,
    Expire,
    FlowCompleted,
    RestCompleted,
    Retry,
    Skip,
    Start,
    Stop,
    UserReply,
)
from chatflow.schemas.session_state import (
    CompletionReason,
    Session,
    SessionStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

# Callback the machine uses to route REST completions back into the runtime
CompletionSink = Callable[[str, DrivingEvent], Awaitable[Any]]

_ALWAYS = (Stop, Expire)

TRANSITIONS: dict[SessionStatus, tuple[type, ...]] = {
    SessionStatus.IDLE: (Start, *_ALWAYS),
    SessionStatus.RUNNING: (Retry, *_ALWAYS),
    SessionStatus.WAITING_INPUT: (UserReply, Skip, *_ALWAYS),
    SessionStatus.WAITING_FLOW: (FlowCompleted, Skip, *_ALWAYS),
    SessionStatus.WAITING_REST: (RestCompleted, Skip, *_ALWAYS),
    SessionStatus.COMPLETED: (),
    SessionStatus.STOPPED: (),
    SessionStatus.EXPIRED: (),
    SessionStatus.ERROR: (),
}


def accepts(status: SessionStatus, event: DrivingEvent) -> bool:
    return isinstance(event, TRANSITIONS[status])


class SessionMachine:
    """
    Applies driving events to sessions.

    The machine mutates the Session it is given and does not persist it;
    callers must serialise calls per session (FlowRuntime holds one lock per
    session id).

    Example:
        machine = SessionMachine(messenger=RecordingMessenger())
        session = Session(id="s1", conversation_id="c1")
        await machine.advance(graph, session, Start())
        await machine.advance(graph, session, UserReply(value="Alice"))
    """

    def __init__(
        self,
        messenger: Messenger,
        rest_caller: RestCaller | None = None,
        flow_launcher: FlowLauncher | None = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
        executor: NodeExecutor | None = None,
        completion_sink: CompletionSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.messenger = messenger
        self.rest_caller = rest_caller
        self.flow_launcher = flow_launcher
        self.config = config or EngineConfig()
        self.executor = executor or NodeExecutor()
        self.completion_sink = completion_sink
        self.clock = clock
        self._event_bus = event_bus

    # === ENTRY POINT ===

    async def advance(self, graph: GraphSpec, session: Session, event: DrivingEvent) -> Session:
        """
        Apply one driving event.

        Raises:
            SessionTerminatedError: the session already reached a terminal status
            UnexpectedEventError: the event does not fit the current status
            MessageDeliveryError: a message could not be delivered; the session
                stays running on the failed node and accepts Retry
        """
        status = session.status
        if status.is_terminal:
            if isinstance(event, Expire) and status == SessionStatus.EXPIRED:
                return session
            raise SessionTerminatedError(session.id, status)

        if not accepts(status, event):
            raise UnexpectedEventError(session.id, status, type(event).__name__)

        set_trace_context(session_id=session.id, conversation_id=session.conversation_id)

        if isinstance(event, Stop):
            await self._finish(
                session, SessionStatus.STOPPED, event.reason or CompletionReason.USER_STOPPED
            )
        elif isinstance(event, Expire):
            await self._finish(session, SessionStatus.EXPIRED, CompletionReason.TIMEOUT)
        elif isinstance(event, Start):
            await self._start(graph, session)
        elif isinstance(event, Retry):
            session.error = None
            await self._drive(graph, session, None)
        else:
            self._check_callback(session, event)
            await self._resume(graph, session, event)
        return session

    # === EVENT HANDLERS ===

    async def _start(self, graph: GraphSpec, session: Session) -> None:
        now = self.clock()
        session.started_at = now
        start = graph.start_node()
        if start is None:
            logger.warning(f"Graph '{graph.id}' has no start node")
            await self._transition(session, SessionStatus.RUNNING)
            await self._finish(session, SessionStatus.COMPLETED, CompletionReason.FLOW_ENDED)
            return

        session.current_node_id = start.id
        await self._transition(session, SessionStatus.RUNNING)
        await self._drive(graph, session, None)

    def _check_callback(self, session: Session, event: DrivingEvent) -> None:
        """Reject completions that belong to a different outstanding call."""
        awaiting = session.awaiting
        if awaiting is None or awaiting.token is None:
            return
        token = None
        if isinstance(event, FlowCompleted):
            token = event.flow_token
        elif isinstance(event, RestCompleted):
            token = event.request_id
        if token is not None and token != awaiting.token:
            raise UnexpectedEventError(
                session.id, session.status, f"{type(event).__name__}(token={token!r})"
            )

    async def _resume(self, graph: GraphSpec, session: Session, event: DrivingEvent) -> None:
        node = graph.node(session.current_node_id or "")
        await self._transition(session, SessionStatus.RUNNING, clear_awaiting=True)
        if node is None:
            await self._finish(session, SessionStatus.COMPLETED, CompletionReason.FLOW_ENDED)
            return

        ctx = self._context(graph, session, node)
        set_trace_context(node_id=node.id)
        outcome = await self.executor.resume(ctx, event)
        await self._flush_effects(ctx)
        await self._drive(graph, session, outcome)

    # === DRIVE LOOP ===

    async def _drive(self, graph: GraphSpec, session: Session, outcome: StepOutcome | None) -> None:
        """Execute nodes until the session pauses, completes or fails."""
        steps = 0
        rerender = False

        while True:
            if outcome is None:
                if steps >= self.config.max_steps_per_advance:
                    logger.error(
                        f"Session '{session.id}' exceeded {self.config.max_steps_per_advance} "
                        f"steps in one advance"
                    )
                    session.error = "Too many node executions without pausing"
                    await self._finish(
                        session, SessionStatus.ERROR, CompletionReason.STEP_LIMIT_EXCEEDED
                    )
                    return
                steps += 1

                node = graph.node(session.current_node_id or "")
                if node is None:
                    await self._finish(session, SessionStatus.COMPLETED, CompletionReason.FLOW_ENDED)
                    return

                outcome = await self._execute(graph, session, node, record=not rerender)
                rerender = False

            if outcome.kind == OutcomeKind.ADVANCE:
                assert outcome.edge is not None
                session.current_node_id = outcome.edge.target
                session.touch(self.clock())
                outcome = None
            elif outcome.kind == OutcomeKind.REPEAT:
                rerender = True
                outcome = None
            elif outcome.kind == OutcomeKind.PAUSE:
                assert outcome.status is not None
                session.awaiting = outcome.awaiting
                await self._transition(session, outcome.status)
                return
            elif outcome.kind == OutcomeKind.END:
                await self._finish(
                    session, SessionStatus.COMPLETED, outcome.reason or CompletionReason.FLOW_ENDED
                )
                return
            else:
                session.error = outcome.error
                await self._finish(
                    session,
                    SessionStatus.ERROR,
                    outcome.reason or CompletionReason.EXTERNAL_CALL_FAILED,
                )
                return

    async def _execute(self, graph: GraphSpec, session: Session, node: Any, record: bool) -> StepOutcome:
        set_trace_context(node_id=node.id)
        ctx = self._context(graph, session, node)
        try:
            outcome = await self.executor.execute(ctx)
        except MessageDeliveryError as e:
            logger.warning(f"Delivery failed on node '{node.id}': {e}")
            session.error = str(e)
            session.touch(self.clock())
            await self._flush_effects(ctx)
            raise

        if record:
            session.history.append(node.id)
            if self._event_bus is not None:
                await self._event_bus.emit_node_executed(
                    session_id=session.id,
                    node_id=node.id,
                    executed_at=ctx.now,
                    node_kind=node.kind,
                )
        await self._flush_effects(ctx)
        return outcome

    def _context(self, graph: GraphSpec, session: Session, node: Any) -> NodeContext:
        on_rest_complete = None
        if self.completion_sink is not None:
            sink = self.completion_sink
            session_id = session.id

            async def on_rest_complete(event: RestCompleted) -> None:
                await sink(session_id, event)

        return NodeContext(
            graph=graph,
            session=session,
            node=node,
            messenger=self.messenger,
            rest_caller=self.rest_caller,
            flow_launcher=self.flow_launcher,
            on_rest_complete=on_rest_complete,
            config=self.config,
            now=self.clock(),
        )

    # === TRANSITIONS ===

    async def _transition(
        self,
        session: Session,
        new_status: SessionStatus,
        clear_awaiting: bool = False,
    ) -> None:
        previous = session.status
        session.status = new_status
        if clear_awaiting or new_status.is_terminal:
            session.awaiting = None
        session.touch(self.clock())

        if previous == new_status:
            return
        logger.info(f"Session '{session.id}': {previous} -> {new_status}")
        if self._event_bus is not None:
            await self._event_bus.emit_status_changed(
                session_id=session.id,
                previous_status=previous,
                new_status=new_status,
                current_node_id=session.current_node_id,
                updated_at=session.updated_at,
                conversation_id=session.conversation_id,
            )

    async def _finish(self, session: Session, status: SessionStatus, reason: str) -> None:
        session.completion_reason = str(reason)
        await self._transition(session, status)
        session.completed_at = session.updated_at
        if self._event_bus is not None:
            await self._event_bus.emit_session_completed(
                session_id=session.id,
                status=status,
                reason=session.completion_reason,
                history=session.history,
            )

    async def _flush_effects(self, ctx: NodeContext) -> None:
        """Broadcast what a node did: variables written, messages sent, failed calls."""
        if self._event_bus is None:
            return
        session_id = ctx.session.id
        for name, value in ctx.variable_changes:
            await self._event_bus.emit_variable_set(session_id, ctx.node.id, name, value)
        for message, receipt in ctx.sent:
            await self._event_bus.emit_message_sent(
                session_id=session_id,
                node_id=ctx.node.id,
                conversation_id=ctx.session.conversation_id,
                message=message.model_dump(mode="json"),
                message_id=receipt.message_id,
            )
        for failure in ctx.failures:
            await self._event_bus.emit_external_call_failed(
                session_id, failure.node_id, failure.error, failure.call_kind
            )
        ctx.variable_changes.clear()
        ctx.sent.clear()
        ctx.failures.clear()
