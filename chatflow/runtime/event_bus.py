"""
Event Bus - Pub/sub broadcast of session activity.

Dashboards, persistence hooks and the console runner subscribe to:
- status transitions (previous/new status, current node)
- executed nodes
- variables written, messages sent, external call failures

Delivery to subscribers is best effort: a failing handler is logged and
never breaks the drive loop that published the event.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Session lifecycle
    SESSION_STARTED = "session_started"
    SESSION_STATUS_CHANGED = "session_status_changed"
    SESSION_COMPLETED = "session_completed"

    # Node execution
    NODE_EXECUTED = "node_executed"
    VARIABLE_SET = "variable_set"
    MESSAGE_SENT = "message_sent"

    # Failures
    EXTERNAL_CALL_FAILED = "external_call_failed"


@dataclass
class SessionEvent:
    """An event about one session."""

    type: EventType
    session_id: str
    node_id: str | None = None  # Which node the event concerns
    conversation_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "node_id": self.node_id,
            "conversation_id": self.conversation_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[SessionEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_session: str | None = None  # Only receive events for this session
    filter_node: str | None = None  # Only receive events for this node


class EventBus:
    """
    Pub/sub event bus for session activity.

    Example:
        bus = EventBus()

        async def on_transition(event: SessionEvent):
            print(event.data["previous_status"], "->", event.data["new_status"])

        bus.subscribe(
            event_types=[EventType.SESSION_STATUS_CHANGED],
            handler=on_transition,
        )
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[SessionEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_session: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_session=filter_session,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: SessionEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            s.handler for s in self._subscriptions.values() if self._matches(s, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: SessionEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_session and subscription.filter_session != event.session_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: SessionEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_session_started(
        self,
        session_id: str,
        conversation_id: str,
        flow_id: str,
    ) -> None:
        await self.publish(
            SessionEvent(
                type=EventType.SESSION_STARTED,
                session_id=session_id,
                conversation_id=conversation_id,
                data={"flow_id": flow_id},
            )
        )

    async def emit_status_changed(
        self,
        session_id: str,
        previous_status: str,
        new_status: str,
        current_node_id: str | None,
        updated_at: datetime,
        conversation_id: str | None = None,
    ) -> None:
        """Emit the transition record for one status change."""
        await self.publish(
            SessionEvent(
                type=EventType.SESSION_STATUS_CHANGED,
                session_id=session_id,
                node_id=current_node_id,
                conversation_id=conversation_id,
                data={
                    "session_id": session_id,
                    "previous_status": previous_status,
                    "new_status": new_status,
                    "current_node_id": current_node_id,
                    "updated_at": updated_at.isoformat(),
                },
            )
        )

    async def emit_node_executed(
        self,
        session_id: str,
        node_id: str,
        executed_at: datetime,
        node_kind: str | None = None,
    ) -> None:
        await self.publish(
            SessionEvent(
                type=EventType.NODE_EXECUTED,
                session_id=session_id,
                node_id=node_id,
                data={
                    "session_id": session_id,
                    "node_id": node_id,
                    "executed_at": executed_at.isoformat(),
                    "node_kind": node_kind,
                },
            )
        )

    async def emit_session_completed(
        self,
        session_id: str,
        status: str,
        reason: str | None,
        history: list[str],
    ) -> None:
        await self.publish(
            SessionEvent(
                type=EventType.SESSION_COMPLETED,
                session_id=session_id,
                data={"status": status, "reason": reason, "history": list(history)},
            )
        )

    async def emit_variable_set(
        self,
        session_id: str,
        node_id: str,
        name: str,
        value: Any,
    ) -> None:
        await self.publish(
            SessionEvent(
                type=EventType.VARIABLE_SET,
                session_id=session_id,
                node_id=node_id,
                data={"name": name, "value": value},
            )
        )

    async def emit_message_sent(
        self,
        session_id: str,
        node_id: str,
        conversation_id: str,
        message: dict[str, Any],
        message_id: str | None = None,
    ) -> None:
        await self.publish(
            SessionEvent(
                type=EventType.MESSAGE_SENT,
                session_id=session_id,
                node_id=node_id,
                conversation_id=conversation_id,
                data={"message": message, "message_id": message_id},
            )
        )

    async def emit_external_call_failed(
        self,
        session_id: str,
        node_id: str,
        error: str,
        call_kind: str,
    ) -> None:
        await self.publish(
            SessionEvent(
                type=EventType.EXTERNAL_CALL_FAILED,
                session_id=session_id,
                node_id=node_id,
                data={"error": error, "call_kind": call_kind},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        session_id: str | None = None,
        limit: int = 100,
    ) -> list[SessionEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if session_id:
            events = [e for e in events if e.session_id == session_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        session_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> SessionEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: SessionEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: SessionEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_session=session_id,
            filter_node=node_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
