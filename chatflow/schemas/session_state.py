"""
Session State Schema - Persistent state of one conversation driven through a graph.

A session is created when a conversation enters a graph and is saved after
every driving event, so a conversation that pauses for days resumes exactly
where it stopped.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field


def utc_now() -> datetime:
    return datetime.now(UTC)


class SessionStatus(StrEnum):
    """Status of a session."""

    IDLE = "idle"  # Created, not started
    RUNNING = "running"  # Executing nodes (or stopped on a failed delivery)
    WAITING_INPUT = "waiting_input"  # Question sent, waiting for the customer
    WAITING_FLOW = "waiting_flow"  # WhatsApp Flow launched, waiting for its result
    WAITING_REST = "waiting_rest"  # REST call dispatched, waiting for its completion
    COMPLETED = "completed"  # Reached a node with no way forward
    STOPPED = "stopped"  # Stopped by the customer or an operator
    EXPIRED = "expired"  # Timed out while waiting
    ERROR = "error"  # Failed without an error branch

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self in WAITING_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.STOPPED, SessionStatus.EXPIRED, SessionStatus.ERROR}
)
WAITING_STATUSES = frozenset(
    {SessionStatus.WAITING_INPUT, SessionStatus.WAITING_FLOW, SessionStatus.WAITING_REST}
)


class CompletionReason(StrEnum):
    FLOW_ENDED = "flow_ended"
    USER_STOPPED = "user_stopped"
    TIMEOUT = "timeout"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    EXTERNAL_CALL_FAILED = "external_call_failed"


class AwaitingKind(StrEnum):
    INPUT = "input"
    FLOW = "flow"
    REST = "rest"


class Awaiting(BaseModel):
    """What a waiting session expects next; used to recognise stale callbacks."""

    kind: AwaitingKind
    node_id: str
    token: str | None = None  # WhatsApp Flow token or REST request id
    expires_at: datetime | None = None

    model_config = {"extra": "allow"}


class Session(BaseModel):
    """
    Complete state for one conversation's run through a graph.

    Version History:
    - v1.0: Initial schema
    """

    schema_version: str = "1.0"

    # Identity
    id: str
    conversation_id: str
    graph_ref: str = ""  # Flow id the graph was loaded from

    # Status
    status: SessionStatus = SessionStatus.IDLE
    current_node_id: str | None = None

    # Memory
    variables: dict[str, Any] = Field(default_factory=dict)
    history: list[str] = Field(default_factory=list)  # Node IDs executed, in order

    # Timestamps
    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    # Outcome
    completion_reason: str | None = None
    awaiting: Awaiting | None = None
    error: str | None = None

    model_config = {"extra": "ignore"}

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @computed_field
    @property
    def duration_ms(self) -> int:
        """Duration of the session in milliseconds."""
        if not self.completed_at:
            return 0
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utc_now()
