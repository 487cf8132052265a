"""Driving events accepted by the session state machine."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Start:
    """Begin executing the graph from its start node."""


@dataclass(frozen=True)
class UserReply:
    """
    A customer answer to a question node.

    ``handle`` carries the button id or list-row id when the reply came from an
    interactive message; ``value`` is the text (or option title) the customer sent.
    """

    value: str = ""
    handle: str | None = None


@dataclass(frozen=True)
class FlowCompleted:
    """A WhatsApp Flow submitted (or failed) for the session."""

    payload: dict[str, Any] = field(default_factory=dict)
    flow_token: str | None = None
    ok: bool = True
    error: str | None = None


@dataclass(frozen=True)
class RestCompleted:
    """Completion of a dispatched REST call."""

    payload: Any = None
    ok: bool = True
    status_code: int | None = None
    error: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class Stop:
    reason: str | None = None


@dataclass(frozen=True)
class Expire:
    pass


@dataclass(frozen=True)
class Skip:
    """Leave the waiting node by its default path without an answer."""


@dataclass(frozen=True)
class Retry:
    """Re-execute the current node after a failed delivery."""


DrivingEvent = Start | UserReply | FlowCompleted | RestCompleted | Stop | Expire | Skip | Retry
