"""Exception taxonomy for the flow engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatflow.graph.validator import ValidationIssue


class ChatflowError(Exception):
    """Base class for all engine errors."""


class MalformedGraphError(ChatflowError):
    """Raised when a graph document cannot be loaded into a GraphSpec."""


class InvalidGraphError(ChatflowError):
    """Raised when a graph has error-severity validation issues and cannot run."""

    def __init__(self, issues: list["ValidationIssue"]):
        self.issues = issues
        summary = "; ".join(f"{i.node_id}: {i.message}" for i in issues)
        super().__init__(f"Graph has {len(issues)} blocking issue(s): {summary}")


class UnreachableTransitionError(ChatflowError):
    """No outgoing edge exists where the node kind expected one.

    Never escapes the state machine: it is converted into a completed session.
    """

    def __init__(self, node_id: str, handle: str | None = None):
        self.node_id = node_id
        self.handle = handle
        where = f" with handle '{handle}'" if handle else ""
        super().__init__(f"No outgoing edge from node '{node_id}'{where}")


class ExternalCallFailure(ChatflowError):
    """A REST or WhatsApp Flow collaborator reported failure."""

    def __init__(self, message: str, payload: object = None):
        self.payload = payload
        super().__init__(message)


class MessageDeliveryError(ChatflowError):
    """The outbound messaging collaborator failed to deliver. Retryable."""

    retryable = True


class SessionTerminatedError(ChatflowError):
    """A driving event targeted a session that already reached a terminal status."""

    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session '{session_id}' is {status} and accepts no further events")


class UnexpectedEventError(ChatflowError):
    """The event does not fit the session's current status."""

    def __init__(self, session_id: str, status: str, event_name: str):
        self.session_id = session_id
        self.status = status
        self.event_name = event_name
        super().__init__(f"Session '{session_id}' in status '{status}' cannot accept {event_name}")


class SessionNotFoundError(ChatflowError):
    """No stored session with the given id."""


class GraphNotFoundError(ChatflowError):
    """No stored graph with the given flow id."""
