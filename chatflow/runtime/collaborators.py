"""
Collaborator seams between the engine and the outside world.

The engine never talks to WhatsApp or HTTP endpoints directly. It hands
rendered payloads to:
- Messenger: delivers text and interactive messages to a conversation
- RestCaller: dispatches an HTTP call and later reports back a RestCompleted
- FlowLauncher: launches a WhatsApp Flow form; its result arrives as FlowCompleted

REST and Flow collaborators are dispatch-and-callback: ``dispatch``/``launch``
return once the work is handed off, and completion re-enters the engine
through ``FlowRuntime.deliver``. A collaborator must never await the
completion callback from inside ``dispatch``.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from chatflow.errors import ExternalCallFailure, MessageDeliveryError
from chatflow.graph.node import ButtonItem, ListSection
from chatflow.schemas.events import RestCompleted
from chatflow.schemas.session_state import utc_now

logger = logging.getLogger(__name__)


class MessageKind(StrEnum):
    TEXT = "text"
    BUTTONS = "buttons"
    LIST = "list"


class OutboundMessage(BaseModel):
    """A rendered message ready for the messaging channel."""

    kind: MessageKind = MessageKind.TEXT
    body: str
    header: str | None = None
    footer: str | None = None
    buttons: list[ButtonItem] = Field(default_factory=list)
    list_button_text: str | None = None
    sections: list[ListSection] = Field(default_factory=list)
    node_id: str | None = None

    @classmethod
    def text(cls, body: str, node_id: str | None = None) -> OutboundMessage:
        return cls(kind=MessageKind.TEXT, body=body, node_id=node_id)


class DeliveryReceipt(BaseModel):
    message_id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    sent_at: datetime = Field(default_factory=utc_now)


class RestRequest(BaseModel):
    """A rendered REST call; all templates already substituted."""

    request_id: str = Field(default_factory=lambda: f"rest_{uuid.uuid4().hex[:12]}")
    session_id: str
    node_id: str
    method: str = "GET"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    response_path: str | None = None
    timeout_seconds: float = 30.0


class FlowLaunchRequest(BaseModel):
    """A rendered WhatsApp Flow launch."""

    session_id: str
    conversation_id: str
    node_id: str
    flow_id: str
    flow_token: str
    mode: str = "navigate"
    cta: str = ""
    body: str = ""
    header: str | None = None
    footer: str | None = None
    initial_screen: str | None = None
    initial_data: dict[str, Any] = Field(default_factory=dict)


RestCallback = Callable[[RestCompleted], Awaitable[None]]


class Messenger(ABC):
    """Outbound messaging channel."""

    @abstractmethod
    async def send(self, conversation_id: str, message: OutboundMessage) -> DeliveryReceipt:
        """Deliver a message. Raises MessageDeliveryError on failure."""


class RestCaller(ABC):
    """Dispatches HTTP calls for rest_api nodes."""

    @abstractmethod
    async def dispatch(self, request: RestRequest, on_complete: RestCallback) -> None:
        """Hand the request off; ``on_complete`` is called later with the outcome."""


class FlowLauncher(ABC):
    """Launches WhatsApp Flow forms."""

    @abstractmethod
    async def launch(self, request: FlowLaunchRequest) -> None:
        """Send the flow message. Raises ExternalCallFailure on failure."""


# ---------------------------------------------------------------------------
# In-memory implementations (tests, embedding, console runs)
# ---------------------------------------------------------------------------


class RecordingMessenger(Messenger):
    """
    Keeps every delivered message in ``sent``.

    ``fail_next`` makes the next N sends raise MessageDeliveryError.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, OutboundMessage]] = []
        self.fail_next = 0

    async def send(self, conversation_id: str, message: OutboundMessage) -> DeliveryReceipt:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise MessageDeliveryError(f"Delivery to '{conversation_id}' failed")
        self.sent.append((conversation_id, message))
        return DeliveryReceipt()

    @property
    def bodies(self) -> list[str]:
        return [m.body for _, m in self.sent]


class RecordingRestCaller(RestCaller):
    """Records dispatched requests; completions are delivered by the test."""

    def __init__(self, fail_dispatch: bool = False) -> None:
        self.requests: list[RestRequest] = []
        self.callbacks: dict[str, RestCallback] = {}
        self.fail_dispatch = fail_dispatch

    async def dispatch(self, request: RestRequest, on_complete: RestCallback) -> None:
        if self.fail_dispatch:
            raise ExternalCallFailure(f"Could not dispatch {request.method} {request.url}")
        self.requests.append(request)
        self.callbacks[request.request_id] = on_complete


class RecordingFlowLauncher(FlowLauncher):
    def __init__(self, fail_launch: bool = False) -> None:
        self.launched: list[FlowLaunchRequest] = []
        self.fail_launch = fail_launch

    async def launch(self, request: FlowLaunchRequest) -> None:
        if self.fail_launch:
            raise ExternalCallFailure(f"Could not launch flow '{request.flow_id}'")
        self.launched.append(request)
