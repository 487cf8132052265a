"""
chatflow - Resumable execution engine for WhatsApp chatbot conversation graphs.

A graph of start, message, question, condition, whatsapp_flow and rest_api
nodes is loaded into a GraphSpec, validated, and driven one session per
conversation by the FlowRuntime.
"""

from chatflow.errors import (
    ChatflowError,
    InvalidGraphError,
    MalformedGraphError,
    MessageDeliveryError,
    SessionTerminatedError,
    UnexpectedEventError,
)
from chatflow.graph.edge import EdgeSpec, GraphSpec
from chatflow.graph.validator import ValidationIssue, validate_graph
from chatflow.runtime.flow_runtime import FlowRuntime
from chatflow.runtime.session_machine import SessionMachine
from chatflow.schemas.events import (
    Expire,
    FlowCompleted,
    RestCompleted,
    Retry,
    Skip,
    Start,
    Stop,
    UserReply,
)
from chatflow.schemas.session_state import Session, SessionStatus

__version__ = "0.1.0"

__all__ = [
    "ChatflowError",
    "InvalidGraphError",
    "MalformedGraphError",
    "MessageDeliveryError",
    "SessionTerminatedError",
    "UnexpectedEventError",
    "EdgeSpec",
    "GraphSpec",
    "ValidationIssue",
    "validate_graph",
    "FlowRuntime",
    "SessionMachine",
    "Session",
    "SessionStatus",
    "Start",
    "UserReply",
    "FlowCompleted",
    "RestCompleted",
    "Stop",
    "Expire",
    "Skip",
    "Retry",
]
