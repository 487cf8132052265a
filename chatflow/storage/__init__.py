"""Session and graph stores."""

from chatflow.storage.graph_store import FileGraphStore, GraphStore, InMemoryGraphStore
from chatflow.storage.session_store import FileSessionStore, InMemorySessionStore, SessionStore

__all__ = [
    "GraphStore",
    "FileGraphStore",
    "InMemoryGraphStore",
    "SessionStore",
    "FileSessionStore",
    "InMemorySessionStore",
]
