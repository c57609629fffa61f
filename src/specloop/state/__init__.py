from specloop.state.models import (
    ImplementationDocument,
    Spec,
    StateError,
    Status,
    Task,
)
from specloop.state.sessions import Session, SessionConflictError, SessionStore
from specloop.state.store import ImplementationStore

__all__ = [
    "ImplementationDocument",
    "ImplementationStore",
    "Session",
    "SessionConflictError",
    "SessionStore",
    "Spec",
    "StateError",
    "Status",
    "Task",
]
