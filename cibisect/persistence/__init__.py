"""Decision log storage and bisection history ledger."""

from cibisect.persistence.models import Search, Step
from cibisect.persistence.state_manager import (
    DatabaseError,
    SearchRecord,
    StateManager,
    StepRecord,
)
from cibisect.persistence.store import SessionHandle, SessionStore, SessionStoreError


__all__ = [
    # Decision log store
    "SessionStore",
    "SessionHandle",
    "SessionStoreError",
    # Models
    "Search",
    "Step",
    # State Manager
    "StateManager",
    "SearchRecord",
    "StepRecord",
    "DatabaseError",
]
