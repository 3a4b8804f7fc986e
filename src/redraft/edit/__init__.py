"""Edit-and-regenerate coordination."""

from redraft.edit.coordinator import EditCoordinator
from redraft.edit.guard import EditGuard, SessionLease
from redraft.edit.state import EditPhase, EditStateMachine

__all__ = [
    "EditCoordinator",
    "EditGuard",
    "EditPhase",
    "EditStateMachine",
    "SessionLease",
]
