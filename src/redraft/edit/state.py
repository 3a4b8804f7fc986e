"""Explicit phase state machine for one session's edit lifecycle."""

from __future__ import annotations

from enum import StrEnum

from redraft.errors import InvalidTransitionError
from redraft.events.bus import ChatEvent, EventBus


class EditPhase(StrEnum):
    """Where a session's most recent edit stands."""

    IDLE = "idle"
    EDITING = "editing"
    """Guard held; canonical read, truncation and content update in progress."""
    REGENERATING = "regenerating"
    """Edit persisted; waiting for the assistant reply."""
    RECONCILED = "reconciled"
    """Reply persisted and the cache reloaded from the store."""
    FAILED = "failed"


_TRANSITIONS: dict[EditPhase, frozenset[EditPhase]] = {
    EditPhase.IDLE: frozenset({EditPhase.EDITING}),
    EditPhase.EDITING: frozenset({EditPhase.REGENERATING, EditPhase.FAILED}),
    EditPhase.REGENERATING: frozenset({EditPhase.RECONCILED, EditPhase.FAILED}),
    EditPhase.RECONCILED: frozenset({EditPhase.EDITING}),
    EditPhase.FAILED: frozenset({EditPhase.EDITING}),
}


class EditStateMachine:
    """
    Tracks the edit phase of each session.

    UI code reads one value (``phase(session_id)``) instead of combining
    loading, sending and editing flags. Every transition is checked against
    the allowed graph and published as ``ChatEvent.EDIT_PHASE_CHANGED``.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self._phases: dict[str, EditPhase] = {}
        self._event_bus = event_bus

    def phase(self, session_id: str) -> EditPhase:
        return self._phases.get(session_id, EditPhase.IDLE)

    def can_transition(self, session_id: str, target: EditPhase) -> bool:
        return target in _TRANSITIONS[self.phase(session_id)]

    def transition(self, session_id: str, target: EditPhase) -> EditPhase:
        """
        Move a session to ``target``.

        Raises:
            InvalidTransitionError: If the move is not allowed from the current phase.
        """
        current = self.phase(session_id)
        if target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(current, target)
        self._phases[session_id] = target
        if self._event_bus is not None:
            self._event_bus.publish(
                ChatEvent.EDIT_PHASE_CHANGED,
                {"session_id": session_id, "previous": str(current), "phase": str(target)},
            )
        return target

    def forget(self, session_id: str) -> None:
        """Drop tracking for a session (e.g. after it was deleted)."""
        self._phases.pop(session_id, None)
