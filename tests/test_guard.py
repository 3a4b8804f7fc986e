"""Tests for the edit guard, the store-backed session lease and the phase state machine."""

from __future__ import annotations

import pytest

from redraft.edit.guard import EditGuard, SessionLease
from redraft.edit.state import EditPhase, EditStateMachine
from redraft.errors import InvalidTransitionError
from redraft.events.bus import ChatEvent


class TestEditGuard:
    def test_acquire_fails_fast_when_held(self):
        guard = EditGuard()
        assert guard.acquire("sess_1") is True
        assert guard.acquire("sess_1") is False
        assert guard.held("sess_1")

    def test_sessions_are_independent(self):
        guard = EditGuard()
        assert guard.acquire("sess_1")
        assert guard.acquire("sess_2")
        assert guard.active == frozenset({"sess_1", "sess_2"})

    def test_release_is_idempotent(self):
        guard = EditGuard()
        guard.acquire("sess_1")
        guard.release("sess_1")
        guard.release("sess_1")
        guard.release("sess_never")
        assert not guard.held("sess_1")
        assert guard.acquire("sess_1")


class TestSessionLease:
    async def test_owner_is_generated(self, store):
        lease = SessionLease(store, ttl_secs=30)
        assert lease.owner.startswith("own_")

    async def test_two_leases_exclude_each_other(self, store, session_id):
        """Two coordinators on one database cannot both hold a session."""
        a = SessionLease(store, ttl_secs=30)
        b = SessionLease(store, ttl_secs=30)

        assert await a.acquire(session_id)
        assert not await b.acquire(session_id)

        await a.release(session_id)
        assert await b.acquire(session_id)

    async def test_expired_lease_is_taken_over(self, store, session_id):
        crashed = SessionLease(store, ttl_secs=-1)
        assert await crashed.acquire(session_id)

        survivor = SessionLease(store, ttl_secs=30)
        assert await survivor.acquire(session_id)
        assert (await store.get_lease(session_id)).owner == survivor.owner


class TestEditStateMachine:
    def test_starts_idle(self):
        assert EditStateMachine().phase("sess_1") == EditPhase.IDLE

    def test_happy_path(self):
        sm = EditStateMachine()
        for phase in (EditPhase.EDITING, EditPhase.REGENERATING, EditPhase.RECONCILED):
            assert sm.transition("sess_1", phase) == phase
        assert sm.phase("sess_1") == EditPhase.RECONCILED

    def test_editing_can_fail(self):
        sm = EditStateMachine()
        sm.transition("sess_1", EditPhase.EDITING)
        sm.transition("sess_1", EditPhase.FAILED)
        assert sm.can_transition("sess_1", EditPhase.EDITING)

    @pytest.mark.parametrize(
        ("start", "target"),
        [
            ((), EditPhase.REGENERATING),
            ((), EditPhase.RECONCILED),
            ((EditPhase.EDITING,), EditPhase.RECONCILED),
            ((EditPhase.EDITING, EditPhase.REGENERATING), EditPhase.EDITING),
            ((EditPhase.EDITING, EditPhase.FAILED), EditPhase.REGENERATING),
        ],
    )
    def test_illegal_transitions_raise(self, start, target):
        sm = EditStateMachine()
        for phase in start:
            sm.transition("sess_1", phase)
        with pytest.raises(InvalidTransitionError):
            sm.transition("sess_1", target)

    def test_transitions_publish_events(self, event_bus):
        sm = EditStateMachine(event_bus)
        sm.transition("sess_1", EditPhase.EDITING)
        sm.transition("sess_1", EditPhase.FAILED)

        payloads = [p for e, p in event_bus.collected if e == ChatEvent.EDIT_PHASE_CHANGED]
        assert payloads == [
            {"session_id": "sess_1", "previous": "idle", "phase": "editing"},
            {"session_id": "sess_1", "previous": "editing", "phase": "failed"},
        ]

    def test_forget_resets_to_idle(self):
        sm = EditStateMachine()
        sm.transition("sess_1", EditPhase.EDITING)
        sm.forget("sess_1")
        assert sm.phase("sess_1") == EditPhase.IDLE
