"""Integration tests for ChatClient."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

import redraft
from redraft import ChatClient, session_title
from redraft.edit.state import EditPhase
from redraft.errors import ConcurrencyError, EmptyContentError, RegenerationError
from redraft.events.bus import ChatEvent
from redraft.store.conversation import MessageNotFoundError, SessionNotFoundError, StoreError


@pytest.fixture
def mock_llm_env(monkeypatch):
    """Enable mock LLM mode for tests that use the default completion service."""
    monkeypatch.setenv("REDRAFT_MOCK_LLM", "1")


@pytest_asyncio.fixture
async def client(config, service):
    async with ChatClient.open(
        owner_id="user_test", config=config, completion_service=service
    ) as c:
        yield c


class TestSessionTitle:
    def test_short_message_used_verbatim(self):
        assert session_title("  How do I say no?  ") == "How do I say no?"

    def test_long_message_truncated_with_ellipsis(self):
        text = "x" * 60
        assert session_title(text) == "x" * 50 + "..."

    def test_exactly_fifty_characters_not_truncated(self):
        assert session_title("y" * 50) == "y" * 50


class TestSend:
    async def test_first_send_creates_titled_session(self, client):
        turn = await client.send("How can I prepare for a tough one-on-one with my manager?")

        assert turn.session_created
        assert turn.session_id.startswith("sess_")
        assert turn.user_message.role == "user"
        assert turn.assistant_message.role == "assistant"
        assert turn.text == turn.assistant_message.content
        sessions = await client.list_sessions()
        assert [s.id for s in sessions] == [turn.session_id]
        assert sessions[0].title == "How can I prepare for a tough one-on-one with my m..."

    async def test_send_continues_session(self, client):
        first = await client.send("Hello")
        second = await client.send("Tell me more", session_id=first.session_id)

        assert not second.session_created
        assert [m.role for m in client.messages] == ["user", "assistant", "user", "assistant"]
        assert [m.seq for m in client.messages] == [1, 2, 3, 4]

    async def test_cache_shows_confirmed_messages_only(self, client):
        turn = await client.send("Hello")
        assert client.active_session_id == turn.session_id
        assert all(not m.optimistic for m in client.messages)
        assert [m.id for m in client.messages] == [
            turn.user_message.id,
            turn.assistant_message.id,
        ]

    async def test_duplicate_client_id(self, client, service):
        """Re-sending with the same client_id returns the existing reply without a new call."""
        first = await client.send("Hello", client_id="cli_1")
        again = await client.send("Hello", session_id=first.session_id, client_id="cli_1")

        assert again.duplicate
        assert again.assistant_message.id == first.assistant_message.id
        assert again.user_message.id == first.user_message.id
        assert service.calls == 1
        assert len(client.messages) == 2

    async def test_metadata_stored_on_user_message(self, client):
        turn = await client.send("See attached", metadata={"attachments": ["img_1"]})
        assert turn.user_message.metadata == {"attachments": ["img_1"]}

    async def test_empty_message_rejected(self, client):
        with pytest.raises(EmptyContentError):
            await client.send("   ")
        assert await client.list_sessions() == []

    async def test_unknown_session_rejected(self, client):
        with pytest.raises(SessionNotFoundError):
            await client.send("Hi", session_id="sess_missing")

    async def test_failed_reply_marks_optimistic_and_can_be_retried(self, client, service):
        first = await client.send("Hello")
        service.failures = [RuntimeError("down"), RuntimeError("down")]

        with pytest.raises(RegenerationError):
            await client.send("Are you there?", session_id=first.session_id)

        assert client.messages[-1].status == "failed"
        result = await client.retry_reply(first.session_id)
        assert result.ok
        loaded = await client.load_session(first.session_id)
        assert [m.role for m in loaded] == ["user", "assistant", "user", "assistant"]

    async def test_session_created_event(self, client):
        events = []
        client.subscribe(ChatEvent.SESSION_CREATED, lambda e, p: events.append(p))
        turn = await client.send("Hello")
        assert events == [
            {"session_id": turn.session_id, "owner_id": "user_test", "title": "Hello"}
        ]


class TestEdit:
    async def test_edit_message_returns_true_and_updates_view(self, client):
        first = await client.send("How do I ask for a raise?")
        await client.send("What if they say no?", session_id=first.session_id)

        ok = await client.edit_message(
            first.session_id, first.user_message.id, "How do I ask for a promotion?"
        )

        assert ok is True
        assert [(m.role, m.content) for m in client.messages][0] == (
            "user",
            "How do I ask for a promotion?",
        )
        assert len(client.messages) == 2
        assert client.edit_phase(first.session_id) == EditPhase.RECONCILED

    async def test_edit_message_returns_false_on_failure(self, client):
        turn = await client.send("Hello")
        ok = await client.edit_message(turn.session_id, turn.assistant_message.id, "nope")
        assert ok is False
        assert client.edit_phase(turn.session_id) == EditPhase.FAILED

    async def test_edit_returns_full_result(self, client):
        turn = await client.send("Hello")
        result = await client.edit(turn.session_id, turn.user_message.id, "Hi")
        assert result.ok
        assert result.removed_count == 1


class TestSendAndEditExclusion:
    async def test_edit_refused_while_send_awaits_reply(self, client, service):
        first = await client.send("U1")
        sid = first.session_id
        service.started.clear()
        service.gate = asyncio.Event()

        sending = asyncio.create_task(client.send("U2", session_id=sid))
        await asyncio.wait_for(service.started.wait(), timeout=1)
        result = await client.edit(sid, first.user_message.id, "U1 edited")

        assert isinstance(result.error, ConcurrencyError)
        assert client.edit_phase(sid) == EditPhase.IDLE

        service.gate.set()
        turn = await sending
        assert turn.user_message.content == "U2"
        loaded = await client.load_session(sid)
        assert [(m.role, m.content) for m in loaded] == [
            ("user", "U1"),
            ("assistant", "Reply 1"),
            ("user", "U2"),
            ("assistant", "Reply 2"),
        ]

        assert await client.edit_message(sid, first.user_message.id, "U1 edited")
        loaded = await client.load_session(sid)
        assert [m.role for m in loaded] == ["user", "assistant"]

    async def test_send_refused_while_edit_in_flight(self, client, service):
        first = await client.send("U1")
        sid = first.session_id
        service.started.clear()
        service.gate = asyncio.Event()

        editing = asyncio.create_task(client.edit(sid, first.user_message.id, "U1 edited"))
        await asyncio.wait_for(service.started.wait(), timeout=1)
        with pytest.raises(ConcurrencyError):
            await client.send("U2", session_id=sid)

        service.gate.set()
        assert (await editing).ok
        loaded = await client.load_session(sid)
        assert [(m.role, m.content) for m in loaded][0] == ("user", "U1 edited")
        assert len(loaded) == 2

    async def test_edit_from_other_client_refused_while_send_awaits_reply(
        self, config, service, pool
    ):
        async with ChatClient.open(
            owner_id="user_test", config=config, pool=pool, completion_service=service
        ) as phone, ChatClient.open(
            owner_id="user_test", config=config, pool=pool, completion_service=service
        ) as tablet:
            first = await phone.send("U1")
            service.started.clear()
            service.gate = asyncio.Event()

            sending = asyncio.create_task(phone.send("U2", session_id=first.session_id))
            await asyncio.wait_for(service.started.wait(), timeout=1)
            result = await tablet.edit(first.session_id, first.user_message.id, "U1 edited")
            assert isinstance(result.error, ConcurrencyError)

            service.gate.set()
            await sending
            loaded = await tablet.load_session(first.session_id)
            assert [m.role for m in loaded] == ["user", "assistant", "user", "assistant"]


    async def test_vanished_user_message_is_classified(self, client, monkeypatch):
        first = await client.send("U1")

        async def _gone(session_id, client_id):
            return None

        monkeypatch.setattr(client.store, "get_message_by_client_id", _gone)
        with pytest.raises(MessageNotFoundError):
            await client.send("U2", session_id=first.session_id)

        monkeypatch.undo()
        assert (await client.edit(first.session_id, first.user_message.id, "U1 edited")).ok


class TestSessions:
    async def test_rename_session(self, client):
        turn = await client.send("Hello")
        session = await client.rename_session(turn.session_id, "Raise prep")
        assert session.title == "Raise prep"
        assert (await client.list_sessions())[0].title == "Raise prep"

    async def test_delete_session(self, client):
        turn = await client.send("Hello")
        await client.delete_session(turn.session_id)

        assert await client.list_sessions() == []
        assert client.active_session_id is None
        assert client.messages == []
        assert client.edit_phase(turn.session_id) == EditPhase.IDLE
        with pytest.raises(SessionNotFoundError):
            await client.load_session(turn.session_id)

    async def test_sessions_scoped_to_owner(self, config, service, pool):
        async with ChatClient.open(
            owner_id="alice", config=config, pool=pool, completion_service=service
        ) as alice, ChatClient.open(
            owner_id="bob", config=config, pool=pool, completion_service=service
        ) as bob:
            await alice.send("Alice's question")
            assert await bob.list_sessions() == []
            assert len(await alice.list_sessions()) == 1

    async def test_load_session_after_reopen(self, config, service):
        async with ChatClient.open(config=config, completion_service=service) as c:
            turn = await c.send("Remember me")

        async with ChatClient.open(config=config, completion_service=service) as c:
            loaded = await c.load_session(turn.session_id)
            assert [m.content for m in loaded][0] == "Remember me"


class TestLifecycle:
    async def test_create_with_db_path(self, tmp_path, mock_llm_env):
        client = await ChatClient.create(db_path=str(tmp_path / "chat.db"))
        try:
            turn = await client.send("Hello")
            assert "[Mock coaching reply to: Hello]" in turn.text
        finally:
            await client.close()

    async def test_db_path_conflicts_with_config(self, tmp_path, config):
        with pytest.raises(ValueError):
            await ChatClient.create(config=config, db_path=str(tmp_path / "other.db"))

    async def test_context_manager_closes_on_exception(self, config, service):
        with pytest.raises(RuntimeError):
            async with ChatClient.open(config=config, completion_service=service) as c:
                raise RuntimeError("boom")
        with pytest.raises(StoreError):
            await c.list_sessions()

    def test_public_exports(self):
        for name in ("ChatClient", "EditCoordinator", "EditResult", "ConcurrencyError"):
            assert name in redraft.__all__
        assert redraft.__version__ == "0.1.0"
