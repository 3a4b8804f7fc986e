"""Shared fixtures for Redraft tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from redraft.cache import SessionCache
from redraft.edit.coordinator import EditCoordinator
from redraft.events.bus import ChatEvent, EventBus
from redraft.models.config import EditConfig, RedraftConfig, RegenerationConfig, StoreConfig
from redraft.models.message import Message
from redraft.regeneration.client import RegenerationClient
from redraft.regeneration.service import CompletionRequest, CompletionResponse
from redraft.store.conversation import ConversationStore
from redraft.store.pool import StorePool


class FakeCompletionService:
    """
    Scripted completion service.

    Replies are popped from ``replies`` (falling back to ``"Reply N"``).
    Queued ``failures`` are raised first, one per call. When ``gate`` is set,
    every call waits for it before answering.
    """

    def __init__(self, replies: list[str] | None = None) -> None:
        self.replies = list(replies or [])
        self.failures: list[BaseException] = []
        self.requests: list[CompletionRequest] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        content = self.replies.pop(0) if self.replies else f"Reply {self.calls}"
        return CompletionResponse(content=content, model="fake-model", tokens_used=7)


@pytest.fixture
def config(tmp_path):
    """RedraftConfig with a temp database path and fast retries."""
    return RedraftConfig(
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        regeneration=RegenerationConfig(timeout_secs=2.0, max_retries=1, retry_backoff_secs=0.0),
        edit=EditConfig(lease_ttl_secs=30.0),
    )


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def store(config, pool):
    """Initialized ConversationStore backed by a temp SQLite database (pool-managed)."""
    s = ConversationStore(config.store, pool=pool)
    await s.initialize()
    yield s
    await s.close()  # no-op for pool-managed conn; pool fixture closes the connection


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[ChatEvent, dict[str, Any]]] = []

    def _collect(event: ChatEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest_asyncio.fixture
async def session_id(store):
    """A pre-created session ID in the store."""
    sid = "sess_TEST01"
    await store.create_session(sid, owner_id="user_test", title="Test session")
    return sid


@pytest.fixture
def seed(store):
    """Append alternating user/assistant messages: ``await seed(sid, "U1", "A1", ...)``."""

    async def _seed(session_id: str, *contents: str) -> list[Message]:
        messages = []
        for i, content in enumerate(contents):
            role = "user" if i % 2 == 0 else "assistant"
            messages.append(await store.append_message(session_id, role, content))
        return messages

    return _seed


@pytest.fixture
def service():
    return FakeCompletionService()


@pytest.fixture
def regeneration(store, service, config, event_bus):
    return RegenerationClient(store, service, config.regeneration, event_bus)


@pytest.fixture
def cache(store, event_bus):
    return SessionCache(store, event_bus)


@pytest.fixture
def coordinator(store, regeneration, cache, config, event_bus):
    return EditCoordinator(
        store, regeneration, cache=cache, config=config.edit, event_bus=event_bus
    )


def contents(messages: list[Message]) -> list[tuple[str, str]]:
    """(role, content) pairs, for compact assertions."""
    return [(m.role, m.content) for m in messages]


@pytest.fixture
def as_pairs():
    return contents
