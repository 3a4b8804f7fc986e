"""Redraft ChatClient — the primary public API entry point."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog

from redraft.cache import SessionCache
from redraft.edit.coordinator import EditCoordinator
from redraft.edit.state import EditPhase
from redraft.errors import EmptyContentError
from redraft.events.bus import ChatEvent, EventBus, Handler
from redraft.models.config import RedraftConfig, StoreConfig
from redraft.models.message import EditResult, Message, TurnResult
from redraft.regeneration.client import RegenerationClient
from redraft.regeneration.service import CompletionService, LiteLLMCompletionService
from redraft.store.conversation import (
    ConversationStore,
    MessageNotFoundError,
    Session,
    make_id,
)
from redraft.store.pool import StorePool

TITLE_MAX_CHARS = 50


def session_title(first_message: str) -> str:
    """Derive a session title from the first user message."""
    text = first_message.strip()
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


class ChatClient:
    """
    One user's chat client over a conversation store.

    Owns the store, the session cache, the regeneration client and the edit
    coordinator, and wires them to a shared event bus.

    Usage::

        async with ChatClient.open(owner_id="user_42") as client:
            turn = await client.send("How do I give harder feedback?")
            ok = await client.edit_message(
                turn.session_id, turn.user_message.id, "How do I give difficult feedback kindly?"
            )
            for message in client.messages:
                print(message.role, message.content)

    Tests and offline runs can pass any :class:`CompletionService` as
    ``completion_service``; the default calls the configured model through
    litellm (or a mock reply when ``REDRAFT_MOCK_LLM=1``).
    """

    def __init__(
        self,
        owner_id: str,
        config: RedraftConfig,
        store: ConversationStore,
        cache: SessionCache,
        regeneration: RegenerationClient,
        coordinator: EditCoordinator,
        event_bus: EventBus,
    ) -> None:
        self._owner_id = owner_id
        self._config = config
        self._store = store
        self._cache = cache
        self._regeneration = regeneration
        self._coordinator = coordinator
        self._event_bus = event_bus
        self._logger = structlog.get_logger("redraft.client").bind(owner_id=owner_id)

    @classmethod
    async def create(
        cls,
        *,
        owner_id: str = "local",
        config: RedraftConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        completion_service: CompletionService | None = None,
    ) -> ChatClient:
        """
        Open the store and build a ready client.

        Args:
            owner_id: Identifier of the user whose sessions this client manages.
            config: Redraft configuration. Defaults to ``RedraftConfig()``.
            db_path: Override database path (useful for testing). Raises
                ``ValueError`` if both ``db_path`` and ``config.store.db_path``
                are supplied.
            pool: Optional shared connection pool. The caller is responsible
                for calling ``pool.close_all()`` at shutdown.
            completion_service: Replaces the default litellm-backed service.

        Raises:
            ValueError: If both ``db_path`` and ``config.store.db_path`` are supplied.
            aiosqlite.Error: If the database cannot be initialized.
        """
        cfg = config or RedraftConfig()
        if db_path is not None:
            if config is not None and cfg.store.db_path != StoreConfig().db_path:
                raise ValueError(
                    "Specify db_path either via db_path= or config.store.db_path, not both."
                )
            cfg = cfg.model_copy(
                update={"store": cfg.store.model_copy(update={"db_path": db_path})}
            )

        store = ConversationStore(cfg.store, pool=pool)
        await store.initialize()

        event_bus = EventBus()
        cache = SessionCache(store, event_bus)
        service = completion_service or LiteLLMCompletionService(cfg.regeneration)
        regeneration = RegenerationClient(store, service, cfg.regeneration, event_bus)
        coordinator = EditCoordinator(
            store,
            regeneration,
            cache=cache,
            config=cfg.edit,
            event_bus=event_bus,
        )
        structlog.get_logger("redraft.client").info("client_opened", owner_id=owner_id)
        return cls(owner_id, cfg, store, cache, regeneration, coordinator, event_bus)

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        *,
        owner_id: str = "local",
        config: RedraftConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        completion_service: CompletionService | None = None,
    ) -> AsyncGenerator[ChatClient, None]:
        """
        Create a client and use it as an async context manager.

        All parameters are identical to :meth:`create`. The client is closed
        (detached edits awaited, DB connection released) when the block exits.
        """
        client = await cls.create(
            owner_id=owner_id,
            config=config,
            db_path=db_path,
            pool=pool,
            completion_service=completion_service,
        )
        try:
            yield client
        finally:
            await client.close()

    # ── Messaging ──────────────────────────────────────────────────────────────

    async def send(
        self,
        content: str,
        *,
        session_id: str | None = None,
        client_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TurnResult:
        """
        Send a user message and wait for the assistant reply.

        The message is shown optimistically in the cache first. Without
        ``session_id`` a new session is created, titled after the message.
        Re-sending with the same ``client_id`` never stores the message twice
        and returns the existing reply when there is one.

        Raises:
            EmptyContentError: If the content is empty after trimming.
            ConcurrencyError: If an edit, retry or other send holds the session.
            RegenerationError: If no reply could be generated. The user message
                is stored; :meth:`retry_reply` produces the missing reply.
            SessionNotFoundError: If ``session_id`` does not exist or is deleted.
            MessageNotFoundError: If the stored user message vanished before
                the turn completed.
        """
        text = content.strip()
        if not text:
            raise EmptyContentError("Message cannot be empty", session_id=session_id)

        session_created = False
        if session_id is None:
            session_id = make_id("sess")
            title = session_title(text)
            await self._store.create_session(session_id, owner_id=self._owner_id, title=title)
            self._event_bus.publish(
                ChatEvent.SESSION_CREATED,
                {"session_id": session_id, "owner_id": self._owner_id, "title": title},
            )
            session_created = True

        client_id = client_id or make_id("cli")
        # Edits of this session are refused until the reply is stored
        async with self._coordinator.hold(session_id):
            answered_before = await self._already_answered(session_id, client_id)
            pending = self._cache.add_optimistic(
                session_id, "user", text, client_id=client_id, metadata=metadata
            )
            try:
                reply = await self._regeneration.regenerate(
                    session_id,
                    text,
                    skip_user_message=False,
                    client_id=client_id,
                    metadata=metadata,
                )
            except Exception:
                self._cache.mark_failed(pending.id)
                raise

            user_message = await self._store.get_message_by_client_id(session_id, client_id)
            if user_message is None:
                raise MessageNotFoundError(client_id)
            await self._cache.load_session(session_id, preserve_optimistic=True)
        self._logger.info(
            "turn_completed",
            session_id=session_id,
            user_message_id=user_message.id,
            reply_id=reply.id,
            duplicate=answered_before,
        )
        return TurnResult(
            session_id=session_id,
            user_message=user_message,
            assistant_message=reply,
            session_created=session_created,
            duplicate=answered_before,
        )

    async def _already_answered(self, session_id: str, client_id: str) -> bool:
        existing = await self._store.get_message_by_client_id(session_id, client_id)
        if existing is None:
            return False
        return await self._store.find_reply(session_id, existing.seq) is not None

    async def edit_message(self, session_id: str, message_id: str, new_content: str) -> bool:
        """
        Edit a user message and regenerate the reply after it.

        Returns:
            True when the edit and its new reply are persisted. On False, the
            classified error is available via :meth:`edit` and published as
            ``ChatEvent.EDIT_FAILED``.
        """
        result = await self.edit(session_id, message_id, new_content)
        return result.ok

    async def edit(self, session_id: str, message_id: str, new_content: str) -> EditResult:
        """Like :meth:`edit_message` but returns the full :class:`EditResult`."""
        return await self._coordinator.edit_message(session_id, message_id, new_content)

    async def retry_reply(self, session_id: str) -> EditResult:
        """Generate the missing reply when the session ends with a user message."""
        return await self._coordinator.retry_reply(session_id)

    def edit_phase(self, session_id: str) -> EditPhase:
        """Where the session's most recent edit stands."""
        return self._coordinator.phase(session_id)

    # ── Sessions ───────────────────────────────────────────────────────────────

    async def load_session(
        self, session_id: str, preserve_optimistic: bool = False
    ) -> list[Message]:
        """Show a session: reload the cache from the store and return its view."""
        return await self._cache.load_session(session_id, preserve_optimistic=preserve_optimistic)

    async def list_sessions(self, *, limit: int = 50, offset: int = 0) -> list[Session]:
        """This owner's live sessions, most recently active first."""
        return await self._store.list_sessions(self._owner_id, limit=limit, offset=offset)

    async def rename_session(self, session_id: str, title: str) -> Session:
        session = await self._store.rename_session(session_id, title)
        self._event_bus.publish(
            ChatEvent.SESSION_RENAMED, {"session_id": session_id, "title": session.title}
        )
        return session

    async def delete_session(self, session_id: str) -> None:
        """
        Soft-delete a session. It disappears from listings immediately and is
        physically removed by ``ConversationStore.purge_deleted_sessions()``.
        """
        await self._store.soft_delete_session(session_id)
        self._coordinator.forget(session_id)
        if self._cache.session_id == session_id:
            self._cache.clear()
        self._event_bus.publish(ChatEvent.SESSION_DELETED, {"session_id": session_id})

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """
        Release the client.

        Edits whose callers stopped waiting are awaited first so their replies
        are persisted before the database connection is closed.
        """
        await self._coordinator.wait_for_pending()
        await self._store.close()
        self._logger.info("client_closed")

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def config(self) -> RedraftConfig:
        return self._config

    @property
    def store(self) -> ConversationStore:
        """The underlying conversation store."""
        return self._store

    @property
    def messages(self) -> list[Message]:
        """The cached view of the active session."""
        return self._cache.messages

    @property
    def active_session_id(self) -> str | None:
        return self._cache.session_id

    @property
    def event_bus(self) -> EventBus:
        """The event bus for this client. Subscribe to monitor events."""
        return self._event_bus

    def subscribe(self, event: ChatEvent, handler: Handler) -> None:
        """Convenience wrapper for ``client.event_bus.subscribe()``."""
        self._event_bus.subscribe(event, handler)
