"""Client-side session cache reconciled against the conversation store."""

from __future__ import annotations

from typing import Any

import structlog

from redraft.events.bus import ChatEvent, EventBus
from redraft.models.message import Message, Role
from redraft.store.conversation import ConversationStore, make_id


def reconcile(
    current: list[Message],
    canonical: list[Message],
    *,
    session_id: str,
    preserve_optimistic: bool,
) -> list[Message]:
    """
    Merge the cached view with a canonical read.

    The canonical messages always come first, in store order. With
    ``preserve_optimistic`` the unconfirmed optimistic entries of the same
    session follow them in their original relative order. An optimistic entry
    is confirmed by a canonical message with the same ``client_id`` or, for
    entries without one, by a canonical message the cache has not shown yet
    that has the same role and trimmed content.
    """
    if not preserve_optimistic:
        return list(canonical)

    already_shown = {m.id for m in current if not m.optimistic}
    by_client_id = {m.client_id: m for m in canonical if m.client_id}
    confirmed: set[str] = set()
    unconfirmed: list[Message] = []

    for entry in current:
        if not entry.optimistic:
            continue
        if entry.session_id != session_id:
            continue
        match: Message | None = None
        if entry.client_id is not None:
            match = by_client_id.get(entry.client_id)
        else:
            match = next(
                (
                    c
                    for c in canonical
                    if c.id not in confirmed
                    and c.id not in already_shown
                    and c.role == entry.role
                    and c.content.strip() == entry.content.strip()
                ),
                None,
            )
        if match is not None:
            confirmed.add(match.id)
        else:
            unconfirmed.append(entry)

    return [*canonical, *unconfirmed]


class SessionCache:
    """
    Ephemeral, ordered view of the active session's messages.

    The cache never holds two messages with the same id and never reorders
    canonical messages; the store stays the source of truth and every
    ``load_session()`` re-derives the view from a canonical read.

    Usage::

        cache = SessionCache(store)
        pending = cache.add_optimistic(session_id, "user", "Draft reply?")
        ...                                  # message is sent and answered
        await cache.load_session(session_id, preserve_optimistic=True)
    """

    def __init__(self, store: ConversationStore, event_bus: EventBus | None = None) -> None:
        self._store = store
        self._event_bus = event_bus
        self._session_id: str | None = None
        self._messages: list[Message] = []
        self._logger = structlog.get_logger("redraft.cache")

    @property
    def session_id(self) -> str | None:
        """The session currently held in the cache, if any."""
        return self._session_id

    @property
    def messages(self) -> list[Message]:
        """A copy of the cached messages in display order."""
        return list(self._messages)

    @property
    def pending(self) -> list[Message]:
        """Optimistic entries not yet confirmed by the store."""
        return [m for m in self._messages if m.optimistic]

    async def load_session(
        self, session_id: str, preserve_optimistic: bool = False
    ) -> list[Message]:
        """
        Refresh the cache from the store.

        Args:
            session_id: Session to load. Loading a different session than the
                cached one drops the previous session's optimistic entries.
            preserve_optimistic: Keep optimistic entries that the store has not
                confirmed yet. Pass False after an edit so a stale pre-edit
                tail can never be shown.

        Returns:
            The new cached view.

        Raises:
            SessionNotFoundError: If the session does not exist or is deleted.
                The cache is left untouched.
        """
        canonical = self._dedupe(await self._store.list_messages(session_id))
        current = self._messages if session_id == self._session_id else []
        merged = reconcile(
            current, canonical, session_id=session_id, preserve_optimistic=preserve_optimistic
        )

        self._session_id = session_id
        self._messages = merged
        preserved = len(merged) - len(canonical)
        self._logger.debug(
            "cache_reloaded",
            session_id=session_id,
            count=len(merged),
            preserved_optimistic=preserved,
        )
        if self._event_bus is not None:
            self._event_bus.publish(
                ChatEvent.CACHE_RELOADED,
                {
                    "session_id": session_id,
                    "count": len(merged),
                    "preserved_optimistic": preserved,
                },
            )
        return list(merged)

    def add_optimistic(
        self,
        session_id: str,
        role: Role,
        content: str,
        *,
        client_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """
        Show a message before the store has confirmed it.

        The entry gets a temporary ``tmp_`` id and ``status="sending"``.
        Adding to a session other than the cached one switches the cache to it.
        """
        if session_id != self._session_id:
            self._session_id = session_id
            self._messages = []
        entry = Message(
            id=make_id("tmp"),
            session_id=session_id,
            role=role,
            content=content,
            client_id=client_id,
            metadata={**(metadata or {}), "status": "sending"},
            optimistic=True,
        )
        self._messages.append(entry)
        return entry

    def mark_failed(self, message_id: str) -> None:
        """Flag an optimistic entry as failed so the UI can offer a retry."""
        for i, m in enumerate(self._messages):
            if m.id == message_id and m.optimistic:
                self._messages[i] = m.model_copy(
                    update={"metadata": {**(m.metadata or {}), "status": "failed"}}
                )
                return

    def discard(self, message_id: str) -> bool:
        """Remove an optimistic entry. Returns False if there was none."""
        for i, m in enumerate(self._messages):
            if m.id == message_id and m.optimistic:
                del self._messages[i]
                return True
        return False

    def clear(self) -> None:
        """Forget the cached session entirely."""
        self._session_id = None
        self._messages = []

    def _dedupe(self, canonical: list[Message]) -> list[Message]:
        seen: set[str] = set()
        unique: list[Message] = []
        for m in canonical:
            if m.id in seen:
                continue
            seen.add(m.id)
            unique.append(m)
        if len(unique) != len(canonical):
            self._logger.warning(
                "duplicate_messages_dropped",
                session_id=canonical[0].session_id,
                dropped=len(canonical) - len(unique),
            )
        return unique
