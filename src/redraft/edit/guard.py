"""Single-flight edit guards: process-local flag and store-backed lease."""

from __future__ import annotations

import structlog

from redraft.store.conversation import ConversationStore, make_id


class EditGuard:
    """
    Process-local single-flight token per session.

    ``acquire()`` fails fast instead of waiting, so a second edit on the same
    session is rejected rather than queued. ``release()`` is unconditional and
    idempotent.

    The guard only excludes edits that go through the same coordinator
    instance; pair it with :class:`SessionLease` for exclusion across
    processes and devices.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def acquire(self, session_id: str) -> bool:
        if session_id in self._held:
            return False
        self._held.add(session_id)
        return True

    def release(self, session_id: str) -> None:
        self._held.discard(session_id)

    def held(self, session_id: str) -> bool:
        return session_id in self._held

    @property
    def active(self) -> frozenset[str]:
        """Sessions with an edit currently in flight."""
        return frozenset(self._held)


class SessionLease:
    """
    Edit lease stored beside the session in the conversation store.

    Each coordinator owns one lease token; any coordinator on the same
    database (another process, another device's server worker) sees the row
    and is refused until it is released or expires.
    """

    def __init__(
        self,
        store: ConversationStore,
        ttl_secs: float,
        owner: str | None = None,
    ) -> None:
        self._store = store
        self._ttl_secs = ttl_secs
        self.owner = owner or make_id("own")
        self._logger = structlog.get_logger("redraft.edit.lease").bind(owner=self.owner)

    async def acquire(self, session_id: str) -> bool:
        acquired = await self._store.acquire_lease(session_id, self.owner, self._ttl_secs)
        if not acquired:
            lease = await self._store.get_lease(session_id)
            self._logger.info(
                "lease_busy",
                session_id=session_id,
                holder=lease.owner if lease else None,
            )
        return acquired

    async def release(self, session_id: str) -> None:
        await self._store.release_lease(session_id, self.owner)
