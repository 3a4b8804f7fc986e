"""Edit coordinator — truncate, persist, regenerate and reconcile one edit."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import aiosqlite
import structlog

from redraft.cache import SessionCache
from redraft.edit.guard import EditGuard, SessionLease
from redraft.edit.state import EditPhase, EditStateMachine
from redraft.errors import (
    ConcurrencyError,
    EditError,
    EmptyContentError,
    NotEditableError,
    NotFoundError,
    PersistenceError,
    RegenerationError,
)
from redraft.events.bus import ChatEvent, EventBus
from redraft.models.config import EditConfig
from redraft.models.message import EditResult, Message
from redraft.regeneration.client import RegenerationClient
from redraft.store.conversation import (
    ConversationStore,
    MessageNotFoundError,
    SessionNotFoundError,
    StoreError,
)


class EditCoordinator:
    """
    Orchestrates the edit-and-regenerate sequence for user messages.

    For one ``edit_message()`` call:

    1. **Guard** — the process-local guard is taken synchronously, then the
       store lease. Either one busy → ``ConcurrencyError``, nothing written.
    2. **Canonical read** — messages come from the store, never the cache.
    3. **Truncate** — every message after the target is removed with one
       atomic range delete.
    4. **Persist** — the target's content is replaced in place.
    5. **Regenerate** — one assistant reply is generated for the edited text.
    6. **Reconcile** — the session cache is reloaded from the store.

    Guarantees:
    - ``edit_message()`` never raises an edit failure; every error comes back
      classified in ``EditResult.error``.
    - The guard and lease are held until regeneration and reconciliation are
      over, and are always released.
    - Cancelling the awaiting caller does not cancel the edit: the work runs
      in its own task, its reply is persisted and visible on the next load,
      and the guard is released when it finishes.
    - Nothing is rolled back. A retry with the same arguments recomputes from
      canonical state, so it is safe after any partial failure.

    Example::

        coordinator = EditCoordinator(store, regeneration, cache=cache)
        result = await coordinator.edit_message(session_id, message_id, "Reworded question")
        if not result.ok and result.retryable:
            show_retry(result.error)
    """

    def __init__(
        self,
        store: ConversationStore,
        regeneration: RegenerationClient,
        *,
        cache: SessionCache | None = None,
        config: EditConfig | None = None,
        event_bus: EventBus | None = None,
        lease: SessionLease | None = None,
    ) -> None:
        cfg = config or EditConfig()
        self._store = store
        self._regeneration = regeneration
        self._cache = cache
        self._event_bus = event_bus
        self._guard = EditGuard()
        if lease is None and cfg.use_store_lease:
            lease = SessionLease(store, cfg.lease_ttl_secs)
        self._lease = lease
        self._state = EditStateMachine(event_bus)
        self._pending: set[asyncio.Task[EditResult]] = set()
        self._logger = structlog.get_logger("redraft.edit")

    # ── Public API ─────────────────────────────────────────────────────────────

    async def edit_message(self, session_id: str, message_id: str, new_content: str) -> EditResult:
        """
        Replace a user message's content and regenerate the reply to it.

        Args:
            session_id: Session holding the message.
            message_id: The user message to edit.
            new_content: Replacement text. Surrounding whitespace is trimmed.

        Returns:
            EditResult. On success the session reads
            ``[...prefix, edited message, new reply]``.
        """
        content = new_content.strip()
        if not content:
            return self._rejected(
                session_id,
                message_id,
                EmptyContentError("Message cannot be empty", session_id=session_id),
            )

        async def body() -> EditResult:
            return await self._run_edit(session_id, message_id, content)

        return await self._guarded(session_id, message_id, body)

    async def retry_reply(self, session_id: str) -> EditResult:
        """
        Generate the missing reply when the session ends with a user message.

        This is the "retry only the regeneration step" path after an edit whose
        reply failed. When the session already ends with an assistant message
        nothing is generated and the result is a success with no ``reply``.
        """

        async def body() -> EditResult:
            return await self._run_retry(session_id)

        return await self._guarded(session_id, None, body)

    def phase(self, session_id: str) -> EditPhase:
        """The current edit phase of a session (``IDLE`` if never edited)."""
        return self._state.phase(session_id)

    def in_flight(self, session_id: str) -> bool:
        """True while an edit, retry or held send owns the session's guard."""
        return self._guard.held(session_id)

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        """
        Own the session's guard and lease for the span of the block.

        Used by sends so that no edit can truncate the session while its
        reply is being generated. Edits started meanwhile are rejected with
        ``ConcurrencyError``.

        Raises:
            ConcurrencyError: If an edit, retry or another send holds the session.
        """
        if not self._guard.acquire(session_id):
            raise ConcurrencyError("Session is busy with an edit or send", session_id=session_id)
        lease = self._lease
        lease_held = False
        try:
            if lease is not None:
                lease_held = await lease.acquire(session_id)
                if not lease_held:
                    raise ConcurrencyError(
                        "Session is held by another client", session_id=session_id
                    )
            yield
        finally:
            if lease is not None and lease_held:
                await self._release_lease(lease, session_id)
            self._guard.release(session_id)

    def forget(self, session_id: str) -> None:
        """Drop the phase tracking of a session (after it was deleted)."""
        self._state.forget(session_id)

    async def wait_for_pending(self) -> None:
        """Wait for edits whose callers stopped waiting (e.g. navigated away)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Guarding ───────────────────────────────────────────────────────────────

    async def _guarded(
        self,
        session_id: str,
        message_id: str | None,
        body: Callable[[], Awaitable[EditResult]],
    ) -> EditResult:
        # Taken before the first await so a concurrent call sees it immediately
        if not self._guard.acquire(session_id):
            self._logger.info("edit_rejected_in_flight", session_id=session_id)
            return self._rejected(
                session_id,
                message_id,
                ConcurrencyError("Session is busy with an edit or send", session_id=session_id),
            )

        task = asyncio.create_task(self._with_lease(session_id, message_id, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            self._logger.info("edit_wait_cancelled", session_id=session_id)
            raise

    async def _with_lease(
        self,
        session_id: str,
        message_id: str | None,
        body: Callable[[], Awaitable[EditResult]],
    ) -> EditResult:
        lease = self._lease
        lease_held = False
        try:
            if lease is not None:
                try:
                    lease_held = await lease.acquire(session_id)
                except Exception as exc:
                    return self._rejected(session_id, message_id, self._classify(exc, session_id))
                if not lease_held:
                    return self._rejected(
                        session_id,
                        message_id,
                        ConcurrencyError(
                            "Session is held by another client", session_id=session_id
                        ),
                    )
            return await body()
        finally:
            if lease is not None and lease_held:
                await self._release_lease(lease, session_id)
            self._guard.release(session_id)

    async def _release_lease(self, lease: SessionLease, session_id: str) -> None:
        try:
            await lease.release(session_id)
        except (StoreError, aiosqlite.Error) as exc:
            # The lease still expires after its TTL
            self._logger.error("lease_release_failed", session_id=session_id, error=str(exc))

    # ── Edit pipeline ──────────────────────────────────────────────────────────

    async def _run_edit(self, session_id: str, message_id: str, content: str) -> EditResult:
        self._state.transition(session_id, EditPhase.EDITING)
        self._logger.info("edit_started", session_id=session_id, message_id=message_id)
        try:
            removed = await self._apply_edit(session_id, message_id, content)
        except Exception as exc:
            return await self._failed(session_id, message_id, self._classify(exc, session_id))
        return await self._regenerate(session_id, message_id, content, removed)

    async def _apply_edit(self, session_id: str, message_id: str, content: str) -> int:
        """Canonical read, suffix truncation and in-place update. Returns messages removed."""
        messages = await self._store.list_messages(session_id)
        index = next((i for i, m in enumerate(messages) if m.id == message_id), None)
        if index is None:
            raise NotFoundError(f"Message not found: {message_id!r}", session_id=session_id)
        target = messages[index]
        if target.role != "user":
            raise NotEditableError(
                f"Only user messages can be edited, {message_id!r} is {target.role}",
                session_id=session_id,
            )

        removed = 0
        if index < len(messages) - 1:
            removed = await self._store.delete_messages(session_id, target.seq)
            self._publish(
                ChatEvent.MESSAGES_TRUNCATED,
                {"session_id": session_id, "after_seq": target.seq, "count": removed},
            )

        await self._store.update_message_content(session_id, message_id, content)
        self._publish(
            ChatEvent.MESSAGE_UPDATED, {"session_id": session_id, "message_id": message_id}
        )
        self._logger.info(
            "edit_persisted",
            session_id=session_id,
            message_id=message_id,
            seq=target.seq,
            removed=removed,
        )
        return removed

    async def _run_retry(self, session_id: str) -> EditResult:
        try:
            messages = await self._store.list_messages(session_id)
        except Exception as exc:
            return self._rejected(session_id, None, self._classify(exc, session_id))
        if not messages:
            return self._rejected(
                session_id, None, NotFoundError("Session has no messages", session_id=session_id)
            )

        tail = messages[-1]
        if tail.role == "assistant":
            self._logger.info("retry_reply_not_needed", session_id=session_id)
            return EditResult(
                session_id=session_id,
                ok=True,
                phase=str(self.phase(session_id)),
                messages=await self._reconcile(session_id),
            )

        self._state.transition(session_id, EditPhase.EDITING)
        return await self._regenerate(session_id, tail.id, tail.content, 0)

    async def _regenerate(
        self, session_id: str, message_id: str, content: str, removed: int
    ) -> EditResult:
        self._state.transition(session_id, EditPhase.REGENERATING)
        try:
            reply = await self._regeneration.regenerate(
                session_id, content, skip_user_message=True
            )
        except Exception as exc:
            error = self._classify(exc, session_id, regenerating=True)
            return await self._failed(session_id, message_id, error, removed=removed)

        try:
            messages = await self._reconcile(session_id)
        except Exception as exc:
            return await self._failed(
                session_id,
                message_id,
                self._classify(exc, session_id),
                removed=removed,
                reply=reply,
            )

        phase = self._state.transition(session_id, EditPhase.RECONCILED)
        self._publish(
            ChatEvent.EDIT_COMPLETED,
            {
                "session_id": session_id,
                "message_id": message_id,
                "removed_count": removed,
                "reply_id": reply.id,
            },
        )
        self._logger.info(
            "edit_completed",
            session_id=session_id,
            message_id=message_id,
            removed=removed,
            reply_id=reply.id,
        )
        return EditResult(
            session_id=session_id,
            message_id=message_id,
            ok=True,
            phase=str(phase),
            removed_count=removed,
            reply=reply,
            messages=messages,
        )

    async def _reconcile(self, session_id: str) -> list[Message]:
        """Reload the cache when it shows this session; otherwise just read canonically."""
        if self._cache is not None and self._cache.session_id == session_id:
            return await self._cache.load_session(session_id, preserve_optimistic=False)
        return await self._store.list_messages(session_id)

    # ── Outcomes ───────────────────────────────────────────────────────────────

    def _classify(
        self, exc: BaseException, session_id: str, *, regenerating: bool = False
    ) -> EditError:
        if isinstance(exc, EditError):
            return exc
        if isinstance(exc, (SessionNotFoundError, MessageNotFoundError)):
            return NotFoundError(str(exc), session_id=session_id)
        if regenerating and not isinstance(exc, (StoreError, aiosqlite.Error)):
            return RegenerationError(str(exc) or type(exc).__name__, session_id=session_id)
        return PersistenceError(str(exc) or type(exc).__name__, session_id=session_id)

    def _rejected(self, session_id: str, message_id: str | None, error: EditError) -> EditResult:
        """An outcome decided before any write; the phase is left alone."""
        self._publish_failure(session_id, message_id, error)
        return EditResult(
            session_id=session_id,
            message_id=message_id,
            ok=False,
            phase=str(self.phase(session_id)),
            error=error,
        )

    async def _failed(
        self,
        session_id: str,
        message_id: str | None,
        error: EditError,
        *,
        removed: int = 0,
        reply: Message | None = None,
    ) -> EditResult:
        phase = self._state.transition(session_id, EditPhase.FAILED)
        self._publish_failure(session_id, message_id, error)

        # The edit may be partly durable, so the view must come from the store
        messages: list[Message] = []
        if not isinstance(error, NotFoundError):
            try:
                messages = await self._reconcile(session_id)
            except Exception as exc:
                # The edit's own error is what gets returned
                self._logger.warning(
                    "reconcile_after_failure_failed",
                    session_id=session_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        return EditResult(
            session_id=session_id,
            message_id=message_id,
            ok=False,
            phase=str(phase),
            error=error,
            removed_count=removed,
            reply=reply,
            messages=messages,
        )

    def _publish_failure(self, session_id: str, message_id: str | None, error: EditError) -> None:
        self._logger.warning(
            "edit_failed",
            session_id=session_id,
            message_id=message_id,
            error_type=type(error).__name__,
            error=str(error),
        )
        self._publish(
            ChatEvent.EDIT_FAILED,
            {
                "session_id": session_id,
                "message_id": message_id,
                "error_type": type(error).__name__,
                "error": str(error),
                "retryable": error.retryable,
            },
        )

    def _publish(self, event: ChatEvent, payload: dict[str, object]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)
