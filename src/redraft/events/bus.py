"""In-process pub/sub event bus for Redraft session and edit lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["ChatEvent", dict[str, Any]], None | Awaitable[None]]


class ChatEvent(StrEnum):
    """All event types published by Redraft components.

    Typed payload definitions for each event live in
    :mod:`redraft.events.payloads`.

    **Payload schemas by event:**

    ``SESSION_CREATED``
        :class:`~redraft.events.payloads.SessionCreatedPayload` —
        ``session_id: str``, ``owner_id: str``, ``title: str | None``

    ``SESSION_RENAMED``
        :class:`~redraft.events.payloads.SessionRenamedPayload` —
        ``session_id: str``, ``title: str``

    ``SESSION_DELETED``
        :class:`~redraft.events.payloads.SessionDeletedPayload` —
        ``session_id: str``

    ``MESSAGE_CREATED``
        :class:`~redraft.events.payloads.MessageCreatedPayload` —
        ``session_id``, ``message_id``, ``role``, ``seq``

    ``MESSAGE_UPDATED``
        :class:`~redraft.events.payloads.MessageUpdatedPayload` —
        ``session_id``, ``message_id``

    ``MESSAGES_TRUNCATED``
        :class:`~redraft.events.payloads.MessagesTruncatedPayload` —
        ``session_id``, ``after_seq``, ``count``

    ``EDIT_PHASE_CHANGED``
        :class:`~redraft.events.payloads.EditPhaseChangedPayload` —
        ``session_id``, ``previous``, ``phase``

    ``EDIT_COMPLETED`` / ``EDIT_FAILED``
        :class:`~redraft.events.payloads.EditCompletedPayload`,
        :class:`~redraft.events.payloads.EditFailedPayload`.

    ``REGENERATION_FAILED``
        :class:`~redraft.events.payloads.RegenerationFailedPayload` —
        ``session_id``, ``error``, ``attempts``

    ``CACHE_RELOADED``
        :class:`~redraft.events.payloads.CacheReloadedPayload` —
        ``session_id``, ``count``, ``preserved_optimistic``
    """

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_RENAMED = "session.renamed"
    SESSION_DELETED = "session.deleted"

    # Message lifecycle
    MESSAGE_CREATED = "message.created"
    MESSAGE_UPDATED = "message.updated"
    MESSAGES_TRUNCATED = "messages.truncated"

    # Edit lifecycle
    EDIT_PHASE_CHANGED = "edit.phase_changed"
    EDIT_COMPLETED = "edit.completed"
    EDIT_FAILED = "edit.failed"

    REGENERATION_FAILED = "regeneration.failed"

    CACHE_RELOADED = "cache.reloaded"


class EventBus:
    """
    In-process publish/subscribe for chat, edit and cache events.

    Handlers receive ``(event, payload)``. Plain functions run inline during
    ``publish()``; coroutine functions are started as tasks on the running
    loop and not awaited. A failing handler is logged and never reaches the
    component that published, so a broken UI listener cannot fail an edit.

    Example::

        bus = EventBus()

        def on_edit(event, payload):
            print(f"Edit of {payload['message_id']} removed {payload['removed_count']}")

        bus.subscribe(ChatEvent.EDIT_COMPLETED, on_edit)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._by_event: dict[ChatEvent, list[Handler]] = {}
        self._wildcard: list[Handler] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logger or structlog.get_logger("redraft.events")

    def subscribe(self, event: ChatEvent, handler: Handler) -> None:
        """Call ``handler`` for every ``event`` published from now on."""
        self._by_event.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Call ``handler`` for every event of any type."""
        self._wildcard.append(handler)

    def unsubscribe(self, event: ChatEvent, handler: Handler) -> None:
        """Remove a handler registered with :meth:`subscribe`. Unknown handlers are ignored."""
        registered = self._by_event.get(event)
        if registered and handler in registered:
            registered.remove(handler)

    def publish(self, event: ChatEvent, payload: dict[str, Any]) -> None:
        """Deliver ``payload`` to the handlers of ``event``, then to wildcard handlers."""
        for handler in [*self._by_event.get(event, ()), *self._wildcard]:
            try:
                outcome = handler(event, payload)
                if asyncio.iscoroutine(outcome):
                    self._schedule(outcome)
            except Exception as exc:
                self._log_failure(event, handler, exc)

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Published outside the loop; nothing can run the handler
            coro.close()
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _log_failure(self, event: ChatEvent, handler: Handler, exc: Exception) -> None:
        self._logger.error(
            "event_handler_failed",
            event=event.value,
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )
