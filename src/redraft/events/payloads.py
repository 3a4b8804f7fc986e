"""Typed payload definitions for each ChatEvent.

Usage example::

    from redraft.events.bus import ChatEvent
    from redraft.events.payloads import EditFailedPayload

    def on_failed(event: ChatEvent, payload: EditFailedPayload) -> None:
        if payload["retryable"]:
            show_retry_button(payload["session_id"])

    bus.subscribe(ChatEvent.EDIT_FAILED, on_failed)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionCreatedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.SESSION_CREATED`."""

    session_id: str
    owner_id: str
    title: str | None


class SessionRenamedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.SESSION_RENAMED`."""

    session_id: str
    title: str


class SessionDeletedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.SESSION_DELETED`."""

    session_id: str


# ── Message lifecycle ─────────────────────────────────────────────────────────


class MessageCreatedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.MESSAGE_CREATED`."""

    session_id: str
    message_id: str
    role: str
    """``"user"`` or ``"assistant"``."""
    seq: int


class MessageUpdatedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.MESSAGE_UPDATED`."""

    session_id: str
    message_id: str


class MessagesTruncatedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.MESSAGES_TRUNCATED`."""

    session_id: str
    after_seq: int
    """Messages with a sequence number above this were removed."""
    count: int


# ── Edit lifecycle ────────────────────────────────────────────────────────────


class EditPhaseChangedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.EDIT_PHASE_CHANGED`."""

    session_id: str
    previous: str
    phase: str


class EditCompletedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.EDIT_COMPLETED`."""

    session_id: str
    message_id: str
    removed_count: int
    reply_id: str


class EditFailedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.EDIT_FAILED`."""

    session_id: str
    message_id: str | None
    error_type: str
    """Class name from :mod:`redraft.errors`, e.g. ``"RegenerationError"``."""
    error: str
    retryable: bool


class RegenerationFailedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.REGENERATION_FAILED`."""

    session_id: str
    error: str
    attempts: int


class CacheReloadedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.CACHE_RELOADED`."""

    session_id: str
    count: int
    preserved_optimistic: int
    """Number of unconfirmed optimistic entries kept after the canonical messages."""
