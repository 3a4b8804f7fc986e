"""Redraft event bus."""

from redraft.events.bus import ChatEvent, EventBus, Handler
from redraft.events.payloads import (
    CacheReloadedPayload,
    EditCompletedPayload,
    EditFailedPayload,
    EditPhaseChangedPayload,
    MessageCreatedPayload,
    MessagesTruncatedPayload,
    MessageUpdatedPayload,
    RegenerationFailedPayload,
    SessionCreatedPayload,
    SessionDeletedPayload,
    SessionRenamedPayload,
)

__all__ = [
    "CacheReloadedPayload",
    "ChatEvent",
    "EditCompletedPayload",
    "EditFailedPayload",
    "EditPhaseChangedPayload",
    "EventBus",
    "Handler",
    "MessageCreatedPayload",
    "MessageUpdatedPayload",
    "MessagesTruncatedPayload",
    "RegenerationFailedPayload",
    "SessionCreatedPayload",
    "SessionDeletedPayload",
    "SessionRenamedPayload",
]
