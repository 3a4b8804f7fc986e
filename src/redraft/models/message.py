"""Core message and result data models for Redraft."""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from redraft.errors import EditError

Role = Literal["user", "assistant"]


def now_ms() -> int:
    """Current wall-clock time as a unix millisecond timestamp."""
    return int(time.time() * 1000)


# ── Message Models ─────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single message in a session's conversation log.

    Order within a session is defined by ``seq`` alone. ``created_at`` is
    informational; two messages written in the same millisecond still have
    distinct, increasing ``seq`` values.
    """

    id: str
    """ULID-based sortable ID, e.g. ``msg_01JXYZ6K3MNPQR4STUVWXYZ01``."""
    session_id: str
    role: Role
    content: str
    seq: int = 0
    """Per-session sequence number assigned by the store on append. 0 = not persisted."""
    created_at: int = Field(default_factory=now_ms)
    """Unix millisecond timestamp."""
    updated_at: int | None = None
    """Set when the content was edited in place."""
    client_id: str | None = None
    """Caller-supplied idempotency key. Unique per session when present."""
    metadata: dict[str, Any] | None = None
    """Attachment references, delivery status, model and token usage."""
    optimistic: bool = False
    """True for cache-only entries not yet confirmed by the store."""

    @property
    def is_persisted(self) -> bool:
        return self.seq > 0 and not self.optimistic

    @property
    def status(self) -> str | None:
        """Delivery status recorded in metadata (``"sending"``, ``"failed"``, ...)."""
        if not self.metadata:
            return None
        return self.metadata.get("status")


# ── Result Types ───────────────────────────────────────────────────────────────


class TurnResult(BaseModel):
    """
    The result of a single ``ChatClient.send()`` call.

    Records the persisted user and assistant messages so callers can reference
    them later (e.g. to edit the user message).
    """

    session_id: str
    user_message: Message
    assistant_message: Message
    session_created: bool = False
    duplicate: bool = False
    """True when the client_id matched an already answered message and no call was made."""

    @property
    def text(self) -> str:
        return self.assistant_message.content


class EditResult(BaseModel):
    """
    The outcome of one edit (or reply retry) on a session.

    Failures are never raised out of the coordinator; they are carried in
    ``error`` as one of the :mod:`redraft.errors` classes.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str
    message_id: str | None = None
    ok: bool
    phase: str
    error: EditError | None = None
    removed_count: int = 0
    """Number of messages deleted from the tail of the session."""
    reply: Message | None = None
    """The freshly generated assistant message, when regeneration succeeded."""
    messages: list[Message] = Field(default_factory=list)
    """Canonical messages after the edit (the reconciled cache view)."""

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable

    def raise_for_error(self) -> None:
        """Re-raise the classified error, if any."""
        if self.error is not None:
            raise self.error
