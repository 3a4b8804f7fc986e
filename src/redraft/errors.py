"""Redraft exception hierarchy.

Every failure of an edit is classified into one of the ``EditError``
subclasses below before it reaches the caller.
"""

from __future__ import annotations


class RedraftError(Exception):
    """Base exception for all Redraft errors."""


class EditError(RedraftError):
    """Base class for classified edit failures."""

    retryable: bool = False

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class NotFoundError(EditError):
    """The session or message does not exist or was already deleted."""


class ConcurrencyError(EditError):
    """An edit is already in flight for this session.

    Callers should show a transient "already saving" state rather than
    retrying immediately.
    """


class PersistenceError(EditError):
    """A store delete or update failed.

    Retrying the whole edit is safe: it re-reads canonical state first.
    """

    retryable = True


class RegenerationError(EditError):
    """The completion service failed or timed out.

    The edited message is already durable; only the assistant reply is missing.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.attempts = attempts


class EmptyContentError(EditError):
    """The new content is empty after trimming whitespace."""


class NotEditableError(EditError):
    """The target message cannot be edited (only user messages can)."""


class InvalidTransitionError(RedraftError):
    """Raised when the edit state machine is driven through an illegal transition."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal edit phase transition: {current} -> {target}")
        self.current = current
        self.target = target
