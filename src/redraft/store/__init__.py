"""Redraft persistence layer."""

from redraft.store.conversation import (
    ConversationStore,
    DuplicateIDError,
    Lease,
    MessageNotFoundError,
    Session,
    SessionNotFoundError,
    StoreError,
    TailChangedError,
    make_id,
)
from redraft.store.pool import StorePool

__all__ = [
    "ConversationStore",
    "StorePool",
    "Session",
    "Lease",
    "make_id",
    "StoreError",
    "SessionNotFoundError",
    "MessageNotFoundError",
    "DuplicateIDError",
    "TailChangedError",
]
