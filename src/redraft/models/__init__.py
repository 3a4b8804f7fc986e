"""Redraft data models."""

from redraft.models.config import (
    EditConfig,
    RedraftConfig,
    RegenerationConfig,
    StoreConfig,
)
from redraft.models.message import (
    EditResult,
    Message,
    Role,
    TurnResult,
    now_ms,
)

__all__ = [
    # Config
    "EditConfig",
    "RedraftConfig",
    "RegenerationConfig",
    "StoreConfig",
    # Message
    "Message",
    "Role",
    "now_ms",
    # Results
    "EditResult",
    "TurnResult",
]
