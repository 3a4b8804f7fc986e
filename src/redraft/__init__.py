"""
Redraft — edit-and-regenerate conversation pipeline for AI coaching chats.

Primary entry point::

    from redraft import ChatClient

    async with ChatClient.open(owner_id="user_42") as client:
        turn = await client.send("How do I start a hard conversation?")
        await client.edit_message(turn.session_id, turn.user_message.id, "How do I open it?")
"""

from redraft.cache import SessionCache
from redraft.client import ChatClient, session_title
from redraft.edit import EditCoordinator, EditGuard, EditPhase, EditStateMachine, SessionLease
from redraft.errors import (
    ConcurrencyError,
    EditError,
    EmptyContentError,
    InvalidTransitionError,
    NotEditableError,
    NotFoundError,
    PersistenceError,
    RedraftError,
    RegenerationError,
)
from redraft.events.bus import ChatEvent, EventBus
from redraft.models import (
    EditConfig,
    EditResult,
    Message,
    RedraftConfig,
    RegenerationConfig,
    StoreConfig,
    TurnResult,
)
from redraft.regeneration import (
    CompletionRequest,
    CompletionResponse,
    CompletionService,
    LiteLLMCompletionService,
    RegenerationClient,
)
from redraft.store import ConversationStore, Session, StorePool, make_id

__version__ = "0.1.0"

__all__ = [
    # Core
    "ChatClient",
    "session_title",
    "make_id",
    # Config
    "RedraftConfig",
    "StoreConfig",
    "RegenerationConfig",
    "EditConfig",
    # Models
    "Message",
    "Session",
    "TurnResult",
    "EditResult",
    # Components
    "ConversationStore",
    "StorePool",
    "SessionCache",
    "RegenerationClient",
    "EditCoordinator",
    "EditGuard",
    "SessionLease",
    "EditPhase",
    "EditStateMachine",
    # Completion
    "CompletionService",
    "CompletionRequest",
    "CompletionResponse",
    "LiteLLMCompletionService",
    # Events
    "EventBus",
    "ChatEvent",
    # Errors
    "RedraftError",
    "EditError",
    "NotFoundError",
    "ConcurrencyError",
    "PersistenceError",
    "RegenerationError",
    "EmptyContentError",
    "NotEditableError",
    "InvalidTransitionError",
]
