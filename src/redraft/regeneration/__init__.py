"""Assistant reply generation."""

from redraft.regeneration.client import RegenerationClient
from redraft.regeneration.service import (
    CompletionRequest,
    CompletionResponse,
    CompletionService,
    LiteLLMCompletionService,
)

__all__ = [
    "CompletionRequest",
    "CompletionResponse",
    "CompletionService",
    "LiteLLMCompletionService",
    "RegenerationClient",
]
