"""Completion service boundary: the opaque, possibly slow model call."""

from __future__ import annotations

import os
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from redraft.models.config import RegenerationConfig
from redraft.models.message import Message


class CompletionRequest(BaseModel):
    """What the completion service receives for one reply."""

    session_id: str
    history: list[Message] = Field(default_factory=list)
    """Canonical messages in ``seq`` order, ending with the user message to answer."""
    skip_user_message: bool = True
    """True when the prompt user message was already persisted (edit / retry)."""

    def as_chat_messages(self) -> list[dict[str, str]]:
        return [{"role": m.role, "content": m.content} for m in self.history]


class CompletionResponse(BaseModel):
    """What the completion service returns for one reply."""

    content: str
    model: str = ""
    tokens_used: int = 0


@runtime_checkable
class CompletionService(Protocol):
    """Anything that can turn a history into an assistant reply."""

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...


class LiteLLMCompletionService:
    """
    Completion service backed by ``litellm.acompletion``.

    Set ``REDRAFT_MOCK_LLM=1`` to get a deterministic echo reply without an
    API key (examples and local development).
    """

    def __init__(self, config: RegenerationConfig) -> None:
        self._config = config
        self._logger = structlog.get_logger("redraft.completion")

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        if os.environ.get("REDRAFT_MOCK_LLM") == "1":
            return self._mock_response(request)

        import litellm

        call_kwargs: dict[str, Any] = {
            "model": self._config.model,
            "messages": [
                {"role": "system", "content": self._config.system_prompt},
                *request.as_chat_messages(),
            ],
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature,
        }
        response = await litellm.acompletion(**call_kwargs)
        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        tokens_used = getattr(usage, "total_tokens", 0) if usage else 0
        self._logger.debug(
            "completion_received",
            session_id=request.session_id,
            model=self._config.model,
            tokens_used=tokens_used,
        )
        return CompletionResponse(
            content=content, model=self._config.model, tokens_used=tokens_used or 0
        )

    def _mock_response(self, request: CompletionRequest) -> CompletionResponse:
        last_user = next(
            (m.content for m in reversed(request.history) if m.role == "user"),
            "Hello",
        )
        text = (
            f"[Mock coaching reply to: {last_user[:100]}]\n"
            "This is a simulated response. Unset REDRAFT_MOCK_LLM and provide an "
            "API key to use a real model."
        )
        return CompletionResponse(content=text, model="mock", tokens_used=len(text) // 4)
