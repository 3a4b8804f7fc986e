"""Regeneration client — produce and persist one assistant reply."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from redraft.errors import RegenerationError
from redraft.events.bus import ChatEvent, EventBus
from redraft.models.config import RegenerationConfig
from redraft.models.message import Message
from redraft.regeneration.service import (
    CompletionRequest,
    CompletionResponse,
    CompletionService,
)
from redraft.store.conversation import ConversationStore, TailChangedError


class RegenerationClient:
    """
    Sends a session's history to the completion service and appends the reply.

    Guarantees:
    - On success exactly one assistant message is appended and returned.
    - On timeout or service error ``RegenerationError`` is raised and nothing
      is persisted by the regeneration step itself.
    - A reply is only ever generated for a session whose canonical tail is a
      user message, and only stored if that tail is still in place, so an
      assistant message never follows another one.

    Example::

        client = RegenerationClient(store, LiteLLMCompletionService(cfg), cfg)
        reply = await client.regenerate(session_id, edited_text)  # skip_user_message=True
    """

    def __init__(
        self,
        store: ConversationStore,
        service: CompletionService,
        config: RegenerationConfig,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._service = service
        self._config = config
        self._event_bus = event_bus
        self._logger = structlog.get_logger("redraft.regeneration")

    async def regenerate(
        self,
        session_id: str,
        prompt_content: str,
        *,
        skip_user_message: bool = True,
        client_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """
        Generate and persist the assistant reply to ``prompt_content``.

        Args:
            session_id: Session to reply in.
            prompt_content: The user text being answered.
            skip_user_message: When True the prompt must already be the
                content of the session's tail user message (edit / retry).
                When False it is appended first, deduplicated by ``client_id``.
            client_id: Idempotency key for the appended user message.
            metadata: Metadata stored on the appended user message.

        Returns:
            The persisted assistant message. For a duplicate send whose reply
            already exists, that existing reply.

        Raises:
            RegenerationError: If the service fails or times out on every
                attempt, the session tail is not the user message being
                answered, or the session changed before the reply was stored.
            SessionNotFoundError: If the session does not exist or is deleted.
        """
        if not skip_user_message:
            user_msg = await self._store.append_message(
                session_id, "user", prompt_content, metadata, client_id=client_id
            )
            existing = await self._store.find_reply(session_id, user_msg.seq)
            if existing is not None:
                self._logger.info(
                    "existing_reply_returned", session_id=session_id, reply_id=existing.id
                )
                return existing
            self._publish_created(user_msg)

        history = await self._store.list_messages(session_id)
        if not history or history[-1].role != "user":
            raise RegenerationError(
                "Session tail is not a user message; nothing to reply to",
                session_id=session_id,
                attempts=0,
            )
        tail = history[-1]
        if skip_user_message and tail.content != prompt_content:
            raise RegenerationError(
                f"Session tail {tail.id!r} does not hold the text being answered",
                session_id=session_id,
                attempts=0,
            )

        request = CompletionRequest(
            session_id=session_id,
            history=history[-self._config.history_window :],
            skip_user_message=skip_user_message,
        )
        response = await self._complete_with_retries(request)

        try:
            reply = await self._store.append_message(
                session_id,
                "assistant",
                response.content,
                {"model": response.model, "tokens_used": response.tokens_used},
                expected_tail=tail,
            )
        except TailChangedError as exc:
            self._logger.warning(
                "reply_discarded", session_id=session_id, expected_tail_id=tail.id
            )
            raise RegenerationError(
                "Session changed while the reply was generated; reply discarded",
                session_id=session_id,
            ) from exc
        self._publish_created(reply)
        self._logger.info(
            "reply_generated",
            session_id=session_id,
            reply_id=reply.id,
            seq=reply.seq,
            history_size=len(request.history),
        )
        return reply

    async def _complete_with_retries(self, request: CompletionRequest) -> CompletionResponse:
        """Call the service with a per-attempt timeout and exponential backoff."""
        attempts = self._config.max_retries + 1
        timeout = self._config.timeout_secs
        last_error = ""

        for attempt in range(1, attempts + 1):
            try:
                response = await asyncio.wait_for(self._service.complete(request), timeout=timeout)
                if not response.content.strip():
                    raise ValueError("Completion service returned an empty reply")
                return response
            except TimeoutError:
                last_error = f"Timeout after {timeout}s"
                self._logger.warning(
                    "completion_timeout", session_id=request.session_id, attempt=attempt
                )
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                self._logger.warning(
                    "completion_error",
                    session_id=request.session_id,
                    attempt=attempt,
                    error=last_error,
                )
            if attempt < attempts:
                await asyncio.sleep(self._config.backoff_delay(attempt))

        if self._event_bus is not None:
            self._event_bus.publish(
                ChatEvent.REGENERATION_FAILED,
                {"session_id": request.session_id, "error": last_error, "attempts": attempts},
            )
        raise RegenerationError(
            f"Reply generation failed after {attempts} attempt(s): {last_error}",
            session_id=request.session_id,
            attempts=attempts,
        )

    def _publish_created(self, message: Message) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(
            ChatEvent.MESSAGE_CREATED,
            {
                "session_id": message.session_id,
                "message_id": message.id,
                "role": message.role,
                "seq": message.seq,
            },
        )
