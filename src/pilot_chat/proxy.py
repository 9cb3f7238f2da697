"""Context-bounded completion: history -> window -> model -> persisted reply."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .context import (
    FALLBACK_PROMPT_CHARS,
    MAX_CONTEXT_CHARS,
    MAX_MESSAGES,
    SINGLE_SHOT_PROMPT_CHARS,
    build_context,
    make_turn,
    truncate,
)
from .gemini import GenerationResult

logger = logging.getLogger(__name__)


class Generator(Protocol):
    def generate(self, contents: Sequence[Dict[str, Any]]) -> GenerationResult: ...


class CompletionProxy:
    """Runs one generation request. Holds no per-request state."""

    def __init__(
        self,
        generator: Generator,
        store: Any = None,
        *,
        max_messages: int = MAX_MESSAGES,
        max_chars: int = MAX_CONTEXT_CHARS,
        fallback_chars: int = FALLBACK_PROMPT_CHARS,
        single_shot_chars: int = SINGLE_SHOT_PROMPT_CHARS,
    ) -> None:
        self.generator = generator
        self.store = store or None
        self.max_messages = max_messages
        self.max_chars = max_chars
        self.fallback_chars = fallback_chars
        self.single_shot_chars = single_shot_chars

    def load_history(self, chat_id: str) -> List[Dict[str, Any]]:
        """Newest-first stored turns; store failures degrade to no history."""
        if self.store is None:
            logger.warning("no store configured, generating without history for chat %s", chat_id)
            return []
        try:
            return self.store.select(
                "messages",
                filters={"chat_id": chat_id},
                order_by="created_at",
                descending=True,
                limit=self.max_messages,
            )
        except Exception as e:
            logger.error("Error fetching messages for chat %s: %s", chat_id, e)
            return []

    def persist_reply(self, chat_id: str, text: str) -> None:
        # The user's turn is stored by the client before it calls us.
        if self.store is None:
            return
        try:
            self.store.insert("messages", {"chat_id": chat_id, "content": text, "sender": "assistant"})
        except Exception as e:
            logger.error("Error saving assistant reply for chat %s: %s", chat_id, e)

    def complete(self, prompt: str, chat_id: Optional[str] = None) -> GenerationResult:
        if chat_id is None:
            contents = [make_turn("user", truncate(prompt, self.single_shot_chars))]
            return self.generator.generate(contents)

        rows = self.load_history(chat_id)
        contents = build_context(
            rows,
            prompt,
            max_messages=self.max_messages,
            max_chars=self.max_chars,
            fallback_chars=self.fallback_chars,
        )
        result = self.generator.generate(contents)
        if result.text:
            self.persist_reply(chat_id, result.text)
        return result
