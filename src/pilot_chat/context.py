"""Bounded conversation context for the generation call."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

MAX_MESSAGES = 12
MAX_CONTEXT_CHARS = 5000
FALLBACK_PROMPT_CHARS = 1000
SINGLE_SHOT_PROMPT_CHARS = 5000

Turn = Dict[str, Any]


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def make_turn(role: str, text: str) -> Turn:
    return {"role": role, "parts": [{"text": text}]}


def turn_text(turn: Mapping[str, Any]) -> str:
    return "".join(str(p.get("text", "")) for p in turn.get("parts", []))


def build_context(
    rows: Iterable[Mapping[str, Any]],
    prompt: str,
    *,
    max_messages: int = MAX_MESSAGES,
    max_chars: int = MAX_CONTEXT_CHARS,
    fallback_chars: int = FALLBACK_PROMPT_CHARS,
) -> List[Turn]:
    """Assemble the turns sent to the model.

    ``rows`` are stored messages newest-first. The newest ``max_messages``
    are put back in chronological order and included oldest to newest while
    the running text length stays within ``max_chars``. Assembly stops at
    the first turn that would overflow, even if later turns are short.

    With no usable history the prompt itself (cut to ``fallback_chars``)
    becomes the only turn.
    """
    recent = list(rows)[: max(0, max_messages)]
    recent.reverse()

    contents: List[Turn] = []
    total = 0
    for row in recent:
        text = str(row.get("content") or "")
        if total + len(text) > max_chars:
            break
        role = "user" if row.get("sender") == "user" else "model"
        contents.append(make_turn(role, text))
        total += len(text)

    if not contents:
        contents.append(make_turn("user", truncate(prompt, fallback_chars)))
    return contents
