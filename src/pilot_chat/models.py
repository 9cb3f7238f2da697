"""Transcript entities: messages, attachments and the transcript itself."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional


# -----------------------------
# Enums
# -----------------------------
class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: str) -> "Sender":
        # The dashboard historically called the assistant "pilot".
        if value == "pilot":
            return cls.ASSISTANT
        return cls(value)


class Status(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    ERROR = "error"


_TRANSITIONS = {
    Status.SENDING: {Status.SENT, Status.ERROR},
    Status.SENT: set(),
    Status.ERROR: set(),
}


class InvalidTransition(ValueError):
    pass


def new_id(prefix: str = "") -> str:
    """Return a collision-resistant id, optionally prefixed (``u-…``, ``p-…``)."""
    ident = uuid.uuid4().hex
    return f"{prefix}-{ident}" if prefix else ident


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Annotations
# -----------------------------
@dataclass
class Attachment:
    id: str
    name: str
    mime_type: str
    blob_ref: Optional[str]

    def release(self) -> None:
        self.blob_ref = None


@dataclass(frozen=True)
class Source:
    id: str
    filename: str
    url: Optional[str] = None


@dataclass(frozen=True)
class ChecklistItem:
    label: str
    ok: bool


# -----------------------------
# Message
# -----------------------------
@dataclass(frozen=True)
class Message:
    """One transcript entry.

    ``sources`` and ``checklist`` are ``None`` when not applicable; an empty
    list means "applicable, nothing found".
    """
    id: str
    content: str
    sender: Sender
    timestamp: datetime
    status: Status = Status.SENT
    reply_to_id: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    sources: Optional[List[Source]] = None
    checklist: Optional[List[ChecklistItem]] = None

    def with_status(self, status: Status) -> "Message":
        if status == self.status:
            return self
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"{self.status.value} -> {status.value}")
        return replace(self, status=status)


# -----------------------------
# Transcript
# -----------------------------
class Transcript:
    """Ordered, append-only message list with replace-by-id updates."""

    def __init__(self) -> None:
        self._messages: List[Message] = []
        self._index: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __getitem__(self, idx: int) -> Message:
        return self._messages[idx]

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def append(self, message: Message) -> Message:
        if message.id in self._index:
            raise ValueError(f"duplicate message id: {message.id}")
        self._index[message.id] = len(self._messages)
        self._messages.append(message)
        return message

    def get(self, message_id: Optional[str]) -> Optional[Message]:
        if message_id is None:
            return None
        idx = self._index.get(message_id)
        return None if idx is None else self._messages[idx]

    def replace(self, message_id: str, status: Status) -> Message:
        idx = self._index[message_id]
        updated = self._messages[idx].with_status(status)
        self._messages[idx] = updated
        return updated

    def find_reply_target(self, message_id: Optional[str]) -> Optional[Message]:
        """Resolve a weak reply reference; dangling ids give ``None``."""
        return self.get(message_id)

    def recent(self, sender: Sender, window: timedelta, now: datetime) -> List[Message]:
        cutoff = now - window
        return [m for m in self._messages if m.sender == sender and m.timestamp > cutoff]

    def discard(self, message_id: str) -> None:
        idx = self._index.pop(message_id)
        msg = self._messages.pop(idx)
        for a in msg.attachments:
            a.release()
        self._index = {m.id: i for i, m in enumerate(self._messages)}

    def has_content(self, sender: Sender, content: str) -> bool:
        return any(m.sender == sender and m.content == content for m in self._messages)
