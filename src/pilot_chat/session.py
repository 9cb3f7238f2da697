"""Chat session: one transcript, one submission at a time.

A submitted line either runs a slash-command against the store or goes to
the completion proxy (or a canned local reply while the backend is
unhealthy). Every path ends with the user's message in ``sent`` or
``error`` and with the in-flight latch released; nothing is raised back to
the caller.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from .client import CompletionClient
from .commands import CommandDispatcher, is_command, redact_secrets
from .errors import PilotError
from .health import Capability
from .knowledge import KnowledgeIndex, KnowledgeResult
from .models import Attachment, Message, Sender, Status, Transcript, new_id, utc_now

logger = logging.getLogger(__name__)

DUPLICATE_WINDOW = timedelta(seconds=10)
REPLY_PREVIEW_CHARS = 120
UNKNOWN_TARGET = "unknown"

DISABLED_NOTICE = "Atenção: Gemini/IA desativado no momento. Ative para enviar mensagens."
DUPLICATE_NOTICE = "Mensagem duplicada impedida."


class SubmitOutcome(str, Enum):
    ACCEPTED = "accepted"
    EMPTY = "empty"
    BUSY = "busy"
    DISABLED = "disabled"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    ABANDONED = "abandoned"


@dataclass
class SubmitResult:
    outcome: SubmitOutcome
    message: Optional[Message] = None


class ChatSession:
    """Owns the transcript of one chat view."""

    def __init__(
        self,
        project_id: str,
        project_name: str,
        *,
        completion: Optional[CompletionClient] = None,
        dispatcher: Optional[CommandDispatcher] = None,
        knowledge: Optional[KnowledgeIndex] = None,
        chat_id: Optional[str] = None,
        duplicate_window: timedelta = DUPLICATE_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.project_id = project_id
        self.project_name = project_name
        self.completion = completion
        self.dispatcher = dispatcher or CommandDispatcher()
        self.knowledge = knowledge or KnowledgeIndex(lambda: self.dispatcher.store)
        self.chat_id = chat_id
        self.duplicate_window = duplicate_window
        self.clock = clock

        self.transcript = Transcript()
        self.in_flight = False
        self.alive = True
        self.reply_to: Optional[Message] = None
        self.pending_attachments: List[Attachment] = []
        self.selected_index: Optional[int] = None
        self._greet()

    # --------- helpers ----------
    def _now(self) -> datetime:
        now = self.clock()
        last = self.transcript.last
        # Keep timestamps non-decreasing even if the clock steps back.
        if last is not None and now < last.timestamp:
            return last.timestamp
        return now

    def _greet(self) -> None:
        result = KnowledgeResult()
        self.transcript.append(
            Message(
                id="hello",
                content=(
                    f"Olá! Eu sou o Pilot, sua assistente do projeto **{self.project_name}**. "
                    "Conecte o Supabase para carregar dados reais."
                ),
                sender=Sender.ASSISTANT,
                timestamp=self._now(),
                sources=list(result.files),
                checklist=result.checklist.items(),
            )
        )

    def add_notice(self, text: str) -> Message:
        return self.transcript.append(
            Message(id=new_id("sys"), content=text, sender=Sender.SYSTEM, timestamp=self._now())
        )

    def _set_status(self, message_id: str, status: Status) -> None:
        self.transcript.replace(message_id, status)

    def is_duplicate(self, content: str, reply_to_id: Optional[str], attachment_count: int) -> bool:
        recent = self.transcript.recent(Sender.USER, self.duplicate_window, self.clock())
        return any(
            m.content == content
            and m.reply_to_id == reply_to_id
            and len(m.attachments) == attachment_count
            for m in recent
        )

    # --------- submission ----------
    async def submit(self, raw_text: str, capability: Capability) -> SubmitResult:
        """Handle one line from the input box."""
        if not capability.enabled:
            self.add_notice(DISABLED_NOTICE)
            return SubmitResult(SubmitOutcome.DISABLED)
        text = raw_text or ""
        if not text.strip():
            return SubmitResult(SubmitOutcome.EMPTY)
        if self.in_flight:
            return SubmitResult(SubmitOutcome.BUSY)

        self.in_flight = True
        try:
            if is_command(text):
                return await self._submit_command(text.strip())
            return await self._submit_prompt(text, capability)
        except Exception as e:
            logger.exception("submission failed")
            if self.alive:
                self.add_notice(f"Erro inesperado: {e}")
            return SubmitResult(SubmitOutcome.FAILED)
        finally:
            self.in_flight = False

    async def _submit_command(self, line: str) -> SubmitResult:
        sanitized = redact_secrets(line)
        if self.is_duplicate(sanitized, None, 0):
            self.add_notice(DUPLICATE_NOTICE)
            return SubmitResult(SubmitOutcome.DUPLICATE)

        user_msg = self.transcript.append(
            Message(
                id=new_id("u"),
                content=sanitized,
                sender=Sender.USER,
                timestamp=self._now(),
                status=Status.SENDING,
            )
        )
        try:
            outcome = await self.dispatcher.dispatch(line)
        except Exception as e:
            if not self.alive:
                return SubmitResult(SubmitOutcome.ABANDONED, user_msg)
            self.add_notice(f"Erro ao executar comando: {e}")
            self._set_status(user_msg.id, Status.ERROR)
            return SubmitResult(SubmitOutcome.FAILED, self.transcript.get(user_msg.id))

        if not self.alive:
            return SubmitResult(SubmitOutcome.ABANDONED, user_msg)
        if outcome.notice:
            self.add_notice(outcome.notice)
        self._set_status(user_msg.id, Status.SENT if outcome.ok else Status.ERROR)
        return SubmitResult(
            SubmitOutcome.ACCEPTED if outcome.ok else SubmitOutcome.FAILED,
            self.transcript.get(user_msg.id),
        )

    async def _submit_prompt(self, text: str, capability: Capability) -> SubmitResult:
        reply_to_id = self.reply_to.id if self.reply_to else None
        attachments = list(self.pending_attachments)
        if self.is_duplicate(text, reply_to_id, len(attachments)):
            self.add_notice(DUPLICATE_NOTICE)
            return SubmitResult(SubmitOutcome.DUPLICATE)

        user_msg = self.transcript.append(
            Message(
                id=new_id("u"),
                content=text,
                sender=Sender.USER,
                timestamp=self._now(),
                status=Status.SENDING,
                reply_to_id=reply_to_id,
                attachments=attachments,
            )
        )
        self.reply_to = None
        self.pending_attachments = []

        if capability.send_allowed and self.completion is not None:
            return await self._complete_remote(user_msg)
        return await self._complete_local(user_msg)

    async def _persist_user_turn(self, message: Message) -> None:
        store = self.dispatcher.store
        if not self.chat_id or store is None:
            return
        try:
            await asyncio.to_thread(
                store.insert,
                "messages",
                {"chat_id": self.chat_id, "content": message.content, "sender": "user"},
            )
        except Exception as e:
            logger.warning("could not store user turn for chat %s: %s", self.chat_id, e)

    async def _annotations(self) -> KnowledgeResult:
        try:
            return await asyncio.to_thread(self.knowledge.query_accessible, self.project_id)
        except Exception as e:
            logger.warning("knowledge lookup failed: %s", e)
            return KnowledgeResult()

    async def _complete_remote(self, user_msg: Message) -> SubmitResult:
        await self._persist_user_turn(user_msg)
        try:
            reply = await self.completion.complete(user_msg.content, chat_id=self.chat_id)
        except Exception as e:
            if not self.alive:
                return SubmitResult(SubmitOutcome.ABANDONED, user_msg)
            if not isinstance(e, PilotError):
                logger.exception("completion call failed")
            self.add_notice(f"Erro Gemini: {e.message if isinstance(e, PilotError) else e}")
            self._set_status(user_msg.id, Status.ERROR)
            return SubmitResult(SubmitOutcome.FAILED, self.transcript.get(user_msg.id))

        knowledge = await self._annotations()
        if not self.alive:
            return SubmitResult(SubmitOutcome.ABANDONED, user_msg)
        self.transcript.append(
            Message(
                id=new_id("p"),
                content=reply.text,
                sender=Sender.ASSISTANT,
                timestamp=self._now(),
                sources=knowledge.files,
                checklist=knowledge.checklist.items(),
            )
        )
        self._set_status(user_msg.id, Status.SENT)
        return SubmitResult(SubmitOutcome.ACCEPTED, self.transcript.get(user_msg.id))

    async def _complete_local(self, user_msg: Message) -> SubmitResult:
        knowledge = await self._annotations()
        if not self.alive:
            return SubmitResult(SubmitOutcome.ABANDONED, user_msg)
        content = fallback_reply(self.project_name, knowledge, user_msg.attachments)
        if not self.transcript.has_content(Sender.ASSISTANT, content):
            self.transcript.append(
                Message(
                    id=new_id("p"),
                    content=content,
                    sender=Sender.ASSISTANT,
                    timestamp=self._now(),
                    sources=knowledge.files,
                    checklist=knowledge.checklist.items(),
                )
            )
        self._set_status(user_msg.id, Status.SENT)
        return SubmitResult(SubmitOutcome.ACCEPTED, self.transcript.get(user_msg.id))

    # --------- staging ----------
    def stage_files(self, paths: Iterable[Union[str, Path]]) -> List[Attachment]:
        """Stage picked files for the next message. Nothing is uploaded."""
        staged: List[Attachment] = []
        for p in paths:
            path = Path(p).resolve()
            mime, _ = mimetypes.guess_type(path.name)
            staged.append(
                Attachment(
                    id=f"{path.name}-{new_id()}",
                    name=path.name,
                    mime_type=mime or "application/octet-stream",
                    blob_ref=path.as_uri(),
                )
            )
        self.pending_attachments.extend(staged)
        return staged

    def remove_attachment(self, attachment_id: str) -> None:
        kept = []
        for a in self.pending_attachments:
            if a.id == attachment_id:
                a.release()
            else:
                kept.append(a)
        self.pending_attachments = kept

    def set_reply_target(self, message_id: str) -> Optional[Message]:
        target = self.transcript.get(message_id)
        if target is not None:
            self.reply_to = target
        return target

    def cancel_reply(self) -> None:
        self.reply_to = None

    def reply_preview(self, message: Message) -> Optional[str]:
        """Text shown above a reply; ``"unknown"`` for dangling references."""
        if message.reply_to_id is None:
            return None
        target = self.transcript.find_reply_target(message.reply_to_id)
        if target is None:
            return UNKNOWN_TARGET
        return target.content[:REPLY_PREVIEW_CHARS]

    # --------- keyboard navigation ----------
    def select_previous(self) -> Optional[int]:
        n = len(self.transcript)
        if n == 0:
            return None
        i = self.selected_index
        self.selected_index = n - 1 if i is None else max(0, min(n - 1, i - 1))
        return self.selected_index

    def select_next(self) -> Optional[int]:
        n = len(self.transcript)
        if n == 0:
            return None
        i = self.selected_index
        self.selected_index = 0 if i is None else min(n - 1, i + 1)
        return self.selected_index

    def reply_to_selected(self) -> Optional[Message]:
        i = self.selected_index
        if i is None or not 0 <= i < len(self.transcript):
            return None
        return self.set_reply_target(self.transcript[i].id)

    def handle_key(self, key: str) -> None:
        if key == "Escape":
            self.cancel_reply()
        elif key == "ArrowUp":
            self.select_previous()
        elif key == "ArrowDown":
            self.select_next()
        elif key.lower() == "r":
            self.reply_to_selected()

    # --------- lifecycle ----------
    def close(self) -> None:
        """Stop late completions from touching the transcript."""
        self.alive = False
        for a in self.pending_attachments:
            a.release()
        self.pending_attachments = []


def fallback_reply(project_name: str, knowledge: KnowledgeResult, attachments: List[Attachment]) -> str:
    sources = knowledge.files
    parts = [
        "## Análise",
        f"Com base no contexto do projeto **{project_name}** e no acervo acessível, seguem sugestões:",
        "### ✅ Checklist de Ações",
        "- [ ] Revisar documentação relevante\n"
        "- [ ] Implementar a próxima tarefa\n"
        "- [ ] Testar integração e fluxos\n"
        "- [ ] Validar com stakeholders",
        "### ℹ️ Fontes",
        "\n".join(f"{i}. {s.filename}" for i, s in enumerate(sources, 1)) or "Nenhum PDF cadastrado ainda",
    ]
    if attachments:
        parts.append("### 📎 Anexos\n" + "\n".join(f"{i}. {a.name}" for i, a in enumerate(attachments, 1)))
    return "\n\n".join(parts)
