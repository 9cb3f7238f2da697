from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import FakeCompletion
from pilot_chat.commands import CommandDispatcher
from pilot_chat.errors import ConnectivityError, UpstreamError
from pilot_chat.health import Capability
from pilot_chat.models import Sender, Status
from pilot_chat.session import DISABLED_NOTICE, DUPLICATE_NOTICE, ChatSession, SubmitOutcome

ONLINE = Capability(enabled=True, healthy=True)
UNHEALTHY = Capability(enabled=True, healthy=False)
DISABLED = Capability(enabled=False, healthy=True)


def _session(clock, completion=None, dispatcher=None, **kwargs) -> ChatSession:
    return ChatSession(
        "p1",
        "Apollo",
        completion=completion if completion is not None else FakeCompletion(),
        dispatcher=dispatcher,
        clock=clock,
        **kwargs,
    )


def _user_messages(session):
    return [m for m in session.transcript if m.sender == Sender.USER]


def _notices(session, text):
    return [m for m in session.transcript if m.sender == Sender.SYSTEM and m.content == text]


def test_session_starts_with_greeting(clock):
    session = _session(clock)
    assert len(session.transcript) == 1
    hello = session.transcript[0]
    assert hello.sender == Sender.ASSISTANT
    assert "Apollo" in hello.content
    assert hello.sources == []
    assert all(not item.ok for item in hello.checklist)


def test_successful_submission_appends_user_and_assistant(clock):
    completion = FakeCompletion(text="Aqui está o plano.")
    session = _session(clock, completion=completion)
    before = len(session.transcript)
    assert session.in_flight is False

    result = asyncio.run(session.submit("Como começo?", ONLINE))

    assert result.outcome is SubmitOutcome.ACCEPTED
    assert len(session.transcript) == before + 2
    user, reply = session.transcript[-2], session.transcript[-1]
    assert user.sender == Sender.USER and user.status is Status.SENT
    assert reply.sender == Sender.ASSISTANT and reply.content == "Aqui está o plano."
    assert reply.checklist is not None
    assert completion.calls == [{"prompt": "Como começo?", "chat_id": None}]
    assert session.in_flight is False


def test_completion_failure_marks_error_and_releases_latch(clock):
    completion = FakeCompletion(error=UpstreamError(429, "quota exceeded"))
    session = _session(clock, completion=completion)

    result = asyncio.run(session.submit("oi", ONLINE))

    assert result.outcome is SubmitOutcome.FAILED
    (user,) = _user_messages(session)
    assert user.status is Status.ERROR
    assert session.transcript.last.content == "Erro Gemini: quota exceeded"
    assert session.in_flight is False


def test_latch_released_when_completion_raises_unexpectedly(clock):
    completion = FakeCompletion(error=RuntimeError("socket closed"))
    session = _session(clock, completion=completion)

    result = asyncio.run(session.submit("oi", ONLINE))

    assert result.outcome is SubmitOutcome.FAILED
    assert session.in_flight is False
    assert _user_messages(session)[0].status is Status.ERROR
    assert session.transcript.last.content == "Erro Gemini: socket closed"


def test_connectivity_error_becomes_notice(clock):
    session = _session(clock, completion=FakeCompletion(error=ConnectivityError("Falha ao contactar Gemini")))
    asyncio.run(session.submit("oi", ONLINE))
    assert _user_messages(session)[0].status is Status.ERROR
    assert session.transcript.last.content == "Erro Gemini: Falha ao contactar Gemini"


def test_duplicate_within_window_is_suppressed(clock):
    session = _session(clock)

    async def scenario():
        await session.submit("mesmo texto", ONLINE)
        clock.advance(3)
        second = await session.submit("mesmo texto", ONLINE)
        clock.advance(3)
        third = await session.submit("mesmo texto", ONLINE)
        return second, third

    second, third = asyncio.run(scenario())

    assert second.outcome is SubmitOutcome.DUPLICATE
    assert third.outcome is SubmitOutcome.DUPLICATE
    assert len(_user_messages(session)) == 1
    assert len(_notices(session, DUPLICATE_NOTICE)) == 2


def test_same_text_after_window_is_accepted(clock):
    session = _session(clock)

    async def scenario():
        await session.submit("de novo", ONLINE)
        clock.advance(11)
        return await session.submit("de novo", ONLINE)

    assert asyncio.run(scenario()).outcome is SubmitOutcome.ACCEPTED
    assert len(_user_messages(session)) == 2


def test_different_reply_target_is_not_duplicate(clock):
    session = _session(clock)

    async def scenario():
        await session.submit("ok", ONLINE)
        session.set_reply_target("hello")
        return await session.submit("ok", ONLINE)

    assert asyncio.run(scenario()).outcome is SubmitOutcome.ACCEPTED


def test_duplicate_keeps_staging_for_correction(clock, tmp_path: Path):
    f = tmp_path / "notes.txt"
    f.write_text("x", encoding="utf-8")
    session = _session(clock)

    async def scenario():
        session.stage_files([f])
        session.set_reply_target("hello")
        first = await session.submit("texto", ONLINE)
        session.stage_files([f])
        session.set_reply_target("hello")
        return first, await session.submit("texto", ONLINE)

    first, dup = asyncio.run(scenario())
    assert first.outcome is SubmitOutcome.ACCEPTED
    assert dup.outcome is SubmitOutcome.DUPLICATE
    assert len(session.pending_attachments) == 1
    assert session.reply_to is not None and session.reply_to.id == "hello"


def test_blank_and_busy_submissions_are_rejected(clock):
    session = _session(clock)
    assert asyncio.run(session.submit("   ", ONLINE)).outcome is SubmitOutcome.EMPTY

    session.in_flight = True
    before = len(session.transcript)
    assert asyncio.run(session.submit("oi", ONLINE)).outcome is SubmitOutcome.BUSY
    assert len(session.transcript) == before


def test_concurrent_submissions_are_serialized(clock):
    class SlowCompletion(FakeCompletion):
        async def complete(self, prompt, chat_id=None):
            await asyncio.sleep(0.01)
            return await super().complete(prompt, chat_id)

    session = _session(clock, completion=SlowCompletion())

    async def scenario():
        return await asyncio.gather(session.submit("um", ONLINE), session.submit("dois", ONLINE))

    first, second = asyncio.run(scenario())
    assert first.outcome is SubmitOutcome.ACCEPTED
    assert second.outcome is SubmitOutcome.BUSY
    assert len(_user_messages(session)) == 1
    assert session.in_flight is False


def test_disabled_assistant_appends_notice_only(clock):
    completion = FakeCompletion()
    session = _session(clock, completion=completion)

    result = asyncio.run(session.submit("oi", DISABLED))

    assert result.outcome is SubmitOutcome.DISABLED
    assert _user_messages(session) == []
    assert session.transcript.last.content == DISABLED_NOTICE
    assert completion.calls == []


def test_unhealthy_backend_uses_local_fallback_once(clock):
    completion = FakeCompletion()
    session = _session(clock, completion=completion)

    async def scenario():
        await session.submit("primeira", UNHEALTHY)
        await session.submit("segunda", UNHEALTHY)

    asyncio.run(scenario())

    assert completion.calls == []
    users = _user_messages(session)
    assert [u.status for u in users] == [Status.SENT, Status.SENT]
    replies = [m for m in session.transcript if m.sender == Sender.ASSISTANT and m.id != "hello"]
    # Identical canned replies are not repeated.
    assert len(replies) == 1
    assert "## Análise" in replies[0].content
    assert "Nenhum PDF cadastrado ainda" in replies[0].content


def test_fallback_lists_attachments(clock, tmp_path: Path):
    f = tmp_path / "diagram.png"
    f.write_bytes(b"\x89PNG")
    session = _session(clock)
    staged = session.stage_files([f])
    assert staged[0].mime_type == "image/png"
    assert staged[0].blob_ref.startswith("file://")

    asyncio.run(session.submit("veja o anexo", UNHEALTHY))

    user = _user_messages(session)[0]
    assert [a.name for a in user.attachments] == ["diagram.png"]
    assert session.pending_attachments == []
    assert "📎 Anexos" in session.transcript.last.content


def test_command_not_connected(clock):
    session = _session(clock)
    before = len(session.transcript)

    result = asyncio.run(session.submit('/atualizar t1 abc {"x":1}', ONLINE))

    assert result.outcome is SubmitOutcome.ACCEPTED
    assert len(session.transcript) == before + 2
    user = _user_messages(session)[0]
    assert user.status is Status.SENT
    assert "não conectado" in session.transcript.last.content
    assert session.completion.calls == []


def test_command_secret_is_redacted_and_failure_marks_error(clock):
    def connector(url, key):
        raise RuntimeError("Invalid API key")

    session = _session(clock, dispatcher=CommandDispatcher(connector=connector))
    asyncio.run(session.submit("/supabase connect https://db.example.co sb_secret_0123456789abcdef", ONLINE))

    user = _user_messages(session)[0]
    assert user.content == "/supabase connect https://db.example.co <REDACTED>"
    assert user.status is Status.ERROR
    assert "sb_secret" not in " ".join(m.content for m in session.transcript)
    assert session.transcript.last.content == "Falha ao conectar Supabase: Invalid API key"


def test_dispatcher_crash_marks_command_error(clock):
    class CrashingDispatcher(CommandDispatcher):
        async def dispatch(self, line):
            raise ValueError("kaput")

    session = _session(clock, dispatcher=CrashingDispatcher())
    result = asyncio.run(session.submit("/listar projects", ONLINE))

    assert result.outcome is SubmitOutcome.FAILED
    assert _user_messages(session)[0].status is Status.ERROR
    assert session.transcript.last.content == "Erro ao executar comando: kaput"
    assert session.in_flight is False


def test_history_aware_submission_stores_user_turn(clock, disk_connector, disk_store):
    completion = FakeCompletion(text="resposta")
    session = _session(
        clock,
        completion=completion,
        dispatcher=CommandDispatcher(connector=disk_connector),
        chat_id="chat-9",
    )

    async def scenario():
        await session.submit("/supabase connect https://db.example.co k", ONLINE)
        await session.submit("qual o status?", ONLINE)

    asyncio.run(scenario())

    assert completion.calls == [{"prompt": "qual o status?", "chat_id": "chat-9"}]
    rows = disk_store.select("messages", filters={"chat_id": "chat-9"})
    assert [(r["sender"], r["content"]) for r in rows] == [("user", "qual o status?")]


def test_reply_threading_resolves_and_tolerates_dangling(clock):
    session = _session(clock)
    session.set_reply_target("hello")
    asyncio.run(session.submit("respondendo", ONLINE))

    user = _user_messages(session)[0]
    assert user.reply_to_id == "hello"
    assert session.transcript.find_reply_target(user.reply_to_id).content == session.transcript[0].content
    assert session.reply_preview(user) == session.transcript[0].content[:120]
    assert session.reply_to is None

    assert session.transcript.find_reply_target("gone") is None
    assert session.set_reply_target("gone") is None


def test_dangling_reply_preview_is_unknown(clock):
    from dataclasses import replace

    session = _session(clock)
    orphan = replace(session.transcript[0], id="x", reply_to_id="missing")
    assert session.reply_preview(orphan) == "unknown"


def test_keyboard_navigation_clamps_and_replies(clock):
    session = _session(clock)
    asyncio.run(session.submit("uma mensagem", ONLINE))
    n = len(session.transcript)
    contents = [m.content for m in session.transcript]

    assert session.select_previous() == n - 1
    for _ in range(n + 3):
        session.handle_key("ArrowUp")
    assert session.selected_index == 0
    for _ in range(n + 3):
        session.handle_key("ArrowDown")
    assert session.selected_index == n - 1

    session.handle_key("r")
    assert session.reply_to.id == session.transcript[n - 1].id
    session.handle_key("Escape")
    assert session.reply_to is None
    assert [m.content for m in session.transcript] == contents


def test_closed_session_ignores_late_completion(clock):
    class GatedCompletion(FakeCompletion):
        def __init__(self):
            super().__init__()
            self.gate = None

        async def complete(self, prompt, chat_id=None):
            await self.gate.wait()
            return await super().complete(prompt, chat_id)

    completion = GatedCompletion()
    session = _session(clock, completion=completion)

    async def scenario():
        completion.gate = asyncio.Event()
        task = asyncio.create_task(session.submit("vai demorar", ONLINE))
        await asyncio.sleep(0)
        session.close()
        completion.gate.set()
        return await task

    result = asyncio.run(scenario())

    assert result.outcome is SubmitOutcome.ABANDONED
    assert session.transcript.last.sender == Sender.USER
    assert session.in_flight is False


def test_timestamps_never_decrease(clock):
    session = _session(clock)
    asyncio.run(session.submit("antes", UNHEALTHY))
    clock.advance(-60)
    asyncio.run(session.submit("depois", UNHEALTHY))
    stamps = [m.timestamp for m in session.transcript]
    assert stamps == sorted(stamps)


@pytest.mark.parametrize("sender", ["pilot", "assistant"])
def test_pilot_alias_maps_to_assistant(sender):
    assert Sender.parse(sender) is Sender.ASSISTANT
