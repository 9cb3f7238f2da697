"""Terminal front end for a Pilot chat session.

Lines starting with ``/`` are commands (``/supabase connect <url> <key>``,
``/listar <tabela>`` ...). ``:attach <path>...`` stages files for the next
message, ``:reply <n>`` replies to message number ``n``, ``:quit`` exits.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import timedelta

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from pilot_chat.client import CompletionClient  # noqa: E402
from pilot_chat.commands import CommandDispatcher, LocalState  # noqa: E402
from pilot_chat.config import configure_logging, load_config  # noqa: E402
from pilot_chat.health import Capability, HealthMonitor, feature_flags  # noqa: E402
from pilot_chat.session import ChatSession  # noqa: E402


def _render(session: ChatSession, start: int) -> None:
    for idx in range(start, len(session.transcript)):
        m = session.transcript[idx]
        preview = session.reply_preview(m)
        if preview is not None:
            print(f"    ↳ {preview}")
        status = "" if m.status.value == "sent" else f" [{m.status.value}]"
        print(f"[{idx}] {m.sender.value}{status}: {m.content}")


async def _main(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    configure_logging(cfg)
    chat_cfg = cfg.get("chat", {})

    local = LocalState(chat_cfg.get("local_storage_dir", ".pilot_local"))
    session = ChatSession(
        args.project,
        args.name or args.project,
        completion=CompletionClient(
            chat_cfg["proxy_url"], timeout=float(chat_cfg.get("completion_timeout", 90.0))
        ),
        dispatcher=CommandDispatcher(on_connected=local.clear),
        chat_id=args.chat_id,
        duplicate_window=timedelta(seconds=float(chat_cfg.get("duplicate_window_seconds", 10))),
    )
    monitor = HealthMonitor(
        chat_cfg["proxy_url"],
        interval=float(chat_cfg.get("health_interval", 15.0)),
        timeout=float(chat_cfg.get("health_timeout", 6.0)),
    )
    monitor.start()
    flags = feature_flags(cfg)

    shown = 0
    _render(session, shown)
    shown = len(session.transcript)
    try:
        while True:
            line = await asyncio.to_thread(input, "> ")
            if line.strip() == ":quit":
                break
            if line.startswith(":attach "):
                staged = session.stage_files(line.split()[1:])
                print(f"{len(staged)} anexo(s) preparado(s)")
                continue
            if line.startswith(":reply "):
                try:
                    session.selected_index = int(line.split()[1])
                except ValueError:
                    print("uso: :reply <n>")
                    continue
                if session.reply_to_selected() is None:
                    print("mensagem inexistente")
                continue
            capability = Capability.derive(flags["gemini"], monitor.status)
            await session.submit(line, capability)
            _render(session, shown)
            shown = len(session.transcript)
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        session.close()
        await monitor.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with Pilot from the terminal.")
    parser.add_argument("--project", required=True, help="Project id")
    parser.add_argument("--name", default=None, help="Project display name")
    parser.add_argument("--chat-id", default=None, help="Stored chat id for history-aware replies")
    parser.add_argument("--config", default=None, help="Path to a YAML config")
    asyncio.run(_main(parser.parse_args()))


if __name__ == "__main__":
    main()
