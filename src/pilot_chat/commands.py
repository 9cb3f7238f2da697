"""Slash-command parsing and dispatch for the chat input line.

Supported commands (tokens are case sensitive and whitespace separated)::

    /supabase connect <url> <key>
    /listar <tabela>
    /inserir <tabela> <json>
    /atualizar <tabela> <id> <json>
    /deletar <tabela> <id>
    /migrar-mock

``parse_command`` turns one line into a tagged command (or a
``ParseError``); ``CommandDispatcher`` runs it against the store session
held in memory.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .errors import NotConnectedError, PilotError
from .store import StoreSession, connect

logger = logging.getLogger(__name__)

COMMAND_PREFIX = "/"
LIST_LIMIT = 200

_SECRET_TAIL = re.compile(r"\s+([A-Za-z0-9_-]{16,})$")

AVAILABLE = "/supabase connect, /listar, /inserir, /atualizar, /deletar"


def is_command(line: str) -> bool:
    return line.strip().startswith(COMMAND_PREFIX)


def redact_secrets(line: str) -> str:
    """Replace a trailing key-like token with ``<REDACTED>``."""
    return _SECRET_TAIL.sub(" <REDACTED>", line)


# -----------------------------
# Command variants
# -----------------------------
@dataclass(frozen=True)
class Connect:
    url: str
    key: str


@dataclass(frozen=True)
class ListRows:
    table: str


@dataclass(frozen=True)
class InsertRow:
    table: str
    payload: Dict[str, Any]


@dataclass(frozen=True)
class UpdateRow:
    table: str
    row_id: str
    payload: Dict[str, Any]


@dataclass(frozen=True)
class DeleteRow:
    table: str
    row_id: str


@dataclass(frozen=True)
class MigrateMock:
    pass


@dataclass(frozen=True)
class Unknown:
    name: str


@dataclass(frozen=True)
class ParseError:
    message: str


Command = Union[Connect, ListRows, InsertRow, UpdateRow, DeleteRow, MigrateMock, Unknown]


def _json_object(text: str) -> Union[Dict[str, Any], ParseError]:
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        return ParseError(f"JSON inválido: {e.msg}")
    if not isinstance(obj, dict):
        return ParseError("JSON inválido: esperado um objeto")
    return obj


def parse_command(line: str) -> Union[Command, ParseError]:
    parts = line.strip().split()
    if not parts:
        return Unknown("")
    name, args = parts[0], parts[1:]

    if name == "/supabase" and args[:1] == ["connect"]:
        if len(args) < 3:
            return ParseError("Uso: /supabase connect <url> <key>")
        return Connect(args[1], args[2])

    if name == "/migrar-mock":
        return MigrateMock()

    if name == "/listar":
        if not args:
            return ParseError("Uso: /listar <tabela>")
        return ListRows(args[0])

    if name == "/inserir":
        if len(args) < 2:
            return ParseError("Uso: /inserir <tabela> <json>")
        payload = _json_object(" ".join(args[1:]))
        if isinstance(payload, ParseError):
            return payload
        return InsertRow(args[0], payload)

    if name == "/atualizar":
        if len(args) < 3:
            return ParseError("Uso: /atualizar <tabela> <id> <json>")
        payload = _json_object(" ".join(args[2:]))
        if isinstance(payload, ParseError):
            return payload
        return UpdateRow(args[0], args[1], payload)

    if name == "/deletar":
        if len(args) < 2:
            return ParseError("Uso: /deletar <tabela> <id>")
        return DeleteRow(args[0], args[1])

    return Unknown(name)


# -----------------------------
# Local state wiped on connect
# -----------------------------
class LocalState:
    """Durable local storage directory plus an in-memory session store."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self.session: Dict[str, Any] = {}

    def clear(self) -> None:
        if self.root.exists():
            for child in self.root.iterdir():
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        self.session.clear()


# -----------------------------
# Dispatcher
# -----------------------------
class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class CommandOutcome:
    notice: Optional[str]
    ok: bool = True


Connector = Callable[[str, str], StoreSession]


class CommandDispatcher:
    """Runs parsed commands against the in-memory store session."""

    def __init__(
        self,
        connector: Connector = connect,
        on_connected: Optional[Callable[[], None]] = None,
        *,
        list_limit: int = LIST_LIMIT,
    ) -> None:
        self.connector = connector
        self.on_connected = on_connected
        self.list_limit = list_limit
        self.session: Optional[StoreSession] = None
        self.status = ConnectionStatus.DISCONNECTED
        self._handlers: Dict[type, Callable[[Any], Awaitable[CommandOutcome]]] = {
            Connect: self._connect,
            ListRows: self._list,
            InsertRow: self._insert,
            UpdateRow: self._update,
            DeleteRow: self._delete,
            MigrateMock: self._migrate_mock,
            Unknown: self._unknown,
        }

    @property
    def store(self) -> Any:
        return self.session.store if self.session else None

    async def dispatch(self, line: str) -> CommandOutcome:
        cmd = parse_command(line)
        if isinstance(cmd, ParseError):
            return CommandOutcome(cmd.message)
        try:
            return await self._handlers[type(cmd)](cmd)
        except NotConnectedError as e:
            return CommandOutcome(e.message)

    def _require_store(self) -> Any:
        store = self.store
        if store is None:
            raise NotConnectedError()
        return store

    # --------- handlers ----------
    async def _connect(self, cmd: Connect) -> CommandOutcome:
        self.status = ConnectionStatus.CONNECTING
        try:
            session = await asyncio.to_thread(self.connector, cmd.url, cmd.key)
        except Exception as e:
            self.status = ConnectionStatus.ERROR
            logger.warning("store connection failed: %s", e)
            return CommandOutcome(f"Falha ao conectar Supabase: {_message(e)}", ok=False)
        if self.session is not None:
            self.session.close()
        self.session = session
        self.status = ConnectionStatus.CONNECTED
        if self.on_connected is not None:
            self.on_connected()
        return CommandOutcome(
            "Conexão com Supabase estabelecida com sucesso. (Credenciais mantidas em memória). "
            "Local storage/session storage limpos."
        )

    async def _list(self, cmd: ListRows) -> CommandOutcome:
        store = self._require_store()
        try:
            rows = await asyncio.to_thread(store.select, cmd.table, limit=self.list_limit)
        except Exception as e:
            return CommandOutcome(f"Erro ao listar: {_message(e)}")
        return CommandOutcome(f"Resultados ({len(rows)}):\n\n{_dump(rows, indent=2)}")

    async def _insert(self, cmd: InsertRow) -> CommandOutcome:
        store = self._require_store()
        try:
            row = await asyncio.to_thread(store.insert, cmd.table, cmd.payload)
        except Exception as e:
            return CommandOutcome(f"Erro ao inserir: {_message(e)}")
        return CommandOutcome(f"Inserção realizada: {_dump([row])}")

    async def _update(self, cmd: UpdateRow) -> CommandOutcome:
        store = self._require_store()
        try:
            rows = await asyncio.to_thread(store.update, cmd.table, cmd.row_id, cmd.payload)
        except Exception as e:
            return CommandOutcome(f"Erro ao atualizar: {_message(e)}")
        return CommandOutcome(f"Atualização realizada: {_dump(rows)}")

    async def _delete(self, cmd: DeleteRow) -> CommandOutcome:
        store = self._require_store()
        try:
            await asyncio.to_thread(store.delete, cmd.table, cmd.row_id)
        except Exception as e:
            return CommandOutcome(f"Erro ao deletar: {_message(e)}")
        return CommandOutcome(f"Registro {cmd.row_id} removido da tabela {cmd.table}.")

    async def _migrate_mock(self, cmd: MigrateMock) -> CommandOutcome:
        return CommandOutcome(
            "Migração de mocks/localStorage foi desabilitada. "
            "Todas as operações devem ser feitas via Supabase."
        )

    async def _unknown(self, cmd: Unknown) -> CommandOutcome:
        return CommandOutcome(f"Comando desconhecido. Comandos disponíveis: {AVAILABLE}")


def _message(e: Exception) -> str:
    if isinstance(e, PilotError):
        return e.message
    return str(e) or type(e).__name__


def _dump(obj: Any, indent: Optional[int] = None) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=indent, default=str)
