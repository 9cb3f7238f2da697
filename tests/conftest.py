"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from pilot_chat.client import CompletionReply  # noqa: E402
from pilot_chat.gemini import GenerationResult  # noqa: E402
from pilot_chat.store import DiskStore, StoreSession  # noqa: E402


class FakeClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class SpyGenerator:
    """Records the contents it was asked to complete."""

    def __init__(self, text: Optional[str] = "ok", raw: Optional[Dict[str, Any]] = None) -> None:
        self.text = text
        self.raw = raw if raw is not None else {"candidates": [{"content": {"parts": [{"text": text}]}}]}
        self.calls: List[List[Dict[str, Any]]] = []

    def generate(self, contents: Sequence[Dict[str, Any]]) -> GenerationResult:
        self.calls.append(list(contents))
        return GenerationResult(text=self.text, raw=self.raw)


class FakeCompletion:
    """Stands in for CompletionClient; raises ``error`` when set."""

    def __init__(self, text: str = "resposta", error: Optional[Exception] = None) -> None:
        self.text = text
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, prompt: str, chat_id: Optional[str] = None) -> CompletionReply:
        self.calls.append({"prompt": prompt, "chat_id": chat_id})
        if self.error is not None:
            raise self.error
        return CompletionReply(text=self.text, raw={})


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for table files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def disk_store(tmp_data_dir: Path) -> DiskStore:
    return DiskStore(tmp_data_dir)


@pytest.fixture(scope="function")
def disk_connector(disk_store: DiskStore):
    """Connector that opens a session on the temporary disk store."""
    calls: List[tuple] = []

    def _connect(url: str, key: str) -> StoreSession:
        calls.append((url, key))
        return StoreSession(store=disk_store, url=url)

    _connect.calls = calls  # type: ignore[attr-defined]
    return _connect


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["PILOT_CHAT_CONFIG", "GEMINI_API_KEY", "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"]:
        monkeypatch.delenv(var, raising=False)
    yield
