"""Row-oriented store adapters.

Two backends share the :class:`RowStore` protocol:

* :class:`PostgrestStore` talks to the hosted backend's REST endpoint
  (``/rest/v1/<table>``). Row-level access is enforced by the backend.
* :class:`DiskStore` keeps one JSON file per table (thread-safe, atomic) for
  local development and tests.
"""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

import httpx

from .config import NOT_CONFIGURED, StoreCredentials, _NotConfigured, store_credentials
from .errors import ConnectivityError, StoreError

logger = logging.getLogger(__name__)

TABLES = (
    "projects",
    "chats",
    "messages",
    "documents",
    "github_integrations",
    "supabase_integrations",
    "builder_data",
)

Row = Dict[str, Any]

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class RowStore(Protocol):
    def select(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]: ...

    def insert(self, table: str, row: Mapping[str, Any]) -> Row: ...

    def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> List[Row]: ...

    def delete(self, table: str, row_id: str) -> None: ...


def _check_table(table: str) -> None:
    if not _TABLE_RE.match(table or ""):
        raise StoreError(f"invalid table name: {table!r}")


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


# -----------------------------
# Disk backend
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


class DiskStore:
    """JSON-backed row store, one file per table.

    Layout:
        data_dir/
          <table>.json      # list[dict], insertion order

    Only the known tables exist; anything else behaves like a missing
    relation on the hosted backend.
    """

    def __init__(self, data_dir: Union[str, Path], *, tables: tuple = TABLES) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.tables = set(tables)
        self._lock = threading.RLock()

    def _path(self, table: str) -> Path:
        _check_table(table)
        if table not in self.tables:
            raise StoreError(f'relation "public.{table}" does not exist', status_code=404)
        return self.root / f"{table}.json"

    def _load(self, table: str) -> List[Row]:
        path = self._path(table)
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as f:
                rows = json.load(f)
        except json.JSONDecodeError:
            # Corruption fallback: keep a backup and start fresh.
            logger.warning("corrupt table file %s, moving aside", path)
            path.rename(path.with_suffix(".corrupt.json"))
            return []
        return rows if isinstance(rows, list) else []

    def _save(self, table: str, rows: List[Row]) -> None:
        _atomic_write_text(self._path(table), json.dumps(rows, ensure_ascii=False, indent=2))

    def select(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        with self._lock:
            rows = self._load(table)
        if filters:
            rows = [r for r in rows if all(str(r.get(k)) == str(v) for k, v in filters.items())]
        if order_by:
            # Reverse first so rows with equal keys come back newest-insert first.
            if descending:
                rows = list(reversed(rows))
            rows = sorted(rows, key=lambda r: (r.get(order_by) is None, str(r.get(order_by) or "")), reverse=descending)
        if limit is not None:
            rows = rows[: max(0, limit)]
        return [dict(r) for r in rows]

    def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        if not isinstance(row, Mapping):
            raise StoreError("row must be a JSON object")
        with self._lock:
            rows = self._load(table)
            new = dict(row)
            new.setdefault("id", str(uuid.uuid4()))
            if any(str(r.get("id")) == str(new["id"]) for r in rows):
                raise StoreError(f'duplicate key value violates unique constraint "{table}_pkey"', status_code=409)
            now = _utc_iso()
            new.setdefault("created_at", now)
            new.setdefault("updated_at", now)
            rows.append(new)
            self._save(table, rows)
        return dict(new)

    def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> List[Row]:
        if not isinstance(changes, Mapping):
            raise StoreError("changes must be a JSON object")
        out: List[Row] = []
        with self._lock:
            rows = self._load(table)
            for r in rows:
                if str(r.get("id")) == str(row_id):
                    r.update(changes)
                    r["id"] = r.get("id", row_id)
                    r["updated_at"] = _utc_iso()
                    out.append(dict(r))
            if out:
                self._save(table, rows)
        return out

    def delete(self, table: str, row_id: str) -> None:
        with self._lock:
            rows = self._load(table)
            kept = [r for r in rows if str(r.get("id")) != str(row_id)]
            if len(kept) != len(rows):
                self._save(table, kept)


# -----------------------------
# Hosted backend (PostgREST)
# -----------------------------
class PostgrestStore:
    """Thin REST client for the hosted backend's auto-generated table API."""

    def __init__(
        self,
        url: str,
        key: str,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url.rstrip("/")
        headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }
        self._client = httpx.Client(
            base_url=f"{self.url}/rest/v1",
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, table: str, **kwargs: Any) -> Any:
        _check_table(table)
        try:
            resp = self._client.request(method, f"/{table}", **kwargs)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"store unreachable: {e}") from e
        if resp.is_error:
            raise StoreError(_error_message(resp), status_code=resp.status_code)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    def select(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        params: Dict[str, Any] = {"select": "*"}
        for k, v in (filters or {}).items():
            params[k] = f"eq.{v}"
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = int(limit)
        return list(self._request("GET", table, params=params) or [])

    def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        data = self._request(
            "POST", table, json=[dict(row)], headers={"Prefer": "return=representation"}
        )
        if isinstance(data, list) and data:
            return data[0]
        return dict(row)

    def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> List[Row]:
        data = self._request(
            "PATCH",
            table,
            params={"id": f"eq.{row_id}"},
            json=dict(changes),
            headers={"Prefer": "return=representation"},
        )
        return list(data or [])

    def delete(self, table: str, row_id: str) -> None:
        self._request("DELETE", table, params={"id": f"eq.{row_id}"})


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


# -----------------------------
# Sessions & factories
# -----------------------------
@dataclass
class StoreSession:
    """An open, verified store connection. Held in memory only."""
    store: Any
    url: str
    connected_at: str = field(default_factory=_utc_iso)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


def connect(
    url: str,
    key: str,
    *,
    timeout: float = 15.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> StoreSession:
    """Open a store session and verify it with a one-row probe.

    Raises :class:`StoreError` or :class:`ConnectivityError` when the backend
    rejects the credentials or cannot be reached.
    """
    store = PostgrestStore(url, key, timeout=timeout, transport=transport)
    try:
        store.select("builder_data", limit=1)
    except Exception:
        store.close()
        raise
    logger.info("store session opened for %s", store.url)
    return StoreSession(store=store, url=store.url)


def store_from_config(cfg: Mapping[str, Any]) -> Union[RowStore, _NotConfigured]:
    """Build the server-side store, or NOT_CONFIGURED when credentials are absent."""
    store_cfg = cfg.get("store", {}) or {}
    backend = str(store_cfg.get("backend", "postgrest"))
    if backend == "disk":
        return DiskStore(store_cfg.get("data_dir") or "data")
    creds = store_credentials()
    if not isinstance(creds, StoreCredentials):
        return NOT_CONFIGURED
    return PostgrestStore(creds.url, creds.key, timeout=float(store_cfg.get("timeout", 15.0)))
