"""Async HTTP client the chat session uses to reach the completion proxy."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .errors import ConnectivityError, UpstreamError
from .gemini import extract_text

logger = logging.getLogger(__name__)

NO_REPLY = "Sem resposta do Gemini."
RAW_DUMP_CHARS = 2000


@dataclass
class CompletionReply:
    text: str
    raw: Dict[str, Any]


def reply_text(out: Dict[str, Any]) -> str:
    """Best-effort text from a proxy body: ``text``, then the raw shapes, then a dump."""
    text = out.get("text") or extract_text(out.get("raw"))
    if not text:
        text = json.dumps(out.get("raw") or out, ensure_ascii=False)[:RAW_DUMP_CHARS]
    return text or NO_REPLY


class CompletionClient:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 90.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = httpx.Timeout(timeout)
        self._transport = transport

    async def complete(self, prompt: str, chat_id: Optional[str] = None) -> CompletionReply:
        body: Dict[str, Any] = {"prompt": prompt}
        if chat_id:
            body["chatId"] = chat_id
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=body)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Falha ao contactar Gemini: {e}") from e

        try:
            out = resp.json()
        except ValueError:
            out = {}
        if not isinstance(out, dict):
            out = {"raw": out}

        if resp.is_error:
            message = out.get("error") or f"Gemini proxy error ({resp.status_code})"
            raise UpstreamError(resp.status_code, str(message), out)
        return CompletionReply(text=reply_text(out), raw=out.get("raw") or {})
