"""Wrapper around the Generative Language REST API (``generateContent``)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import httpx

from .config import gemini_api_key
from .errors import ConnectivityError, UpstreamError

logger = logging.getLogger(__name__)


# -----------------------------
# Types & defaults
# -----------------------------

DEFAULT_MODEL = "gemini-2.0-flash-exp"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


@dataclass
class GenerationResult:
    text: Optional[str]
    raw: Dict[str, Any]


def extract_text(raw: Any) -> Optional[str]:
    """Pull the generated text out of the known response shapes.

    Checks ``candidates[0].content.parts[0].text`` first, then
    ``output[0].content[0].text``. Returns ``None`` if neither is present.
    """
    if not isinstance(raw, dict):
        return None
    candidates = raw.get("candidates")
    cand = candidates[0] if isinstance(candidates, list) and candidates else None
    content = cand.get("content") if isinstance(cand, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    first = parts[0] if isinstance(parts, list) and parts else None
    if isinstance(first, dict) and first.get("text"):
        return first["text"]

    output = raw.get("output")
    out0 = output[0] if isinstance(output, list) and output else None
    blocks = out0.get("content") if isinstance(out0, dict) else None
    block = blocks[0] if isinstance(blocks, list) and blocks else None
    if isinstance(block, dict) and block.get("text"):
        return block["text"]
    return None


# -----------------------------
# Client
# -----------------------------

class GeminiClient:
    """Sends a full ``contents`` sequence and returns the generated text."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        # Explicit upper bound so a stalled upstream cannot hang a request.
        self._client = httpx.Client(timeout=httpx.Timeout(timeout), transport=transport)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.model}:generateContent"

    def close(self) -> None:
        self._client.close()

    def generate(self, contents: Sequence[Dict[str, Any]]) -> GenerationResult:
        """Call ``generateContent`` with ``contents`` as the whole conversation.

        Raises
        ------
        UpstreamError
            Upstream answered non-OK; carries its status and message.
        ConnectivityError
            Upstream could not be reached or timed out.
        """
        payload = {"contents": list(contents)}
        logger.info("Making request to Gemini API (%d turns)...", len(payload["contents"]))
        try:
            resp = self._client.post(
                self.endpoint,
                params={"key": self._api_key},
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Gemini API unreachable: {e}") from e

        try:
            out = resp.json()
        except ValueError:
            out = {"text": resp.text}
        logger.info("Gemini API response status: %s", resp.status_code)

        if resp.is_error:
            message = "Gemini API error"
            if isinstance(out, dict) and isinstance(out.get("error"), dict):
                message = out["error"].get("message") or message
            logger.error("Gemini API error: %s", out)
            raise UpstreamError(resp.status_code, message, out if isinstance(out, dict) else {"body": out})

        raw = out if isinstance(out, dict) else {"body": out}
        text = extract_text(raw)
        logger.info("Gemini API success, text length: %d", len(text or ""))
        return GenerationResult(text=text, raw=raw)


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> Optional[GeminiClient]:
    """Create a GeminiClient from config, or ``None`` when no key is set."""
    key = gemini_api_key()
    if not key:
        return None
    gem_cfg = (cfg or {}).get("gemini", {}) if isinstance(cfg, dict) else {}
    return GeminiClient(
        str(key),
        model=os.environ.get("GEMINI_MODEL") or gem_cfg.get("model", DEFAULT_MODEL),
        base_url=gem_cfg.get("base_url", DEFAULT_BASE_URL),
        timeout=float(gem_cfg.get("timeout", 60.0)),
    )
