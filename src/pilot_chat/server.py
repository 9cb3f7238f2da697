"""FastAPI application exposing the completion proxy at ``/gemini``."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, StrictStr
from pydantic import ValidationError as PydanticValidationError

from .config import load_config
from .errors import PilotError, ValidationError
from .gemini import create_from_config
from .proxy import CompletionProxy, Generator
from .store import store_from_config

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


# -----------------------------
# Pydantic request model
# -----------------------------
class GenerateRequest(BaseModel):
    prompt: StrictStr = Field(..., min_length=1)
    # Absent -> single-shot; present -> history-aware generation.
    chat_id: Optional[StrictStr] = Field(default=None, alias="chatId", min_length=1)


_FIELD_ERRORS = {
    "prompt": "Prompt is required",
    "chatId": "Chat ID is required",
}


# -----------------------------
# Utilities
# -----------------------------
def _json(status: int, body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(body, status_code=status, headers=CORS_HEADERS)


def _parse_generate(body: Any) -> GenerateRequest:
    if not isinstance(body, dict):
        raise ValidationError("Prompt is required")
    try:
        return GenerateRequest.model_validate(body)
    except PydanticValidationError as e:
        loc = e.errors()[0].get("loc") or ("prompt",)
        field = str(loc[0])
        raise ValidationError(_FIELD_ERRORS.get(field, f"Invalid field: {field}"))


def _make_proxy(cfg: Dict[str, Any], generator: Any, store: Any) -> Optional[CompletionProxy]:
    if generator is None:
        generator = create_from_config(cfg)
    if store is None:
        store = store_from_config(cfg)
    if not generator:
        return None
    ctx = cfg.get("context", {})
    return CompletionProxy(
        generator,
        store,
        max_messages=int(ctx.get("max_messages", 12)),
        max_chars=int(ctx.get("max_context_chars", 5000)),
        fallback_chars=int(ctx.get("fallback_prompt_chars", 1000)),
        single_shot_chars=int(ctx.get("single_shot_prompt_chars", 5000)),
    )


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    generator: Optional[Generator] = None,
    store: Any = None,
) -> FastAPI:
    """Build the proxy app.

    ``generator`` and ``store`` default to what the config and environment
    provide; pass ``NOT_CONFIGURED`` to force either one off.
    """
    cfg = load_config(config_path)
    proxy = _make_proxy(cfg, generator, store)
    if proxy is None:
        logger.warning("GEMINI_API_KEY missing; /gemini will report disabled")

    app = FastAPI(title="Pilot Completion Proxy", version="0.1.0")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "gemini": proxy is not None,
            "store": proxy is not None and proxy.store is not None,
        }

    @app.options("/gemini")
    def gemini_preflight() -> Response:
        return Response(status_code=200, headers=CORS_HEADERS)

    @app.get("/gemini")
    def gemini_health() -> JSONResponse:
        if proxy is None:
            return _json(503, {"enabled": False, "error": "GEMINI_API_KEY missing"})
        return _json(200, {"enabled": True})

    @app.post("/gemini")
    async def gemini_generate(request: Request) -> JSONResponse:
        try:
            if proxy is None:
                return _json(400, {"error": "GEMINI_API_KEY missing"})
            try:
                body = await request.json()
            except ValueError:
                raise ValidationError("Invalid JSON body")
            req = _parse_generate(body)
            result = await run_in_threadpool(proxy.complete, req.prompt, req.chat_id)
            return _json(200, {"ok": True, "text": result.text, "raw": result.raw})
        except PilotError as e:
            return _json(e.status_code, e.to_body())
        except Exception:
            logger.exception("Unexpected error in Gemini proxy")
            return _json(500, {"error": "Unexpected error"})

    @app.api_route("/gemini", methods=["PUT", "PATCH", "DELETE"])
    def gemini_not_allowed() -> JSONResponse:
        return _json(405, {"error": "Method not allowed"})

    return app
