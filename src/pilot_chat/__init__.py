"""Pilot chat: project assistant session manager and Gemini completion proxy.

The proxy is a FastAPI application built by ``create_app`` in
``pilot_chat/server.py``; the chat side lives in ``pilot_chat/session.py``.

Typical usage
-------------
from pilot_chat import create_app
app = create_app()

or, from the provided launchers:

python scripts/run_server.py --host 127.0.0.1 --port 8000
python scripts/chat_repl.py --project demo
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"

def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`pilot_chat.server.create_app`; the import is
    deferred so the chat-side modules work without the web stack loaded.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
