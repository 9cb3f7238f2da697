"""Error taxonomy shared by the chat session and the completion proxy."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Standard error kinds."""
    VALIDATION = "validation"
    CONNECTIVITY = "connectivity"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


class PilotError(Exception):
    """Base exception for Pilot Chat."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.INTERNAL,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        body.update(self.details)
        return body


class ValidationError(PilotError):
    """Malformed or missing input. Never retried."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, ErrorKind.VALIDATION, 400, details)


class ConnectivityError(PilotError):
    """Store or upstream unreachable."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, ErrorKind.CONNECTIVITY, 503, details)


class UpstreamError(PilotError):
    """Non-OK answer from the generation API, forwarded with its own status."""

    def __init__(
        self,
        status_code: int,
        message: str,
        raw: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = {"raw": raw} if raw is not None else None
        super().__init__(message, ErrorKind.UPSTREAM, status_code, details)
        self.raw = raw


class StoreError(PilotError):
    """The row store rejected a request."""

    def __init__(self, message: str, status_code: int = 400, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, ErrorKind.UPSTREAM, status_code, details)


class NotConnectedError(PilotError):
    """No store session is open."""

    def __init__(self, message: str = "Supabase não conectado.") -> None:
        super().__init__(message, ErrorKind.CONNECTIVITY, 409)


class LocalPersistenceDisabled(PilotError):
    """Raised by helpers that used to write local mocks."""

    def __init__(self) -> None:
        super().__init__(
            "Local storage persistence disabled. Use Supabase for all data operations.",
            ErrorKind.VALIDATION,
            400,
        )
