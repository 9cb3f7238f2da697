"""Backend health probing and the derived send capability."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 6.0
PROBE_INTERVAL = 15.0


class HealthStatus(str, Enum):
    OK = "ok"
    WARN = "warn"
    ERROR = "error"


def classify(status_code: int) -> HealthStatus:
    if 200 <= status_code < 300:
        return HealthStatus.OK
    if status_code >= 500:
        return HealthStatus.ERROR
    return HealthStatus.WARN


async def probe(
    url: str,
    *,
    timeout: float = PROBE_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HealthStatus:
    """One GET against the proxy; any exception or timeout counts as ``error``."""
    try:
        # Client timeout matches the probe bound; httpx's 5 s default would fire first.
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"Cache-Control": "no-store"},
        ) as client:
            resp = await asyncio.wait_for(client.get(url), timeout=timeout)
    except Exception as e:
        logger.debug("health probe failed for %s: %s", url, e)
        return HealthStatus.ERROR
    return classify(resp.status_code)


class HealthMonitor:
    """Re-runs :func:`probe` on its own task and keeps the latest status.

    Starts in ``warn`` until the first probe settles.
    """

    def __init__(
        self,
        url: str,
        *,
        interval: float = PROBE_INTERVAL,
        timeout: float = PROBE_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_change: Optional[Callable[[HealthStatus], None]] = None,
    ) -> None:
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self.transport = transport
        self.on_change = on_change
        self.status = HealthStatus.WARN
        self._task: Optional[asyncio.Task] = None

    async def check(self) -> HealthStatus:
        status = await probe(self.url, timeout=self.timeout, transport=self.transport)
        if status != self.status:
            logger.info("backend status %s -> %s", self.status.value, status.value)
            self.status = status
            if self.on_change is not None:
                self.on_change(status)
        return status

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


@dataclass(frozen=True)
class Capability:
    """Whether the assistant may be used right now.

    ``enabled`` is the feature flag; ``healthy`` is the latest probe result.
    Computed once per tick and handed to :meth:`ChatSession.submit`.
    """
    enabled: bool = True
    healthy: bool = False

    @property
    def send_allowed(self) -> bool:
        return self.enabled and self.healthy

    @classmethod
    def derive(cls, flag: bool, status: HealthStatus) -> "Capability":
        return cls(enabled=bool(flag), healthy=status == HealthStatus.OK)


def feature_flags(cfg: Mapping[str, Any]) -> Dict[str, bool]:
    flags = cfg.get("features", {}) or {}
    # Only an explicit false switches the assistant off.
    return {"gemini": flags.get("gemini") is not False}
