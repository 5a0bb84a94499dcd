"""
collectors/connectivity.py

Outbound connectivity prober.

Every ``interval`` seconds a TCP connection is attempted to each target
(public resolvers on port 53 by default). Per target:
  - ``<prefix>_internet_connection_is_up{addr}``            1 / 0
  - ``<prefix>_internet_connection_duration_seconds{addr}`` histogram

Each attempt is bounded by ``timeout``; the duration of failed attempts is
observed too, so a slow uplink shows up even when it is down.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from ..config import DEFAULT_INTERNET_CHECK_TARGETS, split_host_port
from .base import Collector

logger = logging.getLogger(__name__)

DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class ConnectivityProber(Collector):
    name = "internet_check"

    def __init__(
        self,
        targets: Sequence[str] = DEFAULT_INTERNET_CHECK_TARGETS,
        interval: float = 10.0,
        timeout: float = 2.0,
    ) -> None:
        self._targets = [(t, *split_host_port(t)) for t in targets]
        self._interval = interval
        self._timeout = timeout
        self._is_up = None
        self._duration = None

    def register(self, registry, prefix: str) -> None:
        self._duration = registry.histogram(
            f"{prefix}_internet_connection_duration_seconds",
            "Time taken to establish tcp connection",
            ["addr"],
            buckets=DURATION_BUCKETS,
        )
        self._is_up = registry.gauge(
            f"{prefix}_internet_connection_is_up",
            "Whether internet connection is up",
            ["addr"],
        )

    async def _connect(self, host: str, port: int) -> None:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=self._timeout
        )
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    async def probe(self, label: str, host: str, port: int) -> bool:
        started = time.monotonic()
        try:
            await self._connect(host, port)
            ok = True
        except (OSError, asyncio.TimeoutError) as exc:
            logger.error("Failed to connect to %s: %s", label, exc or type(exc).__name__)
            ok = False
        self._is_up.labels(addr=label).set(1 if ok else 0)
        self._duration.labels(addr=label).observe(time.monotonic() - started)
        return ok

    async def refresh(self) -> None:
        await asyncio.gather(*(self.probe(*t) for t in self._targets))

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Probe immediately, then every ``interval`` until shutdown."""
        logger.info(
            "Connectivity prober started — %d targets every %.0fs",
            len(self._targets), self._interval,
        )
        while not shutdown_event.is_set():
            await self.refresh()
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Connectivity prober exiting")
