"""
collectors/base.py

Shared plumbing for the collector adapters.

Every collector:
  - registers its metrics once, at startup, via register()
  - refreshes them with ``await refresh()``; raising means "this refresh
    failed", and the previous values stay in place

refresh_all() is what the /metrics handler calls. It runs the on-demand
collectors concurrently, each under its own timeout, and never raises:
a failing or slow collector is logged, marked down in
``<prefix>_collector_up{collector=...}`` and counted in
``<prefix>_collector_errors_total``. The scrape then renders whatever the
registry currently holds.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from typing import Sequence

logger = logging.getLogger(__name__)


class Collector(abc.ABC):
    """Base class for a metrics source outside the capture path."""

    name: str = "collector"

    @abc.abstractmethod
    def register(self, registry, prefix: str) -> None:
        """Create and register this collector's metrics."""

    @abc.abstractmethod
    async def refresh(self) -> None:
        """Update this collector's metrics. Raise on failure."""


class CollectorHealth:
    """Per-collector up/error/duration metrics."""

    def __init__(self, registry, prefix: str) -> None:
        self.up = registry.gauge(
            f"{prefix}_collector_up",
            "Whether the last refresh of a collector succeeded",
            ["collector"],
        )
        self.errors = registry.counter(
            f"{prefix}_collector_errors",
            "Collector refreshes that failed or timed out",
            ["collector"],
        )
        self.duration = registry.gauge(
            f"{prefix}_collector_duration_seconds",
            "Duration of the last collector refresh",
            ["collector"],
        )

    def succeeded(self, name: str, elapsed: float) -> None:
        self.up.labels(collector=name).set(1)
        self.duration.labels(collector=name).set(elapsed)

    def failed(self, name: str, elapsed: float) -> None:
        self.up.labels(collector=name).set(0)
        self.errors.labels(collector=name).inc()
        self.duration.labels(collector=name).set(elapsed)


async def safe_refresh(
    collector: Collector,
    health: CollectorHealth | None,
    timeout: float,
) -> bool:
    """Refresh one collector under ``timeout``. Returns True on success."""
    started = time.monotonic()
    try:
        await asyncio.wait_for(collector.refresh(), timeout=timeout)
    except asyncio.TimeoutError:
        elapsed = time.monotonic() - started
        logger.error("%s error: refresh timed out after %.1fs", collector.name, timeout)
        if health is not None:
            health.failed(collector.name, elapsed)
        return False
    except Exception as exc:
        elapsed = time.monotonic() - started
        logger.error("%s error: %s", collector.name, exc)
        if health is not None:
            health.failed(collector.name, elapsed)
        return False
    if health is not None:
        health.succeeded(collector.name, time.monotonic() - started)
    return True


async def refresh_all(
    collectors: Sequence[Collector],
    health: CollectorHealth | None,
    timeout: float,
) -> dict[str, bool]:
    """Refresh every collector concurrently; returns name → success."""
    results = await asyncio.gather(
        *(safe_refresh(c, health, timeout) for c in collectors)
    )
    return {c.name: ok for c, ok in zip(collectors, results)}
