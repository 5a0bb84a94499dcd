"""
flows/table.py

FlowCounterTable — monotonic (packets, bytes) counters per FlowLabel.

Concurrency model:
  - One writer (the capture loop) calls record() at packet rate; any
    number of scrape handlers call snapshot() concurrently.
  - Every entry owns its own lock. record() holds it for two integer
    additions; snapshot() holds it for two reads. A reader therefore
    delays the writer by at most one entry read, no matter how many
    readers there are or how large the table grows.
  - Entry creation goes through a separate creation lock with a
    double-checked lookup, so concurrent first-time record() calls for
    the same label end up on one entry and never lose an update.
  - snapshot() copies the label → entry map first (a single dict copy),
    then reads each entry under its lock, so no entry is ever torn.

Entries are never evicted: the label space is bounded by the number of
local addresses plus the "internet" sentinel.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Iterator

from prometheus_client.core import CounterMetricFamily, Metric

from .models import FlowCounters, FlowLabel

logger = logging.getLogger(__name__)


class _FlowEntry:
    __slots__ = ("packets", "bytes", "lock")

    def __init__(self) -> None:
        self.packets = 0
        self.bytes = 0
        self.lock = threading.Lock()

    def read(self) -> FlowCounters:
        with self.lock:
            return FlowCounters(self.packets, self.bytes)


class FlowCounterTable:
    """Thread-safe label → (packets, bytes) map with lazy entry creation."""

    def __init__(self) -> None:
        self._entries: dict[FlowLabel, _FlowEntry] = {}
        self._create_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _entry(self, label: FlowLabel) -> _FlowEntry:
        entry = self._entries.get(label)
        if entry is not None:
            return entry
        with self._create_lock:
            entry = self._entries.get(label)
            if entry is None:
                entry = _FlowEntry()
                self._entries[label] = entry
                logger.debug("New flow label: src=%s dst=%s", label.src, label.dst)
        return entry

    def record(self, label: FlowLabel, packet_size_bytes: int) -> None:
        """Count one packet of ``packet_size_bytes`` against ``label``."""
        if packet_size_bytes < 0:
            raise ValueError(f"packet size must be >= 0, got {packet_size_bytes}")
        entry = self._entry(label)
        with entry.lock:
            entry.packets += 1
            entry.bytes += packet_size_bytes

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[FlowLabel, FlowCounters]:
        """Return label → FlowCounters; each pair is read atomically."""
        entries = dict(self._entries)
        return {label: entry.read() for label, entry in entries.items()}

    def get(self, label: FlowLabel) -> FlowCounters | None:
        entry = self._entries.get(label)
        return entry.read() if entry is not None else None

    def __contains__(self, label: object) -> bool:
        return label in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[FlowLabel]:
        return iter(list(self._entries))

    # ------------------------------------------------------------------
    # Exposition
    # ------------------------------------------------------------------

    def register(self, registry, prefix: str) -> None:
        """Expose the table as ``<prefix>_packets_total`` / ``<prefix>_bytes_total``."""
        registry.register(f"{prefix}_packets", "Packets transferred", _PacketsView(self))
        registry.register(f"{prefix}_bytes", "Bytes transferred", _BytesView(self))


class _PacketsView:
    def __init__(self, table: FlowCounterTable) -> None:
        self._table = table

    def collect_families(self, name: str, help_text: str) -> Iterable[Metric]:
        family = CounterMetricFamily(name, help_text, labels=["src", "dst"])
        for label, counters in sorted(self._table.snapshot().items()):
            family.add_metric([label.src, label.dst], counters.packets)
        yield family


class _BytesView:
    def __init__(self, table: FlowCounterTable) -> None:
        self._table = table

    def collect_families(self, name: str, help_text: str) -> Iterable[Metric]:
        family = CounterMetricFamily(name, help_text, labels=["src", "dst"])
        for label, counters in sorted(self._table.snapshot().items()):
            family.add_metric([label.src, label.dst], counters.bytes)
        yield family
