"""
backend/metrics.py

Metric registry and the lightweight thread-safe counters used by the
capture path.

The registry is a thin layer over prometheus_client's CollectorRegistry:
  - one name, one metric; registering a taken name raises
    MetricAlreadyRegisteredError
  - seal() is called once startup registration is done, after which the
    name → metric map is read-only
  - encode() renders the Prometheus text exposition format

Anything exposing ``collect_families(name, help_text)`` can be registered
under a name (the flow table, the capture loop, the Counter below).
Plain labelled gauges / counters / histograms come from the factory helpers.

Usage:
    registry = MetricRegistry()
    registry.register("router_monitor_packets", "Packets transferred", table)
    arp = registry.gauge("router_monitor_arp_devices", "ARP cache", ["ip_addr"])
    registry.seal()
    body = registry.encode()
"""

from __future__ import annotations

import threading
from typing import Iterable, Protocol, Sequence

import prometheus_client
from prometheus_client.core import CounterMetricFamily, Metric

from .errors import MetricAlreadyRegisteredError

CONTENT_TYPE = prometheus_client.CONTENT_TYPE_LATEST


class MetricSource(Protocol):
    def collect_families(self, name: str, help_text: str) -> Iterable[Metric]: ...


class Counter:
    """A thread-safe integer counter."""

    __slots__ = ("_value", "_lock")

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def collect_families(self, name: str, help_text: str) -> Iterable[Metric]:
        yield CounterMetricFamily(name, help_text, value=self.value)

    def __repr__(self) -> str:  # pragma: no cover
        return f"Counter({self._value})"


class CaptureStats:
    """Self-observability counters for one capture session."""

    def __init__(self) -> None:
        self.frames_received: Counter = Counter()
        """Frames handed to the loop by the tap."""

        self.frames_recorded: Counter = Counter()
        """Frames that produced a flow label and were counted."""

        self.decode_errors: Counter = Counter()
        """Frames with an IPv4/IPv6 ethertype whose header did not decode."""

        self.unsupported_frames: Counter = Counter()
        """Frames skipped because of their ethertype (ARP, LLDP, ...)."""

    def as_dict(self) -> dict:
        return {
            "frames_received": self.frames_received.value,
            "frames_recorded": self.frames_recorded.value,
            "decode_errors": self.decode_errors.value,
            "unsupported_frames": self.unsupported_frames.value,
        }

    def register(self, registry: "MetricRegistry", prefix: str) -> None:
        registry.register(
            f"{prefix}_capture_frames_received",
            "Frames read from the capture interface",
            self.frames_received,
        )
        registry.register(
            f"{prefix}_capture_frames_recorded",
            "Frames attributed to a flow label",
            self.frames_recorded,
        )
        registry.register(
            f"{prefix}_capture_decode_errors",
            "Frames dropped because their network header was malformed",
            self.decode_errors,
        )
        registry.register(
            f"{prefix}_capture_unsupported_frames",
            "Frames ignored because they carry neither IPv4 nor IPv6",
            self.unsupported_frames,
        )


class _NamedCollector:
    """Adapts a MetricSource to prometheus_client's collector interface."""

    def __init__(self, name: str, help_text: str, source: MetricSource) -> None:
        self._name = name
        self._help = help_text
        self._source = source

    def describe(self) -> list[Metric]:
        # Names are checked by MetricRegistry; skip prometheus_client's probe collect.
        return []

    def collect(self) -> Iterable[Metric]:
        return self._source.collect_families(self._name, self._help)


class MetricRegistry:
    """Process-wide name → metric map with Prometheus text encoding."""

    def __init__(self) -> None:
        self._registry = prometheus_client.CollectorRegistry(auto_describe=False)
        self._help: dict[str, str] = {}
        self._sealed = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _claim(self, name: str, help_text: str) -> None:
        with self._lock:
            if self._sealed:
                raise MetricAlreadyRegisteredError(
                    f"Registry is sealed; cannot register {name!r}"
                )
            if name in self._help:
                raise MetricAlreadyRegisteredError(f"Metric {name!r} is already registered")
            self._help[name] = help_text

    def register(self, name: str, help_text: str, metric: MetricSource) -> MetricSource:
        self._claim(name, help_text)
        self._registry.register(_NamedCollector(name, help_text, metric))
        return metric

    def counter(
        self, name: str, help_text: str, labelnames: Sequence[str] = ()
    ) -> prometheus_client.Counter:
        self._claim(name, help_text)
        return prometheus_client.Counter(
            name, help_text, list(labelnames), registry=self._registry
        )

    def gauge(
        self, name: str, help_text: str, labelnames: Sequence[str] = ()
    ) -> prometheus_client.Gauge:
        self._claim(name, help_text)
        return prometheus_client.Gauge(
            name, help_text, list(labelnames), registry=self._registry
        )

    def histogram(
        self,
        name: str,
        help_text: str,
        labelnames: Sequence[str] = (),
        buckets: Sequence[float] = prometheus_client.Histogram.DEFAULT_BUCKETS,
    ) -> prometheus_client.Histogram:
        self._claim(name, help_text)
        return prometheus_client.Histogram(
            name, help_text, list(labelnames), buckets=buckets, registry=self._registry
        )

    def seal(self) -> None:
        """Freeze the name map. Values keep changing; names do not."""
        with self._lock:
            self._sealed = True

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    @property
    def names(self) -> list[str]:
        return sorted(self._help)

    def __contains__(self, name: str) -> bool:
        return name in self._help

    def encode(self) -> bytes:
        """Render every registered metric in the Prometheus text format."""
        return prometheus_client.generate_latest(self._registry)
