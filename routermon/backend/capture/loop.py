"""
capture/loop.py

CaptureLoop — pulls raw frames from the tap, decodes, classifies and
records them into the FlowCounterTable.

State machine:

    BINDING ──bind() ok──▶ RUNNING ──tap fault──▶ FAULTED
       │                      └──────stop()─────▶ STOPPED
       ├── InterfaceNotFoundError (fatal to the process)
       └── TapOpenError ──mark_faulted()──▶ FAULTED (exporter keeps serving)

Key design decisions:
  - bind() runs in the caller's thread so configuration errors surface
    immediately and are never retried.
  - run() blocks; start() runs it on a dedicated daemon thread. The only
    suspension point is tap.next_frame().
  - Per-frame problems (malformed header, unsupported ethertype) are
    counted, logged at DEBUG and skipped. Only a TapFaultError ends the
    loop, in FAULTED.
  - The terminal outcome lands in ``done`` (a concurrent.futures.Future):
    a result of the final state, or the TapFaultError. The host process
    awaits it to log the fault while everything else keeps serving.

Lifecycle:
    capture = CaptureLoop("eth0", table)
    capture.start()          # may raise ConfigurationError
    ...
    capture.stop()
"""

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import Future
from typing import Callable, Iterable

from prometheus_client.core import GaugeMetricFamily, Metric

from ..errors import MalformedFrameError, TapFaultError
from ..flows.classifier import InterfaceAddressSet, RemoteAttribution, classify
from ..flows.models import FlowLabel
from ..flows.table import FlowCounterTable
from ..metrics import CaptureStats
from .decoder import decode_frame
from .interfaces import resolve_interface_addresses
from .tap import FrameSource, open_tap

logger = logging.getLogger(__name__)

TapFactory = Callable[[str, "str | None"], FrameSource]
AddressResolver = Callable[[str], InterfaceAddressSet]


class CaptureState(str, enum.Enum):
    BINDING = "binding"
    RUNNING = "running"
    FAULTED = "faulted"
    STOPPED = "stopped"


class CaptureLoop:
    """
    Single-writer capture driver for one interface.

    Args:
        iface:       Interface name, e.g. 'eth0', 'br-lan'
        table:       FlowCounterTable the loop records into
        bpf_filter:  Optional kernel-side filter (see capture/filter.py)
        remote:      How non-local endpoints are attributed
        tap_factory: Opens the frame source; defaults to a Scapy L2 socket
        resolver:    Resolves the interface's bound addresses
    """

    def __init__(
        self,
        iface: str,
        table: FlowCounterTable,
        bpf_filter: str | None = None,
        remote: RemoteAttribution = RemoteAttribution.INTERNET,
        tap_factory: TapFactory = open_tap,
        resolver: AddressResolver = resolve_interface_addresses,
    ) -> None:
        self._iface = iface
        self._table = table
        self._bpf_filter = bpf_filter
        self._remote = remote
        self._tap_factory = tap_factory
        self._resolver = resolver

        self.stats = CaptureStats()
        self.done: Future = Future()
        self._state = CaptureState.BINDING
        self._addresses: InterfaceAddressSet | None = None
        self._tap: FrameSource | None = None
        self._thread: threading.Thread | None = None
        self._stop_requested = threading.Event()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def bind(self) -> None:
        """Resolve the interface and open the tap. Raises ConfigurationError."""
        if self._tap is not None:
            return
        logger.info("Binding capture to %r", self._iface)
        self._addresses = self._resolver(self._iface)
        self._tap = self._tap_factory(self._iface, self._bpf_filter)

    # ------------------------------------------------------------------
    # Per-frame work (capture thread)
    # ------------------------------------------------------------------

    def process_frame(self, frame: bytes) -> FlowLabel | None:
        """Decode, classify and record one frame. Returns the label, if any."""
        self.stats.frames_received.inc()

        try:
            header = decode_frame(frame)
        except MalformedFrameError as exc:
            self.stats.decode_errors.inc()
            logger.debug("[%s]: %s", self._iface, exc)
            return None

        label = classify(header, self._addresses, self._remote)
        if label is None:
            self.stats.unsupported_frames.inc()
            return None

        self._table.record(label, len(frame))
        self.stats.frames_recorded.inc()
        return label

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run(self) -> CaptureState:
        """
        Bind if needed, then process frames until stop() or a tap fault.

        Returns the terminal state (STOPPED); raises TapFaultError on a
        receive-channel failure after moving to FAULTED.
        """
        self.bind()
        self._state = CaptureState.RUNNING
        logger.info("Capture running on %r", self._iface)
        tap = self._tap
        try:
            while not self._stop_requested.is_set():
                frame = tap.next_frame()
                if frame is None:
                    continue
                self.process_frame(frame)
        except TapFaultError:
            if self._stop_requested.is_set():
                self._state = CaptureState.STOPPED
                return self._state
            self._state = CaptureState.FAULTED
            raise
        finally:
            tap.close()
        self._state = CaptureState.STOPPED
        return self._state

    def _run_in_thread(self) -> None:
        try:
            result = self.run()
        except BaseException as exc:
            if self._state is not CaptureState.FAULTED:
                self._state = CaptureState.FAULTED
            self.done.set_exception(exc)
        else:
            self.done.set_result(result)
        finally:
            logger.info(
                "Capture on %r ended in state %s — stats: %s",
                self._iface, self._state.value, self.stats.as_dict(),
            )

    def start(self) -> Future:
        """Bind synchronously, then run the loop on a daemon thread."""
        with self._lock:
            if self._thread is not None:
                logger.warning("CaptureLoop.start() called but already started")
                return self.done
            self.bind()
            self._thread = threading.Thread(
                target=self._run_in_thread,
                name=f"capture-{self._iface}",
                daemon=True,
            )
            self._thread.start()
        return self.done

    def mark_faulted(self, exc: BaseException) -> None:
        """
        Record a failure that happened before the capture thread ran
        (the tap would not open). Traffic accounting stays off; ``done``
        carries ``exc`` so the supervisor reports it like a runtime fault.
        """
        with self._lock:
            if self.done.done():
                return
            self._state = CaptureState.FAULTED
            self.done.set_exception(exc)

    def stop(self, timeout: float = 5.0) -> None:
        """Ask the loop to finish and wait briefly for its thread."""
        with self._lock:
            self._stop_requested.set()
            if self._tap is not None:
                self._tap.close()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        if self._state in (CaptureState.BINDING, CaptureState.RUNNING):
            self._state = CaptureState.STOPPED

    # ------------------------------------------------------------------
    # Introspection / exposition
    # ------------------------------------------------------------------

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def iface(self) -> str:
        return self._iface

    @property
    def addresses(self) -> InterfaceAddressSet | None:
        return self._addresses

    def collect_families(self, name: str, help_text: str) -> Iterable[Metric]:
        family = GaugeMetricFamily(name, help_text, labels=["state"])
        current = self._state
        for state in CaptureState:
            family.add_metric([state.value], 1.0 if state is current else 0.0)
        yield family

    def register(self, registry, prefix: str) -> None:
        self.stats.register(registry, prefix)
        registry.register(f"{prefix}_capture_state", "Capture loop state (one-hot)", self)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"CaptureLoop(iface={self._iface!r}, "
            f"filter={self._bpf_filter!r}, "
            f"state={self._state.value})"
        )
