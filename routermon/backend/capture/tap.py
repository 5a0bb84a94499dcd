"""
capture/tap.py

Tap — a blocking raw-frame source bound to one interface.

Wraps Scapy's level-2 listening socket (conf.L2listen). next_frame()
waits on select() for at most POLL_INTERVAL_SECONDS and returns the raw
bytes of one frame, or None when the link stayed idle. It is the only
suspension point of the capture loop, and the bounded wait lets stop()
be observed without relying on close() to wake a blocked recv().

Error contract:
  - opening the socket fails  → TapOpenError (configuration problem)
  - receiving fails (OSError) → TapFaultError (the device went away, etc.)
"""

from __future__ import annotations

import errno
import logging
from typing import Protocol

from scapy.config import conf  # type: ignore[import-untyped]
from scapy.data import MTU  # type: ignore[import-untyped]
from scapy.error import Scapy_Exception  # type: ignore[import-untyped]

from ..errors import TapFaultError, TapOpenError

logger = logging.getLogger(__name__)

# recv errors that concern one frame, not the socket
_TRANSIENT_ERRNOS = frozenset({errno.EAGAIN, errno.EWOULDBLOCK, errno.EINTR, errno.ENOBUFS})

# select() timeout so a stop request is seen while the link is idle
POLL_INTERVAL_SECONDS = 0.5


class FrameSource(Protocol):
    def next_frame(self) -> bytes | None: ...

    def close(self) -> None: ...


class ScapyTap:
    """Raw Ethernet frames from ``iface``, optionally narrowed by a BPF filter."""

    def __init__(self, iface: str, bpf_filter: str | None = None) -> None:
        self._iface = iface
        self._bpf_filter = bpf_filter or None
        try:
            self._socket = conf.L2listen(iface=iface, filter=self._bpf_filter)
        except (OSError, Scapy_Exception) as exc:
            raise TapOpenError(iface, str(exc)) from exc
        self._closed = False
        logger.info("Tap opened on %r (filter=%r)", iface, self._bpf_filter)

    def next_frame(self) -> bytes | None:
        """
        Wait up to POLL_INTERVAL_SECONDS for the next frame.

        None means "nothing usable": no frame arrived in time, or a
        transient receive error. The caller checks its stop flag and retries.
        """
        try:
            ready = self._socket.select([self._socket], POLL_INTERVAL_SECONDS)
            if not ready:
                return None
            _, data, _ = self._socket.recv_raw(MTU)
        except (OSError, ValueError) as exc:
            # ValueError: select() on a socket closed by stop()
            if isinstance(exc, OSError) and exc.errno in _TRANSIENT_ERRNOS and not self._closed:
                logger.warning("Transient receive error on %r: %s", self._iface, exc)
                return None
            raise TapFaultError(f"unable to receive packet on {self._iface!r}: {exc}") from exc
        return data

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._socket.close()
        except OSError as exc:  # pragma: no cover
            logger.warning("Error closing tap on %r: %s", self._iface, exc)

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:  # pragma: no cover
        return f"ScapyTap(iface={self._iface!r}, filter={self._bpf_filter!r})"


def open_tap(iface: str, bpf_filter: str | None = None) -> FrameSource:
    return ScapyTap(iface, bpf_filter)
