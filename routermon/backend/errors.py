"""
backend/errors.py

Exception hierarchy shared by the capture path, the registry and the
collectors.

  RouterMonError
   ├── ConfigurationError        fatal, reported once, never retried
   │    ├── InterfaceNotFoundError
   │    └── TapOpenError
   ├── MalformedFrameError       per-frame, logged and dropped
   ├── TapFaultError             receive channel died, capture loop ends
   ├── CollectorError            one collector refresh failed
   └── MetricAlreadyRegisteredError
"""

from __future__ import annotations


class RouterMonError(Exception):
    """Base class for every error raised by routermon."""


class ConfigurationError(RouterMonError):
    """The operator has to fix the configuration and restart."""


class InterfaceNotFoundError(ConfigurationError):
    def __init__(self, iface: str) -> None:
        super().__init__(f"No such network interface {iface!r}")
        self.iface = iface


class TapOpenError(ConfigurationError):
    def __init__(self, iface: str, reason: str) -> None:
        super().__init__(f"Unable to open capture on {iface!r}: {reason}")
        self.iface = iface
        self.reason = reason


class MalformedFrameError(RouterMonError):
    """A frame claimed a supported ethertype but its header did not decode."""


class TapFaultError(RouterMonError):
    """The tap itself failed while receiving."""


class CollectorError(RouterMonError):
    """A collector could not refresh its metrics."""


class MetricAlreadyRegisteredError(RouterMonError, ValueError):
    pass
