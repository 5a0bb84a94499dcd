"""
collectors/__init__.py

Metric sources outside the capture path.
"""

from .arp import ArpCollector
from .base import Collector, CollectorHealth, refresh_all, safe_refresh
from .connectivity import ConnectivityProber
from .ddns import CloudflareDdns
from .leases import LeaseCollector
from .resolver import ResolverCollector

__all__ = [
    "ArpCollector",
    "CloudflareDdns",
    "Collector",
    "CollectorHealth",
    "ConnectivityProber",
    "LeaseCollector",
    "ResolverCollector",
    "refresh_all",
    "safe_refresh",
]
