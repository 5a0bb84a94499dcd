"""
collectors/leases.py

dnsmasq DHCP lease collector.

Lease file format, one lease per line:
    <expiry-epoch> <mac> <ip> <hostname> [<client-id>]
    1700000000 90:11:95:3e:cf:5d 192.168.1.106 laptop 01:90:11:95:3e:cf:5d

A line with fewer than four fields fails the whole refresh: the file is
being rewritten or is not a lease file, and the previous values are
better than a half-read table.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from ..errors import CollectorError
from .base import Collector

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Lease:
    expiry: int
    mac: str
    ip: str
    devicename: str


def parse_leases(text: str) -> list[Lease]:
    leases: list[Lease] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        fields = line.split()
        if len(fields) < 4:
            raise CollectorError(
                f"DHCP lease record line {lineno}: unexpected number of fields: "
                f"got {len(fields)}, want at least 4"
            )
        try:
            expiry = int(fields[0])
        except ValueError as exc:
            raise CollectorError(
                f"DHCP lease record line {lineno}: bad expiry {fields[0]!r}"
            ) from exc
        leases.append(Lease(expiry=expiry, mac=fields[1], ip=fields[2], devicename=fields[3]))
    return leases


class LeaseCollector(Collector):
    name = "dnsmasq_leases"

    def __init__(self, path: str = "/var/lib/misc/dnsmasq.leases") -> None:
        self._path = Path(path)
        self._count = None
        self._info = None

    def register(self, registry, prefix: str) -> None:
        self._count = registry.gauge(
            f"{prefix}_dnsmasq_leases", "Number of DHCP leases handed out"
        )
        self._info = registry.gauge(
            f"{prefix}_dnsmasq_lease_info",
            "DHCP leases handed out (value is the expiry timestamp)",
            ["mac", "ip", "devicename"],
        )

    async def refresh(self) -> None:
        try:
            text = await asyncio.to_thread(self._path.read_text)
        except OSError as exc:
            raise CollectorError(f"could not open leases file: {exc}") from exc
        leases = parse_leases(text)
        self._info.clear()
        for lease in leases:
            self._info.labels(mac=lease.mac, ip=lease.ip, devicename=lease.devicename).set(
                lease.expiry
            )
        self._count.set(len(leases))
        logger.debug("DHCP leases: %d", len(leases))
