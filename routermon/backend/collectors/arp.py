"""
collectors/arp.py

Neighbor table collector — one gauge sample per /proc/net/arp entry.

    IP address       HW type     Flags       HW address            Mask     Device
    192.168.1.15     0x1         0x0         00:00:00:00:00:00     *        lan
    192.168.1.106    0x1         0x2         90:11:95:3e:cf:5d     *        lan

Rows that do not split into exactly six fields (the header, blank lines)
are skipped. The gauge is cleared on every successful refresh so
neighbours that left the table stop being reported.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from .base import Collector

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ArpEntry:
    ip_addr: str
    hw_addr: str
    flags: str
    device: str


def parse_arp_table(text: str) -> list[ArpEntry]:
    entries: list[ArpEntry] = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) != 6:
            continue
        entries.append(
            ArpEntry(ip_addr=fields[0], hw_addr=fields[3], flags=fields[2], device=fields[5])
        )
    return entries


class ArpCollector(Collector):
    name = "arp"

    def __init__(self, path: str = "/proc/net/arp") -> None:
        self._path = Path(path)
        self._devices = None

    def register(self, registry, prefix: str) -> None:
        self._devices = registry.gauge(
            f"{prefix}_arp_devices",
            "ARP cache",
            ["ip_addr", "hw_addr", "device", "flags"],
        )

    async def refresh(self) -> None:
        text = await asyncio.to_thread(self._path.read_text)
        entries = parse_arp_table(text)
        self._devices.clear()
        for e in entries:
            self._devices.labels(
                ip_addr=e.ip_addr, hw_addr=e.hw_addr, device=e.device, flags=e.flags
            ).set(1)
        logger.debug("ARP table: %d entries", len(entries))
