"""
capture/interfaces.py

Resolves the Interface Address Set for the monitored interface.

psutil.net_if_addrs() gives every interface with its IPv4/IPv6 addresses
and netmasks; link-layer (AF_PACKET / AF_LINK) entries are skipped.
The result is read once when the capture loop binds and never refreshed.
"""

from __future__ import annotations

import ipaddress
import logging
import socket

import psutil

from ..errors import InterfaceNotFoundError
from ..flows.classifier import InterfaceAddressSet

logger = logging.getLogger(__name__)

_IP_FAMILIES = (socket.AF_INET, socket.AF_INET6)


def _prefix_len(family: int, netmask: str | None) -> int:
    full = 32 if family == socket.AF_INET else 128
    if not netmask:
        return full
    try:
        # IPv6Network() only takes prefix lengths, so count the mask bits
        return bin(int(ipaddress.ip_address(netmask.split("/", 1)[0]))).count("1")
    except ValueError:
        logger.debug("Unparseable netmask %r; using /%d", netmask, full)
        return full


def list_interfaces() -> dict[str, list[str]]:
    """Return interface name → ["addr/prefix", ...] for every local interface."""
    result: dict[str, list[str]] = {}
    for name, entries in psutil.net_if_addrs().items():
        addrs: list[str] = []
        for entry in entries:
            if entry.family not in _IP_FAMILIES or not entry.address:
                continue
            address = entry.address.split("%", 1)[0]
            addrs.append(f"{address}/{_prefix_len(entry.family, entry.netmask)}")
        result[name] = addrs
    return result


def resolve_interface_addresses(iface: str) -> InterfaceAddressSet:
    """
    Return the addresses bound to ``iface``.

    Raises:
        InterfaceNotFoundError if no interface of that name exists.
    """
    interfaces = list_interfaces()
    logger.info("Available interfaces: %s", ", ".join(sorted(interfaces)) or "(none)")
    if iface not in interfaces:
        raise InterfaceNotFoundError(iface)
    addresses = InterfaceAddressSet(interfaces[iface])
    logger.info("Interface %s bound addresses: %s", iface, [str(a) for a in addresses])
    return addresses
