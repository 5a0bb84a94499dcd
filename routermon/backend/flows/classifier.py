"""
flows/classifier.py

Maps a decoded network header to a FlowLabel.

Each endpoint is classified independently:
  - local  : the address falls inside a network bound to the monitored
             interface → attributed by its literal string form
  - remote : anything else → the "internet" sentinel (or, when configured
             with RemoteAttribution.ADDRESS, the literal remote address)

Interface addresses carry their prefix length, so a host bound to
192.168.1.10/24 treats every 192.168.1.x peer as local. Bind /32 (or /128)
entries to get exact-address matching.

The classifier holds no state and is called from the capture thread only.
"""

from __future__ import annotations

import enum
import ipaddress
from typing import Iterable, Iterator, Union

from .models import INTERNET, FlowLabel, IPAddress, NetworkHeader

InterfaceLike = Union[str, ipaddress.IPv4Interface, ipaddress.IPv6Interface]


class RemoteAttribution(str, enum.Enum):
    INTERNET = "internet"
    ADDRESS = "address"


def _strip_zone(address: str) -> str:
    # psutil reports link-local IPv6 as "fe80::1%eth0"
    if "%" not in address:
        return address
    head, _, tail = address.partition("%")
    _, slash, prefix = tail.partition("/")
    return f"{head}/{prefix}" if slash else head


class InterfaceAddressSet:
    """Immutable set of addresses (with prefixes) bound to one interface."""

    __slots__ = ("_interfaces",)

    def __init__(self, interfaces: Iterable[InterfaceLike] = ()) -> None:
        parsed = []
        for item in interfaces:
            if isinstance(item, str):
                item = ipaddress.ip_interface(_strip_zone(item))
            parsed.append(item)
        self._interfaces: tuple[ipaddress.IPv4Interface | ipaddress.IPv6Interface, ...] = tuple(parsed)

    def __contains__(self, address: object) -> bool:
        if isinstance(address, str):
            try:
                address = ipaddress.ip_address(_strip_zone(address))
            except ValueError:
                return False
        if not isinstance(address, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            return False
        return any(
            iface.version == address.version and address in iface.network
            for iface in self._interfaces
        )

    def __iter__(self) -> Iterator[ipaddress.IPv4Interface | ipaddress.IPv6Interface]:
        return iter(self._interfaces)

    def __len__(self) -> int:
        return len(self._interfaces)

    def __repr__(self) -> str:
        return f"InterfaceAddressSet({[str(i) for i in self._interfaces]})"


def attribute(
    address: IPAddress,
    local: InterfaceAddressSet,
    remote: RemoteAttribution = RemoteAttribution.INTERNET,
) -> str:
    """Return the attribution string for one endpoint."""
    if address in local or remote is RemoteAttribution.ADDRESS:
        return str(address)
    return INTERNET


def classify(
    header: NetworkHeader | None,
    local: InterfaceAddressSet,
    remote: RemoteAttribution = RemoteAttribution.INTERNET,
) -> FlowLabel | None:
    """
    Build the FlowLabel for a decoded header.

    Returns None when there is no header (non-IP ethertype), so the caller
    records nothing.
    """
    if header is None:
        return None
    return FlowLabel(
        src=attribute(header.source_address, local, remote),
        dst=attribute(header.destination_address, local, remote),
    )
