"""
flows/models.py

Value types shared by the classifier, the counter table and the decoder.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import NamedTuple, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

INTERNET = "internet"
"""Attribution used for any endpoint that is not local to the interface."""


class FlowLabel(NamedTuple):
    """(src, dst) attribution pair; hashable and compared by value."""

    src: str
    dst: str


class FlowCounters(NamedTuple):
    """Point-in-time (packets, bytes) pair for one flow label."""

    packets: int
    bytes: int


@dataclass(frozen=True, slots=True)
class NetworkHeader:
    """The part of a decoded IPv4/IPv6 header the classifier needs."""

    source_address: IPAddress
    destination_address: IPAddress

    @property
    def version(self) -> int:
        return self.source_address.version
