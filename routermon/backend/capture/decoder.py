"""
capture/decoder.py

Turns one raw Ethernet frame into a NetworkHeader.

Design principles:
  - Called from the capture thread for every frame. Synchronous, no I/O.
  - Returns None for ethertypes other than IPv4 / IPv6 (ARP, LLDP, VLAN
    tags, ...), so the caller records nothing.
  - Raises MalformedFrameError when a frame claims IPv4/IPv6 but the
    header is too short or inconsistent. The loop logs and drops it.
  - Never keeps the frame or the Scapy objects around; only the two
    addresses leave this module.

Header sanity checks (applied to the bytes before Scapy dissects them):
  IPv4 : >= 20 bytes, version nibble 4, IHL >= 5, IHL*4 <= available bytes
  IPv6 : >= 40 bytes, version nibble 6
"""

from __future__ import annotations

import ipaddress
import logging

from scapy.layers.inet import IP  # type: ignore[import-untyped]
from scapy.layers.inet6 import IPv6  # type: ignore[import-untyped]
from scapy.layers.l2 import Ether  # type: ignore[import-untyped]

from ..errors import MalformedFrameError
from ..flows.models import NetworkHeader

logger = logging.getLogger(__name__)

ETHER_HEADER_LEN = 14
ETHERTYPE_IPV4 = 0x0800
ETHERTYPE_IPV6 = 0x86DD

_IPV4_MIN_HEADER = 20
_IPV6_HEADER = 40


def ethertype_of(frame: bytes) -> int:
    """Return the Ethernet II ethertype, raising on truncated frames."""
    if len(frame) < ETHER_HEADER_LEN:
        raise MalformedFrameError(
            f"frame too short for an Ethernet header ({len(frame)} bytes)"
        )
    return int(Ether(frame[:ETHER_HEADER_LEN]).type)


def _decode_ipv4(payload: bytes) -> NetworkHeader:
    if len(payload) < _IPV4_MIN_HEADER:
        raise MalformedFrameError(f"Malformed IPv4 packet: {len(payload)} bytes")
    version = payload[0] >> 4
    ihl = payload[0] & 0x0F
    if version != 4:
        raise MalformedFrameError(f"Malformed IPv4 packet: version {version}")
    if ihl < 5 or ihl * 4 > len(payload):
        raise MalformedFrameError(f"Malformed IPv4 packet: IHL {ihl}")
    try:
        header = IP(payload)
        return NetworkHeader(
            source_address=ipaddress.IPv4Address(header.src),
            destination_address=ipaddress.IPv4Address(header.dst),
        )
    except Exception as exc:
        raise MalformedFrameError(f"Malformed IPv4 packet: {exc}") from exc


def _decode_ipv6(payload: bytes) -> NetworkHeader:
    if len(payload) < _IPV6_HEADER:
        raise MalformedFrameError(f"Malformed IPv6 packet: {len(payload)} bytes")
    version = payload[0] >> 4
    if version != 6:
        raise MalformedFrameError(f"Malformed IPv6 packet: version {version}")
    try:
        header = IPv6(payload)
        return NetworkHeader(
            source_address=ipaddress.IPv6Address(header.src),
            destination_address=ipaddress.IPv6Address(header.dst),
        )
    except Exception as exc:
        raise MalformedFrameError(f"Malformed IPv6 packet: {exc}") from exc


def decode_frame(frame: bytes) -> NetworkHeader | None:
    """
    Decode the network-layer addresses of an Ethernet frame.

    Returns:
        NetworkHeader for IPv4/IPv6 frames, None for any other ethertype.

    Raises:
        MalformedFrameError if the frame or its IP header is malformed.
    """
    ethertype = ethertype_of(frame)
    payload = frame[ETHER_HEADER_LEN:]
    if ethertype == ETHERTYPE_IPV4:
        return _decode_ipv4(payload)
    if ethertype == ETHERTYPE_IPV6:
        return _decode_ipv6(payload)
    return None
