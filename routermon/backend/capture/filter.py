"""
capture/filter.py

BPF (Berkeley Packet Filter) string builder for the tap.

The filter is compiled by libpcap and applied in the kernel, so frames it
rejects never reach Python. The default keeps IPv4 and IPv6 only, which
drops ARP/LLDP/STP before they cost a decode.

Usage:
    bpf = build_bpf_filter()                               # "ip or ip6"
    bpf = build_bpf_filter(protocols=["tcp", "udp"])       # "(tcp or udp)"
    bpf = build_bpf_filter(exclude_ports=[9155])           # skip our own scrapes
"""

from __future__ import annotations

import logging
from typing import Sequence

logger = logging.getLogger(__name__)

DEFAULT_BASE = "ip or ip6"

# Protocol keywords libpcap understands (plus "dns", mapped to port 53)
_VALID_PROTOCOLS = frozenset({"tcp", "udp", "icmp", "icmp6", "ip", "ip6", "dns"})


def build_bpf_filter(
    protocols: Sequence[str] | None = None,
    exclude_hosts: Sequence[str] | None = None,
    exclude_ports: Sequence[int] | None = None,
    base: str = DEFAULT_BASE,
) -> str:
    """
    Build a BPF filter string from high-level options.

    Examples:
        >>> build_bpf_filter()
        'ip or ip6'
        >>> build_bpf_filter(protocols=['tcp', 'udp'])
        '(tcp or udp)'
        >>> build_bpf_filter(exclude_hosts=['10.0.0.1'])
        '(ip or ip6) and not (host 10.0.0.1)'
        >>> build_bpf_filter(protocols=['tcp'], exclude_ports=[9155])
        '(tcp) and not (port 9155)'
    """
    parts: list[str] = []

    if protocols:
        validated = []
        for p in protocols:
            pl = p.lower()
            if pl not in _VALID_PROTOCOLS:
                logger.warning("Unknown protocol for BPF filter: %r — skipping", p)
                continue
            validated.append("port 53" if pl == "dns" else pl)
        if validated:
            parts.append(f"({' or '.join(validated)})")

    excludes = [f"host {h}" for h in exclude_hosts or ()]
    excludes += [f"port {int(p)}" for p in exclude_ports or ()]

    if not parts:
        if not excludes:
            logger.debug("Built BPF filter: %r", base)
            return base
        parts.append(f"({base})" if " " in base else base)

    if excludes:
        parts.append(f"not ({' or '.join(excludes)})")

    bpf = " and ".join(parts)
    logger.debug("Built BPF filter: %r", bpf)
    return bpf
