"""
collectors/resolver.py

dnsmasq resolver statistics, read over DNS.

dnsmasq answers CHAOS-class TXT queries in the "bind" domain with its
cache counters:

    dig +short chaos txt cachesize.bind
    dig +short chaos txt servers.bind

All seven questions go out in one UDP query (built and parsed with
Scapy's DNS layer). Scalar names map to one gauge each; servers.bind.
returns one "<server> <queries> <failed>" string per upstream.
"""

from __future__ import annotations

import asyncio
import logging
import random
import socket
from dataclasses import dataclass, field

from scapy.layers.dns import DNS, DNSQR  # type: ignore[import-untyped]

from ..config import split_host_port
from ..errors import CollectorError
from .base import Collector

logger = logging.getLogger(__name__)

# stats record name → (metric suffix, help)
SCALAR_STATS: dict[str, tuple[str, str]] = {
    "cachesize.bind.": ("dnsmasq_cachesize", "configured size of the DNS cache"),
    "insertions.bind.": ("dnsmasq_insertions", "DNS cache insertions"),
    "evictions.bind.": (
        "dnsmasq_evictions",
        "DNS cache evictions: numbers of entries which replaced an unexpired cache entry",
    ),
    "misses.bind.": ("dnsmasq_misses", "DNS cache misses: queries which had to be forwarded"),
    "hits.bind.": ("dnsmasq_hits", "DNS queries answered locally (cache hits)"),
    "auth.bind.": ("dnsmasq_auth", "DNS queries for authoritative zones"),
}
SERVERS_RECORD = "servers.bind."


@dataclass
class ResolverStats:
    scalars: dict[str, float] = field(default_factory=dict)
    servers: dict[str, tuple[float, float]] = field(default_factory=dict)


def _text(value) -> str:
    return value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)


def parse_stats_answers(answers: list[tuple[str, list[str]]]) -> ResolverStats:
    """
    Interpret (record name, TXT strings) pairs from a stats response.

    Unknown names are ignored. A malformed value raises CollectorError.
    """
    stats = ResolverStats()
    for name, strings in answers:
        if name == SERVERS_RECORD:
            for entry in strings:
                parts = entry.split()
                if len(parts) != 3:
                    raise CollectorError(
                        f"stats DNS record {SERVERS_RECORD}: unexpected number of "
                        f"argument in record: got {len(parts)}, want 3"
                    )
                try:
                    stats.servers[parts[0]] = (float(parts[1]), float(parts[2]))
                except ValueError as exc:
                    raise CollectorError(f"stats DNS record {SERVERS_RECORD}: {exc}") from exc
            continue
        if name not in SCALAR_STATS:
            continue
        if len(strings) != 1:
            raise CollectorError(
                f"stats DNS record {name!r}: unexpected number of replies: "
                f"got {len(strings)}, want 1"
            )
        try:
            stats.scalars[name] = float(strings[0])
        except ValueError as exc:
            raise CollectorError(f"stats DNS record {name!r}: {exc}") from exc
    return stats


def build_stats_query(query_id: int) -> bytes:
    names = list(SCALAR_STATS) + [SERVERS_RECORD]
    query = DNS(
        id=query_id,
        rd=1,
        qd=[DNSQR(qname=n, qtype="TXT", qclass="CH") for n in names],
    )
    return bytes(query)


def parse_stats_response(data: bytes, query_id: int) -> ResolverStats:
    try:
        response = DNS(data)
    except Exception as exc:
        raise CollectorError(f"undecodable stats response: {exc}") from exc
    if response.id != query_id:
        raise CollectorError(f"stats response id {response.id} != query id {query_id}")
    answers: list[tuple[str, list[str]]] = []
    for rr in response.an or []:
        rdata = rr.rdata
        strings = [_text(s) for s in rdata] if isinstance(rdata, (list, tuple)) else [_text(rdata)]
        answers.append((_text(rr.rrname), strings))
    return parse_stats_answers(answers)


class ResolverCollector(Collector):
    name = "dnsmasq_stats"

    def __init__(self, addr: str = "127.0.0.1:53", timeout: float = 2.0) -> None:
        self._host, self._port = split_host_port(addr)
        self._timeout = timeout
        self._scalars: dict[str, object] = {}
        self._queries = None
        self._queries_failed = None

    def register(self, registry, prefix: str) -> None:
        for record, (suffix, help_text) in SCALAR_STATS.items():
            self._scalars[record] = registry.gauge(f"{prefix}_{suffix}", help_text)
        self._queries = registry.gauge(
            f"{prefix}_dnsmasq_servers_queries", "DNS queries on upstream server", ["server"]
        )
        self._queries_failed = registry.gauge(
            f"{prefix}_dnsmasq_servers_queries_failed",
            "DNS queries failed on upstream server",
            ["server"],
        )

    def _exchange(self, payload: bytes) -> bytes:
        family = socket.AF_INET6 if ":" in self._host else socket.AF_INET
        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            sock.settimeout(self._timeout)
            sock.sendto(payload, (self._host, self._port))
            data, _ = sock.recvfrom(65535)
        return data

    async def query(self) -> ResolverStats:
        query_id = random.randint(0, 0xFFFF)
        try:
            data = await asyncio.to_thread(self._exchange, build_stats_query(query_id))
        except OSError as exc:
            raise CollectorError(
                f"stats query to {self._host}:{self._port} failed: {exc}"
            ) from exc
        return parse_stats_response(data, query_id)

    async def refresh(self) -> None:
        stats = await self.query()
        for record, value in stats.scalars.items():
            self._scalars[record].set(value)
        self._queries.clear()
        self._queries_failed.clear()
        for server, (queries, failed) in stats.servers.items():
            self._queries.labels(server=server).set(queries)
            self._queries_failed.labels(server=server).set(failed)
