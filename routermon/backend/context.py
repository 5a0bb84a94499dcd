"""
backend/context.py

ExporterContext — the process-scoped object that owns the registry and
every metric source. It is built once in main.run() and handed
explicitly to the HTTP app and the background tasks.

Registration order is fixed here and the registry is sealed at the end,
so the name → metric map never changes once serving starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .capture.filter import build_bpf_filter
from .capture.interfaces import resolve_interface_addresses
from .capture.loop import AddressResolver, CaptureLoop, TapFactory
from .capture.tap import open_tap
from .collectors import (
    ArpCollector,
    CloudflareDdns,
    Collector,
    CollectorHealth,
    ConnectivityProber,
    LeaseCollector,
    ResolverCollector,
    refresh_all,
)
from .config import Settings
from .flows.classifier import RemoteAttribution
from .flows.table import FlowCounterTable
from .metrics import MetricRegistry

logger = logging.getLogger(__name__)


@dataclass
class ExporterContext:
    settings: Settings
    registry: MetricRegistry
    flow_table: FlowCounterTable
    capture: CaptureLoop
    health: CollectorHealth
    on_demand: list[Collector] = field(default_factory=list)
    prober: ConnectivityProber | None = None
    ddns: CloudflareDdns | None = None

    async def refresh_on_demand(self) -> dict[str, bool]:
        """Refresh scrape-triggered collectors; never raises."""
        return await refresh_all(
            self.on_demand, self.health, self.settings.COLLECTOR_TIMEOUT_SECONDS
        )


def build_context(
    settings: Settings,
    tap_factory: TapFactory = open_tap,
    resolver: AddressResolver = resolve_interface_addresses,
) -> ExporterContext:
    """Create and register every component. The capture loop is not started."""
    prefix = settings.METRIC_PREFIX
    registry = MetricRegistry()

    table = FlowCounterTable()
    table.register(registry, prefix)

    bpf = settings.BPF_FILTER or build_bpf_filter()
    capture = CaptureLoop(
        iface=settings.INTERFACE,
        table=table,
        bpf_filter=bpf,
        remote=RemoteAttribution(settings.REMOTE_ATTRIBUTION),
        tap_factory=tap_factory,
        resolver=resolver,
    )
    capture.register(registry, prefix)

    health = CollectorHealth(registry, prefix)

    on_demand: list[Collector] = [
        ArpCollector(settings.ARP_PATH),
        LeaseCollector(settings.LEASES_PATH),
        ResolverCollector(settings.DNSMASQ_ADDR, timeout=settings.COLLECTOR_TIMEOUT_SECONDS),
    ]
    for collector in on_demand:
        collector.register(registry, prefix)

    prober = None
    if settings.INTERNET_CHECK_ENABLED:
        prober = ConnectivityProber(
            settings.INTERNET_CHECK_TARGETS,
            interval=settings.INTERNET_CHECK_INTERVAL_SECONDS,
            timeout=settings.INTERNET_CHECK_TIMEOUT_SECONDS,
        )
        prober.register(registry, prefix)

    ddns = None
    if settings.ddns_enabled:
        ddns = CloudflareDdns(
            api_token=settings.DDNS_CLOUDFLARE_API_TOKEN,
            email=settings.DDNS_CLOUDFLARE_EMAIL,
            domain=settings.DDNS_CLOUDFLARE_DOMAIN,
            record=settings.DDNS_CLOUDFLARE_RECORD,
            ttl_seconds=settings.DDNS_CLOUDFLARE_TTL_SECONDS,
        )
        ddns.register(registry, prefix)

    registry.seal()
    logger.info("Registered %d metrics", len(registry.names))

    return ExporterContext(
        settings=settings,
        registry=registry,
        flow_table=table,
        capture=capture,
        health=health,
        on_demand=on_demand,
        prober=prober,
        ddns=ddns,
    )
