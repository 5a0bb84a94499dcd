"""
tests/test_collectors.py

Tests for the collector adapters: ARP table, dnsmasq leases, dnsmasq
stats over DNS, the connectivity prober and the Cloudflare DDNS updater.

Every external resource is faked: files live in tmp_path, the DNS
exchange is replaced by a function that answers with a Scapy-built
response, TCP probes hit a local asyncio server, and Cloudflare is an
httpx.MockTransport.
"""

from __future__ import annotations

import asyncio
import json
import socket

import httpx
import pytest
from prometheus_client.parser import text_string_to_metric_families
from scapy.layers.dns import DNS, DNSRR

from routermon.backend.collectors.arp import ArpCollector, parse_arp_table
from routermon.backend.collectors.base import Collector, CollectorHealth, refresh_all, safe_refresh
from routermon.backend.collectors.connectivity import ConnectivityProber
from routermon.backend.collectors.ddns import CloudflareDdns, DnsRecord, DnsRecordRequest
from routermon.backend.collectors.leases import LeaseCollector, parse_leases
from routermon.backend.collectors.resolver import (
    ResolverCollector,
    build_stats_query,
    parse_stats_answers,
    parse_stats_response,
)
from routermon.backend.errors import CollectorError
from routermon.backend.metrics import MetricRegistry

PREFIX = "router_monitor"


def samples(registry: MetricRegistry) -> dict:
    text = registry.encode().decode()
    return {
        (s.name, tuple(sorted(s.labels.items()))): s.value
        for family in text_string_to_metric_families(text)
        for s in family.samples
    }


def names(registry: MetricRegistry, metric: str) -> list[dict]:
    text = registry.encode().decode()
    return [
        s.labels
        for family in text_string_to_metric_families(text)
        for s in family.samples
        if s.name == metric
    ]


# ---------------------------------------------------------------------------
# ARP
# ---------------------------------------------------------------------------

ARP_TABLE = """\
IP address       HW type     Flags       HW address            Mask     Device
192.168.1.15     0x1         0x0         00:00:00:00:00:00     *        lan
192.168.1.106    0x1         0x2         90:11:95:3e:cf:5d     *        lan
"""


class TestArp:

    def test_parse_skips_header(self):
        entries = parse_arp_table(ARP_TABLE)
        assert [e.ip_addr for e in entries] == ["192.168.1.15", "192.168.1.106"]
        assert entries[1].hw_addr == "90:11:95:3e:cf:5d"
        assert entries[1].flags == "0x2"
        assert entries[1].device == "lan"

    def test_parse_skips_odd_rows(self):
        assert parse_arp_table("garbage\n\n1 2 3 4 5 6 7\n") == []

    @pytest.mark.asyncio
    async def test_refresh_replaces_previous_entries(self, tmp_path):
        path = tmp_path / "arp"
        path.write_text(ARP_TABLE)
        registry = MetricRegistry()
        collector = ArpCollector(str(path))
        collector.register(registry, PREFIX)

        await collector.refresh()
        assert len(names(registry, f"{PREFIX}_arp_devices")) == 2

        path.write_text(ARP_TABLE.splitlines()[0] + "\n" + ARP_TABLE.splitlines()[2] + "\n")
        await collector.refresh()
        labels = names(registry, f"{PREFIX}_arp_devices")
        assert labels == [{
            "ip_addr": "192.168.1.106",
            "hw_addr": "90:11:95:3e:cf:5d",
            "device": "lan",
            "flags": "0x2",
        }]

    @pytest.mark.asyncio
    async def test_missing_file_raises(self, tmp_path):
        collector = ArpCollector(str(tmp_path / "nope"))
        collector.register(MetricRegistry(), PREFIX)
        with pytest.raises(OSError):
            await collector.refresh()


# ---------------------------------------------------------------------------
# DHCP leases
# ---------------------------------------------------------------------------

LEASES = """\
1700000000 90:11:95:3e:cf:5d 192.168.1.106 laptop 01:90:11:95:3e:cf:5d
1700000500 aa:bb:cc:dd:ee:ff 192.168.1.107 * *
"""


class TestLeases:

    def test_parse(self):
        leases = parse_leases(LEASES + "\n")
        assert len(leases) == 2
        assert leases[0].expiry == 1700000000
        assert leases[0].devicename == "laptop"
        assert leases[1].devicename == "*"

    def test_short_line_fails(self):
        with pytest.raises(CollectorError, match="line 2"):
            parse_leases("1700000000 aa:bb 10.0.0.1 host\n1700000000 aa:bb\n")

    def test_bad_expiry_fails(self):
        with pytest.raises(CollectorError, match="expiry"):
            parse_leases("soon aa:bb 10.0.0.1 host\n")

    @pytest.mark.asyncio
    async def test_refresh(self, tmp_path):
        path = tmp_path / "dnsmasq.leases"
        path.write_text(LEASES)
        registry = MetricRegistry()
        collector = LeaseCollector(str(path))
        collector.register(registry, PREFIX)
        await collector.refresh()

        s = samples(registry)
        assert s[(f"{PREFIX}_dnsmasq_leases", ())] == 2
        key = (
            f"{PREFIX}_dnsmasq_lease_info",
            (("devicename", "laptop"), ("ip", "192.168.1.106"), ("mac", "90:11:95:3e:cf:5d")),
        )
        assert s[key] == 1700000000

    @pytest.mark.asyncio
    async def test_missing_file_is_collector_error(self, tmp_path):
        collector = LeaseCollector(str(tmp_path / "nope"))
        collector.register(MetricRegistry(), PREFIX)
        with pytest.raises(CollectorError, match="leases file"):
            await collector.refresh()

    @pytest.mark.asyncio
    async def test_bad_file_keeps_previous_values(self, tmp_path):
        path = tmp_path / "dnsmasq.leases"
        path.write_text(LEASES)
        registry = MetricRegistry()
        collector = LeaseCollector(str(path))
        collector.register(registry, PREFIX)
        await collector.refresh()

        path.write_text("truncated\n")
        with pytest.raises(CollectorError):
            await collector.refresh()
        assert samples(registry)[(f"{PREFIX}_dnsmasq_leases", ())] == 2


# ---------------------------------------------------------------------------
# dnsmasq stats over DNS
# ---------------------------------------------------------------------------

def stats_answer(query: bytes, servers=("8.8.8.8#53 10 1", "1.1.1.1#53 5 0")) -> bytes:
    qid = DNS(query).id
    an = [
        DNSRR(rrname=name, type="TXT", rclass="CH", ttl=0, rdata=[value])
        for name, value in [
            ("cachesize.bind.", "150"),
            ("insertions.bind.", "12"),
            ("evictions.bind.", "0"),
            ("misses.bind.", "40"),
            ("hits.bind.", "95"),
            ("auth.bind.", "0"),
        ]
    ]
    an.append(DNSRR(rrname="servers.bind.", type="TXT", rclass="CH", ttl=0, rdata=list(servers)))
    return bytes(DNS(id=qid, qr=1, aa=1, an=an))


class TestResolverParsing:

    def test_scalars_and_servers(self):
        stats = parse_stats_answers([
            ("hits.bind.", ["95"]),
            ("servers.bind.", ["8.8.8.8#53 10 1"]),
            ("version.bind.", ["dnsmasq-2.89"]),
        ])
        assert stats.scalars == {"hits.bind.": 95.0}
        assert stats.servers == {"8.8.8.8#53": (10.0, 1.0)}

    def test_scalar_needs_exactly_one_reply(self):
        with pytest.raises(CollectorError, match="want 1"):
            parse_stats_answers([("hits.bind.", ["1", "2"])])

    def test_server_needs_three_fields(self):
        with pytest.raises(CollectorError, match="want 3"):
            parse_stats_answers([("servers.bind.", ["8.8.8.8#53 10"])])

    def test_non_numeric_scalar(self):
        with pytest.raises(CollectorError):
            parse_stats_answers([("misses.bind.", ["lots"])])

    def test_query_asks_chaos_txt(self):
        query = DNS(build_stats_query(1234))
        assert query.id == 1234
        assert query.qdcount == 7
        assert {q.qclass for q in query.qd} == {3}   # CH
        assert {q.qtype for q in query.qd} == {16}   # TXT

    def test_response_round_trip(self):
        query = build_stats_query(42)
        stats = parse_stats_response(stats_answer(query), 42)
        assert stats.scalars["cachesize.bind."] == 150
        assert stats.servers["1.1.1.1#53"] == (5.0, 0.0)

    def test_response_id_mismatch(self):
        with pytest.raises(CollectorError, match="id"):
            parse_stats_response(stats_answer(build_stats_query(1)), 2)


class TestResolverCollector:

    @pytest.mark.asyncio
    async def test_refresh_sets_gauges(self, monkeypatch):
        registry = MetricRegistry()
        collector = ResolverCollector("127.0.0.1:53")
        collector.register(registry, PREFIX)
        monkeypatch.setattr(collector, "_exchange", stats_answer)

        await collector.refresh()
        s = samples(registry)
        assert s[(f"{PREFIX}_dnsmasq_hits", ())] == 95
        assert s[(f"{PREFIX}_dnsmasq_misses", ())] == 40
        assert s[(f"{PREFIX}_dnsmasq_servers_queries", (("server", "8.8.8.8#53"),))] == 10
        assert s[(f"{PREFIX}_dnsmasq_servers_queries_failed", (("server", "8.8.8.8#53"),))] == 1

    @pytest.mark.asyncio
    async def test_removed_upstream_is_dropped(self, monkeypatch):
        registry = MetricRegistry()
        collector = ResolverCollector("127.0.0.1:53")
        collector.register(registry, PREFIX)

        monkeypatch.setattr(collector, "_exchange", stats_answer)
        await collector.refresh()
        monkeypatch.setattr(
            collector, "_exchange", lambda query: stats_answer(query, servers=("1.1.1.1#53 6 0",))
        )
        await collector.refresh()

        servers = [labels["server"] for labels in names(registry, f"{PREFIX}_dnsmasq_servers_queries")]
        failed = [
            labels["server"] for labels in names(registry, f"{PREFIX}_dnsmasq_servers_queries_failed")
        ]
        assert servers == ["1.1.1.1#53"]
        assert failed == ["1.1.1.1#53"]

    @pytest.mark.asyncio
    async def test_socket_error_is_collector_error(self, monkeypatch):
        collector = ResolverCollector("127.0.0.1:53")
        collector.register(MetricRegistry(), PREFIX)

        def refuse(payload):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(collector, "_exchange", refuse)
        with pytest.raises(CollectorError, match="127.0.0.1:53"):
            await collector.refresh()


# ---------------------------------------------------------------------------
# refresh_all / health
# ---------------------------------------------------------------------------

class _Fake(Collector):
    def __init__(self, name, behaviour):
        self.name = name
        self._behaviour = behaviour
        self.calls = 0

    def register(self, registry, prefix):
        pass

    async def refresh(self):
        self.calls += 1
        await self._behaviour()


async def _ok():
    return None


async def _boom():
    raise CollectorError("file vanished")


async def _slow():
    await asyncio.sleep(10)


class TestRefreshAll:

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self):
        registry = MetricRegistry()
        health = CollectorHealth(registry, PREFIX)
        collectors = [_Fake("good", _ok), _Fake("bad", _boom), _Fake("slow", _slow)]

        result = await refresh_all(collectors, health, timeout=0.05)

        assert result == {"good": True, "bad": False, "slow": False}
        s = samples(registry)
        assert s[(f"{PREFIX}_collector_up", (("collector", "good"),))] == 1
        assert s[(f"{PREFIX}_collector_up", (("collector", "bad"),))] == 0
        assert s[(f"{PREFIX}_collector_up", (("collector", "slow"),))] == 0
        assert s[(f"{PREFIX}_collector_errors_total", (("collector", "slow"),))] == 1

    @pytest.mark.asyncio
    async def test_error_is_logged_with_collector_name(self, caplog):
        ok = await safe_refresh(_Fake("dnsmasq_leases", _boom), None, timeout=1.0)
        assert ok is False
        assert "dnsmasq_leases error: file vanished" in caplog.text

    @pytest.mark.asyncio
    async def test_recovery_sets_up_again(self):
        registry = MetricRegistry()
        health = CollectorHealth(registry, PREFIX)
        state = {"fail": True}

        async def flaky():
            if state["fail"]:
                raise CollectorError("once")

        collector = _Fake("flaky", flaky)
        await refresh_all([collector], health, timeout=1.0)
        state["fail"] = False
        await refresh_all([collector], health, timeout=1.0)

        s = samples(registry)
        assert s[(f"{PREFIX}_collector_up", (("collector", "flaky"),))] == 1
        assert s[(f"{PREFIX}_collector_errors_total", (("collector", "flaky"),))] == 1


# ---------------------------------------------------------------------------
# Connectivity prober
# ---------------------------------------------------------------------------

def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestConnectivity:

    @pytest.mark.asyncio
    async def test_up_and_down_targets(self):
        async def accept(reader, writer):
            writer.close()

        server = await asyncio.start_server(accept, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        up, down = f"127.0.0.1:{port}", f"127.0.0.1:{_closed_port()}"

        registry = MetricRegistry()
        prober = ConnectivityProber([up, down], interval=60, timeout=1.0)
        prober.register(registry, PREFIX)
        async with server:
            await prober.refresh()

        s = samples(registry)
        assert s[(f"{PREFIX}_internet_connection_is_up", (("addr", up),))] == 1
        assert s[(f"{PREFIX}_internet_connection_is_up", (("addr", down),))] == 0
        assert s[(f"{PREFIX}_internet_connection_duration_seconds_count", (("addr", up),))] == 1
        assert s[(f"{PREFIX}_internet_connection_duration_seconds_count", (("addr", down),))] == 1

    @pytest.mark.asyncio
    async def test_run_stops_on_shutdown(self):
        registry = MetricRegistry()
        prober = ConnectivityProber([f"127.0.0.1:{_closed_port()}"], interval=60, timeout=0.5)
        prober.register(registry, PREFIX)
        shutdown = asyncio.Event()

        task = asyncio.create_task(prober.run(shutdown))
        await asyncio.sleep(0.2)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2.0)
        assert names(registry, f"{PREFIX}_internet_connection_is_up")


# ---------------------------------------------------------------------------
# Cloudflare DDNS
# ---------------------------------------------------------------------------

ZONE = "zone-123"
RECORD = {
    "id": "rec-1",
    "name": "home.example.com",
    "content": "203.0.113.1",
    "type": "A",
    "ttl": 300,
    "proxied": False,
}


class FakeCloudflare:
    """Records requests and answers like the Cloudflare v4 API."""

    def __init__(self, ip="203.0.113.1", record=RECORD, token_ok=True):
        self.ip = ip
        self.record = dict(record) if record else None
        self.token_ok = token_ok
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.url.host == "api.ipify.org":
            return httpx.Response(200, text=self.ip)
        if path.endswith("/user/tokens/verify"):
            return httpx.Response(200 if self.token_ok else 401, json={"success": self.token_ok})
        if path.endswith("/zones"):
            return httpx.Response(200, json={"result": [{"id": ZONE}]})
        if path.endswith("/dns_records") and request.method == "GET":
            return httpx.Response(200, json={"result": [self.record] if self.record else []})
        if request.method in ("POST", "PUT"):
            body = json.loads(request.content)
            self.record = {"id": "rec-1", **body}
            return httpx.Response(200, json={"result": self.record})
        return httpx.Response(404)

    def methods(self) -> list[str]:
        return [r.method for r in self.requests if r.url.host != "api.ipify.org"]


def make_ddns(fake: FakeCloudflare) -> tuple[CloudflareDdns, MetricRegistry]:
    registry = MetricRegistry()
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    ddns = CloudflareDdns(
        api_token="token",
        email="ops@example.com",
        domain="example.com",
        record="home.example.com",
        ttl_seconds=300,
        client=client,
    )
    ddns.register(registry, PREFIX)
    return ddns, registry


class TestDnsRecordModels:

    def test_type_alias(self):
        wanted = DnsRecordRequest(name="a", content="1.2.3.4", type="A", ttl=60)
        assert wanted.to_json() == {
            "name": "a", "content": "1.2.3.4", "type": "A", "ttl": 60, "proxied": False,
        }

    def test_differs_from(self):
        current = DnsRecord.model_validate(RECORD)
        same = DnsRecordRequest(name=RECORD["name"], content="203.0.113.1", ttl=300)
        moved = DnsRecordRequest(name=RECORD["name"], content="203.0.113.2", ttl=300)
        assert not current.differs_from(same)
        assert current.differs_from(moved)


class TestCloudflareDdns:

    @pytest.mark.asyncio
    async def test_unchanged_record_is_left_alone(self):
        fake = FakeCloudflare()
        ddns, registry = make_ddns(fake)
        await ddns.setup()
        await ddns.refresh()
        assert fake.methods() == ["GET", "GET", "GET"]
        assert samples(registry)[
            (f"{PREFIX}_ddns_cloudflare_current_ip", (("current_ip", "203.0.113.1"),))
        ] == 1

    @pytest.mark.asyncio
    async def test_changed_ip_updates_record(self):
        fake = FakeCloudflare(ip="198.51.100.7")
        ddns, _ = make_ddns(fake)
        await ddns.setup()
        await ddns.refresh()
        put = fake.requests[-1]
        assert put.method == "PUT"
        assert put.url.path.endswith(f"/zones/{ZONE}/dns_records/rec-1")
        assert json.loads(put.content)["content"] == "198.51.100.7"
        assert put.headers["Authorization"] == "Bearer token"

    @pytest.mark.asyncio
    async def test_missing_record_is_created(self):
        fake = FakeCloudflare(record=None)
        ddns, _ = make_ddns(fake)
        await ddns.setup()
        await ddns.refresh()
        assert fake.requests[-1].method == "POST"
        assert fake.record["content"] == "203.0.113.1"

    @pytest.mark.asyncio
    async def test_bad_token_fails_setup(self):
        ddns, _ = make_ddns(FakeCloudflare(token_ok=False))
        with pytest.raises(CollectorError, match="401"):
            await ddns.setup()

    @pytest.mark.asyncio
    async def test_refresh_before_setup(self):
        ddns, _ = make_ddns(FakeCloudflare())
        with pytest.raises(CollectorError, match="not set up"):
            await ddns.refresh()

    @pytest.mark.asyncio
    async def test_run_reraises_setup_failure(self):
        ddns, _ = make_ddns(FakeCloudflare(token_ok=False))
        with pytest.raises(CollectorError):
            await ddns.run(asyncio.Event())

    @pytest.mark.asyncio
    async def test_existing_record_is_loaded_at_setup(self):
        fake = FakeCloudflare()
        ddns, _ = make_ddns(fake)
        await ddns.setup()
        assert fake.requests[-1].url.params["name"] == "home.example.com"
        assert ddns._current == DnsRecord.model_validate(RECORD)

    @pytest.mark.asyncio
    async def test_unexpected_zone_payload(self):
        fake = FakeCloudflare()

        def broken_zones(request):
            if request.url.path.endswith("/zones"):
                return httpx.Response(200, json={"result": [{"name": "example.com"}]})
            return fake(request)

        registry = MetricRegistry()
        ddns = CloudflareDdns(
            api_token="token",
            email="ops@example.com",
            domain="example.com",
            record="home.example.com",
            client=httpx.AsyncClient(transport=httpx.MockTransport(broken_zones)),
        )
        ddns.register(registry, PREFIX)
        with pytest.raises(CollectorError, match="zone payload"):
            await ddns.setup()

    @pytest.mark.asyncio
    async def test_run_closes_client_on_shutdown(self):
        ddns, _ = make_ddns(FakeCloudflare(ip="198.51.100.7"))
        shutdown = asyncio.Event()
        task = asyncio.create_task(ddns.run(shutdown))
        await asyncio.sleep(0.1)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2.0)
        assert ddns._client.is_closed

    @pytest.mark.asyncio
    async def test_run_closes_client_after_setup_failure(self):
        ddns, _ = make_ddns(FakeCloudflare(token_ok=False))
        with pytest.raises(CollectorError):
            await ddns.run(asyncio.Event())
        assert ddns._client.is_closed
