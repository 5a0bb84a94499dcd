"""
collectors/ddns.py

Cloudflare dynamic-DNS updater.

Start-up (failures end the updater; the exporter keeps running):
  1. verify the API token
  2. resolve the zone id for ``domain``
  3. fetch the current record for ``record``

Then every ``ttl`` seconds:
  - look up the public IP (api.ipify.org)
  - set ``<prefix>_ddns_cloudflare_current_ip{current_ip} 1``
  - create the A record if missing, update it when content / ttl /
    proxied / type differ, otherwise leave it alone
A failed cycle is logged and retried on the next tick.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import BaseModel, Field, ValidationError

from ..errors import CollectorError
from .base import Collector

logger = logging.getLogger(__name__)

CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"
IPIFY_URL = "https://api.ipify.org"
_HTTP_TIMEOUT_SECONDS = 10.0


class DnsRecordRequest(BaseModel):
    name: str
    content: str
    record_type: str = Field("A", alias="type")
    ttl: int
    proxied: bool = False

    model_config = {"populate_by_name": True}

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


class DnsRecord(DnsRecordRequest):
    id: str

    def differs_from(self, wanted: DnsRecordRequest) -> bool:
        return (
            self.content != wanted.content
            or self.ttl != wanted.ttl
            or self.proxied != wanted.proxied
            or self.record_type != wanted.record_type
        )


class CloudflareDdns(Collector):
    name = "ddns_cloudflare"

    def __init__(
        self,
        api_token: str,
        email: str,
        domain: str,
        record: str,
        ttl_seconds: int = 300,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_token = api_token
        self._email = email
        self._domain = domain
        self._record_name = record
        self._ttl = ttl_seconds
        self._client = client or httpx.AsyncClient(timeout=_HTTP_TIMEOUT_SECONDS)
        self._zone_id: str | None = None
        self._current: DnsRecord | None = None
        self._current_ip = None

    def register(self, registry, prefix: str) -> None:
        self._current_ip = registry.gauge(
            f"{prefix}_ddns_cloudflare_current_ip", "Current IP", ["current_ip"]
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "X-Auth-Email": self._email,
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.HTTPError as exc:
            raise CollectorError(f"{method} {url}: request failed: {exc}") from exc
        if not resp.is_success:
            raise CollectorError(
                f"{method} {url}: invalid response: {resp.status_code} (body: {resp.text!r})"
            )
        return resp

    @staticmethod
    def _result(resp: httpx.Response):
        try:
            return resp.json()["result"]
        except (ValueError, KeyError, TypeError) as exc:
            raise CollectorError(f"unexpected Cloudflare response: {exc}") from exc

    @staticmethod
    def _record(data) -> DnsRecord:
        try:
            return DnsRecord.model_validate(data)
        except ValidationError as exc:
            raise CollectorError(f"unexpected DNS record payload: {exc}") from exc

    # ------------------------------------------------------------------
    # Cloudflare API
    # ------------------------------------------------------------------

    async def validate_api_token(self) -> None:
        await self._request("GET", f"{CLOUDFLARE_API}/user/tokens/verify")

    async def get_zone_id(self) -> str:
        resp = await self._request("GET", f"{CLOUDFLARE_API}/zones", params={"name": self._domain})
        zones = self._result(resp)
        if not zones:
            raise CollectorError(f"zone id not found for {self._domain!r}")
        try:
            return str(zones[0]["id"])
        except (KeyError, TypeError, IndexError) as exc:
            raise CollectorError(f"unexpected zone payload for {self._domain!r}: {exc!r}") from exc

    async def get_dns_record(self, zone_id: str) -> DnsRecord | None:
        resp = await self._request(
            "GET", f"{CLOUDFLARE_API}/zones/{zone_id}/dns_records", params={"name": self._record_name}
        )
        records = self._result(resp)
        return self._record(records[0]) if records else None

    async def create_dns_record(self, zone_id: str, wanted: DnsRecordRequest) -> DnsRecord:
        resp = await self._request(
            "POST", f"{CLOUDFLARE_API}/zones/{zone_id}/dns_records", json=wanted.to_json()
        )
        return self._record(self._result(resp))

    async def update_dns_record(
        self, zone_id: str, record_id: str, wanted: DnsRecordRequest
    ) -> DnsRecord:
        resp = await self._request(
            "PUT",
            f"{CLOUDFLARE_API}/zones/{zone_id}/dns_records/{record_id}",
            json=wanted.to_json(),
        )
        return self._record(self._result(resp))

    async def get_my_ip(self) -> str:
        try:
            resp = await self._client.get(IPIFY_URL)
        except httpx.HTTPError as exc:
            raise CollectorError(f"public IP lookup failed: {exc}") from exc
        if not resp.is_success:
            raise CollectorError(f"public IP lookup: invalid response: {resp.status_code}")
        return resp.text.strip()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        await self.validate_api_token()
        self._zone_id = await self.get_zone_id()
        logger.info("cloudflare zone id: %s", self._zone_id)
        self._current = await self.get_dns_record(self._zone_id)
        logger.info("current cloudflare dns record: %s", self._current)

    async def refresh(self) -> None:
        """Run one update cycle. setup() must have succeeded."""
        if self._zone_id is None:
            raise CollectorError("DDNS updater not set up")
        ip = await self.get_my_ip()
        self._current_ip.clear()
        self._current_ip.labels(current_ip=ip).set(1)
        wanted = DnsRecordRequest(name=self._record_name, content=ip, type="A", ttl=self._ttl)
        if self._current is None:
            self._current = await self.create_dns_record(self._zone_id, wanted)
            logger.info("created dns record: %s", self._current)
        elif self._current.differs_from(wanted):
            self._current = await self.update_dns_record(self._zone_id, self._current.id, wanted)
            logger.info("updated dns record: %s", self._current)
        else:
            logger.debug("no need to update dns record")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        try:
            try:
                await self.setup()
            except CollectorError as exc:
                logger.error("ddns_cloudflare error: %s", exc)
                raise
            while not shutdown_event.is_set():
                try:
                    await self.refresh()
                except CollectorError as exc:
                    logger.error("update_ip failed: %s", exc)
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=self._ttl)
                except asyncio.TimeoutError:
                    continue
        finally:
            await self._client.aclose()
