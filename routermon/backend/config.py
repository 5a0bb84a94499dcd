"""
backend/config.py

Application configuration via Pydantic Settings.
All values can be overridden with environment variables or a .env file.

Quick start — create a .env file in your project root:
    INTERFACE=br-lan
    API_HOST=0.0.0.0
    LEASES_PATH=/tmp/dhcp.leases
    DDNS_CLOUDFLARE_API_TOKEN=...
"""

from __future__ import annotations

import json
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_INTERNET_CHECK_TARGETS = [
    "1.1.1.1:53",
    "64.6.64.6:53",
    "8.8.8.8:53",
    "208.67.222.222:53",
    "9.9.9.9:53",
]


def split_host_port(value: str) -> tuple[str, int]:
    """'host:port' or '[v6]:port' → (host, port). Raises ValueError."""
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"expected host:port, got {value!r}")
    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ValueError(f"port out of range in {value!r}")
    return host.strip("[]"), port_num


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Capture
    INTERFACE: str = "eth0"
    BPF_FILTER: str = ""
    REMOTE_ATTRIBUTION: str = "internet"   # "internet" | "address"

    # Metric names
    METRIC_PREFIX: str = "router_monitor"

    # API
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 9155

    # On-demand collectors (refreshed on every scrape)
    ARP_PATH: str = "/proc/net/arp"
    LEASES_PATH: str = "/var/lib/misc/dnsmasq.leases"
    DNSMASQ_ADDR: str = "127.0.0.1:53"
    COLLECTOR_TIMEOUT_SECONDS: float = 2.0

    # Connectivity prober
    INTERNET_CHECK_ENABLED: bool = True
    INTERNET_CHECK_TARGETS: Annotated[list[str], NoDecode] = DEFAULT_INTERNET_CHECK_TARGETS
    INTERNET_CHECK_INTERVAL_SECONDS: float = 10.0
    INTERNET_CHECK_TIMEOUT_SECONDS: float = 2.0

    # Cloudflare DDNS (all four must be set to enable)
    DDNS_CLOUDFLARE_API_TOKEN: str | None = None
    DDNS_CLOUDFLARE_EMAIL: str | None = None
    DDNS_CLOUDFLARE_DOMAIN: str | None = None
    DDNS_CLOUDFLARE_RECORD: str | None = None
    DDNS_CLOUDFLARE_TTL_SECONDS: int = 300

    # Logging
    LOG_LEVEL: str = "INFO"

    @field_validator("REMOTE_ATTRIBUTION")
    @classmethod
    def check_remote_attribution(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("internet", "address"):
            raise ValueError("REMOTE_ATTRIBUTION must be 'internet' or 'address'")
        return v

    @field_validator("INTERNET_CHECK_TARGETS", mode="before")
    @classmethod
    def parse_targets(cls, v):
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                return json.loads(v)
            return [t.strip() for t in v.split(",") if t.strip()]
        return v

    @field_validator("INTERNET_CHECK_TARGETS")
    @classmethod
    def check_targets(cls, v: list[str]) -> list[str]:
        for target in v:
            split_host_port(target)
        return v

    @field_validator("DNSMASQ_ADDR")
    @classmethod
    def check_dnsmasq_addr(cls, v: str) -> str:
        split_host_port(v)
        return v

    @property
    def ddns_enabled(self) -> bool:
        return all((
            self.DDNS_CLOUDFLARE_API_TOKEN,
            self.DDNS_CLOUDFLARE_EMAIL,
            self.DDNS_CLOUDFLARE_DOMAIN,
            self.DDNS_CLOUDFLARE_RECORD,
        ))


settings = Settings()
