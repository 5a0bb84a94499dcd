from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import NoReturn

import uvicorn

from .api.main import create_app
from .capture.loop import CaptureLoop
from .config import Settings, settings, split_host_port
from .context import ExporterContext, build_context
from .errors import InterfaceNotFoundError, TapOpenError

logger = logging.getLogger("routermon.main")


# ---------------------------------------------------------------------------
# Background task supervision
# ---------------------------------------------------------------------------

async def supervise_capture(capture: CaptureLoop) -> None:
    """
    Wait for the capture thread's terminal result and log it.

    A tap fault ends traffic accounting only; every other collector and the
    HTTP server keep running.
    """
    try:
        state = await asyncio.wrap_future(capture.done)
        logger.info("Capture loop finished (state=%s)", state.value)
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception(
            "packet_monitor error: capture on %r failed; continuing without traffic metrics",
            capture.iface,
        )


async def supervise_task(name: str, coro) -> None:
    try:
        await coro
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("%s stopped with an error", name)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

async def run(context: ExporterContext) -> None:
    cfg = context.settings
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler(_signum, _frame) -> None:
        logger.info("Shutdown signal received")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    app = create_app(context)
    uv_config = uvicorn.Config(
        app,
        host=cfg.API_HOST,
        port=cfg.API_PORT,
        log_level="warning",
        loop="none",
    )
    uv_server = uvicorn.Server(uv_config)

    tasks = [asyncio.create_task(supervise_capture(context.capture), name="capture")]
    if context.prober is not None:
        tasks.append(asyncio.create_task(
            supervise_task("internet_check", context.prober.run(shutdown_event)),
            name="internet_check",
        ))
    if context.ddns is not None:
        tasks.append(asyncio.create_task(
            supervise_task("ddns_cloudflare", context.ddns.run(shutdown_event)),
            name="ddns",
        ))
    api_task = asyncio.create_task(uv_server.serve(), name="api")

    logger.info(
        "routermon — iface=%r API=http://%s:%d/metrics remote=%s",
        cfg.INTERFACE, cfg.API_HOST, cfg.API_PORT, cfg.REMOTE_ATTRIBUTION,
    )

    waiter = asyncio.create_task(shutdown_event.wait(), name="shutdown")
    await asyncio.wait([waiter, api_task], return_when=asyncio.FIRST_COMPLETED)
    waiter.cancel()

    uv_server.should_exit = True
    context.capture.stop()
    for t in tasks:
        t.cancel()
    await asyncio.gather(*tasks, api_task, return_exceptions=True)
    logger.info("Final capture stats — %s", context.capture.stats.as_dict())
    logger.info("routermon stopped cleanly")


def _parse_args(cfg: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="routermon — router metrics exporter")
    parser.add_argument("--iface", "--interface", default=cfg.INTERFACE,
                        help="network interface to monitor")
    parser.add_argument("--bpf", default=cfg.BPF_FILTER, help="BPF filter")
    parser.add_argument("--bind-addr", default=f"{cfg.API_HOST}:{cfg.API_PORT}",
                        help="host:port to serve /metrics on")
    parser.add_argument("--remote-attribution", default=cfg.REMOTE_ATTRIBUTION,
                        choices=["internet", "address"])
    parser.add_argument("--leases-path", default=cfg.LEASES_PATH)
    parser.add_argument("--dnsmasq", default=cfg.DNSMASQ_ADDR, dest="dnsmasq_addr",
                        help="dnsmasq host:port address")
    parser.add_argument("--ddns-cloudflare-api-token", default=cfg.DDNS_CLOUDFLARE_API_TOKEN)
    parser.add_argument("--ddns-cloudflare-email", default=cfg.DDNS_CLOUDFLARE_EMAIL)
    parser.add_argument("--ddns-cloudflare-domain", default=cfg.DDNS_CLOUDFLARE_DOMAIN)
    parser.add_argument("--ddns-cloudflare-record", default=cfg.DDNS_CLOUDFLARE_RECORD)
    parser.add_argument("--ddns-cloudflare-ttl", type=int, default=cfg.DDNS_CLOUDFLARE_TTL_SECONDS)
    parser.add_argument(
        "--log-level", default=cfg.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args()


def settings_from_args(cfg: Settings, args: argparse.Namespace) -> Settings:
    """Overlay command-line flags on the environment-derived settings."""
    host, port = split_host_port(args.bind_addr)
    return Settings(**{
        **cfg.model_dump(),
        "INTERFACE": args.iface,
        "BPF_FILTER": args.bpf,
        "API_HOST": host,
        "API_PORT": port,
        "REMOTE_ATTRIBUTION": args.remote_attribution,
        "LEASES_PATH": args.leases_path,
        "DNSMASQ_ADDR": args.dnsmasq_addr,
        "DDNS_CLOUDFLARE_API_TOKEN": args.ddns_cloudflare_api_token,
        "DDNS_CLOUDFLARE_EMAIL": args.ddns_cloudflare_email,
        "DDNS_CLOUDFLARE_DOMAIN": args.ddns_cloudflare_domain,
        "DDNS_CLOUDFLARE_RECORD": args.ddns_cloudflare_record,
        "DDNS_CLOUDFLARE_TTL_SECONDS": args.ddns_cloudflare_ttl,
        "LOG_LEVEL": args.log_level,
    })


def start_capture(capture: CaptureLoop) -> None:
    """
    Bind and start the capture loop.

    A missing interface propagates: the operator named the wrong device.
    A tap that will not open (no CAP_NET_RAW, bad BPF filter) only takes
    traffic accounting down; the capture is marked FAULTED and every
    other collector keeps serving.
    """
    try:
        capture.start()
    except TapOpenError as e:
        logger.error("packet_monitor error: %s; serving without traffic metrics", e)
        capture.mark_faulted(e)


def main() -> NoReturn:
    args = _parse_args(settings)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        cfg = settings_from_args(settings, args)
    except ValueError as e:
        print(f"ERROR: invalid arguments: {e}", file=sys.stderr)
        sys.exit(1)
    logger.info("Starting with settings: %s", cfg.model_dump(exclude={"DDNS_CLOUDFLARE_API_TOKEN"}))

    context = build_context(cfg)
    try:
        start_capture(context.capture)
    except InterfaceNotFoundError as e:
        logger.error("packet_monitor error: %s", e)
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    asyncio.run(run(context))
    sys.exit(0)


if __name__ == "__main__":
    main()
