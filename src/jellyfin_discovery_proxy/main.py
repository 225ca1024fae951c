from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from . import __version__
from .access_control import AccessFilter
from .cache import IdentityCache
from .config.config_parser import ProxyConfig, load_config
from .config.logging_config import RingBuffer, StartupLogCapture, init_logging
from .errors import BindError, ConfigError
from .servers.discovery import IPV4, IPV6, AddressFamilyContext, DiscoveryEngine
from .servers.webserver import DashboardState, WebServerHandle, start_webserver
from .stats import RequestStats
from .upstream import UpstreamFetcher


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jellyfin-discovery-proxy",
        description="Answer Jellyfin UDP discovery queries on behalf of a remote server",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Optional YAML config file; environment variables override its values",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warn", "warning", "error", "crit", "critical"],
        help="Log level (overrides LOG_LEVEL)",
    )
    parser.add_argument(
        "--http-port",
        type=int,
        default=None,
        help="Dashboard HTTP port (overrides HTTP_PORT)",
    )
    parser.add_argument(
        "--no-webserver",
        action="store_true",
        help="Do not start the dashboard/health HTTP server",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


def build_engine(cfg: ProxyConfig) -> DiscoveryEngine:
    """Brief: Wire the discovery core from a validated config.

    Inputs:
      - cfg: ProxyConfig.

    Outputs:
      - DiscoveryEngine with one AddressFamilyContext (and cache) per family.
    """

    contexts = [
        AddressFamilyContext(
            family=IPV4,
            server_url=cfg.ipv4.server_url,
            advertise_url=cfg.ipv4.advertise_url,
            cache=IdentityCache(cfg.cache_duration_seconds, name=IPV4),
        ),
        AddressFamilyContext(
            family=IPV6,
            server_url=cfg.ipv6.server_url,
            advertise_url=cfg.ipv6.advertise_url,
            cache=IdentityCache(cfg.cache_duration_seconds, name=IPV6),
        ),
    ]
    limiter = None
    if cfg.max_concurrent_requests > 0:
        limiter = threading.BoundedSemaphore(cfg.max_concurrent_requests)

    return DiscoveryEngine(
        contexts,
        AccessFilter(cfg.blacklist),
        RequestStats(),
        UpstreamFetcher(timeout=cfg.upstream_timeout_seconds),
        bind_ip=cfg.bind_ip,
        port=cfg.port,
        enable_ipv6=cfg.enable_ipv6,
        limiter=limiter,
        grace_period=cfg.shutdown_grace_seconds,
    )


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the discovery proxy.
    Parses arguments, loads configuration, binds the UDP listeners, warms the
    identity caches, starts the dashboard and serves until SIGINT/SIGTERM.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 after a clean shutdown, 1 for configuration or
        mandatory bind failures.

    Example use:
        CLI:
            JELLYFIN_SERVER_URL=http://10.8.0.2:8096 jellyfin-discovery-proxy
            PYTHONPATH=src python -m jellyfin_discovery_proxy --log-level debug
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    overrides = {
        "log_level": args.log_level,
        "http_port": args.http_port,
        "webserver_enabled": False if args.no_webserver else None,
    }
    # Config loading logs before the configured handlers exist.
    startup_capture = StartupLogCapture.install()
    try:
        cfg = load_config(args.config, overrides=overrides)
    except ConfigError as exc:
        init_logging()
        startup_capture.replay()
        print(str(exc), file=sys.stderr)
        return 1

    log_buffer = RingBuffer(cfg.logging.buffer_size)
    init_logging(cfg.logging, log_buffer=log_buffer)
    startup_capture.replay()
    logger = logging.getLogger("jellyfin_discovery_proxy.main")
    logger.info("Jellyfin Discovery Proxy v%s", __version__)
    if args.config:
        logger.info("Loaded config from %s", args.config)
    if cfg.cache_duration_seconds == 0:
        logger.info("Cache duration: forever (until restart)")
    else:
        logger.info("Cache duration: %.0f hours", cfg.cache_duration_seconds / 3600)

    engine = build_engine(cfg)
    if engine.access_filter.count():
        logger.info("Blacklist active with %d rules", engine.access_filter.count())

    try:
        engine.bind()
    except BindError as exc:
        logger.error("Failed to bind UDP listener: %s", exc)
        return 1

    engine.prime_caches()

    web_handle: Optional[WebServerHandle] = None
    if cfg.webserver.enabled:
        state = DashboardState(
            contexts=engine.contexts,
            access_filter=engine.access_filter,
            stats=engine.stats,
            log_buffer=log_buffer,
        )
        web_handle = start_webserver(
            state,
            host=cfg.webserver.host,
            port=cfg.webserver.port,
            status_cache_ttl=cfg.webserver.status_cache_ttl_seconds,
        )
    else:
        logger.info("Dashboard web server disabled")

    shutdown_event = threading.Event()

    def _request_shutdown(reason: str) -> None:
        if shutdown_event.is_set():
            return
        logger.info("Received %s, initiating shutdown", reason)
        shutdown_event.set()

    def _sigterm_handler(_signum, _frame):
        _request_shutdown("SIGTERM")

    def _sigint_handler(_signum, _frame):
        _request_shutdown("SIGINT")

    try:
        signal.signal(signal.SIGTERM, _sigterm_handler)
        signal.signal(signal.SIGINT, _sigint_handler)
    except ValueError:
        # signal.signal only works from the main thread.
        logger.warning("Could not install signal handlers outside the main thread")

    exit_code = 0
    engine.start()
    logger.info("Proxy running. Waiting for discovery requests...")

    try:
        while not shutdown_event.is_set():
            if not engine.running:
                logger.error("All UDP listener threads exited unexpectedly")
                exit_code = 1
                break
            shutdown_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    finally:
        engine.stop()
        if web_handle is not None:
            logger.info("Stopping webserver")
            web_handle.stop()
        logger.info("Shutdown complete")

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
