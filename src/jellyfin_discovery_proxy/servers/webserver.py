"""Dashboard and health HTTP server for the discovery proxy.

This module provides a small FastAPI application and helpers to run it in a
background thread alongside the UDP discovery listeners.

Everything here is read-only: handlers only call IdentityCache.snapshot(),
AccessFilter.count() and RequestStats.snapshot().
"""

from __future__ import annotations

import html
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cachetools import TTLCache
from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from .. import __version__
from ..access_control import AccessFilter
from ..config.logging_config import RingBuffer
from ..stats import RequestStats, get_process_uptime_seconds
from .discovery import AddressFamilyContext

logger = logging.getLogger("jellyfin_discovery_proxy.webserver")


@dataclass
class DashboardState:
    """Brief: References to the live core objects the dashboard reads.

    Inputs:
      - contexts: Mapping of family label to AddressFamilyContext.
      - access_filter: AccessFilter (only count() is used).
      - stats: RequestStats (only snapshot() is used).
      - log_buffer: RingBuffer of recent formatted log lines.
      - version: Version string shown on the dashboard.
    """

    contexts: Dict[str, AddressFamilyContext]
    access_filter: AccessFilter
    stats: RequestStats
    log_buffer: RingBuffer = field(default_factory=RingBuffer)
    version: str = __version__


def _ts_to_utc_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_duration(seconds: Optional[float]) -> str:
    """Render a duration as e.g. "1d 2h 3m 4s"; "n/a" for None.

    Example:
      >>> format_duration(93784)
      '1d 2h 3m 4s'
      >>> format_duration(5.2)
      '5s'
    """

    if seconds is None:
        return "n/a"
    total = int(max(0.0, float(seconds)))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if days or hours:
        parts.append(f"{hours}h")
    if days or hours or minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def build_status_payload(state: DashboardState) -> Dict[str, Any]:
    """Brief: Assemble the JSON dashboard document from live snapshots.

    Inputs:
      - state: DashboardState.

    Outputs:
      - dict with version, uptime, per-family URLs and cache state, request
        statistics, and blacklist rule count.
    """

    families: Dict[str, Any] = {}
    for label, ctx in sorted(state.contexts.items()):
        snap = ctx.cache.snapshot()
        identity = snap.identity
        families[label] = {
            "server_url": ctx.server_url,
            "advertise_url": ctx.address_url,
            "cache": {
                "server_id": identity.id if identity else None,
                "server_name": identity.name if identity else None,
                "cached_at": _ts_to_utc_iso(snap.captured_at),
                "age_seconds": snap.age_seconds,
                "age": format_duration(snap.age_seconds),
                "fresh": snap.fresh,
                "duration_seconds": snap.duration_seconds,
                "never_expires": snap.duration_seconds == 0,
            },
        }

    req = state.stats.snapshot()
    uptime = get_process_uptime_seconds()
    return {
        "version": state.version,
        "uptime_seconds": uptime,
        "uptime": format_duration(uptime),
        "families": families,
        "requests": {
            "last_request_time": _ts_to_utc_iso(req.last_request_time),
            "last_request_ip": req.last_request_ip,
            "total_requests": req.total_requests,
        },
        "blacklisted_rules": state.access_filter.count(),
    }


def _render_dashboard(payload: Dict[str, Any], logs: list) -> str:
    esc = html.escape
    rows = []
    for label, fam in payload["families"].items():
        cache = fam["cache"]
        rows.append(
            "<tr>"
            f"<td>{esc(label.upper())}</td>"
            f"<td>{esc(fam['server_url'])}</td>"
            f"<td>{esc(fam['advertise_url'])}</td>"
            f"<td>{esc(cache['server_name'] or 'not cached')}</td>"
            f"<td>{esc(cache['server_id'] or '')}</td>"
            f"<td>{esc(cache['age'])}</td>"
            "</tr>"
        )
    req = payload["requests"]
    log_lines = "\n".join(esc(str(line)) for line in logs)
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta http-equiv="refresh" content="10">
<title>Jellyfin Discovery Proxy</title>
<style>
body {{ font-family: sans-serif; margin: 2em; background: #101418; color: #e0e6ea; }}
table {{ border-collapse: collapse; margin-bottom: 1.5em; }}
td, th {{ border: 1px solid #34414c; padding: 0.3em 0.8em; text-align: left; }}
pre {{ background: #0a0d10; padding: 1em; max-height: 30em; overflow: auto; }}
</style>
</head>
<body>
<h1>Jellyfin Discovery Proxy</h1>
<p>Version {esc(str(payload['version']))} &middot; uptime {esc(payload['uptime'])}</p>
<table>
<tr><th>Family</th><th>Server URL</th><th>Advertised</th><th>Server</th><th>ID</th><th>Cache age</th></tr>
{''.join(rows)}
</table>
<table>
<tr><th>Total requests</th><td>{req['total_requests']}</td></tr>
<tr><th>Last request</th><td>{esc(req['last_request_time'] or 'never')}</td></tr>
<tr><th>Last requester</th><td>{esc(req['last_request_ip'] or 'n/a')}</td></tr>
<tr><th>Blacklist rules</th><td>{payload['blacklisted_rules']}</td></tr>
</table>
<h2>Recent logs</h2>
<pre>{log_lines}</pre>
</body>
</html>
"""


def create_app(state: DashboardState, status_cache_ttl: float = 1.0) -> FastAPI:
    """Create the dashboard FastAPI app.

    Inputs:
      - state: DashboardState with live core objects.
      - status_cache_ttl: Seconds a status payload is reused; 0 disables
        caching.

    Outputs:
      - FastAPI application exposing /health, /api/v1/status, /api/v1/logs
        and the HTML dashboard at /.

    Example:
      >>> app = create_app(DashboardState({}, AccessFilter(""), RequestStats()))
    """

    app = FastAPI(title="Jellyfin Discovery Proxy")
    app.state.dashboard = state

    ttl = float(status_cache_ttl or 0)
    status_cache: Optional[TTLCache] = TTLCache(maxsize=1, ttl=ttl) if ttl > 0 else None
    status_lock = threading.Lock()

    def _status() -> Dict[str, Any]:
        if status_cache is None:
            return build_status_payload(state)
        with status_lock:
            payload = status_cache.get("status")
            if payload is None:
                payload = build_status_payload(state)
                status_cache["status"] = payload
            return payload

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok"}

    @app.get("/api/v1/status")
    async def status() -> Dict[str, Any]:
        """Return the dashboard data as JSON."""

        return _status()

    @app.get("/api/v1/logs")
    async def get_logs(limit: int = 100) -> Dict[str, Any]:
        """Return the newest ``limit`` buffered log lines (oldest first)."""

        entries = state.log_buffer.snapshot(limit=max(0, int(limit)))
        return {"entries": entries}

    @app.get("/", response_class=HTMLResponse)
    async def index() -> HTMLResponse:
        return HTMLResponse(_render_dashboard(_status(), state.log_buffer.snapshot()))

    return app


class WebServerHandle:
    """Handle for a background dashboard webserver thread.

    Inputs (constructor):
      - thread: Thread running the uvicorn server loop.
      - server: Optional uvicorn.Server instance.

    Outputs:
      - WebServerHandle instance with stop() and is_running().
    """

    def __init__(self, thread: threading.Thread, server: Any | None = None) -> None:
        self._thread = thread
        self._server = server

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        """Ask uvicorn to exit and wait for the thread."""

        try:
            if self._server is not None:
                self._server.should_exit = True
            self._thread.join(timeout=timeout)
        except Exception:
            logger.exception("Error while stopping webserver thread")


def start_webserver(
    state: DashboardState,
    host: str = "0.0.0.0",
    port: int = 8080,
    status_cache_ttl: float = 1.0,
) -> WebServerHandle:
    """Start the dashboard under uvicorn on a daemon thread.

    Inputs:
      - state: DashboardState.
      - host/port: Listen address for the dashboard.
      - status_cache_ttl: Passed to create_app().

    Outputs:
      - WebServerHandle.
    """

    import uvicorn

    app = create_app(state, status_cache_ttl=status_cache_ttl)
    config_uvicorn = uvicorn.Config(
        app, host=host, port=int(port), log_level="warning", log_config=None
    )
    server = uvicorn.Server(config_uvicorn)

    def _runner() -> None:
        try:
            server.run()
        except Exception:  # pragma: no cover - environment-specific failures
            logger.exception("Unhandled exception in webserver thread")

    thread = threading.Thread(target=_runner, name="dashboard-webserver", daemon=True)
    thread.start()

    logger.info("Starting HTTP server on %s:%d", host, int(port))
    logger.info("Dashboard available at http://localhost:%d", int(port))
    logger.info("Health check available at http://localhost:%d/health", int(port))
    return WebServerHandle(thread, server)
