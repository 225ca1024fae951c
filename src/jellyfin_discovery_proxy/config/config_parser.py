"""Configuration loading and normalization for the discovery proxy.

Brief:
  Settings are layered, lowest precedence first:
    - built-in defaults
    - optional YAML file (validated with JSON Schema)
    - environment variables (JELLYFIN_SERVER_URL, PROXY_URL, CACHE_DURATION, ...)
    - CLI overrides passed in by main()
  The result is a frozen ProxyConfig. The discovery core only ever sees the
  plain values on that model.

Inputs:
  - YAML path, environment mapping, CLI override mapping

Outputs:
  - ProxyConfig
"""

from __future__ import annotations

import ipaddress
import logging
import os
import socket
from typing import Any, Dict, List, Mapping, Optional, Union

import psutil
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ConfigError
from .config_schema import validate_config

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:8096"
DEFAULT_CACHE_HOURS = 24
DEFAULT_HTTP_PORT = 8080
DEFAULT_LOG_BUFFER_SIZE = 100


class FamilyConfig(BaseModel):
    """Brief: Server and advertise URLs for one address family.

    Inputs:
      - server_url: Base URL used to reach the upstream API.
      - advertise_url: URL placed in the Address field of replies.
    """

    model_config = ConfigDict(frozen=True)

    server_url: str
    advertise_url: str


class WebServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=DEFAULT_HTTP_PORT, ge=0, le=65535)
    status_cache_ttl_seconds: float = Field(default=1.0, ge=0)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str = "info"
    stderr: bool = True
    file: Optional[str] = None
    buffer_size: int = Field(default=DEFAULT_LOG_BUFFER_SIZE, ge=1)


class ProxyConfig(BaseModel):
    """Validated, normalized proxy configuration.

    Example:
      >>> cfg = load_config(environ={"JELLYFIN_SERVER_URL": "http://10.0.0.5:8096/"})
      >>> cfg.ipv4.server_url
      'http://10.0.0.5:8096'
      >>> cfg.ipv6.advertise_url
      'http://10.0.0.5:8096'
    """

    model_config = ConfigDict(frozen=True)

    ipv4: FamilyConfig
    ipv6: FamilyConfig
    cache_duration_seconds: float = Field(default=DEFAULT_CACHE_HOURS * 3600, ge=0)
    blacklist: str = ""
    network_interface: Optional[str] = None
    bind_ip: str = "0.0.0.0"
    port: int = Field(default=7359, ge=0, le=65535)
    enable_ipv6: Optional[bool] = None
    max_concurrent_requests: int = Field(default=0, ge=0)
    shutdown_grace_seconds: float = Field(default=1.0, ge=0)
    upstream_timeout_seconds: float = Field(default=5.0, gt=0)
    webserver: WebServerConfig = WebServerConfig()
    logging: LoggingConfig = LoggingConfig()


def read_config_file(path: Optional[str]) -> Dict[str, Any]:
    """Brief: Read and schema-validate a YAML config file.

    Inputs:
      - path: File path or None/empty for "no file".

    Outputs:
      - dict: Parsed document ({} when path is empty or the file is empty).

    Raises:
      - ConfigError: unreadable file, YAML syntax error, or schema violation.
    """

    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    validate_config(cfg, config_path=path)
    return cfg


def _env(environ: Mapping[str, str], key: str) -> str:
    return str(environ.get(key, "") or "").strip()


def _section(cfg: Dict[str, Any], key: str) -> Dict[str, Any]:
    val = cfg.get(key)
    return val if isinstance(val, dict) else {}


def _first(*values: Any) -> str:
    for v in values:
        if v is not None and str(v).strip():
            return str(v).strip()
    return ""


def parse_cache_duration(raw: Optional[str]) -> float:
    """Brief: Parse CACHE_DURATION (whole hours) into seconds.

    Inputs:
      - raw: Environment value or None.

    Outputs:
      - float seconds; "" -> 24h, "0" -> 0 (never expire), invalid -> 24h.

    Example:
      >>> parse_cache_duration("2")
      7200.0
      >>> parse_cache_duration("0")
      0.0
    """

    text = str(raw or "").strip()
    if not text:
        logger.info(
            "CACHE_DURATION environment variable not set, using default %d hours",
            DEFAULT_CACHE_HOURS,
        )
        return float(DEFAULT_CACHE_HOURS * 3600)
    try:
        hours = int(text)
    except ValueError:
        hours = -1
    if hours < 0:
        logger.warning(
            "Invalid CACHE_DURATION value: %s, using default %d hours",
            text,
            DEFAULT_CACHE_HOURS,
        )
        return float(DEFAULT_CACHE_HOURS * 3600)
    if hours == 0:
        logger.info("CACHE_DURATION set to 0, caching until restart")
    else:
        logger.info("CACHE_DURATION set to %d hours", hours)
    return float(hours * 3600)


def parse_log_buffer_size(raw: Optional[str]) -> int:
    text = str(raw or "").strip()
    if not text:
        return DEFAULT_LOG_BUFFER_SIZE
    try:
        size = int(text)
    except ValueError:
        size = 0
    if size <= 0:
        logger.warning(
            "Invalid LOG_BUFFER_SIZE value: %s, using default %d",
            text,
            DEFAULT_LOG_BUFFER_SIZE,
        )
        return DEFAULT_LOG_BUFFER_SIZE
    return size


def interface_ipv4(name: str) -> str:
    """Brief: Return the first non-loopback IPv4 address of a network interface.

    Inputs:
      - name: Interface name such as "eth0".

    Outputs:
      - str: Dotted-quad address.

    Raises:
      - ConfigError: interface missing or without a usable IPv4 address.
    """

    addrs = psutil.net_if_addrs()
    if name not in addrs:
        raise ConfigError(f"failed to find network interface '{name}'")
    for snic in addrs[name]:
        if snic.family != socket.AF_INET:
            continue
        try:
            ip = ipaddress.IPv4Address(snic.address)
        except ValueError:
            continue
        if not ip.is_loopback:
            return str(ip)
    raise ConfigError(f"no IPv4 address found on interface '{name}'")


def _normalize_blacklist(raw: Union[str, List[str], None]) -> str:
    if raw is None:
        return ""
    if isinstance(raw, (list, tuple)):
        return ",".join(str(x) for x in raw)
    return str(raw)


def _resolve_family_urls(
    legacy: str, v4: str, v6: str, fallback_v4: str, fallback_v6: str
) -> tuple[str, str]:
    """Apply the legacy/per-family precedence shared by server and proxy URLs."""

    if not v4 and not v6:
        if legacy:
            return legacy, legacy
        return fallback_v4, fallback_v6
    return v4 or fallback_v4, v6 or fallback_v6


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ProxyConfig:
    """Brief: Build a ProxyConfig from YAML, environment, and CLI overrides.

    Inputs:
      - path: Optional YAML config file.
      - environ: Environment mapping (defaults to os.environ).
      - overrides: Optional CLI overrides; supported keys are log_level,
        http_port, webserver_enabled.

    Outputs:
      - ProxyConfig.

    Raises:
      - ConfigError: on invalid file contents, values, or interface lookups.

    Notes:
      - When neither per-family server URL is set, JELLYFIN_SERVER_URL (or
        http://localhost:8096) is used for both families; when only one is
        set, the other family copies it.
      - PROXY_URL applies to both families unless per-family values are set;
        a family without an advertise URL advertises its server URL.
      - Trailing slashes are removed from all URLs.
    """

    env = os.environ if environ is None else environ
    ovr = overrides or {}
    cfg = read_config_file(path)

    server_cfg = _section(cfg, "server")
    proxy_cfg = _section(cfg, "proxy")
    cache_cfg = _section(cfg, "cache")
    listen_cfg = _section(cfg, "listen")
    upstream_cfg = _section(cfg, "upstream")
    web_cfg = _section(cfg, "webserver")
    log_cfg = _section(cfg, "logging")

    # Server URLs
    legacy = _first(_env(env, "JELLYFIN_SERVER_URL"), server_cfg.get("url"))
    s4 = _first(_env(env, "JELLYFIN_SERVER_URL_IPV4"), server_cfg.get("url_ipv4"))
    s6 = _first(_env(env, "JELLYFIN_SERVER_URL_IPV6"), server_cfg.get("url_ipv6"))
    if not (legacy or s4 or s6):
        logger.info(
            "No server URL environment variables set, using default %s",
            DEFAULT_SERVER_URL,
        )
        legacy = DEFAULT_SERVER_URL
    if s4 and not s6:
        logger.info("JELLYFIN_SERVER_URL_IPV6 not set, using IPv4 URL for IPv6: %s", s4)
    elif s6 and not s4:
        logger.info("JELLYFIN_SERVER_URL_IPV4 not set, using IPv6 URL for IPv4: %s", s6)
    server4, server6 = _resolve_family_urls(legacy, s4, s6, s6, s4)

    # Advertise URLs
    p_legacy = _first(_env(env, "PROXY_URL"), proxy_cfg.get("url"))
    p4 = _first(_env(env, "PROXY_URL_IPV4"), proxy_cfg.get("url_ipv4"))
    p6 = _first(_env(env, "PROXY_URL_IPV6"), proxy_cfg.get("url_ipv6"))
    if not (p_legacy or p4 or p6):
        logger.info(
            "PROXY_URL environment variable not set, will use JELLYFIN_SERVER_URL for Address field"
        )
    proxy4, proxy6 = _resolve_family_urls(p_legacy, p4, p6, server4, server6)

    server4, server6, proxy4, proxy6 = (
        u.rstrip("/") for u in (server4, server6, proxy4, proxy6)
    )
    logger.info("Target Jellyfin server IPv4: %s", server4)
    logger.info("Target Jellyfin server IPv6: %s", server6)
    logger.debug("Advertise URLs - IPv4: %s, IPv6: %s", proxy4, proxy6)

    # Cache duration: environment (hours) wins over the file.
    env_cache = _env(env, "CACHE_DURATION")
    if env_cache or "duration_hours" not in cache_cfg:
        cache_seconds = parse_cache_duration(env_cache)
    else:
        cache_seconds = float(int(cache_cfg["duration_hours"]) * 3600)

    blacklist = _env(env, "BLACKLIST") or _normalize_blacklist(cfg.get("blacklist"))

    # Listener binding
    interface = _first(_env(env, "NETWORK_INTERFACE"), listen_cfg.get("interface")) or None
    if interface:
        logger.info("NETWORK_INTERFACE set to: %s", interface)
        bind_ip = interface_ipv4(interface)
        logger.info("Binding to interface %s with IP: %s", interface, bind_ip)
    else:
        bind_ip = _first(_env(env, "BIND_IP"), listen_cfg.get("host")) or "0.0.0.0"
        if bind_ip == "0.0.0.0":
            logger.info("No NETWORK_INTERFACE specified, binding to all interfaces")
    try:
        ipaddress.IPv4Address(bind_ip)
    except ValueError as exc:
        raise ConfigError(f"bind address must be an IPv4 literal, got {bind_ip!r}") from exc

    # Web server
    if ovr.get("http_port") is not None:
        http_port_raw = ovr["http_port"]
    else:
        http_port_raw = _env(env, "HTTP_PORT") or web_cfg.get("port")
    try:
        http_port = int(http_port_raw) if http_port_raw not in (None, "") else DEFAULT_HTTP_PORT
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid HTTP_PORT value: {http_port_raw!r}") from exc
    web_enabled = bool(web_cfg.get("enabled", True))
    if ovr.get("webserver_enabled") is not None:
        web_enabled = bool(ovr["webserver_enabled"])

    # Logging
    level = _first(ovr.get("log_level"), _env(env, "LOG_LEVEL"), log_cfg.get("level")) or "info"
    env_buf = _env(env, "LOG_BUFFER_SIZE")
    buffer_size = (
        parse_log_buffer_size(env_buf)
        if env_buf
        else int(log_cfg.get("buffer_size", DEFAULT_LOG_BUFFER_SIZE))
    )

    try:
        return ProxyConfig(
            ipv4=FamilyConfig(server_url=server4, advertise_url=proxy4),
            ipv6=FamilyConfig(server_url=server6, advertise_url=proxy6),
            cache_duration_seconds=cache_seconds,
            blacklist=blacklist,
            network_interface=interface,
            bind_ip=bind_ip,
            port=int(listen_cfg.get("port", 7359)),
            enable_ipv6=listen_cfg.get("ipv6"),
            max_concurrent_requests=int(listen_cfg.get("max_concurrent", 0)),
            shutdown_grace_seconds=float(listen_cfg.get("shutdown_grace_seconds", 1.0)),
            upstream_timeout_seconds=float(upstream_cfg.get("timeout_seconds", 5.0)),
            webserver=WebServerConfig(
                enabled=web_enabled,
                host=str(web_cfg.get("host", "0.0.0.0")),
                port=http_port,
                status_cache_ttl_seconds=float(web_cfg.get("status_cache_ttl_seconds", 1.0)),
            ),
            logging=LoggingConfig(
                level=str(level).lower(),
                stderr=bool(log_cfg.get("stderr", True)),
                file=log_cfg.get("file"),
                buffer_size=buffer_size,
            ),
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
