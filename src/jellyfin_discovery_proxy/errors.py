"""Exception taxonomy for the discovery proxy.

Per-request errors (transport, status, decode, resolution) are raised by the
leaf components and handled by the discovery request handler, which logs them
and sends nothing. BindError and ConfigError are only raised during startup.
"""

from __future__ import annotations

from typing import Optional


class ProxyError(Exception):
    """Base class for all discovery proxy errors."""


class TransportError(ProxyError):
    """The upstream identity endpoint could not be reached (connect/timeout)."""


class UpstreamStatusError(ProxyError):
    """Brief: Upstream answered with a non-200 HTTP status.

    Inputs:
      - status_code: HTTP status returned by the upstream server.
      - url: Requested URL, for log messages.
    """

    def __init__(self, status_code: int, url: str = "") -> None:
        super().__init__(f"HTTP request to {url or 'upstream'} returned status {status_code}")
        self.status_code = int(status_code)
        self.url = url


class DecodeError(ProxyError):
    """The upstream body was not a JSON object carrying the identity fields."""


class ResolutionError(ProxyError):
    """A hostname could not be resolved to a non-loopback IPv4 address."""


class BindError(ProxyError):
    """Brief: A UDP listener socket could not be created or bound.

    Inputs:
      - family: Address family label ("ipv4" or "ipv6").
      - address: (host, port) tuple that failed to bind.
      - reason: Optional underlying error text.
    """

    def __init__(
        self, family: str, address: tuple, reason: Optional[str] = None
    ) -> None:
        host, port = address[0], address[1]
        msg = f"failed to bind {family} UDP listener on {host}:{port}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.family = family
        self.address = address


class ConfigError(ProxyError):
    """Configuration file or environment values are invalid."""
