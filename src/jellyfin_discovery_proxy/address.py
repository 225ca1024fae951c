"""Advertise-address classification helpers.

Brief:
  Some discovery clients (TV and embedded apps without mDNS/Avahi support)
  cannot use a hostname in the discovery payload. These helpers decide whether
  an advertise URL carries a hostname and, when it does, produce an equivalent
  URL whose host is a literal IPv4 address.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import urllib.parse
from typing import Optional

from .errors import ResolutionError

logger = logging.getLogger(__name__)


def _split_url(url: str) -> Optional[urllib.parse.SplitResult]:
    try:
        parsed = urllib.parse.urlsplit(str(url))
    except ValueError:
        return None
    if not parsed.hostname:
        return None
    return parsed


def is_hostname(url: str) -> bool:
    """Brief: Return True when the URL's host is a name rather than an IP literal.

    Inputs:
      - url: Absolute URL such as "http://media.lan:8096".

    Outputs:
      - bool: False for IPv4/IPv6 literals and for URLs that cannot be parsed
        or carry no host; True otherwise.

    Example:
      >>> is_hostname("http://media.lan:8096")
      True
      >>> is_hostname("http://192.168.1.10:8096")
      False
      >>> is_hostname("http://[fd00::10]:8096")
      False
    """

    parsed = _split_url(url)
    if parsed is None:
        return False
    try:
        ipaddress.ip_address(parsed.hostname.split("%", 1)[0])
    except ValueError:
        return True
    return False


def resolve_to_ipv4(url: str) -> str:
    """Brief: Rewrite a hostname URL so its host is the first non-loopback IPv4.

    Inputs:
      - url: URL whose host component should be resolved.

    Outputs:
      - str: Same URL with the host replaced by a dotted-quad address; the
        scheme, port, userinfo, path and query are preserved.

    Raises:
      - ResolutionError: URL has no host, the lookup fails, or no
        non-loopback IPv4 address is returned.

    Example:
      >>> resolve_to_ipv4("http://media.lan:8096")  # doctest: +SKIP
      'http://192.168.1.10:8096'
    """

    parsed = _split_url(url)
    if parsed is None:
        raise ResolutionError(f"cannot parse host from URL {url!r}")
    host = parsed.hostname
    try:
        port = parsed.port
    except ValueError as exc:
        raise ResolutionError(f"invalid port in URL {url!r}") from exc

    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError, OSError) as exc:
        raise ResolutionError(f"lookup of {host} failed: {exc}") from exc

    chosen = None
    for family, _type, _proto, _canon, sockaddr in infos:
        if family != socket.AF_INET:
            continue
        try:
            ip = ipaddress.IPv4Address(sockaddr[0])
        except ValueError:
            continue
        if ip.is_loopback:
            logger.debug("Skipping loopback address %s for %s", ip, host)
            continue
        chosen = ip
        break

    if chosen is None:
        raise ResolutionError(f"no IPv4 address found for hostname {host}")

    netloc = str(chosen)
    if port is not None:
        netloc = f"{netloc}:{port}"
    userinfo, sep, _ = parsed.netloc.rpartition("@")
    if sep:
        netloc = f"{userinfo}@{netloc}"
    return urllib.parse.urlunsplit(parsed._replace(netloc=netloc))
