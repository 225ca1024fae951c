from __future__ import annotations

import ipaddress
import logging
from typing import FrozenSet, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _split_rules(rules: Union[str, Iterable[str], None]) -> List[str]:
    if rules is None:
        return []
    if isinstance(rules, str):
        items = rules.split(",")
    else:
        items = [str(r) for r in rules]
    return [item.strip() for item in items if item and item.strip()]


def _parse_client_ip(ip: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(str(ip).split("%", 1)[0])
    except ValueError:
        return None


class AccessFilter:
    """
    Blacklist of requester addresses built once from configuration.

    Each rule is either a literal IP ("192.168.1.100", "fd00::5") or a CIDR
    subnet ("10.0.0.0/8"). Host bits in a subnet rule are ignored, so
    "10.1.2.3/8" blocks all of 10.0.0.0/8. Malformed rules are logged and
    skipped. The rule set never changes after construction, so lookups need no
    locking.

    Example use:
        >>> acl = AccessFilter("192.168.1.100, 10.0.0.0/8, bogus")
        >>> acl.count()
        2
        >>> acl.is_blocked("10.20.30.40")
        True
        >>> acl.is_blocked("192.168.1.101")
        False
    """

    def __init__(self, rules: Union[str, Iterable[str], None] = None) -> None:
        ips = set()
        nets: List[IPNetwork] = []
        for entry in _split_rules(rules):
            if "/" in entry:
                try:
                    net = ipaddress.ip_network(entry, strict=False)
                except ValueError:
                    logger.warning(
                        "Invalid CIDR notation in blacklist: %s, skipping", entry
                    )
                    continue
                nets.append(net)
                logger.debug("Added subnet to blacklist: %s", net)
                continue

            ip = _parse_client_ip(entry)
            if ip is None:
                logger.warning("Invalid IP address in blacklist: %s, skipping", entry)
                continue
            ips.add(ip)
            logger.debug("Added IP to blacklist: %s", ip)

        self._ips: FrozenSet[IPAddress] = frozenset(ips)
        self._nets: Tuple[IPNetwork, ...] = tuple(nets)

    @property
    def ips(self) -> FrozenSet[IPAddress]:
        return self._ips

    @property
    def subnets(self) -> Tuple[IPNetwork, ...]:
        return self._nets

    def is_blocked(self, ip: str) -> bool:
        """Brief: Return True when ip matches a literal rule or lies in a subnet rule.

        Inputs:
          - ip: Requester address string (IPv4, IPv6, optionally with %zone).

        Outputs:
          - bool: True if blocked. Unparseable addresses are never blocked.

        IPv4-mapped IPv6 addresses (::ffff:a.b.c.d) are also checked against the
        IPv4 rules.
        """

        addr = _parse_client_ip(ip)
        if addr is None:
            return False

        candidates = [addr]
        mapped = getattr(addr, "ipv4_mapped", None)
        if mapped is not None:
            candidates.append(mapped)

        # Exact matches first.
        for cand in candidates:
            if cand in self._ips:
                return True
        for cand in candidates:
            for net in self._nets:
                if cand.version == net.version and cand in net:
                    return True
        return False

    def count(self) -> int:
        """Return the number of literal plus subnet rules."""

        return len(self._ips) + len(self._nets)
