import logging
import socket
import socketserver
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel

from ..access_control import AccessFilter
from ..address import is_hostname, resolve_to_ipv4
from ..cache import IdentityCache
from ..errors import BindError, ProxyError, ResolutionError
from ..stats import RequestStats
from ..upstream import UpstreamFetcher, UpstreamIdentity

logger = logging.getLogger("jellyfin_discovery_proxy.discovery")

DISCOVERY_QUERY = "Who is JellyfinServer?"
DISCOVERY_PORT = 7359
RECV_BUFFER_SIZE = 1024
POLL_INTERVAL_SECONDS = 0.5
SHUTDOWN_GRACE_SECONDS = 1.0

IPV4 = "ipv4"
IPV6 = "ipv6"


def is_discovery_query(data: bytes) -> bool:
    """Brief: Case-insensitive exact match of a datagram against the discovery query.

    Inputs:
      - data: Raw datagram payload.

    Outputs:
      - bool: True only for "Who is JellyfinServer?" in any letter case.

    Example:
      >>> is_discovery_query(b"who is jellyfinserver?")
      True
      >>> is_discovery_query(b"Who is JellyfinServer?\\n")
      False
    """

    text = bytes(data).decode("utf-8", errors="replace")
    return text.casefold() == DISCOVERY_QUERY.casefold()


class DiscoveryResponse(BaseModel):
    """Discovery reply payload in the wire format clients expect.

    Example:
      >>> DiscoveryResponse(Address="http://10.0.0.2:8096", Id="abc", Name="Home").to_wire()
      b'{"Address":"http://10.0.0.2:8096","Id":"abc","Name":"Home","EndpointAddress":null}'
    """

    Address: str
    Id: str
    Name: str
    EndpointAddress: None = None

    def to_wire(self) -> bytes:
        return self.model_dump_json().encode("utf-8")


class Limiter(Protocol):
    def acquire(self) -> bool: ...

    def release(self) -> None: ...


@dataclass
class AddressFamilyContext:
    """Per-address-family state: URLs plus the family's own identity cache.

    Inputs:
      - family: "ipv4" or "ipv6".
      - server_url: Upstream base URL used to fetch the identity.
      - advertise_url: URL handed to clients; empty means use server_url.
      - cache: IdentityCache dedicated to this family.
    """

    family: str
    server_url: str
    advertise_url: str
    cache: IdentityCache

    @property
    def address_url(self) -> str:
        return self.advertise_url or self.server_url


class DiscoveryRequestHandler(socketserver.BaseRequestHandler):
    """
    Handles one validated discovery query on its own thread.

    Example use:
        Instantiated by DiscoveryUDPServer for every datagram that passed
        verify_request(); not used directly.
    """

    def handle(self) -> None:
        data, sock = self.request
        server = self.server
        server.engine.handle_request(server.context, self.client_address, sock)


class DiscoveryUDPServer(socketserver.ThreadingUDPServer):
    """ThreadingUDPServer bound to one address family of the engine.

    The serve loop validates each datagram in verify_request() and only then
    spawns a handler thread, so junk traffic never costs a thread.
    """

    allow_reuse_address = False
    daemon_threads = True
    listener_family = IPV4
    max_packet_size = RECV_BUFFER_SIZE

    def __init__(
        self,
        server_address: Tuple[str, int],
        engine: "DiscoveryEngine",
        context: AddressFamilyContext,
    ) -> None:
        self.engine = engine
        self.context = context
        super().__init__(server_address, DiscoveryRequestHandler)

    def verify_request(self, request, client_address) -> bool:
        data, _sock = request
        peer = _format_peer(client_address)
        logger.info(
            "Received discovery request from %s (%d bytes): %r",
            peer,
            len(data),
            bytes(data).decode("utf-8", errors="replace"),
        )
        logger.debug("Message hex dump: %s", bytes(data).hex(" ").upper())
        if is_discovery_query(data):
            return True
        logger.warning("Ignoring unrecognized message from %s", peer)
        logger.debug("Expected %r but got %r", DISCOVERY_QUERY, bytes(data))
        return False

    def process_request(self, request, client_address) -> None:
        self.engine._begin_request()
        try:
            super().process_request(request, client_address)
        except Exception:
            self.engine._end_request()
            raise

    def process_request_thread(self, request, client_address) -> None:
        try:
            super().process_request_thread(request, client_address)
        finally:
            self.engine._end_request()

    def handle_error(self, request, client_address) -> None:
        logger.exception(
            "Unhandled error while processing request from %s",
            _format_peer(client_address),
        )


class DiscoveryUDP6Server(DiscoveryUDPServer):
    """IPv6-only variant so the IPv4 socket can bind the same port separately."""

    address_family = socket.AF_INET6
    listener_family = IPV6

    def server_bind(self) -> None:
        if hasattr(socket, "IPV6_V6ONLY"):
            self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        super().server_bind()


def _format_peer(client_address) -> str:
    try:
        host, port = client_address[0], client_address[1]
    except (TypeError, IndexError):
        return str(client_address)
    if ":" in str(host):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class DiscoveryEngine:
    """Answers discovery queries on behalf of the upstream Jellyfin server.

    Inputs (constructor):
      - contexts: AddressFamilyContext per family ("ipv4" required, "ipv6"
        optional; the IPv6 listener falls back to the IPv4 context).
      - access_filter: AccessFilter consulted before anything else.
      - stats: RequestStats updated once per accepted request.
      - fetcher: UpstreamFetcher used on cache misses.
      - bind_ip: IPv4 address for the mandatory listener.
      - port: UDP port (7359 by default, 0 for an ephemeral port in tests).
      - enable_ipv6: Bind an extra IPv6 listener on [::]. Defaults to True
        when bind_ip is the IPv4 wildcard.
      - limiter: Optional object with acquire()/release() bounding concurrent
        handlers; None means one thread per accepted query without limit.

    Example use:
        >>> engine = DiscoveryEngine([ctx4], AccessFilter(""), RequestStats())  # doctest: +SKIP
        >>> engine.bind()  # doctest: +SKIP
        >>> engine.start()  # doctest: +SKIP
        >>> engine.stop()  # doctest: +SKIP
    """

    def __init__(
        self,
        contexts: List[AddressFamilyContext],
        access_filter: AccessFilter,
        stats: RequestStats,
        fetcher: Optional[UpstreamFetcher] = None,
        *,
        bind_ip: str = "0.0.0.0",
        port: int = DISCOVERY_PORT,
        enable_ipv6: Optional[bool] = None,
        limiter: Optional[Limiter] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        grace_period: float = SHUTDOWN_GRACE_SECONDS,
    ) -> None:
        self.contexts: Dict[str, AddressFamilyContext] = {c.family: c for c in contexts}
        if IPV4 not in self.contexts:
            raise ValueError("an ipv4 AddressFamilyContext is required")
        self.access_filter = access_filter
        self.stats = stats
        self.fetcher = fetcher or UpstreamFetcher()
        self.bind_ip = bind_ip or "0.0.0.0"
        self.port = int(port)
        if enable_ipv6 is None:
            enable_ipv6 = self.bind_ip == "0.0.0.0"
        self.enable_ipv6 = bool(enable_ipv6)
        self.limiter = limiter
        self.poll_interval = float(poll_interval)
        self.grace_period = float(grace_period)

        self.servers: List[DiscoveryUDPServer] = []
        self._threads: List[threading.Thread] = []
        self._inflight = 0
        self._inflight_cond = threading.Condition()

    def context_for(self, family: str) -> AddressFamilyContext:
        return self.contexts.get(family) or self.contexts[IPV4]

    # ------------------------------------------------------------------ #
    # Per-request pipeline
    # ------------------------------------------------------------------ #

    def handle_request(self, ctx: AddressFamilyContext, client_address, sock) -> int:
        """Brief: Run access check, stats, identity lookup and response fan-out.

        Inputs:
          - ctx: AddressFamilyContext of the socket the query arrived on.
          - client_address: (host, port, ...) of the requester.
          - sock: Socket used to send replies.

        Outputs:
          - int: Number of datagrams sent (0 when blocked or the upstream is
            unreachable, 1 or 2 otherwise).
        """

        peer = _format_peer(client_address)
        client_ip = str(client_address[0])
        logger.info("Processing discovery request from %s", peer)

        if self.access_filter.is_blocked(client_ip):
            logger.warning("Ignoring request from blacklisted IP: %s", client_ip)
            return 0

        self.stats.record_request(client_ip)

        identity = self.resolve_identity(ctx)
        if identity is None:
            logger.warning(
                "Not responding to discovery request from %s - server is unreachable",
                peer,
            )
            return 0

        address_url = ctx.address_url
        sent = 0
        if is_hostname(address_url):
            logger.info(
                "Sending dual responses (hostname + IP) for non-Avahi device compatibility"
            )
            if self.send_response(sock, client_address, address_url, identity):
                sent += 1
            try:
                ip_url = resolve_to_ipv4(address_url)
            except ResolutionError as exc:
                logger.warning("Could not resolve hostname %s to IP: %s", address_url, exc)
            else:
                logger.info("Resolved %s to %s, sending second response", address_url, ip_url)
                if self.send_response(sock, client_address, ip_url, identity):
                    sent += 1
        else:
            logger.debug("Single response mode - sending one discovery response")
            if self.send_response(sock, client_address, address_url, identity):
                sent += 1

        logger.debug("Handler completed for %s (%d datagrams)", peer, sent)
        return sent

    def resolve_identity(self, ctx: AddressFamilyContext) -> Optional[UpstreamIdentity]:
        """Brief: Return the cached identity, fetching and caching it on a miss.

        Inputs:
          - ctx: AddressFamilyContext whose cache and server_url are used.

        Outputs:
          - UpstreamIdentity, or None when the upstream fetch failed (the cache
            is left untouched in that case).
        """

        identity = ctx.cache.get()
        if identity is not None:
            snap = ctx.cache.snapshot()
            logger.info("Using cached server info for response")
            logger.debug("Cache hit - age: %.1fs", snap.age_seconds or 0.0)
            return identity

        logger.info("Cache expired or empty, fetching fresh server info from Jellyfin")
        try:
            identity = self.fetcher.fetch(ctx.server_url)
        except ProxyError as exc:
            logger.error("Failed to fetch server info: %s", exc)
            logger.debug("Fetch error type: %s", type(exc).__name__)
            return None

        ctx.cache.set(identity)
        logger.info("Successfully updated cache with fresh server info")
        return identity

    def send_response(
        self, sock, client_address, address_url: str, identity: UpstreamIdentity
    ) -> bool:
        """Send one discovery reply datagram; failures are logged, never raised."""

        response = DiscoveryResponse(
            Address=address_url, Id=identity.id, Name=identity.name
        )
        payload = response.to_wire()
        logger.debug("JSON response content: %s", payload.decode("utf-8"))
        peer = _format_peer(client_address)
        try:
            written = sock.sendto(payload, client_address)
        except OSError as exc:
            logger.error("Error sending response to %s: %s", peer, exc)
            return False
        logger.info(
            "Sent discovery response to %s | Server: %s | Address: %s",
            peer,
            identity.name,
            address_url,
        )
        logger.debug("Successfully sent %s bytes to %s", written, peer)
        return True

    # ------------------------------------------------------------------ #
    # Startup helpers
    # ------------------------------------------------------------------ #

    def prime_caches(self) -> None:
        """Brief: Fetch the upstream identity once per distinct server URL.

        Inputs:
          - None.

        Outputs:
          - None. Families sharing a server URL share one fetch; failures are
            logged as warnings and retried lazily by the request handler.
        """

        by_url: Dict[str, List[AddressFamilyContext]] = {}
        for ctx in self.contexts.values():
            by_url.setdefault(ctx.server_url, []).append(ctx)

        for url, group in by_url.items():
            labels = "/".join(c.family for c in group)
            try:
                identity = self.fetcher.fetch(url)
            except ProxyError as exc:
                logger.warning("Could not fetch %s server info at startup: %s", labels, exc)
                logger.warning(
                    "Will try again when %s discovery requests are received", labels
                )
                continue
            logger.info(
                "Successfully fetched %s server info - ID: %s, Name: %s",
                labels,
                identity.id,
                identity.name,
            )
            for ctx in group:
                ctx.cache.set(identity)

    def bind(self) -> List[DiscoveryUDPServer]:
        """Brief: Create the UDP listeners (IPv6 optional, IPv4 mandatory).

        Inputs:
          - None.

        Outputs:
          - List of bound servers.

        Raises:
          - BindError: when the IPv4 listener cannot be bound. Any IPv6 listener
            already created is closed first.
        """

        servers: List[DiscoveryUDPServer] = []
        if self.enable_ipv6:
            addr6 = ("::", self.port)
            try:
                srv6 = DiscoveryUDP6Server(addr6, self, self.context_for(IPV6))
            except OSError as exc:
                logger.warning("UDP6 not available on port %d: %s", self.port, exc)
            else:
                servers.append(srv6)
                logger.info(
                    "Successfully bound to UDP6 [::]:%d for discovery requests",
                    srv6.server_address[1],
                )

        addr4 = (self.bind_ip, self.port)
        try:
            srv4 = DiscoveryUDPServer(addr4, self, self.context_for(IPV4))
        except OSError as exc:
            for srv in servers:
                srv.server_close()
            if isinstance(exc, PermissionError):
                logger.error(
                    "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges.",
                    self.bind_ip,
                    self.port,
                )
            raise BindError(IPV4, addr4, str(exc)) from exc
        servers.append(srv4)
        logger.info(
            "Successfully bound to UDP4 %s:%d for discovery requests",
            srv4.server_address[0],
            srv4.server_address[1],
        )

        self.servers = servers
        logger.debug("Total active UDP listeners: %d", len(servers))
        return servers

    # ------------------------------------------------------------------ #
    # Run loop and shutdown
    # ------------------------------------------------------------------ #

    def start(self) -> List[threading.Thread]:
        """Start one serve loop thread per bound listener (binding first if needed)."""

        if not self.servers:
            self.bind()
        threads = []
        for srv in self.servers:
            name = f"discovery-udp-{srv.listener_family}"
            t = threading.Thread(
                target=srv.serve_forever,
                kwargs={"poll_interval": self.poll_interval},
                name=name,
                daemon=True,
            )
            t.start()
            logger.debug("Started listener thread %s", name)
            threads.append(t)
        self._threads = threads
        return threads

    def stop(self, grace_period: Optional[float] = None) -> None:
        """Brief: Stop serve loops, let in-flight handlers finish, close sockets.

        Inputs:
          - grace_period: Seconds to wait for in-flight handlers; defaults to
            the engine's configured grace period.

        Outputs:
          - None. Handlers still running after the grace period are abandoned
            (they run on daemon threads).
        """

        wait = self.grace_period if grace_period is None else float(grace_period)
        for srv in self.servers:
            if self._threads:
                try:
                    srv.shutdown()
                except Exception:
                    logger.exception("Error while shutting down UDP listener")
        for t in self._threads:
            t.join(timeout=max(self.poll_interval * 4, 1.0))

        if not self.wait_idle(wait):
            logger.warning(
                "%d discovery handlers still running after %.1fs grace period",
                self.inflight,
                wait,
            )

        logger.info("Closing UDP listeners")
        for srv in self.servers:
            try:
                srv.server_close()
            except Exception:
                logger.exception("Error while closing UDP listener socket")
        self.servers = []
        self._threads = []

    @property
    def running(self) -> bool:
        """True while at least one serve loop thread is alive."""

        return any(t.is_alive() for t in self._threads)

    @property
    def inflight(self) -> int:
        with self._inflight_cond:
            return self._inflight

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no handler is running; returns False on timeout."""

        with self._inflight_cond:
            return self._inflight_cond.wait_for(lambda: self._inflight == 0, timeout)

    def _begin_request(self) -> None:
        if self.limiter is not None:
            self.limiter.acquire()
        with self._inflight_cond:
            self._inflight += 1

    def _end_request(self) -> None:
        with self._inflight_cond:
            self._inflight -= 1
            self._inflight_cond.notify_all()
        if self.limiter is not None:
            self.limiter.release()
