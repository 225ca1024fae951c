"""
Brief: Tests for the discovery request pipeline and UDP listener lifecycle.

Inputs:
  - None

Outputs:
  - None
"""

import json
import socket
import threading

import pytest

from jellyfin_discovery_proxy import address as address_mod
from jellyfin_discovery_proxy.access_control import AccessFilter
from jellyfin_discovery_proxy.cache import IdentityCache
from jellyfin_discovery_proxy.errors import (
    BindError,
    TransportError,
    UpstreamStatusError,
)
from jellyfin_discovery_proxy.servers import discovery as discovery_mod
from jellyfin_discovery_proxy.servers.discovery import (
    IPV4,
    IPV6,
    AddressFamilyContext,
    DiscoveryEngine,
    DiscoveryResponse,
    is_discovery_query,
)
from jellyfin_discovery_proxy.stats import RequestStats
from jellyfin_discovery_proxy.upstream import UpstreamIdentity

IDENTITY = UpstreamIdentity(Id="abc", ServerName="Home")
CLIENT = ("203.0.113.5", 50000)


class FakeSocket:
    """Brief: Records sendto() calls instead of touching the network.

    Inputs:
      - fail: when True, sendto raises OSError.

    Outputs:
      - sent: list of (payload, address) tuples.
    """

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent = []

    def sendto(self, data, addr):
        if self.fail:
            raise OSError("network is unreachable")
        self.sent.append((bytes(data), addr))
        return len(data)


class FakeFetcher:
    def __init__(self, result=IDENTITY):
        self.result = result
        self.calls = []

    def fetch(self, base_url):
        self.calls.append(base_url)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class RecordingLimiter:
    def __init__(self):
        self.acquired = 0
        self.released = 0
        self._lock = threading.Lock()

    def acquire(self):
        with self._lock:
            self.acquired += 1
        return True

    def release(self):
        with self._lock:
            self.released += 1


def _ctx(family=IPV4, server="http://10.8.0.2:8096", advertise="", cache=None):
    return AddressFamilyContext(
        family=family,
        server_url=server,
        advertise_url=advertise,
        cache=cache or IdentityCache(3600, name=family),
    )


def _engine(contexts, blacklist="", fetcher=None, **kwargs):
    kwargs.setdefault("enable_ipv6", False)
    kwargs.setdefault("port", 0)
    return DiscoveryEngine(
        contexts,
        AccessFilter(blacklist),
        RequestStats(),
        fetcher or FakeFetcher(),
        **kwargs,
    )


@pytest.mark.parametrize(
    "payload,expected",
    [
        (b"Who is JellyfinServer?", True),
        (b"who is jellyfinserver?", True),
        (b"WHO IS JELLYFINSERVER?", True),
        (b"Who is JellyfinServer?\n", False),
        (b" Who is JellyfinServer?", False),
        (b"Who is EmbyServer?", False),
        (b"", False),
        (b"\xff\xfe", False),
    ],
)
def test_is_discovery_query(payload, expected):
    assert is_discovery_query(payload) is expected


def test_discovery_response_wire_format():
    """
    Brief: Reply JSON has the exact key order and a null EndpointAddress.

    Inputs:
      - None

    Outputs:
      - None: Asserts serialized bytes
    """
    wire = DiscoveryResponse(Address="http://10.8.0.2:8096", Id="abc", Name="Home").to_wire()
    assert wire == (
        b'{"Address":"http://10.8.0.2:8096","Id":"abc","Name":"Home","EndpointAddress":null}'
    )


def test_literal_ip_advertise_sends_single_response():
    """
    Brief: Cached identity plus literal-IP URL yields exactly one datagram.

    Inputs:
      - primed IPv4 cache, empty blacklist

    Outputs:
      - None: Asserts one datagram with exact payload and stats update
    """
    ctx = _ctx()
    ctx.cache.set(IDENTITY)
    fetcher = FakeFetcher()
    engine = _engine([ctx], fetcher=fetcher)
    sock = FakeSocket()

    sent = engine.handle_request(ctx, CLIENT, sock)

    assert sent == 1
    assert sock.sent == [
        (
            b'{"Address":"http://10.8.0.2:8096","Id":"abc","Name":"Home","EndpointAddress":null}',
            CLIENT,
        )
    ]
    assert fetcher.calls == []
    snap = engine.stats.snapshot()
    assert snap.total_requests == 1
    assert snap.last_request_ip == "203.0.113.5"


def test_blacklisted_client_gets_nothing_and_is_not_counted():
    """
    Brief: Blocked requesters produce zero datagrams and leave stats untouched.

    Inputs:
      - blacklist 10.0.0.0/8, client 10.1.2.3

    Outputs:
      - None: Asserts no sends, no fetch, zero requests
    """
    ctx = _ctx()
    fetcher = FakeFetcher()
    engine = _engine([ctx], blacklist="10.0.0.0/8", fetcher=fetcher)
    sock = FakeSocket()

    assert engine.handle_request(ctx, ("10.1.2.3", 7000), sock) == 0
    assert sock.sent == []
    assert fetcher.calls == []
    assert engine.stats.snapshot().total_requests == 0


def test_upstream_failure_sends_nothing_and_leaves_cache_empty():
    """
    Brief: A 503 from upstream means silence and no cache write.

    Inputs:
      - fetcher raising UpstreamStatusError(503)

    Outputs:
      - None: Asserts zero sends and empty cache
    """
    ctx = _ctx()
    fetcher = FakeFetcher(UpstreamStatusError(503, "http://10.8.0.2:8096/System/Info/Public"))
    engine = _engine([ctx], fetcher=fetcher)
    sock = FakeSocket()

    assert engine.handle_request(ctx, CLIENT, sock) == 0
    assert sock.sent == []
    assert ctx.cache.get() is None
    assert ctx.cache.snapshot().identity is None
    assert fetcher.calls == ["http://10.8.0.2:8096"]
    assert engine.stats.snapshot().total_requests == 1


def test_cache_miss_fetches_once_then_serves_from_cache():
    ctx = _ctx()
    fetcher = FakeFetcher()
    engine = _engine([ctx], fetcher=fetcher)
    sock = FakeSocket()

    assert engine.handle_request(ctx, CLIENT, sock) == 1
    assert engine.handle_request(ctx, ("203.0.113.6", 50001), sock) == 1
    assert fetcher.calls == ["http://10.8.0.2:8096"]
    assert ctx.cache.get() == IDENTITY
    assert len(sock.sent) == 2


def test_hostname_advertise_sends_hostname_then_ip(monkeypatch):
    """
    Brief: Hostname advertise URL produces two datagrams (hostname form, then IP form).

    Inputs:
      - advertise URL http://media.lan:8096, getaddrinfo returning 192.168.1.10

    Outputs:
      - None: Asserts both Address values in order
    """
    monkeypatch.setattr(
        address_mod.socket,
        "getaddrinfo",
        lambda *a, **k: [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("192.168.1.10", 0))],
    )
    ctx = _ctx(advertise="http://media.lan:8096")
    ctx.cache.set(IDENTITY)
    engine = _engine([ctx])
    sock = FakeSocket()

    assert engine.handle_request(ctx, CLIENT, sock) == 2
    addresses = [json.loads(p)["Address"] for p, _ in sock.sent]
    assert addresses == ["http://media.lan:8096", "http://192.168.1.10:8096"]
    assert all(addr == CLIENT for _, addr in sock.sent)


def test_hostname_server_url_without_advertise_also_dual_sends(monkeypatch):
    monkeypatch.setattr(
        address_mod.socket,
        "getaddrinfo",
        lambda *a, **k: [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.8.0.2", 0))],
    )
    ctx = _ctx(server="http://jellyfin.vpn:8096")
    ctx.cache.set(IDENTITY)
    engine = _engine([ctx])
    sock = FakeSocket()

    assert engine.handle_request(ctx, CLIENT, sock) == 2


def test_resolution_failure_degrades_to_single_response(monkeypatch):
    def boom(*a, **k):
        raise socket.gaierror(-2, "Name or service not known")

    monkeypatch.setattr(address_mod.socket, "getaddrinfo", boom)
    ctx = _ctx(advertise="http://media.lan:8096")
    ctx.cache.set(IDENTITY)
    engine = _engine([ctx])
    sock = FakeSocket()

    assert engine.handle_request(ctx, CLIENT, sock) == 1
    assert json.loads(sock.sent[0][0])["Address"] == "http://media.lan:8096"


def test_send_failure_is_logged_not_raised():
    ctx = _ctx()
    ctx.cache.set(IDENTITY)
    engine = _engine([ctx])
    assert engine.handle_request(ctx, CLIENT, FakeSocket(fail=True)) == 0


def test_ipv6_context_falls_back_to_ipv4():
    ctx4 = _ctx()
    engine = _engine([ctx4])
    assert engine.context_for(IPV6) is ctx4
    ctx6 = _ctx(family=IPV6, server="http://[fd00::2]:8096")
    engine = _engine([ctx4, ctx6])
    assert engine.context_for(IPV6) is ctx6


def test_engine_requires_ipv4_context():
    with pytest.raises(ValueError):
        _engine([_ctx(family=IPV6)])


def test_prime_caches_shares_fetch_for_identical_urls():
    """
    Brief: Families with the same server URL share one startup fetch.

    Inputs:
      - two contexts with identical server URLs

    Outputs:
      - None: Asserts a single fetch and both caches populated
    """
    ctx4, ctx6 = _ctx(), _ctx(family=IPV6)
    fetcher = FakeFetcher()
    engine = _engine([ctx4, ctx6], fetcher=fetcher)
    engine.prime_caches()
    assert fetcher.calls == ["http://10.8.0.2:8096"]
    assert ctx4.cache.get() == IDENTITY
    assert ctx6.cache.get() == IDENTITY


def test_prime_caches_fetches_each_distinct_url():
    ctx4 = _ctx()
    ctx6 = _ctx(family=IPV6, server="http://[fd00::2]:8096")
    fetcher = FakeFetcher()
    engine = _engine([ctx4, ctx6], fetcher=fetcher)
    engine.prime_caches()
    assert sorted(fetcher.calls) == ["http://10.8.0.2:8096", "http://[fd00::2]:8096"]


def test_prime_caches_failure_is_not_fatal():
    ctx = _ctx()
    engine = _engine([ctx], fetcher=FakeFetcher(TransportError("refused")))
    engine.prime_caches()
    assert ctx.cache.get() is None


class PerUrlFetcher:
    """Brief: Fetcher whose outcome depends on the requested base URL.

    Inputs:
      - results: mapping of base URL to UpstreamIdentity or exception.

    Outputs:
      - calls: list of requested base URLs.
    """

    def __init__(self, results):
        self.results = results
        self.calls = []

    def fetch(self, base_url):
        self.calls.append(base_url)
        result = self.results[base_url]
        if isinstance(result, Exception):
            raise result
        return result


def test_unreachable_ipv6_upstream_leaves_ipv4_cache_intact():
    """
    Brief: Each family's cache fails independently of the other.

    Inputs:
      - primed IPv4 context, IPv6 context whose upstream raises TransportError

    Outputs:
      - None: Asserts IPv6 silence, IPv4 reply, unchanged IPv4 cache entry
    """
    ctx4 = _ctx()
    ctx6 = _ctx(family=IPV6, server="http://[fd00::2]:8096")
    fetcher = PerUrlFetcher(
        {
            "http://10.8.0.2:8096": IDENTITY,
            "http://[fd00::2]:8096": TransportError("connection refused"),
        }
    )
    engine = _engine([ctx4, ctx6], fetcher=fetcher)
    engine.prime_caches()
    before = ctx4.cache.snapshot()
    assert before.identity == IDENTITY
    assert ctx6.cache.snapshot().identity is None

    sock = FakeSocket()
    assert engine.handle_request(ctx6, ("fd00::50", 50000, 0, 0), sock) == 0
    assert engine.handle_request(ctx4, CLIENT, sock) == 1

    after = ctx4.cache.snapshot()
    assert after.identity == before.identity
    assert after.captured_at == before.captured_at
    assert ctx6.cache.snapshot().identity is None
    assert len(sock.sent) == 1
    assert fetcher.calls.count("http://10.8.0.2:8096") == 1


def test_enable_ipv6_defaults_follow_bind_ip():
    ctx = _ctx()
    wildcard = DiscoveryEngine([ctx], AccessFilter(""), RequestStats(), FakeFetcher())
    assert wildcard.enable_ipv6 is True
    specific = DiscoveryEngine(
        [ctx], AccessFilter(""), RequestStats(), FakeFetcher(), bind_ip="192.168.1.5"
    )
    assert specific.enable_ipv6 is False


def test_loopback_round_trip_and_shutdown():
    """
    Brief: Real UDP listener answers a query and ignores junk, then stops cleanly.

    Inputs:
      - engine bound to 127.0.0.1 on an ephemeral port

    Outputs:
      - None: Asserts reply contents, silence for junk, limiter accounting
    """
    ctx = _ctx()
    limiter = RecordingLimiter()
    engine = _engine(
        [ctx], bind_ip="127.0.0.1", limiter=limiter, poll_interval=0.05, grace_period=1.0
    )
    servers = engine.bind()
    assert len(servers) == 1
    port = servers[0].server_address[1]
    engine.start()
    assert engine.running

    client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    client.settimeout(2.0)
    try:
        client.sendto(b"who is JellyfinServer?", ("127.0.0.1", port))
        data, _ = client.recvfrom(4096)
        body = json.loads(data)
        assert body == {
            "Address": "http://10.8.0.2:8096",
            "Id": "abc",
            "Name": "Home",
            "EndpointAddress": None,
        }

        client.settimeout(0.3)
        client.sendto(b"hello?", ("127.0.0.1", port))
        with pytest.raises(socket.timeout):
            client.recvfrom(4096)
    finally:
        client.close()
        assert engine.wait_idle(2.0)
        engine.stop()

    assert not engine.running
    assert engine.servers == []
    assert limiter.acquired == 1
    assert limiter.released == 1
    assert engine.stats.snapshot().total_requests == 1


def test_bind_conflict_raises_bind_error():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("127.0.0.1", 0))
    port = blocker.getsockname()[1]
    try:
        engine = _engine([_ctx()], bind_ip="127.0.0.1", port=port)
        with pytest.raises(BindError) as excinfo:
            engine.bind()
        assert excinfo.value.family == IPV4
        assert excinfo.value.address == ("127.0.0.1", port)
        assert engine.servers == []
    finally:
        blocker.close()


def test_ipv6_bind_failure_is_only_a_warning(monkeypatch):
    """
    Brief: The optional IPv6 listener failing to bind leaves IPv4 serving.

    Inputs:
      - DiscoveryUDP6Server replaced by a class raising OSError

    Outputs:
      - None: Asserts a single IPv4 listener
    """

    class _NoV6:
        def __init__(self, *a, **k):
            raise OSError("Address family not supported by protocol")

    monkeypatch.setattr(discovery_mod, "DiscoveryUDP6Server", _NoV6)
    engine = _engine([_ctx()], bind_ip="127.0.0.1", enable_ipv6=True)
    try:
        servers = engine.bind()
        assert [s.listener_family for s in servers] == [IPV4]
    finally:
        for s in engine.servers:
            s.server_close()
