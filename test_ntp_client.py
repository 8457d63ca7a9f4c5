# test_ntp_client.py
# ネットワークには出ない: socket.getaddrinfo / socket.socket を偽物に差し替える
import socket
import time
from datetime import datetime, timezone

import pytest

import ntp_client
from conftest import build_packet, to_ntp
from ntp_client import NTPClient
from ntp_errors import (
    AllServersUnreachable,
    MalformedPacket,
    NTPTimeout,
    TransportError,
)


def server_reply(offset_s=0.0, stratum=2, ref_id=0xD8EF230C):
    """要求パケットを受け取り、offset_s だけ進んだ時計のサーバー応答を返す"""
    def _reply(request):
        now = time.time() + offset_s
        return build_packet(
            stratum=stratum,
            ref_id=ref_id,
            reference=to_ntp(now - 30),
            originate=(int.from_bytes(request[40:44], "big"), int.from_bytes(request[44:48], "big")),
            receive=to_ntp(now),
            transmit=to_ntp(now),
        )
    return _reply


class FakeSocket:
    def __init__(self, network, family, kind):
        self.network = network
        self.family = family
        self.kind = kind
        self.timeout = None
        self.dest = None
        self.closed = False
        network.sockets.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def settimeout(self, value):
        self.timeout = value

    def sendto(self, data, addr):
        self.dest = addr
        self.network.requests.append((addr[0], bytes(data)))
        if self.network.behaviors.get(addr[0]) == "send_error":
            raise OSError(101, "Network is unreachable")
        return len(data)

    def recvfrom(self, bufsize):
        strays = self.network.strays.get(self.dest[0])
        if strays:
            return strays.pop(0)
        behavior = self.network.behaviors.get(self.dest[0], "timeout")
        if behavior == "timeout":
            raise socket.timeout("timed out")
        if behavior == "recv_error":
            raise ConnectionRefusedError(111, "Connection refused")
        if callable(behavior):
            return behavior(self.network.requests[-1][1]), self.dest
        return behavior, self.dest

    def close(self):
        self.closed = True


class FakeNetwork:
    def __init__(self):
        self.hosts = {}
        self.behaviors = {}
        self.sockets = []
        self.requests = []
        # ip -> 本物の応答より先に届く (data, addr) のリスト
        self.strays = {}

    def add(self, host, ip, behavior):
        self.hosts[host] = ip
        self.behaviors[ip] = behavior

    def getaddrinfo(self, host, port, family=0, kind=0, *args):
        if any(not label or len(label) > 63 for label in host.rstrip(".").split(".")):
            raise UnicodeError("encoding with 'idna' codec failed (UnicodeError: label empty or too long)")
        if host not in self.hosts:
            raise socket.gaierror(-2, "Name or service not known")
        return [(socket.AF_INET, socket.SOCK_DGRAM, 17, "", (self.hosts[host], port))]

    def socket(self, family=socket.AF_INET, kind=socket.SOCK_DGRAM, *args):
        return FakeSocket(self, family, kind)


@pytest.fixture
def network(monkeypatch):
    net = FakeNetwork()
    monkeypatch.setattr(ntp_client.socket, "getaddrinfo", net.getaddrinfo)
    monkeypatch.setattr(ntp_client.socket, "socket", net.socket)
    return net


def test_primary_success(network):
    network.add("primary.example", "192.0.2.1", server_reply())
    client = NTPClient("primary.example", timeout=0.5, fallback_servers=["backup.example"])

    result = client.query()

    assert result.used_server == "primary.example"
    assert result.server_address == "192.0.2.1"
    assert result.attempted_servers == ("primary.example",)
    assert len(result.buffer) == 48
    assert result.client_send_time <= result.client_receive_time
    assert result.client_receive_time.tzinfo is not None

    assert len(network.sockets) == 1
    s = network.sockets[0]
    assert s.closed
    assert s.timeout == 0.5
    assert s.dest == ("192.0.2.1", 123)

    request = network.requests[0][1]
    assert len(request) == 48
    assert request[0] == 0x23


def test_fallback_after_timeout(network):
    network.add("primary.example", "192.0.2.1", "timeout")
    network.add("backup.example", "192.0.2.2", server_reply())
    client = NTPClient("primary.example", timeout=0.1, fallback_servers=["backup.example"])

    result = client.query()

    assert result.used_server == "backup.example"
    assert result.used_server in client.servers
    assert result.server_address == "192.0.2.2"
    assert result.attempted_servers == ("primary.example", "backup.example")
    assert [s.closed for s in network.sockets] == [True, True]


def test_each_attempt_builds_fresh_request(network):
    network.add("primary.example", "192.0.2.1", "timeout")
    network.add("backup.example", "192.0.2.2", server_reply())
    NTPClient("primary.example", timeout=0.1, fallback_servers=["backup.example"]).query()

    (ip1, req1), (ip2, req2) = network.requests
    assert (ip1, ip2) == ("192.0.2.1", "192.0.2.2")
    assert req1[44:48] != req2[44:48]
    assert len(network.sockets) == 2
    assert network.sockets[0] is not network.sockets[1]


def test_all_servers_time_out(network):
    hosts = ["a.example", "b.example", "c.example"]
    for i, host in enumerate(hosts):
        network.add(host, f"192.0.2.{i + 1}", "timeout")
    client = NTPClient(hosts[0], timeout=0.1, fallback_servers=hosts[1:])

    with pytest.raises(AllServersUnreachable) as excinfo:
        client.query()

    err = excinfo.value
    assert err.attempted == tuple(hosts)
    assert isinstance(err.last_error, NTPTimeout)
    assert err.last_error.host == "c.example"
    for host in hosts:
        assert host in str(err)
    assert len(network.sockets) == 3
    assert all(s.closed for s in network.sockets)


def test_dns_failure_falls_back(network):
    network.add("backup.example", "192.0.2.2", server_reply())
    client = NTPClient("missing.invalid", timeout=0.1, fallback_servers=["backup.example"])

    result = client.query()

    assert result.used_server == "backup.example"
    assert result.attempted_servers == ("missing.invalid", "backup.example")
    # DNS で失敗したホストにはソケットを開かない
    assert len(network.sockets) == 1


def test_unencodable_hostname_falls_back(network):
    network.add("backup.example", "192.0.2.2", server_reply())
    client = NTPClient("bad..host", timeout=0.1, fallback_servers=["backup.example"])

    result = client.query()

    assert result.used_server == "backup.example"
    assert result.attempted_servers == ("bad..host", "backup.example")
    assert len(network.sockets) == 1


def test_unencodable_hostname_alone_is_unreachable(network):
    client = NTPClient("x" * 64 + ".example", timeout=0.1, fallback_servers=[])

    with pytest.raises(AllServersUnreachable) as excinfo:
        client.query()

    assert isinstance(excinfo.value.last_error, TransportError)
    assert "DNS resolution failed" in str(excinfo.value.last_error)


def test_datagram_from_other_source_is_ignored(network):
    network.add("primary.example", "192.0.2.1", server_reply())
    forged = build_packet(transmit=to_ntp(0))
    network.strays["192.0.2.1"] = [(forged, ("203.0.113.9", 123))]
    client = NTPClient("primary.example", timeout=1.0, fallback_servers=[])

    result = client.query()

    assert result.server_address == "192.0.2.1"
    assert result.buffer != forged
    assert network.strays["192.0.2.1"] == []


def test_only_foreign_datagrams_time_out(network):
    forged = build_packet()
    network.add("primary.example", "192.0.2.1", "timeout")
    network.add("backup.example", "192.0.2.2", server_reply())
    network.strays["192.0.2.1"] = [(forged, ("203.0.113.9", 123))]
    client = NTPClient("primary.example", timeout=1.0, fallback_servers=["backup.example"])

    result = client.query()

    assert result.used_server == "backup.example"
    assert network.sockets[0].closed


def test_transport_errors_close_socket(network):
    network.add("send.example", "192.0.2.1", "send_error")
    network.add("recv.example", "192.0.2.2", "recv_error")
    client = NTPClient("send.example", timeout=0.1, fallback_servers=["recv.example"])

    with pytest.raises(AllServersUnreachable) as excinfo:
        client.query()

    assert isinstance(excinfo.value.last_error, TransportError)
    assert excinfo.value.last_error.host == "recv.example"
    assert len(network.sockets) == 2
    assert all(s.closed for s in network.sockets)


def test_malformed_reply_advances_to_next_host(network):
    network.add("short.example", "192.0.2.1", b"\x24" * 20)
    network.add("backup.example", "192.0.2.2", server_reply())
    client = NTPClient("short.example", timeout=0.1, fallback_servers=["backup.example"])

    result = client.query()

    assert result.used_server == "backup.example"
    # 同じホストへの再試行はしない
    assert [ip for ip, _ in network.requests] == ["192.0.2.1", "192.0.2.2"]
    assert network.sockets[0].closed


def test_malformed_reply_only_host(network):
    network.add("short.example", "192.0.2.1", b"\x24" * 47)
    client = NTPClient("short.example", timeout=0.1, fallback_servers=[])

    with pytest.raises(AllServersUnreachable) as excinfo:
        client.query()

    assert excinfo.value.attempted == ("short.example",)
    assert isinstance(excinfo.value.last_error, MalformedPacket)
    assert network.sockets[0].closed


def test_kiss_of_death_is_returned_not_raised(network):
    network.add("busy.example", "192.0.2.1", server_reply(stratum=0, ref_id=int.from_bytes(b"RATE", "big")))
    client = NTPClient("busy.example", timeout=0.1, fallback_servers=["backup.example"])

    result = client.query()

    assert result.used_server == "busy.example"
    assert result.packet.header.stratum == 0
    assert result.packet.header.reference_id == "RATE"


def test_get_offset_uses_transmit_minus_receive(network):
    network.add("fast.example", "192.0.2.1", server_reply(offset_s=10.0))
    client = NTPClient("fast.example", timeout=0.5, fallback_servers=[])

    offset_ms = client.get_offset()

    assert offset_ms == pytest.approx(10_000.0, abs=500.0)


def test_get_time_returns_server_transmit_time(network):
    network.add("fast.example", "192.0.2.1", server_reply(offset_s=3600.0))
    client = NTPClient("fast.example", timeout=0.5, fallback_servers=[])

    server_time = client.get_time()

    assert server_time.tzinfo == timezone.utc
    expected = datetime.now(timezone.utc).timestamp() + 3600.0
    assert server_time.timestamp() == pytest.approx(expected, abs=5.0)


def test_result_metrics_use_recorded_send_time(network):
    network.add("fast.example", "192.0.2.1", server_reply(offset_s=2.0))
    result = NTPClient("fast.example", timeout=0.5, fallback_servers=[]).query()

    m = result.metrics()

    assert m.clock_offset == pytest.approx(2.0, abs=0.5)
    assert 0.0 <= m.round_trip_delay < 0.5
    assert result.offset_ms == pytest.approx(m.clock_offset_ms, abs=500.0)
    assert result.packet.originate.to_bytes() == network.requests[0][1][40:48]


def test_client_configuration():
    client = NTPClient("a.example", port=1123, timeout=2, fallback_servers=["a.example", "b.example", " ", "b.example"])

    assert client.server == "a.example"
    assert client.servers == ("a.example", "b.example")
    assert client.fallback_servers == ("b.example",)
    assert client.port == 1123
    assert client.timeout == 2.0

    other = client.with_server("b.example")
    assert other.servers == ("b.example", "a.example")
    assert client.servers == ("a.example", "b.example")


def test_client_defaults():
    client = NTPClient()
    assert client.server == ntp_client.DEFAULT_SERVER
    assert client.port == 123
    assert client.timeout == 5.0
    assert client.fallback_servers == ntp_client.DEFAULT_FALLBACK_SERVERS


@pytest.mark.parametrize("kwargs", [
    {"server": ""},
    {"server": "a.example", "timeout": 0},
    {"server": "a.example", "timeout": -1},
    {"server": "a.example", "port": 0},
])
def test_client_rejects_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        NTPClient(**kwargs)


def test_module_level_helpers(network):
    network.add("primary.example", "192.0.2.1", server_reply(offset_s=1.0))

    result = ntp_client.query("primary.example", fallback_servers=(), timeout=0.2)
    assert result.used_server == "primary.example"
    assert ntp_client.get_offset("primary.example", fallback_servers=()) == pytest.approx(1000.0, abs=500.0)
