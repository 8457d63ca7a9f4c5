"""
NTP クライアントモジュール（RFC 5905 / フォールバック対応版）

NTPClient.query()      -> QueryResult（生パケット・解析結果・実際に応答したサーバー・送受信時刻）
NTPClient.get_time()   -> datetime (tz-aware, UTC) サーバーの送信タイムスタンプ(t3)
NTPClient.get_offset() -> float ミリ秒 = t3(ms) - クライアント受信時刻(ms)（簡易2点方式）

4タイムスタンプ方式の offset/delay は QueryResult.metrics()（ntp_parser.compute_metrics）で求める。

サーバーは primary → fallback の順に1台ずつ試す（並列問い合わせはしない）。
1回の試行ごとにソケットを開き、成功/タイムアウト/エラーのいずれでも必ず閉じる。
"""
from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence, Tuple

from ntp_errors import AllServersUnreachable, NTPError, NTPTimeout, TransportError
from ntp_parser import (
    MODE_SERVER,
    NTP_PORT,
    NTPMetrics,
    NTPPacket,
    build_request,
    compute_metrics,
    hex_dump,
    parse_response,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "pool.ntp.org"
DEFAULT_FALLBACK_SERVERS: Tuple[str, ...] = ("time.google.com",)
DEFAULT_TIMEOUT = 5.0  # 秒

RECV_BUFFER_SIZE = 512


@dataclass(frozen=True)
class QueryResult:
    buffer: bytes
    packet: NTPPacket
    server_address: str
    used_server: str
    client_send_time: datetime
    client_receive_time: datetime
    attempted_servers: Tuple[str, ...] = ()

    @property
    def hex_dump(self) -> str:
        return hex_dump(self.buffer)

    @property
    def server_time(self) -> datetime:
        return self.packet.transmit.date

    @property
    def offset_ms(self) -> float:
        """簡易2点方式: transmit(ms) - クライアント受信時刻(ms)"""
        return self.packet.transmit.timestamp - self.client_receive_time.timestamp() * 1000.0

    def metrics(self) -> NTPMetrics:
        """4タイムスタンプ方式（実際に記録した送信時刻を T1 に使う）"""
        return compute_metrics(self.packet, self.client_send_time, self.client_receive_time)


def _unique_servers(server: str, fallback_servers: Iterable[str]) -> Tuple[str, ...]:
    servers = []
    for host in (server, *fallback_servers):
        host = (host or "").strip()
        if host and host not in servers:
            servers.append(host)
    return tuple(servers)


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class NTPClient:
    """
    設定（サーバー一覧・ポート・タイムアウト）はインスタンス生成後に変更しない。
    呼び出し間で状態を持たないので、複数スレッドから query() を呼んでもよい。
    """

    def __init__(
        self,
        server: str = DEFAULT_SERVER,
        port: int = NTP_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        fallback_servers: Sequence[str] = DEFAULT_FALLBACK_SERVERS,
    ):
        if not (server or "").strip():
            raise ValueError("NTP server must not be empty")
        if timeout is None or timeout <= 0:
            raise ValueError("timeout must be greater than zero")
        if not 0 < int(port) < 65536:
            raise ValueError(f"invalid port: {port}")

        self._servers = _unique_servers(server, fallback_servers or ())
        self._port = int(port)
        self._timeout = float(timeout)

    @property
    def server(self) -> str:
        return self._servers[0]

    @property
    def fallback_servers(self) -> Tuple[str, ...]:
        return self._servers[1:]

    @property
    def servers(self) -> Tuple[str, ...]:
        return self._servers

    @property
    def port(self) -> int:
        return self._port

    @property
    def timeout(self) -> float:
        return self._timeout

    def with_server(self, server: str) -> "NTPClient":
        """primary だけ差し替えた新しいクライアントを返す（フォールバックは引き継ぐ）"""
        return NTPClient(
            server=server,
            port=self._port,
            timeout=self._timeout,
            fallback_servers=[h for h in self._servers if h != server],
        )

    def query(self) -> QueryResult:
        """
        primary → fallback の順に問い合わせ、最初に成功した結果を返す。
        全滅した場合は AllServersUnreachable（最後のエラーと試行ホスト一覧付き）。
        """
        attempted = []
        last_error: Optional[NTPError] = None

        for host in self._servers:
            attempted.append(host)
            try:
                result = self._query_host(host)
            except NTPError as e:
                last_error = e
                logger.warning("NTP query failed: server=%s error=%s", host, e)
                continue

            if host != self.server:
                logger.info("NTP fallback used: %s (primary %s failed)", host, self.server)
            return replace(result, attempted_servers=tuple(attempted))

        raise AllServersUnreachable(attempted, last_error) from last_error

    def get_time(self) -> datetime:
        """サーバーの送信タイムスタンプ(t3)を UTC の datetime で返す"""
        return self.query().server_time

    def get_offset(self) -> float:
        """簡易2点方式のオフセット（ミリ秒）"""
        return self.query().offset_ms

    def _resolve(self, host: str):
        try:
            infos = socket.getaddrinfo(host, self._port, socket.AF_INET, socket.SOCK_DGRAM)
        except (OSError, UnicodeError) as e:
            # IDNA で表せないホスト名（空ラベル・63文字超）は UnicodeError になる
            raise TransportError(host, f"DNS resolution failed ({e})") from e
        if not infos:
            raise TransportError(host, "DNS resolution returned no address")

        family, _socktype, _proto, _canonname, sockaddr = infos[0]
        return family, sockaddr

    def _query_host(self, host: str) -> QueryResult:
        """1台分の試行。要求パケット（ノンス）は試行ごとに作り直す。"""
        family, sockaddr = self._resolve(host)
        request = build_request()
        logger.debug("NTP request: server=%s addr=%s timeout=%.3fs", host, sockaddr, self._timeout)

        try:
            with socket.socket(family, socket.SOCK_DGRAM) as s:
                s.settimeout(self._timeout)
                deadline = time.monotonic() + self._timeout
                t1 = time.time()
                s.sendto(request, sockaddr)
                data, addr = s.recvfrom(RECV_BUFFER_SIZE)
                # 問い合わせ先以外から届いたデータグラムは捨てて待ち続ける
                while addr[0] != sockaddr[0]:
                    logger.debug("Ignoring datagram from %s (expected %s)", addr[0], sockaddr[0])
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise socket.timeout("timed out")
                    s.settimeout(remaining)
                    data, addr = s.recvfrom(RECV_BUFFER_SIZE)
                t4 = time.time()
        except socket.timeout as e:
            raise NTPTimeout(host, self._timeout) from e
        except OSError as e:
            raise TransportError(host, str(e) or e.__class__.__name__) from e

        # MalformedPacket はそのまま上げる（同じホストへの再試行はしない）
        packet = parse_response(data)

        if packet.header.mode != MODE_SERVER:
            logger.debug("Unexpected NTP mode %d from %s", packet.header.mode, host)
        if packet.originate.to_bytes() != request[40:48]:
            logger.debug("Originate timestamp from %s does not echo our request", host)

        return QueryResult(
            buffer=bytes(data),
            packet=packet,
            server_address=addr[0],
            used_server=host,
            client_send_time=_utc(t1),
            client_receive_time=_utc(t4),
        )


def query(host: str = DEFAULT_SERVER, **kwargs) -> QueryResult:
    return NTPClient(server=host, **kwargs).query()


def get_time(host: str = DEFAULT_SERVER, **kwargs) -> datetime:
    return NTPClient(server=host, **kwargs).get_time()


def get_offset(host: str = DEFAULT_SERVER, **kwargs) -> float:
    return NTPClient(server=host, **kwargs).get_offset()
