# conftest.py
from __future__ import annotations

import struct
from datetime import datetime, timedelta, timezone

import pytest

from ntp_client import QueryResult
from ntp_parser import NTP_DELTA, parse_response


def to_ntp(unix_seconds: float):
    """Unix 秒 → (NTP 秒, 小数部)"""
    whole = int(unix_seconds // 1)
    frac = int(round((unix_seconds - whole) * 2**32)) & 0xFFFFFFFF
    return whole + NTP_DELTA, frac


def build_packet(
    *,
    li: int = 0,
    version: int = 4,
    mode: int = 4,
    stratum: int = 2,
    poll: int = 6,
    precision: int = -20,
    root_delay: int = 0x00000800,
    root_dispersion: int = 0x00001000,
    ref_id: int = 0xD8EF230C,
    reference=(0, 0),
    originate=(0, 0),
    receive=(0, 0),
    transmit=(0, 0),
) -> bytes:
    first = (li << 6) | (version << 3) | mode
    return struct.pack(
        "!B B b b 11I",
        first, stratum, poll, precision,
        root_delay, root_dispersion, ref_id,
        *reference, *originate, *receive, *transmit,
    )


@pytest.fixture
def packet_builder():
    return build_packet


@pytest.fixture
def ntp_time():
    return to_ntp


@pytest.fixture
def sample_result() -> QueryResult:
    """送信 1000.000s / サーバー受信・送信 1000.100s / 受信 1000.050s の固定結果"""
    data = build_packet(
        stratum=1,
        ref_id=0x47505300,  # "GPS\0"
        reference=to_ntp(990.0),
        originate=to_ntp(1000.0),
        receive=to_ntp(1000.1),
        transmit=to_ntp(1000.1),
    )
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    return QueryResult(
        buffer=data,
        packet=parse_response(data),
        server_address="192.0.2.10",
        used_server="time.example.org",
        client_send_time=epoch + timedelta(seconds=1000.0),
        client_receive_time=epoch + timedelta(seconds=1000.05),
        attempted_servers=("down.example.org", "time.example.org"),
    )
