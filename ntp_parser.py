"""
NTP パケットコーデック（RFC 5905 §7.3 / 48byte ヘッダ）

- build_request()   : クライアントモード(3)の要求パケットを生成（送信タイムスタンプにノンス付き）
- parse_response()  : 48byte 以上の応答を PacketHeader + 4つのタイムスタンプに分解
- compute_metrics() : 4タイムスタンプ方式の往復遅延 / クロックオフセット算出

I/O は一切行わない（ソケットは ntp_client 側）。

パケット構造:
  0      LI(2) VN(3) Mode(3)
  1      Stratum
  2      Poll (signed, 2^x 秒)
  3      Precision (signed, 2^x 秒)
  4-7    Root Delay (16.16 固定小数点)
  8-11   Root Dispersion (16.16 固定小数点)
  12-15  Reference ID
  16-23  Reference Timestamp
  24-31  Originate Timestamp
  32-39  Receive Timestamp
  40-47  Transmit Timestamp
"""
from __future__ import annotations

import math
import random
import string
import struct
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from ntp_errors import MalformedPacket

NTP_DELTA = 2208988800  # 1900年〜1970年の秒数
NTP_PORT = 123
PACKET_SIZE = 48
MODE_CLIENT = 3
MODE_SERVER = 4
REQUEST_FIRST_BYTE = 0x23  # LI=0, VN=4, Mode=3

_FRACTION_SCALE = 2**32
_SHORT_SCALE = 2**16
_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# 1 + 1 + 1 + 1 + 11*4 = 48 bytes
_PACKET_FORMAT = "!B B b b 11I"
_TIMESTAMP_FORMAT = "!II"

ClockReading = Union[datetime, float, int]


@dataclass(frozen=True)
class ParsedTimestamp:
    """
    64bit NTP タイムスタンプ（32bit 秒 + 32bit 小数部）の解析結果。

    timestamp は unix_seconds*1000 + milliseconds を一度だけ加算した値。
    milliseconds は先に丸めない。
    """
    seconds: int
    fraction: int

    @property
    def unix_seconds(self) -> int:
        return self.seconds - NTP_DELTA

    @property
    def milliseconds(self) -> float:
        return self.fraction / _FRACTION_SCALE * 1000.0

    @property
    def timestamp(self) -> float:
        """Unix エポックからのミリ秒"""
        return self.unix_seconds * 1000 + self.milliseconds

    def to_seconds(self) -> float:
        return self.unix_seconds + self.fraction / _FRACTION_SCALE

    @property
    def date(self) -> datetime:
        # fromtimestamp() は 1970 年以前で失敗する環境があるので timedelta で組み立てる
        micros = self.fraction * 1_000_000 / _FRACTION_SCALE
        return _UNIX_EPOCH + timedelta(seconds=self.unix_seconds, microseconds=micros)

    @property
    def iso(self) -> str:
        return self.date.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    @property
    def local(self) -> str:
        return self.date.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")

    def to_bytes(self) -> bytes:
        return encode_timestamp(self)


@dataclass(frozen=True)
class PacketHeader:
    leap_indicator: int
    version: int
    mode: int
    stratum: int
    poll_interval: int
    precision: int
    root_delay: int
    root_dispersion: int
    reference_id_raw: int
    reference_id: str

    @property
    def root_delay_seconds(self) -> float:
        return self.root_delay / _SHORT_SCALE

    @property
    def root_dispersion_seconds(self) -> float:
        return self.root_dispersion / _SHORT_SCALE


@dataclass(frozen=True)
class NTPPacket:
    header: PacketHeader
    reference: ParsedTimestamp
    originate: ParsedTimestamp
    receive: ParsedTimestamp
    transmit: ParsedTimestamp
    # compute_metrics() / with_metrics() を呼ぶまでは None
    round_trip_delay: Optional[float] = None
    clock_offset: Optional[float] = None


@dataclass(frozen=True)
class NTPMetrics:
    round_trip_delay: float
    clock_offset: float

    @property
    def round_trip_delay_ms(self) -> float:
        return self.round_trip_delay * 1000.0

    @property
    def clock_offset_ms(self) -> float:
        return self.clock_offset * 1000.0


def build_request(now: Optional[float] = None, rng: Optional[random.Random] = None) -> bytes:
    """
    クライアントモードの要求パケット（48byte）を生成。
    送信タイムスタンプの小数部は乱数ノンス（なりすまし対策用で精度的な意味は無い）。
    """
    if now is None:
        now = time.time()
    nonce = (rng or random).getrandbits(32)
    ntp_seconds = (math.floor(now) + NTP_DELTA) & 0xFFFFFFFF

    packet = bytearray(PACKET_SIZE)
    packet[0] = REQUEST_FIRST_BYTE
    struct.pack_into(_TIMESTAMP_FORMAT, packet, 40, ntp_seconds, nonce)
    return bytes(packet)


def parse_timestamp(data: bytes, offset: int) -> ParsedTimestamp:
    seconds, fraction = struct.unpack_from(_TIMESTAMP_FORMAT, data, offset)
    return ParsedTimestamp(seconds, fraction)


def encode_timestamp(ts: ParsedTimestamp) -> bytes:
    return struct.pack(_TIMESTAMP_FORMAT, ts.seconds, ts.fraction)


def parse_response(data: bytes) -> NTPPacket:
    """
    NTP 応答を解析。48byte 未満なら MalformedPacket。
    48byte を超える部分（拡張フィールド / MAC）は無視する。
    """
    if data is None or len(data) < PACKET_SIZE:
        size = 0 if data is None else len(data)
        raise MalformedPacket(
            f"Invalid NTP packet: minimum {PACKET_SIZE} bytes required, got {size}"
        )

    try:
        unpacked = struct.unpack(_PACKET_FORMAT, bytes(data[:PACKET_SIZE]))
    except struct.error as e:
        raise MalformedPacket("Failed to unpack NTP response") from e

    first, stratum, poll, precision = unpacked[0:4]
    root_delay, root_dispersion, ref_id = unpacked[4:7]

    header = PacketHeader(
        leap_indicator=(first >> 6) & 0b11,
        version=(first >> 3) & 0b111,
        mode=first & 0b111,
        stratum=stratum,
        poll_interval=poll,
        precision=precision,
        root_delay=root_delay,
        root_dispersion=root_dispersion,
        reference_id_raw=ref_id,
        reference_id=format_reference_id(ref_id, stratum),
    )

    return NTPPacket(
        header=header,
        reference=ParsedTimestamp(unpacked[7], unpacked[8]),
        originate=ParsedTimestamp(unpacked[9], unpacked[10]),
        receive=ParsedTimestamp(unpacked[11], unpacked[12]),
        transmit=ParsedTimestamp(unpacked[13], unpacked[14]),
    )


_PRINTABLE = set(string.ascii_letters + string.digits + string.punctuation + " ")


def format_reference_id(ref_id: int, stratum: int) -> str:
    """
    Reference ID を stratum に応じて文字列化。
      stratum 0  : Kiss-of-Death コード（"DENY", "RATE" など）。読めなければ "KISS"
      stratum 1  : 参照時計コード（ASCII、NUL 詰めを除去。例 "GPS"）
      stratum 2+ : 上位サーバーの IPv4 アドレス（IPv6 はハッシュ）を "0x%08X" で
    """
    raw = struct.pack("!I", ref_id & 0xFFFFFFFF)
    if stratum == 0:
        code = raw.rstrip(b"\x00").decode("ascii", errors="replace")
        if code and all(ch in _PRINTABLE for ch in code):
            return code
        return "KISS"
    if stratum == 1:
        return raw.replace(b"\x00", b"").decode("ascii", errors="replace")
    return f"0x{ref_id:08X}"


def is_kiss_of_death(packet: NTPPacket) -> bool:
    return packet.header.stratum == 0


def kiss_code(packet: NTPPacket) -> Optional[str]:
    if not is_kiss_of_death(packet):
        return None
    return packet.header.reference_id


def _clock_seconds(value: ClockReading) -> float:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    return float(value)


def compute_metrics(
    packet: NTPPacket,
    client_send_time: ClockReading,
    client_receive_time: ClockReading,
) -> NTPMetrics:
    """
    RFC 5905 の4タイムスタンプ方式:
      T1 = client_send_time, T2 = receive, T3 = transmit, T4 = client_receive_time
      delay  = (T4 - T1) - (T3 - T2)
      offset = ((T2 - T1) + (T3 - T4)) / 2
    offset > 0 はローカル時計がサーバーより遅れていることを意味する。
    """
    t1 = _clock_seconds(client_send_time)
    t2 = packet.receive.to_seconds()
    t3 = packet.transmit.to_seconds()
    t4 = _clock_seconds(client_receive_time)

    delay = (t4 - t1) - (t3 - t2)
    offset = ((t2 - t1) + (t3 - t4)) / 2.0
    return NTPMetrics(round_trip_delay=delay, clock_offset=offset)


def with_metrics(
    packet: NTPPacket,
    client_send_time: ClockReading,
    client_receive_time: ClockReading,
) -> NTPPacket:
    m = compute_metrics(packet, client_send_time, client_receive_time)
    return replace(packet, round_trip_delay=m.round_trip_delay, clock_offset=m.clock_offset)


def hex_dump(data: bytes) -> str:
    """16byte/行の hex dump（オフセット + ASCII 列付き）"""
    lines = []
    for i in range(0, len(data), 16):
        chunk = bytes(data[i:i + 16])
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        ascii_part = "".join(chr(b) if 0x20 <= b <= 0x7E else "." for b in chunk)
        lines.append(f"{i:04d}: {hex_part:<48} {ascii_part}")
    return "\n".join(lines) + ("\n" if lines else "")


def leap_to_text(leap: int) -> str:
    return {
        0: "no warning",
        1: "last minute has 61 seconds",
        2: "last minute has 59 seconds",
        3: "alarm condition (clock not synchronized)",
    }.get(leap, "unknown")


def mode_to_text(mode: int) -> str:
    return {
        0: "unspecified",
        1: "symmetric active",
        2: "symmetric passive",
        3: "client",
        4: "server",
        5: "broadcast",
        6: "reserved for NTP control messages",
        7: "reserved for private use",
    }.get(mode, "unknown")


def stratum_to_text(stratum: int) -> str:
    if stratum == 0:
        return "unspecified or kiss-of-death"
    if stratum == 1:
        return "primary reference"
    if stratum < 16:
        return "secondary reference"
    if stratum == 16:
        return "unsynchronized"
    return "reserved"
