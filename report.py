"""
表示用フォーマッタ（QueryResult → 文字列）
- render_default : 人間向けの標準表示
- render_json    : 機械向け JSON
- render_verbose : 4タイムスタンプ・生バイト・ヘッダ全項目の詳細表示
- render_offset  : オフセット（ミリ秒）のみ

出力はしない（print は main / monitor 側）。
"""
from __future__ import annotations

import json
from typing import Any, Dict

from ntp_client import QueryResult
from ntp_parser import (
    NTP_DELTA,
    kiss_code,
    leap_to_text,
    mode_to_text,
    stratum_to_text,
)

RULE = "═" * 70
WARN_OFFSET_MS = 500.0


def _signed(value: float, digits: int) -> str:
    return f"{value:+.{digits}f}"


def render_default(result: QueryResult) -> str:
    tx = result.packet.transmit
    h = result.packet.header
    offset_s = result.offset_ms / 1000.0

    lines = [
        RULE,
        "ChronoNTP TIME SYNC",
        RULE,
        "",
        f"Server:        {result.server_address} ({result.used_server})",
        f"UTC Time:      {tx.iso}",
        f"Local Time:    {tx.local}",
        f"Offset:        {_signed(offset_s, 3)} seconds",
        f"Precision:     2^{h.precision} sec",
        f"Stratum:       {h.stratum}",
    ]
    code = kiss_code(result.packet)
    if code is not None:
        lines.append(f"⚠ Kiss-of-Death: {code}")
    lines.append(RULE)
    return "\n".join(lines) + "\n"


def to_json_dict(result: QueryResult) -> Dict[str, Any]:
    tx = result.packet.transmit
    h = result.packet.header
    return {
        "timestamp": int(tx.timestamp),
        "iso": tx.iso,
        "server": {
            "address": result.server_address,
            "hostname": result.used_server,
            "stratum": h.stratum,
            "referenceId": h.reference_id,
        },
        "offset": round(result.offset_ms, 3),
        "precision": h.precision,
        "version": h.version,
        "attempted": list(result.attempted_servers),
    }


def render_json(result: QueryResult) -> str:
    return json.dumps(to_json_dict(result), indent=2, ensure_ascii=False)


def render_offset(result: QueryResult) -> str:
    return _signed(result.offset_ms, 3)


def render_verbose(result: QueryResult) -> str:
    p = result.packet
    h = p.header
    tx = p.transmit
    raw_tx = result.buffer[40:48]
    m = result.metrics()

    lines = [
        RULE,
        "ChronoNTP TIME - DETAILED REPORT",
        RULE,
        "",
        f"Server: {result.server_address} ({result.used_server})",
        f"Tried:  {', '.join(result.attempted_servers) or result.used_server}",
        "",
        "TIMESTAMPS:",
        f"  Reference: {p.reference.iso}",
        f"  Originate: {p.originate.iso}",
        f"  Receive:   {p.receive.iso}",
        f"  Transmit:  {tx.iso}",
        f"  Client send:    {result.client_send_time.isoformat(timespec='milliseconds')}",
        f"  Client receive: {result.client_receive_time.isoformat(timespec='milliseconds')}",
        "",
        "RAW TRANSMIT TIMESTAMP (Bytes 40-47):",
        f"  Hex: {raw_tx.hex().upper()}",
        f"  Seconds (NTP): {tx.seconds} -> Unix: {tx.seconds - NTP_DELTA}",
        f"  Fraction: 0x{tx.fraction:08X} = {tx.milliseconds:.3f}ms",
        "",
        "PACKET HEADER:",
        f"  Leap Indicator:  {h.leap_indicator} ({leap_to_text(h.leap_indicator)})",
        f"  Version:         {h.version}",
        f"  Mode:            {h.mode} ({mode_to_text(h.mode)})",
        f"  Stratum:         {h.stratum} ({stratum_to_text(h.stratum)})",
        f"  Poll Interval:   2^{h.poll_interval}",
        f"  Precision:       2^{h.precision}",
        f"  Root Delay:      {h.root_delay_seconds * 1000.0:.3f} ms",
        f"  Root Dispersion: {h.root_dispersion_seconds * 1000.0:.3f} ms",
        f"  Reference ID:    {h.reference_id}",
        "",
        "METRICS:",
        f"  Round-trip delay: {m.round_trip_delay_ms:.3f} ms",
        f"  Clock offset:     {_signed(m.clock_offset_ms, 3)} ms (4 timestamps)",
        f"  Clock offset:     {_signed(result.offset_ms, 3)} ms (transmit - receive)",
    ]
    code = kiss_code(p)
    if code is not None:
        lines += ["", f"⚠ Kiss-of-Death from {result.used_server}: {code}"]
    lines += ["", "RAW PACKET:", result.hex_dump.rstrip("\n"), RULE]
    return "\n".join(lines) + "\n"


def format_monitor_line(count: int, result: QueryResult) -> str:
    offset = result.offset_ms
    status = "⚠" if abs(offset) > WARN_OFFSET_MS else "✓"
    return (
        f"[{count}] {status} {result.packet.transmit.iso} | "
        f"Server: {result.used_server} | Offset: {_signed(offset, 0)}ms"
    )


RENDERERS = {
    "default": render_default,
    "json": render_json,
    "verbose": render_verbose,
    "offset": render_offset,
}


def render(result: QueryResult, fmt: str = "default") -> str:
    try:
        renderer = RENDERERS[fmt]
    except KeyError:
        raise ValueError(f"Unknown output format: {fmt}") from None
    return renderer(result)
