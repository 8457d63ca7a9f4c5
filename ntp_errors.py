"""
NTP 問い合わせで使う例外
- MalformedPacket       : 応答パケットが短すぎる / 解析できない
- NTPTimeout            : タイムアウト内に応答なし
- TransportError        : ソケット作成・送受信・DNS解決の失敗
- AllServersUnreachable : 全サーバーで失敗（最後のエラーと試行ホスト一覧を保持）

Kiss-of-Death（stratum 0）は例外にしない。呼び出し側が stratum / reference_id を見て判断する。
"""
from __future__ import annotations

from typing import Optional, Sequence


class NTPError(Exception):
    """Base class for every error raised by the NTP client."""


class MalformedPacket(NTPError):
    pass


class NTPTimeout(NTPError):
    def __init__(self, host: str, timeout: float):
        super().__init__(f"NTP request to {host} timed out after {timeout:g}s")
        self.host = host
        self.timeout = timeout


class TransportError(NTPError):
    def __init__(self, host: str, reason: str):
        super().__init__(f"NTP transport error for {host}: {reason}")
        self.host = host
        self.reason = reason


class AllServersUnreachable(NTPError):
    def __init__(self, attempted: Sequence[str], last_error: Optional[BaseException]):
        self.attempted = tuple(attempted)
        self.last_error = last_error
        hosts = ", ".join(self.attempted) or "-"
        msg = f"All NTP servers unreachable (tried: {hosts})"
        if last_error is not None:
            msg += f"; last error: {last_error}"
        super().__init__(msg)
