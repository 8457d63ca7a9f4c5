"""
連続モニタ（一定間隔で NTPClient.query() を呼び続ける）
- 失敗は致命的にしない: ログに残して次の周期で再試行
- オフセットは簡易2点方式（transmit - 受信時刻）
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from ntp_client import NTPClient
from ntp_errors import NTPError
from report import format_monitor_line

logger = logging.getLogger(__name__)


def run_monitor(
    client: NTPClient,
    interval: float = 5.0,
    count: Optional[int] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    emit: Callable[[str], None] = print,
) -> int:
    """
    count 回（None なら Ctrl+C まで）問い合わせる。成功したサンプル数を返す。
    最後の周期の後は待たない。
    """
    if interval <= 0:
        raise ValueError("interval must be greater than zero")

    emit(f"Starting continuous sync: {', '.join(client.servers)}")
    emit(f"Interval: {interval:g}s")

    done = 0
    ok = 0
    try:
        while count is None or done < count:
            done += 1
            try:
                result = client.query()
            except NTPError as e:
                logger.warning("Monitor query #%d failed: %s", done, e)
                emit(f"[{done}] ✗ Error: {e}")
            else:
                ok += 1
                emit(format_monitor_line(done, result))

            if count is not None and done >= count:
                break
            sleep(interval)
    except KeyboardInterrupt:
        logger.info("Monitor stopped by user after %d queries", done)

    return ok
