"""初期化完了待ち"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from .constants import INITIALIZATION_POLL_INTERVAL_SECONDS


async def wait_for(
    predicate: Callable[[], bool],
    max_wait_ms: int,
    poll_interval: float = INITIALIZATION_POLL_INTERVAL_SECONDS,
) -> bool:
    """predicate が真になるか max_wait_ms が経過するまで待機する。

    Args:
        predicate: 待機条件
        max_wait_ms: 最大待機時間（ミリ秒）
        poll_interval: ポーリング間隔（秒）

    Returns:
        predicate が真になった場合は True、タイムアウトした場合は False
    """
    deadline = time.monotonic() + max_wait_ms / 1000
    while True:
        if predicate():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(poll_interval, remaining))
