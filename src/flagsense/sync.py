"""設定スナップショットの同期"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable, Mapping
from typing import Any

from . import metrics
from .constants import CONFIG_BASE_URL, REFRESH_INTERVAL_SECONDS
from .log import get_logger
from .models import ConfigSnapshot
from .platform import HeadlessPlatform, PlatformAdapter
from .telemetry import TelemetryBuffer
from .transport import CONFIG_RETRY_POLICY, ResilientRequestClient, RetryPolicy

logger = get_logger(__name__)

_REQUIRED_FIELDS = ("segments", "flags", "experiments")


class ConfigSyncManager:
    """現在の設定スナップショットを保持し、サービスから更新を取得する。

    スナップショットは不変で、更新時は新しいオブジェクトへ差し替える。
    同時実行の制御は fetch_latest() の間隔ガードのみで行う。
    """

    def __init__(
        self,
        client: ResilientRequestClient,
        sdk_id: str,
        environment: str,
        telemetry: TelemetryBuffer | None = None,
        *,
        config_base_url: str = CONFIG_BASE_URL,
        refresh_interval: float = REFRESH_INTERVAL_SECONDS,
        retry_policy: RetryPolicy = CONFIG_RETRY_POLICY,
        platform: PlatformAdapter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._url = f"{config_base_url}{sdk_id}/{environment}"
        self._telemetry = telemetry
        self._refresh_interval = refresh_interval
        self._retry_policy = retry_policy
        self._platform: PlatformAdapter = platform or HeadlessPlatform()
        self._clock = clock

        self._snapshot = ConfigSnapshot.empty()
        self._last_successful_call_on: float | None = None
        self._task: asyncio.Task[None] | None = None
        self._pending_fetches: set[asyncio.Task[None]] = set()
        self._initialization_completed = False

    @property
    def snapshot(self) -> ConfigSnapshot:
        return self._snapshot

    @property
    def last_updated_on(self) -> int:
        return self._snapshot.last_updated_on

    def initialization_complete(self) -> bool:
        """初期化済みか判定する。オフライン時は待たずに True を返す。

        一度 True を返した後は False に戻らない。
        """
        if not self._initialization_completed:
            self._initialization_completed = (
                self._snapshot.initialized or not self._platform.is_online()
            )
        return self._initialization_completed

    def _recently_synced(self) -> bool:
        if not self._snapshot.initialized or self._last_successful_call_on is None:
            return False
        return self._clock() - self._last_successful_call_on < self._refresh_interval

    async def fetch_latest(self) -> None:
        """最新の設定を取得してスナップショットへマージする。

        直近 refresh_interval 以内に成功していれば何もしない。
        """
        if self._recently_synced():
            return

        result = await self._client.get_json(self._url, self._retry_policy)
        if result.error is not None:
            metrics.config_fetch_total.add(1, {"result": "error"})
            logger.warning(
                "failed to fetch configuration",
                error=str(result.error),
                status_code=result.error.status_code,
            )
            return
        data = result.value
        if not isinstance(data, Mapping):
            metrics.config_fetch_total.add(1, {"result": "invalid"})
            logger.warning("configuration response is not an object")
            return

        self._last_successful_call_on = self._clock()
        self._apply(data)
        config = data.get("config")
        if self._telemetry is not None and isinstance(config, Mapping):
            self._telemetry.set_config(config)

    def _apply(self, data: Mapping[str, Any]) -> None:
        last_updated_on = data.get("lastUpdatedOn")
        if not last_updated_on or any(data.get(f) is None for f in _REQUIRED_FIELDS):
            metrics.config_fetch_total.add(1, {"result": "incomplete"})
            logger.debug("configuration response incomplete, keeping snapshot")
            return
        if isinstance(last_updated_on, bool) or not isinstance(last_updated_on, (int, float)):
            metrics.config_fetch_total.add(1, {"result": "invalid"})
            logger.warning(
                "configuration response has non-numeric lastUpdatedOn",
                last_updated_on=repr(last_updated_on),
            )
            return
        if not all(isinstance(data[f], Mapping) for f in _REQUIRED_FIELDS):
            metrics.config_fetch_total.add(1, {"result": "invalid"})
            logger.warning("configuration response has malformed sections")
            return
        self._snapshot = self._snapshot.merge(data)
        metrics.config_fetch_total.add(1, {"result": "ok"})
        logger.debug("configuration updated", last_updated_on=self._snapshot.last_updated_on)

    def trigger_refresh(self) -> None:
        """fetch_latest() をバックグラウンドで実行する。"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running event loop, skipping refresh")
            return
        task = loop.create_task(self.fetch_latest())
        self._pending_fetches.add(task)
        task.add_done_callback(self._pending_fetches.discard)

    def start(self) -> None:
        """即時取得と定期更新を開始し、環境シグナルを購読する。"""
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._refresh_loop())
        self._platform.on_visibility_change(self._on_visibility_change)
        self._platform.on_connectivity_change(self._on_connectivity_change)
        if self._platform.needs_page_lifecycle_fallback:
            self._platform.on_page_show(self.trigger_refresh)

    async def close(self) -> None:
        """定期更新タスクを停止する。"""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def _on_visibility_change(self, visible: bool) -> None:
        if visible:
            self.trigger_refresh()

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.trigger_refresh()

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await self.fetch_latest()
            except Exception as e:
                logger.error("configuration refresh error", error=str(e))
            await asyncio.sleep(self._refresh_interval)
