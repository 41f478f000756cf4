"""評価カウント・カスタムイベントのバッファリングと送信"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import uuid
from collections.abc import Mapping
from typing import Any

from . import metrics
from .constants import DEVICE_EVENTS_PATH, EVENTS_BASE_URL, SDK_TYPE
from .log import get_logger
from .models import CustomEvent, EvaluationRecord, UserContext, to_key_value_list
from .platform import HeadlessPlatform, PlatformAdapter
from .settings import TelemetrySection
from .transport import EVENTS_RETRY_POLICY, NO_RETRY, ResilientRequestClient, RetryPolicy

logger = get_logger(__name__)


class TelemetryBuffer:
    """容量制限付きキューにテレメトリーを蓄積し、定期的にサービスへ送信する。

    キューの取り出しは get_request_body() 内で同期的に行うため、
    同一イベントループ上の他のコルーチンから見てアトミックである。
    送信の成否にかかわらず取り出したレコードは再投入しない。
    """

    def __init__(
        self,
        client: ResilientRequestClient,
        environment: str,
        user: UserContext | None = None,
        device_info: Mapping[str, Any] | None = None,
        app_info: Mapping[str, Any] | None = None,
        *,
        settings: TelemetrySection | None = None,
        events_base_url: str = EVENTS_BASE_URL,
        retry_policy: RetryPolicy = EVENTS_RETRY_POLICY,
        platform: PlatformAdapter | None = None,
    ) -> None:
        self._settings = settings or TelemetrySection()
        self._client = client
        self._url = events_base_url + DEVICE_EVENTS_PATH
        self._retry_policy = retry_policy
        self._platform: PlatformAdapter = platform or HeadlessPlatform()

        self.capture_device_events = self._settings.capture_device_events
        self.capture_flag_evaluations = self._settings.capture_flag_evaluations
        self._variations: list[EvaluationRecord] = []
        self._events: list[CustomEvent] = []
        self._envelope: dict[str, Any] = {
            "machineId": str(uuid.uuid4()),
            "sdkType": SDK_TYPE,
            "environment": environment,
            "userId": "",
            "userAttributes": [],
            "deviceInfo": to_key_value_list(device_info),
            "appInfo": to_key_value_list(app_info),
        }
        if user is not None:
            self.set_user(user)

        self._task: asyncio.Task[None] | None = None
        self._pending_sends: set[asyncio.Task[Any]] = set()

    @property
    def capacity(self) -> int:
        return self._settings.event_capacity

    @property
    def variation_count(self) -> int:
        return len(self._variations)

    @property
    def event_count(self) -> int:
        return len(self._events)

    def set_user(self, user: UserContext) -> None:
        self._envelope["userId"] = str(user.user_id) if user.user_id else ""
        self._envelope["userAttributes"] = to_key_value_list(user.attributes)

    def set_device_info(self, device_info: Mapping[str, Any] | None) -> None:
        self._envelope["deviceInfo"] = to_key_value_list(device_info)

    def set_app_info(self, app_info: Mapping[str, Any] | None) -> None:
        self._envelope["appInfo"] = to_key_value_list(app_info)

    def set_config(self, config: Mapping[str, Any] | None) -> None:
        """同期した設定の config でキャプチャ設定を上書きする。

        真偽値以外の値は無視する。
        """
        if not config:
            return
        device_events = config.get("captureDeviceEvents")
        if isinstance(device_events, bool):
            self.capture_device_events = device_events
        evaluations = config.get("captureDeviceEvaluations")
        if isinstance(evaluations, bool):
            self.capture_flag_evaluations = evaluations

    def add_evaluation_count(self, flag_id: str, variant_key: str) -> None:
        """フラグ評価を記録する。容量超過時は破棄する。"""
        if not self.capture_flag_evaluations:
            return
        if len(self._variations) >= self.capacity:
            metrics.telemetry_dropped_total.add(1, {"queue": "variations"})
            logger.debug("variation buffer full, dropping record", flag_id=flag_id)
            return
        self._variations.append(EvaluationRecord(flag_id=flag_id, variant_key=variant_key))

    def record_experiment_event(
        self,
        flag_key: str,
        flag_variation: str,
        event_name: str,
        event_value: Any = 1,
        event_type: str | None = None,
        event_attributes: Mapping[str, Any] | None = None,
    ) -> None:
        """実験イベントを記録する。容量超過時は破棄する。"""
        if not self.capture_device_events:
            return
        if len(self._events) >= self.capacity:
            metrics.telemetry_dropped_total.add(1, {"queue": "events"})
            logger.debug("event buffer full, dropping event", flag_key=flag_key, event_name=event_name)
            return
        self._events.append(
            CustomEvent(
                flag_key=flag_key,
                flag_variation=flag_variation,
                event_name=event_name,
                event_value=event_value,
                event_type=event_type,
                event_attributes=dict(event_attributes or {}),
            )
        )

    def get_request_body(self) -> dict[str, Any] | None:
        """送信ボディを組み立てる。送信不要な場合は None を返す。

        キャプチャ対象のキューはここで空になる。
        """
        if not (self.capture_device_events or self.capture_flag_evaluations):
            return None
        if not self._platform.is_online():
            return None

        body = copy.deepcopy(self._envelope)
        if self.capture_flag_evaluations:
            drained_variations, self._variations = self._variations, []
            body["variations"] = [r.to_dict() for r in drained_variations]
        else:
            body["variations"] = []
        if self.capture_device_events:
            drained_events, self._events = self._events, []
            body["events"] = [e.to_dict() for e in drained_events]
        else:
            body["events"] = []

        if not body["variations"] and not body["events"]:
            return None

        if not self.capture_device_events:
            body["userAttributes"] = []
            body["deviceInfo"] = []
            body["appInfo"] = []
        return body

    async def send_events(self) -> None:
        """バッファを送信する（リトライあり）。"""
        body = self.get_request_body()
        if body is None:
            return
        result = await self._client.post_json(self._url, body, self._retry_policy)
        if result.error is not None:
            metrics.flush_total.add(1, {"path": "timer", "result": "error"})
            logger.warning(
                "failed to send telemetry",
                error=str(result.error),
                status_code=result.error.status_code,
                variations=len(body["variations"]),
                events=len(body["events"]),
            )
            return
        metrics.flush_total.add(1, {"path": "timer", "result": "ok"})

    def send_events_on_hide(self) -> None:
        """ホスト終了直前の送信。結果は待たず、リトライもしない。"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running event loop, skipping flush on hide")
            return
        body = self.get_request_body()
        if body is None:
            return
        task = loop.create_task(self._client.post_json(self._url, body, NO_RETRY))
        self._pending_sends.add(task)
        task.add_done_callback(self._on_hide_send_done)
        metrics.flush_total.add(1, {"path": "hide", "result": "issued"})

    def _on_hide_send_done(self, task: asyncio.Task[Any]) -> None:
        self._pending_sends.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("flush on hide failed", error=str(exc))
            return
        result = task.result()
        if result.error is not None:
            logger.debug("flush on hide failed", error=str(result.error))

    def start(self) -> None:
        """定期送信タスクを開始し、終了フックを登録する。"""
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._flush_loop())
        self._platform.on_visibility_change(self._on_visibility_change)
        self._platform.on_before_unload(self.send_events_on_hide)
        if self._platform.needs_page_lifecycle_fallback:
            self._platform.on_page_hide(self.send_events_on_hide)

    async def close(self) -> None:
        """定期送信タスクを停止する。"""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def _on_visibility_change(self, visible: bool) -> None:
        if not visible:
            self.send_events_on_hide()

    async def _flush_loop(self) -> None:
        await asyncio.sleep(self._settings.flush_initial_delay_seconds)
        while True:
            try:
                await self.send_events()
            except Exception as e:
                logger.error("telemetry flush error", error=str(e))
            await asyncio.sleep(self._settings.flush_interval_seconds)
