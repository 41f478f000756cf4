"""ホストアプリケーションへ公開する Flagsense サービス"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from . import metrics
from .constants import (
    AUTH_TYPE_VALUE,
    DEFAULT_ENVIRONMENT,
    DEFAULT_EVENT_VALUE,
    EMPTY_VARIANT_KEY,
    ENVIRONMENTS,
    Headers,
)
from .exceptions import ConfigurationError, FlagsenseError
from .lifecycle import wait_for
from .log import configure_logging, get_logger
from .models import FlagRef, UserContext, Variant
from .platform import HeadlessPlatform, PlatformAdapter
from .resolver import VariantResolver
from .settings import FlagsenseSettings, load_settings
from .sync import ConfigSyncManager
from .telemetry import TelemetryBuffer
from .transport import ResilientRequestClient, RetryPolicy

logger = get_logger(__name__)


class FlagsenseService:
    """設定同期・バリアント解決・テレメトリーをまとめたサービス。

    構築時の認証情報チェック以外の失敗はホストへ送出せず、
    既定バリアントへのフォールバックまたは破棄として扱う。
    """

    def __init__(
        self,
        sdk_id: str,
        sdk_secret: str,
        environment: str | None = None,
        user: UserContext | None = None,
        device_info: Mapping[str, Any] | None = None,
        app_info: Mapping[str, Any] | None = None,
        *,
        settings: FlagsenseSettings | None = None,
        platform: PlatformAdapter | None = None,
    ) -> None:
        if not sdk_id or not sdk_secret:
            raise ConfigurationError("Empty sdk params not allowed")

        self._settings = settings or load_settings()
        if self._settings.log.enabled:
            configure_logging(self._settings.log.level, self._settings.log.format)
        self.sdk_id = sdk_id
        self.environment = environment if environment in ENVIRONMENTS else DEFAULT_ENVIRONMENT
        if environment and environment != self.environment:
            logger.warning(
                "unknown environment, using default",
                environment=environment,
                default=DEFAULT_ENVIRONMENT,
            )
        self._user = user or UserContext()
        self._max_initialization_wait_ms = self._settings.initialization.max_wait_ms
        self._platform: PlatformAdapter = platform or HeadlessPlatform()

        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            Headers.AUTH_TYPE: AUTH_TYPE_VALUE,
            Headers.SDK_ID: sdk_id,
            Headers.SDK_SECRET: sdk_secret,
        }
        endpoints = self._settings.endpoints
        retry = self._settings.retry
        client = ResilientRequestClient(headers, timeout_seconds=endpoints.timeout_seconds)

        self._telemetry = TelemetryBuffer(
            client,
            self.environment,
            self._user,
            device_info,
            app_info,
            settings=self._settings.telemetry,
            events_base_url=endpoints.events_base_url,
            retry_policy=RetryPolicy(retry.events.max_retries, retry.events.delay_seconds),
            platform=self._platform,
        )
        self._sync = ConfigSyncManager(
            client,
            sdk_id,
            self.environment,
            self._telemetry,
            config_base_url=endpoints.config_base_url,
            refresh_interval=self._settings.sync.refresh_interval_seconds,
            retry_policy=RetryPolicy(retry.config.max_retries, retry.config.delay_seconds),
            platform=self._platform,
        )
        self._resolver = VariantResolver(lambda: self._sync.snapshot)

    @property
    def user(self) -> UserContext:
        return self._user

    @property
    def telemetry(self) -> TelemetryBuffer:
        return self._telemetry

    @property
    def sync(self) -> ConfigSyncManager:
        return self._sync

    def start(self) -> None:
        """実行中のイベントループ上で同期と定期送信を開始する。"""
        self._sync.start()
        self._telemetry.start()

    async def close(self) -> None:
        """バックグラウンドの同期・送信を停止する。"""
        await self._sync.close()
        await self._telemetry.close()

    def initialization_complete(self) -> bool:
        return self._sync.initialization_complete()

    def wait_for_initialization_complete(self) -> asyncio.Task[bool]:
        """初期化完了またはタイムアウトで完了するタスクを返す。"""
        return asyncio.get_running_loop().create_task(self._wait_for_initialization())

    async def wait_for_initialization_complete_async(self) -> bool:
        """初期化完了またはタイムアウトまで待機する。"""
        return await self._wait_for_initialization()

    async def _wait_for_initialization(self) -> bool:
        return await wait_for(
            self.initialization_complete,
            self._max_initialization_wait_ms,
            self._settings.initialization.poll_interval_seconds,
        )

    def set_max_initialization_wait_time(self, time_in_millis: int) -> None:
        self._max_initialization_wait_ms = time_in_millis

    def set_fs_user(self, user_id: str | None, attributes: Mapping[str, Any] | None = None) -> None:
        self._user = UserContext(user_id=user_id, attributes=dict(attributes or {}))
        self._telemetry.set_user(self._user)

    def set_device_info(self, device_info: Mapping[str, Any] | None) -> None:
        self._telemetry.set_device_info(device_info)

    def set_app_info(self, app_info: Mapping[str, Any] | None) -> None:
        self._telemetry.set_app_info(app_info)

    def get_variation(self, flag_ref: FlagRef) -> Variant:
        """フラグのバリアントを返す。評価に失敗した場合は既定バリアントを返す。"""
        if not isinstance(flag_ref, FlagRef):
            logger.warning("invalid flag reference", flag_ref=repr(flag_ref))
            metrics.evaluations_total.add(1, {"outcome": "fallback"})
            return Variant(key=None)
        default = flag_ref.default_variant
        try:
            variant = self._resolver.evaluate(
                self._user.user_id, self._user.attributes, flag_ref.flag_id
            )
        except Exception as e:
            self._log_fallback(flag_ref, e)
            metrics.evaluations_total.add(1, {"outcome": "fallback"})
            self._telemetry.add_evaluation_count(
                flag_ref.flag_id, default.key or EMPTY_VARIANT_KEY
            )
            return default
        metrics.evaluations_total.add(1, {"outcome": "resolved"})
        self._telemetry.add_evaluation_count(flag_ref.flag_id, variant.key or EMPTY_VARIANT_KEY)
        return variant

    def record_event(
        self,
        flag_ref: FlagRef,
        event_name: str,
        value: Any = DEFAULT_EVENT_VALUE,
        event_type: str | None = None,
        event_attributes: Mapping[str, Any] | None = None,
    ) -> None:
        """実験に宣言されたイベントを記録する。それ以外は何もしない。"""
        if not isinstance(flag_ref, FlagRef) or not event_name:
            return
        if not self._sync.snapshot.initialized:
            return
        if value is None:
            value = DEFAULT_EVENT_VALUE
        try:
            experiment = self._resolver.experiment(flag_ref.flag_id)
        except FlagsenseError as e:
            logger.debug("cannot record event", flag_id=flag_ref.flag_id, error=str(e))
            return
        if experiment is None or event_name not in experiment.event_names:
            return

        variant_key = self._get_variant_key(flag_ref)
        self._telemetry.record_experiment_event(
            flag_ref.flag_id, variant_key, event_name, value, event_type, event_attributes
        )

    def _get_variant_key(self, flag_ref: FlagRef) -> str:
        try:
            variant = self._resolver.evaluate(
                self._user.user_id, self._user.attributes, flag_ref.flag_id
            )
        except Exception:
            return flag_ref.default_key or EMPTY_VARIANT_KEY
        return variant.key or EMPTY_VARIANT_KEY

    def _log_fallback(self, flag_ref: FlagRef, error: Exception) -> None:
        if isinstance(error, FlagsenseError):
            logger.debug(
                "flag evaluation fell back to default",
                flag_id=flag_ref.flag_id,
                code=error.code,
                error=str(error),
            )
        else:
            logger.warning(
                "unexpected error during flag evaluation",
                flag_id=flag_ref.flag_id,
                error=repr(error),
            )
