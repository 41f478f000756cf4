"""SDK ID ごとのサービスレジストリ"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

from .models import FlagRef, UserContext
from .platform import PlatformAdapter
from .service import FlagsenseService
from .settings import FlagsenseSettings


class ServiceRegistry:
    """SDK ID とサービスインスタンスの対応を保持する。

    同じ SDK ID で 2 回目以降に呼ばれた場合は既存インスタンスを返し、再初期化しない。
    """

    def __init__(self) -> None:
        self._services: dict[str, FlagsenseService] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self,
        sdk_id: str,
        sdk_secret: str,
        environment: str | None = None,
        user_id: str | None = None,
        attributes: Mapping[str, Any] | None = None,
        device_info: Mapping[str, Any] | None = None,
        app_info: Mapping[str, Any] | None = None,
        *,
        settings: FlagsenseSettings | None = None,
        platform: PlatformAdapter | None = None,
    ) -> FlagsenseService:
        with self._lock:
            service = self._services.get(sdk_id)
            if service is None:
                service = FlagsenseService(
                    sdk_id,
                    sdk_secret,
                    environment,
                    UserContext(user_id=user_id, attributes=dict(attributes or {})),
                    device_info,
                    app_info,
                    settings=settings,
                    platform=platform,
                )
                service.start()
                self._services[sdk_id] = service
            return service

    def get(self, sdk_id: str) -> FlagsenseService | None:
        with self._lock:
            return self._services.get(sdk_id)

    def remove(self, sdk_id: str) -> FlagsenseService | None:
        """レジストリから削除する。停止は呼び出し側で close() すること。"""
        with self._lock:
            return self._services.pop(sdk_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._services)


default_registry = ServiceRegistry()


def create_service(
    sdk_id: str,
    sdk_secret: str,
    environment: str | None = None,
    user_id: str | None = None,
    attributes: Mapping[str, Any] | None = None,
    device_info: Mapping[str, Any] | None = None,
    app_info: Mapping[str, Any] | None = None,
    *,
    settings: FlagsenseSettings | None = None,
    platform: PlatformAdapter | None = None,
) -> FlagsenseService:
    """サービスを取得または生成する。実行中のイベントループ内で呼び出すこと。"""
    return default_registry.get_or_create(
        sdk_id,
        sdk_secret,
        environment,
        user_id,
        attributes,
        device_info,
        app_info,
        settings=settings,
        platform=platform,
    )


def flag(flag_id: str, default_key: str | None = None, default_value: Any = None) -> FlagRef:
    """フラグ参照を生成する。"""
    return FlagRef(flag_id=flag_id, default_key=default_key, default_value=default_value)
