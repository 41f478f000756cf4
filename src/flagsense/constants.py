"""Flagsense SDK 定数"""

from __future__ import annotations


class Headers:
    """認証ヘッダー名。"""

    AUTH_TYPE: str = "authType"
    SDK_ID: str = "sdkId"
    SDK_SECRET: str = "sdkSecret"


AUTH_TYPE_VALUE = "fsdk"
SDK_TYPE = "python"

CONFIG_BASE_URL = "https://v1-cdn-service.flagsense.com/"
EVENTS_BASE_URL = "https://app-events.flagsense.com/v1/event-service/"
DEVICE_EVENTS_PATH = "device-events"

ENVIRONMENTS: tuple[str, ...] = ("DEV", "STAGE", "PROD")
DEFAULT_ENVIRONMENT = "PROD"

HASH_SPACE = 2**32
TRAFFIC_UNIT = 100_000

REFRESH_INTERVAL_SECONDS = 5 * 60.0
EVENT_CAPACITY = 100
EVENT_FLUSH_INITIAL_DELAY_SECONDS = 5.0
EVENT_FLUSH_INTERVAL_SECONDS = 5.0
CAPTURE_DEVICE_EVENTS = True
CAPTURE_FLAG_EVALUATIONS = True

MAX_INITIALIZATION_WAIT_MS = 10 * 1000
INITIALIZATION_POLL_INTERVAL_SECONDS = 0.5

# 評価失敗時に既定キーも無い場合の評価カウント用キー
EMPTY_VARIANT_KEY = "FS_Empty"
DEFAULT_EVENT_VALUE = 1
