"""SDK 設定（pydantic BaseModel）と YAML 読み込み"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import constants
from .exceptions import FlagsenseErrorCodes, SettingsError


class EndpointsSection(BaseModel):
    """接続先設定。"""

    config_base_url: str = constants.CONFIG_BASE_URL
    events_base_url: str = constants.EVENTS_BASE_URL
    timeout_seconds: float = Field(default=10.0, gt=0)


class SyncSection(BaseModel):
    """設定同期の間隔。"""

    refresh_interval_seconds: float = Field(default=constants.REFRESH_INTERVAL_SECONDS, gt=0)


class TelemetrySection(BaseModel):
    """イベント送信設定。"""

    event_capacity: int = Field(default=constants.EVENT_CAPACITY, ge=0)
    capture_device_events: bool = constants.CAPTURE_DEVICE_EVENTS
    capture_flag_evaluations: bool = constants.CAPTURE_FLAG_EVALUATIONS
    flush_initial_delay_seconds: float = Field(
        default=constants.EVENT_FLUSH_INITIAL_DELAY_SECONDS, ge=0
    )
    flush_interval_seconds: float = Field(default=constants.EVENT_FLUSH_INTERVAL_SECONDS, gt=0)


class RetryPolicySection(BaseModel):
    """固定間隔リトライ設定。"""

    max_retries: int = Field(default=0, ge=0)
    delay_seconds: float = Field(default=0.0, ge=0)


class RetrySection(BaseModel):
    """呼び出し元ごとのリトライ設定。"""

    config: RetryPolicySection = Field(
        default_factory=lambda: RetryPolicySection(max_retries=3, delay_seconds=2.0)
    )
    events: RetryPolicySection = Field(
        default_factory=lambda: RetryPolicySection(max_retries=1, delay_seconds=3.0)
    )


class InitializationSection(BaseModel):
    """初期化待ち設定。"""

    max_wait_ms: int = Field(default=constants.MAX_INITIALIZATION_WAIT_MS, ge=0)
    poll_interval_seconds: float = Field(
        default=constants.INITIALIZATION_POLL_INTERVAL_SECONDS, gt=0
    )


class LogSection(BaseModel):
    """ログ設定。enabled が False の場合、SDK はログ出力を設定しない。"""

    enabled: bool = False
    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class FlagsenseSettings(BaseModel):
    """SDK 設定全体。"""

    endpoints: EndpointsSection = Field(default_factory=EndpointsSection)
    sync: SyncSection = Field(default_factory=SyncSection)
    telemetry: TelemetrySection = Field(default_factory=TelemetrySection)
    retry: RetrySection = Field(default_factory=RetrySection)
    initialization: InitializationSection = Field(default_factory=InitializationSection)
    log: LogSection = Field(default_factory=LogSection)


ENV_PREFIX = "FLAGSENSE_"
SETTINGS_PATH_ENV = "FLAGSENSE_SETTINGS"


def _apply_layer(data: dict[str, Any], layer: Mapping[str, Any]) -> None:
    for section, values in layer.items():
        if isinstance(values, Mapping) and isinstance(data.get(section), dict):
            _apply_layer(data[section], values)
        elif isinstance(values, Mapping):
            data[section] = {}
            _apply_layer(data[section], values)
        else:
            data[section] = values


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    """FLAGSENSE_<SECTION>__<FIELD>[__<FIELD>] 形式の環境変数を入れ子の辞書にする。

    例: FLAGSENSE_RETRY__CONFIG__MAX_RETRIES=5 -> {"retry": {"config": {"max_retries": "5"}}}
    """
    layer: dict[str, Any] = {}
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX) or name == SETTINGS_PATH_ENV:
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if len(path) < 2:
            continue
        node = layer
        for part in path[:-1]:
            node = node.setdefault(part, {})
            if not isinstance(node, dict):
                break
        else:
            node[path[-1]] = value
    return layer


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SettingsError(
            f"Failed to read settings file: {path}",
            code=FlagsenseErrorCodes.READ_FILE,
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise SettingsError(
            f"Failed to parse YAML: {path}",
            code=FlagsenseErrorCodes.PARSE_YAML,
            cause=e,
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SettingsError(
            f"Settings file must contain a mapping: {path}",
            code=FlagsenseErrorCodes.VALIDATION,
        )
    return data


def load_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> FlagsenseSettings:
    """既定値、YAML ファイル、FLAGSENSE_* 環境変数の順に重ねて設定を作る。

    path を省略した場合は FLAGSENSE_SETTINGS が指すファイルを読む。
    どちらも無ければファイルの層は使わない。
    """
    environ = os.environ if environ is None else environ
    if path is None and environ.get(SETTINGS_PATH_ENV):
        path = environ[SETTINGS_PATH_ENV]

    data: dict[str, Any] = {}
    if path is not None:
        _apply_layer(data, _read_yaml(Path(path)))
    _apply_layer(data, _env_layer(environ))
    try:
        return FlagsenseSettings.model_validate(data)
    except ValidationError as e:
        raise SettingsError(
            f"Settings validation failed: {e}",
            code=FlagsenseErrorCodes.VALIDATION,
            cause=e,
        ) from e
