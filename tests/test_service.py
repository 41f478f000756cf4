"""FlagsenseService のユニットテスト"""

import asyncio
import json
from typing import Any

import httpx
import pytest
import respx
from flagsense.exceptions import ConfigurationError, FlagsenseErrorCodes
from flagsense.models import FlagRef, UserContext, Variant
from flagsense.platform import HeadlessPlatform
from flagsense.resolver import traffic_bucket
from flagsense.service import FlagsenseService
from flagsense.settings import FlagsenseSettings, InitializationSection

CONFIG_URL = "http://config.test/sdk-1/PROD"
EVENTS_URL = "http://events.test/device-events"

CHECKOUT = FlagRef("checkout_button", "control", "red")


def find_user(flag_id: str, low: int, high: int) -> str:
    return next(
        f"u{i}" for i in range(100_000) if low <= traffic_bucket(flag_id, f"u{i}") < high
    )


def make_service(
    settings: FlagsenseSettings,
    user_id: str | None = "u1",
    platform: HeadlessPlatform | None = None,
    environment: str | None = "PROD",
) -> FlagsenseService:
    return FlagsenseService(
        "sdk-1",
        "secret",
        environment,
        UserContext(user_id=user_id, attributes={"plan": "beta"}),
        {"os": "linux"},
        {"version": "1.0"},
        settings=settings,
        platform=platform or HeadlessPlatform(),
    )


async def loaded_service(
    settings: FlagsenseSettings, payload: dict[str, Any], user_id: str | None = "u1"
) -> FlagsenseService:
    respx.get(CONFIG_URL).mock(return_value=httpx.Response(200, json=payload))
    service = make_service(settings, user_id)
    await service.sync.fetch_latest()
    return service


@pytest.mark.parametrize(("sdk_id", "secret"), [("", "secret"), ("sdk-1", ""), (None, None)])
def test_empty_credentials_raise(sdk_id: Any, secret: Any, settings: FlagsenseSettings) -> None:
    """SDK ID・シークレットが空なら構築時に ConfigurationError。"""
    with pytest.raises(ConfigurationError) as exc_info:
        FlagsenseService(sdk_id, secret, "PROD", settings=settings)
    assert exc_info.value.code == FlagsenseErrorCodes.CONFIG_ERROR


@pytest.mark.parametrize(
    ("environment", "expected"),
    [("DEV", "DEV"), ("STAGE", "STAGE"), ("PROD", "PROD"), ("QA", "PROD"), (None, "PROD")],
)
def test_environment_fallback(
    environment: str | None, expected: str, settings: FlagsenseSettings
) -> None:
    assert make_service(settings, environment=environment).environment == expected


def test_get_variation_before_fetch_returns_default(settings: FlagsenseSettings) -> None:
    """初回取得前は呼び出し側の既定バリアントを返す。"""
    service = make_service(settings)
    assert service.get_variation(CHECKOUT) == Variant("control", "red")
    body = service.telemetry.get_request_body()
    assert body is not None
    assert body["variations"][0]["variation"] == "control"


def test_get_variation_without_default_key_counts_fs_empty(settings: FlagsenseSettings) -> None:
    service = make_service(settings)
    assert service.get_variation(FlagRef("checkout_button")) == Variant(None, None)
    body = service.telemetry.get_request_body()
    assert body is not None
    assert body["variations"][0]["variation"] == "FS_Empty"


@pytest.mark.parametrize("flag_ref", [None, "checkout_button", {"flag_id": "checkout_button"}])
def test_get_variation_invalid_flag_ref_returns_empty_variant(
    flag_ref: Any, settings: FlagsenseSettings
) -> None:
    """フラグ参照でない引数でも例外を送出しない。"""
    service = make_service(settings)
    assert service.get_variation(flag_ref) == Variant(None, None)
    service.record_event(flag_ref, "purchase")
    assert service.telemetry.event_count == 0


@respx.mock
async def test_get_variation_resolves_experiment(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    """バケットが [0, 50000) のユーザーは毎回 A。"""
    user_id = find_user("checkout_button", 0, 50000)
    service = await loaded_service(settings, config_payload, user_id)
    for _ in range(5):
        assert service.get_variation(CHECKOUT) == Variant("A", "blue")
    assert service.telemetry.variation_count == 5


@respx.mock
async def test_get_variation_unknown_flag_returns_default(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    service = await loaded_service(settings, config_payload)
    ref = FlagRef("missing_flag", "off", 0)
    assert service.get_variation(ref) == Variant("off", 0)


@respx.mock
async def test_get_variation_malformed_experiment_returns_default(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    payload = dict(config_payload)
    payload["experiments"] = {"checkout_button": {"variants": "broken"}}
    service = await loaded_service(settings, payload)
    assert service.get_variation(CHECKOUT) == Variant("control", "red")


@respx.mock
async def test_record_event_declared_event_is_buffered(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    user_id = find_user("checkout_button", 50000, 100000)
    service = await loaded_service(settings, config_payload, user_id)
    service.record_event(CHECKOUT, "purchase", 250, "revenue", {"currency": "JPY"})
    assert service.telemetry.event_count == 1
    # イベント記録では評価カウントを増やさない
    assert service.telemetry.variation_count == 0

    body = service.telemetry.get_request_body()
    assert body is not None
    event = body["events"][0]
    assert event["flagKey"] == "checkout_button"
    assert event["flagVariation"] == "B"
    assert event["eventValue"] == 250
    assert event["eventType"] == "revenue"


@respx.mock
async def test_record_event_default_value(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    service = await loaded_service(settings, config_payload)
    service.record_event(CHECKOUT, "click", None)
    body = service.telemetry.get_request_body()
    assert body is not None
    assert body["events"][0]["eventValue"] == 1


@respx.mock
async def test_record_event_undeclared_event_is_noop(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    """実験に宣言されていないイベント名は記録しない。"""
    service = await loaded_service(settings, config_payload)
    service.record_event(CHECKOUT, "signup")
    service.record_event(FlagRef("banner", "off", False), "purchase")
    service.record_event(CHECKOUT, "")
    assert service.telemetry.event_count == 0


def test_record_event_before_initialization_is_noop(settings: FlagsenseSettings) -> None:
    service = make_service(settings)
    service.record_event(CHECKOUT, "purchase")
    assert service.telemetry.event_count == 0


@respx.mock
async def test_set_fs_user_changes_assignment_and_envelope(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    user_a = find_user("checkout_button", 0, 50000)
    user_b = find_user("checkout_button", 50000, 100000)
    service = await loaded_service(settings, config_payload, user_a)
    assert service.get_variation(CHECKOUT).key == "A"

    service.set_fs_user(user_b, {"plan": "free"})
    assert service.user.user_id == user_b
    assert service.get_variation(CHECKOUT).key == "B"

    body = service.telemetry.get_request_body()
    assert body is not None
    assert body["userId"] == user_b
    assert body["userAttributes"] == [{"key": "plan", "value": "free"}]


def test_set_device_and_app_info(settings: FlagsenseSettings) -> None:
    service = make_service(settings)
    service.set_device_info({"model": "pixel"})
    service.set_app_info({"build": 42})
    service.get_variation(CHECKOUT)
    body = service.telemetry.get_request_body()
    assert body is not None
    assert body["deviceInfo"] == [{"key": "model", "value": "pixel"}]
    assert body["appInfo"] == [{"key": "build", "value": 42}]


@respx.mock
async def test_wait_for_initialization_complete(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    respx.get(CONFIG_URL).mock(return_value=httpx.Response(200, json=config_payload))
    settings.initialization = InitializationSection(max_wait_ms=2000, poll_interval_seconds=0.01)
    service = make_service(settings)
    service.start()
    try:
        task = service.wait_for_initialization_complete()
        assert isinstance(task, asyncio.Task)
        assert await task is True
        assert service.initialization_complete() is True
    finally:
        await service.close()


@respx.mock
async def test_wait_for_initialization_times_out(settings: FlagsenseSettings) -> None:
    """到達できないバックエンドでも最大待機時間で戻る。"""
    respx.get(CONFIG_URL).mock(return_value=httpx.Response(500))
    settings.initialization = InitializationSection(poll_interval_seconds=0.01)
    service = make_service(settings)
    service.set_max_initialization_wait_time(50)
    service.start()
    try:
        assert await service.wait_for_initialization_complete_async() is False
        assert service.get_variation(CHECKOUT) == Variant("control", "red")
    finally:
        await service.close()


async def test_wait_for_initialization_offline_completes_immediately(
    settings: FlagsenseSettings,
) -> None:
    service = make_service(settings, platform=HeadlessPlatform(online=False))
    assert await service.wait_for_initialization_complete_async() is True


@respx.mock
async def test_config_payload_toggles_capture(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    payload = {**config_payload, "config": {"captureDeviceEvaluations": False}}
    service = await loaded_service(settings, payload)
    service.get_variation(CHECKOUT)
    assert service.telemetry.variation_count == 0


@respx.mock
async def test_flush_on_hide_sends_auth_headers(
    settings: FlagsenseSettings, config_payload: dict[str, Any]
) -> None:
    route = respx.post(EVENTS_URL).mock(return_value=httpx.Response(200))
    service = await loaded_service(settings, config_payload)
    service.get_variation(CHECKOUT)
    service.telemetry.send_events_on_hide()
    await asyncio.gather(*service.telemetry._pending_sends)

    request = route.calls.last.request
    assert request.headers["authType"] == "fsdk"
    assert request.headers["sdkId"] == "sdk-1"
    assert request.headers["sdkSecret"] == "secret"
    assert json.loads(request.content)["variations"][0]["flag"] == "checkout_button"
