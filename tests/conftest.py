"""flagsense テスト共通フィクスチャ"""

from typing import Any

import pytest
from flagsense.settings import (
    EndpointsSection,
    FlagsenseSettings,
    RetryPolicySection,
    RetrySection,
    TelemetrySection,
)

CONFIG_BASE_URL = "http://config.test/"
EVENTS_BASE_URL = "http://events.test/"


@pytest.fixture
def settings() -> FlagsenseSettings:
    """リトライ待ちなし・定期送信を遅らせたテスト用設定。"""
    return FlagsenseSettings(
        endpoints=EndpointsSection(
            config_base_url=CONFIG_BASE_URL,
            events_base_url=EVENTS_BASE_URL,
        ),
        telemetry=TelemetrySection(flush_initial_delay_seconds=60.0),
        retry=RetrySection(
            config=RetryPolicySection(max_retries=3, delay_seconds=0.0),
            events=RetryPolicySection(max_retries=1, delay_seconds=0.0),
        ),
    )


@pytest.fixture
def config_payload() -> dict[str, Any]:
    """checkout_button に A/B 実験を持つ設定レスポンス。"""
    return {
        "lastUpdatedOn": 1700000000000,
        "segments": {
            "beta": {
                "match": "ALL",
                "rules": [{"attribute": "plan", "operator": "eq", "values": ["beta"]}],
            }
        },
        "flags": {
            "checkout_button": {"defaultVariant": {"key": "control", "value": "red"}},
            "banner": {"defaultVariant": {"key": "off", "value": False}},
        },
        "experiments": {
            "checkout_button": {
                "active": True,
                "variants": [
                    {"key": "A", "value": "blue", "start": 0, "end": 50000},
                    {"key": "B", "value": "green", "start": 50000, "end": 100000},
                ],
                "eventNames": ["purchase", "click"],
            }
        },
    }
