"""OpenTelemetry メトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("flagsense", version="0.1.0")

evaluations_total = _meter.create_counter(
    name="flagsense_evaluations_total",
    description="Total number of flag evaluations, labelled by outcome",
    unit="1",
)

telemetry_dropped_total = _meter.create_counter(
    name="flagsense_telemetry_dropped_total",
    description="Telemetry records dropped because a buffer was full",
    unit="1",
)

flush_total = _meter.create_counter(
    name="flagsense_flush_total",
    description="Telemetry flush attempts, labelled by delivery path and result",
    unit="1",
)

config_fetch_total = _meter.create_counter(
    name="flagsense_config_fetch_total",
    description="Configuration fetch attempts, labelled by result",
    unit="1",
)
