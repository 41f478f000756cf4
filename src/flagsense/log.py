"""structlog ベースのロガー設定"""

from __future__ import annotations

import logging
import sys
from typing import IO, Any

import structlog

from .constants import SDK_TYPE

SDK_LOGGER_NAME = "flagsense"


def _add_sdk_context(
    _logger: Any, _method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    event_dict.setdefault("sdk", SDK_LOGGER_NAME)
    event_dict.setdefault("sdk_type", SDK_TYPE)
    return event_dict


def configure_logging(
    level: str = "INFO",
    format: str = "json",
    *,
    stream: IO[str] | None = None,
) -> structlog.stdlib.BoundLogger:
    """SDK のログ出力を設定し、SDK ルートロガーを返す。

    ホストのルートロガーには触れず、"flagsense" ロガーにのみハンドラを付ける。
    繰り返し呼んでもハンドラは 1 つに保たれる。

    Args:
        level: ログレベル ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: 出力形式 ("json" or "text")
        stream: 出力先。省略時は標準エラー出力
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    sdk_logger = logging.getLogger(SDK_LOGGER_NAME)
    sdk_logger.handlers = [handler]
    sdk_logger.setLevel(log_level)
    sdk_logger.propagate = False

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        _add_sdk_context,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if format == "json":
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    return get_logger(SDK_LOGGER_NAME)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """モジュール用のロガーを返す。"""
    return structlog.stdlib.get_logger(name)
