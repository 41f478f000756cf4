"""Flagsense feature flag SDK."""

from .exceptions import (
    ConfigurationError,
    FlagsenseError,
    FlagsenseErrorCodes,
    MalformedDefinitionError,
    NotInitializedError,
    SettingsError,
    TransportError,
    UnknownFlagError,
)
from .lifecycle import wait_for
from .log import configure_logging
from .models import ConfigSnapshot, FlagRef, UserContext, Variant
from .platform import HeadlessPlatform, PlatformAdapter
from .registry import ServiceRegistry, create_service, flag
from .resolver import VariantResolver, resolve, traffic_bucket, traffic_hash
from .service import FlagsenseService
from .settings import FlagsenseSettings, load_settings
from .sync import ConfigSyncManager
from .telemetry import TelemetryBuffer
from .transport import RequestResult, ResilientRequestClient, RetryPolicy

__all__ = [
    "ConfigSnapshot",
    "ConfigSyncManager",
    "ConfigurationError",
    "FlagRef",
    "FlagsenseError",
    "FlagsenseErrorCodes",
    "FlagsenseService",
    "FlagsenseSettings",
    "HeadlessPlatform",
    "MalformedDefinitionError",
    "NotInitializedError",
    "PlatformAdapter",
    "RequestResult",
    "ResilientRequestClient",
    "RetryPolicy",
    "ServiceRegistry",
    "SettingsError",
    "TelemetryBuffer",
    "TransportError",
    "UnknownFlagError",
    "UserContext",
    "Variant",
    "VariantResolver",
    "configure_logging",
    "create_service",
    "flag",
    "load_settings",
    "resolve",
    "traffic_bucket",
    "traffic_hash",
    "wait_for",
]
