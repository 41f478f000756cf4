"""flagsense データモデル"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from .constants import TRAFFIC_UNIT
from .exceptions import MalformedDefinitionError


def now_millis() -> int:
    """エポックミリ秒を返す。"""
    return int(time.time() * 1000)


def to_key_value_list(data: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    """辞書を [{"key": ..., "value": ...}] 形式へ変換する。"""
    if not data:
        return []
    return [{"key": key, "value": value} for key, value in data.items()]


@dataclass(frozen=True)
class FlagRef:
    """ホストが評価を要求するフラグ参照と既定バリアント。"""

    flag_id: str
    default_key: str | None = None
    default_value: Any = None

    @property
    def default_variant(self) -> Variant:
        return Variant(key=self.default_key, value=self.default_value)


@dataclass
class UserContext:
    """評価対象ユーザー。"""

    user_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Variant:
    """解決済みバリアント。"""

    key: str | None
    value: Any = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Variant:
        if not isinstance(data, Mapping) or "key" not in data:
            raise MalformedDefinitionError(f"invalid variant definition: {data!r}")
        return cls(key=data["key"], value=data.get("value"))


@dataclass
class EvaluationRecord:
    """フラグ評価 1 回分の記録。"""

    flag_id: str
    variant_key: str
    time: int = field(default_factory=now_millis)

    def to_dict(self) -> dict[str, Any]:
        return {"time": self.time, "flag": self.flag_id, "variation": self.variant_key}


@dataclass
class CustomEvent:
    """実験に紐づくカスタムイベント。"""

    flag_key: str
    flag_variation: str
    event_name: str
    event_value: Any = 1
    event_type: str | None = None
    event_attributes: dict[str, Any] = field(default_factory=dict)
    time: int = field(default_factory=now_millis)

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": self.time,
            "flagKey": self.flag_key,
            "flagVariation": self.flag_variation,
            "eventName": self.event_name,
            "eventValue": self.event_value,
            "eventType": self.event_type,
            "eventAttributes": to_key_value_list(self.event_attributes),
        }


class SegmentMatch(StrEnum):
    """セグメントルールの結合方法。"""

    ALL = "ALL"
    ANY = "ANY"


@dataclass(frozen=True)
class SegmentRule:
    """ユーザー属性に対する単一の条件。"""

    attribute: str
    operator: str
    values: tuple[Any, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SegmentRule:
        try:
            values = data.get("values", ())
            if not isinstance(values, (list, tuple)):
                values = (values,)
            return cls(
                attribute=str(data["attribute"]),
                operator=str(data["operator"]),
                values=tuple(values),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise MalformedDefinitionError(f"invalid segment rule: {data!r}", cause=e) from e


@dataclass(frozen=True)
class SegmentDef:
    """ユーザー属性に対する述語としてのセグメント。"""

    segment_id: str
    rules: tuple[SegmentRule, ...] = ()
    match: SegmentMatch = SegmentMatch.ALL

    @classmethod
    def from_dict(cls, segment_id: str, data: Mapping[str, Any]) -> SegmentDef:
        try:
            return cls(
                segment_id=segment_id,
                rules=tuple(SegmentRule.from_dict(r) for r in data.get("rules", [])),
                match=SegmentMatch(str(data.get("match", SegmentMatch.ALL)).upper()),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise MalformedDefinitionError(
                f"invalid segment definition: {segment_id}", cause=e
            ) from e


@dataclass(frozen=True)
class VariantRange:
    """トラフィック範囲 [start, end) を持つバリアント。"""

    key: str
    value: Any
    start: int
    end: int

    def contains(self, bucket: int) -> bool:
        return self.start <= bucket < self.end

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VariantRange:
        try:
            start = int(data["start"])
            end = int(data["end"])
            key = data["key"]
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedDefinitionError(f"invalid variant range: {data!r}", cause=e) from e
        if not 0 <= start < end <= TRAFFIC_UNIT:
            raise MalformedDefinitionError(f"traffic range out of bounds: [{start}, {end})")
        return cls(key=key, value=data.get("value"), start=start, end=end)


@dataclass(frozen=True)
class ExperimentDef:
    """フラグに対するトラフィック分割の定義。"""

    flag_id: str
    variants: tuple[VariantRange, ...]
    segments: tuple[str, ...] = ()
    event_names: frozenset[str] = frozenset()
    active: bool = True
    default_variant: Variant | None = None

    @classmethod
    def from_dict(cls, flag_id: str, data: Mapping[str, Any]) -> ExperimentDef:
        if not isinstance(data, Mapping):
            raise MalformedDefinitionError(f"invalid experiment definition: {flag_id}")
        ranges = sorted(
            (VariantRange.from_dict(v) for v in data.get("variants") or []),
            key=lambda r: r.start,
        )
        for prev, current in zip(ranges, ranges[1:]):
            if current.start < prev.end:
                raise MalformedDefinitionError(
                    f"overlapping traffic ranges in experiment {flag_id}: "
                    f"{prev.key} and {current.key}"
                )
        segments = data.get("segments") or []
        event_names = data.get("eventNames") or []
        if not isinstance(segments, (list, tuple)) or not isinstance(event_names, (list, tuple)):
            raise MalformedDefinitionError(
                f"segments and eventNames must be lists in experiment {flag_id}"
            )
        default = data.get("defaultVariant")
        return cls(
            flag_id=flag_id,
            variants=tuple(ranges),
            segments=tuple(str(s) for s in segments),
            event_names=frozenset(str(n) for n in event_names),
            active=bool(data.get("active", True)),
            default_variant=Variant.from_dict(default) if default is not None else None,
        )

    def total_traffic(self) -> int:
        return sum(r.end - r.start for r in self.variants)


@dataclass(frozen=True)
class FlagDef:
    """同期済みフラグ定義。"""

    flag_id: str
    default_variant: Variant

    @classmethod
    def from_dict(cls, flag_id: str, data: Mapping[str, Any]) -> FlagDef:
        if not isinstance(data, Mapping) or "defaultVariant" not in data:
            raise MalformedDefinitionError(f"invalid flag definition: {flag_id}")
        return cls(flag_id=flag_id, default_variant=Variant.from_dict(data["defaultVariant"]))


_EMPTY: Mapping[str, Any] = MappingProxyType({})


def _freeze(data: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data)) if data else _EMPTY


@dataclass(frozen=True)
class ConfigSnapshot:
    """公開後は変更されない設定スナップショット。

    更新は merge() が返す新しいオブジェクトへの差し替えで行う。
    """

    segments: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    flags: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    experiments: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    last_updated_on: int = 0

    @classmethod
    def empty(cls) -> ConfigSnapshot:
        return cls()

    @property
    def initialized(self) -> bool:
        return self.last_updated_on > 0

    def merge(self, response: Mapping[str, Any]) -> ConfigSnapshot:
        """レスポンスを部分マージした新しいスナップショットを返す。

        空で届いたフィールドは以前の値を保持する。last_updated_on は減少しない。
        """
        segments = response.get("segments")
        flags = response.get("flags")
        experiments = response.get("experiments")
        incoming = response.get("lastUpdatedOn")
        last_updated_on = self.last_updated_on
        if isinstance(incoming, (int, float)) and incoming > last_updated_on:
            last_updated_on = int(incoming)
        return ConfigSnapshot(
            segments=_freeze(segments) if segments else self.segments,
            flags=_freeze(flags) if flags else self.flags,
            experiments=_freeze(experiments) if experiments else self.experiments,
            last_updated_on=last_updated_on,
        )
