"""決定的ハッシュによるバリアント解決

評価は (スナップショット, ユーザー ID, 属性, フラグ ID) の純粋関数として行う。
ハッシュ値は flag_id + user_id の SHA-256 先頭 4 バイトを使うため、
実行環境によらず同じ入力には同じバケットが割り当てられる。
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Callable, Mapping
from typing import Any

from .constants import HASH_SPACE, TRAFFIC_UNIT
from .exceptions import MalformedDefinitionError, NotInitializedError, UnknownFlagError
from .models import (
    ConfigSnapshot,
    ExperimentDef,
    FlagDef,
    SegmentDef,
    SegmentMatch,
    SegmentRule,
    Variant,
)


def traffic_hash(flag_id: str, user_id: str | None) -> int:
    """flag_id + user_id を [0, HASH_SPACE) へ写像する。"""
    digest = hashlib.sha256(f"{flag_id}{user_id or ''}".encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % HASH_SPACE


def traffic_bucket(flag_id: str, user_id: str | None) -> int:
    """ハッシュ値を [0, TRAFFIC_UNIT) のトラフィックバケットへ写像する。"""
    return traffic_hash(flag_id, user_id) % TRAFFIC_UNIT


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(actual: Any, expected: Any, op: Callable[[float, float], bool]) -> bool:
    a, b = _as_number(actual), _as_number(expected)
    if a is None or b is None:
        return False
    return op(a, b)


def _loose_equal(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    a, b = _as_number(actual), _as_number(expected)
    if a is not None and b is not None:
        return a == b
    return str(actual) == str(expected)


def _regex_match(actual: Any, pattern: Any) -> bool:
    try:
        return re.search(str(pattern), str(actual)) is not None
    except re.error as e:
        raise MalformedDefinitionError(f"invalid regex in segment rule: {pattern!r}", cause=e) from e


_OPERATORS: dict[str, Callable[[Any, tuple[Any, ...]], bool]] = {
    "eq": lambda a, vs: bool(vs) and _loose_equal(a, vs[0]),
    "neq": lambda a, vs: bool(vs) and not _loose_equal(a, vs[0]),
    "in": lambda a, vs: any(_loose_equal(a, v) for v in vs),
    "nin": lambda a, vs: not any(_loose_equal(a, v) for v in vs),
    "gt": lambda a, vs: bool(vs) and _compare(a, vs[0], lambda x, y: x > y),
    "gte": lambda a, vs: bool(vs) and _compare(a, vs[0], lambda x, y: x >= y),
    "lt": lambda a, vs: bool(vs) and _compare(a, vs[0], lambda x, y: x < y),
    "lte": lambda a, vs: bool(vs) and _compare(a, vs[0], lambda x, y: x <= y),
    "contains": lambda a, vs: any(str(v) in str(a) for v in vs),
    "startsWith": lambda a, vs: any(str(a).startswith(str(v)) for v in vs),
    "endsWith": lambda a, vs: any(str(a).endswith(str(v)) for v in vs),
    "regex": lambda a, vs: any(_regex_match(a, v) for v in vs),
    "exists": lambda a, vs: True,
}


def rule_matches(rule: SegmentRule, attributes: Mapping[str, Any]) -> bool:
    """単一ルールを評価する。属性が無い場合は常に False。"""
    op = _OPERATORS.get(rule.operator)
    if op is None:
        raise MalformedDefinitionError(f"unknown segment operator: {rule.operator}")
    if rule.attribute not in attributes or attributes[rule.attribute] is None:
        return False
    return op(attributes[rule.attribute], rule.values)


def segment_matches(segment: SegmentDef, attributes: Mapping[str, Any]) -> bool:
    """ユーザーがセグメントに属するか判定する。"""
    results = (rule_matches(rule, attributes) for rule in segment.rules)
    if segment.match == SegmentMatch.ANY:
        return any(results)
    return all(results)


def _in_any_segment(
    snapshot: ConfigSnapshot, experiment: ExperimentDef, attributes: Mapping[str, Any]
) -> bool:
    for segment_id in experiment.segments:
        data = snapshot.segments.get(segment_id)
        if data is None:
            # 同期済みデータに無いセグメントは一致しないものとして扱う
            continue
        if segment_matches(SegmentDef.from_dict(segment_id, data), attributes):
            return True
    return False


def resolve(
    snapshot: ConfigSnapshot,
    user_id: str | None,
    attributes: Mapping[str, Any] | None,
    flag_id: str,
) -> Variant:
    """ユーザーに割り当てるバリアントを解決する。

    Raises:
        NotInitializedError: スナップショットが未取得の場合
        UnknownFlagError: フラグが存在しない場合
        MalformedDefinitionError: 定義の形式が不正な場合
    """
    if not snapshot.initialized or not snapshot.flags:
        raise NotInitializedError("configuration not loaded yet")
    flag_data = snapshot.flags.get(flag_id)
    if flag_data is None:
        raise UnknownFlagError(flag_id)
    flag = FlagDef.from_dict(flag_id, flag_data)

    experiment_data = snapshot.experiments.get(flag_id)
    if experiment_data is None:
        return flag.default_variant
    experiment = ExperimentDef.from_dict(flag_id, experiment_data)
    default = experiment.default_variant or flag.default_variant
    if not experiment.active:
        return default
    if experiment.segments and not _in_any_segment(snapshot, experiment, attributes or {}):
        return default

    bucket = traffic_bucket(flag_id, user_id)
    for variant_range in experiment.variants:
        if variant_range.contains(bucket):
            return Variant(key=variant_range.key, value=variant_range.value)
    # 範囲の合計が TRAFFIC_UNIT に満たない場合の残りは割り当てなし
    return default


class VariantResolver:
    """現在のスナップショットに対してバリアントを評価する。"""

    def __init__(self, snapshot_source: Callable[[], ConfigSnapshot]) -> None:
        self._snapshot_source = snapshot_source

    def evaluate(
        self, user_id: str | None, attributes: Mapping[str, Any] | None, flag_id: str
    ) -> Variant:
        return resolve(self._snapshot_source(), user_id, attributes, flag_id)

    def experiment(self, flag_id: str) -> ExperimentDef | None:
        """フラグの実験定義を返す。未定義なら None。"""
        data = self._snapshot_source().experiments.get(flag_id)
        if data is None:
            return None
        return ExperimentDef.from_dict(flag_id, data)
