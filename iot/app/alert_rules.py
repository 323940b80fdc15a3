from __future__ import annotations

import hashlib
import operator
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml


_OPS: dict[str, Callable[[float, float], bool]] = {
    "lt": operator.lt,
    "lte": operator.le,
    "gt": operator.gt,
    "gte": operator.ge,
}


def format_number(value: float) -> str:
    """Render a reading the way devices send it (15 rather than 15.0)."""

    if float(value).is_integer():
        return str(int(value))
    return str(value)


@dataclass(frozen=True)
class ThresholdRule:
    parameter: str
    op: str
    threshold: float
    clear_op: str
    clear_threshold: float
    alert_type: str
    severity: str
    message: str
    resolution: str

    def triggered(self, value: float) -> bool:
        return _OPS[self.op](value, self.threshold)

    def cleared(self, value: float) -> bool:
        return _OPS[self.clear_op](value, self.clear_threshold)

    def format_message(self, *, device_name: str, value: float) -> str:
        return self.message.format(device_name=device_name, value=format_number(value))

    def format_resolution(self, *, value: float) -> str:
        return self.resolution.format(value=format_number(value))


@dataclass(frozen=True)
class BatteryRule:
    low_pct: float
    critical_pct: float
    recover_pct: float

    def severity_for(self, level: float) -> str:
        return "critical" if level < self.critical_pct else "warning"


@dataclass(frozen=True)
class AlertRules:
    version: str
    sha256: str

    battery: BatteryRule
    device_types: dict[str, tuple[ThresholdRule, ...]]

    def rules_for(self, device_type: str) -> tuple[ThresholdRule, ...]:
        return self.device_types.get(device_type, ())


def _repo_root() -> Path:
    # iot/app/alert_rules.py -> iot/app -> iot -> repo root
    return Path(__file__).resolve().parents[2]


def _rules_path(version: str) -> Path:
    v = (version or "").strip()
    if not v:
        raise ValueError("alert rules version is empty")
    if "/" in v or ".." in v:
        raise ValueError("invalid alert rules version")
    return _repo_root() / "contracts" / "alert_rules" / f"{v}.yaml"


def _require_float(obj: Mapping[str, Any], key: str) -> float:
    v = obj.get(key)
    if isinstance(v, bool):
        raise ValueError(f"'{key}' must be a number")
    if isinstance(v, (int, float)):
        return float(v)
    raise ValueError(f"'{key}' must be a number")


def _require_str(obj: Mapping[str, Any], key: str) -> str:
    v = obj.get(key)
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"'{key}' must be a non-empty string")
    return v.strip()


def _require_op(obj: Mapping[str, Any], key: str) -> str:
    v = _require_str(obj, key)
    if v not in _OPS:
        raise ValueError(f"'{key}' must be one of: {', '.join(sorted(_OPS))}")
    return v


def _require_mapping(obj: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    v = obj.get(key)
    if not isinstance(v, Mapping):
        raise ValueError(f"'{key}' must be a mapping")
    return v


def _validate_battery(b: BatteryRule) -> None:
    if b.recover_pct <= b.low_pct:
        raise ValueError(f"Invalid battery thresholds: recover ({b.recover_pct}) must be > low ({b.low_pct})")
    if b.critical_pct > b.low_pct:
        raise ValueError(f"Invalid battery thresholds: critical ({b.critical_pct}) must be <= low ({b.low_pct})")


def _validate_rule(device_type: str, r: ThresholdRule) -> None:
    """Reject rules where a single value would both trigger and clear."""

    name = f"{device_type}.{r.parameter}"
    if r.op in ("lt", "lte"):
        if r.clear_op not in ("gt", "gte"):
            raise ValueError(f"Invalid rule {name}: clear_op must be gt/gte for a '{r.op}' trigger")
        overlap = r.clear_threshold < r.threshold or (
            r.clear_threshold == r.threshold and r.op == "lte" and r.clear_op == "gte"
        )
    else:
        if r.clear_op not in ("lt", "lte"):
            raise ValueError(f"Invalid rule {name}: clear_op must be lt/lte for a '{r.op}' trigger")
        overlap = r.clear_threshold > r.threshold or (
            r.clear_threshold == r.threshold and r.op == "gte" and r.clear_op == "lte"
        )
    if overlap:
        raise ValueError(
            f"Invalid rule {name}: clear threshold ({r.clear_threshold}) overlaps trigger ({r.threshold})"
        )


def _parse_rule(raw: Any) -> ThresholdRule:
    if not isinstance(raw, Mapping):
        raise ValueError("rule must be a mapping")
    return ThresholdRule(
        parameter=_require_str(raw, "parameter"),
        op=_require_op(raw, "op"),
        threshold=_require_float(raw, "threshold"),
        clear_op=_require_op(raw, "clear_op"),
        clear_threshold=_require_float(raw, "clear_threshold"),
        alert_type=_require_str(raw, "alert_type"),
        severity=_require_str(raw, "severity"),
        message=_require_str(raw, "message"),
        resolution=_require_str(raw, "resolution"),
    )


@lru_cache(maxsize=8)
def load_alert_rules(version: str) -> AlertRules:
    path = _rules_path(version)
    raw = path.read_bytes()
    sha256 = hashlib.sha256(raw).hexdigest()

    data = yaml.safe_load(raw) or {}
    if not isinstance(data, Mapping):
        raise ValueError("alert rules must be a mapping")

    version_from_file = str(data.get("version") or version)

    battery_raw = _require_mapping(data, "battery")
    battery = BatteryRule(
        low_pct=_require_float(battery_raw, "low_pct"),
        critical_pct=_require_float(battery_raw, "critical_pct"),
        recover_pct=_require_float(battery_raw, "recover_pct"),
    )
    _validate_battery(battery)

    types_raw = _require_mapping(data, "device_types")
    device_types: dict[str, tuple[ThresholdRule, ...]] = {}
    for device_type, rules_raw in types_raw.items():
        if not isinstance(device_type, str):
            continue
        if not isinstance(rules_raw, list):
            raise ValueError(f"device_types['{device_type}'] must be a list")
        rules = tuple(_parse_rule(r) for r in rules_raw)
        for r in rules:
            _validate_rule(device_type, r)
        device_types[device_type] = rules

    return AlertRules(
        version=version_from_file,
        sha256=sha256,
        battery=battery,
        device_types=device_types,
    )
