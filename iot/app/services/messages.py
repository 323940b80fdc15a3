from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from ..models import ALERT_SEVERITIES, ALERT_TYPES, DEVICE_STATUSES
from .errors import InvalidMessageError


MESSAGE_TYPES = ("telemetry", "command_response", "status", "alert")


@dataclass(frozen=True)
class BatteryState:
    level: float | None
    charging: bool | None


@dataclass(frozen=True)
class Envelope:
    type: str
    payload: Mapping[str, Any]
    message_id: str | None
    timestamp: datetime | None


@dataclass(frozen=True)
class TelemetryMessage:
    readings: dict[str, Any]
    timestamp: datetime | None = None
    battery: BatteryState | None = None
    signal_strength: float | None = None
    latitude: float | None = None
    longitude: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusMessage:
    status: str
    data: dict[str, Any] = field(default_factory=dict)
    battery: BatteryState | None = None


@dataclass(frozen=True)
class DeviceAlertMessage:
    alert_type: str
    severity: str
    message: str | None
    data: dict[str, Any] = field(default_factory=dict)
    status: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class CommandResponseMessage:
    command: str
    status: str
    data: dict[str, Any] = field(default_factory=dict)


def normalize_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _number(v: Any) -> float | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    return None


def _mapping(v: Any) -> dict[str, Any]:
    return dict(v) if isinstance(v, Mapping) else {}


def _parse_timestamp(v: Any) -> datetime | None:
    if v is None:
        return None
    if not isinstance(v, str) or not v.strip():
        raise InvalidMessageError("timestamp must be an ISO8601 string")
    try:
        return normalize_utc(datetime.fromisoformat(v.strip()))
    except ValueError as exc:
        raise InvalidMessageError(f"invalid timestamp: {v!r}") from exc


def _parse_battery(v: Any) -> BatteryState | None:
    if not isinstance(v, Mapping):
        return None
    level = _number(v.get("level"))
    charging = v.get("charging")
    if level is None and not isinstance(charging, bool):
        return None
    if level is not None:
        level = min(100.0, max(0.0, level))
    return BatteryState(level=level, charging=charging if isinstance(charging, bool) else None)


def parse_envelope(raw: bytes | str) -> Envelope:
    """Decode a raw broker payload into a typed envelope.

    Raises InvalidMessageError for non-JSON payloads, non-object bodies and
    missing `type`. Unknown `type` values are returned as-is so the caller can
    decide how to drop them.
    """

    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        data = json.loads(text)
    # ValueError covers JSONDecodeError, UnicodeDecodeError and oversized
    # integer literals; RecursionError comes from deeply nested arrays.
    except (ValueError, RecursionError) as exc:
        raise InvalidMessageError(f"payload is not valid JSON: {exc}") from exc

    if not isinstance(data, Mapping):
        raise InvalidMessageError("payload must be a JSON object")

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type.strip():
        raise InvalidMessageError("payload is missing 'type'")

    message_id = data.get("messageId")
    return Envelope(
        type=msg_type.strip(),
        payload=data,
        message_id=str(message_id) if message_id is not None else None,
        timestamp=_parse_timestamp(data.get("timestamp")),
    )


def parse_telemetry(env: Envelope) -> TelemetryMessage:
    p = env.payload
    readings = p.get("data")
    if not isinstance(readings, Mapping):
        raise InvalidMessageError("telemetry 'data' must be an object")

    latitude = longitude = None
    location = p.get("location")
    if isinstance(location, Mapping):
        latitude = _number(location.get("latitude"))
        longitude = _number(location.get("longitude"))
        if latitude is None or longitude is None:
            latitude = longitude = None

    return TelemetryMessage(
        readings=dict(readings),
        timestamp=env.timestamp,
        battery=_parse_battery(p.get("battery")),
        signal_strength=_number(p.get("signalStrength")),
        latitude=latitude,
        longitude=longitude,
        metadata=_mapping(p.get("metadata")),
    )


def parse_status(env: Envelope) -> StatusMessage:
    p = env.payload
    status = p.get("status")
    if not isinstance(status, str) or status not in DEVICE_STATUSES:
        raise InvalidMessageError(f"unsupported device status: {status!r}")
    return StatusMessage(status=status, data=_mapping(p.get("data")), battery=_parse_battery(p.get("battery")))


def parse_device_alert(env: Envelope) -> DeviceAlertMessage:
    p = env.payload

    alert_type = p.get("alertType")
    if alert_type not in ALERT_TYPES:
        alert_type = "other"

    severity = p.get("severity")
    if severity not in ALERT_SEVERITIES:
        severity = "warning"

    message = p.get("message")
    status = p.get("status")

    return DeviceAlertMessage(
        alert_type=alert_type,
        severity=severity,
        message=message.strip() if isinstance(message, str) and message.strip() else None,
        data=_mapping(p.get("data")),
        status=status if isinstance(status, str) and status in DEVICE_STATUSES else None,
        timestamp=env.timestamp,
    )


def parse_command_response(env: Envelope) -> CommandResponseMessage:
    p = env.payload
    command = p.get("command")
    status = p.get("status")
    if not isinstance(command, str) or not isinstance(status, str):
        raise InvalidMessageError("command_response requires 'command' and 'status' strings")
    return CommandResponseMessage(command=command, status=status, data=_mapping(p.get("data")))
