from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Literal

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..models import Device, TelemetryRecord, utcnow
from .messages import TelemetryMessage, normalize_utc


Interval = Literal["hour", "day", "week", "month"]

INTERVAL_FORMATS: dict[str, str] = {
    "hour": "%Y-%m-%d %H:00",
    "day": "%Y-%m-%d",
    "week": "%G-W%V",
    "month": "%Y-%m",
}

# Readings aggregated per device type; battery and signal apply to every type.
DEVICE_TYPE_METRICS: dict[str, tuple[str, ...]] = {
    "soil_sensor": ("moisture", "temperature"),
    "weather_station": ("temperature", "humidity", "rainfall"),
}
COMMON_METRICS = ("battery", "signal")

# Accumulated metrics report a sum instead of an average.
SUM_METRICS = frozenset({"rainfall"})


@dataclass(frozen=True)
class TelemetryPage:
    items: list[TelemetryRecord]
    total: int
    page: int
    limit: int
    pages: int


@dataclass
class TelemetryBucket:
    bucket: str
    count: int
    first_timestamp: datetime
    last_timestamp: datetime
    metrics: dict[str, dict[str, float | None]] = field(default_factory=dict)


def record_telemetry(
    session: Session,
    device: Device,
    message: TelemetryMessage,
    *,
    now: datetime | None = None,
) -> TelemetryRecord:
    """Persist one telemetry reading. Records are insert-only."""

    battery = message.battery
    record = TelemetryRecord(
        id=str(uuid.uuid4()),
        device_id=device.id,
        readings=dict(message.readings),
        timestamp=message.timestamp or now or utcnow(),
        battery_level=battery.level if battery is not None else None,
        battery_charging=battery.charging if battery is not None else None,
        signal_strength=message.signal_strength,
        latitude=message.latitude,
        longitude=message.longitude,
        meta=dict(message.metadata),
    )
    session.add(record)
    session.flush()
    return record


def _in_range(stmt, start_date: datetime | None, end_date: datetime | None):
    if start_date is not None:
        stmt = stmt.where(TelemetryRecord.timestamp >= start_date)
    if end_date is not None:
        stmt = stmt.where(TelemetryRecord.timestamp <= end_date)
    return stmt


def get_device_telemetry(
    session: Session,
    device_id: str,
    *,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 100,
    page: int = 1,
) -> TelemetryPage:
    """Page through a device's readings newest-first, optionally within [start, end]."""

    if limit < 1:
        raise ValueError("limit must be >= 1")
    if page < 1:
        raise ValueError("page must be >= 1")

    base = _in_range(select(TelemetryRecord).where(TelemetryRecord.device_id == device_id), start_date, end_date)
    total = int(session.execute(select(func.count()).select_from(base.subquery())).scalar_one())
    rows = (
        session.execute(
            base.order_by(TelemetryRecord.timestamp.desc(), TelemetryRecord.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return TelemetryPage(items=list(rows), total=total, page=page, limit=limit, pages=math.ceil(total / limit))


def get_latest_telemetry(session: Session, device_id: str) -> TelemetryRecord | None:
    return session.execute(
        select(TelemetryRecord)
        .where(TelemetryRecord.device_id == device_id)
        .order_by(TelemetryRecord.timestamp.desc(), TelemetryRecord.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def _metric_value(record: TelemetryRecord, metric: str) -> float | None:
    if metric == "battery":
        v: Any = record.battery_level
    elif metric == "signal":
        v = record.signal_strength
    else:
        v = (record.readings or {}).get(metric)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def _select_metrics(device_type: str, metrics: str | Iterable[str]) -> tuple[str, ...]:
    available = DEVICE_TYPE_METRICS.get(device_type, ()) + COMMON_METRICS
    if isinstance(metrics, str):
        if metrics.strip().lower() == "all":
            return available
        wanted = {m.strip() for m in metrics.split(",") if m.strip()}
    else:
        wanted = set(metrics)
    return tuple(m for m in available if m in wanted)


def _summarise(metric: str, values: list[float]) -> dict[str, float | None]:
    if not values:
        if metric in SUM_METRICS:
            return {"sum": None, "max": None}
        return {"avg": None, "min": None, "max": None}
    if metric in SUM_METRICS:
        return {"sum": sum(values), "max": max(values)}
    return {"avg": sum(values) / len(values), "min": min(values), "max": max(values)}


def get_aggregated_telemetry(
    session: Session,
    device: Device,
    *,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    interval: Interval = "day",
    metrics: str | Iterable[str] = "all",
) -> list[TelemetryBucket]:
    """Group a device's readings into UTC calendar buckets, oldest bucket first.

    Which readings are summarised depends on the device type; battery level and
    signal strength are available for every device. Values that are missing or
    non-numeric are skipped, so a bucket's `count` can exceed the number of
    values behind a metric.
    """

    fmt = INTERVAL_FORMATS.get(interval)
    if fmt is None:
        raise ValueError(f"interval must be one of: {', '.join(INTERVAL_FORMATS)}")

    selected = _select_metrics(device.device_type, metrics)
    rows = session.execute(
        _in_range(select(TelemetryRecord).where(TelemetryRecord.device_id == device.id), start_date, end_date)
        .order_by(TelemetryRecord.timestamp.asc(), TelemetryRecord.id.asc())
    ).scalars()

    buckets: dict[str, TelemetryBucket] = {}
    values: dict[str, dict[str, list[float]]] = {}
    for record in rows:
        ts = normalize_utc(record.timestamp)
        key = ts.strftime(fmt)
        b = buckets.get(key)
        if b is None:
            b = buckets[key] = TelemetryBucket(bucket=key, count=0, first_timestamp=ts, last_timestamp=ts)
            values[key] = {m: [] for m in selected}
        b.count += 1
        b.first_timestamp = min(b.first_timestamp, ts)
        b.last_timestamp = max(b.last_timestamp, ts)
        for m in selected:
            v = _metric_value(record, m)
            if v is not None:
                values[key][m].append(v)

    out = sorted(buckets.values(), key=lambda b: b.first_timestamp)
    for b in out:
        b.metrics = {m: _summarise(m, values[b.bucket][m]) for m in selected}
    return out


def retention_cutoff(days: int, *, now: datetime | None = None) -> datetime:
    return (now or utcnow()) - timedelta(days=max(0, int(days)))


def count_old_telemetry(session: Session, *, cutoff: datetime) -> int:
    return int(
        session.execute(
            select(func.count()).select_from(TelemetryRecord).where(TelemetryRecord.timestamp < cutoff)
        ).scalar_one()
    )


def delete_old_telemetry(session: Session, *, cutoff: datetime, batch_size: int | None = None) -> int:
    """Delete readings older than `cutoff`, oldest first.

    With `batch_size`, at most that many rows go per call so large backlogs can
    be drained without one long-running DELETE.
    """

    if batch_size is None:
        stmt = delete(TelemetryRecord).where(TelemetryRecord.timestamp < cutoff)
    else:
        doomed = (
            select(TelemetryRecord.id)
            .where(TelemetryRecord.timestamp < cutoff)
            .order_by(TelemetryRecord.timestamp.asc())
            .limit(int(batch_size))
        )
        stmt = delete(TelemetryRecord).where(TelemetryRecord.id.in_(doomed))
    res = session.execute(stmt.execution_options(synchronize_session=False))
    return int(res.rowcount or 0)
