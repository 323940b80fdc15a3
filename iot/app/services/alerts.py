from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Mapping, Sequence

from sqlalchemy import func, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Query, Session, joinedload

from ..models import Alert, Device, utcnow
from .errors import AlertNotFoundError


logger = logging.getLogger("iot.alerts")

ResolvedFilter = Literal["all", "true", "false"]

SYSTEM_RESOLVER = "system"
TOP_DEVICES_LIMIT = 10


@dataclass(frozen=True)
class AlertPage:
    items: list[Alert]
    total: int
    page: int
    limit: int
    pages: int


@dataclass(frozen=True)
class TypeCount:
    type: str
    count: int


@dataclass(frozen=True)
class DeviceCount:
    device_id: str
    name: str
    device_type: str
    count: int


@dataclass(frozen=True)
class AlertSummary:
    total: int
    unresolved: int
    critical: int
    by_type: list[TypeCount]
    top_devices: list[DeviceCount]


def _dialect_insert(session: Session):
    dialect = (session.bind.dialect.name if session.bind is not None else "").strip().lower()
    if dialect == "sqlite":
        return sqlite_insert(Alert), text("resolved = 0")
    return pg_insert(Alert), text("resolved = false")


def _scoped(q: Query, device_ids: Sequence[str] | None) -> Query:
    if device_ids is not None:
        q = q.filter(Alert.device_id.in_(list(device_ids)))
    return q


def find_open_alert(
    session: Session, *, device_id: str, alert_type: str, parameter: str = ""
) -> Alert | None:
    return (
        session.query(Alert)
        .filter(
            Alert.device_id == device_id,
            Alert.alert_type == alert_type,
            Alert.parameter == parameter,
            Alert.resolved.is_(False),
        )
        .order_by(Alert.timestamp.desc())
        .first()
    )


def open_alerts(
    session: Session, *, device_id: str, alert_type: str, parameter: str | None = None
) -> list[Alert]:
    q = session.query(Alert).filter(
        Alert.device_id == device_id,
        Alert.alert_type == alert_type,
        Alert.resolved.is_(False),
    )
    if parameter is not None:
        q = q.filter(Alert.parameter == parameter)
    return q.all()


def create_alert(
    session: Session,
    *,
    device_id: str,
    alert_type: str,
    severity: str,
    message: str,
    telemetry_data: Mapping[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> Alert | None:
    """Open an alert unless one is already open for (device, type, parameter).

    Returns the new alert, or None when an open duplicate suppressed it. The
    existence check keeps the common path cheap; the conflict-safe insert
    against the partial unique index keeps concurrent writers from both
    opening one.
    """

    data = dict(telemetry_data or {})
    parameter = str(data.get("parameter") or "")

    # Core insert bypasses the unit of work; pending ORM writes (a resolution
    # earlier in the same transaction) must land before the check and insert.
    session.flush()

    existing = find_open_alert(session, device_id=device_id, alert_type=alert_type, parameter=parameter)
    if existing is not None:
        logger.debug(
            "alert suppressed (already open)",
            extra={
                "fields": {
                    "device_id": device_id,
                    "alert_type": alert_type,
                    "parameter": parameter,
                    "open_alert_id": existing.id,
                }
            },
        )
        return None

    now = utcnow()
    insert, open_where = _dialect_insert(session)
    stmt = (
        insert.values(
            id=str(uuid.uuid4()),
            device_id=device_id,
            alert_type=alert_type,
            severity=severity,
            message=message,
            timestamp=timestamp or now,
            resolved=False,
            telemetry_data=data,
            parameter=parameter,
            notification_sent=False,
            created_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=["device_id", "alert_type", "parameter"],
            index_where=open_where,
        )
        .returning(Alert.id)
    )
    alert_id = session.execute(stmt).scalar_one_or_none()
    if alert_id is None:
        logger.info(
            "alert suppressed (concurrent insert)",
            extra={"fields": {"device_id": device_id, "alert_type": alert_type, "parameter": parameter}},
        )
        return None

    alert = session.get(Alert, alert_id)
    logger.info(
        "alert opened",
        extra={
            "fields": {
                "alert_id": alert_id,
                "device_id": device_id,
                "alert_type": alert_type,
                "severity": severity,
                "parameter": parameter,
            }
        },
    )
    return alert


def mark_resolved(alert: Alert, *, resolved_by: str, notes: str = "", now: datetime | None = None) -> None:
    alert.resolved = True
    alert.resolved_at = now or utcnow()
    alert.resolved_by = resolved_by
    alert.resolution_notes = notes
    logger.info(
        "alert resolved",
        extra={
            "fields": {
                "alert_id": alert.id,
                "device_id": alert.device_id,
                "alert_type": alert.alert_type,
                "resolved_by": resolved_by,
            }
        },
    )


def get_alert(session: Session, alert_id: str) -> Alert | None:
    return (
        session.query(Alert).options(joinedload(Alert.device)).filter(Alert.id == alert_id).one_or_none()
    )


def get_alerts(
    session: Session,
    *,
    device_ids: Sequence[str] | None = None,
    resolved: ResolvedFilter = "all",
    severity: str | None = None,
    alert_type: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 100,
    page: int = 1,
) -> AlertPage:
    """Page through alerts newest-first. Filters combine with AND."""

    if resolved not in ("all", "true", "false"):
        raise ValueError("resolved must be one of: all, true, false")
    if limit < 1:
        raise ValueError("limit must be >= 1")
    if page < 1:
        raise ValueError("page must be >= 1")

    q = _scoped(session.query(Alert), device_ids)
    if resolved != "all":
        q = q.filter(Alert.resolved.is_(resolved == "true"))
    if severity:
        q = q.filter(Alert.severity == severity)
    if alert_type:
        q = q.filter(Alert.alert_type == alert_type)
    if start_date is not None:
        q = q.filter(Alert.timestamp >= start_date)
    if end_date is not None:
        q = q.filter(Alert.timestamp <= end_date)

    total = q.count()
    rows = (
        q.options(joinedload(Alert.device))
        .order_by(Alert.timestamp.desc(), Alert.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return AlertPage(items=rows, total=total, page=page, limit=limit, pages=math.ceil(total / limit))


def get_alerts_by_device(session: Session, device_id: str, **filters: Any) -> AlertPage:
    return get_alerts(session, device_ids=[device_id], **filters)


def resolve_alert(
    session: Session,
    alert_id: str,
    *,
    user_id: str,
    notes: str = "",
    now: datetime | None = None,
) -> Alert:
    alert = get_alert(session, alert_id)
    if alert is None:
        raise AlertNotFoundError(alert_id)
    mark_resolved(alert, resolved_by=user_id, notes=notes, now=now)
    session.flush()
    return alert


def delete_alert(session: Session, alert_id: str) -> bool:
    alert = session.get(Alert, alert_id)
    if alert is None:
        return False
    session.delete(alert)
    session.flush()
    logger.info(
        "alert deleted",
        extra={"fields": {"alert_id": alert_id, "device_id": alert.device_id}},
    )
    return True


def get_alerts_summary(session: Session, *, device_ids: Sequence[str] | None = None) -> AlertSummary:
    total = _scoped(session.query(Alert), device_ids).count()

    unresolved_q = _scoped(session.query(Alert), device_ids).filter(Alert.resolved.is_(False))
    unresolved = unresolved_q.count()
    critical = unresolved_q.filter(Alert.severity == "critical").count()

    count_col = func.count(Alert.id).label("count")

    type_rows = (
        _scoped(session.query(Alert.alert_type, count_col), device_ids)
        .filter(Alert.resolved.is_(False))
        .group_by(Alert.alert_type)
        .order_by(count_col.desc(), Alert.alert_type.asc())
        .all()
    )

    device_rows = (
        _scoped(session.query(Alert.device_id, count_col), device_ids)
        .filter(Alert.resolved.is_(False))
        .group_by(Alert.device_id)
        .order_by(count_col.desc(), Alert.device_id.asc())
        .limit(TOP_DEVICES_LIMIT)
        .all()
    )

    top_ids = [row.device_id for row in device_rows]
    devices: dict[str, Device] = {}
    if top_ids:
        devices = {d.id: d for d in session.query(Device).filter(Device.id.in_(top_ids)).all()}

    top_devices: list[DeviceCount] = []
    for row in device_rows:
        d = devices.get(row.device_id)
        top_devices.append(
            DeviceCount(
                device_id=row.device_id,
                name=d.name if d is not None else "Unknown Device",
                device_type=d.device_type if d is not None else "unknown",
                count=int(row.count),
            )
        )

    return AlertSummary(
        total=total,
        unresolved=unresolved,
        critical=critical,
        by_type=[TypeCount(type=row.alert_type, count=int(row.count)) for row in type_rows],
        top_devices=top_devices,
    )
