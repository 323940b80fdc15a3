from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping

from sqlalchemy.orm import Session

from ..alert_rules import AlertRules, format_number, load_alert_rules
from ..config import settings
from ..models import Alert, Device, TelemetryRecord, utcnow
from .alerts import SYSTEM_RESOLVER, create_alert, mark_resolved, open_alerts
from .errors import DeviceNotFoundError


logger = logging.getLogger("iot.monitor")


def _rules(rules: AlertRules | None) -> AlertRules:
    return rules if rules is not None else load_alert_rules(settings.alert_rules_version)


def _reading(readings: Mapping[str, Any], parameter: str) -> float | None:
    v = readings.get(parameter)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def _load_device(session: Session, record: TelemetryRecord) -> Device:
    device = session.get(Device, record.device_id)
    if device is None:
        raise DeviceNotFoundError(record.device_id)
    return device


def evaluate_telemetry(
    session: Session,
    record: TelemetryRecord,
    *,
    rules: AlertRules | None = None,
) -> list[Alert]:
    """Open alerts for conditions this reading newly violates.

    - Battery: below `low_pct` while not charging opens `low_battery`
      (critical below `critical_pct`, warning otherwise).
    - Device-type rules: each rule for the device type is checked in order.

    Conditions that already have an open alert are skipped. Returns the alerts
    opened by this reading.
    """

    device = _load_device(session, record)
    r = _rules(rules)
    created: list[Alert] = []

    level = record.battery_level
    if level is not None and level < r.battery.low_pct and not record.battery_charging:
        alert = create_alert(
            session,
            device_id=device.id,
            alert_type="low_battery",
            severity=r.battery.severity_for(level),
            message=f"Low battery ({format_number(level)}%) on device {device.name}",
            telemetry_data={"batteryLevel": level, "charging": bool(record.battery_charging)},
        )
        if alert is not None:
            created.append(alert)

    for rule in r.rules_for(device.device_type):
        value = _reading(record.readings, rule.parameter)
        if value is None or not rule.triggered(value):
            continue
        alert = create_alert(
            session,
            device_id=device.id,
            alert_type=rule.alert_type,
            severity=rule.severity,
            message=rule.format_message(device_name=device.name, value=value),
            telemetry_data={"parameter": rule.parameter, "value": value, "threshold": rule.threshold},
        )
        if alert is not None:
            created.append(alert)

    return created


def auto_resolve_alerts(
    session: Session,
    record: TelemetryRecord,
    *,
    rules: AlertRules | None = None,
    now: datetime | None = None,
) -> int:
    """Resolve open alerts whose clearing condition this reading satisfies.

    Each rule is checked independently and every matching open alert is closed,
    with resolved_by="system". Returns the number of alerts resolved.
    """

    device = _load_device(session, record)
    r = _rules(rules)
    now = now or utcnow()
    resolved = 0

    level = record.battery_level
    if level is not None and level > r.battery.recover_pct:
        for alert in open_alerts(session, device_id=device.id, alert_type="low_battery"):
            mark_resolved(
                alert,
                resolved_by=SYSTEM_RESOLVER,
                notes=f"Auto-resolved: Battery level improved to {format_number(level)}%",
                now=now,
            )
            resolved += 1

    for rule in r.rules_for(device.device_type):
        value = _reading(record.readings, rule.parameter)
        if value is None or not rule.cleared(value):
            continue
        for alert in open_alerts(
            session, device_id=device.id, alert_type=rule.alert_type, parameter=rule.parameter
        ):
            mark_resolved(
                alert,
                resolved_by=SYSTEM_RESOLVER,
                notes=rule.format_resolution(value=value),
                now=now,
            )
            resolved += 1

    if resolved:
        session.flush()
    return resolved


def resolve_offline_alerts(session: Session, device: Device, *, now: datetime | None = None) -> int:
    """Close open `offline` alerts once the device is heard from again."""

    now = now or utcnow()
    alerts = open_alerts(session, device_id=device.id, alert_type="offline")
    for alert in alerts:
        mark_resolved(
            alert,
            resolved_by=SYSTEM_RESOLVER,
            notes="Auto-resolved: Device communication resumed",
            now=now,
        )
    return len(alerts)


def ensure_offline_alerts(
    session: Session,
    *,
    now: datetime | None = None,
    offline_after_s: int | None = None,
) -> int:
    """Mark silent active devices offline and open a deduplicated `offline` alert.

    Returns the number of devices transitioned to offline.
    """

    now = now or utcnow()
    window = offline_after_s if offline_after_s is not None else settings.device_offline_after_s
    cutoff = now - timedelta(seconds=window)

    silent = (
        session.query(Device)
        .filter(
            Device.status == "active",
            Device.last_communication.is_not(None),
            Device.last_communication < cutoff,
        )
        .all()
    )
    for device in silent:
        device.status = "offline"
        last = device.last_communication.isoformat() if device.last_communication else "never"
        create_alert(
            session,
            device_id=device.id,
            alert_type="offline",
            severity="warning",
            message=f"Device {device.name} is offline (last communication: {last})",
            telemetry_data={"lastCommunication": last, "offlineAfterS": window},
            timestamp=now,
        )
        logger.info(
            "device marked offline",
            extra={"fields": {"device_id": device.id, "last_communication": last}},
        )
    return len(silent)
