from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Device, utcnow
from .errors import DeviceNotFoundError
from .messages import BatteryState


logger = logging.getLogger("iot.devices")


def get_device(session: Session, device_id: str) -> Device | None:
    return session.get(Device, device_id)


def require_device(session: Session, device_id: str) -> Device:
    device = get_device(session, device_id)
    if device is None:
        raise DeviceNotFoundError(device_id)
    return device


def find_device_by_topic(session: Session, topic: str) -> Device | None:
    return session.execute(select(Device).where(Device.topic == topic)).scalar_one_or_none()


def _apply_battery(device: Device, battery: BatteryState | None) -> None:
    if battery is None:
        return
    if battery.level is not None:
        device.battery_level = battery.level
    if battery.charging is not None:
        device.battery_charging = battery.charging


def record_communication(
    device: Device,
    *,
    battery: BatteryState | None = None,
    now: datetime | None = None,
) -> None:
    """Mark a device as heard from: active, last_communication=now, battery if reported."""

    device.last_communication = now or utcnow()
    device.status = "active"
    _apply_battery(device, battery)


def update_device_status(
    device: Device,
    status: str,
    *,
    battery: BatteryState | None = None,
    now: datetime | None = None,
) -> None:
    previous = device.status
    device.status = status
    device.last_communication = now or utcnow()
    _apply_battery(device, battery)

    if previous != status:
        logger.info(
            "device status changed",
            extra={"fields": {"device_id": device.id, "from": previous, "to": status}},
        )


def apply_firmware_update(device: Device, version: str, *, now: datetime | None = None) -> None:
    now = now or utcnow()
    previous = device.firmware_version
    device.firmware_version = version
    device.firmware_last_updated = now
    # A successful update response counts as contact; status is left alone.
    device.last_communication = now
    logger.info(
        "firmware updated",
        extra={"fields": {"device_id": device.id, "from": previous, "to": version}},
    )
