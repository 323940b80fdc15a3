from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    String,
    Integer,
    Float,
    DateTime,
    Boolean,
    JSON,
    Text,
    ForeignKey,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


DEVICE_TYPES = (
    "soil_sensor",
    "weather_station",
    "irrigation_controller",
    "camera",
    "drone",
    "smart_sprayer",
    "gps_tracker",
    "other",
)

DEVICE_STATUSES = ("active", "inactive", "maintenance", "offline", "error")

ALERT_TYPES = (
    "low_battery",
    "offline",
    "threshold_exceeded",
    "threshold_below",
    "maintenance_required",
    "tamper_detected",
    "connectivity_issue",
    "system_error",
    "other",
)

ALERT_SEVERITIES = ("info", "warning", "critical")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def json_type() -> JSON:
    # Keep PostgreSQL JSONB in production while remaining portable for SQLite-based tests.
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    device_type: Mapped[str] = mapped_column(String(32), nullable=False, default="other")

    # Broker routing key; inbound messages are attributed to a device by exact match.
    topic: Mapped[str] = mapped_column(String(512), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    last_communication: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    battery_level: Mapped[float] = mapped_column(Float, nullable=False, default=100)
    battery_charging: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    firmware_version: Mapped[str] = mapped_column(String(64), nullable=False, default="1.0.0")
    firmware_last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    telemetry_interval_s: Mapped[int] = mapped_column(Integer, nullable=False, default=300)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    telemetry_records: Mapped[list["TelemetryRecord"]] = relationship(back_populates="device")
    alerts: Mapped[list["Alert"]] = relationship(back_populates="device")

    __table_args__ = (
        Index("ix_devices_topic", "topic", unique=True),
        Index("ix_devices_status_last_communication", "status", "last_communication"),
    )


class TelemetryRecord(Base):
    __tablename__ = "telemetry_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    device_id: Mapped[str] = mapped_column(String(128), ForeignKey("devices.id"), nullable=False)

    readings: Mapped[dict] = mapped_column(json_type(), nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Battery snapshot as reported with this reading (not the device's current state).
    battery_level: Mapped[float | None] = mapped_column(Float, nullable=True)
    battery_charging: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    signal_strength: Mapped[float | None] = mapped_column(Float, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    # `metadata` is reserved on declarative classes.
    meta: Mapped[dict] = mapped_column("metadata", json_type(), nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    device: Mapped["Device"] = relationship(back_populates="telemetry_records")

    __table_args__ = (Index("ix_telemetry_records_device_timestamp", "device_id", "timestamp"),)


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    device_id: Mapped[str] = mapped_column(String(128), ForeignKey("devices.id"), nullable=False)

    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="warning")
    message: Mapped[str] = mapped_column(String(1024), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    telemetry_data: Mapped[dict] = mapped_column(json_type(), nullable=False, default=dict)
    # Denormalised telemetry_data["parameter"] so the open-alert index can cover it.
    parameter: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    device: Mapped["Device"] = relationship(back_populates="alerts")

    __table_args__ = (
        # At most one open alert per (device, type, parameter).
        Index(
            "uq_alerts_open_device_type_parameter",
            "device_id",
            "alert_type",
            "parameter",
            unique=True,
            sqlite_where=text("resolved = 0"),
            postgresql_where=text("resolved = false"),
        ),
        # Device drill-down queries
        Index("ix_alerts_device_timestamp", "device_id", "timestamp"),
        # Open-only feeds filter resolved and order by timestamp
        Index("ix_alerts_resolved_timestamp", "resolved", "timestamp"),
    )
