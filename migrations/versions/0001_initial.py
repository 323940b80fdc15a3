"""initial schema: devices, telemetry records, alerts

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _json_type():
    if _is_postgres():
        return postgresql.JSONB(astext_type=sa.Text())
    return sa.JSON()


def _json_object_default():
    if _is_postgres():
        return sa.text("'{}'::jsonb")
    return sa.text("'{}'")


def _now_default():
    if _is_postgres():
        return sa.text("now()")
    return sa.text("CURRENT_TIMESTAMP")


def _false_default():
    return sa.text("false") if _is_postgres() else sa.text("0")


def upgrade() -> None:
    op.create_table(
        "devices",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("device_type", sa.String(length=32), nullable=False, server_default=sa.text("'other'")),
        sa.Column("topic", sa.String(length=512), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'active'")),
        sa.Column("last_communication", sa.DateTime(timezone=True), nullable=True),
        sa.Column("battery_level", sa.Float(), nullable=False, server_default=sa.text("100")),
        sa.Column("battery_charging", sa.Boolean(), nullable=False, server_default=_false_default()),
        sa.Column("firmware_version", sa.String(length=64), nullable=False, server_default=sa.text("'1.0.0'")),
        sa.Column("firmware_last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("telemetry_interval_s", sa.Integer(), nullable=False, server_default=sa.text("300")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
    )
    op.create_index("ix_devices_topic", "devices", ["topic"], unique=True)
    op.create_index("ix_devices_status_last_communication", "devices", ["status", "last_communication"])

    op.create_table(
        "telemetry_records",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("device_id", sa.String(length=128), sa.ForeignKey("devices.id"), nullable=False),
        sa.Column("readings", _json_type(), nullable=False, server_default=_json_object_default()),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.Column("battery_level", sa.Float(), nullable=True),
        sa.Column("battery_charging", sa.Boolean(), nullable=True),
        sa.Column("signal_strength", sa.Float(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("metadata", _json_type(), nullable=False, server_default=_json_object_default()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
    )
    op.create_index(
        "ix_telemetry_records_device_timestamp", "telemetry_records", ["device_id", "timestamp"]
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("device_id", sa.String(length=128), sa.ForeignKey("devices.id"), nullable=False),
        sa.Column("alert_type", sa.String(length=32), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default=sa.text("'warning'")),
        sa.Column("message", sa.String(length=1024), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=_false_default()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        sa.Column("resolution_notes", sa.String(length=1024), nullable=True),
        sa.Column("telemetry_data", _json_type(), nullable=False, server_default=_json_object_default()),
        sa.Column("parameter", sa.String(length=64), nullable=False, server_default=sa.text("''")),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default=_false_default()),
        sa.Column("notification_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
    )
    op.create_index(
        "uq_alerts_open_device_type_parameter",
        "alerts",
        ["device_id", "alert_type", "parameter"],
        unique=True,
        sqlite_where=sa.text("resolved = 0"),
        postgresql_where=sa.text("resolved = false"),
    )
    op.create_index("ix_alerts_device_timestamp", "alerts", ["device_id", "timestamp"])
    op.create_index("ix_alerts_resolved_timestamp", "alerts", ["resolved", "timestamp"])


def downgrade() -> None:
    op.drop_index("ix_alerts_resolved_timestamp", table_name="alerts")
    op.drop_index("ix_alerts_device_timestamp", table_name="alerts")
    op.drop_index("uq_alerts_open_device_type_parameter", table_name="alerts")
    op.drop_table("alerts")

    op.drop_index("ix_telemetry_records_device_timestamp", table_name="telemetry_records")
    op.drop_table("telemetry_records")

    op.drop_index("ix_devices_status_last_communication", table_name="devices")
    op.drop_index("ix_devices_topic", table_name="devices")
    op.drop_table("devices")
