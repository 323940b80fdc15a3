from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from typing import Callable

from sqlalchemy.orm import Session

from ..alert_rules import AlertRules
from ..db import db_session
from ..models import Device, utcnow
from ..observability import message_context
from .alerts import create_alert
from .devices import apply_firmware_update, find_device_by_topic, record_communication, update_device_status
from .errors import InvalidMessageError
from .messages import (
    Envelope,
    parse_command_response,
    parse_device_alert,
    parse_envelope,
    parse_status,
    parse_telemetry,
)
from .monitor import auto_resolve_alerts, evaluate_telemetry, resolve_offline_alerts
from .telemetry import record_telemetry


logger = logging.getLogger("iot.router")

SessionFactory = Callable[[], AbstractContextManager[Session]]

# Outbound command/probe subtopics are echoed back by the wildcard subscription.
CONTROL_SUFFIXES = ("/commands", "/ping", "/pong")

_STATUS_ALERT_TYPES = {"offline": "offline", "error": "system_error"}


class MessageRouter:
    """Classify inbound broker messages by `type` and apply them.

    Each message runs in its own unit of work. Any failure is logged and
    rolled back so the next message is unaffected.
    """

    def __init__(
        self,
        *,
        topic_prefix: str,
        session_factory: SessionFactory | None = None,
        rules: AlertRules | None = None,
    ) -> None:
        self.topic_prefix = topic_prefix.strip("/")
        self._session_factory = session_factory or db_session
        self._rules = rules
        self._handlers: dict[str, Callable[[Session, Device, Envelope], None]] = {
            "telemetry": self._handle_telemetry,
            "command_response": self._handle_command_response,
            "status": self._handle_status,
            "alert": self._handle_alert,
        }

    def _in_namespace(self, topic: str) -> bool:
        head = self.topic_prefix.split("/")
        return topic.split("/")[: len(head)] == head

    def handle_message(self, topic: str, raw_payload: bytes | str) -> None:
        if not self._in_namespace(topic):
            return
        if topic.endswith(CONTROL_SUFFIXES):
            logger.debug("ignoring control topic", extra={"fields": {"topic": topic}})
            return

        try:
            env = parse_envelope(raw_payload)
        except InvalidMessageError as exc:
            with message_context(topic=topic):
                logger.warning("dropping malformed message", extra={"fields": {"error": str(exc)}})
            return

        with message_context(topic=topic, message_id=env.message_id):
            handler = self._handlers.get(env.type)
            if handler is None:
                logger.warning("dropping message with unknown type", extra={"fields": {"type": env.type}})
                return
            try:
                with self._session_factory() as session:
                    device = find_device_by_topic(session, topic)
                    if device is None:
                        logger.warning("dropping message from unknown device")
                        return
                    handler(session, device, env)
            except InvalidMessageError as exc:
                logger.warning(
                    "dropping invalid message",
                    extra={"fields": {"type": env.type, "error": str(exc)}},
                )
            except Exception:
                logger.exception("message processing failed", extra={"fields": {"type": env.type}})

    # -----------------------------
    # Handlers
    # -----------------------------

    def _handle_telemetry(self, session: Session, device: Device, env: Envelope) -> None:
        msg = parse_telemetry(env)
        now = utcnow()

        record = record_telemetry(session, device, msg, now=now)
        created = evaluate_telemetry(session, record, rules=self._rules)
        resolved = auto_resolve_alerts(session, record, rules=self._rules, now=now)

        record_communication(device, battery=msg.battery, now=now)
        resolved += resolve_offline_alerts(session, device, now=now)

        logger.info(
            "telemetry recorded",
            extra={
                "fields": {
                    "device_id": device.id,
                    "record_id": record.id,
                    "alerts_opened": len(created),
                    "alerts_resolved": resolved,
                }
            },
        )

    def _handle_command_response(self, session: Session, device: Device, env: Envelope) -> None:
        msg = parse_command_response(env)
        logger.info(
            "command response",
            extra={"fields": {"device_id": device.id, "command": msg.command, "status": msg.status}},
        )
        if msg.command != "firmware_update" or msg.status != "success":
            return
        version = msg.data.get("version")
        if not isinstance(version, str) or not version.strip():
            logger.warning("firmware_update success without a version", extra={"fields": {"device_id": device.id}})
            return
        apply_firmware_update(device, version.strip())

    def _handle_status(self, session: Session, device: Device, env: Envelope) -> None:
        msg = parse_status(env)
        now = utcnow()
        update_device_status(device, msg.status, battery=msg.battery, now=now)

        alert_type = _STATUS_ALERT_TYPES.get(msg.status)
        if alert_type is not None:
            create_alert(
                session,
                device_id=device.id,
                alert_type=alert_type,
                severity="warning",
                message=f"Device {device.name} reported status: {msg.status}",
                telemetry_data=msg.data,
                timestamp=env.timestamp,
            )
        elif msg.status == "active":
            resolve_offline_alerts(session, device, now=now)

    def _handle_alert(self, session: Session, device: Device, env: Envelope) -> None:
        msg = parse_device_alert(env)
        create_alert(
            session,
            device_id=device.id,
            alert_type=msg.alert_type,
            severity=msg.severity,
            message=msg.message or f"Alert from device {device.name}",
            telemetry_data=msg.data,
            timestamp=msg.timestamp,
        )
        if msg.status is not None:
            update_device_status(device, msg.status)
