from __future__ import annotations

import logging
import secrets
import time
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from ..db import db_session
from ..models import utcnow
from .broker import BrokerConnection
from .devices import require_device


logger = logging.getLogger("iot.commands")

SessionFactory = Callable[[], AbstractContextManager[Session]]


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def new_command_id(now_ms: int | None = None) -> str:
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"cmd-{ms}-{secrets.token_hex(5)[:9]}"


def build_command_envelope(command: str, data: Mapping[str, Any] | None = None) -> dict[str, Any]:
    return {
        "type": "command",
        "command": command,
        "data": dict(data or {}),
        "timestamp": _iso(utcnow()),
        "messageId": new_command_id(),
    }


def build_ping_envelope() -> dict[str, Any]:
    return {
        "type": "ping",
        "timestamp": _iso(utcnow()),
        "messageId": f"ping-{int(time.time() * 1000)}",
    }


class CommandDispatcher:
    """Publish commands and connectivity probes to a device's control topics."""

    def __init__(
        self,
        broker: BrokerConnection,
        *,
        session_factory: SessionFactory | None = None,
        connectivity_timeout_s: float = 5.0,
    ) -> None:
        self.broker = broker
        self._session_factory = session_factory or db_session
        self.connectivity_timeout_s = connectivity_timeout_s

    def _device_topic(self, device_id: str) -> str:
        with self._session_factory() as session:
            return require_device(session, device_id).topic

    def send_command(self, device_id: str, command: str, data: Mapping[str, Any] | None = None) -> bool:
        """Publish a command envelope to `{topic}/commands` (qos 1, not retained).

        Never raises; failures (unknown device included) are logged and return False.
        """

        try:
            topic = f"{self._device_topic(device_id)}/commands"
            envelope = build_command_envelope(command, data)
            self.broker.publish(topic, envelope, qos=1, retain=False)
        except Exception:
            logger.exception(
                "command dispatch failed",
                extra={"fields": {"device_id": device_id, "command": command}},
            )
            return False

        logger.info(
            "command sent",
            extra={
                "fields": {
                    "device_id": device_id,
                    "command": command,
                    "message_id": envelope["messageId"],
                    "topic": topic,
                }
            },
        )
        return True

    def check_device_connectivity(self, device_id: str) -> bool:
        """Ping `{topic}/ping` and wait for anything on `{topic}/pong`."""

        try:
            topic = self._device_topic(device_id)
            reply = self.broker.request(
                f"{topic}/ping",
                build_ping_envelope(),
                reply_topic=f"{topic}/pong",
                timeout_s=self.connectivity_timeout_s,
            )
        except Exception:
            logger.exception("connectivity check failed", extra={"fields": {"device_id": device_id}})
            return False

        reachable = reply is not None
        logger.info(
            "connectivity check",
            extra={"fields": {"device_id": device_id, "reachable": reachable}},
        )
        return reachable
