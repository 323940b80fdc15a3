from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response


# -----------------------------
# Context (HTTP request_id, inbound broker message)
# -----------------------------


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
mqtt_topic_ctx: ContextVar[Optional[str]] = ContextVar("mqtt_topic", default=None)
mqtt_message_id_ctx: ContextVar[Optional[str]] = ContextVar("mqtt_message_id", default=None)


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def get_mqtt_topic() -> Optional[str]:
    return mqtt_topic_ctx.get()


def get_mqtt_message_id() -> Optional[str]:
    return mqtt_message_id_ctx.get()


@contextmanager
def message_context(*, topic: str, message_id: str | None = None) -> Iterator[None]:
    """Bind the inbound topic (and message id when the device sent one) to log records.

    Messages are handled on the broker client's network thread, so the values are
    reset on exit to keep one message's context from leaking into the next.
    """

    token_topic = mqtt_topic_ctx.set(topic)
    token_mid = mqtt_message_id_ctx.set(message_id)
    try:
        yield
    finally:
        mqtt_topic_ctx.reset(token_topic)
        mqtt_message_id_ctx.reset(token_mid)


def _extract_request_id(request: Request) -> str:
    # Common upstream headers
    rid = request.headers.get("X-Request-ID") or request.headers.get("X-Correlation-ID")
    if rid:
        return rid.strip()
    return uuid.uuid4().hex


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request_id to each request.

    The request_id is accepted from upstream (X-Request-ID / X-Correlation-ID) or
    generated, stored in a ContextVar for log records, and echoed back as X-Request-ID.

    This middleware also emits a structured request log record ("iot.http").
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        rid = _extract_request_id(request)
        token_rid = request_id_ctx.set(rid)

        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                duration_ms = int((time.perf_counter() - start) * 1000)
                logging.getLogger("iot.http").exception(
                    "request_error",
                    extra={
                        "httpRequest": _http_request_payload(request, status=500, duration_ms=duration_ms),
                        "fields": {"duration_ms": duration_ms},
                    },
                )
                raise

            response.headers["X-Request-ID"] = rid

            duration_ms = int((time.perf_counter() - start) * 1000)
            logging.getLogger("iot.http").info(
                "request",
                extra={
                    "httpRequest": _http_request_payload(
                        request, status=response.status_code, duration_ms=duration_ms
                    ),
                    "fields": {"duration_ms": duration_ms},
                },
            )
            return response
        finally:
            request_id_ctx.reset(token_rid)


def _http_request_payload(request: Request, *, status: int, duration_ms: int) -> dict[str, Any]:
    client_ip = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")

    payload: dict[str, Any] = {
        "requestMethod": request.method,
        "requestUrl": request.url.path,
        "status": status,
        "latency": f"{duration_ms / 1000:.3f}s",
    }
    if client_ip:
        payload["remoteIp"] = client_ip
    if user_agent:
        payload["userAgent"] = user_agent
    return payload


# -----------------------------
# Logging
# -----------------------------


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        record.mqtt_topic = get_mqtt_topic()
        record.mqtt_message_id = get_mqtt_message_id()
        return True


@dataclass
class JsonLogConfig:
    service_name: str = "agrimaan-iot-service"


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter.

    - Adds request_id for HTTP requests
    - Adds mqtt.topic / mqtt.message_id while a broker message is being handled
    - Copies `extra={"fields": {...}}` through unchanged
    """

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
        }

        rid = getattr(record, "request_id", None)
        if rid:
            payload["request_id"] = rid

        topic = getattr(record, "mqtt_topic", None)
        if topic:
            mqtt: dict[str, Any] = {"topic": topic}
            mid = getattr(record, "mqtt_message_id", None)
            if mid:
                mqtt["message_id"] = mid
            payload["mqtt"] = mqtt

        # Attach any explicit structured extra payload under "fields".
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields

        http_request = getattr(record, "httpRequest", None)
        if isinstance(http_request, dict):
            payload["httpRequest"] = http_request

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def configure_logging(*, level: int, log_format: str, service_name: str = "agrimaan-iot-service") -> None:
    """Configure app logging.

    - log_format="json": structured single-line JSON
    - log_format="text": standard human-readable
    """

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())

    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig(service_name=service_name)))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))

    root.addHandler(handler)
