from __future__ import annotations

import json
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from ..config import Settings
from .errors import BrokerConnectionError


logger = logging.getLogger("iot.broker")

MessageHandler = Callable[[str, bytes], None]
ClientFactory = Callable[[str], Any]

_TLS_SCHEMES = {"mqtts", "ssl"}


def default_client_id() -> str:
    return f"agrimaan-iot-service-{secrets.token_hex(4)}"


def _paho_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)


def _encode(message: Any) -> str | bytes:
    if isinstance(message, (str, bytes)):
        return message
    return json.dumps(message, separators=(",", ":"), default=str)


@dataclass
class _Waiter:
    reply_topic: str
    event: threading.Event = field(default_factory=threading.Event)
    payload: bytes | None = None


class BrokerConnection:
    """One long-lived publish/subscribe connection to the MQTT broker.

    Build one per process and hand it to the router and the command dispatcher.
    The paho network thread (`loop_start`) delivers inbound messages to the
    registered handlers and owns automatic reconnects.
    """

    def __init__(
        self,
        *,
        broker_url: str,
        topic_prefix: str,
        client_id: str | None = None,
        username: str | None = None,
        password: str | None = None,
        reconnect_period_s: int = 5,
        keepalive_s: int = 60,
        connect_timeout_s: float = 10.0,
        client_factory: ClientFactory | None = None,
    ) -> None:
        parts = urlsplit(broker_url)
        self._tls = parts.scheme in _TLS_SCHEMES
        self._host = parts.hostname or "localhost"
        self._port = parts.port or (8883 if self._tls else 1883)

        self.topic_prefix = topic_prefix.strip("/")
        self.client_id = client_id or default_client_id()
        self._username = username
        self._password = password
        self._reconnect_period_s = reconnect_period_s
        self._keepalive_s = keepalive_s
        self._connect_timeout_s = connect_timeout_s
        self._client_factory = client_factory or _paho_client

        self._client: Any | None = None
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._failure: str | None = None
        self._subscribe_mid: int | None = None
        self._has_connected = False
        self._closing = False

        self._handlers: list[MessageHandler] = []
        self._waiters: dict[str, _Waiter] = {}
        self._waiters_lock = threading.Lock()

    # -----------------------------
    # Lifecycle
    # -----------------------------

    @property
    def wildcard_topic(self) -> str:
        return f"{self.topic_prefix}/#"

    @property
    def is_connected(self) -> bool:
        client = self._client
        return client is not None and bool(client.is_connected())

    def add_message_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def connect(self) -> Any:
        """Connect and subscribe to `{prefix}/#`; returns the live client.

        Calling it again while connected returns the existing client.
        Raises BrokerConnectionError when the broker refuses the connection,
        the wildcard subscription fails, or neither answers within the timeout.
        """

        with self._lock:
            if self._client is not None:
                return self._client

            client = self._client_factory(self.client_id)
            if self._username:
                client.username_pw_set(self._username, self._password)
            if self._tls:
                client.tls_set()
            client.reconnect_delay_set(min_delay=self._reconnect_period_s, max_delay=self._reconnect_period_s)

            client.on_connect = self._on_connect
            client.on_connect_fail = self._on_connect_fail
            client.on_subscribe = self._on_subscribe
            client.on_disconnect = self._on_disconnect
            client.on_message = self._on_message

            self._ready.clear()
            self._failure = None
            self._closing = False
            self._has_connected = False

            logger.info(
                "connecting to broker",
                extra={"fields": {"host": self._host, "port": self._port, "client_id": self.client_id}},
            )
            try:
                client.connect(self._host, self._port, keepalive=self._keepalive_s)
            except OSError as exc:
                raise BrokerConnectionError(f"cannot reach broker at {self._host}:{self._port}: {exc}") from exc

            client.loop_start()

            if not self._ready.wait(timeout=self._connect_timeout_s):
                self._failure = self._failure or "timed out waiting for connection"
            if self._failure is not None:
                reason = self._failure
                self._closing = True
                client.disconnect()
                client.loop_stop()
                raise BrokerConnectionError(reason)

            self._client = client
            return client

    def disconnect(self) -> None:
        with self._lock:
            client = self._client
            if client is None:
                return
            self._closing = True
            self._client = None
            self._ready.clear()
            client.disconnect()
            client.loop_stop()
            logger.info("disconnected from broker")

    # -----------------------------
    # Publish / subscribe
    # -----------------------------

    def publish(self, topic: str, message: Any, *, qos: int = 0, retain: bool = False) -> bool:
        client = self.connect()
        info = client.publish(topic, _encode(message), qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerConnectionError(f"publish to {topic} failed: {mqtt.error_string(info.rc)}")
        if qos > 0:
            info.wait_for_publish(timeout=self._connect_timeout_s)
            if not info.is_published():
                raise BrokerConnectionError(f"publish to {topic} was not acknowledged")
        return True

    def subscribe(self, topic: str, *, qos: int = 0) -> None:
        client = self.connect()
        result, _mid = client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerConnectionError(f"subscribe to {topic} failed: {mqtt.error_string(result)}")

    def unsubscribe(self, topic: str) -> None:
        client = self._client
        if client is not None:
            client.unsubscribe(topic)

    def _covered_by_wildcard(self, topic: str) -> bool:
        return topic.startswith(f"{self.topic_prefix}/")

    def request(
        self,
        topic: str,
        message: Any,
        *,
        reply_topic: str,
        timeout_s: float,
        qos: int = 0,
    ) -> bytes | None:
        """Publish `message` and wait for the first message on `reply_topic`.

        Returns the reply payload, or None on timeout. The waiter is removed
        in every outcome.
        """

        key = uuid.uuid4().hex
        waiter = _Waiter(reply_topic=reply_topic)
        with self._waiters_lock:
            self._waiters[key] = waiter

        extra_subscription = not self._covered_by_wildcard(reply_topic)
        try:
            if extra_subscription:
                self.subscribe(reply_topic, qos=qos)
            self.publish(topic, message, qos=qos)
            if waiter.event.wait(timeout=timeout_s):
                return waiter.payload
            return None
        finally:
            with self._waiters_lock:
                self._waiters.pop(key, None)
            if extra_subscription:
                self.unsubscribe(reply_topic)

    # -----------------------------
    # paho callbacks (network thread)
    # -----------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            self._failure = f"broker refused connection: {reason_code}"
            logger.error("broker connection refused", extra={"fields": {"reason": str(reason_code)}})
            self._ready.set()
            return

        if self._has_connected:
            logger.info("reconnected to broker")
        self._has_connected = True

        # Clean sessions drop subscriptions, so resubscribe on every connect.
        result, mid = client.subscribe(self.wildcard_topic, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._failure = f"subscribe to {self.wildcard_topic} failed: {mqtt.error_string(result)}"
            logger.error("broker subscribe failed", extra={"fields": {"topic": self.wildcard_topic}})
            self._ready.set()
            return
        self._subscribe_mid = mid

    def _on_connect_fail(self, client, userdata) -> None:
        logger.error("broker connection error", extra={"fields": {"host": self._host, "port": self._port}})

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None) -> None:
        if mid != self._subscribe_mid:
            return
        if any(rc.is_failure for rc in reason_code_list):
            self._failure = f"broker rejected subscription to {self.wildcard_topic}"
            logger.error("broker subscribe rejected", extra={"fields": {"topic": self.wildcard_topic}})
        else:
            logger.info("subscribed", extra={"fields": {"topic": self.wildcard_topic}})
        self._ready.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:
        if self._closing:
            return
        logger.warning(
            "broker connection lost; reconnecting",
            extra={"fields": {"reason": str(reason_code), "retry_s": self._reconnect_period_s}},
        )

    def _on_message(self, client, userdata, msg) -> None:
        topic = msg.topic
        payload = bytes(msg.payload or b"")

        with self._waiters_lock:
            matched = [w for w in self._waiters.values() if w.reply_topic == topic]
        for w in matched:
            w.payload = payload
            w.event.set()

        for handler in list(self._handlers):
            try:
                handler(topic, payload)
            except Exception:
                # An exception here would stop the paho network thread.
                logger.exception("message handler failed", extra={"fields": {"topic": topic}})


def build_broker(settings: Settings, *, client_factory: ClientFactory | None = None) -> BrokerConnection:
    return BrokerConnection(
        broker_url=settings.mqtt_broker_url,
        topic_prefix=settings.mqtt_topic_prefix,
        client_id=settings.mqtt_client_id,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        reconnect_period_s=settings.mqtt_reconnect_period_s,
        keepalive_s=settings.mqtt_keepalive_s,
        connect_timeout_s=settings.mqtt_connect_timeout_s,
        client_factory=client_factory,
    )
