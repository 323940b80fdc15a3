from __future__ import annotations

import logging
import signal
import threading

from ..alert_rules import load_alert_rules
from ..config import Settings, settings
from ..db import engine
from ..migrations import maybe_run_startup_migrations
from ..observability import configure_logging
from ..services.broker import BrokerConnection, build_broker
from ..services.router import MessageRouter


logger = logging.getLogger("iot.job.mqtt_worker")


def run_worker(
    _settings: Settings,
    *,
    stop: threading.Event,
    broker: BrokerConnection | None = None,
) -> BrokerConnection:
    """Connect, route device traffic until `stop` is set, then disconnect."""

    conn = broker or build_broker(_settings)
    router = MessageRouter(
        topic_prefix=_settings.mqtt_topic_prefix,
        rules=load_alert_rules(_settings.alert_rules_version),
    )
    conn.add_message_handler(router.handle_message)
    conn.connect()
    logger.info("mqtt worker running", extra={"fields": {"topic": conn.wildcard_topic}})

    try:
        stop.wait()
    finally:
        conn.disconnect()
        logger.info("mqtt worker stopped")
    return conn


def main() -> None:
    """Consume device traffic until SIGINT/SIGTERM, without the HTTP surface."""

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    maybe_run_startup_migrations(engine=engine, _settings=settings)

    stop = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("received signal %s; shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    run_worker(settings, stop=stop)


if __name__ == "__main__":
    main()
