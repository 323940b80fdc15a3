from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import iot.app.services.router as router_module
from iot.app.alert_rules import load_alert_rules
from iot.app.db import Base
from iot.app.models import Alert, Device, TelemetryRecord
from iot.app.services.router import MessageRouter


SOIL_TOPIC = "agrimaan/iot/soil_sensor/soil-001"


def _db_override(tmp_path: Path):
    db_path = tmp_path / "router.db"
    engine = create_engine(f"sqlite+pysqlite:///{db_path}")
    Base.metadata.create_all(engine)
    session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    @contextmanager
    def _db_session():
        session = session_local()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return session_local, _db_session


def _seed_device(session_local, *, device_id: str = "soil-001", device_type: str = "soil_sensor") -> None:
    with session_local() as session:
        session.add(
            Device(
                id=device_id,
                name="North Field Probe",
                device_type=device_type,
                topic=f"agrimaan/iot/{device_type}/{device_id}",
            )
        )
        session.commit()


def _router(tmp_path: Path):
    session_local, db_override = _db_override(tmp_path)
    _seed_device(session_local)
    router = MessageRouter(
        topic_prefix="agrimaan/iot",
        session_factory=db_override,
        rules=load_alert_rules("v1"),
    )
    return session_local, router


def _send(router: MessageRouter, topic: str, payload: dict[str, Any]) -> None:
    router.handle_message(topic, json.dumps(payload).encode("utf-8"))


def _alerts(session_local) -> list[Alert]:
    with session_local() as session:
        return session.query(Alert).order_by(Alert.created_at).all()


def _device(session_local, device_id: str = "soil-001") -> Device:
    with session_local() as session:
        device = session.get(Device, device_id)
        assert device is not None
        return device


def test_telemetry_is_stored_and_evaluated(tmp_path: Path) -> None:
    session_local, router = _router(tmp_path)

    _send(
        router,
        SOIL_TOPIC,
        {
            "type": "telemetry",
            "messageId": "m-1",
            "timestamp": "2026-03-01T10:00:00Z",
            "data": {"moisture": 15, "temperature": 21.5},
            "battery": {"level": 50, "charging": False},
            "signalStrength": -71,
            "location": {"latitude": 28.61, "longitude": 77.2},
        },
    )

    with session_local() as session:
        record = session.query(TelemetryRecord).one()
        assert record.device_id == "soil-001"
        assert record.readings == {"moisture": 15, "temperature": 21.5}
        assert record.battery_level == 50
        assert record.signal_strength == -71
        assert (record.latitude, record.longitude) == (28.61, 77.2)

    device = _device(session_local)
    assert device.status == "active"
    assert device.last_communication is not None
    assert device.battery_level == 50

    alerts = _alerts(session_local)
    assert len(alerts) == 1
    assert alerts[0].alert_type == "threshold_below"
    assert alerts[0].telemetry_data == {"parameter": "moisture", "value": 15, "threshold": 20}

    _send(router, SOIL_TOPIC, {"type": "telemetry", "data": {"moisture": 26}})

    alerts = _alerts(session_local)
    assert len(alerts) == 1
    assert alerts[0].resolved is True
    assert alerts[0].resolved_by == "system"


def test_unknown_device_is_dropped_without_side_effects(tmp_path: Path, caplog) -> None:
    session_local, router = _router(tmp_path)

    with caplog.at_level(logging.WARNING, logger="iot.router"):
        _send(router, "agrimaan/iot/soil_sensor/ghost", {"type": "telemetry", "data": {"moisture": 1}})

    assert "dropping message from unknown device" in caplog.text
    with session_local() as session:
        assert session.query(TelemetryRecord).count() == 0
        assert session.query(Alert).count() == 0
    assert _device(session_local).last_communication is None


def test_bad_messages_do_not_block_the_next_one(tmp_path: Path) -> None:
    session_local, router = _router(tmp_path)

    router.handle_message(SOIL_TOPIC, b"{not json")
    router.handle_message(SOIL_TOPIC, b"[1, 2, 3]")
    _send(router, SOIL_TOPIC, {"data": {"moisture": 30}})
    _send(router, SOIL_TOPIC, {"type": "bogus", "data": {}})
    _send(router, SOIL_TOPIC, {"type": "telemetry", "data": "not-an-object"})
    _send(router, SOIL_TOPIC, {"type": "telemetry", "data": {"moisture": 30}})

    with session_local() as session:
        assert session.query(TelemetryRecord).count() == 1


def test_pathological_json_is_dropped_as_malformed(tmp_path: Path, caplog) -> None:
    session_local, router = _router(tmp_path)

    with caplog.at_level(logging.WARNING, logger="iot.router"):
        router.handle_message(SOIL_TOPIC, b"[" * 200_000)
        router.handle_message(
            SOIL_TOPIC,
            b'{"type": "telemetry", "data": {"moisture": ' + b"9" * 5000 + b"}}",
        )

    assert caplog.text.count("dropping malformed message") == 2

    _send(router, SOIL_TOPIC, {"type": "telemetry", "data": {"moisture": 30}})
    with session_local() as session:
        assert session.query(TelemetryRecord).count() == 1


def test_handler_failure_is_rolled_back_and_isolated(tmp_path: Path, monkeypatch) -> None:
    session_local, router = _router(tmp_path)
    real_evaluate = router_module.evaluate_telemetry
    calls = {"n": 0}

    def flaky_evaluate(session, record, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("rule engine exploded")
        return real_evaluate(session, record, **kwargs)

    monkeypatch.setattr(router_module, "evaluate_telemetry", flaky_evaluate)

    _send(router, SOIL_TOPIC, {"type": "telemetry", "data": {"moisture": 10}})
    with session_local() as session:
        # The reading recorded before the failure is rolled back with it.
        assert session.query(TelemetryRecord).count() == 0

    _send(router, SOIL_TOPIC, {"type": "telemetry", "data": {"moisture": 10}})
    with session_local() as session:
        assert session.query(TelemetryRecord).count() == 1
    assert [a.alert_type for a in _alerts(session_local)] == ["threshold_below"]


def test_topics_outside_namespace_and_control_topics_are_ignored(tmp_path: Path, monkeypatch) -> None:
    session_local, router = _router(tmp_path)

    def explode(raw):
        raise AssertionError("should not be parsed")

    monkeypatch.setattr(router_module, "parse_envelope", explode)

    router.handle_message("other/ns/soil_sensor/soil-001", b"{}")
    router.handle_message("agrimaan/iot-legacy/soil_sensor/soil-001", b"{}")
    router.handle_message(f"{SOIL_TOPIC}/commands", b"{}")
    router.handle_message(f"{SOIL_TOPIC}/ping", b"{}")
    router.handle_message(f"{SOIL_TOPIC}/pong", b"{}")


def test_status_offline_and_error_open_alerts(tmp_path: Path) -> None:
    session_local, router = _router(tmp_path)

    _send(router, SOIL_TOPIC, {"type": "status", "status": "offline", "data": {"reason": "power"}})
    _send(router, SOIL_TOPIC, {"type": "status", "status": "offline"})

    alerts = _alerts(session_local)
    assert len(alerts) == 1
    assert alerts[0].alert_type == "offline"
    assert alerts[0].severity == "warning"
    assert alerts[0].message == "Device North Field Probe reported status: offline"
    assert alerts[0].telemetry_data == {"reason": "power"}
    assert _device(session_local).status == "offline"

    _send(router, SOIL_TOPIC, {"type": "status", "status": "error", "battery": {"level": 40}})

    assert [a.alert_type for a in _alerts(session_local)] == ["offline", "system_error"]
    device = _device(session_local)
    assert device.status == "error"
    assert device.battery_level == 40


def test_status_active_and_telemetry_close_offline_alert(tmp_path: Path) -> None:
    session_local, router = _router(tmp_path)

    _send(router, SOIL_TOPIC, {"type": "status", "status": "offline"})
    _send(router, SOIL_TOPIC, {"type": "status", "status": "active"})

    alert = _alerts(session_local)[0]
    assert alert.resolved is True
    assert alert.resolution_notes == "Auto-resolved: Device communication resumed"

    _send(router, SOIL_TOPIC, {"type": "status", "status": "offline"})
    _send(router, SOIL_TOPIC, {"type": "telemetry", "data": {"moisture": 40}})

    alerts = _alerts(session_local)
    assert len(alerts) == 2
    assert all(a.resolved for a in alerts)
    assert _device(session_local).status == "active"


def test_unsupported_status_is_dropped(tmp_path: Path) -> None:
    session_local, router = _router(tmp_path)

    _send(router, SOIL_TOPIC, {"type": "status", "status": "sleeping"})

    assert _device(session_local).status == "active"
    assert _alerts(session_local) == []


def test_device_alert_is_recorded_with_status(tmp_path: Path) -> None:
    session_local, router = _router(tmp_path)

    _send(
        router,
        SOIL_TOPIC,
        {
            "type": "alert",
            "alertType": "tamper_detected",
            "severity": "critical",
            "message": "Enclosure opened",
            "data": {"switch": "lid"},
            "status": "maintenance",
        },
    )

    alert = _alerts(session_local)[0]
    assert alert.alert_type == "tamper_detected"
    assert alert.severity == "critical"
    assert alert.message == "Enclosure opened"
    assert alert.telemetry_data == {"switch": "lid"}
    assert _device(session_local).status == "maintenance"


def test_device_alert_defaults(tmp_path: Path) -> None:
    session_local, router = _router(tmp_path)

    _send(router, SOIL_TOPIC, {"type": "alert", "alertType": "meteor_strike", "severity": "apocalyptic"})

    alert = _alerts(session_local)[0]
    assert alert.alert_type == "other"
    assert alert.severity == "warning"
    assert alert.message == "Alert from device North Field Probe"
    assert _device(session_local).status == "active"


def test_firmware_update_success_records_version(tmp_path: Path) -> None:
    session_local, router = _router(tmp_path)

    _send(
        router,
        SOIL_TOPIC,
        {"type": "command_response", "command": "firmware_update", "status": "failed", "data": {"version": "9.9.9"}},
    )
    assert _device(session_local).firmware_version == "1.0.0"

    _send(
        router,
        SOIL_TOPIC,
        {"type": "command_response", "command": "firmware_update", "status": "success", "data": {"version": "1.2.0"}},
    )

    device = _device(session_local)
    assert device.firmware_version == "1.2.0"
    assert device.firmware_last_updated is not None
    assert device.last_communication == device.firmware_last_updated


def test_other_command_responses_change_nothing(tmp_path: Path) -> None:
    session_local, router = _router(tmp_path)

    _send(router, SOIL_TOPIC, {"type": "command_response", "command": "reboot", "status": "success"})

    device = _device(session_local)
    assert device.firmware_version == "1.0.0"
    assert device.firmware_last_updated is None
