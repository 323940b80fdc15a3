from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import iot.app.jobs.retention as retention
import iot.app.routes.telemetry as telemetry_routes
from iot.app.db import Base
from iot.app.models import Device, TelemetryRecord, utcnow
from iot.app.services.telemetry import (
    count_old_telemetry,
    delete_old_telemetry,
    get_aggregated_telemetry,
    get_device_telemetry,
    get_latest_telemetry,
    retention_cutoff,
)


# Friday of ISO week 15.
T0 = datetime(2026, 4, 10, 6, 0, tzinfo=timezone.utc)


def _db_override(tmp_path: Path):
    db_path = tmp_path / "telemetry.db"
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


def _seed(session_local) -> None:
    with session_local() as session:
        session.add_all(
            [
                Device(id="soil-001", name="North Probe", device_type="soil_sensor", topic="agrimaan/iot/soil_sensor/soil-001"),
                Device(id="wx-001", name="Ridge Station", device_type="weather_station", topic="agrimaan/iot/weather_station/wx-001"),
                Device(id="drone-1", name="Scout", device_type="drone", topic="agrimaan/iot/drone/drone-1"),
            ]
        )
        session.flush()
        session.add_all(
            [
                TelemetryRecord(
                    id="r1",
                    device_id="soil-001",
                    timestamp=T0,
                    readings={"moisture": 10, "temperature": 20},
                    battery_level=80,
                    signal_strength=-70,
                ),
                TelemetryRecord(
                    id="r2",
                    device_id="soil-001",
                    timestamp=T0 + timedelta(minutes=30),
                    readings={"moisture": 20, "temperature": "n/a"},
                    battery_level=78,
                ),
                TelemetryRecord(
                    id="r3",
                    device_id="soil-001",
                    timestamp=T0 + timedelta(days=1),
                    readings={"moisture": 30},
                    meta={"fw": "1.0.3"},
                ),
                TelemetryRecord(
                    id="w1",
                    device_id="wx-001",
                    timestamp=T0,
                    readings={"temperature": 30, "humidity": 50, "rainfall": 2},
                ),
                TelemetryRecord(
                    id="w2",
                    device_id="wx-001",
                    timestamp=T0 + timedelta(hours=2),
                    readings={"temperature": 34, "rainfall": 3},
                ),
            ]
        )
        session.commit()


# -----------------------------
# Service
# -----------------------------


def test_device_telemetry_is_paged_newest_first(tmp_path: Path) -> None:
    session_local, _db = _db_override(tmp_path)
    _seed(session_local)

    with session_local() as session:
        first = get_device_telemetry(session, "soil-001", limit=2)
        second = get_device_telemetry(session, "soil-001", limit=2, page=2)

    assert (first.total, first.page, first.limit, first.pages) == (3, 1, 2, 2)
    assert [r.id for r in first.items] == ["r3", "r2"]
    assert [r.id for r in second.items] == ["r1"]


def test_device_telemetry_date_range_is_inclusive(tmp_path: Path) -> None:
    session_local, _db = _db_override(tmp_path)
    _seed(session_local)

    with session_local() as session:
        page = get_device_telemetry(
            session,
            "soil-001",
            start_date=T0 + timedelta(minutes=30),
            end_date=T0 + timedelta(hours=2),
        )
        empty = get_device_telemetry(session, "drone-1")

    assert [r.id for r in page.items] == ["r2"]
    assert (empty.total, empty.pages, empty.items) == (0, 0, [])


@pytest.mark.parametrize("kwargs", [{"limit": 0}, {"page": 0}])
def test_device_telemetry_rejects_bad_paging(tmp_path: Path, kwargs) -> None:
    session_local, _db = _db_override(tmp_path)

    with session_local() as session:
        with pytest.raises(ValueError):
            get_device_telemetry(session, "soil-001", **kwargs)


def test_latest_telemetry(tmp_path: Path) -> None:
    session_local, _db = _db_override(tmp_path)
    _seed(session_local)

    with session_local() as session:
        assert get_latest_telemetry(session, "soil-001").id == "r3"
        assert get_latest_telemetry(session, "wx-001").id == "w2"
        assert get_latest_telemetry(session, "drone-1") is None


def test_daily_aggregation_for_soil_sensor(tmp_path: Path) -> None:
    session_local, _db = _db_override(tmp_path)
    _seed(session_local)

    with session_local() as session:
        buckets = get_aggregated_telemetry(session, session.get(Device, "soil-001"))

    assert [(b.bucket, b.count) for b in buckets] == [("2026-04-10", 2), ("2026-04-11", 1)]

    day1 = buckets[0]
    assert day1.first_timestamp == T0
    assert day1.last_timestamp == T0 + timedelta(minutes=30)
    assert list(day1.metrics) == ["moisture", "temperature", "battery", "signal"]
    assert day1.metrics["moisture"] == {"avg": 15.0, "min": 10.0, "max": 20.0}
    # Non-numeric readings are skipped.
    assert day1.metrics["temperature"] == {"avg": 20.0, "min": 20.0, "max": 20.0}
    assert day1.metrics["battery"] == {"avg": 79.0, "min": 78.0, "max": 80.0}
    assert day1.metrics["signal"] == {"avg": -70.0, "min": -70.0, "max": -70.0}

    assert buckets[1].metrics["battery"] == {"avg": None, "min": None, "max": None}


def test_hourly_aggregation_sums_rainfall_and_filters_metrics(tmp_path: Path) -> None:
    session_local, _db = _db_override(tmp_path)
    _seed(session_local)

    with session_local() as session:
        buckets = get_aggregated_telemetry(
            session,
            session.get(Device, "wx-001"),
            interval="hour",
            metrics="rainfall, battery",
        )

    assert [b.bucket for b in buckets] == ["2026-04-10 06:00", "2026-04-10 08:00"]
    assert list(buckets[0].metrics) == ["rainfall", "battery"]
    assert buckets[0].metrics["rainfall"] == {"sum": 2.0, "max": 2.0}
    assert buckets[1].metrics["rainfall"] == {"sum": 3.0, "max": 3.0}


def test_weekly_and_monthly_buckets(tmp_path: Path) -> None:
    session_local, _db = _db_override(tmp_path)
    _seed(session_local)

    with session_local() as session:
        device = session.get(Device, "soil-001")
        weekly = get_aggregated_telemetry(session, device, interval="week")
        monthly = get_aggregated_telemetry(session, device, interval="month", metrics=["moisture"])

    assert [(b.bucket, b.count) for b in weekly] == [("2026-W15", 3)]
    assert [(b.bucket, b.count) for b in monthly] == [("2026-04", 3)]
    assert monthly[0].metrics == {"moisture": {"avg": 20.0, "min": 10.0, "max": 30.0}}


def test_aggregation_for_untyped_device_and_bad_interval(tmp_path: Path) -> None:
    session_local, _db = _db_override(tmp_path)
    _seed(session_local)

    with session_local() as session:
        drone = session.get(Device, "drone-1")
        assert get_aggregated_telemetry(session, drone) == []
        with pytest.raises(ValueError):
            get_aggregated_telemetry(session, drone, interval="fortnight")


def test_delete_old_telemetry_in_batches(tmp_path: Path) -> None:
    session_local, _db = _db_override(tmp_path)
    _seed(session_local)
    cutoff = retention_cutoff(0, now=T0 + timedelta(minutes=45))

    with session_local() as session:
        assert count_old_telemetry(session, cutoff=cutoff) == 3
        assert delete_old_telemetry(session, cutoff=cutoff, batch_size=2) == 2
        assert delete_old_telemetry(session, cutoff=cutoff, batch_size=2) == 1
        assert delete_old_telemetry(session, cutoff=cutoff) == 0
        session.commit()

        remaining = {r.id for r in session.query(TelemetryRecord).all()}

    assert remaining == {"r3", "w2"}


def test_retention_cutoff() -> None:
    assert retention_cutoff(90, now=T0) == T0 - timedelta(days=90)
    assert retention_cutoff(-5, now=T0) == T0


# -----------------------------
# Retention job
# -----------------------------


def _seed_aged(session_local, *, old: int, fresh: int) -> None:
    now = utcnow()
    with session_local() as session:
        session.add(Device(id="soil-001", name="North Probe", device_type="soil_sensor", topic="agrimaan/iot/soil_sensor/soil-001"))
        session.flush()
        for i in range(old):
            session.add(TelemetryRecord(device_id="soil-001", timestamp=now - timedelta(days=120, minutes=i), readings={}))
        for i in range(fresh):
            session.add(TelemetryRecord(device_id="soil-001", timestamp=now - timedelta(days=1, minutes=i), readings={}))
        session.commit()


def _retention_settings(**overrides):
    values = dict(
        retention_enabled=True,
        telemetry_retention_days=90,
        retention_batch_size=2,
        retention_max_batches=10,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_run_retention_deletes_expired_rows(tmp_path: Path, monkeypatch) -> None:
    session_local, db_override = _db_override(tmp_path)
    _seed_aged(session_local, old=5, fresh=1)
    monkeypatch.setattr(retention, "db_session", db_override)
    monkeypatch.setattr(retention, "settings", _retention_settings())
    monkeypatch.delenv("RETENTION_DRY_RUN", raising=False)

    assert retention.run_retention() == 5

    with session_local() as session:
        assert session.query(TelemetryRecord).count() == 1


def test_run_retention_stops_after_max_batches(tmp_path: Path, monkeypatch) -> None:
    session_local, db_override = _db_override(tmp_path)
    _seed_aged(session_local, old=5, fresh=0)
    monkeypatch.setattr(retention, "db_session", db_override)
    monkeypatch.setattr(retention, "settings", _retention_settings(retention_max_batches=1))
    monkeypatch.delenv("RETENTION_DRY_RUN", raising=False)

    assert retention.run_retention() == 2


@pytest.mark.parametrize(
    ("enabled", "dry_run"),
    [(False, ""), (True, "true")],
)
def test_run_retention_disabled_or_dry_run_keeps_rows(tmp_path: Path, monkeypatch, enabled: bool, dry_run: str) -> None:
    session_local, db_override = _db_override(tmp_path)
    _seed_aged(session_local, old=3, fresh=1)
    monkeypatch.setattr(retention, "db_session", db_override)
    monkeypatch.setattr(retention, "settings", _retention_settings(retention_enabled=enabled))
    monkeypatch.setenv("RETENTION_DRY_RUN", dry_run)

    assert retention.run_retention() is None

    with session_local() as session:
        assert session.query(TelemetryRecord).count() == 4


# -----------------------------
# Routes
# -----------------------------


def test_list_and_latest_routes(tmp_path: Path, monkeypatch) -> None:
    session_local, db_override = _db_override(tmp_path)
    _seed(session_local)
    monkeypatch.setattr(telemetry_routes, "db_session", db_override)

    page = telemetry_routes.list_device_telemetry("soil-001", start_date=None, end_date=None, limit=2, page=1)
    assert [r.id for r in page.data] == ["r3", "r2"]
    assert page.pagination.total == 3
    assert page.pagination.pages == 2

    latest = telemetry_routes.latest_device_telemetry("soil-001")
    assert latest.id == "r3"
    assert latest.readings == {"moisture": 30}
    assert latest.metadata == {"fw": "1.0.3"}


def test_telemetry_routes_404(tmp_path: Path, monkeypatch) -> None:
    session_local, db_override = _db_override(tmp_path)
    _seed(session_local)
    monkeypatch.setattr(telemetry_routes, "db_session", db_override)

    with pytest.raises(HTTPException) as e:
        telemetry_routes.list_device_telemetry("ghost", start_date=None, end_date=None, limit=10, page=1)
    assert e.value.status_code == 404

    with pytest.raises(HTTPException) as e:
        telemetry_routes.latest_device_telemetry("drone-1")
    assert e.value.status_code == 404
    assert e.value.detail == "No telemetry for device"

    with pytest.raises(HTTPException) as e:
        telemetry_routes.aggregate_device_telemetry(
            "ghost", start_date=None, end_date=None, interval="day", metrics="all"
        )
    assert e.value.status_code == 404


def test_aggregate_route_and_range_validation(tmp_path: Path, monkeypatch) -> None:
    session_local, db_override = _db_override(tmp_path)
    _seed(session_local)
    monkeypatch.setattr(telemetry_routes, "db_session", db_override)

    buckets = telemetry_routes.aggregate_device_telemetry(
        "wx-001", start_date=None, end_date=None, interval="day", metrics="temperature"
    )
    assert len(buckets) == 1
    assert buckets[0].count == 2
    assert buckets[0].metrics == {"temperature": {"avg": 32.0, "min": 30.0, "max": 34.0}}

    with pytest.raises(HTTPException) as e:
        telemetry_routes.aggregate_device_telemetry(
            "wx-001", start_date=T0 + timedelta(days=1), end_date=T0, interval="day", metrics="all"
        )
    assert e.value.status_code == 400
