from __future__ import annotations

from datetime import datetime
from typing import List, Literal

from fastapi import APIRouter, HTTPException, Query, status

from ..db import db_session
from ..models import TelemetryRecord
from ..schemas import PaginationOut, TelemetryBucketOut, TelemetryOut, TelemetryPageOut
from ..services.devices import get_device
from ..services.telemetry import get_aggregated_telemetry, get_device_telemetry, get_latest_telemetry

router = APIRouter(prefix="/api/v1", tags=["telemetry"])


def telemetry_out(r: TelemetryRecord) -> TelemetryOut:
    return TelemetryOut(
        id=r.id,
        device_id=r.device_id,
        timestamp=r.timestamp,
        readings=dict(r.readings or {}),
        battery_level=r.battery_level,
        battery_charging=r.battery_charging,
        signal_strength=r.signal_strength,
        latitude=r.latitude,
        longitude=r.longitude,
        metadata=dict(r.meta or {}),
    )


def _check_range(start_date: datetime | None, end_date: datetime | None) -> None:
    if start_date is not None and end_date is not None and start_date > end_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date must be <= end_date")


@router.get("/devices/{device_id}/telemetry", response_model=TelemetryPageOut)
def list_device_telemetry(
    device_id: str,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
    page: int = Query(1, ge=1),
) -> TelemetryPageOut:
    _check_range(start_date, end_date)
    with db_session() as session:
        if get_device(session, device_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        result = get_device_telemetry(
            session,
            device_id,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            page=page,
        )
        return TelemetryPageOut(
            data=[telemetry_out(r) for r in result.items],
            pagination=PaginationOut(total=result.total, page=result.page, limit=result.limit, pages=result.pages),
        )


@router.get("/devices/{device_id}/telemetry/latest", response_model=TelemetryOut)
def latest_device_telemetry(device_id: str) -> TelemetryOut:
    with db_session() as session:
        if get_device(session, device_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        record = get_latest_telemetry(session, device_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No telemetry for device")
        return telemetry_out(record)


@router.get("/devices/{device_id}/telemetry/aggregate", response_model=List[TelemetryBucketOut])
def aggregate_device_telemetry(
    device_id: str,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    interval: Literal["hour", "day", "week", "month"] = "day",
    metrics: str = "all",
) -> List[TelemetryBucketOut]:
    """Per-interval avg/min/max (sum/max for rainfall) of a device's readings."""

    _check_range(start_date, end_date)
    with db_session() as session:
        device = get_device(session, device_id)
        if device is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        buckets = get_aggregated_telemetry(
            session,
            device,
            start_date=start_date,
            end_date=end_date,
            interval=interval,
            metrics=metrics,
        )
        return [
            TelemetryBucketOut(
                bucket=b.bucket,
                count=b.count,
                first_timestamp=b.first_timestamp,
                last_timestamp=b.last_timestamp,
                metrics=b.metrics,
            )
            for b in buckets
        ]
