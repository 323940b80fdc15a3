from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..db import db_session
from ..models import Alert
from ..schemas import (
    AlertDeviceCountOut,
    AlertOut,
    AlertPageOut,
    AlertSummaryOut,
    AlertTypeCountOut,
    DeviceRefOut,
    PaginationOut,
    ResolveAlertIn,
)
from ..security import require_admin
from ..services.alerts import (
    AlertPage,
    delete_alert,
    get_alert,
    get_alerts,
    get_alerts_summary,
    resolve_alert,
)

router = APIRouter(prefix="/api/v1", tags=["alerts"])


def alert_out(a: Alert) -> AlertOut:
    device = None
    if a.device is not None:
        device = DeviceRefOut(id=a.device.id, name=a.device.name, device_type=a.device.device_type)
    return AlertOut(
        id=a.id,
        device_id=a.device_id,
        device=device,
        alert_type=a.alert_type,
        severity=a.severity,
        message=a.message,
        timestamp=a.timestamp,
        resolved=a.resolved,
        resolved_at=a.resolved_at,
        resolved_by=a.resolved_by,
        resolution_notes=a.resolution_notes,
        telemetry_data=dict(a.telemetry_data or {}),
        notification_sent=a.notification_sent,
        notification_timestamp=a.notification_timestamp,
    )


def page_out(page: AlertPage) -> AlertPageOut:
    return AlertPageOut(
        data=[alert_out(a) for a in page.items],
        pagination=PaginationOut(total=page.total, page=page.page, limit=page.limit, pages=page.pages),
    )


@router.get("/alerts", response_model=AlertPageOut)
def list_alerts(
    resolved: Literal["all", "true", "false"] = "all",
    severity: Literal["info", "warning", "critical"] | None = None,
    alert_type: str | None = Query(None, alias="type"),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
    page: int = Query(1, ge=1),
) -> AlertPageOut:
    """List alerts newest-first with page/limit pagination.

    Filters are optional and combine with AND.
    """

    if start_date is not None and end_date is not None and start_date > end_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date must be <= end_date")

    with db_session() as session:
        result = get_alerts(
            session,
            resolved=resolved,
            severity=severity,
            alert_type=alert_type,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            page=page,
        )
        return page_out(result)


@router.get("/alerts/summary", response_model=AlertSummaryOut)
def alerts_summary() -> AlertSummaryOut:
    with db_session() as session:
        summary = get_alerts_summary(session)
        return AlertSummaryOut(
            total=summary.total,
            unresolved=summary.unresolved,
            critical=summary.critical,
            by_type=[AlertTypeCountOut(type=t.type, count=t.count) for t in summary.by_type],
            top_devices=[
                AlertDeviceCountOut(
                    device_id=d.device_id,
                    name=d.name,
                    device_type=d.device_type,
                    count=d.count,
                )
                for d in summary.top_devices
            ],
        )


@router.get("/alerts/{alert_id}", response_model=AlertOut)
def read_alert(alert_id: str) -> AlertOut:
    with db_session() as session:
        a = get_alert(session, alert_id)
        if a is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
        return alert_out(a)


@router.put("/alerts/{alert_id}/resolve", response_model=AlertOut)
def resolve(alert_id: str, req: ResolveAlertIn) -> AlertOut:
    with db_session() as session:
        a = get_alert(session, alert_id)
        if a is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
        if a.resolved:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Alert is already resolved")
        a = resolve_alert(session, alert_id, user_id=req.resolved_by, notes=req.notes)
        return alert_out(a)


@router.delete(
    "/alerts/{alert_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
def remove_alert(alert_id: str) -> None:
    with db_session() as session:
        if not delete_alert(session, alert_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
