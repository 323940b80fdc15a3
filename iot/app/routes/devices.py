from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..db import db_session
from ..schemas import AlertPageOut, CommandIn, CommandOut, ConnectivityOut
from ..security import require_admin
from ..services.alerts import get_alerts_by_device
from ..services.commands import CommandDispatcher
from ..services.devices import get_device
from .alerts import page_out

router = APIRouter(prefix="/api/v1", tags=["devices"])


def get_dispatcher(request: Request) -> CommandDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Broker connection disabled (MQTT_ENABLED=false)",
        )
    return dispatcher


def _ensure_device(device_id: str) -> None:
    with db_session() as session:
        if get_device(session, device_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")


@router.get("/devices/{device_id}/alerts", response_model=AlertPageOut)
def list_device_alerts(
    device_id: str,
    resolved: Literal["all", "true", "false"] = "all",
    severity: Literal["info", "warning", "critical"] | None = None,
    alert_type: str | None = Query(None, alias="type"),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
    page: int = Query(1, ge=1),
) -> AlertPageOut:
    with db_session() as session:
        if get_device(session, device_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        result = get_alerts_by_device(
            session,
            device_id,
            resolved=resolved,
            severity=severity,
            alert_type=alert_type,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            page=page,
        )
        return page_out(result)


@router.post(
    "/devices/{device_id}/commands",
    response_model=CommandOut,
    dependencies=[Depends(require_admin)],
)
def send_device_command(
    device_id: str,
    req: CommandIn,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> CommandOut:
    _ensure_device(device_id)
    sent = dispatcher.send_command(device_id, req.command, req.data)
    if not sent:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Command could not be published")
    return CommandOut(device_id=device_id, command=req.command, sent=True)


@router.get(
    "/devices/{device_id}/connectivity",
    response_model=ConnectivityOut,
    dependencies=[Depends(require_admin)],
)
def device_connectivity(
    device_id: str,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> ConnectivityOut:
    _ensure_device(device_id)
    reachable = dispatcher.check_device_connectivity(device_id)
    return ConnectivityOut(device_id=device_id, reachable=reachable, timeout_s=dispatcher.connectivity_timeout_s)
