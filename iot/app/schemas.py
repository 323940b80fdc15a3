from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DeviceRefOut(BaseModel):
    id: str
    name: str
    device_type: str


class AlertOut(BaseModel):
    id: str
    device_id: str
    device: Optional[DeviceRefOut] = None

    alert_type: str
    severity: str
    message: str
    timestamp: datetime

    resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    telemetry_data: Dict[str, Any] = Field(default_factory=dict)
    notification_sent: bool = False
    notification_timestamp: Optional[datetime] = None


class PaginationOut(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class AlertPageOut(BaseModel):
    data: List[AlertOut]
    pagination: PaginationOut


class AlertTypeCountOut(BaseModel):
    type: str
    count: int


class AlertDeviceCountOut(BaseModel):
    device_id: str
    name: str
    device_type: str
    count: int


class AlertSummaryOut(BaseModel):
    total: int
    unresolved: int
    critical: int
    by_type: List[AlertTypeCountOut]
    top_devices: List[AlertDeviceCountOut]


class ResolveAlertIn(BaseModel):
    resolved_by: str = Field(..., min_length=1, max_length=128)
    notes: str = Field("", max_length=1024)


class CommandIn(BaseModel):
    command: str = Field(..., min_length=1, max_length=64)
    data: Dict[str, Any] = Field(default_factory=dict)


class CommandOut(BaseModel):
    device_id: str
    command: str
    sent: bool


class ConnectivityOut(BaseModel):
    device_id: str
    reachable: bool
    timeout_s: float


class TelemetryOut(BaseModel):
    id: str
    device_id: str
    timestamp: datetime
    readings: Dict[str, Any] = Field(default_factory=dict)

    battery_level: Optional[float] = None
    battery_charging: Optional[bool] = None
    signal_strength: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TelemetryPageOut(BaseModel):
    data: List[TelemetryOut]
    pagination: PaginationOut


class TelemetryBucketOut(BaseModel):
    bucket: str
    count: int
    first_timestamp: datetime
    last_timestamp: datetime
    metrics: Dict[str, Dict[str, Optional[float]]]
