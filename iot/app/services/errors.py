from __future__ import annotations


class DeviceNotFoundError(LookupError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class AlertNotFoundError(LookupError):
    def __init__(self, alert_id: str) -> None:
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id


class InvalidMessageError(ValueError):
    """Inbound broker payload could not be parsed into a message envelope."""


class BrokerConnectionError(RuntimeError):
    """Connecting, subscribing or publishing to the broker failed."""
