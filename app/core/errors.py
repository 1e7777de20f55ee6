"""
IoTV Monitor - Error taxonomy

Every failure that reaches an API caller carries a human readable reason and
an HTTP-equivalent status code.
"""


class DeviceError(Exception):
    """Base class for device registry errors."""

    status_code: int = 500

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DeviceNotFound(DeviceError):
    """Operation referenced an unknown device id."""

    status_code = 404

    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} not found")
        self.device_id = device_id


class VersionConflict(DeviceError):
    """Write lost a race against a concurrent write to the same device."""

    status_code = 409

    def __init__(self, device_id: str, expected_version: int | None = None):
        reason = f"Device {device_id} changed concurrently"
        if expected_version is not None:
            reason += f" (expected version {expected_version})"
        super().__init__(reason)
        self.device_id = device_id
        self.expected_version = expected_version


class InvalidDeviceInput(DeviceError):
    """Malformed create/update input, rejected before touching the registry."""

    status_code = 400


class TransportError(DeviceError):
    """Heartbeat source (MQTT broker) unavailable."""

    status_code = 503


class StoreError(DeviceError):
    """Underlying persistence failure; the operation was not applied."""

    status_code = 500
