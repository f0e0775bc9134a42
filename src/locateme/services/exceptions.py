"""Error taxonomy shared by the device services and translated to HTTP status codes by the routers."""


class PositionStoreError(Exception):
    """The Position Store query failed (driver error, pool exhaustion or timeout)."""


class CacheUnavailableError(Exception):
    """The cache artifact could not be read or written."""


class DeviceAccessDenied(Exception):
    def __init__(self, device_id: str):
        super().__init__(f"Access denied to device {device_id}")
        self.device_id = device_id


class DeviceNotFound(Exception):
    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} not found")
        self.device_id = device_id


class InvalidQueryError(ValueError):
    """Malformed request input, rejected before any store access."""
