from .device import Device, Person, Position, UserDeviceAccess
from .user import User

__all__ = [
    "User",
    "Person",
    "Device",
    "Position",
    "UserDeviceAccess",
]
