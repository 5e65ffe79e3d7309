"""Device records tracked by the registry."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


class DeviceStatus(str, Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    IDENTIFYING = "identifying"
    READY = "ready"
    DISCONNECTING = "disconnecting"


# Legal (from, to) status edges. Failure and cancellation edges included.
TRANSITIONS: Mapping[DeviceStatus, FrozenSet[DeviceStatus]] = {
    DeviceStatus.DISCONNECTED: frozenset({DeviceStatus.CONNECTING, DeviceStatus.SCANNING}),
    DeviceStatus.SCANNING: frozenset({DeviceStatus.DISCONNECTED, DeviceStatus.CONNECTING}),
    DeviceStatus.CONNECTING: frozenset(
        {DeviceStatus.IDENTIFYING, DeviceStatus.DISCONNECTED, DeviceStatus.DISCONNECTING}
    ),
    DeviceStatus.IDENTIFYING: frozenset(
        {DeviceStatus.READY, DeviceStatus.DISCONNECTED, DeviceStatus.DISCONNECTING}
    ),
    DeviceStatus.READY: frozenset({DeviceStatus.DISCONNECTING, DeviceStatus.DISCONNECTED}),
    DeviceStatus.DISCONNECTING: frozenset({DeviceStatus.DISCONNECTED}),
}


def can_transition(current: DeviceStatus, requested: DeviceStatus) -> bool:
    if current == requested:
        return True
    return requested in TRANSITIONS.get(current, frozenset())


def is_connected(status: DeviceStatus) -> bool:
    return status in (DeviceStatus.IDENTIFYING, DeviceStatus.READY)


def occupies_link(status: DeviceStatus) -> bool:
    """True while the status consumes one of the scheduler's connection slots."""
    return status in (
        DeviceStatus.CONNECTING,
        DeviceStatus.IDENTIFYING,
        DeviceStatus.READY,
        DeviceStatus.DISCONNECTING,
    )


@dataclass(slots=True)
class DeviceRecord:
    """Everything known about one die.

    ``firmware_timestamp`` is in milliseconds since the epoch (UTC) and
    ``last_advertisement_time`` uses the registry clock (monotonic seconds).
    """

    device_id: int
    ble_address: Optional[str] = None
    name: Optional[str] = None
    status: DeviceStatus = DeviceStatus.DISCONNECTED
    firmware_timestamp: Optional[int] = None
    last_advertisement_time: Optional[float] = None
    rssi: Optional[int] = None
    led_count: Optional[int] = None
    battery_level: Optional[int] = None
    is_charging: Optional[bool] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def hex_id(self) -> str:
        return f"{self.device_id:08X}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "hex_id": self.hex_id,
            "ble_address": self.ble_address,
            "name": self.name,
            "status": self.status.value,
            "firmware_timestamp": self.firmware_timestamp,
            "last_advertisement_time": self.last_advertisement_time,
            "rssi": self.rssi,
            "led_count": self.led_count,
            "battery_level": self.battery_level,
            "is_charging": self.is_charging,
        }


@dataclass(slots=True, frozen=True)
class StatusChange:
    device_id: int
    previous: DeviceStatus
    current: DeviceStatus


__all__ = [
    "DeviceStatus",
    "DeviceRecord",
    "StatusChange",
    "TRANSITIONS",
    "can_transition",
    "is_connected",
    "occupies_link",
]
