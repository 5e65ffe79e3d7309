"""BLE transport interfaces and the bleak-backed implementation."""

from pixelcentral.transport.base import (
    BleTransport,
    DeviceIdentity,
    FirmwareFilesProvider,
    FirmwarePropertyChange,
    LinkStateChange,
)

__all__ = [
    "BleTransport",
    "DeviceIdentity",
    "FirmwareFilesProvider",
    "FirmwarePropertyChange",
    "LinkStateChange",
]
