"""Exception hierarchy shared by the scheduler, catalog and DFU pipeline."""
from __future__ import annotations

from typing import Optional


class PixelCentralError(Exception):
    """Base class for all errors raised by this package."""


class TransportError(PixelCentralError):
    """A BLE operation failed or the link dropped."""

    def __init__(self, message: str, *, address: Optional[str] = None) -> None:
        super().__init__(message)
        self.address = address


class TransportConnectError(TransportError):
    pass


class TransportTimeoutError(TransportError):
    pass


class TransportSendError(TransportError):
    pass


class DfuError(PixelCentralError):
    """Failure while pushing an image to ``target``."""

    def __init__(self, message: str, target: Optional[str] = None) -> None:
        super().__init__(message)
        self.target = target

    def __str__(self) -> str:
        base = super().__str__()
        if self.target:
            return f"{base} (target {self.target})"
        return base


class VersionMismatchError(DfuError):
    """The device refused the image because of its version (FW_VERSION_FAILURE)."""


class DfuArgumentError(DfuError):
    pass


class DfuBusyError(DfuError):
    """Another device is already being updated."""


class DfuCommunicationError(DfuError):
    pass


class DfuRemoteError(DfuError):
    """The DFU target answered with an error status."""

    def __init__(self, message: str, target: Optional[str] = None, *, code: int = 0) -> None:
        super().__init__(message, target)
        self.code = code


class DfuFileInvalidError(DfuError):
    pass


class NoBundleFoundError(PixelCentralError):
    """No usable firmware bundle is available."""


class BundleLoadError(PixelCentralError):
    """Listing or unpacking firmware files failed."""


class OperationCancelledError(PixelCentralError):
    """An operation was cancelled by the caller (abort, disconnect or shutdown)."""


class InvalidTransitionError(PixelCentralError):
    def __init__(self, device_id: int, current: object, requested: object) -> None:
        super().__init__(f"Device {device_id:08x}: illegal transition {current} -> {requested}")
        self.device_id = device_id
        self.current = current
        self.requested = requested


class DeviceNotFoundError(PixelCentralError, KeyError):
    def __init__(self, device_id: int) -> None:
        super().__init__(f"Unknown device {device_id:08x}")
        self.device_id = device_id

    def __str__(self) -> str:
        return str(self.args[0])


__all__ = [
    "PixelCentralError",
    "TransportError",
    "TransportConnectError",
    "TransportTimeoutError",
    "TransportSendError",
    "DfuError",
    "VersionMismatchError",
    "DfuArgumentError",
    "DfuBusyError",
    "DfuCommunicationError",
    "DfuRemoteError",
    "DfuFileInvalidError",
    "NoBundleFoundError",
    "BundleLoadError",
    "OperationCancelledError",
    "InvalidTransitionError",
    "DeviceNotFoundError",
]
