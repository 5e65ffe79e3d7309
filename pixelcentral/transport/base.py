"""Interfaces consumed from the BLE transport and firmware packaging layers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Protocol, Union, runtime_checkable

from pixelcentral.events import EventChannel
from pixelcentral.models.dfu import DfuFileInfo, DfuState

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pixelcentral.scanner import Advertisement

ProgressCallback = Callable[[float], Union[None, Awaitable[None]]]
StateCallback = Callable[[DfuState], Union[None, Awaitable[None]]]


@dataclass(slots=True, frozen=True)
class DeviceIdentity:
    """Result of the post-connect identification handshake."""

    device_id: int
    firmware_timestamp: Optional[int] = None
    name: Optional[str] = None
    led_count: Optional[int] = None


@dataclass(slots=True, frozen=True)
class LinkStateChange:
    address: str
    connected: bool
    reason: Optional[str] = None


@dataclass(slots=True, frozen=True)
class FirmwarePropertyChange:
    address: str
    firmware_timestamp: int


@runtime_checkable
class BleTransport(Protocol):
    """Connect/disconnect/send primitives plus the events the core listens to.

    ``bootloader_address_offset`` is added to a MAC address to reach the same
    device once it has rebooted into its bootloader; 0 disables remapping.
    """

    bootloader_address_offset: int
    advertisement_received: EventChannel["Advertisement"]
    link_state_changed: EventChannel[LinkStateChange]
    firmware_property_changed: EventChannel[FirmwarePropertyChange]

    async def start_scan(self) -> None: ...

    async def stop_scan(self) -> None: ...

    async def connect(self, address: str, timeout: float) -> None: ...

    async def disconnect(self, address: str) -> None: ...

    async def identify(self, address: str) -> DeviceIdentity: ...

    async def send_firmware_image(
        self,
        address: str,
        image: bytes,
        on_progress: Optional[ProgressCallback] = None,
        on_state: Optional[StateCallback] = None,
    ) -> None: ...


@runtime_checkable
class FirmwareFilesProvider(Protocol):
    async def list_available_firmware_files(self) -> List[DfuFileInfo]: ...


__all__ = [
    "BleTransport",
    "DeviceIdentity",
    "FirmwareFilesProvider",
    "FirmwarePropertyChange",
    "LinkStateChange",
    "ProgressCallback",
    "StateCallback",
]
