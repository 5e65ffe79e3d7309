"""Tracks which connected dice run firmware older than the selected bundle."""
from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Set

from pixelcentral.events import EventChannel, Unsubscribe
from pixelcentral.models.device import DeviceRecord, DeviceStatus, StatusChange
from pixelcentral.models.dfu import DfuAvailability, DfuFilesBundle
from pixelcentral.registry import DeviceRegistry

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pixelcentral.dfu.catalog import DfuBundleCatalog

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AvailabilityChange:
    device: DeviceRecord
    availability: DfuAvailability


def compute_availability(device: DeviceRecord, reference: Optional[int]) -> DfuAvailability:
    if device.status is not DeviceStatus.READY or not reference:
        return DfuAvailability.UNKNOWN
    if device.firmware_timestamp is None:
        return DfuAvailability.UNKNOWN
    if device.firmware_timestamp < reference:
        return DfuAvailability.OUTDATED
    return DfuAvailability.UP_TO_DATE


class DfuNotifier:
    """Publishes per-device DFU availability.

    Availability is UNKNOWN unless the device is READY and a reference
    firmware timestamp is known, then OUTDATED or UP_TO_DATE. Devices being
    updated are excluded from recomputation until included again.
    """

    def __init__(self, registry: DeviceRegistry, firmware_timestamp: Optional[int] = None) -> None:
        self.registry = registry
        self._reference = firmware_timestamp or 0
        self._watched: Dict[int, DfuAvailability] = {}
        self._excluded: Set[int] = set()
        self._catalog_unsubscribe: Optional[Unsubscribe] = None

        self.dfu_availability_changed: EventChannel[AvailabilityChange] = EventChannel("dfu_availability_changed")
        self.outdated_devices_changed: EventChannel[List[DeviceRecord]] = EventChannel("outdated_devices_changed")

        self._subscriptions: List[Unsubscribe] = [
            registry.status_changed.subscribe(self._on_status_changed),
            registry.firmware_changed.subscribe(self._on_firmware_changed),
            registry.device_removed.subscribe(lambda record: self.unwatch(record.device_id)),
        ]

    @property
    def firmware_timestamp(self) -> int:
        return self._reference

    @property
    def outdated_devices(self) -> List[DeviceRecord]:
        devices: List[DeviceRecord] = []
        for device_id, availability in self._watched.items():
            record = self.registry.get(device_id)
            if record is not None and availability is DfuAvailability.OUTDATED:
                devices.append(record)
        return devices

    def is_watched(self, device_id: int) -> bool:
        return device_id in self._watched

    def watch(self, device: DeviceRecord | int) -> None:
        device_id = device if isinstance(device, int) else device.device_id
        if device_id in self._watched:
            return
        record = self.registry.require(device_id)
        self._watched[device_id] = compute_availability(record, self._reference)

    def unwatch(self, device_id: int) -> None:
        self._watched.pop(device_id, None)
        self._excluded.discard(device_id)

    def unwatch_all(self) -> None:
        for device_id in list(self._watched):
            self.unwatch(device_id)

    def get_dfu_availability(self, device_id: int) -> DfuAvailability:
        return self._watched.get(device_id, DfuAvailability.UNKNOWN)

    def update_firmware_timestamp(self, timestamp: Optional[int]) -> None:
        timestamp = timestamp or 0
        if timestamp == self._reference:
            return
        self._reference = timestamp
        for device_id in list(self._watched):
            if device_id not in self._excluded:
                self._recompute(device_id)

    def attach_catalog(self, catalog: "DfuBundleCatalog") -> None:
        """Follow the catalog's selection as the reference timestamp."""
        self.detach_catalog()
        self._catalog_unsubscribe = catalog.selected_changed.subscribe(self._on_selected_bundle)
        self._on_selected_bundle(catalog.selected_bundle())

    def detach_catalog(self) -> None:
        if self._catalog_unsubscribe is not None:
            self._catalog_unsubscribe()
            self._catalog_unsubscribe = None

    def exclude(self, device_id: int) -> None:
        self._excluded.add(device_id)

    def include(self, device_id: int) -> None:
        self._excluded.discard(device_id)
        if device_id in self._watched:
            self._recompute(device_id)

    @contextlib.contextmanager
    def exclusion(self, device_id: int) -> Iterator[None]:
        self.exclude(device_id)
        try:
            yield
        finally:
            self.include(device_id)

    def close(self) -> None:
        self.detach_catalog()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        self._watched.clear()

    def _on_selected_bundle(self, bundle: Optional[DfuFilesBundle]) -> None:
        self.update_firmware_timestamp(bundle.timestamp if bundle is not None else None)

    def _on_status_changed(self, change: StatusChange) -> None:
        self._maybe_recompute(change.device_id)

    def _on_firmware_changed(self, record: DeviceRecord) -> None:
        self._maybe_recompute(record.device_id)

    def _maybe_recompute(self, device_id: int) -> None:
        if device_id in self._watched and device_id not in self._excluded:
            self._recompute(device_id)

    def _recompute(self, device_id: int) -> None:
        record = self.registry.get(device_id)
        if record is None:
            return
        previous = self._watched.get(device_id, DfuAvailability.UNKNOWN)
        current = compute_availability(record, self._reference)
        if current is previous:
            return
        self._watched[device_id] = current
        logger.debug("Device %s DFU availability: %s -> %s", record.hex_id, previous.value, current.value)
        self.dfu_availability_changed.emit(AvailabilityChange(record, current))
        if DfuAvailability.OUTDATED in (previous, current):
            self.outdated_devices_changed.emit(self.outdated_devices)


__all__ = ["AvailabilityChange", "DfuNotifier", "compute_availability"]
