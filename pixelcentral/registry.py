"""In-memory registry of known dice."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set

from pixelcentral.errors import DeviceNotFoundError, InvalidTransitionError
from pixelcentral.events import EventChannel
from pixelcentral.models.device import DeviceRecord, DeviceStatus, StatusChange, can_transition, occupies_link

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pixelcentral.models.db_models import PairedDeviceStore
    from pixelcentral.scanner import Advertisement

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Owns every :class:`DeviceRecord`, keyed by device id.

    Advertisement fields are written by the scanner, ``status`` by the
    connection scheduler. Paired devices are kept until unpaired; unpaired
    records are dropped once their advertisements expire.
    """

    def __init__(self, store: Optional["PairedDeviceStore"] = None) -> None:
        self._records: Dict[int, DeviceRecord] = {}
        self._paired: Set[int] = set()
        self._store = store

        self.device_added: EventChannel[DeviceRecord] = EventChannel("device_added")
        self.device_removed: EventChannel[DeviceRecord] = EventChannel("device_removed")
        self.status_changed: EventChannel[StatusChange] = EventChannel("status_changed")
        self.firmware_changed: EventChannel[DeviceRecord] = EventChannel("firmware_changed")

        if store is not None:
            for record in store.list_paired():
                self._paired.add(record.device_id)
                self._records[record.device_id] = record

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, device_id: int) -> Optional[DeviceRecord]:
        return self._records.get(device_id)

    def require(self, device_id: int) -> DeviceRecord:
        record = self._records.get(device_id)
        if record is None:
            raise DeviceNotFoundError(device_id)
        return record

    def find_by_address(self, address: str) -> Optional[DeviceRecord]:
        needle = address.lower()
        for record in self._records.values():
            if record.ble_address and record.ble_address.lower() == needle:
                return record
        return None

    def records(self) -> List[DeviceRecord]:
        return list(self._records.values())

    def scan_results(self, now: float, ttl: float) -> List[DeviceRecord]:
        """Records whose last advertisement is at most ``ttl`` seconds old."""
        return [
            record
            for record in self._records.values()
            if record.last_advertisement_time is not None
            and now - record.last_advertisement_time <= ttl
        ]

    def upsert_advertisement(self, adv: "Advertisement", now: float) -> DeviceRecord:
        record = self._records.get(adv.device_id)
        created = record is None
        if record is None:
            record = DeviceRecord(device_id=adv.device_id)
            self._records[adv.device_id] = record

        record.last_advertisement_time = now
        record.ble_address = adv.address
        if adv.name:
            record.name = adv.name
        record.rssi = adv.rssi
        if adv.led_count is not None:
            record.led_count = adv.led_count
        if adv.battery_level is not None:
            record.battery_level = adv.battery_level
            record.is_charging = adv.is_charging

        if created:
            self.device_added.emit(record)
        if adv.firmware_timestamp is not None:
            self.set_firmware_timestamp(record.device_id, adv.firmware_timestamp)
        return record

    def add(self, record: DeviceRecord) -> DeviceRecord:
        existing = self._records.get(record.device_id)
        if existing is not None:
            return existing
        self._records[record.device_id] = record
        self.device_added.emit(record)
        return record

    def set_status(self, device_id: int, status: DeviceStatus) -> DeviceStatus:
        record = self.require(device_id)
        previous = record.status
        if previous == status:
            return previous
        if not can_transition(previous, status):
            raise InvalidTransitionError(device_id, previous.value, status.value)
        record.status = status
        logger.debug("Device %s: %s -> %s", record.hex_id, previous.value, status.value)
        self.status_changed.emit(StatusChange(device_id, previous, status))
        return previous

    def set_firmware_timestamp(self, device_id: int, timestamp: Optional[int]) -> None:
        record = self.require(device_id)
        if record.firmware_timestamp == timestamp:
            return
        record.firmware_timestamp = timestamp
        self.firmware_changed.emit(record)

    def remove(self, device_id: int) -> Optional[DeviceRecord]:
        record = self._records.pop(device_id, None)
        if record is not None:
            self.device_removed.emit(record)
        return record

    def expire(self, now: float, ttl: float) -> List[int]:
        """Return ids whose advertisements went stale and drop unused records.

        A stale record is removed only if it is not paired and not holding a
        link; otherwise it stays registered but leaves the scan results view.
        """
        expired: List[int] = []
        for record in list(self._records.values()):
            seen = record.last_advertisement_time
            if seen is None or now - seen <= ttl:
                continue
            expired.append(record.device_id)
            record.last_advertisement_time = None
            if record.device_id not in self._paired and not occupies_link(record.status):
                self.remove(record.device_id)
        return expired

    def clear_scan_results(self) -> List[int]:
        cleared: List[int] = []
        for record in list(self._records.values()):
            if record.last_advertisement_time is None:
                continue
            cleared.append(record.device_id)
            record.last_advertisement_time = None
            if record.device_id not in self._paired and not occupies_link(record.status):
                self.remove(record.device_id)
        return cleared

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------
    @property
    def paired_ids(self) -> Set[int]:
        return set(self._paired)

    def is_paired(self, device_id: int) -> bool:
        return device_id in self._paired

    def pair(self, device_id: int) -> DeviceRecord:
        record = self.require(device_id)
        if device_id not in self._paired:
            self._paired.add(device_id)
            if self._store is not None:
                self._store.save(record)
        return record

    def unpair(self, device_id: int) -> Optional[DeviceRecord]:
        self._paired.discard(device_id)
        if self._store is not None:
            self._store.remove(device_id)
        return self.remove(device_id)

    def pair_many(self, device_ids: Iterable[int]) -> None:
        for device_id in device_ids:
            self.pair(device_id)


__all__ = ["DeviceRegistry"]
