"""Device records, the registry and paired device persistence."""
from __future__ import annotations

import tempfile
from pathlib import Path
from typing import List

import pytest

from pixelcentral.errors import DeviceNotFoundError, InvalidTransitionError
from pixelcentral.events import EventChannel
from pixelcentral.models import DeviceRecord, DeviceStatus, StatusChange
from pixelcentral.models.db_models import PairedDeviceStore
from pixelcentral.models.device import can_transition, occupies_link
from pixelcentral.registry import DeviceRegistry
from pixelcentral.scanner import Advertisement

from fakes import pixel_payloads


def _advertisement(device_id: int, address: str = "AA:00:00:00:00:01") -> Advertisement:
    manufacturer, service = pixel_payloads(device_id, 1_700_000_000)
    adv = Advertisement.decode(address, name="Pixel", rssi=-50, manufacturer_data=manufacturer, service_data=service)
    assert adv is not None
    return adv


def test_status_transitions() -> None:
    assert can_transition(DeviceStatus.DISCONNECTED, DeviceStatus.CONNECTING)
    assert can_transition(DeviceStatus.READY, DeviceStatus.READY)
    assert not can_transition(DeviceStatus.DISCONNECTED, DeviceStatus.READY)
    assert not can_transition(DeviceStatus.DISCONNECTING, DeviceStatus.CONNECTING)
    assert occupies_link(DeviceStatus.DISCONNECTING)
    assert not occupies_link(DeviceStatus.SCANNING)


def test_record_to_dict() -> None:
    record = DeviceRecord(device_id=0xABC, name="Pixel", firmware_timestamp=5)
    payload = record.to_dict()
    assert payload["hex_id"] == "00000ABC"
    assert payload["status"] == "disconnected"
    assert payload["firmware_timestamp"] == 5


def test_registry_rejects_illegal_transition() -> None:
    registry = DeviceRegistry()
    registry.add(DeviceRecord(device_id=1))
    changes: List[StatusChange] = []
    registry.status_changed.subscribe(changes.append)

    with pytest.raises(InvalidTransitionError):
        registry.set_status(1, DeviceStatus.READY)
    registry.set_status(1, DeviceStatus.CONNECTING)
    registry.set_status(1, DeviceStatus.CONNECTING)

    assert changes == [StatusChange(1, DeviceStatus.DISCONNECTED, DeviceStatus.CONNECTING)]
    with pytest.raises(DeviceNotFoundError):
        registry.require(2)


def test_advertisement_upsert_updates_fields() -> None:
    registry = DeviceRegistry()
    added: List[DeviceRecord] = []
    firmware: List[int] = []
    registry.device_added.subscribe(added.append)
    registry.firmware_changed.subscribe(lambda record: firmware.append(record.firmware_timestamp))

    registry.upsert_advertisement(_advertisement(7), now=1.0)
    record = registry.upsert_advertisement(_advertisement(7, "AA:00:00:00:00:02"), now=2.0)

    assert len(added) == 1
    assert firmware == [1_700_000_000_000]
    assert record.ble_address == "AA:00:00:00:00:02"
    assert record.led_count == 20
    assert record.battery_level == 75 and record.is_charging is True
    assert registry.find_by_address("aa:00:00:00:00:02") is record
    assert registry.scan_results(now=3.0, ttl=5.0) == [record]


def test_expire_keeps_paired_and_linked_devices() -> None:
    registry = DeviceRegistry()
    for device_id in (1, 2, 3):
        registry.upsert_advertisement(_advertisement(device_id, f"AA:00:00:00:00:0{device_id}"), now=0.0)
    registry.pair(2)
    registry.set_status(3, DeviceStatus.CONNECTING)

    assert sorted(registry.expire(now=10.0, ttl=5.0)) == [1, 2, 3]
    assert 1 not in registry
    assert 2 in registry and 3 in registry
    assert registry.scan_results(now=10.0, ttl=5.0) == []


def test_event_channel_isolates_failing_listener() -> None:
    channel: EventChannel[int] = EventChannel("numbers")
    seen: List[int] = []

    def _boom(_value: int) -> None:
        raise RuntimeError("listener failure")

    channel.subscribe(_boom)
    unsubscribe = channel.subscribe(seen.append)
    channel.emit(1)
    unsubscribe()
    unsubscribe()
    channel.emit(2)

    assert seen == [1]
    assert channel.listener_count == 1


def test_paired_devices_persist_across_registries() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        url = f"sqlite:///{Path(tmp) / 'paired.db'}"
        store = PairedDeviceStore(url)
        registry = DeviceRegistry(store)
        registry.add(DeviceRecord(device_id=0x10, ble_address="AA:00:00:00:00:10", name="Red"))
        registry.add(DeviceRecord(device_id=0x20, ble_address="AA:00:00:00:00:20"))
        registry.pair_many([0x10, 0x20])
        registry.unpair(0x20)

        reopened = PairedDeviceStore(url)
        reloaded = DeviceRegistry(reopened)

        assert reloaded.paired_ids == {0x10}
        record = reloaded.require(0x10)
        assert record.name == "Red"
        assert record.ble_address == "AA:00:00:00:00:10"
        assert record.status is DeviceStatus.DISCONNECTED
        assert 0x20 not in reloaded
        store.engine.dispose()
        reopened.engine.dispose()


def test_store_save_updates_existing_row() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        store = PairedDeviceStore(f"sqlite:///{Path(tmp) / 'paired.db'}")
        store.save(DeviceRecord(device_id=1, name="Old"))
        store.save(DeviceRecord(device_id=1, name="New", firmware_timestamp=9))

        records = store.list_paired()

        assert [(r.device_id, r.name, r.firmware_timestamp) for r in records] == [(1, "New", 9)]
        assert store.remove(1) is True
        assert store.remove(1) is False
        store.engine.dispose()
