"""Tests for advertisement decoding and the scan manager."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import List
from unittest import IsolatedAsyncioTestCase

from fakes import FakeTransport, pixel_payloads, wait_until

from pixelcentral.registry import DeviceRegistry
from pixelcentral.scanner import PIXELS_SERVICE_UUID, Advertisement, ScanConfig, ScanManager, ScanStatus


def test_decode_reads_service_and_manufacturer_data() -> None:
    manufacturer, service = pixel_payloads(0xA1B2C3D4, 1_650_000_000, led_count=20, design=0x12, battery=0x80 | 75)

    adv = Advertisement.decode("AA:BB:CC:DD:EE:01", name="Pixel", rssi=-50, manufacturer_data=manufacturer, service_data=service)

    assert adv is not None
    assert adv.device_id == 0xA1B2C3D4
    assert adv.firmware_timestamp == 1_650_000_000 * 1000
    assert adv.led_count == 20
    assert adv.colorway == 2
    assert adv.die_type == 1
    assert adv.roll_state == 1
    assert adv.face_index == 5
    assert adv.battery_level == 75
    assert adv.is_charging is True


def test_decode_rejects_foreign_or_truncated_payloads() -> None:
    manufacturer, service = pixel_payloads(0x1234)
    assert Advertisement.decode("addr", manufacturer_data=manufacturer, service_data=service[:4]) is None
    assert Advertisement.decode("addr", manufacturer_data=b"\x01", service_data=service) is None
    _, null_service = pixel_payloads(0)
    assert Advertisement.decode("addr", manufacturer_data=manufacturer, service_data=null_service) is None


def test_from_bleak_uses_advertisement_fields() -> None:
    manufacturer, service = pixel_payloads(0x42)
    device = SimpleNamespace(address="AA:BB:CC:DD:EE:02", name="Fallback", rssi=-70)
    advertisement = SimpleNamespace(
        service_uuids=[PIXELS_SERVICE_UUID.upper()],
        manufacturer_data={0xFFFF: manufacturer},
        service_data={PIXELS_SERVICE_UUID: service},
        rssi=-41,
        local_name="PixelName",
    )

    adv = Advertisement.from_bleak(device, advertisement)

    assert adv is not None
    assert adv.address == "AA:BB:CC:DD:EE:02"
    assert adv.name == "PixelName"
    assert adv.rssi == -41
    assert adv.device_id == 0x42


def test_from_bleak_ignores_other_services() -> None:
    manufacturer, service = pixel_payloads(0x42)
    device = SimpleNamespace(address="AA", name=None, rssi=None)
    advertisement = SimpleNamespace(
        service_uuids=["0000180f-0000-1000-8000-00805f9b34fb"],
        manufacturer_data={1: manufacturer},
        service_data={"x": service},
        rssi=-41,
        local_name=None,
    )
    assert Advertisement.from_bleak(device, advertisement) is None
    assert Advertisement.from_bleak(device, None) is None


class ScanManagerTest(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.now = [100.0]
        self.registry = DeviceRegistry()
        self.transport = FakeTransport()
        self.scanner = ScanManager(
            self.registry,
            self.transport,
            ScanConfig(ttl=5.0, sweep_interval=60.0, clock=lambda: self.now[0]),
        )
        self.lost: List[int] = []
        self.scanner.scan_lost.subscribe(self.lost.append)

    async def asyncTearDown(self) -> None:
        await self.scanner.close()

    async def test_result_expires_within_one_sweep(self) -> None:
        await self.scanner.start()
        self.transport.advertise("AA:00", 0x10)
        self.assertEqual([r.device_id for r in self.scanner.results()], [0x10])

        self.now[0] += 4.0
        self.assertEqual(self.scanner.sweep(), [])
        self.assertEqual(len(self.scanner.results()), 1)

        self.now[0] += 2.0
        self.assertEqual(self.scanner.sweep(), [0x10])
        self.assertEqual(self.scanner.results(), [])
        self.assertEqual(self.lost, [0x10])
        self.assertNotIn(0x10, self.registry)

    async def test_readvertising_keeps_result_alive(self) -> None:
        await self.scanner.start()
        self.transport.advertise("AA:00", 0x10)
        for _ in range(3):
            self.now[0] += 4.0
            self.transport.advertise("AA:00", 0x10)
            self.scanner.sweep()
        self.assertEqual([r.device_id for r in self.scanner.results()], [0x10])
        self.assertEqual(self.lost, [])

    async def test_paired_record_survives_expiry(self) -> None:
        await self.scanner.start()
        self.transport.advertise("AA:00", 0x10)
        self.registry.pair(0x10)

        self.now[0] += 10.0
        self.scanner.sweep()

        self.assertEqual(self.scanner.results(), [])
        self.assertIn(0x10, self.registry)

    async def test_clear_forgets_scan_results(self) -> None:
        await self.scanner.start()
        self.transport.advertise("AA:00", 0x10)
        self.transport.advertise("AA:01", 0x11)

        self.scanner.clear()

        self.assertEqual(sorted(self.lost), [0x10, 0x11])
        self.assertEqual(len(self.registry), 0)

    async def test_stop_is_idempotent_and_ignores_late_advertisements(self) -> None:
        statuses: List[ScanStatus] = []
        self.scanner.status_changed.subscribe(statuses.append)
        await self.scanner.start()
        await self.scanner.stop()
        await self.scanner.stop()

        self.transport.advertise("AA:00", 0x10)

        self.assertEqual(statuses, [ScanStatus.STARTING, ScanStatus.SCANNING, ScanStatus.STOPPED])
        self.assertFalse(self.transport.scanning)
        self.assertEqual(len(self.registry), 0)

    async def test_allowlist_filters_devices(self) -> None:
        self.scanner.config = ScanConfig(ttl=5.0, device_id_allowlist=[0x11], clock=lambda: self.now[0])
        await self.scanner.start()
        self.transport.advertise("AA:00", 0x10)
        self.transport.advertise("AA:01", 0x11)
        self.assertEqual([r.device_id for r in self.registry.records()], [0x11])

    async def test_discovery_need_overrides_busy_radio(self) -> None:
        await self.scanner.start()
        self.scanner.set_radio_busy(True)
        await wait_until(lambda: self.scanner.status is ScanStatus.STOPPED)

        self.scanner.set_discovery_needed(True)
        await wait_until(lambda: self.scanner.status is ScanStatus.SCANNING)
        self.assertTrue(self.transport.scanning)

        self.scanner.set_discovery_needed(False)
        self.scanner.set_radio_busy(False)
        await asyncio.sleep(0.01)
        self.assertEqual(self.scanner.status, ScanStatus.SCANNING)
