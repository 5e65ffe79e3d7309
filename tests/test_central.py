"""Simulation tests for the connection scheduler."""
from __future__ import annotations

import asyncio
import csv
import tempfile
from pathlib import Path
from typing import List, Optional
from unittest import IsolatedAsyncioTestCase

from fakes import FakeTransport, wait_until

from pixelcentral.central import CentralConfig, ConnectionLimitReached, ConnectionScheduler
from pixelcentral.errors import (
    DeviceNotFoundError,
    DfuBusyError,
    OperationCancelledError,
    TransportConnectError,
    TransportTimeoutError,
)
from pixelcentral.metrics import MetricsLogger
from pixelcentral.models.device import DeviceRecord, DeviceStatus, StatusChange
from pixelcentral.queue import ConnectQueue, Priority
from pixelcentral.registry import DeviceRegistry
from pixelcentral.scanner import ScanManager
from pixelcentral.transport.base import DeviceIdentity


def _address(device_id: int) -> str:
    return f"AA:00:00:00:00:{device_id:02X}"


def test_backoff_doubles_and_caps() -> None:
    config = CentralConfig(base_backoff=1.0, max_backoff=5.0)
    assert config.backoff_for(0) == 0.0
    assert [config.backoff_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


class ConnectionSchedulerTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.registry = DeviceRegistry()
        self.transport = FakeTransport()
        self.scheduler: Optional[ConnectionScheduler] = None

    async def asyncTearDown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.shutdown()

    def _start(
        self,
        max_connections: int = 2,
        metrics: Optional[MetricsLogger] = None,
        *,
        connect_timeout: float = 1.0,
        scanner: Optional[ScanManager] = None,
    ) -> ConnectionScheduler:
        self.scheduler = ConnectionScheduler(
            self.registry,
            self.transport,
            scanner=scanner,
            config=CentralConfig(
                max_connections=max_connections,
                connect_timeout=connect_timeout,
                base_backoff=0.05,
                max_backoff=0.2,
                reconnect_delay=0.05,
            ),
            metrics=metrics,
        )
        self.scheduler.start()
        return self.scheduler

    def _add(self, device_id: int, firmware_timestamp: Optional[int] = 1000) -> None:
        self.transport.add_device(self.registry, device_id, _address(device_id), firmware_timestamp)

    def _status(self, device_id: int) -> DeviceStatus:
        return self.registry.require(device_id).status

    async def test_connect_walks_through_identification(self) -> None:
        scheduler = self._start()
        self._add(1, firmware_timestamp=1234)
        changes: List[StatusChange] = []
        scheduler.status_changed.subscribe(changes.append)

        scheduler.request_connect(1)
        record = await scheduler.wait_until_ready(1, 1.0)

        self.assertEqual(record.status, DeviceStatus.READY)
        self.assertEqual(record.firmware_timestamp, 1234)
        self.assertEqual(
            [change.current for change in changes],
            [DeviceStatus.CONNECTING, DeviceStatus.IDENTIFYING, DeviceStatus.READY],
        )

    async def test_connection_count_never_exceeds_limit(self) -> None:
        scheduler = self._start(max_connections=2)
        for device_id in (1, 2, 3, 4):
            self._add(device_id)
            scheduler.request_connect(device_id)

        await wait_until(lambda: sum(self._status(d) is DeviceStatus.READY for d in (1, 2, 3, 4)) == 2)
        await asyncio.sleep(0.05)

        self.assertEqual(scheduler.links_in_use, 2)
        self.assertLessEqual(self.transport.max_links, 2)
        self.assertEqual(scheduler.connect_queue.low_priority, [3, 4])

        await scheduler.request_disconnect(1)
        await scheduler.wait_until_ready(3, 1.0)
        self.assertEqual(scheduler.connect_queue.low_priority, [4])
        self.assertEqual(self._status(1), DeviceStatus.DISCONNECTED)

    async def test_freed_slot_goes_to_high_priority_first(self) -> None:
        scheduler = self._start(max_connections=1)
        for device_id in (1, 2, 3):
            self._add(device_id)
        gate = asyncio.Event()
        self.transport.gates[_address(1)] = gate

        scheduler.request_connect(1, Priority.HIGH)
        await wait_until(lambda: self._status(1) is DeviceStatus.CONNECTING)
        scheduler.request_connect(2, Priority.LOW)
        scheduler.request_connect(3, Priority.HIGH)
        gate.set()
        await scheduler.wait_until_ready(1, 1.0)

        await scheduler.request_disconnect(1)
        await scheduler.wait_until_ready(3, 1.0)

        self.assertEqual(self.transport.connect_calls, [_address(1), _address(3)])
        self.assertEqual(scheduler.connect_queue, ConnectQueue(high_priority=[], low_priority=[2]))

    async def test_high_priority_request_releases_low_priority_link(self) -> None:
        scheduler = self._start(max_connections=1)
        self._add(1)
        self._add(2)
        limits: List[ConnectionLimitReached] = []
        scheduler.connection_limit_reached.subscribe(limits.append)

        scheduler.request_connect(1)
        await scheduler.wait_until_ready(1, 1.0)
        scheduler.request_connect(2, Priority.HIGH)
        await scheduler.wait_until_ready(2, 1.0)

        self.assertEqual(limits, [ConnectionLimitReached(2, released_id=1)])
        self.assertEqual(self._status(1), DeviceStatus.DISCONNECTED)
        self.assertIn(_address(1), self.transport.disconnect_calls)
        self.assertEqual(scheduler.connect_queue, ConnectQueue(high_priority=[], low_priority=[1]))
        self.assertEqual(scheduler.links_in_use, 1)
        self.assertEqual(self.transport.max_links, 1)

    async def test_only_established_low_priority_links_are_released(self) -> None:
        scheduler = self._start(max_connections=1)
        for device_id in (1, 2, 3):
            self._add(device_id)
        gate = asyncio.Event()
        self.transport.gates[_address(1)] = gate
        limits: List[ConnectionLimitReached] = []
        scheduler.connection_limit_reached.subscribe(limits.append)

        scheduler.request_connect(1)
        await wait_until(lambda: self._status(1) is DeviceStatus.CONNECTING)
        scheduler.request_connect(2, Priority.HIGH)
        await asyncio.sleep(0.05)
        self.assertIs(self._status(1), DeviceStatus.CONNECTING)
        self.assertEqual(limits, [ConnectionLimitReached(2)])

        gate.set()
        await scheduler.wait_until_ready(2, 1.0)
        scheduler.request_connect(3, Priority.HIGH)
        await asyncio.sleep(0.05)

        self.assertEqual(
            limits,
            [ConnectionLimitReached(2), ConnectionLimitReached(2, released_id=1), ConnectionLimitReached(3)],
        )
        self.assertIs(self._status(2), DeviceStatus.READY)
        self.assertIs(self._status(3), DeviceStatus.DISCONNECTED)
        self.assertEqual(scheduler.connect_queue, ConnectQueue(high_priority=[3], low_priority=[1]))

    async def test_hanging_connect_times_out_and_is_retried(self) -> None:
        scheduler = self._start(connect_timeout=0.1)
        self._add(1)
        gate = asyncio.Event()
        self.transport.gates[_address(1)] = gate
        changes: List[StatusChange] = []
        scheduler.status_changed.subscribe(changes.append)

        scheduler.request_connect(1)
        await wait_until(lambda: len(self.transport.connect_calls) == 2)

        self.assertEqual(
            [(change.previous, change.current) for change in changes[:2]],
            [
                (DeviceStatus.DISCONNECTED, DeviceStatus.CONNECTING),
                (DeviceStatus.CONNECTING, DeviceStatus.DISCONNECTED),
            ],
        )
        self.assertNotIn(_address(1), self.transport.connected)

        del self.transport.gates[_address(1)]
        gate.set()
        record = await scheduler.wait_until_ready(1, 2.0)
        self.assertIs(record.status, DeviceStatus.READY)

    async def test_shutdown_cancels_connect_in_flight(self) -> None:
        scheduler = self._start()
        for device_id in (1, 2):
            self._add(device_id)
            self.transport.gates[_address(device_id)] = asyncio.Event()
            scheduler.request_connect(device_id)
        await wait_until(lambda: all(self._status(d) is DeviceStatus.CONNECTING for d in (1, 2)))
        waiter = asyncio.create_task(scheduler.wait_until_ready(1, 5.0))
        await asyncio.sleep(0.01)

        await scheduler.shutdown()
        self.scheduler = None

        with self.assertRaises(OperationCancelledError):
            await waiter
        self.assertEqual([self._status(d) for d in (1, 2)], [DeviceStatus.DISCONNECTED] * 2)
        self.assertEqual(scheduler.links_in_use, 0)
        self.assertEqual(scheduler.connect_queue, ConnectQueue(high_priority=[], low_priority=[]))
        with self.assertRaises(OperationCancelledError):
            scheduler.request_connect(1)

    async def test_known_device_without_address_is_scanned_for(self) -> None:
        scanner = ScanManager(self.registry, self.transport)
        self.addAsyncCleanup(scanner.close)
        scheduler = self._start(scanner=scanner)
        self.registry.add(DeviceRecord(device_id=7))
        self.registry.add(DeviceRecord(device_id=8))
        self.transport.identities[_address(7)] = DeviceIdentity(device_id=7)

        scheduler.request_connect(7)
        scheduler.request_connect(8)
        await wait_until(lambda: self._status(7) is DeviceStatus.SCANNING and self._status(8) is DeviceStatus.SCANNING)
        await wait_until(lambda: self.transport.scanning)

        await scheduler.request_disconnect(8)
        self.assertIs(self._status(8), DeviceStatus.DISCONNECTED)

        self.transport.advertise(_address(7), 7)
        record = await scheduler.wait_until_ready(7, 1.0)
        self.assertEqual(record.ble_address, _address(7))

    async def test_failed_attempt_is_requeued_in_same_tier_after_backoff(self) -> None:
        scheduler = self._start()
        self._add(1)
        self.transport.connect_failures[_address(1)] = [TransportConnectError("boom"), None]
        snapshots: List[ConnectQueue] = []
        scheduler.connect_queue_changed.subscribe(snapshots.append)

        scheduler.request_connect(1, Priority.HIGH)
        record = await scheduler.wait_until_ready(1, 2.0)

        self.assertIs(record.status, DeviceStatus.READY)
        self.assertEqual(self.transport.connect_calls, [_address(1), _address(1)])
        self.assertEqual(sum(1 in s.high_priority for s in snapshots), 2)
        self.assertFalse(any(1 in s.low_priority for s in snapshots))

    async def test_identity_mismatch_counts_as_failure(self) -> None:
        scheduler = self._start()
        self._add(1)
        self.transport.identities[_address(1)] = DeviceIdentity(device_id=99)

        scheduler.request_connect(1)
        await wait_until(lambda: _address(1) in self.transport.disconnect_calls)
        await scheduler.request_disconnect(1)

        self.assertEqual(self._status(1), DeviceStatus.DISCONNECTED)
        self.assertEqual(scheduler.links_in_use, 0)

    async def test_no_connecting_after_disconnect_resolves(self) -> None:
        scheduler = self._start()
        self._add(1)
        self.transport.gates[_address(1)] = asyncio.Event()

        scheduler.request_connect(1)
        await wait_until(lambda: self._status(1) is DeviceStatus.CONNECTING)
        await scheduler.request_disconnect(1)

        self.assertEqual(self._status(1), DeviceStatus.DISCONNECTED)
        self.assertNotIn(1, scheduler.connect_queue.low_priority)
        self.assertEqual(scheduler.links_in_use, 0)
        await asyncio.sleep(0.1)
        self.assertEqual(self._status(1), DeviceStatus.DISCONNECTED)
        self.assertEqual(len(self.transport.connect_calls), 1)

    async def test_disconnect_before_dispatch_leaves_device_idle(self) -> None:
        scheduler = self._start()
        self._add(1)

        scheduler.request_connect(1)
        await scheduler.request_disconnect(1)
        await asyncio.sleep(0.05)

        self.assertEqual(self._status(1), DeviceStatus.DISCONNECTED)
        self.assertEqual(self.transport.connect_calls, [])

    async def test_lost_link_reconnects_wanted_device(self) -> None:
        scheduler = self._start()
        self._add(1)
        scheduler.request_connect(1)
        await scheduler.wait_until_ready(1, 1.0)

        self.transport.drop_link(_address(1))
        self.assertEqual(self._status(1), DeviceStatus.DISCONNECTED)

        await wait_until(lambda: len(self.transport.connect_calls) == 2 and self._status(1) is DeviceStatus.READY)

    async def test_unknown_device_connects_once_discovered(self) -> None:
        scheduler = self._start()
        scheduler.request_connect(5)
        await asyncio.sleep(0.02)
        self.assertEqual(scheduler.connect_queue.low_priority, [5])

        self._add(5)
        record = await scheduler.wait_until_ready(5, 1.0)
        self.assertEqual(record.device_id, 5)

    async def test_wait_until_ready_errors(self) -> None:
        scheduler = self._start()
        self._add(1)
        with self.assertRaises(OperationCancelledError):
            await scheduler.wait_until_ready(1, 0.1)

        self.transport.gates[_address(1)] = asyncio.Event()
        scheduler.request_connect(1)
        with self.assertRaises(TransportTimeoutError):
            await scheduler.wait_until_ready(1, 0.05)

        waiter = asyncio.create_task(scheduler.wait_until_ready(1, 1.0))
        await asyncio.sleep(0.01)
        await scheduler.request_disconnect(1)
        with self.assertRaises(OperationCancelledError):
            await waiter

    async def test_dfu_handover_holds_slot_and_requeues_high(self) -> None:
        scheduler = self._start()
        self._add(1)
        self._add(2)
        scheduler.request_connect(1)
        await scheduler.wait_until_ready(1, 1.0)
        in_dfu: List[Optional[int]] = []
        scheduler.device_in_dfu_changed.subscribe(in_dfu.append)

        async with scheduler.dfu_handover(1) as record:
            self.assertEqual(record.device_id, 1)
            self.assertEqual(scheduler.device_in_dfu, 1)
            with self.assertRaises(DfuBusyError):
                async with scheduler.dfu_handover(2):
                    pass
            self.transport.drop_link(_address(1), "rebooting")
            self.assertEqual(self._status(1), DeviceStatus.DISCONNECTED)
            self.assertEqual(scheduler.links_in_use, 1)
            await asyncio.sleep(0.1)
            self.assertEqual(len(self.transport.connect_calls), 1)

        self.assertEqual(in_dfu, [1, None])
        await scheduler.wait_until_ready(1, 1.0)
        self.assertEqual(len(self.transport.connect_calls), 2)

    async def test_dfu_handover_unknown_device(self) -> None:
        scheduler = self._start()
        with self.assertRaises(DeviceNotFoundError):
            async with scheduler.dfu_handover(42):
                pass
        self.assertIsNone(scheduler.device_in_dfu)

    async def test_connect_attempts_are_logged(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "metrics.csv"
            scheduler = self._start(metrics=MetricsLogger(path))
            self._add(1)
            scheduler.request_connect(1)
            await scheduler.wait_until_ready(1, 1.0)

            def _rows() -> List[dict]:
                with path.open(newline="", encoding="utf-8") as handle:
                    return list(csv.DictReader(handle))

            await wait_until(lambda: any(r["event"] == "connect_attempt" and r["status"] == "ok" for r in _rows()))
            rows = _rows()
            self.assertEqual(rows[0]["device"], "00000001")
            await scheduler.shutdown()
            self.scheduler = None
