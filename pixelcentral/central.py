"""Connection scheduler: decides which dice get a BLE link and when."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from time import monotonic
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from pixelcentral.errors import (
    DeviceNotFoundError,
    DfuBusyError,
    OperationCancelledError,
    TransportError,
    TransportTimeoutError,
)
from pixelcentral.events import EventChannel, Unsubscribe
from pixelcentral.metrics import MetricsLogger
from pixelcentral.models.device import DeviceRecord, DeviceStatus, StatusChange, is_connected
from pixelcentral.queue import ConnectQueue, Priority, PriorityQueue
from pixelcentral.registry import DeviceRegistry
from pixelcentral.scanner import ScanManager, ScanStatus
from pixelcentral.transport.base import BleTransport, FirmwarePropertyChange, LinkStateChange

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CentralConfig:
    """Tuning knobs for :class:`ConnectionScheduler`."""

    max_connections: int = 4
    connect_timeout: float = 12.0
    base_backoff: float = 1.0
    max_backoff: float = 30.0
    reconnect_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.base_backoff < 0:
            raise ValueError("base_backoff must not be negative")
        self.max_backoff = max(self.base_backoff, self.max_backoff)

    def backoff_for(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self.base_backoff * (2 ** (failures - 1)), self.max_backoff)


@dataclass(frozen=True, slots=True)
class ConnectionLimitReached:
    """A high-priority device found every slot taken.

    ``released_id`` is the low-priority device disconnected to make room, or
    None when no established link could be released.
    """

    device_id: int
    released_id: Optional[int] = None


class ConnectionScheduler:
    """Connect wanted dice through a bounded number of BLE links.

    Requests go into a two-tier FIFO queue. A single scheduling task hands free
    slots to the oldest eligible high-priority entry first, then to low
    priority ones. Failed attempts are re-queued at the same tier after an
    exponential backoff, and wanted devices that drop their link are re-queued
    after ``reconnect_delay``.

    When a high-priority entry is eligible but every slot is taken, the
    longest-ready low-priority link is disconnected and put back in the low
    tier. Attempts still in flight are never released.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        transport: BleTransport,
        *,
        scanner: Optional[ScanManager] = None,
        config: Optional[CentralConfig] = None,
        metrics: Optional[MetricsLogger] = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.scanner = scanner
        self.config = config or CentralConfig()
        self.metrics = metrics

        self.connect_queue_changed: EventChannel[ConnectQueue] = EventChannel("connect_queue_changed")
        self.scan_status_changed: EventChannel[ScanStatus] = EventChannel("scan_status_changed")
        self.pixel_found: EventChannel[DeviceRecord] = EventChannel("pixel_found")
        self.pixel_removed: EventChannel[DeviceRecord] = EventChannel("pixel_removed")
        self.status_changed: EventChannel[StatusChange] = EventChannel("status_changed")
        self.device_in_dfu_changed: EventChannel[Optional[int]] = EventChannel("device_in_dfu_changed")
        self.connection_limit_reached: EventChannel[ConnectionLimitReached] = EventChannel(
            "connection_limit_reached"
        )

        self._queue = PriorityQueue()
        self._wanted: Dict[int, Priority] = {}
        self._failures: Dict[int, int] = {}
        self._links: Set[int] = set()
        self._attempts: Dict[int, asyncio.Task[None]] = {}
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._waiters: Dict[int, List[asyncio.Future[DeviceRecord]]] = {}
        self._in_dfu: Optional[int] = None
        self._ready_since: Dict[int, float] = {}
        self._releasing: Dict[int, int] = {}
        self._release_tasks: Set[asyncio.Task[None]] = set()
        self._limit_reported: Set[int] = set()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._closing = False
        self._subscriptions: List[Unsubscribe] = []

        for channel in (self._queue.queued, self._queue.requeued, self._queue.dequeued):
            self._subscriptions.append(channel.subscribe(self._on_queue_changed))
        self._subscriptions.append(registry.status_changed.subscribe(self._on_status_changed))
        self._subscriptions.append(registry.device_added.subscribe(self._on_device_added))
        self._subscriptions.append(registry.device_removed.subscribe(self._on_device_removed))
        self._subscriptions.append(transport.link_state_changed.subscribe(self._on_link_state))
        self._subscriptions.append(transport.firmware_property_changed.subscribe(self._on_firmware_property))
        if scanner is not None:
            self._subscriptions.append(scanner.status_changed.subscribe(self.scan_status_changed.emit))
            self._subscriptions.append(scanner.advertisement.subscribe(lambda _record: self._wake.set()))

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------
    @property
    def connect_queue(self) -> ConnectQueue:
        return self._queue.snapshot()

    @property
    def links_in_use(self) -> int:
        return len(self._links)

    @property
    def device_in_dfu(self) -> Optional[int]:
        return self._in_dfu

    def get_device(self, device_id: int) -> Optional[DeviceRecord]:
        return self.registry.get(device_id)

    def is_wanted(self, device_id: int) -> bool:
        return device_id in self._wanted

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._task = asyncio.create_task(self._run(), name="pixelcentral-scheduler")
        self._wake.set()

    def request_connect(self, device_id: int, priority: Priority = Priority.LOW) -> None:
        """Ask for a link to ``device_id``; raising an existing request's priority re-queues it."""
        if self._closing:
            raise OperationCancelledError("scheduler is shut down")
        current = self._wanted.get(device_id)
        if current is None or priority.rank > current.rank:
            self._wanted[device_id] = priority

        record = self.registry.get(device_id)
        if record is not None and record.status is DeviceStatus.READY and device_id in self._links:
            return
        if device_id in self._attempts or device_id == self._in_dfu or device_id in self._timers:
            return
        if device_id in self._releasing:
            return
        self._queue.queue(device_id, priority)
        self._wake.set()

    async def request_disconnect(self, device_id: int) -> None:
        """Forget the request for ``device_id`` and drop its link.

        Once this returns the device is not queued, has no pending backoff and
        is not in CONNECTING.
        """
        self._wanted.pop(device_id, None)
        self._failures.pop(device_id, None)
        self._limit_reported.discard(device_id)
        self._queue.dequeue(device_id)
        self._cancel_timer(device_id)
        self._stop_scanning_for(device_id)

        task = self._attempts.get(device_id)
        if task is not None:
            task.cancel()
            await asyncio.wait({task})
            self._reap(device_id)

        self._fail_waiters(device_id, OperationCancelledError(f"connection to {device_id:08X} was cancelled"))

        record = self.registry.get(device_id)
        if record is not None and device_id != self._in_dfu and is_connected(record.status):
            await self._drop_link(record)
        self._wake.set()

    async def wait_until_ready(self, device_id: int, timeout: Optional[float] = None) -> DeviceRecord:
        record = self.registry.get(device_id)
        if record is not None and record.status is DeviceStatus.READY:
            return record
        if device_id not in self._wanted:
            raise OperationCancelledError(f"no connection requested for {device_id:08X}")

        future: asyncio.Future[DeviceRecord] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(device_id, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"device {device_id:08X} not ready after {timeout}s") from exc
        finally:
            waiters = self._waiters.get(device_id)
            if waiters and future in waiters:
                waiters.remove(future)
                if not waiters:
                    self._waiters.pop(device_id, None)

    async def shutdown(self) -> None:
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.wait({self._task})
            self._task = None

        for device_id in list(self._timers):
            self._cancel_timer(device_id)
        attempts = [*self._attempts.values(), *self._release_tasks]
        for task in attempts:
            task.cancel()
        if attempts:
            await asyncio.wait(attempts)
        for device_id in list(self._attempts):
            self._reap(device_id)

        for device_id in list(self._waiters):
            self._fail_waiters(device_id, OperationCancelledError("scheduler shut down"))

        for device_id in list(self._links):
            record = self.registry.get(device_id)
            if record is not None and device_id != self._in_dfu and is_connected(record.status):
                await self._drop_link(record)

        for device_id in self._queue.clear():
            self._stop_scanning_for(device_id)
        self._wanted.clear()
        self._limit_reported.clear()
        if self.scanner is not None:
            self.scanner.set_discovery_needed(False)
            self.scanner.set_radio_busy(False)
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()

    @contextlib.asynccontextmanager
    async def dfu_handover(self, device_id: int) -> AsyncIterator[DeviceRecord]:
        """Take ``device_id`` out of scheduling for the duration of an update.

        Only one device may be handed over at a time. On exit the link is
        released and the device, if still wanted, is re-queued at high
        priority.
        """
        if self._in_dfu is not None:
            raise DfuBusyError(f"device {self._in_dfu:08X} is already being updated")
        record = self.registry.get(device_id)
        if record is None:
            raise DeviceNotFoundError(device_id)

        self._in_dfu = device_id
        self.device_in_dfu_changed.emit(device_id)
        try:
            self._queue.dequeue(device_id)
            task = self._attempts.get(device_id)
            if task is not None:
                await asyncio.wait({task})
            self._cancel_timer(device_id)
            self._links.add(device_id)
            yield record
        finally:
            self._links.discard(device_id)
            current = self.registry.get(device_id)
            if current is not None and is_connected(current.status):
                await self._drop_link(current)
            self._in_dfu = None
            self.device_in_dfu_changed.emit(None)
            if device_id in self._wanted and not self._closing:
                self._wanted[device_id] = Priority.HIGH
                self._queue.queue(device_id, Priority.HIGH)
            self._wake.set()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        try:
            while True:
                await self._wake.wait()
                self._wake.clear()
                self._dispatch()
                self._update_scan_policy()
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - scheduling bug
            logger.exception("Connection scheduler stopped unexpectedly")
            raise

    def _dispatch(self) -> None:
        while len(self._links) < self.config.max_connections:
            entry = self._queue.first_eligible(self._is_eligible)
            if entry is None:
                return
            self._queue.dequeue(entry.device_id)
            self._limit_reported.discard(entry.device_id)
            self._links.add(entry.device_id)
            self._attempts[entry.device_id] = asyncio.create_task(
                self._attempt(entry.device_id, entry.priority),
                name=f"pixelcentral-connect-{entry.device_id:08X}",
            )
        self._release_for_high_priority()

    def _release_for_high_priority(self) -> None:
        starved = [
            entry.device_id
            for entry in self._queue.entries(Priority.HIGH)
            if self._is_eligible(entry.device_id) and entry.device_id not in self._releasing.values()
        ]
        for device_id in starved:
            victim = self._release_candidate()
            if victim is None:
                if device_id not in self._limit_reported:
                    self._limit_reported.add(device_id)
                    logger.info("No link can be released for %08X; waiting for a free slot", device_id)
                    self.connection_limit_reached.emit(ConnectionLimitReached(device_id))
                continue
            logger.info("Releasing %08X to make room for %08X", victim, device_id)
            self._releasing[victim] = device_id
            self._limit_reported.discard(device_id)
            self.connection_limit_reached.emit(ConnectionLimitReached(device_id, victim))
            task = asyncio.create_task(self._release_link(victim), name=f"pixelcentral-release-{victim:08X}")
            self._release_tasks.add(task)
            task.add_done_callback(self._release_tasks.discard)

    def _release_candidate(self) -> Optional[int]:
        candidates = [
            device_id
            for device_id in self._ready_since
            if device_id in self._links
            and device_id not in self._releasing
            and device_id != self._in_dfu
            and self._wanted.get(device_id) is not Priority.HIGH
        ]
        return min(candidates, key=self._ready_since.__getitem__, default=None)

    async def _release_link(self, device_id: int) -> None:
        try:
            record = self.registry.get(device_id)
            if record is not None and record.status is DeviceStatus.READY:
                await self._drop_link(record)
                await self._log(
                    "connection_released", device_id, status="ok", extra={"for_device": self._releasing.get(device_id)}
                )
        finally:
            self._releasing.pop(device_id, None)
            priority = self._wanted.get(device_id)
            record = self.registry.get(device_id)
            if (
                priority is not None
                and not self._closing
                and record is not None
                and record.status is DeviceStatus.DISCONNECTED
            ):
                self._queue.queue(device_id, priority)
            self._wake.set()

    def _is_eligible(self, device_id: int) -> bool:
        if device_id == self._in_dfu or device_id in self._attempts or device_id in self._links:
            return False
        record = self.registry.get(device_id)
        if record is None or not record.ble_address:
            return False
        return record.status in (DeviceStatus.DISCONNECTED, DeviceStatus.SCANNING)

    def _update_scan_policy(self) -> None:
        if self.scanner is None:
            return
        needs_discovery = False
        for device_id in self._queue.ids():
            record = self.registry.get(device_id)
            if record is None:
                needs_discovery = True
            elif not record.ble_address:
                needs_discovery = True
                # Known but never located: mark it while discovery runs for it.
                if record.status is DeviceStatus.DISCONNECTED:
                    self._set_status(device_id, DeviceStatus.SCANNING)
        self.scanner.set_discovery_needed(needs_discovery)
        self.scanner.set_radio_busy(bool(self._attempts))

    def _stop_scanning_for(self, device_id: int) -> None:
        record = self.registry.get(device_id)
        if record is not None and record.status is DeviceStatus.SCANNING:
            self._set_status(device_id, DeviceStatus.DISCONNECTED)

    async def _attempt(self, device_id: int, priority: Priority) -> None:
        record = self.registry.get(device_id)
        address = record.ble_address if record is not None else None
        failures = self._failures.get(device_id, 0)
        try:
            if not address:
                raise TransportError(f"device {device_id:08X} has no known address")
            self._set_status(device_id, DeviceStatus.CONNECTING)
            await self._log("connect_attempt", device_id, status="pending", extra={"attempt": failures + 1, "priority": priority.value})
            timeout = self.config.connect_timeout
            await asyncio.wait_for(self.transport.connect(address, timeout), timeout=timeout)
            self._set_status(device_id, DeviceStatus.IDENTIFYING)
            identity = await asyncio.wait_for(self.transport.identify(address), timeout=timeout)
            if identity.device_id != device_id:
                raise TransportError(
                    f"expected device {device_id:08X} at {address}, found {identity.device_id:08X}",
                    address=address,
                )
            if identity.firmware_timestamp is not None:
                self.registry.set_firmware_timestamp(device_id, identity.firmware_timestamp)
            self._set_status(device_id, DeviceStatus.READY)
            self._failures.pop(device_id, None)
            await self._log("connect_attempt", device_id, status="ok", extra={"attempt": failures + 1})
        except asyncio.CancelledError:
            await self._release(device_id, address, DeviceStatus.DISCONNECTING)
            await self._log("connect_attempt", device_id, status="cancelled")
            raise
        except Exception as exc:
            failures += 1
            self._failures[device_id] = failures
            logger.warning("Connection to %08X (%s) failed: %s", device_id, address, exc or type(exc).__name__)
            await self._log("connect_failed", device_id, status="error", message=str(exc) or type(exc).__name__, extra={"attempt": failures})
            await self._release(device_id, address, None)
            wanted = self._wanted.get(device_id)
            if wanted is not None and not self._closing:
                delay = self.config.backoff_for(failures)
                await self._log("backoff", device_id, status="pending", value=delay, extra={"priority": wanted.value})
                self._schedule_requeue(device_id, delay)
        finally:
            self._attempts.pop(device_id, None)
            self._wake.set()

    async def _release(self, device_id: int, address: Optional[str], via: Optional[DeviceStatus]) -> None:
        self._links.discard(device_id)
        record = self.registry.get(device_id)
        if record is None or record.status is DeviceStatus.DISCONNECTED:
            return
        if via is not None:
            self._set_status(device_id, via)
        try:
            if address:
                await self.transport.disconnect(address)
        except Exception as exc:
            logger.debug("Disconnect after failed attempt on %s raised: %s", address, exc)
        finally:
            self._set_status(device_id, DeviceStatus.DISCONNECTED)

    def _reap(self, device_id: int) -> None:
        # A task cancelled before its first step never runs its cleanup.
        if self._attempts.pop(device_id, None) is None:
            return
        self._links.discard(device_id)
        record = self.registry.get(device_id)
        if record is not None and record.status is DeviceStatus.CONNECTING:
            self._set_status(device_id, DeviceStatus.DISCONNECTED)

    async def _drop_link(self, record: DeviceRecord) -> None:
        self._set_status(record.device_id, DeviceStatus.DISCONNECTING)
        try:
            await self.transport.disconnect(record.ble_address or "")
        except Exception as exc:
            logger.warning("Disconnect from %s failed: %s", record.ble_address, exc)
        finally:
            self._links.discard(record.device_id)
            self._set_status(record.device_id, DeviceStatus.DISCONNECTED)

    def _schedule_requeue(self, device_id: int, delay: float) -> None:
        self._cancel_timer(device_id)
        loop = asyncio.get_running_loop()
        self._timers[device_id] = loop.call_later(delay, self._requeue, device_id)

    def _requeue(self, device_id: int) -> None:
        self._timers.pop(device_id, None)
        priority = self._wanted.get(device_id)
        if priority is None or self._closing or device_id == self._in_dfu:
            return
        record = self.registry.get(device_id)
        if record is not None and record.status is DeviceStatus.READY:
            return
        self._queue.queue(device_id, priority)
        self._wake.set()

    def _cancel_timer(self, device_id: int) -> None:
        handle = self._timers.pop(device_id, None)
        if handle is not None:
            handle.cancel()

    def _set_status(self, device_id: int, status: DeviceStatus) -> None:
        if device_id not in self.registry:
            logger.debug("Device %08X left the registry before reaching %s", device_id, status.value)
            return
        self.registry.set_status(device_id, status)

    def _fail_waiters(self, device_id: int, error: Exception) -> None:
        for future in self._waiters.pop(device_id, []):
            if not future.done():
                future.set_exception(error)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    def _on_queue_changed(self, _device_id: int) -> None:
        self.connect_queue_changed.emit(self._queue.snapshot())

    def _on_status_changed(self, change: StatusChange) -> None:
        if change.current is DeviceStatus.READY:
            self._ready_since[change.device_id] = monotonic()
        else:
            self._ready_since.pop(change.device_id, None)
        self.status_changed.emit(change)
        if change.current is DeviceStatus.READY:
            record = self.registry.get(change.device_id)
            for future in self._waiters.pop(change.device_id, []):
                if not future.done():
                    future.set_result(record)

    def _on_device_added(self, record: DeviceRecord) -> None:
        self.pixel_found.emit(record)
        self._wake.set()

    def _on_device_removed(self, record: DeviceRecord) -> None:
        self._ready_since.pop(record.device_id, None)
        self.pixel_removed.emit(record)

    def _on_link_state(self, change: LinkStateChange) -> None:
        if change.connected:
            return
        record = self.registry.find_by_address(change.address)
        if record is None:
            return
        device_id = record.device_id
        if device_id in self._attempts or not is_connected(record.status):
            return
        logger.info("Link to %s (%08X) lost: %s", change.address, device_id, change.reason or "unknown reason")
        self._set_status(device_id, DeviceStatus.DISCONNECTED)
        if device_id == self._in_dfu:
            return
        self._links.discard(device_id)
        self._log_nowait("link_lost", device_id, message=change.reason)
        if device_id in self._wanted and not self._closing:
            self._schedule_requeue(device_id, self.config.reconnect_delay)
        self._wake.set()

    def _on_firmware_property(self, change: FirmwarePropertyChange) -> None:
        record = self.registry.find_by_address(change.address)
        if record is not None:
            self.registry.set_firmware_timestamp(record.device_id, change.firmware_timestamp)

    # ------------------------------------------------------------------
    # Metrics helper
    # ------------------------------------------------------------------
    async def _log(
        self,
        event: str,
        device_id: int,
        *,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.metrics:
            return
        try:
            await self.metrics.log_async(
                event,
                device=device_id,
                status=status,
                value=value,
                message=message,
                extra=extra,
            )
        except Exception:  # pragma: no cover - I/O failure safeguard
            logger.debug("Metrics logging failed for %s", event, exc_info=True)

    def _log_nowait(self, event: str, device_id: int, *, message: Optional[str] = None) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.log(event, device=device_id, status="error", message=message)
        except Exception:  # pragma: no cover - I/O failure safeguard
            logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = ["CentralConfig", "ConnectionLimitReached", "ConnectionScheduler"]
