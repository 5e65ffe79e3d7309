"""BLE scan management and Pixels advertisement decoding."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Any, Callable, Dict, List, Optional, Sequence, TYPE_CHECKING, TypeAlias

from pixelcentral.events import EventChannel, Unsubscribe
from pixelcentral.models.device import DeviceRecord

if TYPE_CHECKING:  # pragma: no cover - typing helper only
	from bleak.backends.device import BLEDevice as _BLEDevice
	from bleak.backends.scanner import AdvertisementData as _AdvertisementData

	from pixelcentral.registry import DeviceRegistry
	from pixelcentral.transport.base import BleTransport
else:  # pragma: no cover - runtime fallback
	_BLEDevice = Any
	_AdvertisementData = Any

BLEDevice: TypeAlias = _BLEDevice
AdvertisementData: TypeAlias = _AdvertisementData

logger = logging.getLogger(__name__)

PIXELS_SERVICE_UUID = "a6b90001-7a5a-43f2-a962-350c8edc9b5b"


@dataclass(slots=True)
class Advertisement:
	"""Decoded Pixels advertisement."""

	address: str
	device_id: int
	name: Optional[str] = None
	rssi: Optional[int] = None
	firmware_timestamp: Optional[int] = None
	led_count: Optional[int] = None
	colorway: Optional[int] = None
	die_type: Optional[int] = None
	roll_state: Optional[int] = None
	face_index: Optional[int] = None
	battery_level: Optional[int] = None
	is_charging: Optional[bool] = None
	extra: Dict[str, Any] = field(default_factory=dict)

	@classmethod
	def decode(
		cls,
		address: str,
		*,
		name: Optional[str] = None,
		rssi: Optional[int] = None,
		manufacturer_data: Optional[bytes] = None,
		service_data: Optional[bytes] = None,
	) -> Optional["Advertisement"]:
		"""Build an advertisement from raw payloads, or ``None`` for non-Pixels data.

		Service data carries the device id and firmware build time (u32 LE
		each), manufacturer data the LED count, design, roll state, face and
		battery bytes.
		"""
		if not service_data or len(service_data) < 8:
			return None
		if not manufacturer_data or len(manufacturer_data) < 5:
			return None
		device_id, firmware_seconds = struct.unpack_from("<II", service_data, 0)
		if not device_id:
			logger.warning("Pixel %s: advertisement with a null device id", name or address)
			return None
		led_count, design, roll_state, face, battery = struct.unpack_from("<5B", manufacturer_data, 0)
		return cls(
			address=address,
			device_id=device_id,
			name=name,
			rssi=rssi,
			firmware_timestamp=firmware_seconds * 1000,
			led_count=led_count,
			colorway=design & 0x0F,
			die_type=(design >> 4) & 0x0F,
			roll_state=roll_state,
			face_index=face,
			battery_level=battery & 0x7F,
			is_charging=bool(battery & 0x80),
		)

	@classmethod
	def from_bleak(
		cls,
		device: BLEDevice,
		advertisement: AdvertisementData | None = None,
	) -> Optional["Advertisement"]:
		if advertisement is None:
			return None
		service_uuids = [str(uuid).lower() for uuid in (advertisement.service_uuids or ())]
		if service_uuids and PIXELS_SERVICE_UUID not in service_uuids:
			return None

		manufacturer_data: Optional[bytes] = None
		for value in (advertisement.manufacturer_data or {}).values():
			manufacturer_data = bytes(value)
			break
		service_data: Optional[bytes] = None
		for value in (advertisement.service_data or {}).values():
			service_data = bytes(value)
			break

		rssi = advertisement.rssi if advertisement.rssi is not None else getattr(device, "rssi", None)
		name = getattr(advertisement, "local_name", None) or device.name or None
		return cls.decode(
			device.address,
			name=name,
			rssi=rssi,
			manufacturer_data=manufacturer_data,
			service_data=service_data,
		)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"address": self.address,
			"device_id": self.device_id,
			"name": self.name,
			"rssi": self.rssi,
			"firmware_timestamp": self.firmware_timestamp,
			"led_count": self.led_count,
			"battery_level": self.battery_level,
			"is_charging": self.is_charging,
		}


class ScanStatus(str, Enum):
	STOPPED = "stopped"
	STARTING = "starting"
	SCANNING = "scanning"


@dataclass(slots=True)
class ScanConfig:
	"""Configuration bundle used by :class:`ScanManager`."""

	ttl: float = 5.0
	sweep_interval: float = 3.0
	device_id_allowlist: Sequence[int] | None = None
	name_allowlist: Sequence[str] | None = None
	pause_when_busy: bool = True
	clock: Callable[[], float] = monotonic
	_id_index: Optional[frozenset[int]] = field(init=False, repr=False, default=None)
	_name_index: Optional[tuple[str, ...]] = field(init=False, repr=False, default=None)

	def __post_init__(self) -> None:
		if self.ttl <= 0:
			raise ValueError("ttl must be positive")
		if self.sweep_interval <= 0:
			raise ValueError("sweep_interval must be positive")
		if self.device_id_allowlist:
			self._id_index = frozenset(self.device_id_allowlist)
		if self.name_allowlist:
			self._name_index = tuple(self.name_allowlist)

	def allows(self, adv: Advertisement) -> bool:
		if self._id_index and adv.device_id not in self._id_index:
			return False
		if self._name_index and adv.name not in self._name_index:
			return False
		return True


class ScanManager:
	"""Keeps the registry fed with fresh advertisements.

	The radio scans while a caller asked for it or while the connection
	scheduler needs discovery, and pauses while connection attempts are in
	flight unless discovery is needed.
	"""

	def __init__(
		self,
		registry: "DeviceRegistry",
		transport: "BleTransport",
		config: ScanConfig | None = None,
	) -> None:
		self.registry = registry
		self.transport = transport
		self.config = config or ScanConfig()

		self.status_changed: EventChannel[ScanStatus] = EventChannel("scan_status_changed")
		self.scan_lost: EventChannel[int] = EventChannel("scan_lost")
		self.advertisement: EventChannel[DeviceRecord] = EventChannel("scanned_device")

		self._status = ScanStatus.STOPPED
		self._requested = False
		self._discovery_needed = False
		self._radio_busy = False
		self._unsubscribe: Optional[Unsubscribe] = None
		self._sweep_task: Optional[asyncio.Task[None]] = None
		self._policy_task: Optional[asyncio.Task[None]] = None
		self._lock = asyncio.Lock()

	@property
	def status(self) -> ScanStatus:
		return self._status

	@property
	def is_requested(self) -> bool:
		return self._requested

	@property
	def wants_radio(self) -> bool:
		if not (self._requested or self._discovery_needed):
			return False
		if self._discovery_needed:
			return True
		return not (self._radio_busy and self.config.pause_when_busy)

	async def start(self) -> None:
		self._requested = True
		await self._apply()

	async def stop(self) -> None:
		self._requested = False
		await self._apply()

	def clear(self) -> None:
		"""Forget every scan result that is not otherwise in use."""
		for device_id in self.registry.clear_scan_results():
			self.scan_lost.emit(device_id)

	def results(self) -> List[DeviceRecord]:
		return self.registry.scan_results(self.config.clock(), self.config.ttl)

	def set_discovery_needed(self, needed: bool) -> None:
		if needed != self._discovery_needed:
			self._discovery_needed = needed
			self._schedule_apply()

	def set_radio_busy(self, busy: bool) -> None:
		if busy != self._radio_busy:
			self._radio_busy = busy
			self._schedule_apply()

	def sweep(self, now: Optional[float] = None) -> List[int]:
		"""Drop records not re-advertised within the TTL."""
		now = self.config.clock() if now is None else now
		expired = self.registry.expire(now, self.config.ttl)
		for device_id in expired:
			logger.debug("Scan result %08X expired", device_id)
			self.scan_lost.emit(device_id)
		return expired

	async def close(self) -> None:
		self._requested = False
		self._discovery_needed = False
		if self._policy_task is not None and not self._policy_task.done():
			self._policy_task.cancel()
			with contextlib.suppress(asyncio.CancelledError):
				await self._policy_task
		await self._apply()

	def handle_advertisement(self, adv: Advertisement) -> Optional[DeviceRecord]:
		if self._status is ScanStatus.STOPPED:
			return None
		if not self.config.allows(adv):
			return None
		record = self.registry.upsert_advertisement(adv, self.config.clock())
		self.advertisement.emit(record)
		return record

	async def _apply(self) -> None:
		async with self._lock:
			want = self.wants_radio
			if want and self._status is ScanStatus.STOPPED:
				self._set_status(ScanStatus.STARTING)
				if self._unsubscribe is None:
					self._unsubscribe = self.transport.advertisement_received.subscribe(self.handle_advertisement)
				try:
					await self.transport.start_scan()
				except Exception:
					logger.exception("Failed to start BLE scan")
					self._detach()
					self._set_status(ScanStatus.STOPPED)
					raise
				self._set_status(ScanStatus.SCANNING)
				self._ensure_sweeper()
			elif not want and self._status is not ScanStatus.STOPPED:
				try:
					await self.transport.stop_scan()
				except Exception:
					logger.warning("Failed to stop BLE scan", exc_info=True)
				self._detach()
				await self._stop_sweeper()
				self._set_status(ScanStatus.STOPPED)

	def _schedule_apply(self) -> None:
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			return
		task = loop.create_task(self._apply())
		task.add_done_callback(self._on_policy_done)
		self._policy_task = task

	@staticmethod
	def _on_policy_done(task: "asyncio.Task[None]") -> None:
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.warning("Scan policy update failed: %s", exc)

	def _detach(self) -> None:
		if self._unsubscribe is not None:
			self._unsubscribe()
			self._unsubscribe = None

	def _set_status(self, status: ScanStatus) -> None:
		if status is self._status:
			return
		self._status = status
		self.status_changed.emit(status)

	def _ensure_sweeper(self) -> None:
		if self._sweep_task is None or self._sweep_task.done():
			self._sweep_task = asyncio.create_task(self._sweep_loop())

	async def _stop_sweeper(self) -> None:
		task = self._sweep_task
		self._sweep_task = None
		if task is None or task.done() or task is asyncio.current_task():
			return
		task.cancel()
		with contextlib.suppress(asyncio.CancelledError):
			await task

	async def _sweep_loop(self) -> None:
		while True:
			await asyncio.sleep(self.config.sweep_interval)
			try:
				self.sweep()
			except Exception:  # pragma: no cover - listener failures are logged by channels
				logger.exception("Scan sweep failed")


__all__ = [
	"PIXELS_SERVICE_UUID",
	"Advertisement",
	"ScanConfig",
	"ScanManager",
	"ScanStatus",
]
