"""BLE transport built on top of bleak."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING, TypeAlias

from pixelcentral.errors import TransportConnectError, TransportError, TransportTimeoutError
from pixelcentral.events import EventChannel
from pixelcentral.metrics import MetricsLogger
from pixelcentral.scanner import PIXELS_SERVICE_UUID, Advertisement
from pixelcentral.transport.base import (
	DeviceIdentity,
	FirmwarePropertyChange,
	LinkStateChange,
	ProgressCallback,
	StateCallback,
)
from pixelcentral.transport.nordic_dfu import SecureDfuWriter

logger = logging.getLogger(__name__)

try:  # pragma: no cover - bleak optional at runtime
	from bleak import BleakClient, BleakScanner
except Exception:  # pragma: no cover
	BleakClient = None  # type: ignore
	BleakScanner = None  # type: ignore

if TYPE_CHECKING:  # pragma: no cover - typing hints
	from bleak.backends.device import BLEDevice as _BLEDevice
	from bleak.backends.scanner import AdvertisementData as _AdvertisementData
else:  # pragma: no cover - runtime fallback
	_BLEDevice = Any
	_AdvertisementData = Any

BLEDevice: TypeAlias = _BLEDevice
AdvertisementData: TypeAlias = _AdvertisementData


class BleakTransport:
	"""Scan, connect and flash Pixels dice through bleak.

	One :class:`bleak.BleakClient` is kept per connected address. Identity is
	read from the last advertisement seen for the address.
	"""

	def __init__(
		self,
		*,
		adapter: Optional[str] = None,
		bootloader_address_offset: int = 1,
		metrics: Optional[MetricsLogger] = None,
		scanner_kwargs: Optional[Dict[str, Any]] = None,
		writer_factory: Optional[Callable[..., SecureDfuWriter]] = None,
	) -> None:
		self.adapter = adapter
		self.bootloader_address_offset = bootloader_address_offset
		self.metrics = metrics
		self.scanner_kwargs = dict(scanner_kwargs or {})
		self._writer_factory = writer_factory or SecureDfuWriter

		self.advertisement_received: EventChannel[Advertisement] = EventChannel("advertisement_received")
		self.link_state_changed: EventChannel[LinkStateChange] = EventChannel("link_state_changed")
		self.firmware_property_changed: EventChannel[FirmwarePropertyChange] = EventChannel(
			"firmware_property_changed"
		)

		self._scanner: Any = None
		self._clients: Dict[str, Any] = {}
		self._last_seen: Dict[str, Advertisement] = {}
		self._loop: Optional[asyncio.AbstractEventLoop] = None

	# ------------------------------------------------------------------
	# Scanning
	# ------------------------------------------------------------------
	async def start_scan(self) -> None:
		if BleakScanner is None:
			raise TransportError("bleak is required to scan")
		if self._scanner is not None:
			return
		self._loop = asyncio.get_running_loop()
		kwargs: Dict[str, Any] = {"service_uuids": [PIXELS_SERVICE_UUID]}
		if self.adapter:
			kwargs["adapter"] = self.adapter
		kwargs.update(self.scanner_kwargs)
		scanner = BleakScanner(detection_callback=self._on_detection, **kwargs)
		await scanner.start()
		self._scanner = scanner
		self._metrics_log("scan_start", status="ok")

	async def stop_scan(self) -> None:
		scanner, self._scanner = self._scanner, None
		if scanner is None:
			return
		try:
			await scanner.stop()
		except Exception as exc:
			logger.warning("Stopping scanner failed: %s", exc)
		self._metrics_log("scan_stop", status="ok")

	def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData | None) -> None:
		try:
			adv = Advertisement.from_bleak(device, advertisement)
		except Exception:
			logger.debug("Failed to decode advertisement from %s", getattr(device, "address", "?"), exc_info=True)
			return
		if adv is None:
			return
		key = adv.address.lower()
		previous = self._last_seen.get(key)
		self._last_seen[key] = adv
		if (
			key in self._clients
			and previous is not None
			and adv.firmware_timestamp is not None
			and adv.firmware_timestamp != previous.firmware_timestamp
		):
			self.firmware_property_changed.emit(FirmwarePropertyChange(adv.address, adv.firmware_timestamp))
		self.advertisement_received.emit(adv)

	# ------------------------------------------------------------------
	# Links
	# ------------------------------------------------------------------
	async def connect(self, address: str, timeout: float) -> None:
		if BleakClient is None:
			raise TransportConnectError("bleak is required to connect", address=address)
		self._loop = asyncio.get_running_loop()
		key = address.lower()
		if key in self._clients:
			return
		client = BleakClient(
			address,
			disconnected_callback=self._on_disconnected,
			adapter=self.adapter,
			timeout=timeout,
		)
		try:
			connected = await client.connect()
		except asyncio.TimeoutError as exc:
			self._metrics_log("connect", address=address, status="timeout")
			raise TransportTimeoutError(f"connection to {address} timed out", address=address) from exc
		except Exception as exc:
			self._metrics_log("connect", address=address, status="error", message=str(exc))
			raise TransportConnectError(f"connection to {address} failed: {exc}", address=address) from exc
		if connected is False:
			self._metrics_log("connect", address=address, status="failed")
			raise TransportConnectError(f"connection to {address} failed", address=address)
		self._clients[key] = client
		self._metrics_log("connect", address=address, status="ok")
		self.link_state_changed.emit(LinkStateChange(address, True))

	async def disconnect(self, address: str) -> None:
		client = self._clients.pop(address.lower(), None)
		if client is None:
			return
		try:
			await client.disconnect()
			self._metrics_log("disconnect", address=address, status="ok")
		except Exception as exc:
			self._metrics_log("disconnect", address=address, status="error", message=str(exc))
			logger.warning("Disconnect encountered error for %s: %s", address, exc)

	async def identify(self, address: str) -> DeviceIdentity:
		if address.lower() not in self._clients:
			raise TransportError(f"{address} is not connected", address=address)
		adv = self._last_seen.get(address.lower())
		if adv is None:
			raise TransportError(f"no advertisement seen from {address}", address=address)
		return DeviceIdentity(
			device_id=adv.device_id,
			firmware_timestamp=adv.firmware_timestamp,
			name=adv.name,
			led_count=adv.led_count,
		)

	def _on_disconnected(self, client: Any) -> None:
		address = getattr(client, "address", None)
		if not address:
			return
		loop = self._loop
		if loop is None or loop.is_closed():
			return
		with contextlib.suppress(RuntimeError):
			loop.call_soon_threadsafe(self._handle_disconnect, address)

	def _handle_disconnect(self, address: str) -> None:
		if self._clients.pop(address.lower(), None) is None:
			return
		self._metrics_log("link_lost", address=address, status="disconnected")
		self.link_state_changed.emit(LinkStateChange(address, False, "disconnected"))

	# ------------------------------------------------------------------
	# Firmware
	# ------------------------------------------------------------------
	async def send_firmware_image(
		self,
		address: str,
		image: bytes,
		on_progress: Optional[ProgressCallback] = None,
		on_state: Optional[StateCallback] = None,
	) -> None:
		writer = self._writer_factory(
			bootloader_address_offset=self.bootloader_address_offset,
			adapter=self.adapter,
		)
		await writer.upload(address, image, on_progress, on_state)

	async def close(self) -> None:
		await self.stop_scan()
		for address in list(self._clients):
			await self.disconnect(address)

	# ------------------------------------------------------------------
	# Metrics helper
	# ------------------------------------------------------------------
	def _metrics_log(
		self,
		event: str,
		*,
		address: Optional[str] = None,
		status: Optional[str] = None,
		message: Optional[str] = None,
	) -> None:
		if not self.metrics:
			return
		extra = {"address": address} if address else None
		try:
			self.metrics.log(event, status=status, message=message, extra=extra)
		except Exception:  # pragma: no cover - logging must not break the transport
			logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = ["BleakTransport", "BLEDevice"]
