"""Nordic Secure DFU over BLE, driven through bleak.

The image handed to :meth:`SecureDfuWriter.upload` is an nrfutil package: a zip
holding ``manifest.json`` plus the init packet (``.dat``) and the binary
(``.bin``) it references.
"""
from __future__ import annotations

import asyncio
import io
import json
import logging
import zipfile
import zlib
from typing import Any, Callable, Dict, Optional, Tuple

from pixelcentral.dfu.pipeline import offset_mac_address
from pixelcentral.errors import (
    DfuCommunicationError,
    DfuFileInvalidError,
    DfuRemoteError,
    TransportConnectError,
    VersionMismatchError,
)
from pixelcentral.models.dfu import DfuState

logger = logging.getLogger(__name__)

try:  # pragma: no cover - bleak optional at runtime
    from bleak import BleakClient
except Exception:  # pragma: no cover
    BleakClient = None  # type: ignore

DFU_SERVICE_UUID = "0000fe59-0000-1000-8000-00805f9b34fb"
DFU_CONTROL_UUID = "8ec90001-f315-4f60-9fb8-838830daea50"
DFU_PACKET_UUID = "8ec90002-f315-4f60-9fb8-838830daea50"
DFU_BUTTONLESS_UUID = "8ec90003-f315-4f60-9fb8-838830daea50"

OP_CREATE_OBJECT = 0x01
OP_SET_PRN = 0x02
OP_CALCULATE_CRC = 0x03
OP_EXECUTE_OBJECT = 0x04
OP_SELECT_OBJECT = 0x06
OP_RESPONSE = 0x60

OBJ_COMMAND = 0x01
OBJ_DATA = 0x02

RES_SUCCESS = 0x01
RES_EXTENDED_ERROR = 0x0B
EXT_FW_VERSION_FAILURE = 0x05

BUTTONLESS_ENTER_BOOTLOADER = 0x01
BUTTONLESS_RESPONSE = 0x20

_RESULT_NAMES: Dict[int, str] = {
    0x00: "invalid opcode",
    0x02: "opcode not supported",
    0x03: "invalid parameter",
    0x04: "insufficient resources",
    0x05: "invalid object",
    0x07: "unsupported type",
    0x08: "operation not permitted",
    0x0A: "operation failed",
}

_EXT_NAMES: Dict[int, str] = {
    0x02: "wrong command format",
    0x03: "unknown command",
    0x04: "init command invalid",
    0x05: "firmware version failure",
    0x06: "hardware version failure",
    0x07: "softdevice version failure",
    0x08: "signature missing",
    0x09: "wrong hash type",
    0x0A: "hash failed",
    0x0B: "wrong signature type",
    0x0C: "verification failed",
    0x0D: "insufficient space",
}

ProgressFn = Optional[Callable[[float], Any]]
StateFn = Optional[Callable[[DfuState], Any]]


def read_dfu_package(package: bytes) -> Tuple[bytes, bytes]:
    """Return ``(init_packet, firmware)`` from an nrfutil zip package."""
    try:
        with zipfile.ZipFile(io.BytesIO(package)) as archive:
            manifest = json.loads(archive.read("manifest.json"))["manifest"]
            entry = next(iter(manifest.values()))
            return archive.read(entry["dat_file"]), archive.read(entry["bin_file"])
    except (zipfile.BadZipFile, KeyError, StopIteration, ValueError, TypeError) as exc:
        raise DfuFileInvalidError(f"invalid DFU package: {exc}") from exc


class SecureDfuWriter:
    """Uploads one nrfutil package to a device in (or switchable to) DFU mode."""

    def __init__(
        self,
        *,
        bootloader_address_offset: int = 1,
        connect_timeout: float = 10.0,
        response_timeout: float = 5.0,
        reboot_delay: float = 2.0,
        adapter: Optional[str] = None,
    ) -> None:
        self.bootloader_address_offset = bootloader_address_offset
        self.connect_timeout = connect_timeout
        self.response_timeout = response_timeout
        self.reboot_delay = reboot_delay
        self.adapter = adapter
        self._client: Any = None
        self._target = ""
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[int, asyncio.Future[bytes]] = {}

    async def upload(
        self,
        address: str,
        package: bytes,
        on_progress: ProgressFn = None,
        on_state: StateFn = None,
    ) -> None:
        init_packet, firmware = read_dfu_package(package)
        self._loop = asyncio.get_running_loop()
        _notify(on_state, DfuState.INITIALIZING)
        try:
            await self._open(address, on_state)
            _notify(on_state, DfuState.STARTING)
            await self._request(bytes([OP_SET_PRN, 0x00, 0x00]))
            await self._send_object(OBJ_COMMAND, init_packet, None)
            _notify(on_state, DfuState.UPLOADING)
            await self._send_object(OBJ_DATA, firmware, on_progress)
            _notify(on_state, DfuState.VALIDATING_FIRMWARE)
        finally:
            _notify(on_state, DfuState.DISCONNECTING)
            await self._close()
            _notify(on_state, DfuState.DISCONNECTED)
        _notify(on_state, DfuState.COMPLETED)

    async def _open(self, address: str, on_state: StateFn) -> None:
        if BleakClient is None:
            raise TransportConnectError("bleak is required for DFU", address=address)
        _notify(on_state, DfuState.CONNECTING)
        await self._connect(address)
        _notify(on_state, DfuState.CONNECTED)
        if self._client.services.get_characteristic(DFU_CONTROL_UUID) is not None:
            return
        if self._client.services.get_characteristic(DFU_BUTTONLESS_UUID) is None:
            raise DfuCommunicationError("device exposes no DFU service", address)

        _notify(on_state, DfuState.ENABLING_DFU_MODE)
        await self._enter_bootloader()
        await self._close()
        await asyncio.sleep(self.reboot_delay)
        await self._connect(offset_mac_address(address, self.bootloader_address_offset))
        if self._client.services.get_characteristic(DFU_CONTROL_UUID) is None:
            raise DfuCommunicationError("bootloader did not expose the DFU control point", self._target)

    async def _connect(self, address: str) -> None:
        self._target = address
        client = BleakClient(address, timeout=self.connect_timeout, adapter=self.adapter)
        try:
            await client.connect()
        except Exception as exc:
            raise TransportConnectError(f"failed to connect to {address}: {exc}", address=address) from exc
        self._client = client
        if client.services.get_characteristic(DFU_CONTROL_UUID) is not None:
            await client.start_notify(DFU_CONTROL_UUID, self._on_notification)

    async def _enter_bootloader(self) -> None:
        future = self._expect(BUTTONLESS_RESPONSE)
        await self._client.start_notify(DFU_BUTTONLESS_UUID, self._on_notification)
        await self._client.write_gatt_char(DFU_BUTTONLESS_UUID, bytes([BUTTONLESS_ENTER_BOOTLOADER]), response=True)
        try:
            data = await asyncio.wait_for(future, timeout=self.response_timeout)
        except asyncio.TimeoutError:
            # Some bootloaders reset before answering.
            logger.debug("No buttonless response from %s", self._target)
            return
        self._check_status(BUTTONLESS_ENTER_BOOTLOADER, data)

    async def _close(self) -> None:
        client, self._client = self._client, None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(DfuCommunicationError("link closed", self._target))
        self._pending.clear()
        if client is None:
            return
        try:
            await asyncio.wait_for(client.disconnect(), timeout=2.0)
        except Exception:
            logger.debug("DFU disconnect from %s failed", self._target, exc_info=True)

    async def _send_object(self, obj_type: int, data: bytes, on_progress: ProgressFn) -> None:
        selected = await self._request(bytes([OP_SELECT_OBJECT, obj_type]))
        max_size = int.from_bytes(selected[0:4], "little") or len(data)
        chunk = max(20, getattr(self._client, "mtu_size", 23) - 3)
        total = len(data)
        offset = 0
        while offset < total:
            end = min(offset + max_size, total)
            await self._request(bytes([OP_CREATE_OBJECT, obj_type]) + (end - offset).to_bytes(4, "little"))
            for start in range(offset, end, chunk):
                await self._client.write_gatt_char(DFU_PACKET_UUID, data[start:min(start + chunk, end)], response=False)
            checksum = await self._request(bytes([OP_CALCULATE_CRC]))
            remote_offset = int.from_bytes(checksum[0:4], "little")
            remote_crc = int.from_bytes(checksum[4:8], "little")
            local_crc = zlib.crc32(data[:end]) & 0xFFFFFFFF
            if remote_offset != end or remote_crc != local_crc:
                raise DfuCommunicationError(
                    f"CRC mismatch at {remote_offset}: device=0x{remote_crc:08X} local=0x{local_crc:08X}",
                    self._target,
                )
            await self._request(bytes([OP_EXECUTE_OBJECT]))
            offset = end
            if on_progress is not None:
                _notify(on_progress, offset * 100.0 / total)

    async def _request(self, payload: bytes) -> bytes:
        opcode = payload[0]
        future = self._expect(opcode)
        await self._client.write_gatt_char(DFU_CONTROL_UUID, payload, response=True)
        try:
            data = await asyncio.wait_for(future, timeout=self.response_timeout)
        except asyncio.TimeoutError as exc:
            raise DfuCommunicationError(f"no response to opcode 0x{opcode:02X}", self._target) from exc
        finally:
            self._pending.pop(opcode, None)
        return self._check_status(opcode, data)

    def _expect(self, opcode: int) -> "asyncio.Future[bytes]":
        loop = self._loop or asyncio.get_running_loop()
        future: asyncio.Future[bytes] = loop.create_future()
        self._pending[opcode] = future
        return future

    def _check_status(self, opcode: int, data: bytes) -> bytes:
        status = data[0] if data else 0
        if status == RES_SUCCESS:
            return data[1:]
        if status == RES_EXTENDED_ERROR:
            ext = data[1] if len(data) > 1 else 0
            reason = _EXT_NAMES.get(ext, f"extended error 0x{ext:02X}")
            if ext == EXT_FW_VERSION_FAILURE:
                raise VersionMismatchError(reason, self._target)
            raise DfuRemoteError(reason, self._target, code=ext)
        reason = _RESULT_NAMES.get(status, f"status 0x{status:02X}")
        raise DfuRemoteError(f"opcode 0x{opcode:02X} failed: {reason}", self._target, code=status)

    def _on_notification(self, _sender: Any, data: bytearray) -> None:
        if self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._dispatch, bytes(data))
        except RuntimeError:
            logger.error("Failed scheduling DFU notification", exc_info=True)

    def _dispatch(self, data: bytes) -> None:
        # Control point answers are [0x60, opcode, status, payload...]; buttonless uses 0x20.
        if len(data) < 3 or data[0] not in (OP_RESPONSE, BUTTONLESS_RESPONSE):
            logger.debug("Ignoring DFU notification %s", data.hex())
            return
        key = data[0] if data[0] == BUTTONLESS_RESPONSE else data[1]
        future = self._pending.pop(key, None)
        if future is not None and not future.done():
            future.set_result(data[2:])


def _notify(callback: Optional[Callable[[Any], Any]], value: Any) -> None:
    if callback is None:
        return
    try:
        callback(value)
    except Exception:
        logger.exception("DFU callback raised an exception")


__all__ = [
    "DFU_SERVICE_UUID",
    "DFU_CONTROL_UUID",
    "DFU_PACKET_UUID",
    "DFU_BUTTONLESS_UUID",
    "SecureDfuWriter",
    "read_dfu_package",
]
