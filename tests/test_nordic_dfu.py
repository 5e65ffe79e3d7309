"""Secure DFU writer against a scripted GATT client."""
from __future__ import annotations

import io
import json
import zipfile
import zlib
from typing import Dict, Iterable, List, Optional, Tuple
from unittest import IsolatedAsyncioTestCase
from unittest.mock import patch

import pytest

from pixelcentral.errors import DfuCommunicationError, DfuFileInvalidError, DfuRemoteError, VersionMismatchError
from pixelcentral.models.dfu import DfuState
from pixelcentral.transport.nordic_dfu import (
    DFU_BUTTONLESS_UUID,
    DFU_CONTROL_UUID,
    DFU_PACKET_UUID,
    SecureDfuWriter,
    read_dfu_package,
)

INIT_PACKET = b"init-packet"
FIRMWARE = bytes(range(50))


def _package(init: bytes = INIT_PACKET, firmware: bytes = FIRMWARE) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        manifest = {"manifest": {"application": {"dat_file": "app.dat", "bin_file": "app.bin"}}}
        archive.writestr("manifest.json", json.dumps(manifest))
        archive.writestr("app.dat", init)
        archive.writestr("app.bin", firmware)
    return buffer.getvalue()


class FakeServices:
    def __init__(self, uuids: Iterable[str]) -> None:
        self.uuids = set(uuids)

    def get_characteristic(self, uuid: str) -> Optional[str]:
        return uuid if uuid in self.uuids else None


class FakeDfuClient:
    """Answers control point writes the way a Nordic bootloader does."""

    def __init__(
        self,
        address: str,
        *,
        uuids: Iterable[str] = (DFU_CONTROL_UUID, DFU_PACKET_UUID),
        max_size: int = 32,
        errors: Optional[Dict[Tuple[int, Optional[int]], bytes]] = None,
        corrupt_crc: bool = False,
    ) -> None:
        self.address = address
        self.services = FakeServices(uuids)
        self.mtu_size = 23
        self.max_size = max_size
        self.errors = errors or {}
        self.corrupt_crc = corrupt_crc
        self.connected = False
        self.callbacks: Dict[str, object] = {}
        self.objects: Dict[int, bytearray] = {1: bytearray(), 2: bytearray()}
        self.current: Optional[int] = None

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def start_notify(self, uuid: str, callback) -> None:
        self.callbacks[uuid] = callback

    async def write_gatt_char(self, uuid: str, data: bytes, response: bool = False) -> None:
        data = bytes(data)
        if uuid == DFU_PACKET_UUID:
            self.objects[self.current].extend(data)
            return
        if uuid == DFU_BUTTONLESS_UUID:
            self.callbacks[uuid](uuid, bytearray([0x20, data[0], 0x01]))
            return

        opcode = data[0]
        if opcode in (0x01, 0x06):
            self.current = data[1]
        reply = self.errors.get((opcode, self.current))
        if reply is None:
            reply = b"\x01"
            received = bytes(self.objects.get(self.current, b""))
            crc = zlib.crc32(received) ^ (0xFF if self.corrupt_crc else 0)
            if opcode == 0x06:
                reply += self.max_size.to_bytes(4, "little") + len(received).to_bytes(4, "little") + crc.to_bytes(4, "little")
            elif opcode == 0x03:
                reply += len(received).to_bytes(4, "little") + crc.to_bytes(4, "little")
        self.callbacks[DFU_CONTROL_UUID](uuid, bytearray([0x60, opcode]) + reply)


class ClientFactory:
    def __init__(self, **per_address: dict) -> None:
        self.per_address = per_address
        self.clients: List[FakeDfuClient] = []

    def __call__(self, address: str, **_kwargs) -> FakeDfuClient:
        client = FakeDfuClient(address, **self.per_address.get(address.replace(":", ""), {}))
        self.clients.append(client)
        return client


def test_read_dfu_package() -> None:
    assert read_dfu_package(_package()) == (INIT_PACKET, FIRMWARE)
    with pytest.raises(DfuFileInvalidError):
        read_dfu_package(b"not a zip")
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("manifest.json", "{}")
    with pytest.raises(DfuFileInvalidError):
        read_dfu_package(buffer.getvalue())


class SecureDfuWriterTest(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.states: List[DfuState] = []
        self.progress: List[float] = []
        self.writer = SecureDfuWriter(reboot_delay=0.0, response_timeout=1.0)

    async def _upload(self, factory: ClientFactory, address: str = "AA:BB:CC:DD:EE:01") -> None:
        with patch("pixelcentral.transport.nordic_dfu.BleakClient", factory):
            await self.writer.upload(address, _package(), self.progress.append, self.states.append)

    async def test_upload_sends_init_packet_and_firmware(self) -> None:
        factory = ClientFactory()

        await self._upload(factory)

        (client,) = factory.clients
        self.assertEqual(bytes(client.objects[1]), INIT_PACKET)
        self.assertEqual(bytes(client.objects[2]), FIRMWARE)
        self.assertFalse(client.connected)
        self.assertEqual(self.progress, [64.0, 100.0])
        self.assertEqual(
            self.states,
            [
                DfuState.INITIALIZING,
                DfuState.CONNECTING,
                DfuState.CONNECTED,
                DfuState.STARTING,
                DfuState.UPLOADING,
                DfuState.VALIDATING_FIRMWARE,
                DfuState.DISCONNECTING,
                DfuState.DISCONNECTED,
                DfuState.COMPLETED,
            ],
        )

    async def test_buttonless_device_is_rebooted_into_bootloader(self) -> None:
        factory = ClientFactory(AABBCCDDEE01={"uuids": (DFU_BUTTONLESS_UUID,)})

        await self._upload(factory)

        self.assertEqual([c.address for c in factory.clients], ["AA:BB:CC:DD:EE:01", "AA:BB:CC:DD:EE:02"])
        self.assertIn(DfuState.ENABLING_DFU_MODE, self.states)
        self.assertEqual(bytes(factory.clients[1].objects[2]), FIRMWARE)
        self.assertEqual(self.states[-1], DfuState.COMPLETED)

    async def test_firmware_version_failure(self) -> None:
        factory = ClientFactory(AABBCCDDEE01={"errors": {(0x04, 0x01): b"\x0b\x05"}})

        with self.assertRaises(VersionMismatchError) as ctx:
            await self._upload(factory)

        self.assertEqual(ctx.exception.target, "AA:BB:CC:DD:EE:01")
        self.assertEqual(self.states[-2:], [DfuState.DISCONNECTING, DfuState.DISCONNECTED])
        self.assertNotIn(DfuState.UPLOADING, self.states)
        self.assertFalse(factory.clients[0].connected)

    async def test_remote_error_carries_code(self) -> None:
        factory = ClientFactory(AABBCCDDEE01={"errors": {(0x01, 0x02): b"\x04"}})

        with self.assertRaises(DfuRemoteError) as ctx:
            await self._upload(factory)

        self.assertEqual(ctx.exception.code, 0x04)
        self.assertNotIn(DfuState.COMPLETED, self.states)

    async def test_crc_mismatch(self) -> None:
        factory = ClientFactory(AABBCCDDEE01={"corrupt_crc": True})

        with self.assertRaises(DfuCommunicationError):
            await self._upload(factory)
        self.assertEqual(self.progress, [])

    async def test_device_without_dfu_service(self) -> None:
        factory = ClientFactory(AABBCCDDEE01={"uuids": ()})

        with self.assertRaises(DfuCommunicationError):
            await self._upload(factory)
        self.assertNotIn(DfuState.STARTING, self.states)
