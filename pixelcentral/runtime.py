"""Wiring of the registry, scheduler, catalog and DFU components."""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from pixelcentral.central import CentralConfig, ConnectionScheduler
from pixelcentral.dfu.catalog import CatalogLoadResult, DfuBundleCatalog
from pixelcentral.dfu.files import DirectoryFilesProvider, ZipArchiveFilesProvider
from pixelcentral.dfu.notifier import DfuNotifier
from pixelcentral.dfu.pipeline import DfuUpdatePipeline
from pixelcentral.metrics import MetricsLogger
from pixelcentral.models.db_models import PairedDeviceStore
from pixelcentral.models.dfu import BundleSource
from pixelcentral.registry import DeviceRegistry
from pixelcentral.scanner import ScanManager
from pixelcentral.transport.base import BleTransport, FirmwareFilesProvider
from pixelcentral.updater import FirmwareUpdater

logger = logging.getLogger(__name__)

ENV_PREFIX = "PIXELCENTRAL_"


@dataclass(slots=True)
class RuntimeSettings:
    """Process level settings, usually read from ``PIXELCENTRAL_*`` variables."""

    max_connections: int = 4
    connect_timeout: float = 12.0
    firmware_archive: Optional[str] = None
    database_url: Optional[str] = None
    metrics_log: Optional[str] = None
    adapter: Optional[str] = None
    bootloader_address_offset: int = 1

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RuntimeSettings":
        env = os.environ if environ is None else environ
        settings = cls()
        if value := env.get(ENV_PREFIX + "MAX_CONNECTIONS"):
            settings.max_connections = int(value)
        if value := env.get(ENV_PREFIX + "CONNECT_TIMEOUT"):
            settings.connect_timeout = float(value)
        if value := env.get(ENV_PREFIX + "BOOTLOADER_ADDRESS_OFFSET"):
            settings.bootloader_address_offset = int(value)
        settings.firmware_archive = env.get(ENV_PREFIX + "FIRMWARE_ARCHIVE") or None
        settings.database_url = env.get(ENV_PREFIX + "DATABASE_URL") or None
        settings.metrics_log = env.get(ENV_PREFIX + "METRICS_LOG") or None
        settings.adapter = env.get(ENV_PREFIX + "ADAPTER") or None
        return settings


def files_provider_for(location: Optional[str]) -> Optional[FirmwareFilesProvider]:
    """A directory provider for a folder, an archive provider for a zip of DFU zips."""
    if not location:
        return None
    path = Path(location)
    if path.suffix.lower() == ".zip" and path.is_file():
        extract_dir = Path(tempfile.gettempdir()) / "pixelcentral-firmware" / path.stem
        return ZipArchiveFilesProvider(path, extract_dir)
    return DirectoryFilesProvider(path)


class Runtime:
    """Everything needed to scan, connect and update dice in one process."""

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        *,
        transport: Optional[BleTransport] = None,
        store: Optional[PairedDeviceStore] = None,
        files_provider: Optional[FirmwareFilesProvider] = None,
        metrics: Optional[MetricsLogger] = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.metrics = metrics
        if self.metrics is None and self.settings.metrics_log:
            self.metrics = MetricsLogger(self.settings.metrics_log)
        self.store = store
        if self.store is None and self.settings.database_url:
            self.store = PairedDeviceStore(self.settings.database_url)
        if transport is None:
            from pixelcentral.transport.bleak_transport import BleakTransport

            transport = BleakTransport(
                adapter=self.settings.adapter,
                bootloader_address_offset=self.settings.bootloader_address_offset,
                metrics=self.metrics,
            )
        self.transport: Any = transport
        self.files_provider = files_provider or files_provider_for(self.settings.firmware_archive)

        self.registry = DeviceRegistry(self.store)
        self.scanner = ScanManager(self.registry, self.transport)
        self.scheduler = ConnectionScheduler(
            self.registry,
            self.transport,
            scanner=self.scanner,
            config=CentralConfig(
                max_connections=self.settings.max_connections,
                connect_timeout=self.settings.connect_timeout,
            ),
            metrics=self.metrics,
        )
        self.catalog = DfuBundleCatalog()
        self.notifier = DfuNotifier(self.registry)
        self.notifier.attach_catalog(self.catalog)
        self.pipeline = DfuUpdatePipeline(self.transport, metrics=self.metrics)
        self.updater = FirmwareUpdater(self.scheduler, self.catalog, self.notifier, self.pipeline)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> Optional[CatalogLoadResult]:
        """Start scheduling and index the configured firmware files, if any."""
        if self._started:
            return None
        self._started = True
        self.scheduler.start()
        for device_id in sorted(self.registry.paired_ids):
            self.scheduler.request_connect(device_id)
        return await self.reload_bundles()

    async def reload_bundles(self) -> Optional[CatalogLoadResult]:
        if self.files_provider is None:
            return None
        result = await self.catalog.load(self.files_provider, BundleSource.APP)
        if result.error is not None:
            logger.warning("Firmware bundles unavailable: %s", result.error)
        return result

    async def close(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.scheduler.shutdown()
        await self.scanner.close()
        self.notifier.close()
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()


__all__ = ["Runtime", "RuntimeSettings", "files_provider_for"]
