"""Coordinates the scheduler, catalog, notifier and pipeline for one device update."""
from __future__ import annotations

import logging
from typing import Optional

from pixelcentral.central import ConnectionScheduler
from pixelcentral.dfu.catalog import DfuBundleCatalog
from pixelcentral.dfu.notifier import DfuNotifier
from pixelcentral.dfu.pipeline import DfuSession, DfuStageEvent, DfuUpdatePipeline
from pixelcentral.errors import DfuArgumentError, DfuBusyError, NoBundleFoundError
from pixelcentral.events import Listener
from pixelcentral.models.dfu import DfuAvailability, DfuFilesBundle, DfuState
from pixelcentral.queue import Priority

logger = logging.getLogger(__name__)


class FirmwareUpdater:
    """Update one die at a time with the selected (or a given) bundle.

    The die is connected at high priority first so that its firmware date is
    known, then handed over to the pipeline outside of connection
    scheduling, and finally reconnected at high priority.
    """

    def __init__(
        self,
        scheduler: ConnectionScheduler,
        catalog: DfuBundleCatalog,
        notifier: DfuNotifier,
        pipeline: DfuUpdatePipeline,
        *,
        ready_timeout: float = 20.0,
    ) -> None:
        self.scheduler = scheduler
        self.catalog = catalog
        self.notifier = notifier
        self.pipeline = pipeline
        self.ready_timeout = ready_timeout
        self.last_session: Optional[DfuSession] = None

    @property
    def is_busy(self) -> bool:
        return self.scheduler.device_in_dfu is not None

    async def update_device(
        self,
        device_id: int,
        *,
        bundle: Optional[DfuFilesBundle] = None,
        include_bootloader: bool = False,
        force: bool = False,
        on_state: Optional[Listener[DfuState]] = None,
        on_progress: Optional[Listener[float]] = None,
        on_stage: Optional[Listener[DfuStageEvent]] = None,
    ) -> bool:
        """Return True if an update ran, False if the die was already up to date."""
        if self.is_busy:
            raise DfuBusyError(f"device {self.scheduler.device_in_dfu:08X} is already being updated")
        bundle = bundle or self.catalog.selected_bundle()
        if bundle is None or not bundle.is_usable:
            raise NoBundleFoundError("no usable firmware bundle available")

        self.scheduler.request_connect(device_id, Priority.HIGH)
        record = await self.scheduler.wait_until_ready(device_id, self.ready_timeout)
        self.notifier.watch(record)
        if not force and self.notifier.get_dfu_availability(device_id) is not DfuAvailability.OUTDATED:
            logger.info("Device %s firmware is up to date, skipping update", record.hex_id)
            return False
        if not record.ble_address:
            raise DfuArgumentError(f"device {record.hex_id} has no known address")

        bootloader = bundle.bootloader.pathname if include_bootloader and bundle.bootloader else None
        firmware = bundle.firmware.pathname if bundle.firmware else None
        address = record.ble_address
        try:
            async with self.scheduler.dfu_handover(device_id):
                with self.notifier.exclusion(device_id):
                    self.last_session = await self.pipeline.update(
                        address,
                        bootloader,
                        firmware,
                        on_state=on_state,
                        on_progress=on_progress,
                        on_stage=on_stage,
                    )
        finally:
            if self.pipeline.session is not None:
                self.last_session = self.pipeline.session
        logger.info("Device %s updated with bundle dated %s", record.hex_id, bundle.date.isoformat())
        return True


__all__ = ["FirmwareUpdater"]
