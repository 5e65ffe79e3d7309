"""Two-stage (bootloader, then firmware) update of a single die."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from time import monotonic
from typing import Callable, List, Optional, Tuple

from pixelcentral.errors import (
    DfuArgumentError,
    DfuBusyError,
    DfuCommunicationError,
    DfuFileInvalidError,
    OperationCancelledError,
    PixelCentralError,
    VersionMismatchError,
)
from pixelcentral.events import EventChannel, Listener
from pixelcentral.metrics import MetricsLogger
from pixelcentral.models.dfu import DfuStage, DfuState
from pixelcentral.transport.base import BleTransport

logger = logging.getLogger(__name__)

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}$")


def offset_mac_address(address: str, offset: int) -> str:
    """Add ``offset`` to a colon separated MAC address; other handles are returned unchanged."""
    if not offset or not _MAC_RE.match(address):
        return address
    value = (int(address.replace(":", ""), 16) + offset) & 0xFFFFFFFFFFFF
    raw = f"{value:012X}"
    return ":".join(raw[i:i + 2] for i in range(0, 12, 2))


class StageOutcome(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED_NONFATAL = "failed-nonfatal"
    RETRYING = "retrying"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class DfuStageEvent:
    stage: DfuStage
    outcome: StageOutcome
    target: str
    at: float
    detail: Optional[str] = None


@dataclass(slots=True)
class DfuSession:
    """Bookkeeping for one update run."""

    target: str
    stage: DfuStage = DfuStage.IDLE
    total_stages: int = 0
    pending_stage_count: int = 0
    bootloader_skipped: bool = False
    firmware_target: Optional[str] = None
    firmware_attempts: int = 0
    last_progress: float = 0.0
    history: List[DfuStageEvent] = field(default_factory=list)

    @property
    def is_done(self) -> bool:
        return self.stage in (DfuStage.COMPLETED, DfuStage.ABORTED, DfuStage.ERRORED)

    def outcomes(self) -> List[Tuple[DfuStage, StageOutcome]]:
        return [(event.stage, event.outcome) for event in self.history]


@dataclass(slots=True)
class PipelineConfig:
    bootloader_settle_delay: float = 0.2
    firmware_retry_delay: float = 0.5

    def __post_init__(self) -> None:
        if self.bootloader_settle_delay < 0 or self.firmware_retry_delay < 0:
            raise ValueError("delays must not be negative")


class DfuUpdatePipeline:
    """Push a bootloader and/or firmware image to one device.

    A bootloader rejected for its version is skipped, and the firmware stage
    then waits ``bootloader_settle_delay`` before starting. A firmware push
    rejected for its version is retried once after ``firmware_retry_delay``.
    The firmware stage targets the bootloader address (``address`` plus the
    transport's ``bootloader_address_offset``) when a bootloader stage ran,
    unless the caller says ``target`` already is that address.

    Callers see a single 0-100 progress value and a single terminal
    COMPLETED; failures always emit ERRORED before the exception propagates.
    """

    def __init__(
        self,
        transport: BleTransport,
        *,
        config: Optional[PipelineConfig] = None,
        metrics: Optional[MetricsLogger] = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.transport = transport
        self.config = config or PipelineConfig()
        self.metrics = metrics
        self._clock = clock
        self._session: Optional[DfuSession] = None
        self._abort_event: Optional[asyncio.Event] = None
        self._transport_aborted = False
        self._completed_emitted = False

    @property
    def session(self) -> Optional[DfuSession]:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._session is not None and not self._session.is_done

    def abort(self) -> None:
        """Stop the running update; ``update`` raises OperationCancelledError."""
        if self._abort_event is not None:
            self._abort_event.set()

    async def update(
        self,
        target: str,
        bootloader_path: Optional[str | Path] = None,
        firmware_path: Optional[str | Path] = None,
        *,
        on_state: Optional[Listener[DfuState]] = None,
        on_progress: Optional[Listener[float]] = None,
        on_stage: Optional[Listener[DfuStageEvent]] = None,
        is_bootloader_address: bool = False,
    ) -> DfuSession:
        if self.is_running:
            raise DfuBusyError("an update is already running", target)

        states: EventChannel[DfuState] = EventChannel("dfu_state")
        progress: EventChannel[float] = EventChannel("dfu_progress")
        stages: EventChannel[DfuStageEvent] = EventChannel("dfu_stage")
        for channel, listener in ((states, on_state), (progress, on_progress), (stages, on_stage)):
            if listener is not None:
                channel.subscribe(listener)

        has_bootloader = bool(bootloader_path)
        has_firmware = bool(firmware_path)
        session = DfuSession(target=target)
        session.total_stages = int(has_bootloader) + int(has_firmware)
        session.pending_stage_count = session.total_stages
        self._session = session
        self._abort_event = asyncio.Event()
        self._transport_aborted = False
        self._completed_emitted = False

        if not session.total_stages:
            session.stage = DfuStage.ERRORED
            states.emit(DfuState.ERRORED)
            raise DfuArgumentError("no bootloader or firmware file given", target)

        try:
            if has_bootloader:
                await self._bootloader_stage(session, Path(bootloader_path), states, progress, stages, has_firmware)
            if has_firmware:
                if self._transport_aborted:
                    raise OperationCancelledError("update aborted by the transport")
                session.firmware_target = target
                if has_bootloader and not is_bootloader_address:
                    offset = getattr(self.transport, "bootloader_address_offset", 0)
                    session.firmware_target = offset_mac_address(target, offset)
                await self._firmware_stage(session, Path(firmware_path), states, progress, stages)
        except OperationCancelledError as exc:
            self._finish_aborted(session, states, stages, str(exc))
            raise
        except asyncio.CancelledError:
            self._finish_aborted(session, states, stages, "cancelled")
            raise
        except PixelCentralError as exc:
            self._finish_errored(session, states, stages, exc)
            raise
        except Exception as exc:
            self._finish_errored(session, states, stages, exc)
            raise DfuCommunicationError(str(exc) or type(exc).__name__, session.target) from exc
        finally:
            self._abort_event = None

        session.stage = DfuStage.COMPLETED
        if not self._completed_emitted:
            states.emit(DfuState.COMPLETED)
        return session

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _bootloader_stage(
        self,
        session: DfuSession,
        path: Path,
        states: EventChannel[DfuState],
        progress: EventChannel[float],
        stages: EventChannel[DfuStageEvent],
        firmware_follows: bool,
    ) -> None:
        session.stage = DfuStage.BOOTLOADER
        logger.info("Starting DFU for device %s with bootloader %s", session.target, path)
        try:
            await self._push(session, DfuStage.BOOTLOADER, session.target, path, states, progress, stages)
        except VersionMismatchError as exc:
            logger.info("Device %s bootloader is same version or more recent", session.target)
            self._record(session, stages, DfuStage.BOOTLOADER, StageOutcome.FAILED_NONFATAL, session.target, str(exc))
            if firmware_follows:
                session.bootloader_skipped = True
                await self._pause(self.config.bootloader_settle_delay)

    async def _firmware_stage(
        self,
        session: DfuSession,
        path: Path,
        states: EventChannel[DfuState],
        progress: EventChannel[float],
        stages: EventChannel[DfuStageEvent],
    ) -> None:
        session.stage = DfuStage.FIRMWARE
        target = session.firmware_target or session.target
        allow_retry = True
        while True:
            session.firmware_attempts += 1
            logger.info("Starting DFU for device %s with firmware %s", target, path)
            try:
                await self._push(session, DfuStage.FIRMWARE, target, path, states, progress, stages)
                return
            except VersionMismatchError as exc:
                if not allow_retry:
                    raise
                logger.warning("DFU firmware version error on %s, trying a second time", target)
                self._record(session, stages, DfuStage.FIRMWARE, StageOutcome.RETRYING, target, str(exc))
                self._log("dfu_retry", target, status="pending", message=str(exc))
                allow_retry = False
                session.pending_stage_count += 1
                await self._pause(self.config.firmware_retry_delay)

    async def _push(
        self,
        session: DfuSession,
        stage: DfuStage,
        target: str,
        path: Path,
        states: EventChannel[DfuState],
        progress: EventChannel[float],
        stages: EventChannel[DfuStageEvent],
    ) -> None:
        self._check_abort()
        image = await self._read_image(path, target)
        session.pending_stage_count -= 1
        self._record(session, stages, stage, StageOutcome.STARTED, target)

        def _on_state(state: DfuState) -> None:
            if state is DfuState.ABORTED:
                self._transport_aborted = True
            if state is DfuState.ERRORED:
                return
            if state is DfuState.COMPLETED:
                if session.pending_stage_count > 0:
                    return
                self._completed_emitted = True
            states.emit(state)

        def _on_progress(percent: float) -> None:
            value = self._overall_progress(session, stage, percent)
            if value > session.last_progress:
                session.last_progress = value
                progress.emit(value)

        timer = (
            self.metrics.timer("dfu_stage", device=target, stage=stage.value, size=len(image))
            if self.metrics
            else contextlib.nullcontext()
        )
        with timer:
            await self._run_abortable(
                self.transport.send_firmware_image(target, image, _on_progress, _on_state)
            )
        self._record(session, stages, stage, StageOutcome.COMPLETED, target)

    async def _run_abortable(self, operation) -> None:
        send = asyncio.ensure_future(operation)
        abort_event = self._abort_event
        aborted = asyncio.ensure_future(abort_event.wait()) if abort_event else None
        try:
            waiting = {send} if aborted is None else {send, aborted}
            await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
            if not send.done():
                send.cancel()
                await asyncio.wait({send})
                raise OperationCancelledError("update aborted")
            send.result()
        finally:
            for future in (send, aborted):
                if future is not None and not future.done():
                    future.cancel()

    async def _pause(self, delay: float) -> None:
        abort_event = self._abort_event
        if abort_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(abort_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise OperationCancelledError("update aborted")

    def _check_abort(self) -> None:
        if self._abort_event is not None and self._abort_event.is_set():
            raise OperationCancelledError("update aborted")

    async def _read_image(self, path: Path, target: str) -> bytes:
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise DfuFileInvalidError(f"cannot read {path}: {exc}", target) from exc

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    @staticmethod
    def _overall_progress(session: DfuSession, stage: DfuStage, percent: float) -> float:
        total = session.total_stages - (1 if session.bootloader_skipped else 0)
        total = max(total, 1)
        index = 0
        if stage is DfuStage.FIRMWARE and session.total_stages > 1 and not session.bootloader_skipped:
            index = 1
        percent = min(max(percent, 0.0), 100.0)
        return min(index / total * 100 + percent / total, 100.0)

    def _record(
        self,
        session: DfuSession,
        stages: EventChannel[DfuStageEvent],
        stage: DfuStage,
        outcome: StageOutcome,
        target: str,
        detail: Optional[str] = None,
    ) -> None:
        event = DfuStageEvent(stage=stage, outcome=outcome, target=target, at=self._clock(), detail=detail)
        session.history.append(event)
        stages.emit(event)

    def _finish_errored(
        self,
        session: DfuSession,
        states: EventChannel[DfuState],
        stages: EventChannel[DfuStageEvent],
        exc: BaseException,
    ) -> None:
        stage = session.stage
        session.stage = DfuStage.ERRORED
        logger.error("DFU %s error on %s: %s", stage.value, session.target, exc)
        self._record(session, stages, stage, StageOutcome.FAILED, session.firmware_target or session.target, str(exc))
        states.emit(DfuState.ERRORED)

    def _finish_aborted(
        self,
        session: DfuSession,
        states: EventChannel[DfuState],
        stages: EventChannel[DfuStageEvent],
        reason: str,
    ) -> None:
        stage = session.stage
        session.stage = DfuStage.ABORTED
        logger.info("DFU on %s aborted during %s stage: %s", session.target, stage.value, reason)
        self._record(session, stages, stage, StageOutcome.ABORTED, session.target, reason)
        if not self._transport_aborted:
            states.emit(DfuState.ABORTED)

    def _log(self, event: str, target: str, *, status: str, message: Optional[str] = None) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.log(event, device=target, status=status, message=message)
        except Exception:  # pragma: no cover - I/O failure safeguard
            logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = [
    "DfuSession",
    "DfuStageEvent",
    "DfuUpdatePipeline",
    "PipelineConfig",
    "StageOutcome",
    "offset_mac_address",
]
