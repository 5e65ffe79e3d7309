from __future__ import annotations

import asyncio
import contextlib
import csv
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from pixelcentral.errors import (
    DeviceNotFoundError,
    OperationCancelledError,
    PixelCentralError,
)
from pixelcentral.models.device import DeviceRecord
from pixelcentral.queue import Priority
from pixelcentral.runtime import Runtime, RuntimeSettings

logger = logging.getLogger("pixelcentral.api")

_runtime: Optional[Runtime] = None
_dfu_task: Optional[asyncio.Task] = None
_dfu_device: Optional[int] = None
_dfu_error: Optional[str] = None


@contextlib.asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    await _shutdown()


app = FastAPI(title="PixelCentral API", version="0.1.0", lifespan=_lifespan)


async def get_runtime() -> Runtime:
    """Build the runtime from ``PIXELCENTRAL_*`` variables on first use."""
    global _runtime
    if _runtime is None:
        _runtime = Runtime(RuntimeSettings.from_env())
    if not _runtime.started:
        await _runtime.start()
    return _runtime


async def _shutdown() -> None:
    global _runtime, _dfu_task
    if _dfu_task is not None and not _dfu_task.done():
        _dfu_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _dfu_task
    _dfu_task = None
    if _runtime is not None:
        await _runtime.close()
        _runtime = None


def _parse_device_id(value: str) -> int:
    try:
        return int(value, 16)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid device id: {value!r}")


def _device_payload(runtime: Runtime, record: DeviceRecord) -> Dict[str, Any]:
    payload = record.to_dict()
    payload["paired"] = runtime.registry.is_paired(record.device_id)
    payload["wanted"] = runtime.scheduler.is_wanted(record.device_id)
    payload["dfu_availability"] = runtime.notifier.get_dfu_availability(record.device_id).value
    return payload


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.post("/scan/start")
async def scan_start():
    runtime = await get_runtime()
    try:
        await runtime.scanner.start()
    except PixelCentralError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"status": runtime.scanner.status.value}


@app.post("/scan/stop")
async def scan_stop():
    runtime = await get_runtime()
    await runtime.scanner.stop()
    return {"status": runtime.scanner.status.value}


@app.get("/devices")
async def devices(scanned_only: bool = Query(False, description="Only dice seen within the scan TTL")):
    runtime = await get_runtime()
    records = runtime.scanner.results() if scanned_only else runtime.registry.records()
    return JSONResponse([_device_payload(runtime, record) for record in records])


@app.get("/devices/{device_id}")
async def device(device_id: str):
    runtime = await get_runtime()
    try:
        record = runtime.registry.require(_parse_device_id(device_id))
    except DeviceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return _device_payload(runtime, record)


@app.post("/devices/{device_id}/connect")
async def connect(
    device_id: str,
    priority: Priority = Query(Priority.LOW, description="Queue tier for the request"),
    pair: bool = Query(False, description="Remember the die and reconnect it on startup"),
):
    runtime = await get_runtime()
    ident = _parse_device_id(device_id)
    if pair:
        try:
            runtime.registry.pair(ident)
        except DeviceNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
    try:
        runtime.scheduler.request_connect(ident, priority)
    except OperationCancelledError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"status": "queued", "device": f"{ident:08X}", "priority": priority.value}


@app.post("/devices/{device_id}/disconnect")
async def disconnect(device_id: str, unpair: bool = Query(False)):
    runtime = await get_runtime()
    ident = _parse_device_id(device_id)
    await runtime.scheduler.request_disconnect(ident)
    if unpair:
        runtime.registry.unpair(ident)
    return {"status": "disconnected", "device": f"{ident:08X}"}


@app.get("/dfu/bundles")
async def dfu_bundles():
    runtime = await get_runtime()
    selected = runtime.catalog.selected_bundle()
    return {
        "bundles": [bundle.to_dict() for bundle in runtime.catalog.bundles],
        "selected": selected.to_dict() if selected else None,
    }


@app.post("/dfu/selected")
async def dfu_select(timestamp: Optional[int] = Query(None, description="Bundle timestamp (ms); omit for automatic")):
    runtime = await get_runtime()
    if timestamp is None:
        runtime.catalog.select(None)
    else:
        match = next((b for b in runtime.catalog.bundles if b.timestamp == timestamp), None)
        if match is None:
            raise HTTPException(status_code=404, detail=f"No bundle with timestamp {timestamp}")
        runtime.catalog.select(match)
    selected = runtime.catalog.selected_bundle()
    return {"selected": selected.to_dict() if selected else None}


@app.post("/devices/{device_id}/dfu")
async def dfu_start(
    device_id: str,
    include_bootloader: bool = Query(False),
    force: bool = Query(False, description="Update even if the die is up to date"),
):
    """Start updating a die in the background; progress lands in the metrics log."""
    global _dfu_task, _dfu_device, _dfu_error
    runtime = await get_runtime()
    ident = _parse_device_id(device_id)
    if (_dfu_task and not _dfu_task.done()) or runtime.updater.is_busy:
        raise HTTPException(status_code=409, detail="Another device is being updated")
    if runtime.catalog.selected_bundle() is None:
        raise HTTPException(status_code=409, detail="No usable firmware bundle available")

    _dfu_device = ident
    _dfu_error = None
    _dfu_task = asyncio.create_task(_run_update(runtime, ident, include_bootloader, force))
    return {"status": "started", "device": f"{ident:08X}"}


@app.get("/devices/{device_id}/dfu")
async def dfu_status(device_id: str):
    runtime = await get_runtime()
    ident = _parse_device_id(device_id)
    session = runtime.updater.last_session if _dfu_device == ident else None
    running = bool(_dfu_task and not _dfu_task.done() and _dfu_device == ident)
    return {
        "device": f"{ident:08X}",
        "running": running,
        "availability": runtime.notifier.get_dfu_availability(ident).value,
        "stage": session.stage.value if session else None,
        "progress": session.last_progress if session else None,
        "history": [(stage.value, outcome.value) for stage, outcome in session.outcomes()] if session else [],
        "error": _dfu_error if _dfu_device == ident else None,
    }


async def _run_update(runtime: Runtime, device_id: int, include_bootloader: bool, force: bool) -> None:
    global _dfu_error
    try:
        await runtime.updater.update_device(device_id, include_bootloader=include_bootloader, force=force)
    except PixelCentralError as exc:
        _dfu_error = str(exc)
        logger.warning("Update of %08X failed: %s", device_id, exc)
    except asyncio.CancelledError:
        _dfu_error = "cancelled"
        raise
    except Exception as exc:
        _dfu_error = str(exc) or type(exc).__name__
        logger.exception("Unexpected error while updating %08X", device_id)


@app.websocket("/events")
async def events(ws: WebSocket):
    """Stream metrics rows appended to the CSV log as JSON objects."""
    await ws.accept()
    pos = 0
    header: Optional[list] = None
    try:
        while True:
            metrics = _runtime.metrics if _runtime is not None else None
            if metrics is None or not metrics.path.exists():
                await asyncio.sleep(0.5)
                continue
            with metrics.path.open("r", encoding="utf-8", newline="") as f:
                f.seek(pos)
                lines = f.readlines()
                pos = f.tell()
            for row in csv.reader(lines):
                if header is None:
                    header = row
                    continue
                await ws.send_json(dict(zip(header, row)))
            await asyncio.sleep(0.5)
    except WebSocketDisconnect:
        return
