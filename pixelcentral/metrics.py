"""Append-only CSV event log for connection and DFU metrics."""
from __future__ import annotations

import asyncio
import contextlib
import contextvars
import csv
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple


DEFAULT_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "device",
    "status",
    "value",
    "message",
    "extra",
)

_SCOPES: contextvars.ContextVar[Tuple[Mapping[str, Any], ...]] = contextvars.ContextVar(
    "pixelcentral_metrics_scopes", default=()
)


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _encode_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    try:
        return json.dumps(extra, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(extra)


def format_device(device: Any) -> str:
    if device is None:
        return ""
    if isinstance(device, int):
        return f"{device:08X}"
    return str(device)


@dataclass(slots=True)
class MetricRecord:
    """One CSV row."""

    timestamp: str
    event: str
    device: str = ""
    status: Optional[str] = None
    value: Optional[float] = None
    message: Optional[str] = None
    extra: str = ""

    def as_row(self, fields: Sequence[str]) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "event": self.event,
            "device": self.device,
            "status": self.status or "",
            "value": self.value if self.value is not None else "",
            "message": self.message or "",
            "extra": self.extra,
        }
        return {key: row.get(key, "") for key in fields}


class MetricsLogger:
    """CSV logger for scheduler and DFU events.

    Rows are written unbuffered so that the ``/events`` websocket can tail the
    file. Scoped extras are tracked per asyncio task through a context
    variable.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fields: Sequence[str] | None = None,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.fields: Sequence[str] = tuple(fields) if fields is not None else DEFAULT_FIELDS
        if not self.fields:
            raise ValueError("fields must contain at least one column")

        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._static_extra: Dict[str, Any] = dict(static_extra or {})
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._write_header()

    def _write_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore")
                writer.writeheader()

    def log(
        self,
        event: str,
        *,
        device: Any = None,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        payload = self._combined_extra(extra)
        if device is None:
            device = payload.pop("device", None)
        record = MetricRecord(
            timestamp=self._timestamp(),
            event=event,
            device=format_device(device),
            status=status,
            value=value,
            message=message,
            extra=_encode_extra(payload),
        )
        row = record.as_row(self.fields)
        with self._lock:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore").writerow(row)

    async def log_async(
        self,
        event: str,
        *,
        device: Any = None,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        await asyncio.to_thread(
            self.log,
            event,
            device=device,
            status=status,
            value=value,
            message=message,
            extra=extra,
        )

    @contextlib.contextmanager
    def scope(self, extra: Mapping[str, Any] | None = None, **extra_kwargs: Any) -> Iterator[None]:
        payload: Dict[str, Any] = dict(extra or {})
        payload.update(extra_kwargs)
        token = _SCOPES.set(_SCOPES.get() + (payload,))
        try:
            yield
        finally:
            _SCOPES.reset(token)

    @contextlib.contextmanager
    def timer(
        self,
        event: str,
        *,
        device: Any = None,
        status: str = "ok",
        error_status: str = "error",
        extra: Optional[Mapping[str, Any]] = None,
        **extra_kwargs: Any,
    ) -> Iterator[None]:
        """Log ``event`` with the elapsed time once the block exits."""
        payload = dict(extra or {})
        payload.update(extra_kwargs)
        start = perf_counter()
        try:
            with self.scope(payload):
                yield
        except BaseException as exc:
            duration = perf_counter() - start
            self.log(
                event,
                device=device,
                status="cancelled" if isinstance(exc, asyncio.CancelledError) else error_status,
                value=duration,
                message=str(exc) or type(exc).__name__,
                extra={**payload, "exception": type(exc).__name__},
            )
            raise
        else:
            self.log(event, device=device, status=status, value=perf_counter() - start, extra=payload)

    def _timestamp(self) -> str:
        try:
            dt = self._clock()
        except Exception:  # pragma: no cover - guard against faulty clock
            dt = datetime.now(timezone.utc)
        if not isinstance(dt, datetime):
            return str(dt)
        return _utc(dt).isoformat(timespec="milliseconds")

    def _combined_extra(self, extra: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self._static_extra)
        for layer in _SCOPES.get():
            payload.update(layer)
        if extra:
            payload.update(extra)
        return payload


__all__ = [
    "DEFAULT_FIELDS",
    "MetricRecord",
    "MetricsLogger",
    "format_device",
]
