"""Firmware file descriptors, bundles and DFU state enums."""
from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

SDK17_TAG = "sdk17"
RECONFIGURE_TAG = "reconfigure"

# firmware_2024_03_25_12_30_00_sdk17.zip
_FILENAME_RE = re.compile(
    r"^(?P<kind>bootloader|firmware)"
    r"_(?P<Y>\d{4})_(?P<M>\d{2})_(?P<D>\d{2})_(?P<h>\d{2})_(?P<m>\d{2})_(?P<s>\d{2})"
    r"(?:_(?P<comment>[A-Za-z0-9][A-Za-z0-9_.-]*?))?\.zip$",
    re.IGNORECASE,
)


class DfuFileKind(str, Enum):
    BOOTLOADER = "bootloader"
    FIRMWARE = "firmware"


class BundleSource(str, Enum):
    FACTORY = "factory"
    APP = "app"
    IMPORTED = "imported"


class DfuStage(str, Enum):
    IDLE = "idle"
    BOOTLOADER = "bootloader"
    FIRMWARE = "firmware"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


class DfuState(str, Enum):
    """States reported by the transport during a single image push."""

    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STARTING = "starting"
    ENABLING_DFU_MODE = "enablingDfuMode"
    UPLOADING = "uploading"
    VALIDATING_FIRMWARE = "validatingFirmware"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (DfuState.COMPLETED, DfuState.ABORTED, DfuState.ERRORED)


class DfuAvailability(str, Enum):
    UNKNOWN = "unknown"
    OUTDATED = "outdated"
    UP_TO_DATE = "up-to-date"


@dataclass(slots=True, frozen=True)
class DfuFileInfo:
    pathname: str
    date: datetime
    kind: DfuFileKind
    comment: Optional[str] = None

    @property
    def directory(self) -> str:
        return posixpath.dirname(self.pathname.replace("\\", "/"))

    @property
    def timestamp(self) -> int:
        return int(self.date.timestamp() * 1000)


def parse_dfu_file_info(pathname: str) -> Optional[DfuFileInfo]:
    """Extract kind, UTC date and comment from a DFU file name.

    Returns ``None`` when the name does not follow the
    ``<kind>_YYYY_MM_DD_hh_mm_ss[_comment].zip`` convention.
    """
    basename = posixpath.basename(pathname.replace("\\", "/"))
    match = _FILENAME_RE.match(basename)
    if not match:
        return None
    try:
        date = datetime(
            int(match["Y"]),
            int(match["M"]),
            int(match["D"]),
            int(match["h"]),
            int(match["m"]),
            int(match["s"]),
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None
    return DfuFileInfo(
        pathname=pathname,
        date=date,
        kind=DfuFileKind(match["kind"].lower()),
        comment=match["comment"] or None,
    )


@dataclass(slots=True, frozen=True)
class DfuFilesBundle:
    """Bootloader and/or firmware files built at the same date."""

    bootloader: Optional[DfuFileInfo] = None
    firmware: Optional[DfuFileInfo] = None
    source: BundleSource = BundleSource.APP

    def __post_init__(self) -> None:
        if self.bootloader is None and self.firmware is None:
            raise ValueError("DfuFilesBundle requires at least one file")
        if self.bootloader is not None and self.bootloader.kind is not DfuFileKind.BOOTLOADER:
            raise ValueError(f"{self.bootloader.pathname} is not a bootloader file")
        if self.firmware is not None and self.firmware.kind is not DfuFileKind.FIRMWARE:
            raise ValueError(f"{self.firmware.pathname} is not a firmware file")
        if (
            self.bootloader is not None
            and self.firmware is not None
            and self.bootloader.date != self.firmware.date
        ):
            raise ValueError("bootloader and firmware files must have the same date")

    @property
    def main(self) -> DfuFileInfo:
        return self.firmware or self.bootloader  # type: ignore[return-value]

    @property
    def date(self) -> datetime:
        return self.main.date

    @property
    def timestamp(self) -> int:
        return self.main.timestamp

    @property
    def comment(self) -> Optional[str]:
        return self.main.comment

    @property
    def tags(self) -> Tuple[str, ...]:
        if not self.comment:
            return ()
        return tuple(part.lower() for part in re.split(r"[_\-.]", self.comment) if part)

    def has_tag(self, tag: str) -> bool:
        return tag.lower() in self.tags

    @property
    def is_sdk17(self) -> bool:
        return self.has_tag(SDK17_TAG)

    @property
    def is_reconfigure(self) -> bool:
        return self.has_tag(RECONFIGURE_TAG)

    @property
    def is_usable(self) -> bool:
        return self.firmware is not None

    @property
    def is_complete(self) -> bool:
        return self.bootloader is not None and self.firmware is not None

    @property
    def pathnames(self) -> List[str]:
        return [info.pathname for info in (self.bootloader, self.firmware) if info is not None]

    def with_file(self, info: DfuFileInfo) -> "DfuFilesBundle":
        if info.kind is DfuFileKind.BOOTLOADER:
            if self.bootloader is not None:
                raise ValueError("bundle already has a bootloader file")
            return DfuFilesBundle(bootloader=info, firmware=self.firmware, source=self.source)
        if self.firmware is not None:
            raise ValueError("bundle already has a firmware file")
        return DfuFilesBundle(bootloader=self.bootloader, firmware=info, source=self.source)

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "timestamp": self.timestamp,
            "source": self.source.value,
            "comment": self.comment,
            "bootloader": self.bootloader.pathname if self.bootloader else None,
            "firmware": self.firmware.pathname if self.firmware else None,
        }

    @classmethod
    def from_file(cls, info: DfuFileInfo, source: BundleSource = BundleSource.APP) -> "DfuFilesBundle":
        if info.kind is DfuFileKind.BOOTLOADER:
            return cls(bootloader=info, source=source)
        return cls(firmware=info, source=source)

    @classmethod
    def create_many(
        cls,
        files: Iterable[DfuFileInfo],
        source: BundleSource = BundleSource.APP,
    ) -> List["DfuFilesBundle"]:
        """Group files sharing a date and a directory into bundles."""
        bundles: List[DfuFilesBundle] = []
        for info in files:
            if info is None or info.date is None or info.kind is None:
                logger.warning("Skipping DFU file without date or kind: %r", info)
                continue
            index = next(
                (
                    i
                    for i, bundle in enumerate(bundles)
                    if bundle.date == info.date
                    and bundle.main.directory == info.directory
                    and (bundle.firmware if info.kind is DfuFileKind.FIRMWARE else bundle.bootloader) is None
                ),
                None,
            )
            if index is None:
                bundles.append(cls.from_file(info, source))
            else:
                bundles[index] = bundles[index].with_file(info)
        return bundles


__all__ = [
    "SDK17_TAG",
    "RECONFIGURE_TAG",
    "DfuFileKind",
    "BundleSource",
    "DfuStage",
    "DfuState",
    "DfuAvailability",
    "DfuFileInfo",
    "DfuFilesBundle",
    "parse_dfu_file_info",
]
