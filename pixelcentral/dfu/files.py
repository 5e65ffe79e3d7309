"""Firmware file providers: a directory of DFU zips, or an archive of them."""
from __future__ import annotations

import asyncio
import logging
import zipfile
from pathlib import Path
from typing import List

from pixelcentral.errors import DfuFileInvalidError
from pixelcentral.models.dfu import DfuFileInfo, parse_dfu_file_info

logger = logging.getLogger(__name__)


def _scan_directory(directory: Path) -> List[DfuFileInfo]:
    infos: List[DfuFileInfo] = []
    for path in sorted(directory.rglob("*.zip")):
        info = parse_dfu_file_info(path.as_posix())
        if info is None:
            logger.warning("Couldn't read firmware date or type on DFU file: %s", path)
            continue
        infos.append(info)
    return infos


class DirectoryFilesProvider:
    """Lists DFU files found under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    async def list_available_firmware_files(self) -> List[DfuFileInfo]:
        if not self.directory.is_dir():
            raise FileNotFoundError(f"firmware directory not found: {self.directory}")
        return await asyncio.to_thread(_scan_directory, self.directory)

    def __repr__(self) -> str:
        return f"DirectoryFilesProvider({str(self.directory)!r})"


class ZipArchiveFilesProvider:
    """Unpacks an archive of DFU zips into ``extract_dir`` and lists them.

    The archive is extracted once; later calls list the extracted copy.
    """

    def __init__(self, archive: str | Path, extract_dir: str | Path) -> None:
        self.archive = Path(archive)
        self.extract_dir = Path(extract_dir)
        self._extracted = False

    async def list_available_firmware_files(self) -> List[DfuFileInfo]:
        if not self._extracted:
            await asyncio.to_thread(self._extract)
            self._extracted = True
        return await asyncio.to_thread(_scan_directory, self.extract_dir)

    def _extract(self) -> None:
        if not self.archive.is_file():
            raise FileNotFoundError(f"firmware archive not found: {self.archive}")
        self.extract_dir.mkdir(parents=True, exist_ok=True)
        root = self.extract_dir.resolve()
        with zipfile.ZipFile(self.archive) as archive:
            for member in archive.infolist():
                target = (self.extract_dir / member.filename).resolve()
                if root not in target.parents and target != root:
                    raise DfuFileInvalidError(f"unsafe path in firmware archive: {member.filename}")
            archive.extractall(self.extract_dir)
        logger.debug("Extracted %s into %s", self.archive, self.extract_dir)

    def __repr__(self) -> str:
        return f"ZipArchiveFilesProvider({str(self.archive)!r})"


__all__ = ["DirectoryFilesProvider", "ZipArchiveFilesProvider"]
