"""Catalog of firmware bundles and automatic bundle selection."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from pixelcentral.errors import BundleLoadError, NoBundleFoundError
from pixelcentral.events import EventChannel
from pixelcentral.models.dfu import BundleSource, DfuFilesBundle
from pixelcentral.transport.base import FirmwareFilesProvider

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BundleCriteria:
    """Filters for :meth:`DfuBundleCatalog.bundle_for`."""

    source: Optional[BundleSource] = None
    tag: Optional[str] = None
    include_reconfigure: bool = False
    require_bootloader: bool = False
    newer_than: Optional[datetime] = None

    def matches(self, bundle: DfuFilesBundle) -> bool:
        if not bundle.is_usable:
            return False
        if bundle.is_reconfigure and not self.include_reconfigure:
            return False
        if self.source is not None and bundle.source is not self.source:
            return False
        if self.tag is not None and not bundle.has_tag(self.tag):
            return False
        if self.require_bootloader and bundle.bootloader is None:
            return False
        if self.newer_than is not None and bundle.date <= self.newer_than:
            return False
        return True


@dataclass(slots=True)
class CatalogLoadResult:
    bundles: List[DfuFilesBundle] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def rank(bundle: DfuFilesBundle) -> tuple:
    """Sort key: sdk17 bundles first, then the most recent."""
    return (1 if bundle.is_sdk17 else 0, bundle.date)


class DfuBundleCatalog:
    """Indexes available bundles and picks the one to install.

    Automatic selection ignores bundles without firmware and bundles tagged
    ``reconfigure``; among the rest an ``sdk17`` bundle always wins, then the
    most recent date. :meth:`select` overrides the automatic choice.
    """

    def __init__(self, bundles: Iterable[DfuFilesBundle] = ()) -> None:
        self._bundles: List[DfuFilesBundle] = []
        self._override: Optional[DfuFilesBundle] = None
        self._selected: Optional[DfuFilesBundle] = None
        self.selected_changed: EventChannel[Optional[DfuFilesBundle]] = EventChannel("selected_changed")
        self.add_bundles(bundles)

    @property
    def bundles(self) -> List[DfuFilesBundle]:
        return list(self._bundles)

    def add_bundles(self, bundles: Iterable[DfuFilesBundle]) -> None:
        added = False
        for bundle in bundles:
            if bundle in self._bundles:
                continue
            self._bundles.append(bundle)
            added = True
        if added:
            self._refresh()

    def remove_bundle(self, bundle: DfuFilesBundle) -> bool:
        try:
            self._bundles.remove(bundle)
        except ValueError:
            return False
        if self._override == bundle:
            self._override = None
        self._refresh()
        return True

    def clear(self) -> None:
        self._bundles.clear()
        self._override = None
        self._refresh()

    def select(self, bundle: Optional[DfuFilesBundle]) -> None:
        """Pin ``bundle`` as the selection, or return to automatic selection with None."""
        if bundle is not None and bundle not in self._bundles:
            raise ValueError("bundle is not part of the catalog")
        self._override = bundle
        self._refresh()

    def selected_bundle(self) -> Optional[DfuFilesBundle]:
        return self._selected

    def require_selected(self) -> DfuFilesBundle:
        if self._selected is None:
            raise NoBundleFoundError("no usable firmware bundle available")
        return self._selected

    def bundle_for(self, criteria: Optional[BundleCriteria] = None) -> Optional[DfuFilesBundle]:
        criteria = criteria or BundleCriteria()
        candidates = [bundle for bundle in self._bundles if criteria.matches(bundle)]
        if not candidates:
            return None
        return max(candidates, key=rank)

    def reconfiguration_bundle(self) -> Optional[DfuFilesBundle]:
        candidates = [b for b in self._bundles if b.is_usable and b.is_reconfigure]
        if not candidates:
            return None
        return max(candidates, key=lambda b: b.date)

    async def load(
        self,
        provider: FirmwareFilesProvider,
        source: BundleSource = BundleSource.APP,
    ) -> CatalogLoadResult:
        """Index the provider's files. Never raises; failures come back in the result."""
        try:
            files = await provider.list_available_firmware_files()
            bundles = DfuFilesBundle.create_many(files, source)
        except Exception as exc:
            logger.warning("Failed to load DFU files from %r: %s", provider, exc)
            error = BundleLoadError(f"failed to load firmware files: {exc}")
            error.__cause__ = exc
            return CatalogLoadResult(error=error)

        self.add_bundles(bundles)
        if not any(bundle.is_usable for bundle in bundles):
            logger.warning("No usable DFU bundle found in %r", provider)
            return CatalogLoadResult(bundles=bundles, error=NoBundleFoundError("no firmware file found"))
        logger.info("Loaded %d DFU bundle(s) from %r", len(bundles), provider)
        return CatalogLoadResult(bundles=bundles)

    def _refresh(self) -> None:
        selected = self._override or self.bundle_for()
        if selected != self._selected:
            self._selected = selected
            self.selected_changed.emit(selected)


__all__ = ["BundleCriteria", "CatalogLoadResult", "DfuBundleCatalog", "rank"]
