from pixelcentral.dfu.catalog import BundleCriteria, CatalogLoadResult, DfuBundleCatalog
from pixelcentral.dfu.files import DirectoryFilesProvider, ZipArchiveFilesProvider
from pixelcentral.dfu.notifier import AvailabilityChange, DfuNotifier
from pixelcentral.dfu.pipeline import DfuSession, DfuStageEvent, DfuUpdatePipeline, PipelineConfig

__all__ = [
    "AvailabilityChange",
    "BundleCriteria",
    "CatalogLoadResult",
    "DfuBundleCatalog",
    "DfuNotifier",
    "DfuSession",
    "DfuStageEvent",
    "DfuUpdatePipeline",
    "DirectoryFilesProvider",
    "PipelineConfig",
    "ZipArchiveFilesProvider",
]
