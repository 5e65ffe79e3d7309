"""Data model for devices, firmware bundles and paired-device persistence."""
from .device import DeviceRecord, DeviceStatus, StatusChange
from .dfu import (
    BundleSource,
    DfuAvailability,
    DfuFileInfo,
    DfuFileKind,
    DfuFilesBundle,
    DfuStage,
    DfuState,
    parse_dfu_file_info,
)

__all__ = [
    "DeviceRecord",
    "DeviceStatus",
    "StatusChange",
    "BundleSource",
    "DfuAvailability",
    "DfuFileInfo",
    "DfuFileKind",
    "DfuFilesBundle",
    "DfuStage",
    "DfuState",
    "parse_dfu_file_info",
]
