from .enums import (
    BackupStatus,
    DiskCacheMode,
    DiskFormat,
    DisplayType,
    FirmwareType,
    IN_FLIGHT_BACKUP_STATUSES,
    NetworkMode,
    VMStatus,
)
from .vm import VirtualMachine
from .backup import BackupJob
from .snapshot import VMSnapshot
from .template import VMTemplate

__all__ = [
    "BackupJob",
    "BackupStatus",
    "DiskCacheMode",
    "DiskFormat",
    "DisplayType",
    "FirmwareType",
    "IN_FLIGHT_BACKUP_STATUSES",
    "NetworkMode",
    "VMSnapshot",
    "VMStatus",
    "VMTemplate",
    "VirtualMachine",
]
