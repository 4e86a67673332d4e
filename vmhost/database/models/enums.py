import enum


class VMStatus(str, enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


class BackupStatus(str, enum.Enum):
    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"
    RESTORING = "restoring"


# 진행 중인 작업으로 간주되는 상태 (VM당 최대 하나)
IN_FLIGHT_BACKUP_STATUSES = (BackupStatus.CREATING.value, BackupStatus.RESTORING.value)


class DiskFormat(str, enum.Enum):
    QCOW2 = "qcow2"
    RAW = "raw"
    VMDK = "vmdk"
    VDI = "vdi"
    VHDX = "vhdx"

    @property
    def extension(self) -> str:
        return {
            DiskFormat.QCOW2: ".qcow2",
            DiskFormat.RAW: ".img",
            DiskFormat.VMDK: ".vmdk",
            DiskFormat.VDI: ".vdi",
            DiskFormat.VHDX: ".vhdx",
        }[self]


class NetworkMode(str, enum.Enum):
    NAT = "nat"
    BRIDGE = "bridge"
    USER = "user"
    NONE = "none"


class DisplayType(str, enum.Enum):
    SPICE = "spice"
    VNC = "vnc"
    NONE = "none"


class FirmwareType(str, enum.Enum):
    BIOS = "bios"
    UEFI = "uefi"


class DiskCacheMode(str, enum.Enum):
    WRITEBACK = "writeback"
    WRITETHROUGH = "writethrough"
    NONE = "none"
    DIRECTSYNC = "directsync"
    UNSAFE = "unsafe"
