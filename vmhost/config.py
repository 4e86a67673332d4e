# vmhost/config.py
"""vmhost 설정 관리. 모든 값은 VMHOST_* 환경 변수로 덮어쓸 수 있습니다."""

import os
from dataclasses import dataclass
from functools import lru_cache

COMPRESSION_TYPES = {"gzip", "none"}


@dataclass(frozen=True)
class Settings:
    """오케스트레이터가 사용하는 경로, 바이너리, 타이밍 설정."""
    database_url: str = "sqlite:///vmhost_metadata.db"

    vm_storage_dir: str = "/opt/serveros/storage/vms"
    backup_dir: str = "/opt/serveros/storage/backups"
    iso_dir: str = "/opt/serveros/storage/isos"
    log_dir: str = "/opt/serveros/logs/vms"
    run_dir: str = "/opt/serveros/run"

    qemu_binary: str = "qemu-system-x86_64"
    qemu_img_binary: str = "qemu-img"

    display_port_min: int = 5900
    display_port_max: int = 6000
    spice_host: str = "localhost"

    stop_grace_seconds: float = 2.0
    restart_pause_seconds: float = 1.0
    pidfile_timeout: float = 5.0

    template_dir: str = "/opt/serveros/storage/templates"

    ovmf_code_path: str = "/usr/share/OVMF/OVMF_CODE.fd"
    ovmf_vars_template: str = "/usr/share/OVMF/OVMF_VARS.fd"

    backup_compression: str = "gzip"
    backup_workers: int = 2

    @classmethod
    def from_env(cls) -> "Settings":
        """환경 변수로부터 설정을 생성합니다."""
        return cls(
            database_url=os.getenv("VMHOST_DATABASE_URL", cls.database_url),
            vm_storage_dir=os.getenv("VMHOST_VM_STORAGE_DIR", cls.vm_storage_dir),
            backup_dir=os.getenv("VMHOST_BACKUP_DIR", cls.backup_dir),
            iso_dir=os.getenv("VMHOST_ISO_DIR", cls.iso_dir),
            log_dir=os.getenv("VMHOST_LOG_DIR", cls.log_dir),
            run_dir=os.getenv("VMHOST_RUN_DIR", cls.run_dir),
            qemu_binary=os.getenv("VMHOST_QEMU_BINARY", cls.qemu_binary),
            qemu_img_binary=os.getenv("VMHOST_QEMU_IMG_BINARY", cls.qemu_img_binary),
            display_port_min=int(os.getenv("VMHOST_DISPLAY_PORT_MIN", str(cls.display_port_min))),
            display_port_max=int(os.getenv("VMHOST_DISPLAY_PORT_MAX", str(cls.display_port_max))),
            spice_host=os.getenv("VMHOST_SPICE_HOST", cls.spice_host),
            stop_grace_seconds=float(os.getenv("VMHOST_STOP_GRACE_SECONDS", str(cls.stop_grace_seconds))),
            restart_pause_seconds=float(os.getenv("VMHOST_RESTART_PAUSE_SECONDS", str(cls.restart_pause_seconds))),
            pidfile_timeout=float(os.getenv("VMHOST_PIDFILE_TIMEOUT", str(cls.pidfile_timeout))),
            backup_compression=os.getenv("VMHOST_BACKUP_COMPRESSION", cls.backup_compression).lower(),
            template_dir=os.getenv("VMHOST_TEMPLATE_DIR", cls.template_dir),
            ovmf_code_path=os.getenv("VMHOST_OVMF_CODE_PATH", cls.ovmf_code_path),
            ovmf_vars_template=os.getenv("VMHOST_OVMF_VARS_TEMPLATE", cls.ovmf_vars_template),
            backup_workers=int(os.getenv("VMHOST_BACKUP_WORKERS", str(cls.backup_workers))),
        )

    def __post_init__(self):
        """설정 값의 유효성을 검사합니다."""
        if not 0 < self.display_port_min <= self.display_port_max <= 65535:
            raise ValueError(
                f"invalid display port range [{self.display_port_min}, {self.display_port_max}]"
            )
        if self.backup_compression not in COMPRESSION_TYPES:
            raise ValueError(f"backup_compression must be one of {sorted(COMPRESSION_TYPES)}, got {self.backup_compression}")
        if self.backup_workers <= 0:
            raise ValueError(f"backup_workers must be positive, got {self.backup_workers}")
        for name in ("stop_grace_seconds", "restart_pause_seconds", "pidfile_timeout"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative, got {getattr(self, name)}")

    @property
    def compress_backups(self) -> bool:
        return self.backup_compression == "gzip"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """프로세스 전역 설정. 최초 호출 시 환경 변수를 한 번만 읽습니다."""
    return Settings.from_env()
