from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, func
from ..database import Base
from .enums import VMStatus


class VirtualMachine(Base):
    """
    호스트에서 관리되는 가상 머신의 선언적 설정과 마지막으로 확인된 런타임 상태를 나타냅니다.

    uuid와 mac_address는 한 번 할당되면 바뀌지 않습니다.
    status가 'running'이면 pid는 가장 최근 start가 기록한 하이퍼바이저 프로세스 ID이며,
    'stopped'/'error'이면 pid는 항상 NULL입니다.
    id는 삭제된 VM의 값을 다시 쓰지 않습니다 (sqlite_autoincrement).
    """
    __tablename__ = "virtual_machines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")

    # Identity
    uuid = Column(String, unique=True, nullable=False)
    mac_address = Column(String, unique=True, nullable=False)

    # Hardware
    cpu_cores = Column(Integer, nullable=False, default=2)
    ram_mb = Column(Integer, nullable=False, default=2048)
    firmware_type = Column(String, nullable=False, default="bios")

    # Storage
    disk_path = Column(String, nullable=True)
    disk_size_gb = Column(Integer, nullable=True)
    disk_format = Column(String, nullable=False, default="qcow2")
    disk_cache = Column(String, nullable=False, default="writeback")
    disk_discard = Column(Boolean, nullable=False, default=False)
    physical_disk_device = Column(String, nullable=True)
    template_id = Column(Integer, nullable=True, index=True)

    # Boot
    boot_order = Column(String, nullable=False, default="cd,hd")
    iso_path = Column(String, nullable=True)
    boot_from_disk = Column(Boolean, nullable=False, default=False)

    # Network
    network_mode = Column(String, nullable=False, default="nat")
    network_bridge = Column(String, nullable=True)

    # Display (NULL 포트는 여러 VM이 가질 수 있고, 값이 있는 포트는 유일합니다)
    display_type = Column(String, nullable=False, default="spice")
    display_port = Column(Integer, unique=True, nullable=True)
    display_password = Column(String, nullable=True)

    # Runtime
    status = Column(String, nullable=False, default=VMStatus.STOPPED.value)
    pid = Column(Integer, nullable=True)
    last_started_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
