from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, Text, func
from ..database import Base


class VMTemplate(Base):
    """
    새 VM을 만들 때 기본값으로 쓰이는 하드웨어 구성과 (선택적으로) 기준 디스크 이미지입니다.

    disk_path가 있으면 템플릿으로 만든 VM은 이 이미지를 backing file로 하는 qcow2 오버레이를 갖습니다.
    그런 VM이 남아 있는 동안에는 템플릿을 삭제할 수 없습니다.
    """
    __tablename__ = "vm_templates"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")

    cpu_cores = Column(Integer, nullable=False, default=2)
    ram_mb = Column(Integer, nullable=False, default=2048)
    firmware_type = Column(String, nullable=False, default="bios")
    disk_size_gb = Column(Integer, nullable=True)
    disk_format = Column(String, nullable=False, default="qcow2")
    disk_cache = Column(String, nullable=False, default="writeback")
    disk_discard = Column(Boolean, nullable=False, default=False)
    boot_order = Column(String, nullable=False, default="cd,hd")
    network_mode = Column(String, nullable=False, default="nat")
    network_bridge = Column(String, nullable=True)
    display_type = Column(String, nullable=False, default="spice")

    disk_path = Column(String, nullable=True)
    disk_size_actual = Column(BigInteger, nullable=True)
    use_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, server_default=func.now())
