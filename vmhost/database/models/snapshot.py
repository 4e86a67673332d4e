from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text, UniqueConstraint, func
from ..database import Base


class VMSnapshot(Base):
    """
    VM 디스크 이미지(qcow2) 안에 저장된 내부 스냅샷의 기록입니다.

    스냅샷 데이터 자체는 디스크 이미지 안에 있으므로, VM과 디스크가 삭제되면 기록도 함께 삭제됩니다.
    name은 qemu-img 스냅샷 태그로 그대로 쓰이며 VM 안에서 유일합니다.
    """
    __tablename__ = "vm_snapshots"
    __table_args__ = (
        UniqueConstraint("vm_id", "name", name="uq_vm_snapshots_vm_id_name"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, index=True)
    vm_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    size_bytes = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
