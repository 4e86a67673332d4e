from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, Text, func
from ..database import Base
from .enums import BackupStatus


class BackupJob(Base):
    """
    VM 디스크 이미지 하나에 대한 비동기 백업/복원 작업 기록입니다.

    vm_id는 외래 키가 아닙니다. VM이 삭제된 뒤에도 감사 목적으로 vm_name과 함께 남습니다.
    vm_uuid는 작업을 만든 VM을 가리키며, 복원 대상 VM이 같은 VM인지 확인하는 데 쓰입니다.
    backup_size는 status가 'completed'일 때만 의미가 있습니다.
    """
    __tablename__ = "vm_backups"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    vm_id = Column(Integer, nullable=False, index=True)
    vm_uuid = Column(String, nullable=False)
    vm_name = Column(String, nullable=False)
    backup_name = Column(String, nullable=False)
    backup_path = Column(String, nullable=False)
    backup_size = Column(BigInteger, nullable=True)
    compressed = Column(Boolean, nullable=False, default=True)
    compression_type = Column(String, nullable=False, default="gzip")
    status = Column(String, nullable=False, default=BackupStatus.CREATING.value, index=True)
    notes = Column(Text, nullable=False, default="")
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)
