from typing import List, Optional
from sqlalchemy.orm import Session
from vmhost.database import models
from vmhost.repositories.interfaces import IBackupRepository

class SqlalchemyBackupRepository(IBackupRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, backup_model: models.BackupJob) -> models.BackupJob:
        self.db.add(backup_model)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(backup_model)
        return backup_model

    def find_by_id(self, backup_id: int) -> Optional[models.BackupJob]:
        return self.db.query(models.BackupJob).populate_existing().filter(
            models.BackupJob.id == backup_id
        ).first()

    def list_by_vm_id(self, vm_id: int) -> List[models.BackupJob]:
        return self.db.query(models.BackupJob).populate_existing().filter(
            models.BackupJob.vm_id == vm_id
        ).order_by(models.BackupJob.created_at.desc(), models.BackupJob.id.desc()).all()

    def list_all(self) -> List[models.BackupJob]:
        return self.db.query(models.BackupJob).populate_existing().order_by(
            models.BackupJob.created_at.desc(), models.BackupJob.id.desc()
        ).all()

    def find_active_by_vm_id(self, vm_id: int) -> Optional[models.BackupJob]:
        return self.db.query(models.BackupJob).populate_existing().filter(
            models.BackupJob.vm_id == vm_id,
            models.BackupJob.status.in_(models.IN_FLIGHT_BACKUP_STATUSES)
        ).first()

    def list_in_flight(self) -> List[models.BackupJob]:
        return self.db.query(models.BackupJob).populate_existing().filter(
            models.BackupJob.status.in_(models.IN_FLIGHT_BACKUP_STATUSES)
        ).order_by(models.BackupJob.id.asc()).all()

    def save(self, backup: models.BackupJob) -> models.BackupJob:
        self.db.add(backup)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(backup)
        return backup

    def delete(self, backup: models.BackupJob) -> bool:
        if backup:
            self.db.delete(backup)
            self.db.commit()
            return True
        return False
