from typing import List, Optional
from sqlalchemy.orm import Session
from vmhost.database import models
from vmhost.repositories.interfaces import ISnapshotRepository

class SqlalchemySnapshotRepository(ISnapshotRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, snapshot_model: models.VMSnapshot) -> models.VMSnapshot:
        self.db.add(snapshot_model)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(snapshot_model)
        return snapshot_model

    def find_by_id(self, snapshot_id: int) -> Optional[models.VMSnapshot]:
        return self.db.query(models.VMSnapshot).filter(models.VMSnapshot.id == snapshot_id).first()

    def find_by_vm_id_and_name(self, vm_id: int, name: str) -> Optional[models.VMSnapshot]:
        return self.db.query(models.VMSnapshot).filter(
            models.VMSnapshot.vm_id == vm_id,
            models.VMSnapshot.name == name
        ).first()

    def list_by_vm_id(self, vm_id: int) -> List[models.VMSnapshot]:
        return self.db.query(models.VMSnapshot).filter(
            models.VMSnapshot.vm_id == vm_id
        ).order_by(models.VMSnapshot.created_at.desc(), models.VMSnapshot.id.desc()).all()

    def delete(self, snapshot: models.VMSnapshot) -> bool:
        if snapshot:
            self.db.delete(snapshot)
            self.db.commit()
            return True
        return False

    def delete_by_vm_id(self, vm_id: int) -> int:
        count = self.db.query(models.VMSnapshot).filter(models.VMSnapshot.vm_id == vm_id).delete()
        self.db.commit()
        return count
