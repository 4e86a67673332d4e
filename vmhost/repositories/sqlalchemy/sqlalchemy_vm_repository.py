from typing import List, Optional
from sqlalchemy.orm import Session
from vmhost.database import models
from vmhost.repositories.interfaces import IVMRepository

class SqlalchemyVMRepository(IVMRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, vm_model: models.VirtualMachine) -> models.VirtualMachine:
        self.db.add(vm_model)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(vm_model)
        return vm_model

    def find_by_id(self, vm_id: int) -> Optional[models.VirtualMachine]:
        # populate_existing: 세션에 캐시된 객체 대신 DB의 현재 값을 다시 읽습니다.
        return self.db.query(models.VirtualMachine).populate_existing().filter(
            models.VirtualMachine.id == vm_id
        ).first()

    def find_by_name(self, name: str) -> Optional[models.VirtualMachine]:
        return self.db.query(models.VirtualMachine).populate_existing().filter(
            models.VirtualMachine.name == name
        ).first()

    def find_by_mac_address(self, mac_address: str) -> Optional[models.VirtualMachine]:
        return self.db.query(models.VirtualMachine).populate_existing().filter(
            models.VirtualMachine.mac_address == mac_address.lower()
        ).first()

    def list_by_template_id(self, template_id: int) -> List[models.VirtualMachine]:
        return self.db.query(models.VirtualMachine).populate_existing().filter(
            models.VirtualMachine.template_id == template_id
        ).order_by(models.VirtualMachine.name.asc()).all()

    def list_all(self) -> List[models.VirtualMachine]:
        return self.db.query(models.VirtualMachine).populate_existing().order_by(models.VirtualMachine.name.asc()).all()

    def list_used_display_ports(self) -> List[int]:
        rows = self.db.query(models.VirtualMachine.display_port).filter(
            models.VirtualMachine.display_port.isnot(None)
        ).all()
        return [row[0] for row in rows]

    def save(self, vm: models.VirtualMachine) -> models.VirtualMachine:
        self.db.add(vm)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(vm)
        return vm

    def delete(self, vm: models.VirtualMachine) -> bool:
        if vm:
            self.db.delete(vm)
            self.db.commit()
            return True
        return False
