from typing import List, Optional
from sqlalchemy.orm import Session
from vmhost.database import models
from vmhost.repositories.interfaces import ITemplateRepository

class SqlalchemyTemplateRepository(ITemplateRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, template_model: models.VMTemplate) -> models.VMTemplate:
        self.db.add(template_model)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(template_model)
        return template_model

    def find_by_id(self, template_id: int) -> Optional[models.VMTemplate]:
        return self.db.query(models.VMTemplate).populate_existing().filter(
            models.VMTemplate.id == template_id
        ).first()

    def find_by_name(self, name: str) -> Optional[models.VMTemplate]:
        return self.db.query(models.VMTemplate).filter(models.VMTemplate.name == name).first()

    def list_all(self) -> List[models.VMTemplate]:
        return self.db.query(models.VMTemplate).order_by(models.VMTemplate.name.asc()).all()

    def save(self, template: models.VMTemplate) -> models.VMTemplate:
        self.db.add(template)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(template)
        return template

    def delete(self, template: models.VMTemplate) -> bool:
        if template:
            self.db.delete(template)
            self.db.commit()
            return True
        return False
