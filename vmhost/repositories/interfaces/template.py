from abc import ABC, abstractmethod
from typing import List, Optional
from vmhost.database import models

class ITemplateRepository(ABC):
    @abstractmethod
    def create(self, template_model: models.VMTemplate) -> models.VMTemplate:
        """새로운 템플릿 레코드를 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, template_id: int) -> Optional[models.VMTemplate]:
        pass

    @abstractmethod
    def find_by_name(self, name: str) -> Optional[models.VMTemplate]:
        pass

    @abstractmethod
    def list_all(self) -> List[models.VMTemplate]:
        """모든 템플릿 목록을 이름순으로 조회합니다."""
        pass

    @abstractmethod
    def save(self, template: models.VMTemplate) -> models.VMTemplate:
        pass

    @abstractmethod
    def delete(self, template: models.VMTemplate) -> bool:
        pass
