from abc import ABC, abstractmethod
from typing import List, Optional
from vmhost.database import models

class ISnapshotRepository(ABC):
    @abstractmethod
    def create(self, snapshot_model: models.VMSnapshot) -> models.VMSnapshot:
        """새로운 스냅샷 레코드를 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, snapshot_id: int) -> Optional[models.VMSnapshot]:
        pass

    @abstractmethod
    def find_by_vm_id_and_name(self, vm_id: int, name: str) -> Optional[models.VMSnapshot]:
        """VM 안에서 이름으로 스냅샷을 조회합니다."""
        pass

    @abstractmethod
    def list_by_vm_id(self, vm_id: int) -> List[models.VMSnapshot]:
        """특정 VM의 스냅샷 목록을 최신순으로 조회합니다."""
        pass

    @abstractmethod
    def delete(self, snapshot: models.VMSnapshot) -> bool:
        pass

    @abstractmethod
    def delete_by_vm_id(self, vm_id: int) -> int:
        """
        특정 VM의 스냅샷 레코드를 모두 삭제합니다.

        Returns:
            삭제된 레코드 수.
        """
        pass
