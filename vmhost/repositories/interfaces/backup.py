from abc import ABC, abstractmethod
from typing import List, Optional
from vmhost.database import models

class IBackupRepository(ABC):
    @abstractmethod
    def create(self, backup_model: models.BackupJob) -> models.BackupJob:
        """새로운 백업 작업 레코드를 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, backup_id: int) -> Optional[models.BackupJob]:
        """고유 ID로 특정 백업 작업을 조회합니다. 항상 저장소의 최신 값을 반환합니다."""
        pass

    @abstractmethod
    def list_by_vm_id(self, vm_id: int) -> List[models.BackupJob]:
        """특정 VM의 백업 작업 목록을 최신순으로 조회합니다."""
        pass

    @abstractmethod
    def list_all(self) -> List[models.BackupJob]:
        """모든 백업 작업 목록을 최신순으로 조회합니다."""
        pass

    @abstractmethod
    def find_active_by_vm_id(self, vm_id: int) -> Optional[models.BackupJob]:
        """
        특정 VM에 대해 진행 중('creating' 또는 'restoring')인 작업을 조회합니다.

        Returns:
            진행 중인 작업이 있으면 그 작업, 없으면 None.
        """
        pass

    @abstractmethod
    def list_in_flight(self) -> List[models.BackupJob]:
        """모든 VM에 걸쳐 진행 중('creating' 또는 'restoring')인 작업 목록을 조회합니다."""
        pass

    @abstractmethod
    def save(self, backup: models.BackupJob) -> models.BackupJob:
        """변경된 백업 작업 레코드를 커밋하고 최신 상태로 갱신해 반환합니다."""
        pass

    @abstractmethod
    def delete(self, backup: models.BackupJob) -> bool:
        """특정 백업 작업 레코드를 삭제합니다."""
        pass
