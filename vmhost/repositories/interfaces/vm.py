from abc import ABC, abstractmethod
from typing import List, Optional
from vmhost.database import models

class IVMRepository(ABC):
    @abstractmethod
    def create(self, vm_model: models.VirtualMachine) -> models.VirtualMachine:
        """새로운 VM 레코드를 데이터베이스에 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, vm_id: int) -> Optional[models.VirtualMachine]:
        """고유 ID로 특정 VM을 조회합니다. 항상 저장소의 최신 값을 반환합니다."""
        pass

    @abstractmethod
    def find_by_name(self, name: str) -> Optional[models.VirtualMachine]:
        """이름으로 특정 VM을 조회합니다."""
        pass

    @abstractmethod
    def find_by_mac_address(self, mac_address: str) -> Optional[models.VirtualMachine]:
        """MAC 주소로 특정 VM을 조회합니다."""
        pass

    @abstractmethod
    def list_by_template_id(self, template_id: int) -> List[models.VirtualMachine]:
        """특정 템플릿으로 만들어진 VM 목록을 조회합니다."""
        pass

    @abstractmethod
    def list_all(self) -> List[models.VirtualMachine]:
        """모든 VM의 목록을 이름순으로 조회합니다."""
        pass

    @abstractmethod
    def list_used_display_ports(self) -> List[int]:
        """디스플레이 포트가 할당된 모든 VM의 포트 목록을 조회합니다."""
        pass

    @abstractmethod
    def save(self, vm: models.VirtualMachine) -> models.VirtualMachine:
        """변경된 VM 레코드를 커밋하고 최신 상태로 갱신해 반환합니다."""
        pass

    @abstractmethod
    def delete(self, vm: models.VirtualMachine) -> bool:
        """특정 VM 레코드를 데이터베이스에서 삭제합니다."""
        pass
