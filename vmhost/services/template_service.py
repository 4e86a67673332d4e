import logging
import os
from typing import Any, Dict, List, Optional

from vmhost.config import Settings, get_settings
from vmhost.database import models
from vmhost.database.models import DiskFormat, VMStatus
from vmhost.repositories.interfaces import IBackupRepository, ITemplateRepository, IVMRepository
from vmhost.services.exceptions import (
    InvalidConfigurationError,
    InvalidStateError,
    JobInProgressError,
    ProvisioningFailedError,
    TemplateAlreadyExistsError,
    TemplateNotFoundError,
    VmNotFoundError,
)
from vmhost.services.locks import VMLockRegistry, vm_locks
from vmhost.services.process_supervisor import ProcessSupervisor
from vmhost.services.vm_service import VM_NAME_RE, VMService
from vmhost.utils.file_utils import remove_quietly, stream_copy

logger = logging.getLogger(__name__)

# VM에서 템플릿으로 그대로 옮겨지는 하드웨어 구성
TEMPLATE_FIELDS = (
    "cpu_cores", "ram_mb", "firmware_type", "disk_format", "disk_cache", "disk_discard",
    "boot_order", "network_mode", "network_bridge", "display_type",
)


def template_to_dict(template: models.VMTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "cpu_cores": template.cpu_cores,
        "ram_mb": template.ram_mb,
        "firmware_type": template.firmware_type,
        "disk_size_gb": template.disk_size_gb,
        "disk_format": template.disk_format,
        "disk_cache": template.disk_cache,
        "disk_discard": template.disk_discard,
        "boot_order": template.boot_order,
        "network_mode": template.network_mode,
        "network_bridge": template.network_bridge,
        "display_type": template.display_type,
        "disk_path": template.disk_path,
        "disk_size_actual": template.disk_size_actual,
        "use_count": template.use_count,
        "created_at": template.created_at.isoformat() if template.created_at else None,
    }


class TemplateService:
    """
    정지된 VM의 구성(과 선택적으로 디스크 이미지)을 템플릿으로 저장하고,
    템플릿으로부터 새 VM을 만듭니다.
    """

    def __init__(
        self,
        template_repo: ITemplateRepository,
        vm_repo: IVMRepository,
        backup_repo: IBackupRepository,
        supervisor: ProcessSupervisor,
        vm_service: VMService,
        settings: Optional[Settings] = None,
        locks: VMLockRegistry = vm_locks,
    ):
        self.template_repo = template_repo
        self.vm_repo = vm_repo
        self.backup_repo = backup_repo
        self.supervisor = supervisor
        self.vm_service = vm_service
        self.settings = settings or get_settings()
        self.locks = locks

    def save_vm_as_template(
        self,
        vm_id: int,
        name: Optional[str] = None,
        description: str = "",
        include_disk: bool = True,
    ) -> Dict[str, Any]:
        """
        VM 구성을 템플릿으로 저장합니다.

        include_disk가 참이고 VM에 디스크 이미지가 있으면 template_dir 아래로 복사해 기준 이미지로 씁니다.
        복사가 끝나기 전까지 VM 잠금을 쥐고 있으므로 그동안 시작/삭제/백업 요청은 기다립니다.

        Raises:
            VmNotFoundError: VM을 찾을 수 없을 때.
            InvalidConfigurationError: 템플릿 이름이 잘못되었을 때.
            TemplateAlreadyExistsError: 같은 이름의 템플릿이 이미 있을 때.
            InvalidStateError: VM이 실행 중일 때.
            JobInProgressError: 이 VM의 백업/복원 작업이 진행 중일 때.
            ProvisioningFailedError: 디스크 이미지 복사가 실패했을 때.
        """
        with self.locks.lock_for(vm_id):
            vm = self.vm_repo.find_by_id(vm_id)
            if not vm:
                raise VmNotFoundError(f"VM with id '{vm_id}' not found.")
            name = name or f"{vm.name}_template"
            if not isinstance(name, str) or not VM_NAME_RE.match(name):
                raise InvalidConfigurationError(f"Invalid template name {name!r}.")
            if self.template_repo.find_by_name(name):
                raise TemplateAlreadyExistsError(f"Template name '{name}' already exists.")
            if self.supervisor.reconcile(vm) in (VMStatus.RUNNING.value, VMStatus.PAUSED.value):
                raise InvalidStateError(f"Stop VM '{vm.name}' before saving it as a template.")
            active = self.backup_repo.find_active_by_vm_id(vm.id)
            if active is not None:
                raise JobInProgressError(f"VM '{vm.name}' has backup {active.id} in state '{active.status}'.")

            template = models.VMTemplate(
                name=name,
                description=description or vm.description or "",
                disk_size_gb=vm.disk_size_gb,
                use_count=0,
                **{field: getattr(vm, field) for field in TEMPLATE_FIELDS},
            )
            disk_path = None
            if include_disk and vm.disk_path:
                disk_path = self._copy_disk(vm, name)
                template.disk_path = disk_path
                template.disk_size_actual = os.path.getsize(disk_path)

            try:
                template = self.template_repo.create(template)
            except Exception:
                remove_quietly(disk_path)
                raise

        logger.info("VM '%s' saved as template '%s' (id=%s, disk=%s)", vm.name, name, template.id, disk_path)
        return template_to_dict(template)

    def list_templates(self) -> List[Dict[str, Any]]:
        return [template_to_dict(t) for t in self.template_repo.list_all()]

    def get_template(self, template_id: int) -> Dict[str, Any]:
        return template_to_dict(self._get_template(template_id))

    def delete_template(self, template_id: int) -> bool:
        """
        템플릿과 그 기준 이미지를 삭제합니다.

        기준 이미지를 backing file로 쓰는 VM이 남아 있으면 거부합니다.
        디스크가 없는 템플릿은 구성만 복사되므로 언제든 지울 수 있습니다.
        """
        template = self._get_template(template_id)
        if template.disk_path:
            users = self.vm_repo.list_by_template_id(template.id)
            if users:
                names = ", ".join(vm.name for vm in users)
                raise InvalidStateError(f"Template '{template.name}' is still used by: {names}.")
            remove_quietly(template.disk_path)
        name = template.name
        self.template_repo.delete(template)
        logger.info("Template '%s' (id=%s) deleted", name, template_id)
        return True

    def create_vm_from_template(self, template_id: int, name: str, **overrides) -> int:
        """
        템플릿으로 새 VM을 만들고 템플릿의 사용 횟수를 올립니다.

        overrides로 description, cpu_cores, ram_mb, disk_size_gb, iso_path를 바꿀 수 있습니다.
        """
        template = self._get_template(template_id)
        vm_id = self.vm_service.create_vm_from_template(template, name, **overrides)
        template.use_count = (template.use_count or 0) + 1
        self.template_repo.save(template)
        logger.info("VM '%s' created from template '%s'", name, template.name)
        return vm_id

    def _get_template(self, template_id: int) -> models.VMTemplate:
        template = self.template_repo.find_by_id(template_id)
        if not template:
            raise TemplateNotFoundError(f"Template with id '{template_id}' not found.")
        return template

    def _copy_disk(self, vm: models.VirtualMachine, template_name: str) -> str:
        extension = DiskFormat(vm.disk_format).extension
        disk_path = os.path.join(self.settings.template_dir, f"{template_name}{extension}")
        if os.path.exists(disk_path):
            raise ProvisioningFailedError(f"Template image '{disk_path}' already exists.")
        os.makedirs(self.settings.template_dir, exist_ok=True)
        try:
            stream_copy(vm.disk_path, disk_path)
        except OSError as e:
            raise ProvisioningFailedError(f"Failed to copy disk of VM '{vm.name}': {e}")
        return disk_path
