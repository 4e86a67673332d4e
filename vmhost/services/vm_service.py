import logging
import re
from typing import Any, Dict, List, Optional

from vmhost.config import Settings, get_settings
from vmhost.database import models
from vmhost.database.models import DiskCacheMode, DiskFormat, DisplayType, FirmwareType, NetworkMode, VMStatus
from vmhost.repositories.interfaces import IBackupRepository, ISnapshotRepository, IVMRepository
from vmhost.services.disk_service import DiskService
from vmhost.services.display_service import AccessDescriptor, DisplayService
from vmhost.services.exceptions import (
    InvalidConfigurationError,
    JobInProgressError,
    VmAlreadyExistsError,
    VmAlreadyRunningError,
    VmNotFoundError,
)
from vmhost.services.locks import VMLockRegistry, allocation_lock, vm_locks
from vmhost.services.process_supervisor import ProcessSupervisor
from vmhost.services.resource_allocator import ResourceAllocator

logger = logging.getLogger(__name__)

# 이름은 디스크/로그/pid 파일 경로에 그대로 쓰입니다.
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")

UPDATABLE_FIELDS = {
    "name", "description", "cpu_cores", "ram_mb", "firmware_type",
    "disk_cache", "disk_discard",
    "boot_order", "iso_path", "boot_from_disk", "physical_disk_device",
    "network_mode", "network_bridge", "display_type",
}
ACTIVE_STATUSES = (VMStatus.RUNNING.value, VMStatus.PAUSED.value)


def vm_to_dict(vm: models.VirtualMachine) -> Dict[str, Any]:
    """API 응답용 VM 표현. 연결 비밀 값은 포함하지 않습니다."""
    return {
        "id": vm.id,
        "name": vm.name,
        "description": vm.description,
        "uuid": vm.uuid,
        "mac_address": vm.mac_address,
        "cpu_cores": vm.cpu_cores,
        "ram_mb": vm.ram_mb,
        "firmware_type": vm.firmware_type,
        "disk_path": vm.disk_path,
        "disk_size_gb": vm.disk_size_gb,
        "disk_format": vm.disk_format,
        "disk_cache": vm.disk_cache,
        "disk_discard": vm.disk_discard,
        "physical_disk_device": vm.physical_disk_device,
        "template_id": vm.template_id,
        "boot_order": vm.boot_order,
        "iso_path": vm.iso_path,
        "boot_from_disk": vm.boot_from_disk,
        "network_mode": vm.network_mode,
        "network_bridge": vm.network_bridge,
        "display_type": vm.display_type,
        "display_port": vm.display_port,
        "status": vm.status,
        "pid": vm.pid,
        "last_started_at": vm.last_started_at.isoformat() if vm.last_started_at else None,
        "created_at": vm.created_at.isoformat() if vm.created_at else None,
    }


class VMService:
    """
    VM 수명 주기 오케스트레이터.

    생성 시에는 ResourceAllocator와 DiskService를, 시작/중지 시에는 ProcessSupervisor를
    조율하며, 모든 상태 전이는 저장소를 통해 기록합니다. 같은 VM에 대한 작업은
    VM별 잠금으로 직렬화되고, 포트 할당은 호스트 전역 잠금으로 직렬화됩니다.
    """

    def __init__(
        self,
        vm_repo: IVMRepository,
        backup_repo: IBackupRepository,
        snapshot_repo: ISnapshotRepository,
        disk_service: DiskService,
        supervisor: ProcessSupervisor,
        allocator: ResourceAllocator,
        display_service: DisplayService,
        settings: Optional[Settings] = None,
        locks: VMLockRegistry = vm_locks,
    ):
        self.vm_repo = vm_repo
        self.backup_repo = backup_repo
        self.snapshot_repo = snapshot_repo
        self.disk_service = disk_service
        self.supervisor = supervisor
        self.allocator = allocator
        self.display_service = display_service
        self.settings = settings or get_settings()
        self.locks = locks

    def create_vm(
        self,
        name: str,
        cpu_cores: int = 2,
        ram_mb: int = 2048,
        disk_size_gb: Optional[int] = None,
        disk_format: str = DiskFormat.QCOW2.value,
        description: str = "",
        firmware_type: str = FirmwareType.BIOS.value,
        disk_cache: str = DiskCacheMode.WRITEBACK.value,
        disk_discard: bool = False,
        boot_order: str = "cd,hd",
        iso_path: Optional[str] = None,
        boot_from_disk: bool = False,
        physical_disk_device: Optional[str] = None,
        network_mode: str = NetworkMode.NAT.value,
        network_bridge: Optional[str] = None,
        display_type: str = DisplayType.SPICE.value,
        mac_address: Optional[str] = None,
    ) -> int:
        """
        새로운 VM 레코드를 만들고 필요한 호스트 자원을 할당합니다.

        식별자(UUID/MAC)와 디스플레이 포트를 할당하고, disk_size_gb가 주어지면
        디스크 이미지를 만든 뒤 레코드를 저장합니다. 포트 조회부터 레코드 커밋까지는
        호스트 전역 잠금 안에서 일어나므로 동시에 생성해도 포트가 겹치지 않습니다.
        레코드 저장에 실패하면 이번에 만든 디스크 이미지를 정리합니다.

        Args:
            name: VM 이름. 호스트 전체에서 유일해야 합니다.
            cpu_cores: CPU 코어 수.
            ram_mb: RAM 크기 (MB).
            disk_size_gb: 새 디스크 이미지 크기 (GB). 생략하면 디스크를 만들지 않습니다.
            disk_format: 디스크 이미지 포맷.
            firmware_type: bios 또는 uefi.
            disk_cache: 디스크 캐시 모드 (writeback, writethrough, none, directsync, unsafe).
            disk_discard: 게스트의 TRIM을 이미지까지 전달할지 여부.
            network_mode: nat, bridge, user, none 중 하나.
            network_bridge: bridge 모드일 때 연결할 브리지 이름.
            display_type: spice, vnc, none 중 하나. none이면 포트를 할당하지 않습니다.
            mac_address: 직접 지정할 MAC 주소. 생략하면 새로 발급합니다.

        Returns:
            생성된 VM의 ID.

        Raises:
            InvalidConfigurationError: 설정 값이 잘못되었거나 지정한 MAC 주소를 이미 다른 VM이 쓸 때.
            VmAlreadyExistsError: 같은 이름의 VM이 이미 있을 때.
            ResourceExhaustedError: 남은 디스플레이 포트가 없을 때.
            ProvisioningFailedError: 디스크 이미지 생성이 실패했을 때.
        """
        config = {
            "name": name,
            "description": description or "",
            "cpu_cores": cpu_cores,
            "ram_mb": ram_mb,
            "firmware_type": firmware_type,
            "disk_size_gb": disk_size_gb,
            "disk_format": disk_format,
            "disk_cache": disk_cache,
            "disk_discard": disk_discard,
            "boot_order": boot_order,
            "iso_path": iso_path or None,
            "boot_from_disk": bool(boot_from_disk),
            "physical_disk_device": physical_disk_device or None,
            "network_mode": network_mode,
            "network_bridge": network_bridge or None,
            "display_type": display_type,
        }
        return self._provision(config, mac_address)

    def create_vm_from_template(
        self,
        template: models.VMTemplate,
        name: str,
        description: str = "",
        cpu_cores: Optional[int] = None,
        ram_mb: Optional[int] = None,
        disk_size_gb: Optional[int] = None,
        iso_path: Optional[str] = None,
    ) -> int:
        """
        템플릿의 구성을 기본값으로 새 VM을 만듭니다.

        템플릿에 기준 디스크가 있으면 그 이미지를 backing file로 하는 qcow2 오버레이를 만들고,
        없으면 템플릿의 disk_size_gb(또는 재정의한 크기)로 빈 디스크를 만듭니다.
        """
        config = {
            "name": name,
            "description": description or template.description or "",
            "cpu_cores": cpu_cores or template.cpu_cores,
            "ram_mb": ram_mb or template.ram_mb,
            "firmware_type": template.firmware_type,
            "disk_size_gb": disk_size_gb or template.disk_size_gb,
            "disk_format": DiskFormat.QCOW2.value if template.disk_path else template.disk_format,
            "disk_cache": template.disk_cache,
            "disk_discard": template.disk_discard,
            "boot_order": template.boot_order,
            "iso_path": iso_path or None,
            "boot_from_disk": False,
            "physical_disk_device": None,
            "network_mode": template.network_mode,
            "network_bridge": template.network_bridge,
            "display_type": template.display_type,
            "template_id": template.id,
        }
        return self._provision(
            config, None, backing_image=template.disk_path, backing_format=template.disk_format
        )

    def _provision(
        self,
        config: Dict[str, Any],
        mac_address: Optional[str],
        backing_image: Optional[str] = None,
        backing_format: str = DiskFormat.QCOW2.value,
    ) -> int:
        name = config["name"]
        disk_size_gb = config["disk_size_gb"]
        display_type = config["display_type"]
        self._validate_config(config)
        if disk_size_gb is not None and (
            isinstance(disk_size_gb, bool) or not isinstance(disk_size_gb, int) or disk_size_gb <= 0
        ):
            raise InvalidConfigurationError(f"disk_size_gb must be a positive integer, got {disk_size_gb!r}.")
        if mac_address is not None:
            if not isinstance(mac_address, str) or not MAC_ADDRESS_RE.match(mac_address.lower()):
                raise InvalidConfigurationError(f"Invalid MAC address '{mac_address}'.")
            mac_address = mac_address.lower()

        with allocation_lock:
            if self.vm_repo.find_by_name(name):
                raise VmAlreadyExistsError(f"VM name '{name}' already exists.")
            if mac_address is not None and self.vm_repo.find_by_mac_address(mac_address):
                raise InvalidConfigurationError(f"MAC address '{mac_address}' is already assigned to another VM.")

            vm_uuid, generated_mac = self.allocator.allocate_identity()
            display_port = None
            if display_type != DisplayType.NONE.value:
                display_port = self.allocator.allocate_port(self.settings.display_port_min, self.settings.display_port_max)

            disk_path = None
            if disk_size_gb or backing_image:
                disk_path = self.disk_service.disk_path_for(name, config["disk_format"])
                self.disk_service.create_disk_image(
                    disk_path, disk_size_gb, config["disk_format"],
                    backing_file=backing_image, backing_format=backing_format,
                )

            try:
                vm = self.vm_repo.create(models.VirtualMachine(
                    uuid=vm_uuid,
                    mac_address=mac_address or generated_mac,
                    disk_path=disk_path,
                    display_port=display_port,
                    display_password=self.allocator.generate_secret(),
                    status=VMStatus.STOPPED.value,
                    pid=None,
                    **config,
                ))
            except Exception as e:
                logger.warning("VM '%s' creation failed: %s. Starting rollback...", name, e)
                self._rollback_vm_creation(disk_path)
                raise

        logger.info("VM '%s' created (id=%s, uuid=%s, port=%s)", vm.name, vm.id, vm.uuid, vm.display_port)
        return vm.id

    def _rollback_vm_creation(self, disk_path: Optional[str]):
        if not disk_path:
            return
        try:
            self.disk_service.delete_disk_image(disk_path)
        except OSError as e:
            logger.warning("Rollback Warning: Failed to clean up disk image %s: %s", disk_path, e)

    def update_vm(self, vm_id: int, **changes) -> Dict[str, Any]:
        """
        정지된 VM의 설정 일부를 변경합니다.

        uuid, mac_address, 디스크 경로/크기/포맷처럼 생성 시 고정되는 값은 바꿀 수 없습니다.
        디스플레이를 none에서 다른 방식으로 바꾸면 포트를 새로 할당하고, none으로 바꾸면 포트를 반납합니다.

        Raises:
            VmNotFoundError: VM을 찾을 수 없을 때.
            VmAlreadyRunningError: VM이 실행 중일 때.
            InvalidConfigurationError: 변경할 수 없는 필드이거나 값이 잘못되었을 때.
            VmAlreadyExistsError: 바꾸려는 이름을 다른 VM이 쓰고 있을 때.
            ResourceExhaustedError: 디스플레이 포트를 새로 할당할 수 없을 때.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidConfigurationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}.")

        with self.locks.lock_for(vm_id):
            vm = self._get_vm(vm_id)
            if self.supervisor.reconcile(vm) in ACTIVE_STATUSES:
                raise VmAlreadyRunningError(f"Cannot update VM '{vm.name}' while it is running.")
            if not changes:
                return vm_to_dict(vm)

            merged = {field: getattr(vm, field) for field in UPDATABLE_FIELDS}
            merged.update(changes)
            merged["disk_format"] = vm.disk_format
            self._validate_config(merged)
            del merged["disk_format"]

            if merged["name"] != vm.name:
                other = self.vm_repo.find_by_name(merged["name"])
                if other is not None and other.id != vm.id:
                    raise VmAlreadyExistsError(f"VM name '{merged['name']}' already exists.")

            with allocation_lock:
                if merged["display_type"] == DisplayType.NONE.value:
                    vm.display_port = None
                elif vm.display_port is None:
                    vm.display_port = self.allocator.allocate_port(
                        self.settings.display_port_min, self.settings.display_port_max
                    )
                for field, value in merged.items():
                    setattr(vm, field, value)
                vm = self.vm_repo.save(vm)

        logger.info("VM '%s' updated: %s", vm.name, ", ".join(sorted(changes)))
        return vm_to_dict(vm)

    def delete_vm(self, vm_id: int) -> bool:
        """
        VM을 강제로 중지한 뒤 디스크 이미지와 레코드를 삭제합니다.

        디스크 정리에 실패하더라도 레코드 삭제는 반드시 시도합니다. 스냅샷은 디스크 이미지 안에
        있으므로 기록도 함께 지우고, 백업 작업 레코드는 감사 목적으로 남겨 둡니다.

        Raises:
            VmNotFoundError: VM을 찾을 수 없을 때.
            JobInProgressError: 이 VM의 백업/복원 작업이 진행 중일 때.
        """
        with self.locks.lock_for(vm_id):
            vm = self._get_vm(vm_id)
            active = self.backup_repo.find_active_by_vm_id(vm.id)
            if active is not None:
                raise JobInProgressError(f"VM '{vm.name}' has backup {active.id} in state '{active.status}'.")

            vm_name = vm.name
            try:
                if self.supervisor.reconcile(vm) == VMStatus.RUNNING.value:
                    vm = self.supervisor.stop(vm, force=True)
                for path in (vm.disk_path, self.supervisor.firmware_vars_path_for(vm_name)):
                    if not path:
                        continue
                    try:
                        self.disk_service.delete_disk_image(path)
                    except OSError as e:
                        logger.warning("Failed to delete %s for VM '%s': %s. Proceeding cleanup.", path, vm_name, e)
            finally:
                self.snapshot_repo.delete_by_vm_id(vm_id)
                self.vm_repo.delete(vm)
                logger.info("VM '%s' (id=%s) deleted", vm_name, vm_id)
        self.locks.discard(vm_id)
        return True

    def start_vm(self, vm_id: int) -> Dict[str, Any]:
        """
        VM을 시작합니다. 저장된 상태가 실제와 어긋나 있으면 먼저 바로잡습니다.

        Raises:
            VmNotFoundError, VmAlreadyRunningError, JobInProgressError,
            InvalidConfigurationError, LaunchFailedError
        """
        with self.locks.lock_for(vm_id):
            vm = self._get_vm(vm_id)
            self.supervisor.reconcile(vm)
            vm = self.supervisor.start(vm)
            return {"status": vm.status, "pid": vm.pid}

    def stop_vm(self, vm_id: int, force: bool = False) -> Dict[str, Any]:
        """VM을 중지합니다. 실행 중이 아니면 VmNotRunningError를 던지고 레코드는 그대로 둡니다."""
        with self.locks.lock_for(vm_id):
            vm = self._get_vm(vm_id)
            vm = self.supervisor.stop(vm, force=force)
            return {"status": vm.status, "pid": vm.pid}

    def restart_vm(self, vm_id: int) -> Dict[str, Any]:
        with self.locks.lock_for(vm_id):
            vm = self._get_vm(vm_id)
            vm = self.supervisor.restart(vm)
            return {"status": vm.status, "pid": vm.pid}

    def get_status(self, vm_id: int) -> Dict[str, Any]:
        """
        실제 프로세스 상태와 맞춘(reconcile) VM 상태를 반환합니다.

        하이퍼바이저가 예기치 않게 죽었다면 이 호출에서 'stopped'로 바로잡힙니다.
        """
        with self.locks.lock_for(vm_id):
            vm = self._get_vm(vm_id)
            status = self.supervisor.reconcile(vm)
            return {"status": status, "pid": vm.pid}

    def peek_status(self, vm_id: int) -> Dict[str, Any]:
        """저장된 상태를 그대로 반환합니다. 저장소에 쓰지 않습니다."""
        vm = self._get_vm(vm_id)
        return {"status": self.supervisor.status(vm), "pid": vm.pid}

    def get_vm(self, vm_id: int) -> Dict[str, Any]:
        return vm_to_dict(self._get_vm(vm_id))

    def list_vms(self) -> List[Dict[str, Any]]:
        """
        모든 VM 목록을 실제 프로세스 상태와 맞춰서 반환합니다.

        Returns:
            VM 정보 딕셔너리의 리스트 (이름순).
        """
        vms = []
        for vm in self.vm_repo.list_all():
            with self.locks.lock_for(vm.id):
                self.supervisor.reconcile(vm)
                vms.append(vm_to_dict(vm))
        return vms

    def get_logs(self, vm_id: int, lines: int = 100) -> str:
        """VM 하이퍼바이저 출력 로그의 마지막 lines 줄을 반환합니다."""
        vm = self._get_vm(vm_id)
        return self.supervisor.tail_log(self.supervisor.log_path_for(vm.name), int(lines))

    def generate_spice_file(self, vm_id: int) -> AccessDescriptor:
        vm = self._get_vm(vm_id)
        return self.display_service.generate_access_descriptor(vm)

    def _get_vm(self, vm_id: int) -> models.VirtualMachine:
        vm = self.vm_repo.find_by_id(vm_id)
        if not vm:
            raise VmNotFoundError(f"VM with id '{vm_id}' not found.")
        return vm

    @staticmethod
    def _validate_config(config: Dict[str, Any]):
        name = config.get("name")
        if not isinstance(name, str) or not VM_NAME_RE.match(name):
            raise InvalidConfigurationError(
                f"Invalid VM name {name!r}: use letters, digits, '.', '_' or '-' (max 63 characters)."
            )
        for field in ("cpu_cores", "ram_mb"):
            value = config.get(field)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidConfigurationError(f"{field} must be a positive integer, got {value!r}.")
        if config.get("firmware_type") not in {f.value for f in FirmwareType}:
            raise InvalidConfigurationError(f"Unsupported firmware type '{config.get('firmware_type')}'.")
        if config.get("disk_format") not in {f.value for f in DiskFormat}:
            raise InvalidConfigurationError(f"Unsupported disk format '{config.get('disk_format')}'.")
        if config.get("disk_cache") not in {c.value for c in DiskCacheMode}:
            raise InvalidConfigurationError(f"Unsupported disk cache mode '{config.get('disk_cache')}'.")
        if not isinstance(config.get("disk_discard"), bool):
            raise InvalidConfigurationError("disk_discard must be true or false.")
        if config.get("network_mode") not in {m.value for m in NetworkMode}:
            raise InvalidConfigurationError(f"Unsupported network mode '{config.get('network_mode')}'.")
        if config["network_mode"] == NetworkMode.BRIDGE.value and not config.get("network_bridge"):
            raise InvalidConfigurationError("Bridge networking requires a bridge name.")
        if config.get("display_type") not in {d.value for d in DisplayType}:
            raise InvalidConfigurationError(f"Unsupported display type '{config.get('display_type')}'.")
        if not config.get("boot_order"):
            raise InvalidConfigurationError("boot_order must not be empty.")
