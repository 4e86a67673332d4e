import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from vmhost.database import models
from vmhost.database.models import DiskFormat, VMStatus
from vmhost.repositories.interfaces import IBackupRepository, ISnapshotRepository, IVMRepository
from vmhost.services.disk_service import DiskService
from vmhost.services.exceptions import (
    InvalidConfigurationError,
    InvalidStateError,
    JobInProgressError,
    SnapshotAlreadyExistsError,
    SnapshotNotFoundError,
    VmNotFoundError,
)
from vmhost.services.locks import VMLockRegistry, vm_locks
from vmhost.services.process_supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

# qemu-img 스냅샷 태그로 그대로 쓰입니다.
SNAPSHOT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")


def snapshot_to_dict(snapshot: models.VMSnapshot) -> Dict[str, Any]:
    return {
        "id": snapshot.id,
        "vm_id": snapshot.vm_id,
        "name": snapshot.name,
        "description": snapshot.description,
        "size_bytes": snapshot.size_bytes,
        "created_at": snapshot.created_at.isoformat() if snapshot.created_at else None,
    }


class SnapshotService:
    """
    정지된 VM의 qcow2 디스크 이미지에 내부 스냅샷을 만들고, 되돌리고, 지웁니다.

    qemu-img는 하이퍼바이저가 열고 있는 이미지를 다루지 못하므로 모든 작업은 VM이 멈춰 있을 때만
    허용됩니다. 백업/복원이 같은 이미지를 읽거나 쓰는 중에도 거부합니다.
    """

    def __init__(
        self,
        vm_repo: IVMRepository,
        backup_repo: IBackupRepository,
        snapshot_repo: ISnapshotRepository,
        disk_service: DiskService,
        supervisor: ProcessSupervisor,
        locks: VMLockRegistry = vm_locks,
    ):
        self.vm_repo = vm_repo
        self.backup_repo = backup_repo
        self.snapshot_repo = snapshot_repo
        self.disk_service = disk_service
        self.supervisor = supervisor
        self.locks = locks

    def list_snapshots(self, vm_id: int) -> List[Dict[str, Any]]:
        self._get_vm(vm_id)
        return [snapshot_to_dict(s) for s in self.snapshot_repo.list_by_vm_id(vm_id)]

    def create_snapshot(self, vm_id: int, name: Optional[str] = None, description: str = "") -> Dict[str, Any]:
        """
        VM 디스크 이미지에 내부 스냅샷을 만듭니다.

        Args:
            vm_id: 대상 VM의 ID.
            name: 스냅샷 이름. 생략하면 snapshot_<시각>으로 정합니다.
            description: 메모.

        Returns:
            생성된 스냅샷 정보.

        Raises:
            VmNotFoundError: VM을 찾을 수 없을 때.
            InvalidConfigurationError: 이름이 잘못되었을 때.
            InvalidStateError: VM이 실행 중이거나 qcow2 디스크가 없을 때.
            JobInProgressError: 이 VM의 백업/복원 작업이 진행 중일 때.
            SnapshotAlreadyExistsError: 같은 이름의 스냅샷이 이미 있을 때.
            ProvisioningFailedError: qemu-img가 실패했을 때.
        """
        name = name or f"snapshot_{datetime.now():%Y-%m-%d_%H-%M-%S}"
        if not isinstance(name, str) or not SNAPSHOT_NAME_RE.match(name):
            raise InvalidConfigurationError(f"Invalid snapshot name {name!r}.")

        with self.locks.lock_for(vm_id):
            vm = self._get_stopped_vm_with_image(vm_id)
            if self.snapshot_repo.find_by_vm_id_and_name(vm.id, name):
                raise SnapshotAlreadyExistsError(f"VM '{vm.name}' already has a snapshot named '{name}'.")

            self.disk_service.create_snapshot(vm.disk_path, name)
            snapshot = self.snapshot_repo.create(models.VMSnapshot(
                vm_id=vm.id,
                name=name,
                description=description or "",
                size_bytes=os.path.getsize(vm.disk_path),
            ))

        logger.info("Snapshot '%s' of VM '%s' recorded (id=%s)", name, vm.name, snapshot.id)
        return snapshot_to_dict(snapshot)

    def restore_snapshot(self, vm_id: int, snapshot_id: int) -> Dict[str, Any]:
        """VM 디스크를 스냅샷 시점으로 되돌립니다. 스냅샷 자체는 남습니다."""
        with self.locks.lock_for(vm_id):
            vm = self._get_stopped_vm_with_image(vm_id)
            snapshot = self._get_snapshot(vm, snapshot_id)
            self.disk_service.apply_snapshot(vm.disk_path, snapshot.name)

        logger.info("VM '%s' reverted to snapshot '%s'", vm.name, snapshot.name)
        return snapshot_to_dict(snapshot)

    def delete_snapshot(self, vm_id: int, snapshot_id: int) -> bool:
        """
        스냅샷을 이미지와 기록에서 모두 지웁니다. qemu-img가 실패하면 기록은 남겨 둡니다.
        """
        with self.locks.lock_for(vm_id):
            vm = self._get_stopped_vm_with_image(vm_id)
            snapshot = self._get_snapshot(vm, snapshot_id)
            snapshot_name = snapshot.name
            self.disk_service.delete_snapshot(vm.disk_path, snapshot_name)
            self.snapshot_repo.delete(snapshot)

        logger.info("Snapshot '%s' of VM '%s' deleted", snapshot_name, vm.name)
        return True

    def _get_vm(self, vm_id: int) -> models.VirtualMachine:
        vm = self.vm_repo.find_by_id(vm_id)
        if not vm:
            raise VmNotFoundError(f"VM with id '{vm_id}' not found.")
        return vm

    def _get_stopped_vm_with_image(self, vm_id: int) -> models.VirtualMachine:
        vm = self._get_vm(vm_id)
        if self.supervisor.reconcile(vm) in (VMStatus.RUNNING.value, VMStatus.PAUSED.value):
            raise InvalidStateError(f"Stop VM '{vm.name}' before working with its snapshots.")
        if not vm.disk_path or vm.disk_format != DiskFormat.QCOW2.value:
            raise InvalidStateError(f"VM '{vm.name}' has no qcow2 disk image; snapshots are unavailable.")
        active = self.backup_repo.find_active_by_vm_id(vm.id)
        if active is not None:
            raise JobInProgressError(f"VM '{vm.name}' has backup {active.id} in state '{active.status}'.")
        return vm

    def _get_snapshot(self, vm: models.VirtualMachine, snapshot_id: int) -> models.VMSnapshot:
        snapshot = self.snapshot_repo.find_by_id(snapshot_id)
        if snapshot is None or snapshot.vm_id != vm.id:
            raise SnapshotNotFoundError(f"Snapshot {snapshot_id} not found for VM '{vm.name}'.")
        return snapshot
