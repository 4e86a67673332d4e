import logging
import os
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional

from vmhost.config import Settings, get_settings
from vmhost.database import models
from vmhost.database.models import BackupStatus, DiskFormat, IN_FLIGHT_BACKUP_STATUSES, VMStatus
from vmhost.repositories.interfaces import IBackupRepository, IVMRepository
from vmhost.services.exceptions import (
    BackupNotFoundError,
    InvalidStateError,
    JobInProgressError,
    VmNotFoundError,
)
from vmhost.services.job_runner import BackupJobRunner
from vmhost.services.locks import VMLockRegistry, vm_locks
from vmhost.services.process_supervisor import ProcessSupervisor
from vmhost.utils.file_utils import remove_quietly, stream_copy

logger = logging.getLogger(__name__)

ERROR_NOTE_LIMIT = 500
INTERRUPTED_NOTE = "interrupted by orchestrator restart"


def backup_to_dict(job: models.BackupJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "vm_id": job.vm_id,
        "vm_uuid": job.vm_uuid,
        "vm_name": job.vm_name,
        "backup_name": job.backup_name,
        "backup_path": job.backup_path,
        "backup_size": job.backup_size if job.status == BackupStatus.COMPLETED.value else None,
        "compressed": job.compressed,
        "compression_type": job.compression_type,
        "status": job.status,
        "notes": job.notes,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


class BackupService:
    """
    VM 디스크 이미지의 백업/복원을 비동기 작업으로 실행합니다.

    요청 경로에서는 작업 레코드만 만들고 작업 ID를 워커 풀에 넘긴 뒤 즉시 반환합니다.
    실제 복사/압축은 워커에서 수행되며, 결과는 작업 레코드의 status로만 전달됩니다.
    """

    def __init__(
        self,
        vm_repo: IVMRepository,
        backup_repo: IBackupRepository,
        supervisor: ProcessSupervisor,
        job_runner: BackupJobRunner,
        settings: Optional[Settings] = None,
        locks: VMLockRegistry = vm_locks,
    ):
        self.vm_repo = vm_repo
        self.backup_repo = backup_repo
        self.supervisor = supervisor
        self.job_runner = job_runner
        self.settings = settings or get_settings()
        self.locks = locks

    # ------------------------------------------------------------------
    # 요청 경로
    # ------------------------------------------------------------------

    def create_backup(self, vm_id: int, notes: str = "") -> int:
        """
        백업 작업을 'creating' 상태로 만들고 워커에 넘깁니다.

        Args:
            vm_id: 백업할 VM의 ID.
            notes: 운영자가 남기는 메모.

        Returns:
            새 백업 작업의 ID. 복사가 끝나기 전에 반환됩니다.

        Raises:
            VmNotFoundError: VM을 찾을 수 없을 때.
            JobInProgressError: 이 VM에 진행 중인 백업/복원 작업이 있을 때.
            InvalidStateError: VM에 백업할 디스크 이미지가 없을 때.
        """
        with self.locks.lock_for(vm_id):
            vm = self.vm_repo.find_by_id(vm_id)
            if not vm:
                raise VmNotFoundError(f"VM with id '{vm_id}' not found.")
            self._ensure_no_job_in_flight(vm)
            if not vm.disk_path:
                raise InvalidStateError(f"VM '{vm.name}' has no disk image to back up.")

            compressed = self.settings.compress_backups
            backup_name, backup_path = self._allocate_backup_path(vm, compressed)
            job = self.backup_repo.create(models.BackupJob(
                vm_id=vm.id,
                vm_uuid=vm.uuid,
                vm_name=vm.name,
                backup_name=backup_name,
                backup_path=backup_path,
                compressed=compressed,
                compression_type="gzip" if compressed else "none",
                status=BackupStatus.CREATING.value,
                notes=notes or "",
            ))

        self.job_runner.submit(partial(self._run_backup, job.id))
        logger.info("Backup %s queued for VM '%s' -> %s", job.id, job.vm_name, job.backup_path)
        return job.id

    def check_backup_status(self, backup_id: int) -> Dict[str, Any]:
        """작업의 현재 상태를 읽기만 합니다. 워커를 기다리거나 재촉하지 않습니다."""
        job = self._get_job(backup_id)
        size = job.backup_size if job.status == BackupStatus.COMPLETED.value else None
        return {"id": job.id, "status": job.status, "size": size}

    def get_backup(self, backup_id: int) -> Dict[str, Any]:
        return backup_to_dict(self._get_job(backup_id))

    def list_backups(self, vm_id: int) -> List[Dict[str, Any]]:
        return [backup_to_dict(job) for job in self.backup_repo.list_by_vm_id(vm_id)]

    def list_all_backups(self) -> List[Dict[str, Any]]:
        return [backup_to_dict(job) for job in self.backup_repo.list_all()]

    def restore_backup(self, backup_id: int) -> int:
        """
        완료된 백업을 VM의 현재 디스크 이미지 위에 복원하는 작업을 시작합니다.

        작업을 'restoring'으로 표시한 뒤 워커에 넘기고, 워커가 끝나면 작업은 다시
        'completed'(또는 실패 시 'failed')가 됩니다. 복원 중에는 VM을 시작할 수 없습니다.

        Raises:
            BackupNotFoundError: 작업을 찾을 수 없을 때.
            VmNotFoundError: 백업의 원래 VM이 삭제되었을 때.
            InvalidStateError: 작업이 'completed'가 아니거나 VM이 실행 중일 때.
            JobInProgressError: 이 VM에 다른 진행 중인 작업이 있을 때.
        """
        job = self._get_job(backup_id)
        with self.locks.lock_for(job.vm_id):
            job = self._get_job(backup_id)
            if job.status != BackupStatus.COMPLETED.value:
                raise InvalidStateError(f"Backup {job.id} is '{job.status}'; only completed backups can be restored.")

            vm = self._find_job_vm(self.vm_repo, job)
            if vm is None:
                raise VmNotFoundError(f"VM '{job.vm_name}' (id {job.vm_id}) no longer exists.")
            if self.supervisor.reconcile(vm) in (VMStatus.RUNNING.value, VMStatus.PAUSED.value):
                raise InvalidStateError(f"Cannot restore VM '{vm.name}' while it is running.")
            self._ensure_no_job_in_flight(vm)
            if not vm.disk_path:
                raise InvalidStateError(f"VM '{vm.name}' has no disk image to restore into.")

            job.status = BackupStatus.RESTORING.value
            job.error_message = None
            job = self.backup_repo.save(job)

        self.job_runner.submit(partial(self._run_restore, job.id))
        logger.info("Restore of backup %s queued for VM '%s'", job.id, job.vm_name)
        return job.id

    def delete_backup(self, backup_id: int) -> bool:
        """
        백업 파일과 작업 레코드를 삭제합니다.

        Raises:
            BackupNotFoundError: 작업을 찾을 수 없을 때.
            JobInProgressError: 작업이 'creating' 또는 'restoring'일 때.
        """
        job = self._get_job(backup_id)
        with self.locks.lock_for(job.vm_id):
            job = self._get_job(backup_id)
            if job.status in IN_FLIGHT_BACKUP_STATUSES:
                raise JobInProgressError(f"Backup {job.id} is '{job.status}' and cannot be deleted.")
            backup_name = job.backup_name
            remove_quietly(job.backup_path)
            self.backup_repo.delete(job)
        logger.info("Backup %s (%s) deleted", backup_id, backup_name)
        return True

    def recover_interrupted_jobs(self) -> List[int]:
        """
        이전 프로세스가 끝내지 못한 작업을 정리합니다. 서버 시작 시 워커가 돌기 전에 한 번만 호출합니다.

        워커 풀은 메모리에만 있으므로 재시작 후에는 'creating'/'restoring' 작업을 이어받을 워커가 없습니다.
        'creating' 작업은 'failed'로 바꾸고 남은 부분 파일을 지웁니다. 'restoring' 작업은 백업 파일이
        그대로 남아 있으므로 'completed'로 되돌리고, 복원이 중단되었다는 메모를 남깁니다.
        디스크 교체는 이름 바꾸기 한 번으로 일어나므로 VM 디스크는 복원 전 내용이거나 복원된 내용입니다.

        Returns:
            정리한 작업 ID 목록.
        """
        recovered = []
        for job in self.backup_repo.list_in_flight():
            if job.status == BackupStatus.CREATING.value:
                remove_quietly(job.backup_path + ".part")
                remove_quietly(job.backup_path)
                job.status = BackupStatus.FAILED.value
                job.error_message = INTERRUPTED_NOTE
            else:
                vm = self._find_job_vm(self.vm_repo, job)
                if vm is not None and vm.disk_path:
                    remove_quietly(vm.disk_path + ".part")
                job.status = BackupStatus.COMPLETED.value
                job.error_message = f"restore {INTERRUPTED_NOTE}; the disk image may predate this backup"
            self.backup_repo.save(job)
            recovered.append(job.id)
            logger.warning("Backup %s for VM '%s' was %s", job.id, job.vm_name, INTERRUPTED_NOTE)
        return recovered

    # ------------------------------------------------------------------
    # 워커 경로: 예외를 밖으로 내보내지 않고 작업 레코드에 기록합니다.
    # ------------------------------------------------------------------

    def _run_backup(self, backup_id: int, vm_repo: IVMRepository, backup_repo: IBackupRepository):
        job = None
        try:
            job = backup_repo.find_by_id(backup_id)
            if job is None:
                logger.warning("Backup %s vanished before it could run", backup_id)
                return
            vm = self._find_job_vm(vm_repo, job)
            if vm is None or not vm.disk_path:
                raise FileNotFoundError(f"disk image for VM '{job.vm_name}' is unavailable")
            os.makedirs(os.path.dirname(job.backup_path) or ".", exist_ok=True)
            stream_copy(vm.disk_path, job.backup_path, compress=job.compressed)

            job.backup_size = os.path.getsize(job.backup_path)
            job.status = BackupStatus.COMPLETED.value
            job.completed_at = datetime.now()
            backup_repo.save(job)
            logger.info("Backup %s completed (%s bytes)", backup_id, job.backup_size)
        except Exception as e:
            logger.exception("Backup %s failed", backup_id)
            if job is not None:
                remove_quietly(job.backup_path)
            self._mark_failed(backup_repo, backup_id, e)

    def _run_restore(self, backup_id: int, vm_repo: IVMRepository, backup_repo: IBackupRepository):
        try:
            job = backup_repo.find_by_id(backup_id)
            if job is None:
                logger.warning("Backup %s vanished before it could be restored", backup_id)
                return
            vm = self._find_job_vm(vm_repo, job)
            if vm is None or not vm.disk_path:
                raise FileNotFoundError(f"VM '{job.vm_name}' no longer has a disk image to restore into")
            stream_copy(job.backup_path, vm.disk_path, decompress=job.compressed)

            job.status = BackupStatus.COMPLETED.value
            backup_repo.save(job)
            logger.info("Backup %s restored onto VM '%s'", backup_id, vm.name)
        except Exception as e:
            logger.exception("Restore of backup %s failed", backup_id)
            self._mark_failed(backup_repo, backup_id, e)

    @staticmethod
    def _mark_failed(backup_repo: IBackupRepository, backup_id: int, error: Exception):
        note = f"{type(error).__name__}: {error}"[:ERROR_NOTE_LIMIT]
        try:
            job = backup_repo.find_by_id(backup_id)
            if job is None:
                return
            job.status = BackupStatus.FAILED.value
            job.error_message = note
            backup_repo.save(job)
        except Exception:
            logger.exception("Could not record failure of backup %s", backup_id)

    # ------------------------------------------------------------------

    def _get_job(self, backup_id: int) -> models.BackupJob:
        job = self.backup_repo.find_by_id(backup_id)
        if not job:
            raise BackupNotFoundError(f"Backup with id '{backup_id}' not found.")
        return job

    @staticmethod
    def _find_job_vm(vm_repo: IVMRepository, job: models.BackupJob) -> Optional[models.VirtualMachine]:
        """작업을 만든 바로 그 VM을 찾습니다. 같은 ID라도 UUID가 다르면 다른 VM입니다."""
        vm = vm_repo.find_by_id(job.vm_id)
        if vm is None or vm.uuid != job.vm_uuid:
            return None
        return vm

    def _ensure_no_job_in_flight(self, vm: models.VirtualMachine):
        active = self.backup_repo.find_active_by_vm_id(vm.id)
        if active is not None:
            raise JobInProgressError(f"VM '{vm.name}' already has backup {active.id} in state '{active.status}'.")

    def _allocate_backup_path(self, vm: models.VirtualMachine, compressed: bool):
        try:
            extension = DiskFormat(vm.disk_format).extension
        except ValueError:
            extension = ".img"
        suffix = extension + (".gz" if compressed else "")

        backup_name = f"{vm.name}_{datetime.now():%Y-%m-%d_%H-%M-%S}"
        candidate, counter = backup_name, 1
        while os.path.exists(os.path.join(self.settings.backup_dir, candidate + suffix)):
            candidate = f"{backup_name}_{counter}"
            counter += 1
        return candidate, os.path.join(self.settings.backup_dir, candidate + suffix)

