import logging
import os
import shutil
import signal
import subprocess
import time
from collections import deque
from datetime import datetime
from typing import Optional

import psutil

from vmhost.config import Settings, get_settings
from vmhost.database import models
from vmhost.database.models import BackupStatus, FirmwareType, VMStatus
from vmhost.repositories.interfaces import IBackupRepository, IVMRepository
from vmhost.services.exceptions import (
    JobInProgressError,
    LaunchFailedError,
    VmAlreadyRunningError,
    VmNotRunningError,
)
from vmhost.utils.qemu_command_builder import build_qemu_command

logger = logging.getLogger(__name__)

# 데몬화 전 하이퍼바이저가 응답 없이 멈춰 있을 때의 상한
LAUNCH_TIMEOUT_SECONDS = 60
PIDFILE_POLL_INTERVAL = 0.1


class ProcessSupervisor:
    """
    VM별 하이퍼바이저 프로세스를 시작/중지/재시작하고, 저장소에 기록된 상태와
    실제 프로세스 생존 여부를 맞춥니다.

    PID나 상태를 메모리에 보관하지 않습니다. 모든 판단은 호출자가 방금 저장소에서
    읽어 온 VM 레코드를 기준으로 합니다.
    """

    def __init__(self, vm_repo: IVMRepository, backup_repo: IBackupRepository, settings: Optional[Settings] = None):
        self.vm_repo = vm_repo
        self.backup_repo = backup_repo
        self.settings = settings or get_settings()

    def log_path_for(self, vm_name: str) -> str:
        return os.path.join(self.settings.log_dir, f"{vm_name}.log")

    def pidfile_path_for(self, vm_name: str) -> str:
        return os.path.join(self.settings.run_dir, f"vm-{vm_name}.pid")

    def qmp_socket_path_for(self, vm_name: str) -> str:
        return os.path.join(self.settings.run_dir, f"vm-{vm_name}.qmp")

    def firmware_vars_path_for(self, vm_name: str) -> str:
        """UEFI VM마다 따로 두는 NVRAM 변수 파일 경로. 디스크 이미지와 같은 디렉터리에 둡니다."""
        return os.path.join(self.settings.vm_storage_dir, f"{vm_name}_VARS.fd")

    def start(self, vm: models.VirtualMachine) -> models.VirtualMachine:
        """
        VM의 하이퍼바이저 프로세스를 호출자 프로세스 트리와 분리된 상태로 시작합니다.

        QEMU는 -daemonize/-pidfile로 실행되므로, 실행 직후 pid 파일에서 실제
        데몬 프로세스의 PID를 읽어 기록합니다.

        Args:
            vm: 시작할 VM 레코드.

        Returns:
            status='running', pid, last_started_at이 기록된 VM 레코드.

        Raises:
            VmAlreadyRunningError: 저장된 상태가 이미 'running'일 때.
            JobInProgressError: 이 VM의 백업이 복원 중일 때.
            InvalidConfigurationError: 실행 인자를 만들 수 없는 설정일 때.
            LaunchFailedError: 프로세스 실행이 실패했거나 유효한 PID를 얻지 못했을 때.
        """
        if vm.status == VMStatus.RUNNING.value:
            raise VmAlreadyRunningError(f"VM '{vm.name}' is already running.")

        active_job = self.backup_repo.find_active_by_vm_id(vm.id)
        if active_job is not None and active_job.status == BackupStatus.RESTORING.value:
            raise JobInProgressError(f"VM '{vm.name}' cannot start while backup {active_job.id} is being restored.")

        pidfile_path = self.pidfile_path_for(vm.name)
        firmware_vars_path = self.firmware_vars_path_for(vm.name) if vm.firmware_type == FirmwareType.UEFI.value else None
        command = build_qemu_command(
            vm,
            pidfile_path,
            self.settings.qemu_binary,
            qmp_socket_path=self.qmp_socket_path_for(vm.name),
            firmware_vars_path=firmware_vars_path,
            ovmf_code_path=self.settings.ovmf_code_path,
        )

        log_path = self.log_path_for(vm.name)
        os.makedirs(self.settings.log_dir, exist_ok=True)
        os.makedirs(self.settings.run_dir, exist_ok=True)
        self._remove_runtime_files(vm.name)
        if firmware_vars_path:
            self._prepare_firmware_vars(vm, firmware_vars_path)

        pid = self._launch(vm, command, log_path, pidfile_path)

        vm.status = VMStatus.RUNNING.value
        vm.pid = pid
        vm.last_started_at = datetime.now()
        vm = self.vm_repo.save(vm)
        logger.info("VM '%s' started (pid=%s)", vm.name, pid)
        return vm

    def _launch(self, vm, command, log_path: str, pidfile_path: str) -> int:
        with open(log_path, "ab") as log_file:
            log_file.write(f"--- {datetime.now().isoformat()} starting {vm.name}\n".encode())
            log_file.flush()
            try:
                result = subprocess.run(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                    timeout=LAUNCH_TIMEOUT_SECONDS,
                )
            except FileNotFoundError as e:
                raise LaunchFailedError(f"Hypervisor binary '{command[0]}' not found.") from e
            except subprocess.TimeoutExpired as e:
                raise LaunchFailedError(f"Hypervisor for VM '{vm.name}' did not daemonize in time.") from e

        if result.returncode != 0:
            raise LaunchFailedError(
                f"Failed to start VM '{vm.name}' (exit code {result.returncode}): {self.tail_log(log_path, 20).strip()}"
            )

        pid = self._read_pidfile(pidfile_path)
        if pid is None:
            raise LaunchFailedError(
                f"Failed to start VM '{vm.name}': no valid pid in {pidfile_path}. {self.tail_log(log_path, 20).strip()}"
            )
        return pid

    def _read_pidfile(self, pidfile_path: str) -> Optional[int]:
        deadline = time.monotonic() + self.settings.pidfile_timeout
        while True:
            try:
                with open(pidfile_path) as f:
                    content = f.read().strip()
                if content.isdigit() and int(content) > 0:
                    return int(content)
            except FileNotFoundError:
                pass
            if time.monotonic() >= deadline:
                return None
            time.sleep(PIDFILE_POLL_INTERVAL)

    def stop(self, vm: models.VirtualMachine, force: bool = False) -> models.VirtualMachine:
        """
        하이퍼바이저 프로세스에 종료 신호를 보내고 VM을 'stopped'로 기록합니다.

        force가 아니면 SIGTERM 후 정해진 유예 시간만큼 기다리지만, 프로세스가 실제로
        종료되었는지는 확인하지 않습니다. 신호를 보낸 뒤에는 항상 status='stopped',
        pid=NULL로 기록합니다.

        Raises:
            VmNotRunningError: 저장된 상태가 'running'이 아니거나 pid가 없을 때.
        """
        if vm.status != VMStatus.RUNNING.value or vm.pid is None:
            raise VmNotRunningError(f"VM '{vm.name}' is not running.")

        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.kill(vm.pid, sig)
        except ProcessLookupError:
            logger.info("VM '%s' process %s already exited", vm.name, vm.pid)
        except PermissionError:
            logger.warning("Not permitted to signal VM '%s' process %s", vm.name, vm.pid)

        if not force:
            time.sleep(self.settings.stop_grace_seconds)

        stopped_pid = vm.pid
        vm.status = VMStatus.STOPPED.value
        vm.pid = None
        vm = self.vm_repo.save(vm)
        self._remove_runtime_files(vm.name)
        logger.info("VM '%s' stopped (pid=%s, signal=%s)", vm.name, stopped_pid, sig.name)
        return vm

    def restart(self, vm: models.VirtualMachine) -> models.VirtualMachine:
        """stop(force=False) 후 잠시 쉬고 start합니다. 실행 중이 아니었어도 start는 시도합니다."""
        try:
            vm = self.stop(vm, force=False)
        except VmNotRunningError:
            logger.info("VM '%s' was not running; starting it", vm.name)
        time.sleep(self.settings.restart_pause_seconds)
        return self.start(vm)

    def status(self, vm: models.VirtualMachine) -> str:
        """저장된 상태를 그대로 반환합니다. 저장소에 쓰지 않습니다."""
        return vm.status

    def reconcile(self, vm: models.VirtualMachine) -> str:
        """
        저장된 상태가 'running'이면 PID가 실제로 살아 있는지 확인하고, 죽었으면
        'stopped'/pid=NULL로 바로잡습니다.

        명시적인 stop 없이 running -> stopped 전이가 일어나는 유일한 경로입니다.
        바로잡을 것이 없으면 저장소에 쓰지 않습니다.

        Returns:
            보정된 상태 문자열.
        """
        if vm.status != VMStatus.RUNNING.value:
            return vm.status
        if vm.pid is not None and self.is_process_alive(vm.pid):
            return vm.status

        logger.warning("VM '%s' process %s is gone; marking stopped", vm.name, vm.pid)
        vm.status = VMStatus.STOPPED.value
        vm.pid = None
        vm = self.vm_repo.save(vm)
        self._remove_runtime_files(vm.name)
        return vm.status

    @staticmethod
    def is_process_alive(pid: int) -> bool:
        """PID가 살아 있는 프로세스인지 확인합니다. 좀비는 죽은 것으로 봅니다."""
        try:
            process = psutil.Process(pid)
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # 다른 사용자 소유라도 프로세스는 존재합니다.
            return True

    @staticmethod
    def tail_log(log_path: str, lines: int = 100) -> str:
        """로그 파일의 마지막 lines 줄을 반환합니다. 파일이 없으면 빈 문자열입니다."""
        if lines <= 0:
            return ""
        try:
            with open(log_path, "r", errors="replace") as f:
                return "".join(deque(f, maxlen=lines))
        except FileNotFoundError:
            return ""

    def _prepare_firmware_vars(self, vm: models.VirtualMachine, vars_path: str):
        """UEFI VM의 NVRAM 파일이 없으면 OVMF 기본 변수 파일을 복사해 만듭니다. 이미 있으면 그대로 씁니다."""
        if not os.path.exists(self.settings.ovmf_code_path):
            raise LaunchFailedError(f"VM '{vm.name}' uses UEFI but OVMF firmware {self.settings.ovmf_code_path} is missing.")
        if os.path.exists(vars_path):
            return
        os.makedirs(os.path.dirname(vars_path) or ".", exist_ok=True)
        try:
            shutil.copyfile(self.settings.ovmf_vars_template, vars_path)
        except OSError as e:
            raise LaunchFailedError(f"Could not create UEFI variables for VM '{vm.name}': {e}") from e

    def _remove_runtime_files(self, vm_name: str):
        for path in (self.pidfile_path_for(vm_name), self.qmp_socket_path_for(vm_name)):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
