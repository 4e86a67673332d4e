import logging
import os
import subprocess
from typing import Optional

from vmhost.database.models import DiskFormat
from vmhost.services.exceptions import InvalidConfigurationError, ProvisioningFailedError

logger = logging.getLogger(__name__)


class DiskService:
    def __init__(self, vm_storage_dir: str, qemu_img_binary: str = "qemu-img"):
        """
        DiskService를 초기화합니다.

        Args:
            vm_storage_dir: VM 디스크 이미지가 저장되는 디렉터리.
            qemu_img_binary: 디스크 이미지 도구 실행 파일.
        """
        self.vm_storage_dir = vm_storage_dir
        self.qemu_img_binary = qemu_img_binary

    def disk_path_for(self, vm_name: str, disk_format: str) -> str:
        """VM 이름과 포맷 확장자로 디스크 이미지 경로를 결정합니다."""
        try:
            extension = DiskFormat(disk_format).extension
        except ValueError:
            raise InvalidConfigurationError(f"Unsupported disk format '{disk_format}'.")
        return os.path.join(self.vm_storage_dir, f"{vm_name}{extension}")

    def create_disk_image(
        self,
        path: str,
        size_gb: Optional[int],
        disk_format: str = "qcow2",
        backing_file: Optional[str] = None,
        backing_format: str = "qcow2",
    ) -> str:
        """
        sparse 디스크 이미지를 생성합니다.

        qemu-img를 인자 배열로 호출하므로 셸 해석을 거치지 않습니다.
        이미지 생성은 빠르기 때문에 동기적으로 수행합니다.

        Args:
            path: 생성할 이미지 파일 경로.
            size_gb: 이미지 크기 (GB). backing_file이 있으면 생략할 수 있고, 그때는 기준 이미지 크기를 따릅니다.
            disk_format: 이미지 포맷 (qcow2, raw, vmdk, vdi, vhdx).
            backing_file: 지정하면 이 이미지를 기준으로 하는 오버레이를 만듭니다 (qcow2 전용).
            backing_format: backing_file의 포맷.

        Returns:
            생성된 이미지 경로.

        Raises:
            InvalidConfigurationError: 크기도 기준 이미지도 없거나, qcow2가 아닌 포맷으로 오버레이를 요청했을 때.
            ProvisioningFailedError: 같은 경로에 파일이 이미 있거나, qemu-img가 없거나 0이 아닌 코드로 종료했을 때.
        """
        if backing_file is None and not size_gb:
            raise InvalidConfigurationError("A disk size is required unless a backing image is given.")
        if backing_file is not None and disk_format != DiskFormat.QCOW2.value:
            raise InvalidConfigurationError(f"Backing images require qcow2 overlays, got '{disk_format}'.")
        if os.path.exists(path):
            raise ProvisioningFailedError(f"Disk image '{path}' already exists.")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

        command = [self.qemu_img_binary, "create", "-f", disk_format]
        if backing_file is not None:
            command += ["-b", backing_file, "-F", backing_format]
        command.append(path)
        if size_gb:
            command.append(f"{int(size_gb)}G")
        self._run(command, f"Failed to create disk image '{path}'")

        logger.info("Disk image created: %s (%sG, %s, backing=%s)", path, size_gb, disk_format, backing_file)
        return path

    def delete_disk_image(self, path: str) -> bool:
        """
        디스크 이미지 파일을 삭제합니다. 파일이 없으면 오류가 아닙니다.

        Returns:
            실제로 파일을 삭제했으면 True, 원래 없었으면 False.
        """
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.debug("Disk file not found, skipping delete: %s", path)
            return False
        logger.info("Disk file deleted: %s", path)
        return True

    # --- 내부 스냅샷 (qcow2) ---

    def create_snapshot(self, disk_path: str, tag: str):
        self._run([self.qemu_img_binary, "snapshot", "-c", tag, disk_path],
                  f"Failed to create snapshot '{tag}' of '{disk_path}'")
        logger.info("Snapshot '%s' created in %s", tag, disk_path)

    def apply_snapshot(self, disk_path: str, tag: str):
        """디스크 이미지를 스냅샷 시점으로 되돌립니다. 스냅샷 이후의 변경은 사라집니다."""
        self._run([self.qemu_img_binary, "snapshot", "-a", tag, disk_path],
                  f"Failed to apply snapshot '{tag}' to '{disk_path}'")
        logger.info("Snapshot '%s' applied to %s", tag, disk_path)

    def delete_snapshot(self, disk_path: str, tag: str):
        self._run([self.qemu_img_binary, "snapshot", "-d", tag, disk_path],
                  f"Failed to delete snapshot '{tag}' from '{disk_path}'")
        logger.info("Snapshot '%s' deleted from %s", tag, disk_path)

    def _run(self, command, failure_message: str):
        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            raise ProvisioningFailedError(f"{failure_message}: {(e.stderr or '').strip()}") from e
        except FileNotFoundError as e:
            raise ProvisioningFailedError(f"{self.qemu_img_binary} command not found. Install qemu-utils.") from e
