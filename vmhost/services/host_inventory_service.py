import glob
import logging
import os
import subprocess
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE = "virbr0"
SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_bytes(size: int, precision: int = 2) -> str:
    """바이트 수를 사람이 읽기 쉬운 문자열로 바꿉니다. (예: 1536 -> '1.5 KB')"""
    value = float(max(size, 0))
    power = 0
    while value >= 1024 and power < len(SIZE_UNITS) - 1:
        value /= 1024
        power += 1
    return f"{round(value, precision):g} {SIZE_UNITS[power]}"


class HostInventoryService:
    """VM 생성/수정 폼을 채우기 위한 호스트 자원 목록(ISO, 물리 디스크, 브리지)을 제공합니다."""

    def __init__(self, iso_dir: str):
        self.iso_dir = iso_dir

    def list_isos(self) -> List[Dict[str, Any]]:
        isos = []
        for path in sorted(glob.glob(os.path.join(self.iso_dir, "*.iso"))):
            size = os.path.getsize(path)
            isos.append({
                "name": os.path.basename(path),
                "path": path,
                "size": size,
                "size_formatted": format_bytes(size),
            })
        return isos

    def list_physical_disks(self) -> List[Dict[str, str]]:
        """
        lsblk로 호스트의 물리 디스크 목록을 조회합니다.

        Returns:
            device, size, model 키를 가진 딕셔너리의 리스트. lsblk를 쓸 수 없으면 빈 리스트.
        """
        output = self._run(["lsblk", "-ndo", "NAME,SIZE,TYPE,MODEL"])
        disks = []
        for line in output.splitlines():
            parts = line.split(None, 3)
            if len(parts) < 3 or parts[2] != "disk":
                continue
            disks.append({
                "device": f"/dev/{parts[0]}",
                "size": parts[1],
                "model": parts[3].strip() if len(parts) > 3 else "Unknown",
            })
        return disks

    def list_network_bridges(self) -> List[str]:
        """
        호스트의 리눅스 브리지 이름 목록을 조회합니다.

        libvirt 기본 브리지(virbr0)는 아직 만들어지지 않았더라도 항상 포함합니다.
        """
        output = self._run(["ip", "-o", "link", "show", "type", "bridge"])
        bridges = []
        for line in output.splitlines():
            # "5: virbr0: <BROADCAST,...> mtu 1500 ..."
            parts = line.split(":", 2)
            if len(parts) >= 2:
                name = parts[1].strip().split("@")[0]
                if name and name not in bridges:
                    bridges.append(name)
        if DEFAULT_BRIDGE not in bridges:
            bridges.append(DEFAULT_BRIDGE)
        return bridges

    @staticmethod
    def _run(command: List[str]) -> str:
        try:
            result = subprocess.run(command, check=True, capture_output=True, text=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            logger.warning("Host inventory command %s failed: %s", command[0], e)
            return ""
        return result.stdout
