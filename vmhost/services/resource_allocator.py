import random
import secrets
import string
import uuid
from typing import Tuple

from vmhost.repositories.interfaces import IVMRepository
from vmhost.services.exceptions import ResourceExhaustedError

# QEMU/KVM용으로 예약된 로컬 관리 OUI
MAC_OUI = "52:54:00"
SECRET_ALPHABET = string.ascii_letters + string.digits


class ResourceAllocator:
    """새 VM에 충돌 없는 식별자와 디스플레이 포트를 발급합니다. 실행 상태는 갖지 않습니다."""

    def __init__(self, vm_repo: IVMRepository):
        self.vm_repo = vm_repo

    def allocate_identity(self) -> Tuple[str, str]:
        """
        새 UUID와 MAC 주소를 발급합니다.

        MAC은 예약된 OUI 뒤에 무작위 3옥텟을 붙입니다. 기존 MAC과의 충돌은
        사실상 일어나지 않으므로 별도로 재확인하지 않습니다.

        Returns:
            (uuid 문자열, MAC 주소) 튜플.
        """
        tail = ":".join(f"{random.randint(0, 0xff):02x}" for _ in range(3))
        return str(uuid.uuid4()), f"{MAC_OUI}:{tail}"

    def allocate_port(self, range_min: int, range_max: int) -> int:
        """
        [range_min, range_max] 구간에서 아직 쓰이지 않은 가장 작은 포트를 반환합니다.

        호출자는 allocation_lock을 잡은 채로, 선택된 포트를 가진 레코드가
        커밋될 때까지 잠금을 유지해야 합니다.

        Raises:
            ResourceExhaustedError: 구간 안에 남은 포트가 없을 때.
        """
        used = set(self.vm_repo.list_used_display_ports())
        for port in range(range_min, range_max + 1):
            if port not in used:
                return port
        raise ResourceExhaustedError(f"No free display port in range [{range_min}, {range_max}].")

    def generate_secret(self, length: int = 12) -> str:
        """원격 뷰어 접속 파일에 실릴 연결 비밀 값을 생성합니다."""
        return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))
