from dataclasses import dataclass

from vmhost.database import models
from vmhost.database.models import DisplayType
from vmhost.services.exceptions import InvalidConfigurationError, UnsupportedDisplayError

VIRT_VIEWER_MIME_TYPE = "application/x-virt-viewer"


@dataclass(frozen=True)
class AccessDescriptor:
    """원격 뷰어(remote-viewer)가 바로 여는 일회용 접속 문서. 저장하지 않습니다."""
    host: str
    port: int
    password: str
    title: str
    delete_after_use: bool = True
    fullscreen: bool = False

    mime_type = VIRT_VIEWER_MIME_TYPE

    @property
    def filename(self) -> str:
        return f"{self.title}.vv"

    def render(self) -> bytes:
        lines = [
            "[virt-viewer]",
            "type=spice",
            f"host={self.host}",
            f"port={self.port}",
            f"password={self.password}",
            f"title={self.title}",
            f"delete-this-file={int(self.delete_after_use)}",
            f"fullscreen={int(self.fullscreen)}",
        ]
        return ("\n".join(lines) + "\n").encode("utf-8")


class DisplayService:
    def __init__(self, spice_host: str = "localhost"):
        self.spice_host = spice_host

    def generate_access_descriptor(self, vm: models.VirtualMachine) -> AccessDescriptor:
        """
        SPICE VM에 접속할 virt-viewer 문서를 만듭니다.

        연결 비밀 값은 이미 VM 레코드에 있으므로 그대로 노출할 뿐입니다.

        Raises:
            UnsupportedDisplayError: VM의 디스플레이가 SPICE가 아닐 때.
            InvalidConfigurationError: SPICE VM에 포트가 할당되어 있지 않을 때.
        """
        if vm.display_type != DisplayType.SPICE.value:
            raise UnsupportedDisplayError(f"VM '{vm.name}' does not use SPICE display (display_type={vm.display_type}).")
        if vm.display_port is None:
            raise InvalidConfigurationError(f"VM '{vm.name}' has no SPICE port allocated.")
        return AccessDescriptor(
            host=self.spice_host,
            port=vm.display_port,
            password=vm.display_password or "",
            title=vm.name,
        )
