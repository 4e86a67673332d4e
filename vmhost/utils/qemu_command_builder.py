# vmhost/utils/qemu_command_builder.py
from typing import List, Optional

from vmhost.database.models import DiskCacheMode, DisplayType, FirmwareType, NetworkMode
from vmhost.services.exceptions import InvalidConfigurationError

# VNC 디스플레이 번호는 (포트 - 5900)입니다.
VNC_BASE_PORT = 5900
OVMF_CODE_PATH = "/usr/share/OVMF/OVMF_CODE.fd"


def build_qemu_command(
    vm,
    pidfile_path: str,
    qemu_binary: str = "qemu-system-x86_64",
    qmp_socket_path: Optional[str] = None,
    firmware_vars_path: Optional[str] = None,
    ovmf_code_path: str = OVMF_CODE_PATH,
) -> List[str]:
    """
    VM 레코드를 하이퍼바이저 실행 인자 목록으로 변환합니다.

    부수 효과나 파일 시스템 접근이 없는 순수 함수입니다. 셸 문자열이 아닌
    인자 배열을 반환하므로 그대로 subprocess에 넘길 수 있습니다.

    Args:
        vm: VirtualMachine 레코드 (또는 같은 속성을 가진 객체).
        pidfile_path: 데몬화된 QEMU가 자신의 PID를 기록할 파일 경로.
        qemu_binary: 실행할 하이퍼바이저 바이너리.
        qmp_socket_path: 관리용 QMP 유닉스 소켓 경로. 생략하면 QMP를 열지 않습니다.
        firmware_vars_path: UEFI VM의 NVRAM 변수 파일 경로. UEFI VM에는 필수입니다.
        ovmf_code_path: 읽기 전용으로 붙일 OVMF 펌웨어 코드 파일.

    Returns:
        실행 인자 목록.

    Raises:
        InvalidConfigurationError: 네트워크/디스플레이/펌웨어 설정이 모순될 때.
    """
    cmd = [
        qemu_binary,
        "-enable-kvm",
        "-machine", "type=q35,accel=kvm",
        "-cpu", "host",
        "-smp", f"cores={vm.cpu_cores}",
        "-m", str(vm.ram_mb),
        "-uuid", vm.uuid,
        "-name", vm.name,
    ]

    cmd += _firmware_args(vm, firmware_vars_path, ovmf_code_path)
    cmd += _storage_args(vm)
    cmd += ["-boot", f"order={vm.boot_order}"]
    cmd += _network_args(vm)
    cmd += _display_args(vm)

    if qmp_socket_path:
        cmd += ["-qmp", f"unix:{qmp_socket_path},server,nowait"]
    # 절대 좌표 포인터: 원격 콘솔에서 마우스가 어긋나지 않습니다.
    cmd += ["-usb", "-device", "usb-tablet"]

    cmd += ["-daemonize", "-pidfile", pidfile_path]
    return cmd


def _firmware_args(vm, firmware_vars_path: Optional[str], ovmf_code_path: str) -> List[str]:
    firmware = vm.firmware_type or FirmwareType.BIOS.value
    if firmware == FirmwareType.BIOS.value:
        return []
    if firmware == FirmwareType.UEFI.value:
        if not firmware_vars_path:
            raise InvalidConfigurationError(f"VM '{vm.name}' uses UEFI but has no firmware variables file.")
        return [
            "-drive", f"if=pflash,format=raw,readonly=on,file={ovmf_code_path}",
            "-drive", f"if=pflash,format=raw,file={firmware_vars_path}",
        ]
    raise InvalidConfigurationError(f"Unknown firmware type '{firmware}'.")


def _storage_args(vm) -> List[str]:
    args = []
    if vm.disk_path:
        options = f"file={vm.disk_path},if=virtio,format={vm.disk_format},cache={vm.disk_cache or DiskCacheMode.WRITEBACK.value}"
        if vm.disk_discard:
            options += ",discard=unmap"
        args += ["-drive", options]
    if vm.physical_disk_device and vm.boot_from_disk:
        args += ["-drive", f"file={vm.physical_disk_device},if=virtio,format=raw"]
    if vm.iso_path:
        args += ["-cdrom", vm.iso_path]
    return args


def _network_args(vm) -> List[str]:
    mode = vm.network_mode
    nic = f"virtio-net-pci,netdev=net0,mac={vm.mac_address}"

    if mode == NetworkMode.NAT.value:
        return ["-netdev", "user,id=net0", "-device", nic]
    if mode == NetworkMode.BRIDGE.value:
        if not vm.network_bridge:
            raise InvalidConfigurationError(f"VM '{vm.name}' uses bridge networking but no bridge name is set.")
        return ["-netdev", f"bridge,id=net0,br={vm.network_bridge}", "-device", nic]
    if mode == NetworkMode.USER.value:
        return ["-net", "user", "-net", f"nic,model=virtio,macaddr={vm.mac_address}"]
    if mode == NetworkMode.NONE.value:
        return ["-nic", "none"]
    raise InvalidConfigurationError(f"Unknown network mode '{mode}'.")


def _display_args(vm) -> List[str]:
    display = vm.display_type

    if display == DisplayType.SPICE.value:
        if vm.display_port is None:
            raise InvalidConfigurationError(f"VM '{vm.name}' uses SPICE but has no display port.")
        # 프로토콜 수준 인증은 끄고, 접근 제어는 일회용 접속 파일로 대신합니다.
        return [
            "-spice", f"port={vm.display_port},addr=0.0.0.0,disable-ticketing=on",
            "-vga", "qxl",
            "-device", "virtio-serial-pci",
            "-chardev", "spicevmc,id=vdagent,name=vdagent",
            "-device", "virtserialport,chardev=vdagent,name=com.redhat.spice.0",
        ]
    if display == DisplayType.VNC.value:
        if vm.display_port is None or vm.display_port < VNC_BASE_PORT:
            raise InvalidConfigurationError(f"VM '{vm.name}' uses VNC but has no valid display port.")
        return ["-vnc", f":{vm.display_port - VNC_BASE_PORT}"]
    if display == DisplayType.NONE.value:
        return ["-display", "none"]
    raise InvalidConfigurationError(f"Unknown display type '{display}'.")
