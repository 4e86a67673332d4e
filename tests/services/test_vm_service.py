# tests/services/test_vm_service.py
from unittest.mock import ANY, MagicMock, call

import pytest

from vmhost.database import models
from vmhost.repositories.interfaces import IBackupRepository, ISnapshotRepository, IVMRepository
from vmhost.services.disk_service import DiskService
from vmhost.services.display_service import DisplayService
from vmhost.services.exceptions import (
    InvalidConfigurationError,
    JobInProgressError,
    ProvisioningFailedError,
    ResourceExhaustedError,
    VmAlreadyExistsError,
    VmAlreadyRunningError,
    VmNotFoundError,
)
from vmhost.services.locks import VMLockRegistry
from vmhost.services.process_supervisor import ProcessSupervisor
from vmhost.services.resource_allocator import ResourceAllocator
from vmhost.services.vm_service import VMService

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def mock_vm_repo() -> MagicMock:
    """IVMRepository에 대한 모의(Mock) 객체. create/save는 받은 객체를 그대로 돌려줍니다."""
    repo = MagicMock(spec=IVMRepository)
    repo.find_by_name.return_value = None
    repo.find_by_mac_address.return_value = None

    def create(vm):
        vm.id = 7
        return vm
    repo.create.side_effect = create
    repo.save.side_effect = lambda vm: vm
    return repo

@pytest.fixture
def mock_backup_repo() -> MagicMock:
    repo = MagicMock(spec=IBackupRepository)
    repo.find_active_by_vm_id.return_value = None
    return repo

@pytest.fixture
def mock_snapshot_repo() -> MagicMock:
    return MagicMock(spec=ISnapshotRepository)

@pytest.fixture
def mock_disk_service() -> MagicMock:
    disk_service = MagicMock(spec=DiskService)
    disk_service.disk_path_for.side_effect = lambda name, fmt: f"/srv/vms/{name}.{fmt}"
    return disk_service

@pytest.fixture
def mock_supervisor() -> MagicMock:
    supervisor = MagicMock(spec=ProcessSupervisor)
    supervisor.reconcile.side_effect = lambda vm: vm.status
    supervisor.firmware_vars_path_for.side_effect = lambda name: f"/srv/vms/{name}_VARS.fd"
    return supervisor

@pytest.fixture
def mock_allocator() -> MagicMock:
    allocator = MagicMock(spec=ResourceAllocator)
    allocator.allocate_identity.return_value = ("0b8f0a5e-4c3e-4a51-9b7e-1f0c2d3e4f50", "52:54:00:ab:cd:ef")
    allocator.allocate_port.return_value = 5903
    allocator.generate_secret.return_value = "Xy12Zw34Uv56"
    return allocator

@pytest.fixture
def locks() -> VMLockRegistry:
    return VMLockRegistry()

@pytest.fixture
def vm_service(
    mock_vm_repo, mock_backup_repo, mock_snapshot_repo, mock_disk_service, mock_supervisor, mock_allocator, locks, settings
) -> VMService:
    """테스트에 사용될 VMService 인스턴스를 생성하고, 의존성을 주입합니다."""
    return VMService(
        mock_vm_repo,
        mock_backup_repo,
        mock_snapshot_repo,
        disk_service=mock_disk_service,
        supervisor=mock_supervisor,
        allocator=mock_allocator,
        display_service=DisplayService("localhost"),
        settings=settings,
        locks=locks,
    )

# ===================================================================
#  create_vm 테스트 스위트
# ===================================================================
class TestCreateVm:
    def test_create_vm_success(self, vm_service, mock_vm_repo, mock_disk_service, mock_allocator, settings):
        """VM 생성 성공 시나리오 (Happy Path)를 테스트합니다."""
        # === Arrange (테스트 준비) ===
        # 시나리오: 이름이 비어 있고, 할당기와 디스크 도구가 정상 동작하는 상황

        # === Act (실제 테스트 대상 실행) ===
        vm_id = vm_service.create_vm(name="web-01", cpu_cores=4, ram_mb=4096, disk_size_gb=20)

        # === Assert (결과 검증) ===
        # 1. 반환 값 검증
        assert vm_id == 7

        # 2. 자원 할당과 디스크 생성이 올바른 인자로 호출되었는지 검증
        mock_vm_repo.find_by_name.assert_called_once_with("web-01")
        mock_allocator.allocate_port.assert_called_once_with(settings.display_port_min, settings.display_port_max)
        mock_disk_service.create_disk_image.assert_called_once_with(
            "/srv/vms/web-01.qcow2", 20, "qcow2", backing_file=None, backing_format="qcow2"
        )

        # 3. 저장되는 레코드는 정지 상태이고 할당된 값을 그대로 가집니다.
        mock_vm_repo.create.assert_called_once_with(ANY)
        created = mock_vm_repo.create.call_args.args[0]
        assert created.uuid == "0b8f0a5e-4c3e-4a51-9b7e-1f0c2d3e4f50"
        assert created.mac_address == "52:54:00:ab:cd:ef"
        assert created.display_port == 5903
        assert created.display_password == "Xy12Zw34Uv56"
        assert created.disk_path == "/srv/vms/web-01.qcow2"
        assert created.status == "stopped" and created.pid is None

    def test_create_vm_fails_if_name_exists(self, vm_service, mock_vm_repo, mock_allocator, mock_disk_service):
        """VM 이름이 이미 존재할 경우 VmAlreadyExistsError 예외가 발생하는지 테스트합니다."""
        # === Arrange ===
        mock_vm_repo.find_by_name.return_value = models.VirtualMachine(id=1, name="web-01")

        # === Act & Assert ===
        with pytest.raises(VmAlreadyExistsError):
            vm_service.create_vm(name="web-01", disk_size_gb=20)

        mock_allocator.allocate_port.assert_not_called()
        mock_disk_service.create_disk_image.assert_not_called()

    @pytest.mark.parametrize("overrides", [
        {"name": "bad name"},
        {"name": "../etc"},
        {"name": "web-01", "cpu_cores": 0},
        {"name": "web-01", "ram_mb": "2048"},
        {"name": "web-01", "disk_format": "qed"},
        {"name": "web-01", "network_mode": "macvtap"},
        {"name": "web-01", "network_mode": "bridge"},
        {"name": "web-01", "display_type": "rdp"},
        {"name": "web-01", "disk_size_gb": -5},
        {"name": "web-01", "mac_address": "not-a-mac"},
    ])
    def test_invalid_configuration_is_rejected_before_allocation(self, vm_service, mock_vm_repo, mock_allocator, overrides):
        with pytest.raises(InvalidConfigurationError):
            vm_service.create_vm(**overrides)

        mock_allocator.allocate_identity.assert_not_called()
        mock_vm_repo.create.assert_not_called()

    def test_display_none_gets_no_port(self, vm_service, mock_vm_repo, mock_allocator):
        vm_service.create_vm(name="headless-01", display_type="none")

        mock_allocator.allocate_port.assert_not_called()
        assert mock_vm_repo.create.call_args.args[0].display_port is None

    def test_without_disk_size_no_image_is_created(self, vm_service, mock_vm_repo, mock_disk_service):
        vm_service.create_vm(name="live-cd", iso_path="/srv/isos/live.iso")

        mock_disk_service.create_disk_image.assert_not_called()
        assert mock_vm_repo.create.call_args.args[0].disk_path is None

    def test_bridge_mode_with_bridge_name(self, vm_service, mock_vm_repo):
        vm_service.create_vm(name="web-01", network_mode="bridge", network_bridge="br0")

        created = mock_vm_repo.create.call_args.args[0]
        assert created.network_mode == "bridge" and created.network_bridge == "br0"

    def test_port_exhaustion_creates_nothing(self, vm_service, mock_vm_repo, mock_allocator, mock_disk_service):
        mock_allocator.allocate_port.side_effect = ResourceExhaustedError("no ports")

        with pytest.raises(ResourceExhaustedError):
            vm_service.create_vm(name="web-01", disk_size_gb=20)

        mock_disk_service.create_disk_image.assert_not_called()
        mock_vm_repo.create.assert_not_called()

    def test_provisioning_failure_is_propagated(self, vm_service, mock_vm_repo, mock_disk_service):
        """디스크 생성 실패는 그대로 전달되고, 만들지 않은 파일은 지우지 않습니다."""
        mock_disk_service.create_disk_image.side_effect = ProvisioningFailedError("qemu-img: disk full")

        with pytest.raises(ProvisioningFailedError):
            vm_service.create_vm(name="web-01", disk_size_gb=20)

        mock_vm_repo.create.assert_not_called()
        mock_disk_service.delete_disk_image.assert_not_called()

    def test_insert_failure_rolls_back_disk(self, vm_service, mock_vm_repo, mock_disk_service):
        """레코드 저장이 실패하면 방금 만든 디스크 이미지를 정리합니다."""
        # === Arrange ===
        mock_vm_repo.create.side_effect = RuntimeError("database is locked")

        # === Act & Assert ===
        with pytest.raises(RuntimeError):
            vm_service.create_vm(name="web-01", disk_size_gb=20)

        mock_disk_service.delete_disk_image.assert_called_once_with("/srv/vms/web-01.qcow2")

    def test_duplicate_mac_address_is_rejected(self, vm_service, mock_vm_repo, mock_allocator, mock_disk_service):
        """이미 다른 VM이 쓰는 MAC을 지정하면 저장 전에 설정 오류로 거부됩니다."""
        mock_vm_repo.find_by_mac_address.return_value = models.VirtualMachine(id=1, name="web-01")

        with pytest.raises(InvalidConfigurationError) as exc_info:
            vm_service.create_vm(name="web-02", disk_size_gb=20, mac_address="52:54:00:AA:BB:CC")

        assert "52:54:00:aa:bb:cc" in exc_info.value.message
        mock_vm_repo.find_by_mac_address.assert_called_once_with("52:54:00:aa:bb:cc")
        mock_allocator.allocate_identity.assert_not_called()
        mock_disk_service.create_disk_image.assert_not_called()
        mock_vm_repo.create.assert_not_called()

    def test_caller_supplied_mac_is_kept(self, vm_service, mock_vm_repo):
        vm_service.create_vm(name="web-02", mac_address="52:54:00:AA:BB:CC")

        assert mock_vm_repo.create.call_args.args[0].mac_address == "52:54:00:aa:bb:cc"

    def test_firmware_and_disk_options_are_stored(self, vm_service, mock_vm_repo):
        vm_service.create_vm(
            name="win-01", disk_size_gb=60, firmware_type="uefi", disk_cache="none", disk_discard=True,
        )

        created = mock_vm_repo.create.call_args.args[0]
        assert created.firmware_type == "uefi"
        assert created.disk_cache == "none" and created.disk_discard is True
        assert created.template_id is None

    @pytest.mark.parametrize("overrides", [
        {"firmware_type": "coreboot"},
        {"disk_cache": "writearound"},
        {"disk_discard": "yes"},
    ])
    def test_invalid_firmware_or_disk_options(self, vm_service, mock_vm_repo, overrides):
        with pytest.raises(InvalidConfigurationError):
            vm_service.create_vm(name="web-01", **overrides)
        mock_vm_repo.create.assert_not_called()

# ===================================================================
#  update_vm 테스트 스위트
# ===================================================================
class TestUpdateVm:
    def test_update_changes_fields(self, vm_service, mock_vm_repo, make_vm):
        vm = make_vm(id=3)
        mock_vm_repo.find_by_id.return_value = vm

        result = vm_service.update_vm(3, cpu_cores=8, iso_path="/srv/isos/new.iso")

        assert result["cpu_cores"] == 8 and result["iso_path"] == "/srv/isos/new.iso"
        mock_vm_repo.save.assert_called_once_with(vm)

    def test_update_running_vm_is_rejected(self, vm_service, mock_vm_repo, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3, status="running", pid=4242)

        with pytest.raises(VmAlreadyRunningError):
            vm_service.update_vm(3, cpu_cores=8)
        mock_vm_repo.save.assert_not_called()

    @pytest.mark.parametrize("field", ["uuid", "mac_address", "disk_path", "display_port", "status"])
    def test_immutable_fields_are_rejected(self, vm_service, mock_vm_repo, make_vm, field):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3)

        with pytest.raises(InvalidConfigurationError):
            vm_service.update_vm(3, **{field: "x"})

    def test_switching_display_off_releases_port(self, vm_service, mock_vm_repo, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3, display_type="spice", display_port=5900)

        result = vm_service.update_vm(3, display_type="none")

        assert result["display_port"] is None

    def test_switching_display_on_allocates_port(self, vm_service, mock_vm_repo, mock_allocator, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3, display_type="none", display_port=None)

        result = vm_service.update_vm(3, display_type="vnc")

        assert result["display_port"] == 5903
        mock_allocator.allocate_port.assert_called_once()

    def test_rename_to_taken_name(self, vm_service, mock_vm_repo, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3, name="web-01")
        mock_vm_repo.find_by_name.return_value = make_vm(id=4, name="web-02")

        with pytest.raises(VmAlreadyExistsError):
            vm_service.update_vm(3, name="web-02")

    def test_bridge_mode_requires_bridge(self, vm_service, mock_vm_repo, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3)

        with pytest.raises(InvalidConfigurationError):
            vm_service.update_vm(3, network_mode="bridge")

# ===================================================================
#  delete_vm 테스트 스위트
# ===================================================================
class TestDeleteVm:
    def test_delete_running_vm_force_stops_first(self, vm_service, mock_vm_repo, mock_supervisor, mock_disk_service, make_vm):
        """실행 중인 VM은 강제 중지된 뒤 디스크와 레코드가 삭제됩니다."""
        vm = make_vm(id=3, status="running", pid=4242)
        mock_vm_repo.find_by_id.return_value = vm
        mock_supervisor.stop.return_value = vm

        assert vm_service.delete_vm(3) is True

        mock_supervisor.stop.assert_called_once_with(vm, force=True)
        assert mock_disk_service.delete_disk_image.call_args_list == [
            call(vm.disk_path), call("/srv/vms/test-vm_VARS.fd"),
        ]
        mock_vm_repo.delete.assert_called_once_with(vm)

    def test_delete_stopped_vm_does_not_signal(self, vm_service, mock_vm_repo, mock_supervisor, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3)

        vm_service.delete_vm(3)

        mock_supervisor.stop.assert_not_called()

    def test_delete_with_job_in_flight_is_rejected(self, vm_service, mock_vm_repo, mock_backup_repo, mock_disk_service, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3)
        mock_backup_repo.find_active_by_vm_id.return_value = models.BackupJob(id=9, vm_id=3, status="creating")

        with pytest.raises(JobInProgressError):
            vm_service.delete_vm(3)

        mock_disk_service.delete_disk_image.assert_not_called()
        mock_vm_repo.delete.assert_not_called()

    def test_record_is_deleted_even_if_disk_cleanup_fails(self, vm_service, mock_vm_repo, mock_disk_service, make_vm):
        vm = make_vm(id=3)
        mock_vm_repo.find_by_id.return_value = vm
        mock_disk_service.delete_disk_image.side_effect = PermissionError("read-only filesystem")

        vm_service.delete_vm(3)

        mock_vm_repo.delete.assert_called_once_with(vm)

    def test_delete_unknown_vm(self, vm_service, mock_vm_repo):
        mock_vm_repo.find_by_id.return_value = None

        with pytest.raises(VmNotFoundError):
            vm_service.delete_vm(404)

    def test_delete_removes_snapshot_records(self, vm_service, mock_vm_repo, mock_snapshot_repo, make_vm):
        """내부 스냅샷은 디스크 이미지와 함께 사라지므로 기록도 지웁니다."""
        mock_vm_repo.find_by_id.return_value = make_vm(id=3)

        vm_service.delete_vm(3)

        mock_snapshot_repo.delete_by_vm_id.assert_called_once_with(3)

    def test_delete_releases_vm_lock(self, vm_service, mock_vm_repo, locks, make_vm):
        """삭제된 VM의 잠금은 레지스트리에서 빠집니다."""
        mock_vm_repo.find_by_id.return_value = make_vm(id=3)
        locks.lock_for(3)
        locks.lock_for(4)

        vm_service.delete_vm(3)

        assert len(locks) == 1
        assert locks.lock_for(4) is locks.lock_for(4)

    def test_rejected_delete_keeps_vm_lock(self, vm_service, mock_vm_repo, mock_backup_repo, locks, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3)
        mock_backup_repo.find_active_by_vm_id.return_value = models.BackupJob(id=9, vm_id=3, status="restoring")
        lock = locks.lock_for(3)

        with pytest.raises(JobInProgressError):
            vm_service.delete_vm(3)

        assert locks.lock_for(3) is lock

# ===================================================================
#  create_vm_from_template 테스트 스위트
# ===================================================================
def build_template(**overrides) -> models.VMTemplate:
    fields = {
        "id": 5,
        "name": "debian-base",
        "description": "Debian 12 base image",
        "cpu_cores": 2,
        "ram_mb": 2048,
        "firmware_type": "uefi",
        "disk_size_gb": 20,
        "disk_format": "qcow2",
        "disk_cache": "none",
        "disk_discard": True,
        "boot_order": "hd,cd",
        "network_mode": "nat",
        "network_bridge": None,
        "display_type": "spice",
        "disk_path": "/srv/templates/debian-base.qcow2",
        "disk_size_actual": 1024,
        "use_count": 0,
    }
    fields.update(overrides)
    return models.VMTemplate(**fields)


class TestCreateVmFromTemplate:
    def test_overlay_on_template_disk(self, vm_service, mock_vm_repo, mock_disk_service):
        """템플릿 디스크를 기준으로 하는 오버레이를 만들고, 구성은 템플릿을 따릅니다."""
        vm_id = vm_service.create_vm_from_template(build_template(), "web-05", cpu_cores=4)

        assert vm_id == 7
        mock_disk_service.create_disk_image.assert_called_once_with(
            "/srv/vms/web-05.qcow2", 20, "qcow2",
            backing_file="/srv/templates/debian-base.qcow2", backing_format="qcow2",
        )
        created = mock_vm_repo.create.call_args.args[0]
        assert created.template_id == 5
        assert created.cpu_cores == 4 and created.ram_mb == 2048
        assert created.firmware_type == "uefi" and created.boot_order == "hd,cd"
        assert created.description == "Debian 12 base image"
        assert created.mac_address == "52:54:00:ab:cd:ef"

    def test_template_without_disk_creates_blank_image(self, vm_service, mock_disk_service):
        template = build_template(disk_path=None, disk_format="raw", disk_size_gb=10)

        vm_service.create_vm_from_template(template, "web-06")

        mock_disk_service.create_disk_image.assert_called_once_with(
            "/srv/vms/web-06.raw", 10, "raw", backing_file=None, backing_format="raw",
        )

    def test_name_clash_is_rejected(self, vm_service, mock_vm_repo, mock_disk_service):
        mock_vm_repo.find_by_name.return_value = models.VirtualMachine(id=1, name="web-05")

        with pytest.raises(VmAlreadyExistsError):
            vm_service.create_vm_from_template(build_template(), "web-05")
        mock_disk_service.create_disk_image.assert_not_called()

# ===================================================================
#  수명 주기 / 조회 테스트 스위트
# ===================================================================
class TestLifecycle:
    def test_start_reconciles_then_starts(self, vm_service, mock_vm_repo, mock_supervisor, make_vm):
        vm = make_vm(id=3)
        mock_vm_repo.find_by_id.return_value = vm
        mock_supervisor.start.return_value = make_vm(id=3, status="running", pid=4242)

        assert vm_service.start_vm(3) == {"status": "running", "pid": 4242}

        mock_supervisor.reconcile.assert_called_once_with(vm)
        mock_supervisor.start.assert_called_once_with(vm)

    def test_stop_passes_force(self, vm_service, mock_vm_repo, mock_supervisor, make_vm):
        vm = make_vm(id=3, status="running", pid=4242)
        mock_vm_repo.find_by_id.return_value = vm
        mock_supervisor.stop.return_value = make_vm(id=3)

        assert vm_service.stop_vm(3, force=True) == {"status": "stopped", "pid": None}
        mock_supervisor.stop.assert_called_once_with(vm, force=True)

    def test_restart(self, vm_service, mock_vm_repo, mock_supervisor, make_vm):
        vm = make_vm(id=3, status="running", pid=4242)
        mock_vm_repo.find_by_id.return_value = vm
        mock_supervisor.restart.return_value = make_vm(id=3, status="running", pid=5151)

        assert vm_service.restart_vm(3) == {"status": "running", "pid": 5151}

    def test_unknown_vm(self, vm_service, mock_vm_repo):
        mock_vm_repo.find_by_id.return_value = None

        with pytest.raises(VmNotFoundError):
            vm_service.start_vm(404)

    def test_get_status_reconciles_but_peek_does_not(self, vm_service, mock_vm_repo, mock_supervisor, make_vm):
        vm = make_vm(id=3, status="running", pid=4242)
        mock_vm_repo.find_by_id.return_value = vm
        mock_supervisor.status.side_effect = lambda v: v.status

        assert vm_service.peek_status(3) == {"status": "running", "pid": 4242}
        mock_supervisor.reconcile.assert_not_called()

        vm_service.get_status(3)
        mock_supervisor.reconcile.assert_called_once_with(vm)

    def test_list_vms_hides_connection_secret(self, vm_service, mock_vm_repo, mock_supervisor, make_vm):
        mock_vm_repo.list_all.return_value = [make_vm(id=1, name="a"), make_vm(id=2, name="b")]

        vms = vm_service.list_vms()

        assert [vm["name"] for vm in vms] == ["a", "b"]
        assert all("display_password" not in vm for vm in vms)
        assert mock_supervisor.reconcile.call_count == 2

    def test_get_logs(self, vm_service, mock_vm_repo, mock_supervisor, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3, name="web-01")
        mock_supervisor.log_path_for.return_value = "/var/log/vmhost/web-01.log"
        mock_supervisor.tail_log.return_value = "boot ok\n"

        assert vm_service.get_logs(3, lines=50) == "boot ok\n"
        mock_supervisor.tail_log.assert_called_once_with("/var/log/vmhost/web-01.log", 50)

    def test_generate_spice_file(self, vm_service, mock_vm_repo, make_vm):
        mock_vm_repo.find_by_id.return_value = make_vm(id=3, name="web-01", display_port=5904)

        descriptor = vm_service.generate_spice_file(3)

        assert descriptor.port == 5904 and descriptor.title == "web-01"
