# tests/conftest.py
import pytest

from vmhost.config import Settings
from vmhost.database import models
from vmhost.database.database import Base, create_engine_for, create_session_factory


@pytest.fixture
def settings(tmp_path) -> Settings:
    """모든 경로를 임시 디렉터리로 돌리고 대기 시간을 없앤 설정."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'vmhost.db'}",
        vm_storage_dir=str(tmp_path / "vms"),
        backup_dir=str(tmp_path / "backups"),
        iso_dir=str(tmp_path / "isos"),
        log_dir=str(tmp_path / "logs"),
        run_dir=str(tmp_path / "run"),
        stop_grace_seconds=0,
        restart_pause_seconds=0,
        template_dir=str(tmp_path / "templates"),
        ovmf_code_path=str(tmp_path / "ovmf" / "OVMF_CODE.fd"),
        ovmf_vars_template=str(tmp_path / "ovmf" / "OVMF_VARS.fd"),
        pidfile_timeout=0.5,
    )


@pytest.fixture
def engine(settings):
    """테스트마다 새 SQLite 파일 DB를 만들고 테이블을 생성합니다."""
    engine = create_engine_for(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


def build_vm(**overrides) -> models.VirtualMachine:
    """모든 컬럼이 채워진 (저장되지 않은) VM 레코드를 만듭니다."""
    fields = {
        "name": "test-vm",
        "description": "",
        "uuid": "3f2c6f0e-8d0b-4a57-9a57-0d8a7f1c2b11",
        "mac_address": "52:54:00:12:34:56",
        "cpu_cores": 2,
        "ram_mb": 2048,
        "firmware_type": "bios",
        "disk_path": "/srv/vms/test-vm.qcow2",
        "disk_size_gb": 20,
        "disk_format": "qcow2",
        "disk_cache": "writeback",
        "disk_discard": False,
        "physical_disk_device": None,
        "boot_order": "cd,hd",
        "iso_path": None,
        "boot_from_disk": False,
        "network_mode": "nat",
        "network_bridge": None,
        "display_type": "spice",
        "display_port": 5900,
        "display_password": "s3cr3tPassw0",
        "status": "stopped",
        "pid": None,
        "last_started_at": None,
        "template_id": None,
    }
    fields.update(overrides)
    return models.VirtualMachine(**fields)


@pytest.fixture
def make_vm():
    return build_vm
