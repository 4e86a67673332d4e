# tests/services/test_disk_service.py
import subprocess
from unittest.mock import patch

import pytest

from vmhost.services.disk_service import DiskService
from vmhost.services.exceptions import InvalidConfigurationError, ProvisioningFailedError


@pytest.fixture
def disk_service(tmp_path) -> DiskService:
    return DiskService(str(tmp_path / "vms"), qemu_img_binary="qemu-img")


class TestDiskPathFor:
    @pytest.mark.parametrize("fmt, filename", [
        ("qcow2", "web-01.qcow2"),
        ("raw", "web-01.img"),
        ("vmdk", "web-01.vmdk"),
        ("vdi", "web-01.vdi"),
        ("vhdx", "web-01.vhdx"),
    ])
    def test_extension_follows_format(self, disk_service, tmp_path, fmt, filename):
        assert disk_service.disk_path_for("web-01", fmt) == str(tmp_path / "vms" / filename)

    def test_unknown_format_is_rejected(self, disk_service):
        with pytest.raises(InvalidConfigurationError):
            disk_service.disk_path_for("web-01", "qed")


class TestCreateDiskImage:
    @patch("vmhost.services.disk_service.subprocess.run")
    def test_runs_qemu_img_with_argument_vector(self, mock_run, disk_service, tmp_path):
        """qemu-img create가 셸 없이 인자 배열로 호출되고, 상위 디렉터리가 만들어집니다."""
        # === Arrange ===
        path = str(tmp_path / "vms" / "web-01.qcow2")

        # === Act ===
        result = disk_service.create_disk_image(path, 20, "qcow2")

        # === Assert ===
        assert result == path
        assert (tmp_path / "vms").is_dir()
        mock_run.assert_called_once_with(
            ["qemu-img", "create", "-f", "qcow2", path, "20G"],
            check=True, capture_output=True, text=True,
        )

    @patch("vmhost.services.disk_service.subprocess.run")
    def test_tool_failure_carries_stderr(self, mock_run, disk_service, tmp_path):
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["qemu-img"], stderr="qemu-img: Could not create file: No space left on device\n"
        )

        with pytest.raises(ProvisioningFailedError) as exc_info:
            disk_service.create_disk_image(str(tmp_path / "vms" / "web-01.qcow2"), 20)

        assert "No space left on device" in exc_info.value.message
        assert exc_info.value.code == "PROVISIONING_FAILED"

    @patch("vmhost.services.disk_service.subprocess.run", side_effect=FileNotFoundError("qemu-img"))
    def test_missing_tool(self, mock_run, disk_service, tmp_path):
        with pytest.raises(ProvisioningFailedError):
            disk_service.create_disk_image(str(tmp_path / "vms" / "web-01.qcow2"), 20)

    @patch("vmhost.services.disk_service.subprocess.run")
    def test_existing_image_is_never_overwritten(self, mock_run, disk_service, tmp_path):
        path = tmp_path / "existing.qcow2"
        path.write_bytes(b"data")

        with pytest.raises(ProvisioningFailedError):
            disk_service.create_disk_image(str(path), 20)

        mock_run.assert_not_called()
        assert path.read_bytes() == b"data"

    @patch("vmhost.services.disk_service.subprocess.run")
    def test_overlay_on_backing_image(self, mock_run, disk_service, tmp_path):
        """기준 이미지가 있으면 -b/-F가 경로보다 앞에 오고, 크기를 생략하면 기준 이미지 크기를 따릅니다."""
        path = str(tmp_path / "vms" / "web-02.qcow2")

        disk_service.create_disk_image(path, None, "qcow2", backing_file="/srv/templates/base.qcow2")

        mock_run.assert_called_once_with(
            ["qemu-img", "create", "-f", "qcow2", "-b", "/srv/templates/base.qcow2", "-F", "qcow2", path],
            check=True, capture_output=True, text=True,
        )

    @patch("vmhost.services.disk_service.subprocess.run")
    def test_overlay_can_grow_beyond_backing_image(self, mock_run, disk_service, tmp_path):
        path = str(tmp_path / "vms" / "web-02.qcow2")

        disk_service.create_disk_image(path, 40, backing_file="/srv/templates/base.img", backing_format="raw")

        assert mock_run.call_args.args[0] == [
            "qemu-img", "create", "-f", "qcow2", "-b", "/srv/templates/base.img", "-F", "raw", path, "40G",
        ]

    @patch("vmhost.services.disk_service.subprocess.run")
    def test_size_or_backing_image_is_required(self, mock_run, disk_service, tmp_path):
        with pytest.raises(InvalidConfigurationError):
            disk_service.create_disk_image(str(tmp_path / "vms" / "web-01.qcow2"), None)
        mock_run.assert_not_called()

    @patch("vmhost.services.disk_service.subprocess.run")
    def test_overlay_must_be_qcow2(self, mock_run, disk_service, tmp_path):
        with pytest.raises(InvalidConfigurationError):
            disk_service.create_disk_image(
                str(tmp_path / "vms" / "web-01.img"), None, "raw", backing_file="/srv/templates/base.qcow2"
            )
        mock_run.assert_not_called()


class TestDeleteDiskImage:
    def test_deletes_file(self, disk_service, tmp_path):
        path = tmp_path / "web-01.qcow2"
        path.write_bytes(b"disk")

        assert disk_service.delete_disk_image(str(path)) is True
        assert not path.exists()

    def test_missing_file_is_not_an_error(self, disk_service, tmp_path):
        assert disk_service.delete_disk_image(str(tmp_path / "missing.qcow2")) is False


class TestInternalSnapshots:
    @pytest.mark.parametrize("method, flag", [
        ("create_snapshot", "-c"),
        ("apply_snapshot", "-a"),
        ("delete_snapshot", "-d"),
    ])
    @patch("vmhost.services.disk_service.subprocess.run")
    def test_runs_qemu_img_snapshot(self, mock_run, disk_service, method, flag):
        getattr(disk_service, method)("/srv/vms/web-01.qcow2", "before-upgrade")

        mock_run.assert_called_once_with(
            ["qemu-img", "snapshot", flag, "before-upgrade", "/srv/vms/web-01.qcow2"],
            check=True, capture_output=True, text=True,
        )

    @patch("vmhost.services.disk_service.subprocess.run")
    def test_failure_carries_stderr(self, mock_run, disk_service):
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["qemu-img"], stderr="qemu-img: Could not apply snapshot 'nope': No such file or directory\n"
        )

        with pytest.raises(ProvisioningFailedError) as exc_info:
            disk_service.apply_snapshot("/srv/vms/web-01.qcow2", "nope")

        assert "Could not apply snapshot 'nope'" in exc_info.value.message
