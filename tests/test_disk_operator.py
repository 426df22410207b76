"""Tests for DiskImageOperator (storage/disk/operator.py)."""

from pathlib import Path

import pytest

from vm_provisioner.config import settings
from vm_provisioner.storage.disk import DiskImageOperator
from vm_provisioner.storage.exceptions import (
    DiskHelperExitError,
    DiskHelperLaunchError,
    DiskOperationError,
)


@pytest.fixture
def operator():
    return DiskImageOperator(helper_path="/usr/sbin/diskutil", image_format="ASIF", privilege_command=[])


class TestOperatorInit:
    """Test operator defaults."""

    def test_defaults_from_settings(self):
        """Test helper path, format and elevation come from settings."""
        settings.settings_store.values["disk_helper_path"] = "/opt/bin/imagetool"
        settings.settings_store.values["disk_image_format"] = "UDSP"
        settings.settings_store.values["disk_helper_privilege_command"] = ["sudo", "-n"]

        operator = DiskImageOperator()

        assert operator.helper_path == "/opt/bin/imagetool"
        assert operator.image_format == "UDSP"
        assert operator.privilege_command == ["sudo", "-n"]

    def test_builtin_defaults(self):
        operator = DiskImageOperator()

        assert operator.helper_path == settings.DEFAULT_DISK_HELPER_PATH
        assert operator.image_format == "ASIF"
        assert operator.privilege_command == []


class TestCreate:
    """Tests for DiskImageOperator.create()."""

    @pytest.mark.asyncio
    async def test_create_runs_helper(self, operator, mock_create_subprocess, fake_process_factory):
        mock_create_subprocess.return_value = fake_process_factory([b"created\n"])

        await operator.create(Path("/vms/TestVM.bundle/Disk.img"), 40)

        args = mock_create_subprocess.call_args.args
        assert args[:5] == ("/usr/sbin/diskutil", "image", "create", "blank", "--fs")
        assert "40GiB" in args
        assert args[-1] == "/vms/TestVM.bundle/Disk.img"

    @pytest.mark.asyncio
    async def test_create_exit_failure_mentions_exit_code(
        self, operator, mock_create_subprocess, fake_process_factory
    ):
        """Test a silent exit 1 reports the code."""
        mock_create_subprocess.return_value = fake_process_factory([], returncode=1)

        with pytest.raises(DiskHelperExitError) as exc_info:
            await operator.create(Path("/vms/Disk.img"), 40)

        assert exc_info.value.exit_code == 1
        assert "exit code 1" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_launch_failure_is_distinct(self, operator, mock_create_subprocess):
        """Test a helper that cannot start is not reported as an exit failure."""
        mock_create_subprocess.side_effect = PermissionError("not permitted")

        with pytest.raises(DiskHelperLaunchError) as exc_info:
            await operator.create(Path("/vms/Disk.img"), 40)

        assert not isinstance(exc_info.value, DiskHelperExitError)
        assert isinstance(exc_info.value, DiskOperationError)


class TestResize:
    """Tests for DiskImageOperator.resize() and iter_resize()."""

    @pytest.mark.asyncio
    async def test_resize_reports_progress(
        self, operator, mock_create_subprocess, fake_process_factory
    ):
        mock_create_subprocess.return_value = fake_process_factory(
            [b"[0% completed]\n[50% completed]\n", b"[100% completed]\n"]
        )
        received = []

        await operator.resize(Path("/vms/Disk.img"), 128, received.append)

        assert received == [0, 50, 100]
        args = mock_create_subprocess.call_args.args
        assert args[1:5] == ("image", "resize", "--size", "128GiB")

    @pytest.mark.asyncio
    async def test_iter_resize_streams_percentages(
        self, operator, mock_create_subprocess, fake_process_factory
    ):
        mock_create_subprocess.return_value = fake_process_factory(
            [b"[25% completed]\n[75% completed]\n[100% completed]\n"]
        )

        received = [p async for p in operator.iter_resize(Path("/vms/Disk.img"), 96)]

        assert received == [25, 75, 100]

    @pytest.mark.asyncio
    async def test_iter_resize_raises_after_last_value(
        self, operator, mock_create_subprocess, fake_process_factory
    ):
        """Test the stream yields what it saw, then raises the helper error."""
        mock_create_subprocess.return_value = fake_process_factory(
            [b"[10% completed]\nImage is in use\n"], returncode=16
        )
        received = []

        with pytest.raises(DiskHelperExitError, match="Image is in use"):
            async for percentage in operator.iter_resize(Path("/vms/Disk.img"), 96):
                received.append(percentage)

        assert received == [10]
