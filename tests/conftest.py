"""
Pytest configuration and shared fixtures for vm-provisioner tests.

This module provides common fixtures and utilities used across all test modules.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

from vm_provisioner.config import settings
from vm_provisioner.domain import LaunchConfiguration
from vm_provisioner.storage.bundle import BundleLayout, create_bundle_directory
from vm_provisioner.storage.capability import FileCapabilityBroker
from vm_provisioner.storage.metadata import write_launch_configuration


# ==============================================================================
# Bundle Fixtures
# ==============================================================================


@pytest.fixture
def container_dir(tmp_path) -> Path:
    """
    Fixture providing an empty directory to provision bundles into.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.
    """
    container = tmp_path / "vms"
    container.mkdir()
    return container


@pytest.fixture
def launch_config() -> LaunchConfiguration:
    """Fixture providing a typical launch configuration."""
    return LaunchConfiguration(cpu_cores=4, memory_gib=8, storage_gib=40)


@pytest.fixture
def bundle_layout(container_dir) -> BundleLayout:
    """Fixture providing a layout for a bundle that does not exist yet."""
    return BundleLayout.from_container(container_dir, "TestVM")


@pytest.fixture
def complete_bundle(bundle_layout, launch_config) -> BundleLayout:
    """
    Fixture providing a bundle with every file needed to launch it.

    Returns:
        BundleLayout whose required files all exist and whose metadata decodes.
    """
    create_bundle_directory(bundle_layout)
    for path in (
        bundle_layout.disk_image,
        bundle_layout.auxiliary_storage,
        bundle_layout.hardware_model,
        bundle_layout.machine_identifier,
    ):
        path.write_bytes(b"\0" * 16)
    write_launch_configuration(bundle_layout.metadata, launch_config)
    return bundle_layout


@pytest.fixture
def broker() -> FileCapabilityBroker:
    """Fixture providing a filesystem-backed capability broker."""
    return FileCapabilityBroker()


# ==============================================================================
# Collaborator Fakes
# ==============================================================================


class FakeEngine:
    """
    In-memory virtualization engine.

    ``build_configuration`` writes the engine-owned bundle files the way a
    real engine would, and ``install`` reports the given fractions.
    """

    def __init__(
        self,
        url: str = "https://updates.example.com/restore/latest.ipsw",
        install_fractions: Optional[List[float]] = None,
    ):
        self.url = url
        self.install_fractions = install_fractions if install_fractions is not None else [0.5, 1.0]
        self.fetch_error: Optional[Exception] = None
        self.install_error: Optional[Exception] = None
        self.configurations: List[Any] = []
        self.installed_from: List[Path] = []

    async def fetch_latest_restore_image_url(self) -> str:
        if self.fetch_error:
            raise self.fetch_error
        return self.url

    async def build_configuration(self, layout, config):
        for path in (layout.auxiliary_storage, layout.hardware_model, layout.machine_identifier):
            path.write_bytes(b"engine")
        configuration = {"bundle": layout.path, "config": config}
        self.configurations.append(configuration)
        return configuration

    async def install(self, configuration, restore_image, progress):
        if self.install_error:
            raise self.install_error
        self.installed_from.append(restore_image)
        for fraction in self.install_fractions:
            progress(fraction)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fake_operator() -> Mock:
    """
    Fixture providing a DiskImageOperator stand-in.

    ``create`` writes an empty file at the requested path; ``resize``
    reports 0, 50 and 100 percent.
    """
    operator = Mock()

    async def create(path, size_gib):
        Path(path).write_bytes(b"")

    async def resize(path, size_gib, progress_sink):
        for percentage in (0, 50, 100):
            progress_sink(percentage)

    operator.create = AsyncMock(side_effect=create)
    operator.resize = AsyncMock(side_effect=resize)
    return operator


@pytest.fixture
def fake_downloader() -> Mock:
    """Fixture providing a RestoreImageDownloader stand-in that writes a small file."""
    downloader = Mock()

    async def download(url, destination, progress_callback=None):
        Path(destination).write_bytes(b"ipsw")
        if progress_callback:
            for fraction in (0.25, 0.75, 1.0):
                progress_callback(fraction)
        return Path(destination)

    downloader.download = AsyncMock(side_effect=download)
    return downloader


# ==============================================================================
# Helper Process Fakes
# ==============================================================================


class FakeStream:
    """Readable stream returning predefined chunks, then EOF."""

    def __init__(self, chunks: List[bytes]):
        self._chunks = list(chunks)

    async def read(self, n: int = -1) -> bytes:
        if not self._chunks:
            return b""
        return self._chunks.pop(0)


class FakeProcess:
    """Minimal asyncio.subprocess.Process stand-in."""

    def __init__(self, chunks: Optional[List[bytes]] = None, returncode: int = 0):
        self.stdout = FakeStream(chunks or [])
        self._output = b"".join(chunks or [])
        self._returncode = returncode
        self.returncode: Optional[int] = None

    async def wait(self) -> int:
        self.returncode = self._returncode
        return self._returncode

    async def communicate(self, input=None):
        self.returncode = self._returncode
        return self._output, None


@pytest.fixture
def fake_process_factory():
    """Fixture returning a factory for FakeProcess objects."""
    return FakeProcess


@pytest.fixture
def mock_create_subprocess(mocker):
    """Patch asyncio.create_subprocess_exec where the disk helpers use it."""
    return mocker.patch(
        "vm_provisioner.storage.disk.command_runners.asyncio.create_subprocess_exec",
        new_callable=AsyncMock,
    )


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.
    """
    settings_dir = tmp_path / "config"
    settings_dir.mkdir()
    return settings_dir / "settings.json"


@pytest.fixture
def sample_settings_data() -> Dict[str, Any]:
    """Fixture providing sample settings data."""
    return {
        "disk_helper_path": "/opt/helpers/diskimage",
        "disk_helper_privilege_command": ["sudo", "-n"],
        "default_storage_gib": 80,
    }


@pytest.fixture(autouse=True)
def reset_global_state(tmp_path, monkeypatch):
    """
    Auto-use fixture that resets settings before each test.

    Settings are reloaded from defaults and never written to the real
    settings file.
    """
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings" / "settings.json")
    settings.load_settings()
    settings.settings_store.values["instance_store_path"] = str(tmp_path / "instances.json")
    yield
    settings.load_settings()
