"""Tests for the virtualization engine boundary (services/virtualization.py)."""

import sys
import types
from collections import namedtuple
from unittest.mock import Mock

import pytest

from vm_provisioner.config import settings
from vm_provisioner.domain import LaunchConfiguration
from vm_provisioner.services import virtualization
from vm_provisioner.services.virtualization import (
    GIB,
    call_engine,
    load_engine,
    recommended_cpu_count,
    recommended_launch_configuration,
    recommended_memory_gib,
    recommended_storage_gib,
)
from vm_provisioner.storage.exceptions import EngineError

DiskUsage = namedtuple("DiskUsage", "total used free")


@pytest.fixture
def engine_module(monkeypatch):
    """Register an importable module exposing an engine factory."""
    module = types.ModuleType("fake_engine_module")
    module.create_engine = Mock(return_value="engine-instance")
    monkeypatch.setitem(sys.modules, "fake_engine_module", module)
    return module


class TestLoadEngine:
    """Tests for load_engine()."""

    def test_explicit_target(self, engine_module):
        assert load_engine("fake_engine_module:create_engine") == "engine-instance"
        engine_module.create_engine.assert_called_once_with()

    def test_target_from_settings(self, engine_module):
        settings.settings_store.values["virtualization_engine"] = "fake_engine_module:create_engine"

        assert load_engine() == "engine-instance"

    def test_not_configured(self):
        with pytest.raises(ValueError, match="No virtualization engine configured"):
            load_engine()

    @pytest.mark.parametrize("target", ["fake_engine_module", ":create_engine", "fake_engine_module:"])
    def test_malformed_target(self, target):
        with pytest.raises(ValueError, match="module:factory"):
            load_engine(target)

    def test_missing_factory(self, engine_module):
        with pytest.raises(AttributeError):
            load_engine("fake_engine_module:nope")


class TestRecommendations:
    """Tests for default sizing."""

    def test_cpu_count_leaves_one_core(self, mocker):
        mocker.patch("vm_provisioner.services.virtualization.os.cpu_count", return_value=8)

        assert recommended_cpu_count() == 7

    def test_cpu_count_minimum(self, mocker):
        mocker.patch("vm_provisioner.services.virtualization.os.cpu_count", return_value=1)

        assert recommended_cpu_count() == 1

    def test_memory_is_half_of_physical(self, mocker):
        mocker.patch(
            "vm_provisioner.services.virtualization.psutil.virtual_memory",
            return_value=Mock(total=16 * GIB),
        )

        assert recommended_memory_gib() == 8

    def test_memory_minimum(self, mocker):
        mocker.patch(
            "vm_provisioner.services.virtualization.psutil.virtual_memory",
            return_value=Mock(total=1 * GIB),
        )

        assert recommended_memory_gib() == virtualization.MIN_MEMORY_GIB

    def test_storage_default(self):
        assert recommended_storage_gib() == 64

    def test_storage_default_from_settings(self):
        settings.settings_store.values["default_storage_gib"] = 100

        assert recommended_storage_gib() == 100

    def test_storage_half_of_free_space(self, mocker, tmp_path):
        mocker.patch(
            "vm_provisioner.services.virtualization.shutil.disk_usage",
            return_value=DiskUsage(1000 * GIB, 500 * GIB, 200 * GIB),
        )

        assert recommended_storage_gib(tmp_path) == 100

    def test_storage_unreadable_location(self, mocker, tmp_path):
        mocker.patch(
            "vm_provisioner.services.virtualization.shutil.disk_usage",
            side_effect=OSError("gone"),
        )

        assert recommended_storage_gib(tmp_path) == 64

    def test_launch_configuration(self, mocker):
        mocker.patch("vm_provisioner.services.virtualization.os.cpu_count", return_value=4)
        mocker.patch(
            "vm_provisioner.services.virtualization.psutil.virtual_memory",
            return_value=Mock(total=32 * GIB),
        )

        assert recommended_launch_configuration() == LaunchConfiguration(3, 16, 64)


class TestCallEngine:
    """Tests for call_engine()."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def ok():
            return 42

        assert await call_engine("testing", ok()) == 42

    @pytest.mark.asyncio
    async def test_wraps_errors(self):
        async def broken():
            raise RuntimeError("hypervisor unavailable")

        with pytest.raises(EngineError, match="while testing: hypervisor unavailable") as exc_info:
            await call_engine("testing", broken())

        assert isinstance(exc_info.value.__cause__, RuntimeError)
