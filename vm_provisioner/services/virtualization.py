"""Boundary to the host virtualization engine.

The engine is opaque: it knows where the latest compatible restore image
lives, how to turn a bundle plus launch configuration into a machine
configuration it can run, and how to install an OS from a restore image.
This module defines what the rest of the package expects from it and how
default sizing is chosen for the host.
"""

from __future__ import annotations

import importlib
import os
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import psutil

from vm_provisioner.config import settings
from vm_provisioner.domain import LaunchConfiguration
from vm_provisioner.storage.bundle import BundleLayout
from vm_provisioner.storage.exceptions import EngineError


GIB = 1024**3

MIN_CPU_COUNT = 1
MIN_MEMORY_GIB = 2
MIN_STORAGE_GIB = 16


class VirtualizationEngine(Protocol):
    """What the provisioning pipeline needs from the virtualization engine.

    ``build_configuration`` is responsible for creating the auxiliary
    storage, hardware model and machine identifier files in the bundle.
    Fractions passed to ``progress`` are in [0.0, 1.0].
    """

    async def fetch_latest_restore_image_url(self) -> str:
        ...

    async def build_configuration(
        self, layout: BundleLayout, config: LaunchConfiguration
    ) -> Any:
        ...

    async def install(
        self,
        configuration: Any,
        restore_image: Path,
        progress: Callable[[float], None],
    ) -> None:
        ...


EngineFactory = Callable[[], VirtualizationEngine]


def load_engine(target: str | None = None) -> VirtualizationEngine:
    """Instantiate an engine from a ``"package.module:factory"`` string.

    Falls back to the ``virtualization_engine`` setting.

    Raises:
        ValueError: If no engine is configured or the target is malformed
        ImportError / AttributeError: If the module or factory cannot be found
    """
    target = target or settings.get_setting("virtualization_engine")
    if not target:
        raise ValueError("No virtualization engine configured (setting 'virtualization_engine')")
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Engine must be given as 'module:factory', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    return factory()


def recommended_cpu_count(minimum: int = MIN_CPU_COUNT, maximum: int | None = None) -> int:
    """One core fewer than the host has, within bounds."""
    available = os.cpu_count() or 1
    maximum = maximum or available
    return min(max(available - 1, minimum), maximum)


def recommended_memory_gib(minimum: int = MIN_MEMORY_GIB, maximum: int | None = None) -> int:
    """Half of physical memory in whole GiB, within bounds."""
    total = psutil.virtual_memory().total
    recommendation = (total // 2) // GIB
    if maximum is not None:
        recommendation = min(recommendation, maximum)
    return max(recommendation, minimum)


def recommended_storage_gib(location: Path | None = None) -> int:
    """Default disk size, or half the free space at ``location`` if given."""
    default = settings.get_int("default_storage_gib", settings.DEFAULT_STORAGE_GIB)
    if location is None:
        return default
    try:
        usage = shutil.disk_usage(location)
    except OSError:
        return default
    return max(usage.free // 2 // GIB, MIN_STORAGE_GIB)


def recommended_launch_configuration(location: Path | None = None) -> LaunchConfiguration:
    return LaunchConfiguration(
        cpu_cores=recommended_cpu_count(),
        memory_gib=recommended_memory_gib(),
        storage_gib=recommended_storage_gib(location),
    )


async def call_engine(action: str, awaitable: Awaitable[Any]) -> Any:
    """Await an engine call, wrapping anything it raises in EngineError."""
    try:
        return await awaitable
    except Exception as error:
        raise EngineError(action, error) from error
