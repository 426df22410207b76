"""Saving edited launch configurations.

Storage changes need the disk image resized by the helper before the new
configuration is written; CPU and memory changes only touch the metadata.
"""

from __future__ import annotations

import asyncio
from typing import Callable

from vm_provisioner.domain import LaunchConfiguration, SaveProgress
from vm_provisioner.logging import operation_context
from vm_provisioner.storage.bundle import BundleLayout
from vm_provisioner.storage.capability import CapabilityTokenBroker
from vm_provisioner.storage.disk import DiskImageOperator
from vm_provisioner.storage.metadata import write_launch_configuration


async def save_launch_configuration(
    layout: BundleLayout,
    previous: LaunchConfiguration,
    updated: LaunchConfiguration,
    operator: DiskImageOperator,
    broker: CapabilityTokenBroker,
    progress_sink: Callable[[SaveProgress], None] | None = None,
) -> bool:
    """Apply an edited configuration to a bundle.

    The resize is skipped when the storage size is unchanged, and the
    metadata is only rewritten when anything differs from ``previous``.
    Callers must not run two saves against the same bundle at once.

    Returns:
        True if the metadata file was rewritten

    Raises:
        DiskOperationError: If the resize fails; metadata is left untouched
        MetadataWriteError: If the new metadata cannot be written
    """

    def emit(progress: SaveProgress) -> None:
        if progress_sink:
            progress_sink(progress)

    with operation_context("edit", bundle=str(layout.path)) as log:
        with broker.scoped_access(layout.path):
            if previous.storage_gib != updated.storage_gib:
                emit(SaveProgress.resizing(0))
                await operator.resize(
                    layout.disk_image,
                    updated.storage_gib,
                    lambda percentage: emit(SaveProgress.resizing(percentage)),
                )
            else:
                log.debug("Storage size unchanged, skipping resize")

            emit(SaveProgress.saving())
            if previous == updated:
                log.info("Launch configuration unchanged")
                return False

            await asyncio.to_thread(write_launch_configuration, layout.metadata, updated)
            log.info(f"Saved launch configuration: {updated.format_label()}")
            return True
