"""VM provisioning pipeline.

Turns a name and a container directory into an installed VM bundle:

    ACQUIRING_DESTINATION      create <container>/<name>.bundle, mint its token
    COPYING_OR_DOWNLOADING     copy a local restore image, or download the latest
    CREATING_AUXILIARY_FILES   blank disk image + launch configuration metadata
    INSTALLING                 hand everything to the virtualization engine
    CLEANING_UP                delete the consumed restore image
    COMPLETE                   return the bundle's capability token

Any failure moves to FAILED and stops. Nothing is retried and nothing is
rolled back; a failed run is restarted by calling ``start_provisioning``
again, optionally with ``resume=True`` to reuse files an earlier attempt
already produced.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Callable

from vm_provisioner.domain import LaunchConfiguration, ProvisioningStage, ProvisioningState
from vm_provisioner.logging import LoggerFactory, ThrottledLogger
from vm_provisioner.storage.bundle import BundleLayout, create_bundle_directory
from vm_provisioner.storage.capability import CapabilityTokenBroker, FileCapabilityBroker
from vm_provisioner.storage.disk import DiskImageOperator
from vm_provisioner.storage.exceptions import (
    AlreadyInProgressError,
    AuxiliaryFilesIncompleteError,
    CleanupError,
    FileCopyError,
    MetadataWriteError,
    ProvisioningCancelledError,
)
from vm_provisioner.storage.metadata import write_launch_configuration

from .restore_image import RestoreImageDownloader
from .virtualization import (
    VirtualizationEngine,
    call_engine,
    recommended_launch_configuration,
)


StateObserver = Callable[[ProvisioningState], None]


class ProvisioningPipeline:
    """Runs one provisioning operation at a time.

    Observers registered with :meth:`on_state` see every state in order,
    synchronously, from the coroutine running the pipeline. Fractions within
    a stage only ever go up.
    """

    def __init__(
        self,
        engine: VirtualizationEngine,
        broker: CapabilityTokenBroker | None = None,
        operator: DiskImageOperator | None = None,
        downloader: RestoreImageDownloader | None = None,
        launch_configuration: LaunchConfiguration | None = None,
    ):
        self.engine = engine
        self.broker = broker or FileCapabilityBroker()
        self.operator = operator or DiskImageOperator()
        self.downloader = downloader or RestoreImageDownloader()
        self.launch_configuration = launch_configuration or recommended_launch_configuration()

        self.state: ProvisioningState | None = None
        self.history: list[ProvisioningState] = []
        self._observers: list[StateObserver] = []
        self._active_bundle: Path | None = None
        self._cancel_requested = False
        self._log = LoggerFactory.for_provisioning()

    # ------------------------------------------------------------------
    # Observation and control
    # ------------------------------------------------------------------

    def on_state(self, observer: StateObserver) -> Callable[[], None]:
        """Register an observer; returns a function that unregisters it."""
        self._observers.append(observer)

        def _remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _remove

    @property
    def is_running(self) -> bool:
        return self._active_bundle is not None

    def cancel(self) -> None:
        """Ask the running operation to stop at the next step boundary.

        A step already underway (a download, the helper process, the
        install) runs to completion first.
        """
        if self.is_running:
            self._log.info("Cancellation requested")
            self._cancel_requested = True

    def reset(self) -> None:
        """Forget a finished operation's state."""
        if self.state is not None and self.state.is_terminal:
            self.state = None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def start_provisioning(
        self,
        name: str,
        container: Path | str,
        local_image: Path | str | None = None,
        *,
        resume: bool = False,
    ) -> bytes:
        """Provision a new VM bundle called ``name`` inside ``container``.

        Args:
            name: Bundle name, without suffix
            container: Existing or creatable directory to hold the bundle
            local_image: Restore image to copy instead of downloading one
            resume: Reuse a restore image or disk image left in the bundle
                by an earlier failed attempt

        Returns:
            Capability token for the bundle root

        Raises:
            AlreadyInProgressError: Another operation is running on this pipeline
            ValueError: ``name`` is empty or contains a path separator
            ProvisionerError: Any step failure (see storage.exceptions)
        """
        if self.is_running:
            raise AlreadyInProgressError(self._active_bundle)
        if not name or "/" in name or name in (".", ".."):
            raise ValueError(f"Invalid bundle name: {name!r}")

        layout = BundleLayout.from_container(container, name)
        self._active_bundle = layout.path
        self._cancel_requested = False
        self.history = []
        self._log = LoggerFactory.for_provisioning(bundle=str(layout.path))
        self._log.info(
            f"Provisioning {layout.name} with {self.launch_configuration.format_label()}"
        )

        try:
            token = await self._run(layout, Path(container), local_image, resume)
        except asyncio.CancelledError:
            self._log.warning("Provisioning task was cancelled")
            self._transition(ProvisioningState.failed("cancelled"))
            raise
        except Exception as error:
            self._log.error(f"Provisioning failed: {error}")
            self._transition(ProvisioningState.failed(str(error)))
            raise
        finally:
            self._active_bundle = None
        self._log.success(f"Provisioned {layout.path}")
        return token

    async def _run(
        self,
        layout: BundleLayout,
        container: Path,
        local_image: Path | str | None,
        resume: bool,
    ) -> bytes:
        self._transition(ProvisioningState.acquiring_destination())
        with self.broker.scoped_access(container):
            create_bundle_directory(layout)
            token = self.broker.mint(layout.path)

        self._checkpoint(ProvisioningStage.COPYING_OR_DOWNLOADING_IMAGE)
        if resume and layout.restore_image.exists():
            self._log.info("Reusing restore image from an earlier attempt")
            self._transition(ProvisioningState.copying_or_downloading(1.0))
        elif local_image is not None:
            self._transition(ProvisioningState.copying_or_downloading(None))
            await self._copy_local_image(Path(local_image), layout)
        else:
            self._transition(ProvisioningState.copying_or_downloading(0.0))
            await self._download_restore_image(layout)

        self._checkpoint(ProvisioningStage.CREATING_AUXILIARY_FILES)
        self._transition(ProvisioningState.creating_auxiliary_files())
        await self._create_auxiliary_files(layout, skip_disk=resume and layout.disk_image.exists())

        self._checkpoint(ProvisioningStage.INSTALLING)
        self._transition(ProvisioningState.installing(0.0))
        await self._install(layout)

        # Installation already happened; no cancellation point before cleanup.
        self._transition(ProvisioningState.cleaning_up())
        try:
            await self._cleanup(layout)
        except CleanupError as error:
            error.token = token
            raise

        self._transition(ProvisioningState.complete())
        return token

    async def _copy_local_image(self, source: Path, layout: BundleLayout) -> None:
        destination = layout.restore_image
        self._log.info(f"Copying restore image from {source}")
        with self.broker.scoped_access(source):
            try:
                await asyncio.to_thread(shutil.copyfile, source, destination)
            except OSError as error:
                raise FileCopyError(source, destination, error) from error

    async def _download_restore_image(self, layout: BundleLayout) -> None:
        url = await call_engine(
            "fetching the latest restore image", self.engine.fetch_latest_restore_image_url()
        )
        relay = self._fraction_relay(ProvisioningState.copying_or_downloading)
        await self.downloader.download(url, layout.restore_image, relay)

    async def _create_auxiliary_files(self, layout: BundleLayout, skip_disk: bool = False) -> None:
        config = self.launch_configuration
        if skip_disk:
            self._log.info("Reusing disk image from an earlier attempt")
        else:
            await self.operator.create(layout.disk_image, config.storage_gib)
        try:
            write_launch_configuration(layout.metadata, config)
        except MetadataWriteError as error:
            self._log.error(
                f"Disk image exists but metadata write failed; bundle left as is: {error}"
            )
            raise AuxiliaryFilesIncompleteError(layout.disk_image, error) from error

    async def _install(self, layout: BundleLayout) -> None:
        configuration = await call_engine(
            "building the machine configuration",
            self.engine.build_configuration(layout, self.launch_configuration),
        )
        relay = self._fraction_relay(ProvisioningState.installing)
        await call_engine(
            "installing from the restore image",
            self.engine.install(configuration, layout.restore_image, relay),
        )

    async def _cleanup(self, layout: BundleLayout) -> None:
        try:
            await asyncio.to_thread(layout.restore_image.unlink)
        except OSError as error:
            raise CleanupError(layout.restore_image, error) from error

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    def _fraction_relay(
        self, make_state: Callable[[float], ProvisioningState]
    ) -> Callable[[float], None]:
        """Forward fractions as states, clamped to [0, 1] and only when they grow."""
        throttled = ThrottledLogger(self._log, interval_seconds=5.0)
        last = self.state.fraction if self.state and self.state.fraction is not None else 0.0

        def relay(fraction: float) -> None:
            nonlocal last
            fraction = max(0.0, min(1.0, float(fraction)))
            if fraction <= last:
                return
            last = fraction
            state = make_state(fraction)
            throttled.info(state.stage.value, state.format_label())
            self._transition(state)

        return relay

    def _checkpoint(self, next_stage: ProvisioningStage) -> None:
        if self._cancel_requested:
            raise ProvisioningCancelledError(next_stage.value)

    def _transition(self, state: ProvisioningState) -> None:
        self.state = state
        self.history.append(state)
        if state.fraction is None or state.fraction in (0.0, 1.0):
            self._log.debug(f"State: {state.format_label()}")
        for observer in list(self._observers):
            observer(state)
