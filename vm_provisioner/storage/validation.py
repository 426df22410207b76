"""Bundle health checks.

Provisioning is not transactional: an aborted run can leave a bundle with a
disk image but no metadata, or with the restore image still inside. These
helpers let callers find out what state a bundle is in before they try to
launch or repair it.

Example:
    from vm_provisioner.storage.validation import require_launchable

    try:
        require_launchable(layout)
    except BundleIncompleteError as error:
        print(error.missing)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .bundle import BundleLayout
from .exceptions import BundleIncompleteError, MetadataError
from .metadata import read_launch_configuration


@dataclass
class BundleHealth:
    layout: BundleLayout
    exists: bool
    missing: list[Path] = field(default_factory=list)
    restore_image_left_behind: bool = False
    metadata_error: MetadataError | None = None

    @property
    def is_launchable(self) -> bool:
        return self.exists and not self.missing and self.metadata_error is None


def inspect_bundle(layout: BundleLayout) -> BundleHealth:
    """Report which required files are present and whether metadata decodes."""
    if not layout.path.is_dir():
        return BundleHealth(layout=layout, exists=False, missing=[layout.path])

    health = BundleHealth(layout=layout, exists=True)
    health.missing = [path for path in layout.required_files() if not path.exists()]
    health.restore_image_left_behind = layout.restore_image.exists()

    if layout.metadata not in health.missing:
        try:
            read_launch_configuration(layout.metadata)
        except MetadataError as error:
            health.metadata_error = error
    return health


def require_launchable(layout: BundleLayout) -> None:
    """Raise if the bundle cannot be launched as it is.

    Raises:
        BundleIncompleteError: If the root or any required file is missing
        MetadataError: If the metadata file exists but cannot be decoded
    """
    health = inspect_bundle(layout)
    if health.missing:
        raise BundleIncompleteError(layout.path, health.missing)
    if health.metadata_error is not None:
        raise health.metadata_error
