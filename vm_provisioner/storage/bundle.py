"""VM bundle directory layout.

A bundle is a directory named ``<name>.bundle`` that holds everything one VM
instance needs on disk. Every sub-path is derived from the root; nothing but
the root is ever stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from vm_provisioner.logging import LoggerFactory

from .exceptions import BundleCreationError, UnsupportedBundleExtensionError


log = LoggerFactory.for_bundle()

BUNDLE_SUFFIX = ".bundle"

DISK_IMAGE_NAME = "Disk.img"
AUXILIARY_STORAGE_NAME = "AuxiliaryStorage"
HARDWARE_MODEL_NAME = "HardwareModel"
MACHINE_IDENTIFIER_NAME = "MachineIdentifier"
RESTORE_IMAGE_NAME = "RestoreImage.ipsw"
SAVE_FILE_NAME = "SaveFile.vzvmsave"
METADATA_NAME = "Metadata"


@dataclass(frozen=True)
class BundleLayout:
    """Canonical paths inside one VM bundle.

    Accessors are plain path joins and never touch the filesystem.
    """

    path: Path

    @classmethod
    def from_container(cls, container: Path | str, name: str) -> BundleLayout:
        """Layout for a new bundle called ``name`` inside ``container``."""
        return cls(Path(container) / f"{name}{BUNDLE_SUFFIX}")

    @classmethod
    def from_path(cls, path: Path | str) -> BundleLayout:
        """Layout for an existing bundle path.

        Raises:
            UnsupportedBundleExtensionError: If the last component lacks the
                ``.bundle`` suffix
        """
        path = Path(path)
        if path.suffix != BUNDLE_SUFFIX:
            raise UnsupportedBundleExtensionError(path, BUNDLE_SUFFIX)
        return cls(path)

    @property
    def container(self) -> Path:
        return self.path.parent

    @property
    def name(self) -> str:
        """Bundle name without the suffix (e.g. "TestVM")."""
        return self.path.stem

    @property
    def disk_image(self) -> Path:
        return self.path / DISK_IMAGE_NAME

    @property
    def auxiliary_storage(self) -> Path:
        return self.path / AUXILIARY_STORAGE_NAME

    @property
    def hardware_model(self) -> Path:
        return self.path / HARDWARE_MODEL_NAME

    @property
    def machine_identifier(self) -> Path:
        return self.path / MACHINE_IDENTIFIER_NAME

    @property
    def restore_image(self) -> Path:
        """Transient; deleted once installation succeeds."""
        return self.path / RESTORE_IMAGE_NAME

    @property
    def save_file(self) -> Path:
        return self.path / SAVE_FILE_NAME

    @property
    def metadata(self) -> Path:
        return self.path / METADATA_NAME

    def required_files(self) -> list[Path]:
        """Files that must exist before the bundle can be launched."""
        return [
            self.disk_image,
            self.auxiliary_storage,
            self.hardware_model,
            self.machine_identifier,
            self.metadata,
        ]


def create_bundle_directory(layout: BundleLayout) -> Path:
    """Create the bundle root and any missing parents.

    An already existing root is fine; failing to create a parent is not.

    Raises:
        BundleCreationError: If the directory structure cannot be created
    """
    try:
        layout.path.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        log.error(f"Failed to create bundle directory {layout.path}: {error}")
        raise BundleCreationError(layout.path, error) from error
    log.debug(f"Bundle directory ready at {layout.path}")
    return layout.path
