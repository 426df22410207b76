"""Custom exceptions for bundle, disk and provisioning operations.

Every failure that can originate from untrusted input (a corrupted metadata
file, a helper that exits non-zero, a flaky network) is reported through one
of these types so callers can recover instead of crashing.

Exception Hierarchy:
    ProvisionerError (base)
        ├── MetadataError
        │   ├── MetadataDecodeError
        │   ├── MetadataReadError
        │   └── MetadataWriteError
        ├── BundleError
        │   ├── UnsupportedBundleExtensionError
        │   ├── BundleCreationError
        │   └── BundleIncompleteError
        ├── DiskOperationError
        │   ├── DiskHelperLaunchError
        │   └── DiskHelperExitError
        ├── FileOperationError
        │   ├── FileCopyError
        │   ├── FileMoveError
        │   ├── DownloadWriteError
        │   └── CleanupError
        ├── RestoreImageError
        │   ├── RestoreImageNetworkError
        │   ├── RestoreImageResponseError
        │   └── RestoreImageMissingError
        ├── ProvisioningError
        │   ├── AlreadyInProgressError
        │   ├── ProvisioningCancelledError
        │   ├── AuxiliaryFilesIncompleteError
        │   └── EngineError
        ├── CapabilityError
        │   └── CapabilityResolutionError
        └── InstanceNotFoundError

Usage:
    from vm_provisioner.storage.exceptions import DiskHelperExitError

    if returncode != 0:
        raise DiskHelperExitError("create", returncode)
"""

from __future__ import annotations

from pathlib import Path


class ProvisionerError(Exception):
    """Base exception for all provisioning operations."""


class MetadataError(ProvisionerError):
    """Base exception for launch configuration metadata errors."""


class MetadataDecodeError(MetadataError):
    """Metadata bytes do not have the expected structure."""

    def __init__(self, reason: str, length: int | None = None):
        self.reason = reason
        self.length = length
        super().__init__(f"Malformed launch metadata: {reason}")


class MetadataReadError(MetadataError):
    """Metadata file could not be read."""

    def __init__(self, path: Path, error: OSError):
        self.path = Path(path)
        self.error = error
        super().__init__(f"Failed to read metadata at {self.path}: {error}")


class MetadataWriteError(MetadataError):
    """Metadata file could not be written."""

    def __init__(self, path: Path, error: OSError):
        self.path = Path(path)
        self.error = error
        super().__init__(f"Failed to write metadata at {self.path}: {error}")


class BundleError(ProvisionerError):
    """Base exception for bundle layout errors."""


class UnsupportedBundleExtensionError(BundleError):
    """Path does not carry the bundle suffix."""

    def __init__(self, path: Path, expected_suffix: str):
        self.path = Path(path)
        self.expected_suffix = expected_suffix
        super().__init__(
            f"Unsupported bundle path {self.path}: expected a '{expected_suffix}' suffix"
        )


class BundleCreationError(BundleError):
    """Bundle directory structure could not be created."""

    def __init__(self, path: Path, error: OSError):
        self.path = Path(path)
        self.error = error
        super().__init__(f"Failed to create bundle at {self.path}: {error}")


class BundleIncompleteError(BundleError):
    """Bundle is missing files required to launch it."""

    def __init__(self, path: Path, missing: list[Path]):
        self.path = Path(path)
        self.missing = list(missing)
        missing_str = ", ".join(item.name for item in self.missing)
        super().__init__(f"Bundle {self.path} is missing required files: {missing_str}")


class DiskOperationError(ProvisionerError):
    """Base exception for disk helper invocations."""


class DiskHelperLaunchError(DiskOperationError):
    """Helper process could not be spawned (missing, not permitted)."""

    def __init__(self, command: list[str], error: OSError):
        self.command = list(command)
        self.error = error
        super().__init__(f"Failed to launch disk helper {self.command[0]}: {error}")


class DiskHelperExitError(DiskOperationError):
    """Helper process exited with a non-zero status."""

    def __init__(self, operation: str, exit_code: int, message: str | None = None):
        self.operation = operation
        self.exit_code = exit_code
        self.message = message
        detail = message or f"Failed to {operation} disk image"
        super().__init__(f"{detail} (exit code {exit_code})")


class FileOperationError(ProvisionerError):
    """Base exception for copy/move/delete failures."""


class FileCopyError(FileOperationError):
    """Copying a file into the bundle failed."""

    def __init__(self, source: Path, destination: Path, error: OSError):
        self.source = Path(source)
        self.destination = Path(destination)
        self.error = error
        super().__init__(f"Failed to copy {self.source} to {self.destination}: {error}")


class FileMoveError(FileOperationError):
    """Moving a downloaded file into the bundle failed."""

    def __init__(self, source: Path, destination: Path, error: OSError):
        self.source = Path(source)
        self.destination = Path(destination)
        self.error = error
        super().__init__(f"Failed to move {self.source} to {self.destination}: {error}")


class DownloadWriteError(FileOperationError):
    """A download could not be written to its temporary file."""

    def __init__(self, temp_path: Path | None, destination: Path, error: OSError):
        self.temp_path = Path(temp_path) if temp_path is not None else None
        self.destination = Path(destination)
        self.error = error
        target = self.temp_path or self.destination.parent
        super().__init__(f"Failed to write download {target} for {self.destination}: {error}")


class CleanupError(FileOperationError):
    """Deleting a consumed file failed."""

    def __init__(self, path: Path, error: OSError, token: bytes | None = None):
        self.path = Path(path)
        self.error = error
        self.token = token
        super().__init__(f"Failed to clean up {self.path}: {error}")


class RestoreImageError(ProvisionerError):
    """Base exception for restore image retrieval."""


class RestoreImageNetworkError(RestoreImageError):
    """The restore image could not be fetched (no network, reset, timeout)."""

    def __init__(self, url: str, error: Exception):
        self.url = url
        self.error = error
        super().__init__(f"Network error while downloading {url}: {error}")


class RestoreImageResponseError(RestoreImageError):
    """The server answered with a non-200 status."""

    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status
        super().__init__(f"Unexpected HTTP status {status} while downloading {url}")


class RestoreImageMissingError(RestoreImageError):
    """The downloaded temporary file vanished before it could be moved."""

    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(f"Downloaded restore image is missing at {self.path}")


class ProvisioningError(ProvisionerError):
    """Base exception for provisioning pipeline failures."""


class AlreadyInProgressError(ProvisioningError):
    """A provisioning operation is already running on this pipeline."""

    def __init__(self, active_bundle: Path | None = None):
        self.active_bundle = active_bundle
        msg = "A provisioning operation is already in progress"
        if active_bundle is not None:
            msg += f" for {active_bundle}"
        super().__init__(msg)


class ProvisioningCancelledError(ProvisioningError):
    """Provisioning was cancelled at a step boundary."""

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Provisioning cancelled before {stage}")


class AuxiliaryFilesIncompleteError(ProvisioningError):
    """Disk image was created but the metadata could not be written.

    The bundle is left as is; it is not rolled back.
    """

    def __init__(self, disk_image: Path, error: Exception):
        self.disk_image = Path(disk_image)
        self.error = error
        super().__init__(
            f"Disk image {self.disk_image} was created but metadata could not be "
            f"written: {error}"
        )


class EngineError(ProvisioningError):
    """Wraps an error raised by the virtualization engine."""

    def __init__(self, action: str, error: Exception):
        self.action = action
        self.error = error
        super().__init__(f"Virtualization engine failed while {action}: {error}")


class CapabilityError(ProvisionerError):
    """Base exception for capability token handling."""


class CapabilityResolutionError(CapabilityError):
    """Token could not be resolved to a path at all."""

    def __init__(self, reason: str, path: Path | None = None):
        self.reason = reason
        self.path = path
        msg = f"Could not resolve capability token: {reason}"
        if path is not None:
            msg += f" ({path})"
        super().__init__(msg)


class InstanceNotFoundError(ProvisionerError):
    """No instance record with the given id."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Instance not found: {record_id}")
