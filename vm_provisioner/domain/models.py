"""Domain model for VM provisioning.

Type-safe value objects shared by the storage layer, the provisioning
pipeline and the edit flow.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


UINT64_MAX = 2**64 - 1


# ==============================================================================
# Launch Configuration Domain
# ==============================================================================


@dataclass(frozen=True)
class LaunchConfiguration:
    """CPU, memory and storage sizing for one VM instance.

    Bounds against the host are checked by the virtualization engine, not
    here. The only invariant enforced locally is that every field fits in
    an unsigned 64-bit integer, since that is what the metadata file holds.
    """

    cpu_cores: int = 0
    memory_gib: int = 0
    storage_gib: int = 0

    def __post_init__(self) -> None:
        for name in ("cpu_cores", "memory_gib", "storage_gib"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"{name} must be an int, got {type(value).__name__}")
            if value < 0 or value > UINT64_MAX:
                raise ValueError(f"{name} out of range for an unsigned 64-bit value: {value}")

    @property
    def memory_bytes(self) -> int:
        return self.memory_gib * 1024**3

    def with_changes(self, **changes: Any) -> LaunchConfiguration:
        """Return a copy with the given fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def format_label(self) -> str:
        """e.g. "4 CPU, 8 GiB RAM, 64 GiB disk"."""
        return (
            f"{self.cpu_cores} CPU, {self.memory_gib} GiB RAM, "
            f"{self.storage_gib} GiB disk"
        )


# ==============================================================================
# Provisioning State Domain
# ==============================================================================


class ProvisioningStage(Enum):
    """Stage of an in-flight provisioning operation."""

    ACQUIRING_DESTINATION = "acquiring_destination"
    COPYING_OR_DOWNLOADING_IMAGE = "copying_or_downloading_image"
    CREATING_AUXILIARY_FILES = "creating_auxiliary_files"
    INSTALLING = "installing"
    CLEANING_UP = "cleaning_up"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProvisioningStage.COMPLETE, ProvisioningStage.FAILED)


@dataclass(frozen=True)
class ProvisioningState:
    """Snapshot of a provisioning operation.

    ``fraction`` is only set for COPYING_OR_DOWNLOADING_IMAGE (downloads; a
    local copy reports None) and INSTALLING. ``reason`` is only set for FAILED.
    """

    stage: ProvisioningStage
    fraction: float | None = None
    reason: str | None = None

    @classmethod
    def acquiring_destination(cls) -> ProvisioningState:
        return cls(ProvisioningStage.ACQUIRING_DESTINATION)

    @classmethod
    def copying_or_downloading(cls, fraction: float | None) -> ProvisioningState:
        return cls(ProvisioningStage.COPYING_OR_DOWNLOADING_IMAGE, fraction=fraction)

    @classmethod
    def creating_auxiliary_files(cls) -> ProvisioningState:
        return cls(ProvisioningStage.CREATING_AUXILIARY_FILES)

    @classmethod
    def installing(cls, fraction: float) -> ProvisioningState:
        return cls(ProvisioningStage.INSTALLING, fraction=fraction)

    @classmethod
    def cleaning_up(cls) -> ProvisioningState:
        return cls(ProvisioningStage.CLEANING_UP)

    @classmethod
    def complete(cls) -> ProvisioningState:
        return cls(ProvisioningStage.COMPLETE)

    @classmethod
    def failed(cls, reason: str) -> ProvisioningState:
        return cls(ProvisioningStage.FAILED, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    def format_label(self) -> str:
        label = self.stage.value.replace("_", " ").capitalize()
        if self.fraction is not None:
            label = f"{label} {self.fraction * 100:.1f}%"
        if self.reason:
            label = f"{label}: {self.reason}"
        return label


# ==============================================================================
# Edit Flow Domain
# ==============================================================================


class SaveStage(Enum):
    RESIZING_DISK = "resizing_disk"
    SAVING_METADATA = "saving_metadata"


@dataclass(frozen=True)
class SaveProgress:
    """Progress of saving an edited launch configuration."""

    stage: SaveStage
    percentage: int | None = None

    @classmethod
    def resizing(cls, percentage: int) -> SaveProgress:
        return cls(SaveStage.RESIZING_DISK, percentage=percentage)

    @classmethod
    def saving(cls) -> SaveProgress:
        return cls(SaveStage.SAVING_METADATA)


# ==============================================================================
# Instance Record Domain
# ==============================================================================


@dataclass
class InstanceRecord:
    """Persisted record for one provisioned VM.

    ``token`` is the only durable handle on the bundle; ``bundle_path`` is
    kept alongside it for display and for re-minting.
    """

    name: str
    bundle_path: Path
    token: bytes
    created_at: datetime | None = None
    last_ran_at: datetime | None = None
    is_linked: bool = True
    record_id: str = field(default="")

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "name": self.name,
            "bundle_path": str(self.bundle_path),
            "token": self.token.hex(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_ran_at": self.last_ran_at.isoformat() if self.last_ran_at else None,
            "is_linked": self.is_linked,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstanceRecord:
        """Convert a stored dict back to a record.

        Raises:
            KeyError: If required keys (name, bundle_path, token) are missing
            ValueError: If the token is not valid hex or a timestamp is malformed
        """
        created_at = data.get("created_at")
        last_ran_at = data.get("last_ran_at")
        return cls(
            record_id=data.get("record_id", ""),
            name=data["name"],
            bundle_path=Path(data["bundle_path"]),
            token=bytes.fromhex(data["token"]),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
            last_ran_at=datetime.fromisoformat(last_ran_at) if last_ran_at else None,
            is_linked=bool(data.get("is_linked", True)),
        )
