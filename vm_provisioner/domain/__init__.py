"""Domain models for VM provisioning."""

from __future__ import annotations

from .models import (
    UINT64_MAX,
    InstanceRecord,
    LaunchConfiguration,
    ProvisioningStage,
    ProvisioningState,
    SaveProgress,
    SaveStage,
)


__all__ = [
    "UINT64_MAX",
    "InstanceRecord",
    "LaunchConfiguration",
    "ProvisioningStage",
    "ProvisioningState",
    "SaveProgress",
    "SaveStage",
]
