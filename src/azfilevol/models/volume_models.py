"""
Volume Request and Result Models

One dataclass per lifecycle verb input, plus the results handed back to
the orchestration layer.

Philosophy:
- Single responsibility: request/result data structures only
- Zero dependencies: No imports from other azfilevol modules
- Secret maps and cancel flags are excluded from repr() and comparisons
"""

import threading
from dataclasses import dataclass, field
from typing import Any


@dataclass
class CreateVolumeRequest:
    """Provision a new volume.

    Attributes:
        name: Volume name chosen by the orchestrator (source of the share name)
        capacity_bytes: Requested size; 0 means the configured default quota
        parameters: Storage class parameters (resourceGroup, storageAccount,
            shareName, fsType); keys are matched case-insensitively
        secrets: Optional secret map; without it the account key is fetched
            from the control plane
    """

    name: str
    capacity_bytes: int = 0
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] | None = field(default=None, repr=False, compare=False)


@dataclass
class VolumeInfo:
    """A provisioned volume."""

    volume_id: str
    capacity_bytes: int
    volume_context: dict[str, str] = field(default_factory=dict)

    @property
    def is_block_volume(self) -> bool:
        return bool(self.volume_context.get("fsType"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "volume_id": self.volume_id,
            "capacity_bytes": self.capacity_bytes,
            "volume_context": dict(self.volume_context),
        }


@dataclass
class SnapshotInfo:
    """A share snapshot.

    Attributes:
        snapshot_id: Volume id with the snapshot timestamp as last field
        source_volume_id: Volume the snapshot was taken from
        creation_time: Snapshot timestamp reported by Azure
    """

    snapshot_id: str
    source_volume_id: str
    creation_time: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "source_volume_id": self.source_volume_id,
            "creation_time": self.creation_time,
        }


@dataclass
class NodeStageRequest:
    """Mount a volume's share at a staging path (and attach its VHD)."""

    volume_id: str
    staging_path: str
    secrets: dict[str, str] | None = field(default=None, repr=False, compare=False)
    mount_options: list[str] = field(default_factory=list)
    fs_type: str = ""
    capacity_bytes: int | None = None
    cancel: threading.Event | None = field(default=None, repr=False, compare=False)


@dataclass
class NodePublishRequest:
    """Expose a staged volume at a workload path."""

    volume_id: str
    staging_path: str
    target_path: str
    readonly: bool = False
    mount_options: list[str] = field(default_factory=list)
    fs_type: str = ""
    cancel: threading.Event | None = field(default=None, repr=False, compare=False)


@dataclass
class NodeUnpublishRequest:
    volume_id: str
    target_path: str
    cancel: threading.Event | None = field(default=None, repr=False, compare=False)


@dataclass
class NodeUnstageRequest:
    volume_id: str
    staging_path: str
    cancel: threading.Event | None = field(default=None, repr=False, compare=False)


__all__ = [
    "CreateVolumeRequest",
    "NodePublishRequest",
    "NodeStageRequest",
    "NodeUnpublishRequest",
    "NodeUnstageRequest",
    "SnapshotInfo",
    "VolumeInfo",
]
