"""
azfilevol Data Models

Request and result dataclasses exchanged with the orchestration layer.

Philosophy:
- Zero dependencies on other azfilevol modules
- Self-contained data definitions
- Secrets never appear in repr()
"""

from .volume_models import (
    CreateVolumeRequest,
    NodePublishRequest,
    NodeStageRequest,
    NodeUnpublishRequest,
    NodeUnstageRequest,
    SnapshotInfo,
    VolumeInfo,
)

__all__ = [
    "CreateVolumeRequest",
    "NodePublishRequest",
    "NodeStageRequest",
    "NodeUnpublishRequest",
    "NodeUnstageRequest",
    "SnapshotInfo",
    "VolumeInfo",
]
