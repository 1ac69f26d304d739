"""azfilevol modules - Self-contained bricks following the brick philosophy

Each module is a self-contained component with clear contracts:
- Volume ID: Encode and decode the opaque volume identifier
- Credentials: Resolve storage account name/key from request secrets
- Share Name: Derive provider-legal Azure Files share names
- Mount Health: Detect corrupted mount points before reuse
- Mount Options: Fill in SMB mount option defaults
- Host Mounter: Blocking mount/loop/format primitives on the node
- Share Mount: Stage and unstage the raw SMB share
- VHD Footer: Fixed VHD footer codec
- VHD Manager: Loop-attach, format and mount VHD files as block volumes
- Storage Client: Azure Files control-plane and data-plane operations
"""

from . import (
    credentials,
    host_mounter,
    mount_health,
    mount_options,
    share_mount,
    share_name,
    storage_client,
    vhd_footer,
    vhd_manager,
    volume_id,
)

__all__ = [
    "credentials",
    "host_mounter",
    "mount_health",
    "mount_options",
    "share_mount",
    "share_name",
    "storage_client",
    "vhd_footer",
    "vhd_manager",
    "volume_id",
]
