"""Stage and unstage an Azure Files SMB share on the node.

Staging mounts the raw share at a node-local staging path. It is the first
step for both filesystem volumes (later bind-mounted to the workload) and
VHD block volumes (whose backing file lives inside the share).

Philosophy:
- Idempotent: a healthy mount of the same share is reused as-is
- Self-healing: a corrupted staging path is unmounted and mounted again,
  once, before the stage fails with MOUNT_CORRUPTED
- Secure: the account key only ever travels through mount.cifs' PASSWD

Public API:
    ShareMounter: Stage/unstage operations
"""

import logging
from collections.abc import Sequence
from pathlib import Path

from azfilevol.config import DriverConfig
from azfilevol.errors import MountCorruptedError, ProviderError
from azfilevol.modules.credentials import StorageAccountCredentials
from azfilevol.modules.host_mounter import HostMounter
from azfilevol.modules.mount_health import MountState, classify_mount_path, is_corrupted_mount
from azfilevol.modules.mount_options import MountOptionDefaults, append_default_mount_options
from azfilevol.modules.volume_id import VolumeIdentifier

logger = logging.getLogger(__name__)

SMB_FS_TYPE = "cifs"


class ShareMounter:
    """Mount Azure Files shares at staging paths."""

    def __init__(self, config: DriverConfig, host: HostMounter):
        self._config = config
        self._host = host
        self._defaults = MountOptionDefaults.from_config(config)

    def share_source(self, account_name: str, share_name: str) -> str:
        """Build the SMB source for a share.

        Returns:
            //<account>.file.<suffix>/<share>
        """
        return f"//{account_name}.file.{self._config.storage_endpoint_suffix}/{share_name}"

    def build_mount_options(
        self, credentials: StorageAccountCredentials, mount_options: Sequence[str] | None
    ) -> list[str]:
        """Fill in option defaults and the SMB user name."""
        options = append_default_mount_options(mount_options, self._defaults)
        if not any(option.split("=", 1)[0].strip() == "username" for option in options):
            options.append(f"username={credentials.account_name}")
        return options

    def stage(
        self,
        volume: VolumeIdentifier,
        credentials: StorageAccountCredentials,
        staging_path: str | Path,
        mount_options: Sequence[str] | None = None,
    ) -> bool:
        """Mount the volume's share at staging_path.

        Args:
            volume: Decoded volume identifier
            credentials: Resolved storage credentials
            staging_path: Node-local directory to mount on
            mount_options: Caller mount options

        Returns:
            True if a mount was performed, False if an existing mount was reused

        Raises:
            MountCorruptedError: If the staging path stayed corrupted after one remount
            ProviderError: If the path is mounted from another source or mount failed
        """
        staging_path = Path(staging_path)
        source = self.share_source(volume.account_name, volume.share_name)
        recovered = False

        state = classify_mount_path(staging_path)
        if state is MountState.CORRUPTED:
            logger.warning(f"Staging path {staging_path} is corrupted, unmounting before remount")
            self._host.unmount(staging_path)
            if is_corrupted_mount(staging_path):
                raise MountCorruptedError(
                    f"Staging path {staging_path} is still corrupted after unmount",
                    {"volume_id": volume.encode(), "staging_path": str(staging_path)},
                )
            recovered = True
        elif state is MountState.HEALTHY:
            existing = self._host.mount_source(staging_path)
            if existing is not None:
                if _same_source(existing, source):
                    logger.info(f"Share {source} already mounted at {staging_path}, reusing")
                    return False
                raise ProviderError(
                    f"Staging path {staging_path} is already mounted from {existing}",
                    {"volume_id": volume.encode(), "staging_path": str(staging_path)},
                )

        try:
            staging_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProviderError(
                f"Failed to create staging path {staging_path}: {e}",
                {"staging_path": str(staging_path)},
            ) from e

        options = self.build_mount_options(credentials, mount_options)
        try:
            self._host.mount(
                source, staging_path, SMB_FS_TYPE, options, password=credentials.account_key
            )
        except ProviderError as e:
            if recovered:
                raise MountCorruptedError(
                    f"Remount of corrupted staging path {staging_path} failed: {e.message}",
                    {"volume_id": volume.encode(), "staging_path": str(staging_path)},
                ) from e
            raise

        logger.info(f"Staged share {source} at {staging_path}")
        return True

    def unstage(self, staging_path: str | Path) -> bool:
        """Unmount the share at staging_path; an absent mount counts as success."""
        return self._host.unmount(staging_path)


def _same_source(mounted: str, expected: str) -> bool:
    # The kernel may report the UNC path with either slash style and any case
    normalized = mounted.replace("\\", "/").rstrip("/").lower()
    return normalized == expected.rstrip("/").lower()


__all__ = ["SMB_FS_TYPE", "ShareMounter"]
