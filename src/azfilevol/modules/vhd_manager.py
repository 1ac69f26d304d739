"""VHD block volume management.

A block volume is a fixed VHD file stored inside an Azure Files share. On
the node it goes through these states:

    UNSTAGED -> STAGED            share mounted at the staging path
             -> ATTACHED          VHD data region bound to a loop device
             -> FILESYSTEM_READY  loop device formatted and mounted at a
                                  publish path
             -> DETACHED          publish paths unmounted, loop unbound
             -> UNSTAGED          share unmounted

Every step is idempotent so a retried request picks up where the previous
attempt stopped. Teardown runs in strict order (publish paths, loop device,
staging mount); "already absent" counts as success, any other failure stops
the teardown and leaves the volume in the last state reached.

Concurrency:
- The caller holds a per-volume lock around each stage/publish/unstage
- Loop attach is serialized per backing file, so concurrent stages of one
  file can never bind it to two loop devices
- Only the losetup bind/unbind call itself holds the node-wide lock;
  formatting and mounting of different volumes run in parallel

Public API:
    VhdVolumeState: Block volume states
    VhdBlockVolume: Node-side view of one block volume
    VhdBlockVolumeManager: Stage/attach/format/unstage operations
"""

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from azfilevol.config import SUPPORTED_FS_TYPES, DriverConfig
from azfilevol.errors import (
    AttachFailedError,
    FormatFailedError,
    MountCorruptedError,
    ProviderError,
    VolumeIdFormatError,
    raise_if_cancelled,
)
from azfilevol.lock_registry import KeyedLockRegistry, NodeLock
from azfilevol.modules.credentials import StorageAccountCredentials
from azfilevol.modules.host_mounter import HostMounter
from azfilevol.modules.mount_health import MountState, classify_mount_path, is_corrupted_mount
from azfilevol.modules.share_mount import ShareMounter
from azfilevol.modules.vhd_footer import (
    FOOTER_SIZE,
    SECTOR_SIZE,
    VhdFooterError,
    build_fixed_footer,
    parse_footer,
)
from azfilevol.modules.volume_id import VolumeIdentifier

logger = logging.getLogger(__name__)


class VhdVolumeState(Enum):
    """Node-side state of a VHD block volume."""

    UNSTAGED = "unstaged"
    STAGED = "staged"
    ATTACHED = "attached"
    FILESYSTEM_READY = "filesystem_ready"
    DETACHED = "detached"


@dataclass
class VhdBlockVolume:
    """Node-side view of one VHD block volume."""

    volume_id: str
    backing_file: Path
    staging_path: Path
    fs_type: str
    loop_device: str | None = None
    publish_paths: set[str] = field(default_factory=set)
    state: VhdVolumeState = VhdVolumeState.UNSTAGED


class VhdBlockVolumeManager:
    """Expose VHD files inside staged shares as formatted block devices."""

    def __init__(
        self,
        config: DriverConfig,
        host: HostMounter,
        share_mounter: ShareMounter | None = None,
        file_locks: KeyedLockRegistry | None = None,
        node_lock: NodeLock | None = None,
    ):
        self._config = config
        self._host = host
        self._shares = share_mounter or ShareMounter(config, host)
        self._file_locks = file_locks or KeyedLockRegistry("backing file")
        self._node_lock = node_lock or NodeLock(config.node_lock_file)
        self._volumes: dict[str, VhdBlockVolume] = {}
        self._volumes_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_volume(self, volume_id: str) -> VhdBlockVolume | None:
        """Return a snapshot of the tracked volume, if any."""
        with self._volumes_lock:
            record = self._volumes.get(volume_id)
            if record is None:
                return None
            return replace(record, publish_paths=set(record.publish_paths))

    @staticmethod
    def backing_file_path(staging_path: str | Path, disk_name: str) -> Path:
        """Locate the VHD file inside the staged share.

        Raises:
            VolumeIdFormatError: If disk_name is empty or escapes the share
        """
        if not disk_name or "/" in disk_name or "\\" in disk_name or disk_name in (".", ".."):
            raise VolumeIdFormatError(
                f"Invalid disk name in volume id: {disk_name!r}", {"disk_name": disk_name}
            )
        return Path(staging_path) / disk_name

    # ------------------------------------------------------------------
    # Stage
    # ------------------------------------------------------------------

    def stage(
        self,
        volume: VolumeIdentifier,
        credentials: StorageAccountCredentials,
        staging_path: str | Path,
        mount_options: Sequence[str] | None = None,
        size_bytes: int | None = None,
        fs_type: str | None = None,
        cancel: threading.Event | None = None,
    ) -> VhdBlockVolume:
        """Mount the share and bind the volume's VHD to a loop device.

        Args:
            volume: Decoded identifier of a block volume
            credentials: Resolved storage credentials
            staging_path: Node-local staging directory
            mount_options: SMB mount options
            size_bytes: Data size used if the VHD file does not exist yet
            fs_type: Filesystem type recorded for later publish calls
            cancel: Set by the caller to abort before the next step

        Returns:
            Snapshot of the volume in ATTACHED (or later) state
        """
        backing_file = self.backing_file_path(staging_path, volume.disk_name)
        volume_id = volume.encode()
        record = self._track(volume_id, backing_file, Path(staging_path), fs_type)

        raise_if_cancelled(cancel, volume_id, "mount share")
        self._shares.stage(volume, credentials, staging_path, mount_options)
        if record.state in (VhdVolumeState.UNSTAGED, VhdVolumeState.DETACHED):
            self._set_state(volume_id, VhdVolumeState.STAGED)

        raise_if_cancelled(cancel, volume_id, "attach loop device")
        self.attach_loop(volume, staging_path, size_bytes)
        return self.get_volume(volume_id)  # type: ignore[return-value]

    def attach_loop(
        self,
        volume: VolumeIdentifier,
        staging_path: str | Path,
        size_bytes: int | None = None,
    ) -> str:
        """Bind the volume's VHD to a loop device, creating the file if absent.

        Reuses an existing binding, so calling this twice (or concurrently)
        for the same file always yields the same device.

        Raises:
            AttachFailedError: If the file is missing without a size, cannot be
                created, or the bind failed
        """
        backing_file = self.backing_file_path(staging_path, volume.disk_name)
        volume_id = volume.encode()
        self._track(volume_id, backing_file, Path(staging_path), None)

        with self._file_locks.hold(str(backing_file)):
            self._ensure_backing_file(backing_file, size_bytes, volume_id)

            device = self._host.find_loop_device(backing_file)
            if device:
                logger.info(f"{backing_file} already attached to {device}")
            else:
                size_limit = self._data_size(backing_file)
                with self._node_lock.hold("loop attach"):
                    device = self._host.loop_attach(backing_file, size_limit)

        self._update(volume_id, loop_device=device)
        record = self.get_volume(volume_id)
        if record is not None and record.state is not VhdVolumeState.FILESYSTEM_READY:
            self._set_state(volume_id, VhdVolumeState.ATTACHED)
        return device

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def format_and_mount(
        self,
        volume: VolumeIdentifier,
        device: str,
        target_path: str | Path,
        fs_type: str | None = None,
        mount_options: Sequence[str] | None = None,
        readonly: bool = False,
        cancel: threading.Event | None = None,
    ) -> bool:
        """Format device if blank, then mount it at target_path.

        Returns:
            True if a mount was performed, False if target_path already had
            this device mounted

        Raises:
            VolumeIdFormatError: If fs_type is not supported
            FormatFailedError: If mkfs failed, or a blank device was published read-only
            MountCorruptedError: If target_path stayed corrupted after one unmount
            ProviderError: If target_path holds another mount or mount failed
        """
        volume_id = volume.encode()
        fs_type = fs_type or self._config.default_fs_type
        if fs_type not in SUPPORTED_FS_TYPES:
            raise VolumeIdFormatError(
                f"Unsupported filesystem type: {fs_type}. Supported: {', '.join(SUPPORTED_FS_TYPES)}",
                {"volume_id": volume_id, "fs_type": fs_type},
            )

        target_path = Path(target_path)
        if self._prepare_target(volume_id, device, target_path):
            self._add_publish_path(volume_id, target_path)
            return False

        raise_if_cancelled(cancel, volume_id, "format device")
        existing = self._host.filesystem_type(device)
        if not existing:
            if readonly:
                raise FormatFailedError(
                    f"Refusing to format {device} for a read-only publish",
                    {"volume_id": volume_id, "device": device},
                )
            self._host.make_filesystem(device, fs_type)
            existing = fs_type
        elif existing != fs_type:
            logger.warning(
                f"{device} already holds {existing}, requested {fs_type}; mounting as {existing}"
            )

        raise_if_cancelled(cancel, volume_id, "mount device")
        options = [option for option in (mount_options or []) if option]
        if readonly and "ro" not in options:
            options.append("ro")
        try:
            target_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProviderError(
                f"Failed to create publish path {target_path}: {e}",
                {"volume_id": volume_id, "target_path": str(target_path)},
            ) from e
        self._host.mount(device, target_path, existing, options)

        self._add_publish_path(volume_id, target_path)
        logger.info(f"Published {device} ({existing}) at {target_path}")
        return True

    def unpublish(self, volume: VolumeIdentifier, target_path: str | Path) -> bool:
        """Unmount one publish path; the loop device stays attached."""
        unmounted = self._host.unmount(target_path)
        self._remove_publish_path(volume.encode(), Path(target_path))
        return unmounted

    # ------------------------------------------------------------------
    # Unstage
    # ------------------------------------------------------------------

    def unstage(
        self,
        volume: VolumeIdentifier,
        staging_path: str | Path,
        publish_paths: Sequence[str | Path] | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """Tear the volume down: publish paths, then loop device, then share.

        Args:
            volume: Decoded identifier of a block volume
            staging_path: Staging directory the share is mounted on
            publish_paths: Extra publish paths to unmount besides the tracked ones
                and those the mount table reports for the loop device
            cancel: Set by the caller to abort before the next step

        Raises:
            ProviderError: If an unmount failed (remaining steps are skipped)
            AttachFailedError: If the loop device could not be detached
        """
        volume_id = volume.encode()
        backing_file = self.backing_file_path(staging_path, volume.disk_name)
        record = self.get_volume(volume_id)

        paths = {str(p) for p in publish_paths or []}
        if record is not None:
            paths |= record.publish_paths

        device = self._host.find_loop_device(backing_file)
        if device is None and record is not None:
            device = record.loop_device
        if device:
            # Publish mounts made before a restart are only known to the mount table
            paths.update(self._host.mount_targets(device))

        for path in sorted(paths):
            raise_if_cancelled(cancel, volume_id, "unmount publish path")
            self._host.unmount(path)
            self._remove_publish_path(volume_id, Path(path))

        raise_if_cancelled(cancel, volume_id, "detach loop device")
        with self._file_locks.hold(str(backing_file)):
            device = self._host.find_loop_device(backing_file) or device
            if device:
                with self._node_lock.hold("loop detach"):
                    if not self._host.loop_detach(device):
                        logger.info(f"Loop device {device} already detached")
            else:
                logger.info(f"No loop device bound to {backing_file}")
        self._update(volume_id, loop_device=None)
        self._set_state(volume_id, VhdVolumeState.DETACHED)

        raise_if_cancelled(cancel, volume_id, "unmount staging path")
        self._shares.unstage(staging_path)
        self._forget(volume_id)
        logger.info(f"Unstaged block volume {volume_id}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_backing_file(
        self, backing_file: Path, size_bytes: int | None, volume_id: str
    ) -> bool:
        if backing_file.exists():
            return False
        if not size_bytes or size_bytes <= 0:
            raise AttachFailedError(
                f"Backing file {backing_file} does not exist and no size was given",
                {"volume_id": volume_id, "backing_file": str(backing_file)},
            )

        data_size = _round_up(size_bytes, SECTOR_SIZE)
        try:
            with open(backing_file, "xb") as f:
                # Sparse: only the footer is actually written
                f.truncate(data_size + FOOTER_SIZE)
                f.seek(data_size)
                f.write(build_fixed_footer(data_size))
        except FileExistsError:
            return False
        except OSError as e:
            raise AttachFailedError(
                f"Failed to create backing file {backing_file}: {e}",
                {"volume_id": volume_id, "backing_file": str(backing_file)},
            ) from e

        logger.info(f"Created {data_size} byte VHD {backing_file}")
        return True

    @staticmethod
    def _data_size(backing_file: Path) -> int | None:
        """Size of the VHD data region, or None for a raw image."""
        try:
            total = backing_file.stat().st_size
            if total <= FOOTER_SIZE:
                return None
            with open(backing_file, "rb") as f:
                f.seek(total - FOOTER_SIZE)
                footer = parse_footer(f.read(FOOTER_SIZE))
        except (OSError, VhdFooterError) as e:
            logger.debug(f"{backing_file} has no usable VHD footer: {e}")
            return None

        if footer.current_size + FOOTER_SIZE != total:
            logger.warning(
                f"VHD footer of {backing_file} declares {footer.current_size} bytes "
                f"but file holds {total - FOOTER_SIZE}; attaching whole file"
            )
            return None
        return footer.current_size

    def _prepare_target(self, volume_id: str, device: str, target_path: Path) -> bool:
        """Make target_path mountable; True if device is already mounted there."""
        state = classify_mount_path(target_path)
        if state is MountState.CORRUPTED:
            logger.warning(f"Publish path {target_path} is corrupted, unmounting")
            self._host.unmount(target_path)
            if is_corrupted_mount(target_path):
                raise MountCorruptedError(
                    f"Publish path {target_path} is still corrupted after unmount",
                    {"volume_id": volume_id, "target_path": str(target_path)},
                )
            return False

        if state is MountState.HEALTHY:
            existing = self._host.mount_source(target_path)
            if existing is None:
                return False
            if existing == device:
                logger.info(f"{device} already mounted at {target_path}")
                return True
            raise ProviderError(
                f"Publish path {target_path} is already mounted from {existing}",
                {"volume_id": volume_id, "target_path": str(target_path)},
            )
        return False

    def _track(
        self, volume_id: str, backing_file: Path, staging_path: Path, fs_type: str | None
    ) -> VhdBlockVolume:
        with self._volumes_lock:
            record = self._volumes.get(volume_id)
            if record is None:
                record = VhdBlockVolume(
                    volume_id=volume_id,
                    backing_file=backing_file,
                    staging_path=staging_path,
                    fs_type=fs_type or self._config.default_fs_type,
                )
                self._volumes[volume_id] = record
            elif fs_type:
                record.fs_type = fs_type
            return replace(record, publish_paths=set(record.publish_paths))

    def _update(self, volume_id: str, **changes) -> None:
        with self._volumes_lock:
            record = self._volumes.get(volume_id)
            if record is not None:
                for name, value in changes.items():
                    setattr(record, name, value)

    def _set_state(self, volume_id: str, state: VhdVolumeState) -> None:
        with self._volumes_lock:
            record = self._volumes.get(volume_id)
            if record is not None and record.state is not state:
                logger.debug(f"{volume_id}: {record.state.value} -> {state.value}")
                record.state = state

    def _add_publish_path(self, volume_id: str, target_path: Path) -> None:
        with self._volumes_lock:
            record = self._volumes.get(volume_id)
            if record is not None:
                record.publish_paths.add(str(target_path))
                record.state = VhdVolumeState.FILESYSTEM_READY

    def _remove_publish_path(self, volume_id: str, target_path: Path) -> None:
        with self._volumes_lock:
            record = self._volumes.get(volume_id)
            if record is not None:
                record.publish_paths.discard(str(target_path))
                if not record.publish_paths and record.state is VhdVolumeState.FILESYSTEM_READY:
                    record.state = VhdVolumeState.ATTACHED

    def _forget(self, volume_id: str) -> None:
        with self._volumes_lock:
            self._volumes.pop(volume_id, None)


def _round_up(value: int, multiple: int) -> int:
    return -(-value // multiple) * multiple


__all__ = ["VhdBlockVolume", "VhdBlockVolumeManager", "VhdVolumeState"]
