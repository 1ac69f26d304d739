"""Volume lifecycle orchestration.

AzureFileDriver implements the verbs the orchestration layer calls:
provisioning (create, delete, snapshot, expand) and the node mount
lifecycle (stage, publish, unpublish, unstage). Each verb decodes the
volume id, resolves credentials, then delegates to the share mounter, the
VHD block volume manager or the storage client.

Modes:
- Filesystem volume ("rg#account#share"): the share is mounted at the
  staging path and bind-mounted at each publish path
- Block volume ("rg#account#share#disk.vhd"): the VHD inside the staged
  share is loop-attached, formatted if blank and mounted at each publish
  path

Concurrency:
- One stage/publish/unpublish/unstage sequence per volume id at a time
- Different volumes run fully in parallel

Errors:
- Every failure surfaces as a VolumeError with a stable kind; unexpected
  OSErrors are wrapped in ProviderError
- A failed step aborts the request; retries belong to the caller

Public API:
    AzureFileDriver: Lifecycle verbs
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from azfilevol.config import SUPPORTED_FS_TYPES, DriverConfig
from azfilevol.errors import (
    MountCorruptedError,
    NilInputError,
    ProviderError,
    VolumeError,
    VolumeIdFormatError,
    raise_if_cancelled,
)
from azfilevol.lock_registry import KeyedLockRegistry
from azfilevol.log_sanitizer import LogSanitizer
from azfilevol.models import (
    CreateVolumeRequest,
    NodePublishRequest,
    NodeStageRequest,
    NodeUnpublishRequest,
    NodeUnstageRequest,
    SnapshotInfo,
    VolumeInfo,
)
from azfilevol.modules.credentials import StorageAccountCredentials, resolve_storage_account
from azfilevol.modules.host_mounter import HostMounter
from azfilevol.modules.mount_health import MountState, classify_mount_path, is_corrupted_mount
from azfilevol.modules.share_mount import ShareMounter
from azfilevol.modules.share_name import derive_share_name, validate_share_name
from azfilevol.modules.storage_client import AzureFileClient
from azfilevol.modules.vhd_footer import FOOTER_SIZE, build_fixed_footer
from azfilevol.modules.vhd_manager import VhdBlockVolumeManager
from azfilevol.modules.volume_id import (
    VolumeIdentifier,
    decode_snapshot,
    decode_volume_id,
    encode_volume_id,
)

logger = logging.getLogger(__name__)

GIB = 1024**3

# Storage class parameters (matched case-insensitively)
PARAM_RESOURCE_GROUP = "resourcegroup"
PARAM_STORAGE_ACCOUNT = "storageaccount"
PARAM_SHARE_NAME = "sharename"
PARAM_FS_TYPE = "fstype"
SUPPORTED_PARAMETERS = (
    PARAM_RESOURCE_GROUP,
    PARAM_STORAGE_ACCOUNT,
    PARAM_SHARE_NAME,
    PARAM_FS_TYPE,
)

VHD_SUFFIX = ".vhd"


class AzureFileDriver:
    """Azure Files volume driver.

    Example:
        >>> driver = AzureFileDriver(DriverConfig.load())
        >>> info = driver.create_volume(CreateVolumeRequest(name="pvc-1", parameters={...}))
        >>> driver.node_stage_volume(NodeStageRequest(info.volume_id, "/staging/pvc-1", secrets))
    """

    def __init__(
        self,
        config: DriverConfig | None = None,
        storage: AzureFileClient | None = None,
        host: HostMounter | None = None,
        block_volumes: VhdBlockVolumeManager | None = None,
    ):
        self.config = config or DriverConfig()
        self._host = host or HostMounter(self.config)
        self._storage = storage or AzureFileClient(self.config)
        self._shares = ShareMounter(self.config, self._host)
        self._block = block_volumes or VhdBlockVolumeManager(
            self.config, self._host, self._shares
        )
        self._volume_locks = KeyedLockRegistry("volume")

    @property
    def block_volumes(self) -> VhdBlockVolumeManager:
        return self._block

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def create_volume(self, request: CreateVolumeRequest) -> VolumeInfo:
        """Create the share (and VHD file, for block volumes) backing a volume.

        Raises:
            NilInputError: If the name, resource group or account is missing
            VolumeIdFormatError: On unknown parameters or unsupported fsType
            ShareNameInvalidError: If an explicit shareName is not legal
            ProviderError: If an Azure call failed
        """
        if not request.name:
            raise NilInputError("CreateVolume name must be provided")

        with self._request("CreateVolume", request.name):
            params = _normalize_parameters(request.parameters)
            fs_type = params.get(PARAM_FS_TYPE, "").lower()
            if fs_type and fs_type not in SUPPORTED_FS_TYPES:
                raise VolumeIdFormatError(
                    f"Unsupported fsType: {fs_type}. Supported: {', '.join(SUPPORTED_FS_TYPES)}",
                    {"volume_name": request.name, "fs_type": fs_type},
                )

            credentials = None
            if request.secrets:
                credentials = resolve_storage_account(request.secrets)

            resource_group = params.get(PARAM_RESOURCE_GROUP) or self.config.default_resource_group
            if not resource_group:
                raise NilInputError(
                    "resourceGroup parameter or default_resource_group must be set",
                    {"volume_name": request.name},
                )
            account_name = params.get(PARAM_STORAGE_ACCOUNT) or (
                credentials.account_name if credentials else ""
            )
            if not account_name:
                raise NilInputError(
                    "storageAccount parameter or account secrets must be provided",
                    {"volume_name": request.name},
                )

            if params.get(PARAM_SHARE_NAME):
                share_name = validate_share_name(params[PARAM_SHARE_NAME])
            else:
                share_name = derive_share_name(request.name)

            quota_gib = _quota_gib(request.capacity_bytes, self.config.default_share_quota_gib)
            self._storage.create_share(resource_group, account_name, share_name, quota_gib)

            disk_name = ""
            context = {"shareName": share_name}
            if fs_type:
                disk_name = f"{share_name}{VHD_SUFFIX}"
                self._create_vhd(
                    resource_group, account_name, share_name, disk_name, quota_gib, credentials
                )
                context["fsType"] = fs_type

            volume_id = encode_volume_id(resource_group, account_name, share_name, disk_name)
            logger.info(f"Created volume {volume_id} ({quota_gib} GiB)")
            return VolumeInfo(
                volume_id=volume_id, capacity_bytes=quota_gib * GIB, volume_context=context
            )

    def delete_volume(self, volume_id: str) -> bool:
        """Delete the share backing a volume (the VHD file goes with it).

        A malformed id cannot name an existing volume and is treated as
        already deleted.

        Returns:
            True if a share was deleted, False if there was nothing to delete
        """
        if not volume_id:
            raise NilInputError("Volume ID missing in request")
        try:
            volume = decode_volume_id(volume_id)
        except VolumeIdFormatError as e:
            logger.warning(f"Ignoring delete of malformed volume id: {e.message}")
            return False

        with self._request("DeleteVolume", volume_id):
            return self._storage.delete_share(
                volume.resource_group, volume.account_name, volume.share_name
            )

    def create_snapshot(self, source_volume_id: str) -> SnapshotInfo:
        """Snapshot the share of a volume.

        Returns:
            SnapshotInfo whose snapshot_id carries the timestamp as last field
        """
        if not source_volume_id:
            raise NilInputError("CreateSnapshot source volume ID must be provided")
        with self._request("CreateSnapshot", source_volume_id):
            volume = decode_volume_id(source_volume_id).without_snapshot()
            timestamp = self._storage.create_share_snapshot(
                volume.resource_group, volume.account_name, volume.share_name
            )
            snapshot_id = encode_volume_id(
                volume.resource_group,
                volume.account_name,
                volume.share_name,
                volume.disk_name,
                timestamp,
            )
            logger.info(f"Created snapshot {snapshot_id}")
            return SnapshotInfo(
                snapshot_id=snapshot_id,
                source_volume_id=volume.encode(),
                creation_time=timestamp,
            )

    def delete_snapshot(self, snapshot_id: str) -> bool:
        """Delete a share snapshot; malformed ids count as already deleted."""
        if not snapshot_id:
            raise NilInputError("Snapshot ID must be provided")
        try:
            timestamp = decode_snapshot(snapshot_id)
            volume = decode_volume_id(snapshot_id)
        except VolumeIdFormatError as e:
            logger.warning(f"Ignoring delete of malformed snapshot id: {e.message}")
            return False

        with self._request("DeleteSnapshot", snapshot_id):
            return self._storage.delete_share_snapshot(
                volume.resource_group, volume.account_name, volume.share_name, timestamp
            )

    def expand_volume(self, volume_id: str, capacity_bytes: int) -> int:
        """Grow the share quota of a filesystem volume.

        Returns:
            New capacity in bytes (rounded up to whole GiB)

        Raises:
            ProviderError: For block volumes, whose fixed VHD cannot grow
        """
        if not volume_id:
            raise NilInputError("Volume ID missing in request")
        with self._request("ExpandVolume", volume_id):
            volume = decode_volume_id(volume_id)
            if volume.is_block_volume:
                raise ProviderError(
                    f"Expansion of block volume {volume_id} is not supported",
                    {"volume_id": volume_id},
                )
            quota_gib = _quota_gib(capacity_bytes, self.config.default_share_quota_gib)
            self._storage.resize_share(
                volume.resource_group, volume.account_name, volume.share_name, quota_gib
            )
            return quota_gib * GIB

    # ------------------------------------------------------------------
    # Node lifecycle
    # ------------------------------------------------------------------

    def node_stage_volume(self, request: NodeStageRequest) -> bool:
        """Mount the volume's share at the staging path.

        For block volumes the VHD is also attached to a loop device (and
        created sparse if absent and a capacity is given).

        Returns:
            True if this call mounted the share or bound a new loop device,
            False if an existing staging was reused
        """
        _require(request.volume_id, "Volume ID missing in request")
        with self._request("NodeStageVolume", request.volume_id):
            _require(request.staging_path, "Staging target not provided")
            volume = decode_volume_id(request.volume_id)
            credentials = resolve_storage_account(request.secrets)

            with self._volume_locks.hold(request.volume_id):
                if volume.is_block_volume:
                    before = self._block.get_volume(request.volume_id)
                    record = self._block.stage(
                        volume,
                        credentials,
                        request.staging_path,
                        request.mount_options,
                        size_bytes=request.capacity_bytes,
                        fs_type=request.fs_type or None,
                        cancel=request.cancel,
                    )
                    return before is None or before.loop_device != record.loop_device

                raise_if_cancelled(request.cancel, request.volume_id, "mount share")
                return self._shares.stage(
                    volume, credentials, request.staging_path, request.mount_options
                )

    def node_publish_volume(self, request: NodePublishRequest) -> bool:
        """Expose a staged volume at the target path.

        Returns:
            True if a mount was performed, False if already published
        """
        _require(request.volume_id, "Volume ID missing in request")
        with self._request("NodePublishVolume", request.volume_id):
            _require(request.staging_path, "Staging target not provided")
            _require(request.target_path, "Target path not provided")
            volume = decode_volume_id(request.volume_id)

            with self._volume_locks.hold(request.volume_id):
                raise_if_cancelled(request.cancel, request.volume_id, "publish")
                if volume.is_block_volume:
                    device = self._block.attach_loop(volume, request.staging_path)
                    return self._block.format_and_mount(
                        volume,
                        device,
                        request.target_path,
                        fs_type=request.fs_type or None,
                        mount_options=request.mount_options,
                        readonly=request.readonly,
                        cancel=request.cancel,
                    )
                return self._bind_mount(volume, request)

    def node_unpublish_volume(self, request: NodeUnpublishRequest) -> bool:
        """Unmount the target path; an absent mount counts as success."""
        _require(request.volume_id, "Volume ID missing in request")
        with self._request("NodeUnpublishVolume", request.volume_id):
            _require(request.target_path, "Target path missing in request")
            volume = decode_volume_id(request.volume_id)

            with self._volume_locks.hold(request.volume_id):
                raise_if_cancelled(request.cancel, request.volume_id, "unmount publish path")
                if volume.is_block_volume:
                    return self._block.unpublish(volume, request.target_path)
                return self._host.unmount(request.target_path)

    def node_unstage_volume(self, request: NodeUnstageRequest) -> None:
        """Tear down the staging path (detaching the VHD first for block volumes)."""
        _require(request.volume_id, "Volume ID missing in request")
        with self._request("NodeUnstageVolume", request.volume_id):
            _require(request.staging_path, "Staging target not provided")
            volume = decode_volume_id(request.volume_id)

            with self._volume_locks.hold(request.volume_id):
                if volume.is_block_volume:
                    self._block.unstage(volume, request.staging_path, cancel=request.cancel)
                    return
                raise_if_cancelled(request.cancel, request.volume_id, "unmount staging path")
                self._shares.unstage(request.staging_path)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_vhd(
        self,
        resource_group: str,
        account_name: str,
        share_name: str,
        disk_name: str,
        quota_gib: int,
        credentials: StorageAccountCredentials | None,
    ) -> None:
        if credentials is not None and credentials.account_name == account_name:
            account_key = credentials.account_key
        else:
            account_key = self._storage.get_account_key(resource_group, account_name)

        data_size = quota_gib * GIB
        self._storage.create_file(
            account_name,
            account_key,
            share_name,
            disk_name,
            data_size + FOOTER_SIZE,
            tail=build_fixed_footer(data_size),
        )

    def _bind_mount(self, volume: VolumeIdentifier, request: NodePublishRequest) -> bool:
        target = Path(request.target_path)
        state = classify_mount_path(target)
        if state is MountState.CORRUPTED:
            logger.warning(f"Publish path {target} is corrupted, unmounting")
            self._host.unmount(target)
            if is_corrupted_mount(target):
                raise MountCorruptedError(
                    f"Publish path {target} is still corrupted after unmount",
                    {"volume_id": request.volume_id, "target_path": str(target)},
                )
        elif state is MountState.HEALTHY and self._host.is_mounted(target):
            logger.info(f"Volume {volume} already published at {target}")
            return False

        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProviderError(
                f"Failed to create publish path {target}: {e}",
                {"volume_id": request.volume_id, "target_path": str(target)},
            ) from e

        options = ["bind"]
        if request.readonly:
            options.append("ro")
        self._host.mount(request.staging_path, target, None, options)
        logger.info(f"Published {request.staging_path} at {target}")
        return True

    @contextmanager
    def _request(self, verb: str, subject: str) -> Generator[None, None, None]:
        logger.info(f"{verb}: {subject}")
        try:
            yield
        except VolumeError as e:
            e.context.setdefault("volume_id", subject)
            message = LogSanitizer.sanitize(e.message)
            logger.error(f"{verb} failed for {subject}: [{e.kind.value}] {message}")
            raise
        except OSError as e:
            message = LogSanitizer.sanitize(e)
            logger.error(f"{verb} failed for {subject}: {message}")
            raise ProviderError(f"{verb} failed: {message}", {"volume_id": subject}) from e


def _normalize_parameters(parameters: dict[str, str] | None) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for key, value in (parameters or {}).items():
        name = str(key).lower()
        if name not in SUPPORTED_PARAMETERS:
            raise VolumeIdFormatError(
                f"invalid parameter {key} in storage class", {"parameter": str(key)}
            )
        normalized[name] = value
    return normalized


def _quota_gib(capacity_bytes: int | None, default_gib: int) -> int:
    if not capacity_bytes or capacity_bytes <= 0:
        return default_gib
    return -(-capacity_bytes // GIB)


def _require(value: str | None, message: str) -> None:
    if not value:
        raise NilInputError(message)


__all__ = ["AzureFileDriver", "GIB"]
