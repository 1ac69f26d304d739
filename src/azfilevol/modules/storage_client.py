"""Azure Files control-plane and data-plane operations.

Control plane (azure-mgmt-storage, DefaultAzureCredential): create, resize,
snapshot and delete shares; fetch account keys when a request carries no
secrets. Data plane (azure-storage-file-share, shared key): create and
delete the VHD backing files of block volumes.

Philosophy:
- Uses the Azure SDK; its pipeline owns retries for these calls
- No credentials in code
- Keys are never logged or exposed
- Every SDK failure is wrapped in ProviderError
- Deleting something already gone counts as success

Public API:
    AzureFileClient: Storage operations
    build_file_url: URL of a file inside a share
"""

import base64
import binascii
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from azure.core.credentials import AzureNamedKeyCredential
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.mgmt.storage import StorageManagementClient
from azure.mgmt.storage.models import FileShare
from azure.storage.fileshare import ShareFileClient

from azfilevol.config import DriverConfig
from azfilevol.errors import NilInputError, ProviderError
from azfilevol.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

SNAPSHOT_EXPAND = "snapshots"


def build_file_url(
    account_name: str,
    account_key: str,
    endpoint_suffix: str,
    share_name: str,
    file_path: str,
) -> str:
    """Build the HTTPS URL of a file inside a share.

    The key is not embedded in the URL but must be valid base64, since every
    data operation on the URL signs requests with it.

    Raises:
        ProviderError: If account_key is not valid base64

    Examples:
        >>> build_file_url("acct", "YWNjX2tleQ==", "core.windows.net", "share", "disk.vhd")
        'https://acct.file.core.windows.net/share/disk.vhd'
    """
    try:
        base64.b64decode(account_key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProviderError(
            f"Shared key credential for account {account_name} is invalid: illegal base64 data",
            {"account_name": account_name},
        ) from e
    return f"https://{account_name}.file.{endpoint_suffix}/{share_name}/{file_path}"


def format_snapshot_time(snapshot_time: datetime) -> str:
    """Render a snapshot time in the 7-digit fraction form Azure uses."""
    return snapshot_time.strftime("%Y-%m-%dT%H:%M:%S.%f") + "0Z"


class AzureFileClient:
    """Azure Files share and file operations."""

    def __init__(
        self,
        config: DriverConfig,
        management_client: StorageManagementClient | None = None,
        file_client_factory: Callable[..., ShareFileClient] | None = None,
    ):
        self._config = config
        self._management_client = management_client
        self._file_client_factory = file_client_factory or ShareFileClient

    @property
    def management_client(self) -> StorageManagementClient:
        """Management client, created on first use."""
        if self._management_client is None:
            if not self._config.subscription_id:
                raise NilInputError(
                    "subscription_id must be configured for storage control-plane operations"
                )
            self._management_client = StorageManagementClient(
                DefaultAzureCredential(), self._config.subscription_id
            )
        return self._management_client

    # ------------------------------------------------------------------
    # Shares
    # ------------------------------------------------------------------

    def create_share(
        self, resource_group: str, account_name: str, share_name: str, quota_gib: int
    ) -> None:
        """Create a share with the given quota."""
        logger.info(
            f"Creating share {share_name} ({quota_gib} GiB) in account {account_name}"
        )
        self._call(
            "create share",
            lambda: self.management_client.file_shares.create(
                resource_group, account_name, share_name, FileShare(share_quota=quota_gib)
            ),
            account_name=account_name,
            share_name=share_name,
        )

    def delete_share(self, resource_group: str, account_name: str, share_name: str) -> bool:
        """Delete a share and everything in it.

        Returns:
            True if deleted, False if it did not exist
        """
        logger.info(f"Deleting share {share_name} in account {account_name}")
        return self._delete(
            "delete share",
            lambda: self.management_client.file_shares.delete(
                resource_group, account_name, share_name
            ),
            account_name=account_name,
            share_name=share_name,
        )

    def resize_share(
        self, resource_group: str, account_name: str, share_name: str, quota_gib: int
    ) -> None:
        logger.info(f"Resizing share {share_name} in account {account_name} to {quota_gib} GiB")
        self._call(
            "resize share",
            lambda: self.management_client.file_shares.update(
                resource_group, account_name, share_name, FileShare(share_quota=quota_gib)
            ),
            account_name=account_name,
            share_name=share_name,
        )

    def create_share_snapshot(
        self, resource_group: str, account_name: str, share_name: str
    ) -> str:
        """Snapshot a share.

        Returns:
            Snapshot timestamp, e.g. 2019-08-22T07:17:53.0000000Z
        """
        logger.info(f"Creating snapshot of share {share_name} in account {account_name}")
        result = self._call(
            "create snapshot",
            lambda: self.management_client.file_shares.create(
                resource_group, account_name, share_name, FileShare(), expand=SNAPSHOT_EXPAND
            ),
            account_name=account_name,
            share_name=share_name,
        )
        snapshot_time = getattr(result, "snapshot_time", None)
        if snapshot_time is None:
            raise ProviderError(
                f"Snapshot of share {share_name} returned no snapshot time",
                {"account_name": account_name, "share_name": share_name},
            )
        return format_snapshot_time(snapshot_time)

    def delete_share_snapshot(
        self, resource_group: str, account_name: str, share_name: str, snapshot: str
    ) -> bool:
        logger.info(f"Deleting snapshot {snapshot} of share {share_name}")
        return self._delete(
            "delete snapshot",
            lambda: self.management_client.file_shares.delete(
                resource_group, account_name, share_name, x_ms_snapshot=snapshot
            ),
            account_name=account_name,
            share_name=share_name,
        )

    def get_account_key(self, resource_group: str, account_name: str) -> str:
        """Return the first key of a storage account (never logged)."""
        result = self._call(
            "list keys",
            lambda: self.management_client.storage_accounts.list_keys(resource_group, account_name),
            account_name=account_name,
        )
        keys = [key.value for key in (result.keys or []) if key.value]
        if not keys:
            raise ProviderError(
                f"No keys returned for storage account: {account_name}",
                {"account_name": account_name},
            )
        # SECURITY: Log success but never log the key itself
        logger.info(f"Retrieved storage key for account: {account_name}")
        return keys[0]

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def create_file(
        self,
        account_name: str,
        account_key: str,
        share_name: str,
        file_path: str,
        size_bytes: int,
        tail: bytes | None = None,
    ) -> None:
        """Create a file of size_bytes, optionally writing tail at its end.

        If the tail upload fails the half-written file is deleted again.
        """
        client = self._file_client(account_name, account_key, share_name, file_path)
        logger.info(f"Creating file {share_name}/{file_path} ({size_bytes} bytes)")
        self._call(
            "create file",
            lambda: client.create_file(size=size_bytes),
            account_name=account_name,
            share_name=share_name,
        )
        if not tail:
            return
        try:
            self._call(
                "upload range",
                lambda: client.upload_range(tail, offset=size_bytes - len(tail), length=len(tail)),
                account_name=account_name,
                share_name=share_name,
            )
        except ProviderError:
            # Without its footer the VHD would later be attached as a raw image
            try:
                self.delete_file(account_name, account_key, share_name, file_path)
            except ProviderError as cleanup_error:
                logger.warning(
                    f"Failed to remove partial file {share_name}/{file_path}: "
                    f"{cleanup_error.message}"
                )
            raise

    def delete_file(
        self, account_name: str, account_key: str, share_name: str, file_path: str
    ) -> bool:
        client = self._file_client(account_name, account_key, share_name, file_path)
        logger.info(f"Deleting file {share_name}/{file_path}")
        return self._delete(
            "delete file",
            client.delete_file,
            account_name=account_name,
            share_name=share_name,
        )

    def _file_client(
        self, account_name: str, account_key: str, share_name: str, file_path: str
    ) -> ShareFileClient:
        url = build_file_url(
            account_name, account_key, self._config.storage_endpoint_suffix, share_name, file_path
        )
        account_url = url.split(f"/{share_name}/", 1)[0]
        return self._file_client_factory(
            account_url=account_url,
            share_name=share_name,
            file_path=file_path,
            credential=AzureNamedKeyCredential(account_name, account_key),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _call(operation: str, func: Callable[[], Any], **context: str) -> Any:
        try:
            return func()
        except AzureError as e:
            message = LogSanitizer.sanitize(e)
            logger.error(f"Failed to {operation}: {message}")
            raise ProviderError(f"Failed to {operation}: {message}", dict(context)) from e

    @classmethod
    def _delete(cls, operation: str, func: Callable[[], Any], **context: str) -> bool:
        try:
            cls._call(operation, func, **context)
        except ProviderError as e:
            if isinstance(e.__cause__, ResourceNotFoundError):
                logger.info(f"Nothing to {operation}: {', '.join(context.values())} not found")
                return False
            raise
        return True


__all__ = ["AzureFileClient", "build_file_url", "format_snapshot_time"]
