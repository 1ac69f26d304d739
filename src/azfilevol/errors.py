"""Error taxonomy for volume operations.

Every failure raised by the driver core is a VolumeError carrying a stable
ErrorKind, so the RPC layer can map it to a status code without parsing
messages.

Philosophy:
- One exception class per error kind
- Context carries identifiers and key names, never secret values
- Input defects (FORMAT, NIL_INPUT, CREDENTIAL_MISSING, NAME_INVALID) are
  never retried by the core

Public API:
    ErrorKind: Stable error kind enum
    VolumeError: Base exception
    VolumeIdFormatError, NilInputError, CredentialMissingError,
    AccountNameMissingError, AccountKeyMissingError, ShareNameInvalidError,
    MountCorruptedError, AttachFailedError, FormatFailedError, ProviderError,
    HostBusyError, OperationAbortedError
    raise_if_cancelled: Cancellation checkpoint
"""

import threading
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable error kinds surfaced to the orchestration layer."""

    FORMAT = "FORMAT"
    NIL_INPUT = "NIL_INPUT"
    CREDENTIAL_MISSING = "CREDENTIAL_MISSING"
    NAME_INVALID = "NAME_INVALID"
    MOUNT_CORRUPTED = "MOUNT_CORRUPTED"
    ATTACH_FAILED = "ATTACH_FAILED"
    FORMAT_FAILED = "FORMAT_FAILED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    ABORTED = "ABORTED"


class VolumeError(Exception):
    """Base exception for volume driver operations."""

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    @property
    def retryable(self) -> bool:
        """True if the caller may retry the whole lifecycle operation."""
        return self.kind in (
            ErrorKind.MOUNT_CORRUPTED,
            ErrorKind.ATTACH_FAILED,
            ErrorKind.FORMAT_FAILED,
            ErrorKind.PROVIDER_ERROR,
            ErrorKind.ABORTED,
        )


class VolumeIdFormatError(VolumeError):
    """Malformed volume identifier or option string."""

    kind = ErrorKind.FORMAT


class NilInputError(VolumeError):
    """Required input was not supplied."""

    kind = ErrorKind.NIL_INPUT


class CredentialMissingError(VolumeError):
    """Storage account name or key could not be resolved."""

    kind = ErrorKind.CREDENTIAL_MISSING


class AccountNameMissingError(CredentialMissingError):
    """No recognized account-name key yielded a value."""

    pass


class AccountKeyMissingError(CredentialMissingError):
    """No recognized account-key key yielded a value."""

    pass


class ShareNameInvalidError(VolumeError):
    """Share name violates Azure Files naming rules."""

    kind = ErrorKind.NAME_INVALID


class MountCorruptedError(VolumeError):
    """Mount point is stale or broken and could not be recovered."""

    kind = ErrorKind.MOUNT_CORRUPTED


class AttachFailedError(VolumeError):
    """Loop device bind or unbind failed."""

    kind = ErrorKind.ATTACH_FAILED


class FormatFailedError(VolumeError):
    """Creating a filesystem on a device failed."""

    kind = ErrorKind.FORMAT_FAILED


class ProviderError(VolumeError):
    """Failure from the cloud client or a host syscall."""

    kind = ErrorKind.PROVIDER_ERROR


class HostBusyError(ProviderError):
    """Transient EBUSY/EAGAIN-class failure from the host; safe to retry."""

    pass


class OperationAbortedError(VolumeError):
    """Request was cancelled before the next step started."""

    kind = ErrorKind.ABORTED


def raise_if_cancelled(cancel: threading.Event | None, volume_id: str, step: str) -> None:
    """Abort a request between state-machine steps if its cancel flag is set.

    Raises:
        OperationAbortedError: If cancel is set
    """
    if cancel is not None and cancel.is_set():
        raise OperationAbortedError(
            f"Request for {volume_id} cancelled before {step}",
            {"volume_id": volume_id, "step": step},
        )


__all__ = [
    "AccountKeyMissingError",
    "AccountNameMissingError",
    "AttachFailedError",
    "CredentialMissingError",
    "ErrorKind",
    "FormatFailedError",
    "HostBusyError",
    "MountCorruptedError",
    "NilInputError",
    "OperationAbortedError",
    "ProviderError",
    "ShareNameInvalidError",
    "VolumeError",
    "VolumeIdFormatError",
    "raise_if_cancelled",
]
