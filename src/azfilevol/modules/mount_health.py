"""Mount point health classification.

A mount point left behind by a dead SMB session still exists in the
directory tree, but any attempt to stat it fails (ESTALE, ENOTCONN, EIO,
EACCES). A symlink to a removed mount dangles the same way. Reusing such a
path without first unmounting it makes every later mount call fail, so the
stage step checks here first.

Absence is not corruption: a path that does not exist at all is simply
ABSENT.

Public API:
    MountState: ABSENT / HEALTHY / CORRUPTED
    classify_mount_path: Classify a path
    is_corrupted_mount: Boolean form used by the stage retry policy
"""

import errno
import logging
import os
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

# errno values seen on stale or disconnected network mounts
STALE_MOUNT_ERRNOS = frozenset({errno.ENOTCONN, errno.ESTALE, errno.EIO, errno.EACCES})


class MountState(Enum):
    """Health of a mount point path."""

    ABSENT = "absent"
    HEALTHY = "healthy"
    CORRUPTED = "corrupted"


def classify_mount_path(path: str | Path) -> MountState:
    """Classify a mount point path.

    lstat() tells whether the path entry itself exists; stat() then follows
    it. An entry that exists but cannot be followed is CORRUPTED.

    Never raises.
    """
    try:
        os.lstat(path)
    except FileNotFoundError:
        return MountState.ABSENT
    except (OSError, ValueError) as e:
        if isinstance(e, OSError) and e.errno in STALE_MOUNT_ERRNOS:
            logger.warning(f"Mount point {path} is corrupted: {e.strerror}")
            return MountState.CORRUPTED
        logger.debug(f"Cannot inspect {path}, treating as absent: {e}")
        return MountState.ABSENT

    try:
        os.stat(path)
    except OSError as e:
        reason = e.strerror or errno.errorcode.get(e.errno or 0, "unknown")
        logger.warning(f"Mount point {path} exists but is inaccessible ({reason})")
        return MountState.CORRUPTED

    return MountState.HEALTHY


def is_corrupted_mount(path: str | Path) -> bool:
    """Return True if the path exists but cannot be accessed.

    Examples:
        >>> is_corrupted_mount("/nonexistent/path")
        False
    """
    return classify_mount_path(path) is MountState.CORRUPTED


__all__ = ["MountState", "STALE_MOUNT_ERRNOS", "classify_mount_path", "is_corrupted_mount"]
