"""Host mount, loop-device and filesystem primitives.

Thin, blocking wrappers around mount(8), umount(8), findmnt(8), losetup(8),
blkid(8) and mkfs(8). Every call is synchronous; callers run them on worker
threads, never on a latency-sensitive dispatch path.

Philosophy:
- One subprocess per primitive, no shell
- "Already absent" on teardown is reported, not raised
- EBUSY/EAGAIN-class failures become HostBusyError and are retried with
  bounded backoff; every other failure is raised immediately

Security (CRITICAL):
- The SMB password is passed through the PASSWD environment variable that
  mount.cifs reads, never on the command line
- Commands and stderr are sanitized before logging

Public API:
    HostMounter: Host primitives
"""

import logging
import os
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from azfilevol.config import DriverConfig
from azfilevol.errors import AttachFailedError, FormatFailedError, HostBusyError, ProviderError
from azfilevol.log_sanitizer import LogSanitizer
from azfilevol.modules.mount_health import MountState, classify_mount_path
from azfilevol.retry_handler import retry_with_exponential_backoff

logger = logging.getLogger(__name__)

# stderr fragments that mean "try again shortly"
BUSY_MARKERS = (
    "device or resource busy",
    "target is busy",
    "resource temporarily unavailable",
)

# stderr fragments that mean "nothing to tear down"
NOT_MOUNTED_MARKERS = ("not mounted", "no mount point specified", "mountpoint not found")
NO_LOOP_MARKERS = ("no such device", "no such file or directory")

# blkid exit status when no signature is found
BLKID_NO_SIGNATURE = 2

MKFS_FORCE_FLAGS = {
    "ext2": ["-F"],
    "ext3": ["-F"],
    "ext4": ["-F"],
    "xfs": ["-f"],
}


class HostMounter:
    """Blocking host primitives used by the stage and publish steps."""

    def __init__(self, config: DriverConfig | None = None):
        self._config = config or DriverConfig()

    # ------------------------------------------------------------------
    # Mount table
    # ------------------------------------------------------------------

    def mount(
        self,
        source: str,
        target: str | Path,
        fs_type: str | None,
        options: Sequence[str] = (),
        password: str | None = None,
    ) -> None:
        """Mount source at target.

        Args:
            source: Device, share URL or directory (for bind mounts)
            target: Existing directory to mount on
            fs_type: Filesystem type, or None to let mount(8) decide
            options: Mount options (joined with commas)
            password: SMB password, handed to mount.cifs via PASSWD

        Raises:
            HostBusyError: If the host stayed busy through every retry
            ProviderError: If mount failed
        """
        cmd = ["mount"]
        if fs_type:
            cmd.extend(["-t", fs_type])
        cleaned = [option for option in options if option]
        if cleaned:
            cmd.extend(["-o", ",".join(cleaned)])
        cmd.extend([source, str(target)])

        env = None
        if password is not None:
            env = {**os.environ, "PASSWD": password}

        logger.info(f"Mounting {source} at {target}")
        self._with_retry(self._run_checked)(cmd, ProviderError, env=env)

    def unmount(self, target: str | Path) -> bool:
        """Unmount target.

        Returns:
            True if something was unmounted, False if target was not mounted

        Raises:
            HostBusyError: If the mount stayed busy through every retry
            ProviderError: If umount failed for any other reason
        """
        # A stale network mount fails lstat but must still be unmounted
        if classify_mount_path(target) is MountState.ABSENT:
            logger.debug(f"Unmount skipped, {target} does not exist")
            return False

        def _unmount() -> bool:
            result = self._run(["umount", str(target)])
            if result.returncode == 0:
                return True
            stderr = (result.stderr or "").lower()
            if any(marker in stderr for marker in NOT_MOUNTED_MARKERS):
                return False
            self._raise_for(result, ["umount", str(target)], ProviderError)
            return False

        unmounted = self._with_retry(_unmount)()
        if unmounted:
            logger.info(f"Unmounted {target}")
        else:
            logger.info(f"{target} was not mounted")
        return unmounted

    def mount_source(self, target: str | Path) -> str | None:
        """Return the source mounted at target, or None if target is not a mount point."""
        result = self._run(
            ["findmnt", "--noheadings", "--output", "SOURCE", "--mountpoint", str(target)]
        )
        if result.returncode != 0:
            return None
        source = (result.stdout or "").strip().splitlines()
        return source[0].strip() if source else None

    def is_mounted(self, target: str | Path) -> bool:
        return self.mount_source(target) is not None

    def mount_targets(self, source: str) -> list[str]:
        """Return every mount point source (a device or share URL) is mounted at."""
        result = self._run(["findmnt", "--noheadings", "--output", "TARGET", "--source", source])
        if result.returncode != 0:
            return []
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Loop devices
    # ------------------------------------------------------------------

    def find_loop_device(self, backing_file: str | Path) -> str | None:
        """Return the loop device bound to backing_file, if any."""
        result = self._run(["losetup", "--associated", str(backing_file)])
        if result.returncode != 0:
            return None
        for line in (result.stdout or "").splitlines():
            # /dev/loop3: [0047]:1234 (/staging/disk.vhd)
            device = line.split(":", 1)[0].strip()
            if device:
                return device
        return None

    def loop_attach(self, backing_file: str | Path, size_limit: int | None = None) -> str:
        """Bind backing_file to the next free loop device.

        Args:
            backing_file: File to expose as a block device
            size_limit: Expose only the first size_limit bytes

        Returns:
            Loop device path, e.g. /dev/loop3

        Raises:
            AttachFailedError: If no loop device is free or the bind failed
        """
        cmd = ["losetup", "--find", "--show"]
        if size_limit:
            cmd.extend(["--sizelimit", str(size_limit)])
        cmd.append(str(backing_file))

        try:
            result = self._with_retry(self._run_checked)(cmd, AttachFailedError)
        except HostBusyError as e:
            raise AttachFailedError(
                f"Loop device stayed busy binding {backing_file}: {e.message}", e.context
            ) from e
        device = (result.stdout or "").strip()
        if not device:
            raise AttachFailedError(
                f"losetup returned no device for {backing_file}",
                {"backing_file": str(backing_file)},
            )
        logger.info(f"Attached {backing_file} to {device}")
        return device

    def loop_detach(self, device: str) -> bool:
        """Unbind a loop device.

        Returns:
            True if detached, False if the device was already gone

        Raises:
            AttachFailedError: If the unbind failed
        """
        cmd = ["losetup", "--detach", device]

        def _detach() -> bool:
            result = self._run(cmd)
            if result.returncode == 0:
                return True
            stderr = (result.stderr or "").lower()
            if any(marker in stderr for marker in NO_LOOP_MARKERS):
                return False
            self._raise_for(result, cmd, AttachFailedError)
            return False

        try:
            detached = self._with_retry(_detach)()
        except HostBusyError as e:
            raise AttachFailedError(
                f"Loop device {device} stayed busy: {e.message}", e.context
            ) from e
        if detached:
            logger.info(f"Detached {device}")
        return detached

    # ------------------------------------------------------------------
    # Filesystems
    # ------------------------------------------------------------------

    def filesystem_type(self, device: str) -> str:
        """Return the filesystem signature on device, or "" if none is found.

        Raises:
            ProviderError: If blkid failed for a reason other than "no signature"
        """
        cmd = ["blkid", "-p", "-s", "TYPE", "-o", "value", device]
        result = self._run(cmd)
        if result.returncode == 0:
            return (result.stdout or "").strip()
        if result.returncode == BLKID_NO_SIGNATURE:
            return ""
        self._raise_for(result, cmd, ProviderError)
        return ""

    def make_filesystem(self, device: str, fs_type: str) -> None:
        """Create a filesystem on device.

        Raises:
            FormatFailedError: If mkfs failed
        """
        cmd = [f"mkfs.{fs_type}", *MKFS_FORCE_FLAGS.get(fs_type, []), device]
        logger.info(f"Formatting {device} as {fs_type}")
        self._run_checked(cmd, FormatFailedError)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _with_retry(self, func: Callable[..., Any]) -> Callable[..., Any]:
        return retry_with_exponential_backoff(
            max_attempts=self._config.host_retry_max_attempts,
            initial_delay=self._config.host_retry_initial_delay,
            max_delay=self._config.host_retry_max_delay,
            retryable_exceptions=(HostBusyError,),
        )(func)

    def _run(
        self, cmd: list[str], env: dict[str, str] | None = None
    ) -> subprocess.CompletedProcess:
        logger.debug(f"Running command: {LogSanitizer.sanitize(' '.join(cmd))}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=False, env=env)
        except OSError as e:
            raise ProviderError(
                f"Failed to execute {cmd[0]}: {e}", {"command": cmd[0]}
            ) from e

    def _run_checked(
        self,
        cmd: list[str],
        error_type: type[Exception],
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess:
        result = self._run(cmd, env=env)
        if result.returncode != 0:
            self._raise_for(result, cmd, error_type)
        return result

    @staticmethod
    def _raise_for(
        result: subprocess.CompletedProcess,
        cmd: list[str],
        error_type: type[Exception],
    ) -> None:
        stderr = LogSanitizer.sanitize((result.stderr or "").strip() or "Unknown error")
        command = LogSanitizer.sanitize(" ".join(cmd))
        context = {"command": command, "returncode": result.returncode}
        if any(marker in stderr.lower() for marker in BUSY_MARKERS):
            raise HostBusyError(f"{cmd[0]} busy: {stderr}", context)
        logger.error(f"{cmd[0]} failed: {stderr}")
        raise error_type(f"{command} failed: {stderr}", context)


__all__ = ["HostMounter"]
