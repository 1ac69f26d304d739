"""Unit tests for host_mounter module.

Tests the blocking host primitives with subprocess.run mocked:
- mount/umount/findmnt command lines
- Password passed via PASSWD, never on the command line
- losetup attach/detach and "already absent" handling
- blkid/mkfs
- Busy retries and error kinds
"""

import errno
import os
from unittest.mock import MagicMock, patch

import pytest

from azfilevol.config import DriverConfig
from azfilevol.errors import (
    AttachFailedError,
    ErrorKind,
    FormatFailedError,
    HostBusyError,
    ProviderError,
)
from azfilevol.modules.host_mounter import HostMounter
from tests.mocks.subprocess_mock import SubprocessCallCapture

SECRET = "c2VjcmV0LWtleQ=="  # noqa: S105 - test fixture, not a real credential


@pytest.fixture
def host():
    return HostMounter(
        DriverConfig(
            host_retry_max_attempts=3, host_retry_initial_delay=0.001, host_retry_max_delay=0.002
        )
    )


@pytest.fixture
def capture():
    capture = SubprocessCallCapture()
    with patch(
        "azfilevol.modules.host_mounter.subprocess.run", side_effect=capture.capture
    ):
        yield capture


class TestMount:
    """Test mount()."""

    def test_builds_command(self, host, capture, tmp_path):
        host.mount("//acct.file.core.windows.net/share", tmp_path, "cifs", ["vers=3.0", "dir_mode=0777"])

        assert capture.calls[0]["cmd"] == [
            "mount",
            "-t",
            "cifs",
            "-o",
            "vers=3.0,dir_mode=0777",
            "//acct.file.core.windows.net/share",
            str(tmp_path),
        ]

    def test_password_goes_through_environment(self, host, capture, tmp_path):
        """The key must never appear in argv."""
        host.mount("//acct.file.core.windows.net/share", tmp_path, "cifs", [], password=SECRET)

        call = capture.calls[0]
        assert SECRET not in " ".join(call["cmd"])
        assert call["kwargs"]["env"]["PASSWD"] == SECRET

    def test_no_password_inherits_environment(self, host, capture, tmp_path):
        host.mount("/dev/loop0", tmp_path, "ext4")
        assert capture.calls[0]["kwargs"]["env"] is None

    def test_bind_mount_without_type(self, host, capture, tmp_path):
        host.mount("/staging", tmp_path, None, ["bind", "ro"])
        assert capture.calls[0]["cmd"] == ["mount", "-o", "bind,ro", "/staging", str(tmp_path)]

    def test_failure_raises_provider_error(self, host, capture, tmp_path):
        capture.configure_response("mount", returncode=32, stderr="mount error(13): Permission denied")

        with pytest.raises(ProviderError, match="Permission denied") as exc_info:
            host.mount("//acct.file.core.windows.net/share", tmp_path, "cifs")
        assert exc_info.value.context["returncode"] == 32
        assert capture.count("mount -t") == 1

    def test_busy_is_retried(self, host, capture, tmp_path):
        capture.configure_response("mount", returncode=32, stderr="Device or resource busy")
        capture.configure_response("mount", returncode=0)

        host.mount("/dev/loop0", tmp_path, "ext4")
        assert capture.count("mount -t") == 2

    def test_busy_through_every_attempt_raises_host_busy(self, host, capture, tmp_path):
        capture.configure_response("mount", returncode=32, stderr="target is busy")

        with pytest.raises(HostBusyError):
            host.mount("/dev/loop0", tmp_path, "ext4")
        assert capture.count("mount -t") == 3

    def test_missing_binary_raises_provider_error(self, host, tmp_path):
        with patch(
            "azfilevol.modules.host_mounter.subprocess.run",
            side_effect=FileNotFoundError("mount"),
        ):
            with pytest.raises(ProviderError, match="Failed to execute mount"):
                host.mount("/dev/loop0", tmp_path, "ext4")

    def test_stderr_secrets_are_sanitized(self, host, capture, tmp_path):
        capture.configure_response("mount", returncode=1, stderr=f"bad option password={SECRET}")

        with pytest.raises(ProviderError) as exc_info:
            host.mount("/dev/loop0", tmp_path, "ext4")
        assert SECRET not in exc_info.value.message


class TestUnmount:
    """Test unmount()."""

    def test_nonexistent_target_is_skipped(self, host, capture, tmp_path):
        assert host.unmount(tmp_path / "missing") is False
        assert capture.calls == []

    def test_unmounts(self, host, capture, tmp_path):
        assert host.unmount(tmp_path) is True
        capture.assert_called_with_command(f"umount {tmp_path}")

    def test_not_mounted_is_success(self, host, capture, tmp_path):
        capture.configure_response("umount", returncode=32, stderr=f"umount: {tmp_path}: not mounted.")
        assert host.unmount(tmp_path) is False

    def test_other_failure_raises(self, host, capture, tmp_path):
        capture.configure_response("umount", returncode=1, stderr="umount: permission denied")
        with pytest.raises(ProviderError):
            host.unmount(tmp_path)

    def test_dangling_symlink_target_is_still_unmounted(self, host, capture, tmp_path):
        link = tmp_path / "link"
        link.symlink_to(tmp_path / "gone")
        assert host.unmount(link) is True

    def test_stale_network_mount_is_unmounted(self, host, capture, tmp_path):
        """lstat fails with ENOTCONN on a dead CIFS mount; umount must still run."""
        stale = tmp_path / "staging"
        stale.mkdir()
        real_lstat = os.lstat

        def lstat(path, *args, **kwargs):
            if str(path) == str(stale):
                raise OSError(errno.ENOTCONN, "Transport endpoint is not connected")
            return real_lstat(path, *args, **kwargs)

        with patch("azfilevol.modules.mount_health.os.lstat", side_effect=lstat):
            assert host.unmount(stale) is True

        assert capture.count(f"umount {stale}") == 1


class TestMountSource:
    """Test findmnt lookups."""

    def test_returns_source(self, host, capture, tmp_path):
        capture.configure_response("findmnt", stdout="//acct.file.core.windows.net/share\n")
        assert host.mount_source(tmp_path) == "//acct.file.core.windows.net/share"
        assert host.is_mounted(tmp_path) is True

    def test_not_a_mount_point(self, host, capture, tmp_path):
        capture.configure_response("findmnt", returncode=1)
        assert host.mount_source(tmp_path) is None
        assert host.is_mounted(tmp_path) is False

    def test_mount_targets(self, host, capture):
        capture.configure_response("findmnt", stdout="/pub/a\n/pub/b\n")

        assert host.mount_targets("/dev/loop3") == ["/pub/a", "/pub/b"]
        capture.assert_called_with_command(
            "findmnt --noheadings --output TARGET --source /dev/loop3"
        )

    def test_mount_targets_unmounted_device(self, host, capture):
        capture.configure_response("findmnt", returncode=1)
        assert host.mount_targets("/dev/loop3") == []


class TestLoopDevices:
    """Test losetup wrappers."""

    def test_find_loop_device(self, host, capture):
        capture.configure_response(
            "losetup --associated", stdout="/dev/loop3: [0047]:1234 (/staging/disk.vhd)\n"
        )
        assert host.find_loop_device("/staging/disk.vhd") == "/dev/loop3"

    def test_find_loop_device_none_bound(self, host, capture):
        capture.configure_response("losetup --associated", stdout="")
        assert host.find_loop_device("/staging/disk.vhd") is None

    def test_attach_with_size_limit(self, host, capture):
        capture.configure_response("losetup --find", stdout="/dev/loop7\n")

        assert host.loop_attach("/staging/disk.vhd", size_limit=1048576) == "/dev/loop7"
        assert capture.calls[0]["cmd"] == [
            "losetup",
            "--find",
            "--show",
            "--sizelimit",
            "1048576",
            "/staging/disk.vhd",
        ]

    def test_attach_without_size_limit(self, host, capture):
        capture.configure_response("losetup --find", stdout="/dev/loop0\n")
        host.loop_attach("/staging/raw.img")
        assert "--sizelimit" not in capture.calls[0]["cmd"]

    def test_attach_failure_is_attach_failed(self, host, capture):
        capture.configure_response(
            "losetup --find", returncode=1, stderr="losetup: cannot find an unused loop device"
        )
        with pytest.raises(AttachFailedError) as exc_info:
            host.loop_attach("/staging/disk.vhd")
        assert exc_info.value.kind is ErrorKind.ATTACH_FAILED

    def test_attach_busy_exhausted_is_attach_failed(self, host, capture):
        capture.configure_response(
            "losetup --find", returncode=1, stderr="Resource temporarily unavailable"
        )
        with pytest.raises(AttachFailedError, match="stayed busy"):
            host.loop_attach("/staging/disk.vhd")
        assert capture.count("losetup --find") == 3

    def test_attach_empty_output(self, host, capture):
        capture.configure_response("losetup --find", stdout="")
        with pytest.raises(AttachFailedError, match="returned no device"):
            host.loop_attach("/staging/disk.vhd")

    def test_detach(self, host, capture):
        assert host.loop_detach("/dev/loop3") is True
        capture.assert_called_with_command("losetup --detach /dev/loop3")

    def test_detach_gone_device_is_success(self, host, capture):
        capture.configure_response(
            "losetup --detach", returncode=1, stderr="losetup: /dev/loop3: No such device or address"
        )
        assert host.loop_detach("/dev/loop3") is False

    def test_detach_failure(self, host, capture):
        capture.configure_response("losetup --detach", returncode=1, stderr="permission denied")
        with pytest.raises(AttachFailedError):
            host.loop_detach("/dev/loop3")


class TestFilesystems:
    """Test blkid and mkfs wrappers."""

    def test_filesystem_type(self, host, capture):
        capture.configure_response("blkid", stdout="ext4\n")
        assert host.filesystem_type("/dev/loop0") == "ext4"

    def test_blank_device(self, host, capture):
        capture.configure_response("blkid", returncode=2)
        assert host.filesystem_type("/dev/loop0") == ""

    def test_blkid_error(self, host, capture):
        capture.configure_response("blkid", returncode=4, stderr="blkid: error")
        with pytest.raises(ProviderError):
            host.filesystem_type("/dev/loop0")

    @pytest.mark.parametrize(
        "fs_type, expected",
        [
            ("ext4", ["mkfs.ext4", "-F", "/dev/loop0"]),
            ("xfs", ["mkfs.xfs", "-f", "/dev/loop0"]),
        ],
    )
    def test_make_filesystem(self, host, capture, fs_type, expected):
        host.make_filesystem("/dev/loop0", fs_type)
        assert capture.calls[0]["cmd"] == expected

    def test_make_filesystem_failure(self, host, capture):
        capture.configure_response("mkfs", returncode=1, stderr="mkfs failed")
        with pytest.raises(FormatFailedError) as exc_info:
            host.make_filesystem("/dev/loop0", "ext4")
        assert exc_info.value.kind is ErrorKind.FORMAT_FAILED


class TestRunner:
    @patch("azfilevol.modules.host_mounter.subprocess.run")
    def test_runs_without_shell(self, mock_run, host):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        host.loop_detach("/dev/loop1")

        args, kwargs = mock_run.call_args
        assert args[0] == ["losetup", "--detach", "/dev/loop1"]
        assert kwargs.get("shell") is None
        assert kwargs["capture_output"] is True
        assert kwargs["check"] is False
