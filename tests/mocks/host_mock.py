"""
In-memory stand-in for HostMounter.

Tracks the mount table, loop device table and filesystem signatures in
dicts so the VHD manager and driver can be exercised end to end without
root. Optional delays make the slow host steps observable for concurrency
tests.
"""

import threading
import time
from pathlib import Path
from typing import Any

from azfilevol.modules.host_mounter import HostMounter


class FakeHost(HostMounter):
    """HostMounter whose primitives only touch in-memory tables."""

    def __init__(self, mount_delay: float = 0.0, attach_delay: float = 0.0):
        super().__init__()
        self.mount_delay = mount_delay
        self.attach_delay = attach_delay
        self.mounts: dict[str, str] = {}
        self.mount_options: dict[str, list[str]] = {}
        self.passwords: dict[str, str | None] = {}
        self.loops: dict[str, str] = {}
        self.size_limits: dict[str, int | None] = {}
        self.filesystems: dict[str, str] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.failures: dict[str, Exception] = {}
        self._lock = threading.Lock()
        self._next_loop = 0

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name, *args))
        if name in self.failures:
            raise self.failures[name]

    def called(self, name: str) -> list[tuple[Any, ...]]:
        with self._lock:
            return [call for call in self.calls if call[0] == name]

    # Mount table

    def mount(self, source, target, fs_type, options=(), password=None):
        self._record("mount", source, str(target), fs_type, list(options))
        time.sleep(self.mount_delay)
        with self._lock:
            self.mounts[str(target)] = str(source)
            self.mount_options[str(target)] = list(options)
            self.passwords[str(target)] = password

    def unmount(self, target):
        self._record("unmount", str(target))
        with self._lock:
            return self.mounts.pop(str(target), None) is not None

    def mount_source(self, target):
        with self._lock:
            return self.mounts.get(str(target))

    def mount_targets(self, source):
        with self._lock:
            return [target for target, mounted in self.mounts.items() if mounted == source]

    # Loop devices

    def find_loop_device(self, backing_file):
        with self._lock:
            for device, file in self.loops.items():
                if file == str(backing_file):
                    return device
        return None

    def loop_attach(self, backing_file, size_limit=None):
        self._record("loop_attach", str(backing_file), size_limit)
        time.sleep(self.attach_delay)
        with self._lock:
            device = f"/dev/loop{self._next_loop}"
            self._next_loop += 1
            self.loops[device] = str(backing_file)
            self.size_limits[device] = size_limit
        return device

    def loop_detach(self, device):
        self._record("loop_detach", device)
        with self._lock:
            return self.loops.pop(device, None) is not None

    # Filesystems

    def filesystem_type(self, device):
        with self._lock:
            return self.filesystems.get(device, "")

    def make_filesystem(self, device, fs_type):
        self._record("make_filesystem", device, fs_type)
        time.sleep(self.mount_delay)
        with self._lock:
            self.filesystems[device] = fs_type

    def devices_for(self, backing_file: Path) -> list[str]:
        with self._lock:
            return [device for device, file in self.loops.items() if file == str(backing_file)]
