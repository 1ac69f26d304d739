"""SMB mount option defaults.

Azure Files mounts need explicit permission modes and a protocol version;
the kernel defaults are either too strict (0755) or too old (SMB 1.0).
Caller-supplied values always win; missing ones are appended. A managed
directive given more than once keeps only its first value.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from azfilevol.config import DriverConfig

DIR_MODE = "dir_mode"
FILE_MODE = "file_mode"
VERS = "vers"

DEFAULT_DIR_MODE = "0777"
DEFAULT_FILE_MODE = "0777"
DEFAULT_VERS = "3.0"


@dataclass(frozen=True)
class MountOptionDefaults:
    """Default values appended for missing directives."""

    dir_mode: str = DEFAULT_DIR_MODE
    file_mode: str = DEFAULT_FILE_MODE
    vers: str = DEFAULT_VERS

    @classmethod
    def from_config(cls, config: DriverConfig) -> "MountOptionDefaults":
        return cls(
            dir_mode=config.default_dir_mode,
            file_mode=config.default_file_mode,
            vers=config.default_smb_version,
        )


def append_default_mount_options(
    options: Sequence[str] | None, defaults: MountOptionDefaults | None = None
) -> list[str]:
    """Append dir_mode, file_mode and vers when the caller did not set them.

    Original entries keep their order, minus repeats of a managed directive
    (the first one wins). Defaults follow in the fixed order dir_mode,
    file_mode, vers. Running this on its own output is a no-op.

    Examples:
        >>> append_default_mount_options(["dir_mode=0777"])
        ['dir_mode=0777', 'file_mode=0777', 'vers=3.0']
    """
    defaults = defaults or MountOptionDefaults()
    managed = (DIR_MODE, FILE_MODE, VERS)
    result: list[str] = []
    present: set[str] = set()
    for option in options or []:
        name = _option_name(option)
        if name in managed:
            if name in present:
                continue
            present.add(name)
        result.append(option)

    for name, value in (
        (DIR_MODE, defaults.dir_mode),
        (FILE_MODE, defaults.file_mode),
        (VERS, defaults.vers),
    ):
        if name not in present:
            result.append(f"{name}={value}")

    return result


def _option_name(option: str) -> str:
    return option.split("=", 1)[0].strip()


__all__ = [
    "DEFAULT_DIR_MODE",
    "DEFAULT_FILE_MODE",
    "DEFAULT_VERS",
    "DIR_MODE",
    "FILE_MODE",
    "MountOptionDefaults",
    "VERS",
    "append_default_mount_options",
]
