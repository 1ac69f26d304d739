"""Driver configuration.

A single immutable DriverConfig is built at process start and handed to
every component. Values come from a TOML file, environment variables, or
the built-in defaults, in that order of increasing precedence.

Design Philosophy:
- Sensible defaults: works out of the box on a stock Linux node
- Environment-aware: every field can be overridden via AZFILEVOL_* vars
- Immutable: no component mutates shared defaults at runtime
"""

import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

import tomli

logger = logging.getLogger(__name__)

ENV_PREFIX = "AZFILEVOL_"
SUPPORTED_FS_TYPES = ("ext4", "ext3", "ext2", "xfs")


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is invalid."""

    pass


@dataclass(frozen=True)
class DriverConfig:
    """Driver configuration data."""

    # Azure
    subscription_id: str | None = None
    default_resource_group: str | None = None
    storage_endpoint_suffix: str = "core.windows.net"
    default_share_quota_gib: int = 100

    # SMB mount option defaults
    default_dir_mode: str = "0777"
    default_file_mode: str = "0777"
    default_smb_version: str = "3.0"

    # Block volumes
    default_fs_type: str = "ext4"
    node_lock_file: Path = Path("/run/azfilevol/loop.lock")

    # Host syscall retry (EBUSY/EAGAIN only)
    host_retry_max_attempts: int = 3
    host_retry_initial_delay: float = 0.5
    host_retry_max_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.default_share_quota_gib < 1:
            raise ConfigError(
                f"default_share_quota_gib must be at least 1, got {self.default_share_quota_gib}"
            )
        if self.host_retry_max_attempts < 1:
            raise ConfigError(
                f"host_retry_max_attempts must be at least 1, got {self.host_retry_max_attempts}"
            )
        if self.default_fs_type not in SUPPORTED_FS_TYPES:
            raise ConfigError(
                f"Unsupported default_fs_type: {self.default_fs_type}. "
                f"Supported: {', '.join(SUPPORTED_FS_TYPES)}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        data["node_lock_file"] = str(self.node_lock_file)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DriverConfig":
        """Create from dictionary, coercing values to each field's type.

        Raises:
            ConfigError: If a key is unknown or a value cannot be coerced
        """
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        values = {name: _coerce(name, cls._field_type(name), raw) for name, raw in data.items()}
        return cls(**values)

    @classmethod
    def from_environment(cls, base: "DriverConfig | None" = None) -> "DriverConfig":
        """Load configuration from environment variables.

        Environment variables (all optional), for example:
            AZFILEVOL_DEFAULT_RESOURCE_GROUP
            AZFILEVOL_STORAGE_ENDPOINT_SUFFIX
            AZFILEVOL_DEFAULT_SMB_VERSION
            AZFILEVOL_HOST_RETRY_MAX_ATTEMPTS

        Args:
            base: Configuration whose values are used when a variable is unset

        Returns:
            DriverConfig with values from environment or base/defaults
        """
        base = base or cls()
        overrides = {}
        for f in fields(cls):
            raw = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is not None and raw != "":
                overrides[f.name] = _coerce(f.name, cls._field_type(f.name), raw)
        return replace(base, **overrides)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "DriverConfig":
        """Load configuration from a TOML file, then apply environment overrides.

        Args:
            path: TOML file path; missing files fall back to defaults

        Returns:
            DriverConfig object

        Raises:
            ConfigError: If the file cannot be parsed or holds invalid values
        """
        base = cls()
        if path is not None:
            config_path = Path(path).expanduser()
            if config_path.exists():
                try:
                    with open(config_path, "rb") as f:
                        data = tomli.load(f)
                except (OSError, tomli.TOMLDecodeError) as e:
                    raise ConfigError(f"Failed to load config: {e}") from e
                base = cls.from_dict(data)
                logger.debug(f"Loaded config from: {config_path}")
            else:
                logger.debug(f"Config file not found at {config_path}, using defaults")
        return cls.from_environment(base)

    @classmethod
    def _field_type(cls, name: str) -> type:
        default = getattr(cls(), name)
        if name in ("subscription_id", "default_resource_group"):
            return str
        return type(default)


def _coerce(name: str, target: type, raw: Any) -> Any:
    if raw is None:
        return None
    try:
        if issubclass(target, Path):
            return Path(raw)
        return target(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r} ({e})") from e


__all__ = ["ConfigError", "DriverConfig", "SUPPORTED_FS_TYPES"]
