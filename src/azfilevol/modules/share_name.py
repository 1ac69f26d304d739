"""Azure Files share name derivation.

Share names must be 3-63 characters of lowercase letters, digits and single
hyphens, and must begin and end with a letter or digit. Volume names coming
from the orchestrator follow none of these rules, so they are folded into a
legal name here.

Public API:
    derive_share_name: Turn a volume name into a legal share name
    begins_and_ends_valid: Guard checked before submitting a name
    validate_share_name: Strict check for caller-supplied share names
"""

import logging
import re
import uuid

from azfilevol.errors import ShareNameInvalidError

logger = logging.getLogger(__name__)

MIN_SHARE_NAME_LENGTH = 3
MAX_SHARE_NAME_LENGTH = 63
GENERATED_NAME_PREFIX = "pvc-file-dynamic"

SHARE_NAME_PATTERN = re.compile(r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$")
_INVALID_CHARS = re.compile(r"[^a-z0-9-]")
_HYPHEN_RUNS = re.compile(r"-{2,}")


def derive_share_name(volume_name: str) -> str:
    """Derive a legal share name from a volume name.

    Lowercases, replaces characters outside [a-z0-9-] with hyphens,
    collapses hyphen runs, truncates to 63 characters and trims edge
    hyphens. A result shorter than 3 characters is replaced by a generated
    name so two short inputs never collide.

    Examples:
        >>> derive_share_name("a--z")
        'a-z'
        >>> derive_share_name("A2Z")
        'a2z'
        >>> derive_share_name("aq").startswith("pvc-file-dynamic-")
        True
    """
    name = (volume_name or "").lower()
    name = _INVALID_CHARS.sub("-", name)
    name = _HYPHEN_RUNS.sub("-", name)
    name = name[:MAX_SHARE_NAME_LENGTH].strip("-")

    if len(name) < MIN_SHARE_NAME_LENGTH:
        generated = generate_share_name()
        logger.debug(f"Volume name {volume_name!r} too short for a share name, using {generated}")
        return generated

    return name


def generate_share_name(prefix: str = GENERATED_NAME_PREFIX) -> str:
    """Generate a unique share name with a recognizable prefix."""
    return f"{prefix}-{uuid.uuid4()}"[:MAX_SHARE_NAME_LENGTH]


def begins_and_ends_valid(name: str) -> bool:
    """Return True if the first and last characters are ASCII letters or digits.

    Examples:
        >>> begins_and_ends_valid("a-9")
        True
        >>> begins_and_ends_valid("-1-")
        False
    """
    if not name:
        return False
    return _is_alnum(name[0]) and _is_alnum(name[-1])


def validate_share_name(name: str) -> str:
    """Validate a caller-supplied share name.

    Raises:
        ShareNameInvalidError: If the name violates Azure Files naming rules
    """
    if not begins_and_ends_valid(name) or not SHARE_NAME_PATTERN.match(name):
        raise ShareNameInvalidError(
            f"Invalid share name: {name!r}. "
            "Must be 3-63 characters, lowercase letters, numbers, and single hyphens. "
            "Cannot start or end with hyphen.",
            {"share_name": name},
        )
    return name


def _is_alnum(char: str) -> bool:
    return char.isascii() and char.isalnum()


__all__ = [
    "GENERATED_NAME_PREFIX",
    "MAX_SHARE_NAME_LENGTH",
    "MIN_SHARE_NAME_LENGTH",
    "begins_and_ends_valid",
    "derive_share_name",
    "generate_share_name",
    "validate_share_name",
]
