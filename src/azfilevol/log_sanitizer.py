"""Log sanitization for storage credentials.

Storage account keys grant full access to every share in an account, so they
must never reach a log line or an error message. This module redacts the
shapes in which a key can appear in driver output:
- Mount option strings (password=...)
- Secret maps (accountkey / azurestorageaccountkey values)
- Connection strings (AccountKey=...)
- SAS query strings (sig=...)

Design Philosophy:
- Security first: err on side of over-redaction
- Pattern-based: not brittle keyword matching
- Diagnostics keep key NAMES, never key VALUES
"""

import re
from collections.abc import Mapping
from re import Pattern
from typing import Any


class LogSanitizer:
    """Sanitize storage credentials from logs and error messages.

    All methods are classmethods and can be called without instantiation.
    """

    REDACTED = "[REDACTED]"

    # Order matters: more specific patterns should come first
    SECRET_PATTERNS: dict[str, Pattern] = {
        "connection_string_key": re.compile(r"(AccountKey=)([^;\s]+)", re.IGNORECASE),
        "sas_signature": re.compile(r"([?&]sig=)([^&\s]+)", re.IGNORECASE),
        "account_key_assignment": re.compile(
            r'((?:azurestorage)?accountkey["\']?\s*[:=]\s*["\']?)([^\s"\',\)}]+)',
            re.IGNORECASE,
        ),
        "password": re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^\s"\',\)}]+)', re.IGNORECASE),
        "passwd_env": re.compile(r"(PASSWD=)(\S+)"),
    }

    @classmethod
    def sanitize(cls, message: Any) -> str:
        """Sanitize message by redacting credential patterns.

        Args:
            message: The message to sanitize

        Returns:
            Sanitized message with secrets replaced by [REDACTED]

        Examples:
            >>> LogSanitizer.sanitize("mount -o username=acct,password=abc123")
            'mount -o username=acct,password=[REDACTED]'
        """
        if not isinstance(message, str):
            message = str(message)

        result = message
        for pattern in cls.SECRET_PATTERNS.values():
            result = pattern.sub(rf"\1{cls.REDACTED}", result)
        return result

    @classmethod
    def sanitize_options(cls, options: list[str]) -> list[str]:
        """Sanitize a mount option list element by element."""
        return [cls.sanitize(option) for option in options]

    @classmethod
    def describe_secrets(cls, secrets: Mapping[str, Any] | None) -> str:
        """Describe a secret map by its key names only.

        Examples:
            >>> LogSanitizer.describe_secrets({"accountname": "a", "accountkey": "k"})
            'secrets(keys: [accountkey, accountname])'
        """
        if secrets is None:
            return "secrets(None)"
        names = ", ".join(sorted(str(k) for k in secrets))
        return f"secrets(keys: [{names}])"


def sanitize(message: Any) -> str:
    """Convenience wrapper around LogSanitizer.sanitize."""
    return LogSanitizer.sanitize(message)


__all__ = ["LogSanitizer", "sanitize"]
