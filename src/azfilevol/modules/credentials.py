"""Storage account credential resolution.

The orchestrator hands the driver a secret map per request. Over time two
spellings have been used for each field, and key case varies between
callers, so lookup is case-insensitive and data-driven: each field has an
ordered tuple of candidate keys, tried in sequence until one yields a
non-empty value.

Precedence: the short spelling ("accountname", "accountkey") wins over the
prefixed spelling ("azurestorageaccountname", "azurestorageaccountkey")
when both are present and non-empty.

Security:
- Keys are never logged or included in error messages
- Errors report only the key names present in the secret map

Public API:
    StorageAccountCredentials: Resolved name/key (redacted repr)
    resolve_storage_account: Resolve credentials from a secret map
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import ClassVar

from azfilevol.errors import AccountKeyMissingError, AccountNameMissingError, NilInputError
from azfilevol.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageAccountCredentials:
    """Storage account name and key (CRITICAL: Never log the key)."""

    account_name: str
    account_key: str

    def __repr__(self) -> str:
        """Prevent accidental exposure of the key in logs."""
        return f"StorageAccountCredentials(account_name={self.account_name!r}, account_key=***REDACTED***)"

    __str__ = __repr__


class CredentialResolver:
    """Resolve storage credentials from a heterogeneous secret map."""

    ACCOUNT_NAME_KEYS: ClassVar[tuple[str, ...]] = ("accountname", "azurestorageaccountname")
    ACCOUNT_KEY_KEYS: ClassVar[tuple[str, ...]] = ("accountkey", "azurestorageaccountkey")

    @classmethod
    def resolve(cls, secrets: Mapping[str, str] | None) -> StorageAccountCredentials:
        """Resolve account name and key.

        Args:
            secrets: Secret map supplied with the request

        Returns:
            StorageAccountCredentials

        Raises:
            NilInputError: If secrets is None
            AccountNameMissingError: If no name key yields a value
            AccountKeyMissingError: If no key key yields a value
        """
        if secrets is None:
            raise NilInputError("unexpected: storage account secrets is None")

        lowered = cls._lowercase_keys(secrets)
        context = {"secret_keys": sorted(str(k) for k in secrets)}

        account_name = cls._lookup(lowered, cls.ACCOUNT_NAME_KEYS)
        if not account_name:
            raise AccountNameMissingError(
                f"could not find {' or '.join(cls.ACCOUNT_NAME_KEYS)} field in "
                f"{LogSanitizer.describe_secrets(secrets)}",
                context,
            )

        account_key = cls._lookup(lowered, cls.ACCOUNT_KEY_KEYS)
        if not account_key:
            raise AccountKeyMissingError(
                f"could not find {' or '.join(cls.ACCOUNT_KEY_KEYS)} field in "
                f"{LogSanitizer.describe_secrets(secrets)}",
                context,
            )

        logger.debug(f"Resolved storage credentials for account: {account_name}")
        return StorageAccountCredentials(account_name=account_name, account_key=account_key)

    @staticmethod
    def _lowercase_keys(secrets: Mapping[str, str]) -> dict[str, str]:
        # First non-empty value wins when keys differ only by case
        lowered: dict[str, str] = {}
        for key, value in secrets.items():
            name = str(key).lower()
            if not lowered.get(name):
                lowered[name] = value
        return lowered

    @staticmethod
    def _lookup(lowered: Mapping[str, str], candidates: tuple[str, ...]) -> str:
        for candidate in candidates:
            value = lowered.get(candidate)
            if value:
                return str(value)
        return ""


def resolve_storage_account(secrets: Mapping[str, str] | None) -> StorageAccountCredentials:
    """Convenience wrapper around CredentialResolver.resolve."""
    return CredentialResolver.resolve(secrets)


__all__ = ["CredentialResolver", "StorageAccountCredentials", "resolve_storage_account"]
