"""
Shared test fixtures and configuration for azfilevol tests.

This module provides common fixtures used across all test types:
- Driver configuration pointing at temporary paths
- In-memory host primitives
- Mock Azure storage clients
- Sample secrets and volume ids
"""

from unittest.mock import MagicMock

import pytest

from azfilevol.config import DriverConfig
from azfilevol.modules.storage_client import AzureFileClient
from tests.mocks.host_mock import FakeHost

# ============================================================================
# CONFIGURATION FIXTURES
# ============================================================================


@pytest.fixture
def driver_config(tmp_path) -> DriverConfig:
    """Driver configuration for testing.

    The node lock file lives under tmp_path and host retries are fast so
    busy-retry tests do not sleep for long.
    """
    return DriverConfig(
        default_resource_group="test-rg",
        node_lock_file=tmp_path / "run" / "loop.lock",
        host_retry_max_attempts=3,
        host_retry_initial_delay=0.01,
        host_retry_max_delay=0.02,
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every AZFILEVOL_* variable from the environment."""
    import os

    for name in list(os.environ):
        if name.startswith("AZFILEVOL_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ============================================================================
# HOST FIXTURES
# ============================================================================


@pytest.fixture
def fake_host() -> FakeHost:
    """In-memory host mount/loop tables."""
    return FakeHost()


@pytest.fixture
def staging_dir(tmp_path):
    """Temporary staging directory (not mounted)."""
    path = tmp_path / "staging"
    path.mkdir()
    return path


# ============================================================================
# AZURE MOCKING FIXTURES
# ============================================================================


@pytest.fixture
def mock_storage_client() -> MagicMock:
    """Mock AzureFileClient.

    Provides a fake storage client for testing provisioning verbs
    without making actual Azure API calls.
    """
    client = MagicMock(spec=AzureFileClient)
    client.create_share_snapshot.return_value = "2019-08-22T07:17:53.0000000Z"
    client.delete_share.return_value = True
    client.delete_share_snapshot.return_value = True
    client.get_account_key.return_value = "ZmV0Y2hlZC1rZXk="
    return client


@pytest.fixture
def mock_management_client() -> MagicMock:
    """Mock azure.mgmt.storage StorageManagementClient."""
    client = MagicMock()
    client.storage_accounts.list_keys.return_value = MagicMock(
        keys=[MagicMock(value="a2V5LW9uZQ=="), MagicMock(value="a2V5LXR3bw==")]
    )
    return client


# ============================================================================
# SAMPLE DATA FIXTURES
# ============================================================================


@pytest.fixture
def sample_secrets() -> dict[str, str]:
    """Secret map as supplied by the orchestrator."""
    return {
        "accountname": "teststorage",
        "accountkey": "dGVzdC1rZXktdmFsdWU=",  # noqa: S105 - test fixture, not a real credential
    }


@pytest.fixture
def filesystem_volume_id() -> str:
    return "test-rg#teststorage#data-share"


@pytest.fixture
def block_volume_id() -> str:
    return "test-rg#teststorage#block-share#block-share.vhd"
