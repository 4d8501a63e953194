"""Pytest fixtures and configuration for mailflow tests.

Provides common fixtures for configuration, database, blob storage, and
seed data.
"""

import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

import pytest

from mailflow.config import reset_config
from mailflow.config_schema import AppConfig
from mailflow.db.store import DatabaseStore
from mailflow.storage.blob_store import ContentAddressedStore, FilesystemBackend


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_yaml(data_dir: Path) -> str:
    """Return a minimal valid config.yaml content."""
    return f"""
schema_version: 1
timezone: "America/Mexico_City"

database:
  path: "{data_dir / 'mailflow.db'}"

oauth:
  client_id: "test-client-id"
  tenant_id: "common"

sync:
  interval_minutes: 10
  page_size: 500

storage:
  root: "{data_dir / 'blobs'}"
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "timezone": "America/Mexico_City",
        "database": {"path": str(data_dir / "mailflow.db")},
        "oauth": {"client_id": "test-client-id", "tenant_id": "common"},
        "sync": {
            "interval_minutes": 10,
            "page_size": 500,
            "retry_delays": [0.0],
            "page_delay_seconds": 0.0,
        },
        "storage": {"root": str(data_dir / "blobs")},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILFLOW_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILFLOW_CONFIG_PATH")
    os.environ["MAILFLOW_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILFLOW_CONFIG_PATH"]
    else:
        os.environ["MAILFLOW_CONFIG_PATH"] = old_value


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
def blobs(store: DatabaseStore, data_dir: Path) -> ContentAddressedStore:
    """Return a content-addressed store over a temporary filesystem backend."""
    return ContentAddressedStore(FilesystemBackend(data_dir / "blobs"), store)


@pytest.fixture
async def account_id(store: DatabaseStore) -> int:
    """Insert a linked account with a valid token and return its id."""
    return await store.create_account(
        email="ops@navi.mx",
        provider_account_id="acct-1",
        access_token="access-token",
        refresh_token="refresh-token",
        token_expires_at=datetime(2099, 1, 1, tzinfo=UTC),
    )

