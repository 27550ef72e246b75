"""Shared pytest fixtures and configuration."""

from datetime import datetime, timezone

import pytest

from governance_exporter.config_store import ConfigStore
from governance_exporter.storage_writer import StorageWriter


class FakeContainer:
    """Stands in for an azure ContainerClient and keeps uploaded text."""

    def __init__(self, exists: bool = True):
        self._exists = exists
        self.uploads: dict[str, str] = {}
        self.content_types: dict[str, str] = {}
        self.exists_calls = 0

    def exists(self) -> bool:
        self.exists_calls += 1
        return self._exists

    def upload_blob(self, name, data, overwrite=False, content_settings=None):
        self.uploads[name] = data.read().decode("utf-8")
        if content_settings is not None:
            self.content_types[name] = content_settings.content_type


FIXED_NOW = datetime(2025, 7, 25, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def fake_container():
    return FakeContainer()


@pytest.fixture
def writer(fake_container):
    """StorageWriter uploading into a FakeContainer with a fixed clock."""
    return StorageWriter(client_factory=lambda target: fake_container, clock=lambda: FIXED_NOW)


@pytest.fixture
def sample_config():
    """Configuration document with defaults and a few reports."""
    return {
        "defaults": {
            "formats": ["json"],
            "storage": {
                "storageAccount": "defaultaccount",
                "storageContainer": "reports",
            },
        },
        "exports": {
            "users": {
                "enabled": True,
                "properties": ["userId", "mail"],
            },
            "GROUPMEMBERS_A": {
                "enabled": "yes",
                "formats": "csv,json",
                "groupIds": ["g1", "g2"],
                "properties": ["groupId", "displayName"],
            },
            "GROUPMEMBERS_B": {
                "enabled": "no",
                "groupIds": "g3",
            },
            "DISABLED": {},
        },
    }


@pytest.fixture
def config_store(sample_config):
    return ConfigStore.from_dict(sample_config)
