"""Pytest configuration and shared fixtures for fhirp2p tests."""

import logging
from pathlib import Path

import pytest

from fakes import FakeFactory
from fhirp2p.config import Settings
from fhirp2p.records import SqliteRecordStore
from fhirp2p.torrent import ClientProvider, SwarmManager


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep host configuration out of settings built in tests."""
    for name in ("PORT", "FHIRP2P_API_KEY", "FHIRP2P_TRACKERS", "FHIRP2P_STORAGE_PATH"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Remove handlers installed by setup_logging during a test."""
    yield
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if type(handler).__module__.startswith("rich"):
            handler.close()
            root_logger.removeHandler(handler)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        storage_path=str(tmp_path / "content"),
        database_path=tmp_path / "torrents.db",
        sync_interval=0.05,
        restore_on_startup=False,
    )


@pytest.fixture
async def store(tmp_path: Path):
    store = SqliteRecordStore(tmp_path / "records.db")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def provider(settings: Settings, factory: FakeFactory) -> ClientProvider:
    return ClientProvider(settings, factory)


@pytest.fixture
async def manager(provider: ClientProvider, store: SqliteRecordStore):
    manager = SwarmManager(provider, store)
    yield manager
    await manager.shutdown()
