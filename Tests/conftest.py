# Tests/conftest.py
import uuid
from pathlib import Path

import pytest
#
# Local Imports
from zonesync import config
from zonesync.DB.Sync_Store_DB import SyncStoreDatabase
from zonesync.Sync.Sync_Client import ClientSyncEngine
from zonesync.Sync.Sync_Server import ZoneSyncServer
from zonesync.Sync.throttle import SyncThrottle


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch):
    """Points the config loader at a throwaway file so tests never touch ~/.config."""
    config_file = tmp_path / "config" / "config.toml"
    monkeypatch.setenv(config.CONFIG_PATH_ENV_VAR, str(config_file))
    monkeypatch.delenv(config.SERVER_URL_ENV_VAR, raising=False)
    monkeypatch.delenv(config.API_TOKEN_ENV_VAR, raising=False)
    monkeypatch.setattr(config, "_CONFIG_CACHE", None)
    yield config_file
    config._CONFIG_CACHE = None


# --- Database Fixtures ---

@pytest.fixture(scope="function")
def store_factory(tmp_path: Path):
    """Factory fixture creating file-backed SyncStoreDatabase instances."""
    created = []

    def _create(client_id: str = "test_client") -> SyncStoreDatabase:
        db_file = tmp_path / f"store_{uuid.uuid4().hex[:8]}.db"
        db = SyncStoreDatabase(db_path=str(db_file), client_id=client_id)
        created.append(db)
        return db

    yield _create
    for db in created:
        db.close_connection()


@pytest.fixture(scope="function")
def store(store_factory) -> SyncStoreDatabase:
    return store_factory()


# --- Sync Fixtures ---

@pytest.fixture(scope="function")
def server() -> ZoneSyncServer:
    return ZoneSyncServer()


def make_throttle() -> SyncThrottle:
    """A throttle that never sleeps."""
    return SyncThrottle(min_interval=0.0, backoff_base=0.0, backoff_max=0.0)


@pytest.fixture(scope="function")
def engine_factory():
    def _create(db: SyncStoreDatabase, transport, **kwargs) -> ClientSyncEngine:
        kwargs.setdefault("throttle", make_throttle())
        return ClientSyncEngine(db, transport, **kwargs)
    return _create


@pytest.fixture(scope="function")
def engine(store, server, engine_factory) -> ClientSyncEngine:
    return engine_factory(store, server)
