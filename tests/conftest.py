import os

# The periodic scanner must not fire while the app is imported under test
os.environ.setdefault("SCAN_ON_START", "0")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import app  # noqa: E402
import catalog  # noqa: E402
from config import Config  # noqa: E402
from library.sync import SyncEngine  # noqa: E402

from helpers import FakeDeriver  # noqa: E402


@pytest.fixture()
def cfg(tmp_path):
    originals = tmp_path / "originals"
    originals.mkdir()
    return Config(
        originals_path=originals,
        thumbnails_path=tmp_path / "thumbs",
        database_path=tmp_path / "state" / "glimpse.db",
        tool_timeout_seconds=5,
    )


@pytest.fixture()
def db(cfg):
    """Point the catalog at a fresh per-test database."""
    previous = catalog._DB_FILE
    catalog.initialize(cfg.database_path)
    try:
        yield cfg.database_path
    finally:
        catalog._DB_FILE = previous


@pytest.fixture()
def deriver(cfg):
    return FakeDeriver(cfg)


@pytest.fixture()
def engine(cfg, db, deriver):
    return SyncEngine(cfg, deriver=deriver)


@pytest.fixture()
def app_module(cfg, db, engine):
    saved = {k: app.STATE.get(k) for k in ("config", "engine", "scan_worker_enabled", "worker")}
    app.STATE["config"] = cfg
    app.STATE["engine"] = engine
    app.STATE["scan_worker_enabled"] = False
    try:
        yield app
    finally:
        app.STATE.update(saved)


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client
