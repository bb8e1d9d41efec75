# tests/conftest.py

import copy
import json
import logging

import pytest
from fastapi.testclient import TestClient

import app
import config


# Tests run with generous limits and no file logging unless a test asks otherwise.
BASE_TEST_CONFIG = {
    "security": {
        "enableRateLimiting": True,
        "maxRequestsPerMinute": 1000,
        "blockSuspiciousIPs": True,
        "enableCSRF": True,
    },
    "logging": {
        "logToFile": False,
        "logLevel": "detailed",
        "autoCleanup": False,
        "cleanupAfterDays": 30,
    },
    "features": {
        "enableAPI": True,
        "enableExport": True,
        "enableStatistics": True,
        "realTimeUpdates": False,
    },
}


def build_config(**sections) -> dict:
    """BASE_TEST_CONFIG with per-section overrides, e.g. build_config(security={"enableCSRF": False})."""
    cfg = copy.deepcopy(BASE_TEST_CONFIG)
    for section, values in sections.items():
        cfg.setdefault(section, {}).update(values)
    return cfg


@pytest.fixture(autouse=True)
def reset_app_state(tmp_path):
    """
    Every test gets its own config / data / log files (never touch the real
    captured_data.json), and module globals are restored afterwards.
    """
    # ---- Before ----
    old_paths = (app.CONFIG_PATH, app.DATA_PATH, app.LOG_PATH)
    old_file_handler = config._FILE_HANDLER

    app.CONFIG_PATH = tmp_path / "config.json"
    app.DATA_PATH = tmp_path / "captured_data.json"
    app.LOG_PATH = tmp_path / "server.log"

    yield

    # ---- After ----
    app.CONFIG_PATH, app.DATA_PATH, app.LOG_PATH = old_paths
    if config._FILE_HANDLER is not None and config._FILE_HANDLER is not old_file_handler:
        logging.getLogger().removeHandler(config._FILE_HANDLER)
        config._FILE_HANDLER.close()
        config._FILE_HANDLER = old_file_handler


@pytest.fixture
def make_client():
    """
    Factory: write config.json, then start the app (lifespan included).

        client = make_client(security={"maxRequestsPerMinute": 10})
    """
    opened: list[TestClient] = []

    def _make(**sections) -> TestClient:
        app.CONFIG_PATH.write_text(json.dumps(build_config(**sections)), encoding="utf-8")
        c = TestClient(app.app)
        c.__enter__()
        opened.append(c)
        return c

    yield _make

    for c in opened:
        c.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def store(client):
    return app.app.state.store
