"""
Top-level pytest conftest.py -- shared fixtures for ghproxy tests.

Provides:
    write_config - write an access list file and return its path
    store        - ConfigStore loaded from an empty access list file
    settings     - default GatewaySettings
    engine       - ProxyEngine over ``store``
    app, client  - Flask app wrapping ``engine`` and its test client
"""

import json

import pytest

from ghproxy.app import create_app
from ghproxy.config_store import ConfigStore
from ghproxy.engine import ProxyEngine
from ghproxy.settings import GatewaySettings


@pytest.fixture
def write_config(tmp_path):
    """Return a callable writing ``{"whiteList": allow, "blackList": deny}``."""

    def _write(allow=(), deny=(), name="config.json"):
        path = tmp_path / name
        path.write_text(json.dumps({"whiteList": list(allow), "blackList": list(deny)}))
        return str(path)

    return _write


@pytest.fixture
def store(write_config):
    config_store = ConfigStore(write_config())
    config_store.load_initial()
    return config_store


@pytest.fixture
def settings():
    return GatewaySettings()


@pytest.fixture
def engine(store, settings):
    return ProxyEngine(store, settings)


@pytest.fixture
def app(engine):
    flask_app = create_app(engine=engine)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
