"""Shared test fixtures and configuration for the AQHI engine test suite."""

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from aqhi.config import COMMUNITIES_PATH, CONFIG_PATH, LOCATIONS_PATH, parse_config


def _load(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture(scope="session")
def config_data():
    """Raw contents of the shipped config/aqhi.json."""
    return _load(CONFIG_PATH)


@pytest.fixture()
def engine_config(config_data):
    """EngineConfig from the shipped config files, ignoring the process environment."""
    return parse_config(
        config_data,
        locations=_load(LOCATIONS_PATH),
        communities=_load(COMMUNITIES_PATH),
        env={},
    )


@pytest.fixture()
def db_engine():
    """In-memory SQLite engine shared across sessions and threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()
