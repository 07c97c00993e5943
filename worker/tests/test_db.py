import dataclasses

import pytest

from thriftscout.core import db
from thriftscout.core.errors import ConfigError


class TrackingConnection:
    def __init__(self):
        self.rollbacks = 0

    def rollback(self):
        self.rollbacks += 1


class TrackingPool:
    def __init__(self):
        self.connection = TrackingConnection()
        self.checked_out = 0

    def getconn(self):
        self.checked_out += 1
        return self.connection

    def putconn(self, conn):
        assert conn is self.connection
        self.checked_out -= 1


@pytest.fixture
def pool_settings(monkeypatch, settings):
    monkeypatch.setattr(db, "_connection_pool", None)
    monkeypatch.setattr(db, "get_settings", lambda: settings)
    return settings


def test_missing_dsn_is_a_config_error(monkeypatch, pool_settings):
    monkeypatch.setattr(db, "get_settings", lambda: dataclasses.replace(pool_settings, database_url=""))
    with pytest.raises(ConfigError):
        db.init_pool()


def test_pool_is_created_once(monkeypatch, pool_settings):
    created = []

    def fake_pool(minconn, maxconn, dsn, connect_timeout):
        created.append((minconn, maxconn, dsn, connect_timeout))
        return object()

    monkeypatch.setattr(db.pool, "SimpleConnectionPool", fake_pool)

    assert db.init_pool() is db.init_pool()
    assert created == [(1, 5, pool_settings.database_url, 10)]


def test_connection_is_returned_to_pool(monkeypatch, pool_settings):
    tracking = TrackingPool()
    monkeypatch.setattr(db, "_connection_pool", tracking)

    with db.get_connection() as conn:
        assert tracking.checked_out == 1

    assert tracking.checked_out == 0
    assert conn.rollbacks == 0


def test_failed_block_rolls_back_and_releases(monkeypatch, pool_settings):
    tracking = TrackingPool()
    monkeypatch.setattr(db, "_connection_pool", tracking)

    with pytest.raises(RuntimeError):
        with db.get_connection():
            raise RuntimeError("statement failed")

    assert tracking.connection.rollbacks == 1
    assert tracking.checked_out == 0
