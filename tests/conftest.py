import os
import sqlite3
import tempfile

# The app module sets itself up at import time, so point it somewhere disposable first
_TMP = tempfile.mkdtemp(prefix="ration-tests-")
os.environ["RATION_DATABASE"] = os.path.join(_TMP, "ration.db")
os.environ["LOCAL_STORE_DIR"] = os.path.join(_TMP, "local_store")
os.environ["ADMIN_EMAIL"] = "admin@ration.local"
os.environ["ADMIN_PASSWORD"] = "Admin@123"
os.environ["SEED_SAMPLE_ORDERS"] = "0"
os.environ["BCRYPT_LOG_ROUNDS"] = "4"

import pytest

from orders import Order
from stores import RemoteOrderStore, LocalStore


class SwitchableConnector:
    """Hands out one sqlite connection, or fails like an unreachable server."""

    def __init__(self, path):
        self.path = path
        self.online = True
        self._conn = None

    def __call__(self):
        if not self.online:
            raise sqlite3.OperationalError("unable to open database file")
        if self._conn is None:
            self._conn = sqlite3.connect(self.path)
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def make_order(order_id, **overrides):
    record = dict(
        id=order_id,
        user_id=f"USR{order_id}",
        phone_no="9000000000",
        items=[{"name": "Rice", "quantity": "5 kg"}],
        cost=100,
        pay_history=False,
        visit_time="2026-10-19T10:00:00+00:00",
        order_status="pending",
        created_at="2026-10-19T10:00:00+00:00",
    )
    record.update(overrides)
    return Order.from_record(record)


@pytest.fixture
def connector(tmp_path):
    conn = SwitchableConnector(str(tmp_path / "remote.db"))
    yield conn
    conn.close()


@pytest.fixture
def remote(connector):
    store = RemoteOrderStore(connector)
    store.init_schema()
    return store


@pytest.fixture
def offline_remote(connector):
    connector.online = False
    return RemoteOrderStore(connector)


@pytest.fixture
def local(tmp_path):
    return LocalStore(str(tmp_path / "local_store"), "device-1")


@pytest.fixture
def flask_app(tmp_path):
    from app import app, init_db

    app.config.update(
        TESTING=True,
        RATION_DATABASE=str(tmp_path / "ration.db"),
        LOCAL_STORE_DIR=str(tmp_path / "local_store"),
        SEED_SAMPLE_ORDERS=False,
    )
    with app.app_context():
        init_db()
    return app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def admin_client(client):
    client.post("/signin", data={"email": "admin@ration.local", "password": "Admin@123"})
    return client
