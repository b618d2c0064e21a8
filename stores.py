import json
import logging
import os
import re
import sqlite3
import tempfile
import threading

from orders import Order

log = logging.getLogger(__name__)

ACCEPTED_ORDERS_KEY = "acceptedOrders"
AUTH_FLAG_KEY = "isAuthenticated"
USER_EMAIL_KEY = "userEmail"
DISMISSED_ORDERS_KEY = "dismissedOrders"
OUTBOX_KEY = "pendingMutations"
SYNC_STATUS_KEY = "syncStatus"

NO_ROWS_MESSAGE = "No rows found"
ORDER_COLUMNS = (
    "id", "user_id", "phone_no", "items", "cost", "pay_history",
    "visit_time", "order_status", "delivery_status", "created_at",
)


class RemoteStoreError(Exception):
    pass


class RowNotFound(RemoteStoreError):
    def __init__(self, order_id=None):
        super().__init__(NO_ROWS_MESSAGE)
        self.order_id = order_id


def column_exists(db, table, column):
    info = db.execute(f"PRAGMA table_info({table})").fetchall()
    return any(col[1] == column for col in info)


# ============================================================
# REMOTE ORDER STORE
# ============================================================

class RemoteOrderStore:
    """The shared ``ration_orders`` table.

    ``connect`` returns an open sqlite3 connection; the store never closes it,
    so a request-scoped connection can be handed in.
    """

    def __init__(self, connect):
        self._connect = connect

    def _db(self):
        try:
            return self._connect()
        except sqlite3.Error as e:
            raise RemoteStoreError(f"Cannot reach order store: {e}") from e

    def init_schema(self):
        db = self._db()
        try:
            db.execute("""
                CREATE TABLE IF NOT EXISTS ration_orders (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    phone_no TEXT,
                    items TEXT NOT NULL,
                    cost REAL NOT NULL DEFAULT 0.0,
                    pay_history INTEGER NOT NULL DEFAULT 0,
                    visit_time TEXT,
                    order_status TEXT NOT NULL DEFAULT 'pending'
                )
            """)
            migrations = [
                ("ration_orders", "delivery_status", "ALTER TABLE ration_orders ADD COLUMN delivery_status TEXT"),
                ("ration_orders", "created_at", "ALTER TABLE ration_orders ADD COLUMN created_at TEXT"),
            ]
            for table, column, sql in migrations:
                if not column_exists(db, table, column):
                    db.execute(sql)
            db.execute("CREATE INDEX IF NOT EXISTS idx_ration_orders_status_created ON ration_orders (order_status, created_at)")
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise RemoteStoreError(f"Schema setup failed: {e}") from e

    def list_by_status(self, status):
        db = self._db()
        try:
            rows = db.execute(
                f"SELECT {', '.join(ORDER_COLUMNS)} FROM ration_orders WHERE order_status = ? ORDER BY created_at DESC",
                (status,),
            ).fetchall()
        except sqlite3.Error as e:
            raise RemoteStoreError(f"Listing {status} orders failed: {e}") from e
        orders = []
        for row in rows:
            try:
                orders.append(self._to_order(row))
            except (TypeError, ValueError) as e:
                log.warning("Skipping malformed order row %r: %s", row[0], e)
        return orders

    def count(self):
        db = self._db()
        try:
            return db.execute("SELECT COUNT(*) FROM ration_orders").fetchone()[0] or 0
        except sqlite3.Error as e:
            raise RemoteStoreError(f"Counting orders failed: {e}") from e

    def insert(self, order):
        record = order.to_record()
        record["items"] = json.dumps(record["items"], ensure_ascii=False)
        record["pay_history"] = 1 if record["pay_history"] else 0
        db = self._db()
        try:
            db.execute(
                f"INSERT INTO ration_orders ({', '.join(ORDER_COLUMNS)}) VALUES ({', '.join('?' for _ in ORDER_COLUMNS)})",
                tuple(record[col] for col in ORDER_COLUMNS),
            )
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise RemoteStoreError(f"Inserting order {order.id} failed: {e}") from e

    def update(self, order_id, fields):
        """Applies a partial update keyed by id; raises RowNotFound when no row matches."""
        unknown = {col for col in fields if col not in ORDER_COLUMNS or col == "id"}
        if unknown:
            raise RemoteStoreError(f"Cannot update columns: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{col} = ?" for col in fields)
        db = self._db()
        try:
            cur = db.execute(
                f"UPDATE ration_orders SET {assignments} WHERE id = ?",
                (*fields.values(), str(order_id)),
            )
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise RemoteStoreError(f"Updating order {order_id} failed: {e}") from e
        if cur.rowcount == 0:
            raise RowNotFound(order_id)

    @staticmethod
    def _to_order(row):
        record = dict(zip(ORDER_COLUMNS, row))
        raw_items = record["items"]
        try:
            record["items"] = json.loads(raw_items)
        except (TypeError, ValueError):
            # Plain text written by another client
            record["items"] = raw_items if raw_items is not None else ""
        return Order.from_record(record)


# ============================================================
# LOCAL (PER-DEVICE) KEY-VALUE STORE
# ============================================================

_local_lock = threading.RLock()


class LocalStore:
    """One JSON document per device, rewritten atomically on every change."""

    def __init__(self, directory, device_id):
        if not re.match(r"^[A-Za-z0-9_-]{1,64}$", str(device_id)):
            raise ValueError(f"Invalid device id: {device_id!r}")
        os.makedirs(directory, exist_ok=True)
        self.device_id = device_id
        self.path = os.path.join(directory, f"{device_id}.json")

    def _load(self):
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except ValueError:
            log.warning("Local store %s is corrupt, starting empty", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data):
        fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(self.path), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get(self, key, default=None):
        with _local_lock:
            return self._load().get(key, default)

    def set(self, key, value):
        with _local_lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove(self, *keys):
        with _local_lock:
            data = self._load()
            if any(key in data for key in keys):
                for key in keys:
                    data.pop(key, None)
                self._save(data)

    def update(self, key, fn, default=None):
        """Read-modify-write of one key under the store lock; returns the new value."""
        with _local_lock:
            data = self._load()
            value = fn(data.get(key, default))
            data[key] = value
            self._save(data)
            return value
