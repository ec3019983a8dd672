#!/usr/bin/env python3
# Local store: SQLite-backed products, entries and settings collections
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

DB_PATH = os.environ.get("POS_DB_PATH", "pos.db")

SETTING_OWNER = "owner"
SETTING_REPO = "repo-identity"
SETTING_TOKEN = "access-token"
SETTING_KEYS = (SETTING_OWNER, SETTING_REPO, SETTING_TOKEN)


class StorageFailure(Exception):
    """Local persistence is unavailable, corrupt, or a transaction aborted."""


def _ensure_schema(conn: sqlite3.Connection):
    # No foreign key on entries.product_id: entries outlive their product.
    conn.execute("""
    CREATE TABLE IF NOT EXISTS products (
      id    INTEGER PRIMARY KEY AUTOINCREMENT,
      name  TEXT NOT NULL,
      price NUMERIC NOT NULL
    )
    """)
    conn.execute("""
    CREATE TABLE IF NOT EXISTS entries (
      id           INTEGER PRIMARY KEY AUTOINCREMENT,
      product_id   INTEGER,
      product_name TEXT NOT NULL,
      quantity     NUMERIC NOT NULL,
      total        NUMERIC NOT NULL,
      created_utc  TEXT NOT NULL
    )
    """)
    conn.execute("""
    CREATE TABLE IF NOT EXISTS settings (
      key   TEXT PRIMARY KEY,
      value TEXT NOT NULL
    )
    """)
    conn.commit()


def _product_record(row: sqlite3.Row) -> Dict[str, Any]:
    return {"id": row["id"], "name": row["name"], "price": float(row["price"])}


def _entry_record(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "productId": row["product_id"],
        "productName": row["product_name"],
        "quantity": float(row["quantity"]),
        "total": float(row["total"]),
        "timestamp": row["created_utc"],
    }


class LocalStore:
    """Owned handle over the local database.

    Every public method is one transaction: it either commits fully or
    rolls back and raises StorageFailure. The handle is shared between
    request threads and the sync worker, so calls are serialized by a lock.
    """

    def __init__(self, conn: sqlite3.Connection, path: str = ":memory:"):
        self.conn = conn
        self.path = path
        self._lock = threading.RLock()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageFailure(f"Cannot start transaction: {exc}") from exc
            try:
                yield self.conn
                self.conn.commit()
            except sqlite3.Error as exc:
                self._rollback()
                raise StorageFailure(str(exc)) from exc
            except BaseException:
                self._rollback()
                raise

    def _rollback(self):
        try:
            self.conn.rollback()
        except sqlite3.Error:
            pass

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------- PRODUCTS ----------
    def add_product(self, name: str, price: float) -> Dict[str, Any]:
        with self._transaction() as conn:
            cur = conn.execute("INSERT INTO products (name, price) VALUES (?,?)", (name, float(price)))
            return {"id": cur.lastrowid, "name": name, "price": float(price)}

    def list_products(self) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT id, name, price FROM products ORDER BY id").fetchall()
        return [_product_record(r) for r in rows]

    def get_product(self, product_id: int) -> Optional[Dict[str, Any]]:
        with self._transaction() as conn:
            row = conn.execute("SELECT id, name, price FROM products WHERE id=?", (product_id,)).fetchone()
        return _product_record(row) if row else None

    def delete_product(self, product_id: int) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM products WHERE id=?", (product_id,))
            return cur.rowcount > 0

    def clear_products(self):
        with self._transaction() as conn:
            conn.execute("DELETE FROM products")

    # ---------- ENTRIES ----------
    def add_entry(
        self,
        product_id: Optional[int],
        product_name: str,
        quantity: float,
        total: float,
        timestamp: str
    ) -> Dict[str, Any]:
        with self._transaction() as conn:
            cur = conn.execute("""
                INSERT INTO entries (product_id, product_name, quantity, total, created_utc)
                VALUES (?,?,?,?,?)
            """, (product_id, product_name, float(quantity), float(total), timestamp))
            entry_id = cur.lastrowid
        return {
            "id": entry_id,
            "productId": product_id,
            "productName": product_name,
            "quantity": float(quantity),
            "total": float(total),
            "timestamp": timestamp,
        }

    def list_entries(self) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute("""
                SELECT id, product_id, product_name, quantity, total, created_utc
                FROM entries ORDER BY id
            """).fetchall()
        return [_entry_record(r) for r in rows]

    def delete_entry(self, entry_id: int) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM entries WHERE id=?", (entry_id,))
            return cur.rowcount > 0

    def clear_entries(self):
        with self._transaction() as conn:
            conn.execute("DELETE FROM entries")

    # ---------- SETTINGS ----------
    def put_setting(self, key: str, value: str):
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO settings (key, value) VALUES (?,?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """, (key, value))

    def get_setting(self, key: str) -> Optional[str]:
        with self._transaction() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def list_settings(self) -> Dict[str, str]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        return {r["key"]: r["value"] for r in rows}

    def clear_settings(self):
        with self._transaction() as conn:
            conn.execute("DELETE FROM settings")

    # ---------- WHOLE-STATE OPERATIONS ----------
    def clear_all_data(self):
        """Drop products and entries together; settings (credentials) survive."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM products")
            conn.execute("DELETE FROM entries")

    def snapshot(self) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Read both collections in one transaction for a consistent backup."""
        with self._transaction() as conn:
            products = conn.execute("SELECT id, name, price FROM products ORDER BY id").fetchall()
            entries = conn.execute("""
                SELECT id, product_id, product_name, quantity, total, created_utc
                FROM entries ORDER BY id
            """).fetchall()
        return [_product_record(r) for r in products], [_entry_record(r) for r in entries]

    def replace_all(self, products: Iterable[Dict[str, Any]], entries: Iterable[Dict[str, Any]]):
        """Destructive restore: the snapshot replaces local data fully or not at all.

        Records keep the id they carry; records without one get a fresh id.
        """
        with self._transaction() as conn:
            conn.execute("DELETE FROM products")
            conn.execute("DELETE FROM entries")
            for p in products:
                conn.execute(
                    "INSERT INTO products (id, name, price) VALUES (?,?,?)",
                    (p.get("id"), p["name"], float(p["price"]))
                )
            for e in entries:
                conn.execute("""
                    INSERT INTO entries (id, product_id, product_name, quantity, total, created_utc)
                    VALUES (?,?,?,?,?,?)
                """, (
                    e.get("id"), e.get("productId"), e["productName"],
                    float(e["quantity"]), float(e["total"]), e["timestamp"]
                ))


def connect(db_path: str = DB_PATH) -> LocalStore:
    """Open (creating if needed) the local database and return its handle."""
    conn = None
    try:
        conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        _ensure_schema(conn)
    except sqlite3.Error as exc:
        if conn is not None:
            conn.close()
        raise StorageFailure(f"Cannot open local database {db_path}: {exc}") from exc
    return LocalStore(conn, db_path)
