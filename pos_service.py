#!/usr/bin/env python3
# POS ledger: product catalog + sales entries in SQLite, backed up to GitHub after every change
import argparse
import datetime as dt
import json
import logging
import math
from typing import Any, Dict, List, Optional

import pos_store
from backup_codec import format_timestamp, parse_timestamp
from pos_store import LocalStore
from sync_worker import SUCCESS, SyncOrchestrator

logger = logging.getLogger(__name__)


# ---------- PERIODS ----------
def _local_now(now: Optional[dt.datetime] = None) -> dt.datetime:
    # naive values are read as local wall-clock time
    return (now or dt.datetime.now()).astimezone()

def day_start(now: Optional[dt.datetime] = None) -> dt.datetime:
    n = _local_now(now)
    # astimezone() on a naive midnight applies that date's own UTC offset
    return dt.datetime(n.year, n.month, n.day).astimezone()

def month_start(now: Optional[dt.datetime] = None) -> dt.datetime:
    n = _local_now(now)
    return dt.datetime(n.year, n.month, 1).astimezone()

def entries_since(entries: List[Dict[str, Any]], cutoff: dt.datetime) -> List[Dict[str, Any]]:
    """Entries stamped at or after cutoff (the boundary instant counts)."""
    return [e for e in entries if parse_timestamp(e["timestamp"]) >= cutoff]

def sum_totals(entries: List[Dict[str, Any]]) -> float:
    return sum(float(e["total"]) for e in entries)


# ---------- INPUT CHECKS ----------
def _as_number(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{label} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be a number")
    if not math.isfinite(number):
        raise ValueError(f"{label} must be a finite number")
    return number

def _as_id(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{label} must be an integer id")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError(f"{label} must be an integer id")


class PosService:
    """Local mutations and queries; every mutation commits locally, then pushes a backup.

    A failed or skipped push never undoes the local change.
    """

    def __init__(self, store: LocalStore, sync: SyncOrchestrator):
        self.store = store
        self.sync = sync

    def startup(self) -> str:
        return self.sync.pull()

    # ---------- PRODUCTS ----------
    def add_product(self, name: Any, price: Any) -> Dict[str, Any]:
        name = str(name or "").strip()
        if not name:
            raise ValueError("Product name is required")
        price = _as_number(price, "Price")
        if price < 0:
            raise ValueError("Price must not be negative")
        product = self.store.add_product(name, price)
        logger.info("Added product %s (%s @ %s)", product["id"], name, price)
        self.sync.after_mutation()
        return product

    def delete_product(self, product_id: Any) -> bool:
        deleted = self.store.delete_product(_as_id(product_id, "Product id"))
        self.sync.after_mutation()
        return deleted

    def list_products(self) -> List[Dict[str, Any]]:
        return self.store.list_products()

    # ---------- ENTRIES ----------
    def add_entry(self, product_id: Any, quantity: Any, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        pid = _as_id(product_id, "Product id")
        qty = _as_number(quantity, "Quantity")
        if qty <= 0:
            raise ValueError("Quantity must be greater than zero")
        product = self.store.get_product(pid)
        if product is None:
            raise LookupError(f"Product {pid} not found")
        moment = _local_now(now)
        entry = self.store.add_entry(
            pid,
            product["name"],
            qty,
            qty * product["price"],
            format_timestamp(moment),
        )
        logger.info("Recorded entry %s: %s x%s = %s", entry["id"], product["name"], qty, entry["total"])
        self.sync.after_mutation()
        return entry

    def delete_entry(self, entry_id: Any) -> bool:
        deleted = self.store.delete_entry(_as_id(entry_id, "Entry id"))
        self.sync.after_mutation()
        return deleted

    def list_entries(self) -> List[Dict[str, Any]]:
        return self.store.list_entries()

    def entries_today(self, now: Optional[dt.datetime] = None) -> List[Dict[str, Any]]:
        return entries_since(self.store.list_entries(), day_start(now))

    def day_total(self, now: Optional[dt.datetime] = None) -> float:
        return sum_totals(self.entries_today(now))

    def month_total(self, now: Optional[dt.datetime] = None) -> float:
        return sum_totals(entries_since(self.store.list_entries(), month_start(now)))

    def summary(self, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        entries = self.store.list_entries()
        today = entries_since(entries, day_start(now))
        return {
            "day_total": sum_totals(today),
            "month_total": sum_totals(entries_since(entries, month_start(now))),
            "day_count": len(today),
        }

    # ---------- SETTINGS / MAINTENANCE ----------
    def save_settings(self, owner: Any, repo: Any, token: Any):
        values = {
            pos_store.SETTING_OWNER: str(owner or "").strip(),
            pos_store.SETTING_REPO: str(repo or "").strip(),
            pos_store.SETTING_TOKEN: str(token or "").strip(),
        }
        for key, value in values.items():
            self.store.put_setting(key, value)
        self.sync.report(SUCCESS, "Settings saved")

    def settings(self) -> Dict[str, Any]:
        """Current GitHub settings with the token masked."""
        stored = self.store.list_settings()
        token = stored.get(pos_store.SETTING_TOKEN) or ""
        return {
            "owner": stored.get(pos_store.SETTING_OWNER) or "",
            "repo": stored.get(pos_store.SETTING_REPO) or "",
            "token_set": bool(token),
            "token_hint": ("…" + token[-4:]) if len(token) > 4 else "",
        }

    def clear_products(self):
        self.store.clear_products()
        logger.info("Cleared all products")
        self.sync.after_mutation()

    def clear_entries(self):
        self.store.clear_entries()
        logger.info("Cleared all entries")
        self.sync.after_mutation()

    def clear_all_data(self):
        self.store.clear_all_data()
        logger.info("Cleared all products and entries")
        self.sync.after_mutation()


# ---------- CLI ----------
def main():
    ap = argparse.ArgumentParser(description="POS ledger with GitHub backup")
    ap.add_argument("--db", default=pos_store.DB_PATH, help="Path to SQLite DB")
    ap.add_argument("--add-product", nargs=2, metavar=("NAME", "PRICE"), help="Add a product")
    ap.add_argument("--add-entry", nargs=2, metavar=("PRODUCT_ID", "QTY"), help="Record a sale entry")
    ap.add_argument("--delete-product", type=int, metavar="ID", help="Delete a product")
    ap.add_argument("--delete-entry", type=int, metavar="ID", help="Delete an entry")
    ap.add_argument("--set-github", nargs=3, metavar=("OWNER", "REPO", "TOKEN"), help="Save GitHub settings")
    ap.add_argument("--clear", action="store_true", help="Delete all products and entries")
    ap.add_argument("--list", action="store_true", help="Print products and today's entries")
    ap.add_argument("--totals", action="store_true", help="Print today's and this month's totals")
    ap.add_argument("--pull", action="store_true", help="Replace local data with the GitHub backup")
    ap.add_argument("--push", action="store_true", help="Write local data to the GitHub backup")
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    store = pos_store.connect(args.db)
    sync = SyncOrchestrator(store)
    service = PosService(store, sync)
    try:
        if args.set_github:
            service.save_settings(*args.set_github)
            print("Saved GitHub settings")

        if args.pull:
            print("Pull:", service.startup(), "-", sync.status.message)

        if args.add_product:
            product = service.add_product(*args.add_product)
            print("Added product:", json.dumps(product))

        if args.add_entry:
            entry = service.add_entry(*args.add_entry)
            print("Recorded entry:", json.dumps(entry))

        if args.delete_product is not None:
            print("Deleted product:", service.delete_product(args.delete_product))

        if args.delete_entry is not None:
            print("Deleted entry:", service.delete_entry(args.delete_entry))

        if args.clear:
            service.clear_all_data()
            print("Cleared all data")

        if args.push:
            print("Push:", sync.push(), "-", sync.status.message)

        if args.list:
            for p in service.list_products():
                print(f"#{p['id']} {p['name']} - {p['price']}")
            for e in service.entries_today():
                print(f"{e['timestamp']} {e['productName']} x{e['quantity']} = {e['total']}")

        if args.totals:
            totals = service.summary()
            print(f"Today: {totals['day_total']} ({totals['day_count']} entries)")
            print(f"Month: {totals['month_total']}")
    finally:
        store.close()


if __name__ == "__main__":
    main()
