"""
Backup document codec.

The backup is one pretty-printed JSON object:

    {
      "products": [{"id": 1, "name": "Coffee", "price": 2.5}],
      "entries": [{"id": 1, "productId": 1, "productName": "Coffee",
                   "quantity": 3.0, "total": 7.5,
                   "timestamp": "2026-10-19T08:30:00.000Z"}],
      "updatedAt": "2026-10-19T08:30:01.000Z"
    }

The remote API carries it inside a base64 envelope (to_transport / from_transport).
Backups written by the first browser version of the till used the field names
pid/qty/sum/ts/updated; decode() still reads those.
"""
import base64
import binascii
import datetime as dt
import json
import math
from typing import Any, Dict, List, Optional, Tuple, Union


class MalformedDocument(ValueError):
    """The payload is not a usable backup document."""


def iso_now() -> str:
    return format_timestamp(dt.datetime.now(dt.timezone.utc))


def format_timestamp(moment: dt.datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    utc = moment.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return utc.isoformat(timespec="milliseconds") + "Z"


def parse_timestamp(text: str) -> dt.datetime:
    """Parse an ISO-8601 timestamp into an aware datetime (naive means UTC)."""
    raw = str(text).strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    moment = dt.datetime.fromisoformat(raw)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return moment


# ---------- ENCODE ----------
def _product_out(p: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": p.get("id"), "name": p["name"], "price": float(p["price"])}


def _entry_out(e: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": e.get("id"),
        "productId": e.get("productId"),
        "productName": e["productName"],
        "quantity": float(e["quantity"]),
        "total": float(e["total"]),
        "timestamp": e["timestamp"],
    }


def encode(
    products: List[Dict[str, Any]],
    entries: List[Dict[str, Any]],
    updated_at: Optional[str] = None
) -> bytes:
    document = {
        "products": [_product_out(p) for p in products],
        "entries": [_entry_out(e) for e in entries],
        "updatedAt": updated_at or iso_now(),
    }
    return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")


def to_transport(content: bytes) -> str:
    return base64.b64encode(content).decode("ascii")


def from_transport(text: str) -> bytes:
    # GitHub wraps base64 content at 60 columns.
    cleaned = "".join(str(text or "").split())
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedDocument(f"Invalid base64 content: {exc}") from exc


# ---------- DECODE ----------
def _number(record: Dict[str, Any], *names: str) -> Optional[float]:
    for name in names:
        if name not in record or record[name] is None:
            continue
        value = record[name]
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise MalformedDocument(f"Field {name!r} is not a number: {value!r}")
        try:
            number = float(value)
        except ValueError as exc:
            raise MalformedDocument(f"Field {name!r} is not a number: {value!r}") from exc
        if not math.isfinite(number):
            raise MalformedDocument(f"Field {name!r} is not finite")
        return number
    return None


def _identifier(record: Dict[str, Any], *names: str) -> Optional[int]:
    for name in names:
        value = record.get(name)
        if value is None:
            continue
        if isinstance(value, bool):
            raise MalformedDocument(f"Field {name!r} is not an identifier: {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        raise MalformedDocument(f"Field {name!r} is not an identifier: {value!r}")
    return None


def _timestamp(record: Dict[str, Any]) -> str:
    value = record.get("timestamp")
    if value is None and record.get("ts") is not None:
        # legacy: epoch milliseconds
        ms = _number(record, "ts")
        try:
            moment = dt.datetime.fromtimestamp(ms / 1000.0, tz=dt.timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedDocument(f"Field 'ts' out of range: {ms!r}") from exc
        return format_timestamp(moment)
    if not isinstance(value, str):
        raise MalformedDocument(f"Entry timestamp missing or invalid: {value!r}")
    try:
        parse_timestamp(value)
    except ValueError as exc:
        raise MalformedDocument(f"Entry timestamp is not ISO-8601: {value!r}") from exc
    return value


def _product_in(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise MalformedDocument(f"Product record is not an object: {raw!r}")
    name = raw.get("name")
    if not isinstance(name, str):
        raise MalformedDocument(f"Product name missing: {raw!r}")
    price = _number(raw, "price")
    if price is None or price < 0:
        raise MalformedDocument(f"Product price missing or negative: {raw!r}")
    return {"id": _identifier(raw, "id"), "name": name, "price": price}


def _entry_in(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise MalformedDocument(f"Entry record is not an object: {raw!r}")
    name = raw.get("productName")
    if not isinstance(name, str):
        raise MalformedDocument(f"Entry productName missing: {raw!r}")
    quantity = _number(raw, "quantity", "qty")
    total = _number(raw, "total", "sum")
    if quantity is None or total is None:
        raise MalformedDocument(f"Entry quantity/total missing: {raw!r}")
    return {
        "id": _identifier(raw, "id"),
        "productId": _identifier(raw, "productId", "pid"),
        "productName": name,
        "quantity": quantity,
        "total": total,
        "timestamp": _timestamp(raw),
    }


def _collection(document: Dict[str, Any], field: str) -> List[Any]:
    value = document.get(field)
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedDocument(f"Field {field!r} is not an array")
    return value


def _check_unique_ids(records: List[Dict[str, Any]], label: str):
    seen = set()
    for rec in records:
        rid = rec.get("id")
        if rid is None:
            continue
        if rid in seen:
            raise MalformedDocument(f"Duplicate {label} id {rid}")
        seen.add(rid)


def decode_document(data: Union[bytes, str]) -> Dict[str, Any]:
    """Decode a backup into {'products', 'entries', 'updatedAt'}.

    Raises MalformedDocument when the payload is not JSON, is not an object,
    or holds records of the wrong shape. Unknown fields are ignored and an
    absent collection decodes as empty.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            text = bytes(data).decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise MalformedDocument(f"Backup is not UTF-8 text: {exc}") from exc
    else:
        text = data
    try:
        document = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise MalformedDocument(f"Backup is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise MalformedDocument("Backup document is not a JSON object")

    products = [_product_in(p) for p in _collection(document, "products")]
    entries = [_entry_in(e) for e in _collection(document, "entries")]
    _check_unique_ids(products, "product")
    _check_unique_ids(entries, "entry")

    updated_at = document.get("updatedAt") or document.get("updated")
    return {
        "products": products,
        "entries": entries,
        "updatedAt": updated_at if isinstance(updated_at, str) else None,
    }


def decode(data: Union[bytes, str]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    document = decode_document(data)
    return document["products"], document["entries"]
