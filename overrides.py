"""
Order status overrides

Right after a farmer changes an order's status, the next list fetch can
still return the old status for a while. The override cache remembers the
status that was just written and lays it over fetched orders for a short
window, so the change does not appear to flip back.

Entries are keyed by order id, or by "orderId::farmerEmail" when the change
was scoped to one farmer of a multi-farmer order. They expire after
MAX_AGE_SECONDS and are mirrored into a key/value store so a restarted
client picks them up again.
"""
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger("farmfresh.overrides")

STORAGE_KEY = "orderStatusOverrides_v1"
MAX_AGE_SECONDS = 5 * 60
PERSIST_DELAY_SECONDS = 0.25
MIXED_STATUS = "mixed"


class MemoryStorage:
    def __init__(self):
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str):
        self._items[key] = value

    def remove(self, key: str):
        self._items.pop(key, None)


class JsonFileStorage:
    """Key/value store kept in a single JSON file."""

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("override_storage_unreadable path=%s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str):
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str):
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)

    def _write(self, data: Dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp, self.path)


def override_key(order_id, farmer_email: Optional[str] = None) -> str:
    return f"{order_id}::{farmer_email}" if farmer_email else str(order_id)


class OrderStatusOverrides:
    def __init__(self, storage=None, clock: Callable[[], float] = time.time,
                 max_age: float = MAX_AGE_SECONDS, persist_delay: Optional[float] = PERSIST_DELAY_SECONDS):
        self.storage = storage if storage is not None else MemoryStorage()
        self.clock = clock
        self.max_age = max_age
        # None or 0 writes through on every record
        self.persist_delay = persist_delay
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._load()

    def __len__(self):
        return len(self._entries)

    def _fresh(self, entry: Dict[str, Any], now: float) -> bool:
        return now - entry["timestamp"] < self.max_age

    def _load(self):
        raw = self.storage.get(STORAGE_KEY)
        if not raw:
            return
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("override_snapshot_corrupt")
            return
        now = self.clock()
        for key, val in (parsed or {}).items():
            if (isinstance(val, dict) and isinstance(val.get("status"), str)
                    and isinstance(val.get("timestamp"), (int, float)) and self._fresh(val, now)):
                self._entries[key] = {"status": val["status"], "timestamp": val["timestamp"]}

    def record(self, order_id, status: str, farmer_email: Optional[str] = None):
        if not order_id or not status:
            return
        entry = {"status": status, "timestamp": self.clock()}
        with self._lock:
            self._entries[override_key(order_id, farmer_email)] = entry
        logger.debug("override_recorded order_id=%s status=%s farmer=%s", order_id, status, farmer_email)
        self._schedule_persist()

    def _schedule_persist(self):
        if not self.persist_delay:
            self.persist()
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.persist_delay, self.persist)
            self._timer.daemon = True
            self._timer.start()

    def persist(self):
        """Write unexpired entries to storage and drop the expired ones."""
        now = self.clock()
        with self._lock:
            self._timer = None
            for key in [k for k, v in self._entries.items() if not self._fresh(v, now)]:
                del self._entries[key]
            snapshot = json.dumps(self._entries)
            # Runs on the timer thread too; a failed write keeps the in-memory entries.
            try:
                self.storage.set(STORAGE_KEY, snapshot)
            except OSError:
                logger.exception("override_persist_failed entries=%d", len(self._entries))

    def flush(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
        self.persist()

    def _lookup(self, order_id, farmer_email: Optional[str], now: float) -> Optional[Dict[str, Any]]:
        keys = [override_key(order_id, farmer_email)] if farmer_email else []
        keys.append(str(order_id))
        with self._lock:
            for key in keys:
                entry = self._entries.get(key)
                if entry is None:
                    continue
                if self._fresh(entry, now):
                    return entry
                del self._entries[key]
        return None

    def get(self, order_id, farmer_email: Optional[str] = None) -> Optional[str]:
        entry = self._lookup(order_id, farmer_email, self.clock())
        return entry["status"] if entry else None

    def apply(self, orders: Iterable[Dict[str, Any]], farmer_email: Optional[str] = None) -> List[Dict[str, Any]]:
        """Overlay recorded statuses on fetched orders; the input is never modified."""
        now = self.clock()
        result = []
        for order in orders or []:
            order_id = order.get("_id") or order.get("id")
            entry = self._lookup(order_id, farmer_email, now) if order_id else None
            if entry is None:
                result.append(order)
                continue
            statuses = order.get("farmerStatuses")
            if order.get("status") == MIXED_STATUS and farmer_email and isinstance(statuses, dict):
                if statuses.get(farmer_email) == entry["status"]:
                    result.append(order)
                else:
                    result.append({**order, "farmerStatuses": {**statuses, farmer_email: entry["status"]}})
            elif order.get("status") != entry["status"]:
                result.append({**order, "status": entry["status"]})
            else:
                result.append(order)
        return result

    def clear(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._entries.clear()
        self.storage.remove(STORAGE_KEY)


_default: Optional[OrderStatusOverrides] = None
_default_lock = threading.Lock()


def default_overrides() -> OrderStatusOverrides:
    """Process-wide override cache shared by every client in this process."""
    global _default
    with _default_lock:
        if _default is None:
            path = os.getenv("ORDER_OVERRIDES_PATH")
            _default = OrderStatusOverrides(storage=JsonFileStorage(path) if path else MemoryStorage())
        return _default
