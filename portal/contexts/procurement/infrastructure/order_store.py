from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, List

from portal.db import Database
from portal.domain.contracts import Order, order_from_dict, order_to_dict


OrderPredicate = Callable[[Order], bool]


class OrderStore(ABC):
    """Keyed record store for orders with version-based compare-and-swap writes."""

    @abstractmethod
    def get(self, order_id: str) -> Order | None:
        raise NotImplementedError

    @abstractmethod
    def put(self, order: Order, expected_version: int | None = None) -> bool:
        """Insert when `expected_version` is None, otherwise replace only if the stored version matches.

        Returns False on conflict. The caller is responsible for bumping `order.version`.
        """
        raise NotImplementedError

    @abstractmethod
    def list(self, predicate: OrderPredicate | None = None) -> List[Order]:
        raise NotImplementedError


class InMemoryOrderStore(OrderStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._orders: Dict[str, Order] = {}

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            return self._orders.get(order_id)

    def put(self, order: Order, expected_version: int | None = None) -> bool:
        with self._lock:
            current = self._orders.get(order.order_id)
            if expected_version is None:
                if current is not None:
                    return False
            elif current is None or current.version != expected_version:
                return False
            self._orders[order.order_id] = order
            return True

    def list(self, predicate: OrderPredicate | None = None) -> List[Order]:
        with self._lock:
            orders = list(self._orders.values())
        if predicate is None:
            return orders
        return [order for order in orders if predicate(order)]


def _to_db_datetime(value: datetime | None) -> str:
    resolved = value or datetime.now(timezone.utc)
    if resolved.tzinfo is None:
        resolved = resolved.replace(tzinfo=timezone.utc)
    return resolved.astimezone(timezone.utc).isoformat()


def _load_payload(raw) -> dict:
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    return json.loads(raw or "{}")


class SqlOrderStore(OrderStore):
    """Orders persisted as a JSON document plus the indexed columns used for filtering."""

    def __init__(self, db_provider: Callable[[], Database]) -> None:
        self._db_provider = db_provider

    def _row_to_order(self, row) -> Order:
        payload = _load_payload(row["payload"])
        payload["version"] = int(row["version"])
        return order_from_dict(payload)

    def get(self, order_id: str) -> Order | None:
        db = self._db_provider()
        row = db.execute(
            "SELECT id, version, payload FROM orders WHERE id = ?",
            (order_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_order(row)

    def put(self, order: Order, expected_version: int | None = None) -> bool:
        db = self._db_provider()
        payload = json.dumps(order_to_dict(order), ensure_ascii=True, separators=(",", ":"))
        now = _to_db_datetime(None)
        if expected_version is None:
            cursor = db.execute(
                """
                INSERT INTO orders (id, buyer_id, status, version, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    order.order_id,
                    order.buyer_id,
                    order.status.value,
                    order.version,
                    payload,
                    _to_db_datetime(order.created_at),
                    now,
                ),
            )
        else:
            cursor = db.execute(
                """
                UPDATE orders
                SET status = ?, version = ?, payload = ?, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (order.status.value, order.version, payload, now, order.order_id, expected_version),
            )
        db.commit()
        return int(cursor.rowcount or 0) == 1

    def list(self, predicate: OrderPredicate | None = None) -> List[Order]:
        db = self._db_provider()
        rows = db.execute("SELECT id, version, payload FROM orders ORDER BY created_at, id").fetchall()
        orders = [self._row_to_order(row) for row in rows]
        if predicate is None:
            return orders
        return [order for order in orders if predicate(order)]
