from __future__ import annotations

import json
from abc import ABC, abstractmethod
from threading import Lock
from typing import Callable, Dict, List, Tuple

from portal.db import Database
from portal.domain.contracts import Quote, quote_from_dict, quote_to_dict


class QuoteStore(ABC):
    """Revisioned quotes keyed by (order_id, supplier_id); the highest revision is current."""

    @abstractmethod
    def get(self, order_id: str, supplier_id: str) -> Quote | None:
        raise NotImplementedError

    @abstractmethod
    def put(self, quote: Quote, expected_revision: int | None = None) -> bool:
        """Append `quote` as a new revision if the pair's current revision equals `expected_revision`.

        `expected_revision` None means the pair must have no quote yet. Returns False on conflict.
        """
        raise NotImplementedError

    @abstractmethod
    def list_by_order(self, order_id: str) -> List[Quote]:
        raise NotImplementedError

    @abstractmethod
    def history(self, order_id: str, supplier_id: str) -> List[Quote]:
        raise NotImplementedError

    @abstractmethod
    def retract(self, order_id: str, supplier_id: str, revision: int) -> None:
        raise NotImplementedError


def _sort_current(quotes: List[Quote]) -> List[Quote]:
    return sorted(quotes, key=lambda quote: (quote.first_submitted_at, quote.supplier_id))


class InMemoryQuoteStore(QuoteStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._revisions: Dict[Tuple[str, str], List[Quote]] = {}

    def get(self, order_id: str, supplier_id: str) -> Quote | None:
        with self._lock:
            revisions = self._revisions.get((order_id, supplier_id)) or []
            return revisions[-1] if revisions else None

    def put(self, quote: Quote, expected_revision: int | None = None) -> bool:
        key = (quote.order_id, quote.supplier_id)
        with self._lock:
            revisions = self._revisions.setdefault(key, [])
            current_revision = revisions[-1].revision if revisions else None
            if current_revision != expected_revision:
                return False
            revisions.append(quote)
            return True

    def list_by_order(self, order_id: str) -> List[Quote]:
        with self._lock:
            current = [
                revisions[-1]
                for (candidate_order, _supplier), revisions in self._revisions.items()
                if candidate_order == order_id and revisions
            ]
        return _sort_current(current)

    def history(self, order_id: str, supplier_id: str) -> List[Quote]:
        with self._lock:
            return list(self._revisions.get((order_id, supplier_id)) or [])

    def retract(self, order_id: str, supplier_id: str, revision: int) -> None:
        with self._lock:
            revisions = self._revisions.get((order_id, supplier_id)) or []
            self._revisions[(order_id, supplier_id)] = [
                quote for quote in revisions if quote.revision != revision
            ]


class SqlQuoteStore(QuoteStore):
    """Each revision is one row; the (order_id, supplier_id, revision) key makes the append a CAS."""

    def __init__(self, db_provider: Callable[[], Database]) -> None:
        self._db_provider = db_provider

    @staticmethod
    def _row_to_quote(row) -> Quote:
        raw = row["payload"]
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        payload = dict(raw) if isinstance(raw, dict) else json.loads(raw or "{}")
        return quote_from_dict(payload)

    def _current_revision(self, db: Database, order_id: str, supplier_id: str) -> int | None:
        row = db.execute(
            """
            SELECT MAX(revision) AS revision
            FROM quote_revisions
            WHERE order_id = ? AND supplier_id = ?
            """,
            (order_id, supplier_id),
        ).fetchone()
        if row is None or row["revision"] is None:
            return None
        return int(row["revision"])

    def get(self, order_id: str, supplier_id: str) -> Quote | None:
        db = self._db_provider()
        row = db.execute(
            """
            SELECT payload
            FROM quote_revisions
            WHERE order_id = ? AND supplier_id = ?
            ORDER BY revision DESC
            LIMIT 1
            """,
            (order_id, supplier_id),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_quote(row)

    def put(self, quote: Quote, expected_revision: int | None = None) -> bool:
        db = self._db_provider()
        if self._current_revision(db, quote.order_id, quote.supplier_id) != expected_revision:
            return False
        cursor = db.execute(
            """
            INSERT INTO quote_revisions (order_id, supplier_id, revision, payload, submitted_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (order_id, supplier_id, revision) DO NOTHING
            """,
            (
                quote.order_id,
                quote.supplier_id,
                quote.revision,
                json.dumps(quote_to_dict(quote), ensure_ascii=True, separators=(",", ":")),
                quote.submitted_at.isoformat(),
            ),
        )
        db.commit()
        return int(cursor.rowcount or 0) == 1

    def list_by_order(self, order_id: str) -> List[Quote]:
        db = self._db_provider()
        rows = db.execute(
            """
            SELECT q.payload
            FROM quote_revisions q
            WHERE q.order_id = ?
              AND q.revision = (
                  SELECT MAX(r.revision)
                  FROM quote_revisions r
                  WHERE r.order_id = q.order_id AND r.supplier_id = q.supplier_id
              )
            """,
            (order_id,),
        ).fetchall()
        return _sort_current([self._row_to_quote(row) for row in rows])

    def history(self, order_id: str, supplier_id: str) -> List[Quote]:
        db = self._db_provider()
        rows = db.execute(
            """
            SELECT payload
            FROM quote_revisions
            WHERE order_id = ? AND supplier_id = ?
            ORDER BY revision
            """,
            (order_id, supplier_id),
        ).fetchall()
        return [self._row_to_quote(row) for row in rows]

    def retract(self, order_id: str, supplier_id: str, revision: int) -> None:
        db = self._db_provider()
        db.execute(
            "DELETE FROM quote_revisions WHERE order_id = ? AND supplier_id = ? AND revision = ?",
            (order_id, supplier_id, revision),
        )
        db.commit()
