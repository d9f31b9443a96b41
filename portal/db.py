import os
import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def commit(self):
        self._conn.commit()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 no instalado.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    directory = os.path.dirname(db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        g.db = connect_database(current_app.config["DB_PATH"])
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    create_schema(get_db())


def create_schema(db: Database) -> None:
    """Bootstrap tables for environments that do not run the Alembic migrations."""
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id TEXT PRIMARY KEY,
            buyer_id TEXT NOT NULL,
            status TEXT NOT NULL CHECK (
                status IN ('pending_approval','in_review','in_preparation','on_its_way','delivered','rejected')
            ),
            version INTEGER NOT NULL DEFAULT 1,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_orders_buyer ON orders (buyer_id)")

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS quote_revisions (
            order_id TEXT NOT NULL,
            supplier_id TEXT NOT NULL,
            revision INTEGER NOT NULL,
            payload TEXT NOT NULL,
            submitted_at TEXT NOT NULL,
            PRIMARY KEY (order_id, supplier_id, revision)
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS idx_quote_revisions_order ON quote_revisions (order_id)")
    db.commit()


def _table_exists(db: Database, table: str) -> bool:
    if db.backend == "postgres":
        row = db.execute(
            """
            SELECT 1
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ?
            """,
            (table,),
        ).fetchone()
        return row is not None

    row = db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def schema_ready(db: Database) -> bool:
    return _table_exists(db, "orders") and _table_exists(db, "quote_revisions")
