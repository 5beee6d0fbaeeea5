# db/infra/core.py
import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Optional

from chat_orchestrator.db.schema import SCHEMA

logger = logging.getLogger(__name__)


def init_db(db_path: str, schema: Optional[Dict[str, Any]] = None):
    """
    Initialize the database:
    - open connection
    - create every table / index declared in schema.py that is missing
    """
    logger.info("Initializing database at %s", db_path)
    try:
        with get_conn(db_path) as conn:
            for statement in schema_ddl(schema or SCHEMA):
                conn.execute(statement)
    except Exception:
        logger.exception("Database initialization failed")
        raise


def schema_ddl(schema: Dict[str, Any]) -> list[str]:
    """
    Render CREATE TABLE / CREATE INDEX statements from the SCHEMA dict.
    """
    statements: list[str] = []
    for table, spec in schema.items():
        parts = [f"{col} {decl}" for col, decl in spec["columns"].items()]
        constraints = spec.get("constraints") or {}
        if constraints.get("primary_key"):
            parts.append(f"PRIMARY KEY ({constraints['primary_key']})")
        for fk in constraints.get("foreign_keys") or []:
            clause = f"FOREIGN KEY({fk['column']}) REFERENCES {fk['references']}"
            if fk.get("on_delete"):
                clause += f" ON DELETE {fk['on_delete']}"
            parts.append(clause)
        body = ",\n    ".join(parts)
        statements.append(f"CREATE TABLE IF NOT EXISTS {table} (\n    {body}\n)")

        for index_name, columns in (spec.get("indexes") or {}).items():
            statements.append(
                f"CREATE INDEX IF NOT EXISTS {index_name} ON {table}({columns})"
            )
    return statements


def safe_json_loads(value: str | None, default):
    """
    Safely load JSON from DB fields.
    Returns default if value is None, empty, or invalid.
    """
    if not value or not value.strip():
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON in DB field")
        return default


# -----------------------
# Connection helper
# -----------------------

@contextmanager
def get_conn(path):
    conn = sqlite3.connect(str(path), detect_types=sqlite3.PARSE_DECLTYPES)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class BaseDAO:
    """
    Construction modes shared by every DAO:

    - XxxDAO(db_path="...")             one connection (transaction) per call
    - XxxDAO(conn=sqlite3.Connection)   reuse the caller's transaction
    """

    def __init__(self, db_path: Optional[str] = None, conn=None):
        if conn is None and db_path is None:
            raise ValueError(f"{type(self).__name__} requires either db_path or conn")

        self._db_path = db_path
        self._conn = conn

    @contextmanager
    def _connection(self):
        if self._conn is not None:
            yield self._conn
        else:
            with get_conn(self._db_path) as conn:
                yield conn
