"""db/flows.py

Flows are stored with their steps serialized as JSON, the same shape the
orchestration config file uses.
"""
import json
import logging
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Any, Dict

from chat_orchestrator.db.infra.core import BaseDAO, get_conn, safe_json_loads

logger = logging.getLogger(__name__)


class FlowDAO(BaseDAO):

    def list(self) -> list[dict]:
        logger.debug("Loading flows from DB")
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    """
                    SELECT name, mode, steps_json, description, enabled
                    FROM flows ORDER BY name
                    """
                ).fetchall()
        except Exception:
            logger.exception("Failed to load flows from DB")
            raise

        return [
            {
                "name": r["name"],
                "mode": r["mode"] or r["name"],
                "steps": safe_json_loads(r["steps_json"], []),
                "description": r["description"] or "",
                "enabled": bool(r["enabled"]),
            }
            for r in rows
        ]

    def save(self, flow: Dict[str, Any]) -> None:
        name = flow["name"]
        ts = datetime.now(UTC).isoformat()
        logger.info("Saving flow %s", name)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO flows (name, mode, steps_json, description, enabled, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        mode = excluded.mode,
                        steps_json = excluded.steps_json,
                        description = excluded.description,
                        enabled = excluded.enabled,
                        timestamp = excluded.timestamp
                    """,
                    (
                        name,
                        flow.get("mode") or name,
                        json.dumps(flow.get("steps") or []),
                        flow.get("description") or "",
                        int(bool(flow.get("enabled", True))),
                        ts,
                    ),
                )
        except Exception:
            logger.exception("Failed to save flow %s", name)
            raise

    def delete(self, name: str) -> None:
        logger.info("Deleting flow %s", name)
        try:
            with self._connection() as conn:
                conn.execute("DELETE FROM flows WHERE name = ?", (name,))
        except Exception:
            logger.exception("Failed to delete flow %s", name)
            raise


@contextmanager
def flow_dao(db_path: str):
    with get_conn(db_path) as conn:
        yield FlowDAO(conn=conn)
