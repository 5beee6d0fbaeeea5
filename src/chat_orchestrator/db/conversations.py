"""db/conversations.py

Construction modes:

- ConversationDAO(db_path="...")
- ConversationDAO(conn=sqlite3.Connection)

Support for atomic multi-step operations:

with conversation_dao(db_path) as dao:
    dao.create(conv_id, ...)
    dao.add_spend(conv_id, 12.5)
"""
import json
import logging
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import List, Optional

from chat_orchestrator.db.infra.core import BaseDAO, get_conn, safe_json_loads

logger = logging.getLogger(__name__)


class ConversationDAO(BaseDAO):

    # -----------------------
    # READ operations
    # -----------------------

    def get(self, conv_id: str) -> Optional[dict]:
        logger.debug("Loading conversation %s from DB", conv_id)
        try:
            with self._connection() as conn:
                row = conn.execute(
                    """
                    SELECT id, title, mode, selected_agents_json,
                           budget_cents, spent_cents, created_at
                    FROM conversations WHERE id = ?
                    """,
                    (conv_id,),
                ).fetchone()
        except Exception:
            logger.exception("Failed to load conversation %s from DB", conv_id)
            raise

        if row is None:
            return None
        data = dict(row)
        data["selected_agents"] = safe_json_loads(data.pop("selected_agents_json"), [])
        return data

    def list(self) -> list[dict]:
        logger.debug("Loading conversations from DB")
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    """
                    SELECT id, title, mode, budget_cents, spent_cents, created_at
                    FROM conversations ORDER BY created_at DESC
                    """
                ).fetchall()
        except Exception:
            logger.exception("Failed to load conversations from DB")
            raise

        return [dict(row) for row in rows]

    # -----------------------
    # WRITE operations
    # -----------------------

    def create(
        self,
        conv_id: str,
        *,
        title: str = "",
        mode: str = "",
        selected_agents: Optional[List[str]] = None,
        budget_cents: float = 500,
    ) -> None:
        ts = datetime.now(UTC).isoformat()
        logger.info("Creating conversation %s (budget %.2f cents)", conv_id, budget_cents)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO conversations
                        (id, title, mode, selected_agents_json,
                         budget_cents, spent_cents, created_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        conv_id,
                        title,
                        mode,
                        json.dumps(list(selected_agents or [])),
                        float(budget_cents),
                        ts,
                    ),
                )
        except Exception:
            logger.exception("Failed to create conversation %s", conv_id)
            raise

    def add_spend(self, conv_id: str, cents: float) -> float:
        """
        Atomically add to the recorded spend. Returns the new total.
        """
        try:
            with self._connection() as conn:
                conn.execute(
                    "UPDATE conversations SET spent_cents = spent_cents + ? WHERE id = ?",
                    (float(cents), conv_id),
                )
                row = conn.execute(
                    "SELECT spent_cents FROM conversations WHERE id = ?",
                    (conv_id,),
                ).fetchone()
        except Exception:
            logger.exception("Failed to record spend for conversation %s", conv_id)
            raise

        return float(row["spent_cents"]) if row else 0.0

    def delete(self, conv_id: str) -> None:
        logger.info("Deleting conversation %s", conv_id)
        try:
            with self._connection() as conn:
                # messages cascade via FK
                conn.execute("DELETE FROM conversations WHERE id = ?", (conv_id,))
        except Exception:
            logger.exception("Failed to delete conversation %s", conv_id)
            raise


# -----------------------
# Transaction-scoped DAO
# -----------------------

@contextmanager
def conversation_dao(db_path: str):
    """
    Yield a ConversationDAO bound to a single transaction.
    """
    with get_conn(db_path) as conn:
        yield ConversationDAO(conn=conn)
