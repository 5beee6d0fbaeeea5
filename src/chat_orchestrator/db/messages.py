"""db/messages.py

Append-only message log per conversation. Order is insertion order (``seq``).
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Optional

from chat_orchestrator.db.infra.core import BaseDAO, get_conn

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, conv_id, role, content, agent_id, step, tokens, "
    "cost_cents, provider_used, created_at"
)


class MessageDAO(BaseDAO):

    # -----------------------
    # READ operations
    # -----------------------

    def list_for_conversation(self, conv_id: str, limit: Optional[int] = None) -> list[dict]:
        """
        Messages of one conversation, oldest first. With ``limit``, only
        the most recent ``limit`` messages are returned (still oldest first).
        """
        logger.debug("Loading messages for conversation %s (limit=%s)", conv_id, limit)
        try:
            with self._connection() as conn:
                if limit is None:
                    rows = conn.execute(
                        f"SELECT {_COLUMNS} FROM messages WHERE conv_id = ? ORDER BY seq",
                        (conv_id,),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        f"""
                        SELECT {_COLUMNS} FROM (
                            SELECT seq, {_COLUMNS} FROM messages
                            WHERE conv_id = ?
                            ORDER BY seq DESC
                            LIMIT ?
                        ) ORDER BY seq
                        """,
                        (conv_id, int(limit)),
                    ).fetchall()
        except Exception:
            logger.exception("Failed to load messages for conversation %s", conv_id)
            raise

        return [dict(row) for row in rows]

    def count_for_conversation(self, conv_id: str) -> int:
        try:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM messages WHERE conv_id = ?",
                    (conv_id,),
                ).fetchone()
        except Exception:
            logger.exception("Failed to count messages for conversation %s", conv_id)
            raise
        return int(row["n"])

    # -----------------------
    # WRITE operations
    # -----------------------

    def create(
        self,
        conv_id: str,
        role: str,
        content: str,
        *,
        agent_id: Optional[str] = None,
        step: Optional[int] = None,
        tokens: int = 0,
        cost_cents: float = 0.0,
        provider_used: Optional[str] = None,
    ) -> dict:
        row = {
            "id": uuid.uuid4().hex,
            "conv_id": conv_id,
            "role": role,
            "content": content,
            "agent_id": agent_id,
            "step": step,
            "tokens": int(tokens or 0),
            "cost_cents": float(cost_cents or 0.0),
            "provider_used": provider_used,
            "created_at": datetime.now(UTC).isoformat(),
        }
        logger.debug(
            "Saving %s message for conversation %s (step=%s, agent=%s)",
            role,
            conv_id,
            step,
            agent_id,
        )
        try:
            with self._connection() as conn:
                conn.execute(
                    f"""
                    INSERT INTO messages ({_COLUMNS})
                    VALUES (:id, :conv_id, :role, :content, :agent_id, :step,
                            :tokens, :cost_cents, :provider_used, :created_at)
                    """,
                    row,
                )
        except Exception:
            logger.exception("Failed to save message for conversation %s", conv_id)
            raise

        return row


# -----------------------
# Transaction-scoped DAO
# -----------------------

@contextmanager
def message_dao(db_path: str):
    """
    Yield a MessageDAO bound to a single transaction.
    """
    with get_conn(db_path) as conn:
        yield MessageDAO(conn=conn)
