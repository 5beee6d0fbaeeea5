"""db/agents.py

Construction modes:

- AgentDAO(db_path="...")
- AgentDAO(conn=sqlite3.Connection)
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict

from chat_orchestrator.db.infra.core import BaseDAO, get_conn

logger = logging.getLogger(__name__)


class AgentDAO(BaseDAO):

    # -----------------------
    # READ operations
    # -----------------------

    def list(self) -> list[dict]:
        logger.debug("Loading agents from DB")
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    """
                    SELECT role_tag, name, prompt_template, provider_id, model_id,
                           temperature, max_tokens, sort_order, enabled, description
                    FROM agents
                    ORDER BY sort_order, role_tag
                    """
                ).fetchall()
        except Exception:
            logger.exception("Failed to load agents from DB")
            raise

        agents = []
        for r in rows:
            agents.append(
                {
                    "role_tag": r["role_tag"],
                    "name": r["name"] or r["role_tag"],
                    "prompt_template": r["prompt_template"],
                    "provider_id": r["provider_id"],
                    "model_id": r["model_id"],
                    "temperature": r["temperature"],
                    "max_tokens": r["max_tokens"],
                    "order": r["sort_order"],
                    "enabled": bool(r["enabled"]),
                    "description": r["description"] or "",
                }
            )
        return agents

    # -----------------------
    # WRITE operations
    # -----------------------

    def save(self, agent: Dict[str, Any]) -> None:
        """
        Insert or update one agent row from a config-shaped dict.
        """
        role_tag = agent["role_tag"]
        logger.info("Saving agent %s", role_tag)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO agents
                        (role_tag, name, prompt_template, provider_id, model_id,
                         temperature, max_tokens, sort_order, enabled, description)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(role_tag) DO UPDATE SET
                        name = excluded.name,
                        prompt_template = excluded.prompt_template,
                        provider_id = excluded.provider_id,
                        model_id = excluded.model_id,
                        temperature = excluded.temperature,
                        max_tokens = excluded.max_tokens,
                        sort_order = excluded.sort_order,
                        enabled = excluded.enabled,
                        description = excluded.description
                    """,
                    (
                        role_tag,
                        agent.get("name") or role_tag,
                        agent["prompt_template"],
                        agent["provider_id"],
                        agent["model_id"],
                        float(agent.get("temperature", 0.7)),
                        int(agent.get("max_tokens", 1000)),
                        int(agent.get("order", 0)),
                        int(bool(agent.get("enabled", True))),
                        agent.get("description") or "",
                    ),
                )
        except Exception:
            logger.exception("Failed to save agent %s", role_tag)
            raise

    def set_enabled(self, role_tag: str, enabled: bool) -> None:
        try:
            with self._connection() as conn:
                conn.execute(
                    "UPDATE agents SET enabled = ? WHERE role_tag = ?",
                    (int(enabled), role_tag),
                )
        except Exception:
            logger.exception("Failed to toggle agent %s", role_tag)
            raise

    def delete(self, role_tag: str) -> None:
        logger.info("Deleting agent %s", role_tag)
        try:
            with self._connection() as conn:
                conn.execute("DELETE FROM agents WHERE role_tag = ?", (role_tag,))
        except Exception:
            logger.exception("Failed to delete agent %s", role_tag)
            raise


@contextmanager
def agent_dao(db_path: str):
    with get_conn(db_path) as conn:
        yield AgentDAO(conn=conn)
