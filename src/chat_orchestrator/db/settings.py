"""db/settings.py

Small key/value table for registry-level settings
(``mode``, ``default_flow``, ``current_provider``).
"""
import logging
from typing import Dict, Optional

from chat_orchestrator.db.infra.core import BaseDAO

logger = logging.getLogger(__name__)


class SettingsDAO(BaseDAO):

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        try:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT value FROM settings WHERE key = ?", (key,)
                ).fetchone()
        except Exception:
            logger.exception("Failed to read setting %s", key)
            raise
        return row["value"] if row else default

    def all(self) -> Dict[str, str]:
        try:
            with self._connection() as conn:
                rows = conn.execute("SELECT key, value FROM settings").fetchall()
        except Exception:
            logger.exception("Failed to read settings")
            raise
        return {r["key"]: r["value"] for r in rows}

    def set(self, key: str, value: Optional[str]) -> None:
        logger.debug("Setting %s=%s", key, value)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO settings (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    (key, value),
                )
        except Exception:
            logger.exception("Failed to write setting %s", key)
            raise
