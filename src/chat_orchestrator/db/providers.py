"""db/providers.py

Providers with their model catalog, plus scene analyzer rows.
"""
import json
import logging
from contextlib import contextmanager
from typing import Any, Dict

from chat_orchestrator.db.infra.core import BaseDAO, get_conn, safe_json_loads

logger = logging.getLogger(__name__)


class ProviderDAO(BaseDAO):

    # -----------------------
    # READ operations
    # -----------------------

    def list(self) -> list[dict]:
        """
        Providers in configuration order, each with its ``models`` list.
        """
        logger.debug("Loading providers from DB")
        try:
            with self._connection() as conn:
                providers = conn.execute(
                    """
                    SELECT code, name, kind, base_url, credential, active
                    FROM providers ORDER BY position, code
                    """
                ).fetchall()
                models = conn.execute(
                    """
                    SELECT provider_code, code, context_length, max_tokens,
                           capabilities_json, model_class, pricing_json, active
                    FROM models ORDER BY rowid
                    """
                ).fetchall()
        except Exception:
            logger.exception("Failed to load providers from DB")
            raise

        by_provider: Dict[str, list] = {}
        for m in models:
            by_provider.setdefault(m["provider_code"], []).append(
                {
                    "code": m["code"],
                    "context_length": m["context_length"],
                    "max_tokens": m["max_tokens"],
                    "capabilities": safe_json_loads(m["capabilities_json"], ["chat"]),
                    "model_class": m["model_class"] or "",
                    "pricing": safe_json_loads(m["pricing_json"], {}),
                    "active": bool(m["active"]),
                }
            )

        return [
            {
                "code": p["code"],
                "name": p["name"] or p["code"],
                "kind": p["kind"] or "openai",
                "base_url": p["base_url"] or "",
                "credential": p["credential"],
                "active": bool(p["active"]),
                "models": by_provider.get(p["code"], []),
            }
            for p in providers
        ]

    # -----------------------
    # WRITE operations
    # -----------------------

    def save(self, provider: Dict[str, Any], *, position: int = 0) -> None:
        """
        Upsert a provider and replace its model catalog.
        """
        code = provider["code"]
        logger.info("Saving provider %s", code)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO providers (code, name, kind, base_url, credential, active, position)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(code) DO UPDATE SET
                        name = excluded.name,
                        kind = excluded.kind,
                        base_url = excluded.base_url,
                        credential = excluded.credential,
                        active = excluded.active,
                        position = excluded.position
                    """,
                    (
                        code,
                        provider.get("name") or code,
                        provider.get("kind") or "openai",
                        provider.get("base_url") or "",
                        provider.get("credential"),
                        int(bool(provider.get("active", True))),
                        position,
                    ),
                )
                conn.execute("DELETE FROM models WHERE provider_code = ?", (code,))
                for m in provider.get("models") or []:
                    conn.execute(
                        """
                        INSERT INTO models
                            (provider_code, code, context_length, max_tokens,
                             capabilities_json, model_class, pricing_json, active)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            code,
                            m["code"],
                            int(m.get("context_length", 8192)),
                            int(m.get("max_tokens", 4096)),
                            json.dumps(list(m.get("capabilities") or ["chat"])),
                            m.get("model_class") or "",
                            json.dumps(m.get("pricing") or {}),
                            int(bool(m.get("active", True))),
                        ),
                    )
        except Exception:
            logger.exception("Failed to save provider %s", code)
            raise

    def set_active(self, code: str, active: bool) -> None:
        try:
            with self._connection() as conn:
                conn.execute(
                    "UPDATE providers SET active = ? WHERE code = ?",
                    (int(active), code),
                )
        except Exception:
            logger.exception("Failed to toggle provider %s", code)
            raise

    def delete(self, code: str) -> None:
        logger.info("Deleting provider %s", code)
        try:
            with self._connection() as conn:
                conn.execute("DELETE FROM providers WHERE code = ?", (code,))
        except Exception:
            logger.exception("Failed to delete provider %s", code)
            raise


class SceneAnalyzerDAO(BaseDAO):

    def list(self) -> list[dict]:
        logger.debug("Loading scene analyzers from DB")
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    """
                    SELECT name, provider_id, model_id, is_default, is_active,
                           system_prompt, temperature, max_tokens
                    FROM scene_analyzers ORDER BY name
                    """
                ).fetchall()
        except Exception:
            logger.exception("Failed to load scene analyzers from DB")
            raise

        return [
            {
                **dict(r),
                "is_default": bool(r["is_default"]),
                "is_active": bool(r["is_active"]),
                "system_prompt": r["system_prompt"] or "",
            }
            for r in rows
        ]

    def save(self, analyzer: Dict[str, Any]) -> None:
        name = analyzer.get("name") or "scene-analyzer"
        logger.info("Saving scene analyzer %s", name)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO scene_analyzers
                        (name, provider_id, model_id, is_default, is_active,
                         system_prompt, temperature, max_tokens)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        provider_id = excluded.provider_id,
                        model_id = excluded.model_id,
                        is_default = excluded.is_default,
                        is_active = excluded.is_active,
                        system_prompt = excluded.system_prompt,
                        temperature = excluded.temperature,
                        max_tokens = excluded.max_tokens
                    """,
                    (
                        name,
                        analyzer["provider_id"],
                        analyzer["model_id"],
                        int(bool(analyzer.get("is_default", False))),
                        int(bool(analyzer.get("is_active", True))),
                        analyzer.get("system_prompt") or "",
                        float(analyzer.get("temperature", 0.1)),
                        int(analyzer.get("max_tokens", 200)),
                    ),
                )
        except Exception:
            logger.exception("Failed to save scene analyzer %s", name)
            raise

    def set_active(self, name: str, active: bool) -> None:
        try:
            with self._connection() as conn:
                conn.execute(
                    "UPDATE scene_analyzers SET is_active = ? WHERE name = ?",
                    (int(active), name),
                )
        except Exception:
            logger.exception("Failed to toggle scene analyzer %s", name)
            raise


@contextmanager
def provider_dao(db_path: str):
    with get_conn(db_path) as conn:
        yield ProviderDAO(conn=conn)
