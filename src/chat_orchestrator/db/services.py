# src/chat_orchestrator/db/services.py
import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from chat_orchestrator.db.agents import AgentDAO
from chat_orchestrator.db.conversations import ConversationDAO
from chat_orchestrator.db.flows import FlowDAO
from chat_orchestrator.db.infra.core import get_conn, init_db
from chat_orchestrator.db.messages import MessageDAO
from chat_orchestrator.db.providers import ProviderDAO, SceneAnalyzerDAO
from chat_orchestrator.db.settings import SettingsDAO
from chat_orchestrator.errors import PersistenceError
from chat_orchestrator.models import Conversation, Message

logger = logging.getLogger(__name__)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _to_conversation(row: Dict[str, Any]) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row.get("title") or "",
        mode=row.get("mode") or "",
        selected_agents=tuple(row.get("selected_agents") or ()),
        budget_cents=float(row["budget_cents"]),
        spent_cents=float(row["spent_cents"]),
        created_at=_parse_ts(row.get("created_at")),
    )


def _to_message(row: Dict[str, Any]) -> Message:
    return Message(
        id=row["id"],
        conv_id=row["conv_id"],
        role=row["role"],
        content=row["content"],
        agent_id=row.get("agent_id"),
        step=row.get("step"),
        tokens=int(row.get("tokens") or 0),
        cost_cents=float(row.get("cost_cents") or 0.0),
        provider_used=row.get("provider_used"),
        created_at=_parse_ts(row.get("created_at")),
    )


# -----------------------
# Conversation Store
# -----------------------
class ConversationStore:
    """
    Async persistence collaborator used by the Orchestrator.

    Every call runs the blocking sqlite DAO in a worker thread and maps
    sqlite3.Error to PersistenceError.
    """

    def __init__(self, db_path: str, *, initialize: bool = True):
        self.db_path = str(db_path)
        if initialize:
            init_db(self.db_path)

    async def _call(self, what: str, fn: Callable, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to {what}: {e}") from e

    # -----------------------
    # Conversations
    # -----------------------

    async def create_conversation(
        self,
        conv_id: str,
        *,
        title: str = "",
        mode: str = "",
        selected_agents: Sequence[str] = (),
        budget_cents: float = 500,
    ) -> Conversation:
        dao = ConversationDAO(self.db_path)
        await self._call(
            f"create conversation {conv_id}",
            dao.create,
            conv_id,
            title=title,
            mode=mode,
            selected_agents=list(selected_agents),
            budget_cents=budget_cents,
        )
        return await self.find_conversation(conv_id)

    async def find_conversation(self, conv_id: str) -> Optional[Conversation]:
        row = await self._call(
            f"load conversation {conv_id}", ConversationDAO(self.db_path).get, conv_id
        )
        return _to_conversation(row) if row else None

    async def add_spend(self, conv_id: str, cents: float) -> float:
        return await self._call(
            f"record spend for {conv_id}",
            ConversationDAO(self.db_path).add_spend,
            conv_id,
            cents,
        )

    async def delete_conversation(self, conv_id: str) -> None:
        await self._call(
            f"delete conversation {conv_id}",
            ConversationDAO(self.db_path).delete,
            conv_id,
        )

    # -----------------------
    # Messages
    # -----------------------

    async def create_message(
        self,
        conv_id: str,
        role: str,
        content: str,
        agent_id: Optional[str] = None,
        step: Optional[int] = None,
        tokens: int = 0,
        cost_cents: float = 0.0,
        provider_used: Optional[str] = None,
    ) -> Message:
        row = await self._call(
            f"save {role} message for {conv_id}",
            MessageDAO(self.db_path).create,
            conv_id,
            role,
            content,
            agent_id=agent_id,
            step=step,
            tokens=tokens,
            cost_cents=cost_cents,
            provider_used=provider_used,
        )
        return _to_message(row)

    def _record_reply_tx(self, conv_id: str, content: str, **fields) -> dict:
        with get_conn(self.db_path) as conn:
            row = MessageDAO(conn=conn).create(conv_id, "ai", content, **fields)
            ConversationDAO(conn=conn).add_spend(conv_id, row["cost_cents"])
        return row

    async def record_reply(
        self,
        conv_id: str,
        content: str,
        *,
        agent_id: Optional[str] = None,
        step: Optional[int] = None,
        tokens: int = 0,
        cost_cents: float = 0.0,
        provider_used: Optional[str] = None,
    ) -> Message:
        """
        Save an AI message and add its cost to the conversation spend in
        one transaction: either both land or neither does.
        """
        row = await self._call(
            f"save ai message for {conv_id}",
            self._record_reply_tx,
            conv_id,
            content,
            agent_id=agent_id,
            step=step,
            tokens=tokens,
            cost_cents=cost_cents,
            provider_used=provider_used,
        )
        return _to_message(row)

    async def list_messages(
        self, conv_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        rows = await self._call(
            f"load messages for {conv_id}",
            MessageDAO(self.db_path).list_for_conversation,
            conv_id,
            limit,
        )
        return [_to_message(r) for r in rows]


# -----------------------
# Config Store
# -----------------------

_SETTING_KEYS = ("mode", "default_flow", "current_provider")


class ConfigStore:
    """
    Orchestration configuration kept in sqlite, exchanged as the same
    JSON-shaped document that ConfigRegistry.from_dict accepts.
    """

    def __init__(self, db_path: str, *, initialize: bool = True):
        self.db_path = str(db_path)
        if initialize:
            init_db(self.db_path)

    def load_config_document(self) -> Dict[str, Any]:
        with get_conn(self.db_path) as conn:
            settings = SettingsDAO(conn=conn).all()
            doc: Dict[str, Any] = {
                "providers": ProviderDAO(conn=conn).list(),
                "agents": AgentDAO(conn=conn).list(),
                "flows": FlowDAO(conn=conn).list(),
                "scene_analyzers": SceneAnalyzerDAO(conn=conn).list(),
            }
        for key in _SETTING_KEYS:
            if settings.get(key) is not None:
                doc[key] = settings[key]
        logger.debug(
            "Loaded config document: %d providers, %d agents, %d flows",
            len(doc["providers"]),
            len(doc["agents"]),
            len(doc["flows"]),
        )
        return doc

    def save_config_document(self, data: Dict[str, Any]) -> None:
        """
        Write a whole config document in one transaction.
        Existing rows are upserted; rows absent from ``data`` are kept.
        """
        logger.info("Saving orchestration config document to %s", self.db_path)
        with get_conn(self.db_path) as conn:
            providers = ProviderDAO(conn=conn)
            for position, provider in enumerate(data.get("providers") or []):
                providers.save(provider, position=position)

            agents = AgentDAO(conn=conn)
            for agent in data.get("agents") or []:
                agents.save(agent)

            flows = FlowDAO(conn=conn)
            for flow in data.get("flows") or []:
                flows.save(flow)

            analyzers = SceneAnalyzerDAO(conn=conn)
            for analyzer in data.get("scene_analyzers") or []:
                analyzers.save(analyzer)

            settings = SettingsDAO(conn=conn)
            for key in _SETTING_KEYS:
                if data.get(key) is not None:
                    settings.set(key, str(data[key]))

    def save_setting(self, key: str, value: str) -> None:
        SettingsDAO(self.db_path).set(key, value)
