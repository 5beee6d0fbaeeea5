# tests/test_db_store.py
import sqlite3

import pytest

from chat_orchestrator.db.conversations import ConversationDAO, conversation_dao
from chat_orchestrator.db.infra.core import init_db, safe_json_loads
from chat_orchestrator.db.messages import MessageDAO
from chat_orchestrator.db.services import ConfigStore, ConversationStore
from chat_orchestrator.errors import PersistenceError
from chat_orchestrator.registry import ConfigRegistry

from conftest import make_config


def _db(tmp_path):
    db_path = str(tmp_path / "store.db")
    init_db(db_path)
    return db_path


def test_init_db_creates_schema(tmp_path):
    db_path = _db(tmp_path)

    with sqlite3.connect(db_path) as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }

    assert {"conversations", "messages", "agents", "flows", "providers", "models",
            "scene_analyzers", "settings"} <= tables
    # idempotent
    init_db(db_path)


def test_messages_are_listed_oldest_first_with_limit(tmp_path):
    db_path = _db(tmp_path)
    ConversationDAO(db_path).create("c1")
    dao = MessageDAO(db_path)
    for i in range(5):
        dao.create("c1", "user" if i % 2 == 0 else "ai", f"m{i}", step=i)

    assert [m["content"] for m in dao.list_for_conversation("c1")] == ["m0", "m1", "m2", "m3", "m4"]
    assert [m["content"] for m in dao.list_for_conversation("c1", limit=2)] == ["m3", "m4"]
    assert dao.count_for_conversation("c1") == 5


def test_delete_conversation_cascades_messages(tmp_path):
    db_path = _db(tmp_path)
    ConversationDAO(db_path).create("c1")
    MessageDAO(db_path).create("c1", "user", "hello")

    ConversationDAO(db_path).delete("c1")

    assert ConversationDAO(db_path).get("c1") is None
    assert MessageDAO(db_path).list_for_conversation("c1") == []


def test_transaction_scoped_dao_rolls_back(tmp_path):
    db_path = _db(tmp_path)

    with pytest.raises(RuntimeError):
        with conversation_dao(db_path) as dao:
            dao.create("c1", budget_cents=100)
            dao.add_spend("c1", 10)
            raise RuntimeError("boom")

    assert ConversationDAO(db_path).get("c1") is None


def test_safe_json_loads_defaults():
    assert safe_json_loads(None, []) == []
    assert safe_json_loads("  ", {}) == {}
    assert safe_json_loads("{broken", {"x": 1}) == {"x": 1}
    assert safe_json_loads('["a"]', []) == ["a"]


@pytest.mark.asyncio
async def test_conversation_store_round_trip(tmp_path):
    store = ConversationStore(str(tmp_path / "store.db"))

    conversation = await store.create_conversation(
        "c1", title="Bad day", mode="emotional-support",
        selected_agents=["comfort-agent"], budget_cents=120,
    )
    assert conversation.selected_agents == ("comfort-agent",)
    assert conversation.remaining_cents == 120

    message = await store.create_message(
        "c1", "ai", "there there", agent_id="comfort-agent", step=1,
        tokens=42, cost_cents=1.5, provider_used="alpha",
    )
    total = await store.add_spend("c1", 1.5)

    assert total == pytest.approx(1.5)
    assert message.created_at is not None
    listed = await store.list_messages("c1")
    assert listed == [message]
    assert (await store.find_conversation("c1")).spent_cents == pytest.approx(1.5)

    await store.delete_conversation("c1")
    assert await store.find_conversation("c1") is None


@pytest.mark.asyncio
async def test_store_wraps_sqlite_errors(tmp_path):
    store = ConversationStore(str(tmp_path / "store.db"))

    # foreign key violation: conversation does not exist
    with pytest.raises(PersistenceError):
        await store.create_message("missing", "user", "hello")

    await store.create_conversation("c1")
    with pytest.raises(PersistenceError):
        await store.create_conversation("c1")


@pytest.mark.asyncio
async def test_record_reply_saves_message_and_spend_together(tmp_path, monkeypatch):
    store = ConversationStore(str(tmp_path / "store.db"))
    await store.create_conversation("c1", budget_cents=100)

    message = await store.record_reply(
        "c1", "hello", agent_id="comfort-agent", step=1, cost_cents=4.0, provider_used="alpha"
    )
    assert message.role == "ai"
    assert (await store.find_conversation("c1")).spent_cents == pytest.approx(4.0)

    def broken_add_spend(self, conv_id, cents):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ConversationDAO, "add_spend", broken_add_spend)
    with pytest.raises(PersistenceError):
        await store.record_reply("c1", "lost", step=2, cost_cents=4.0)

    assert [m.content for m in await store.list_messages("c1")] == ["hello"]
    assert (await store.find_conversation("c1")).spent_cents == pytest.approx(4.0)


def test_config_store_round_trip_feeds_registry(tmp_path):
    db_path = str(tmp_path / "config.db")
    ConfigStore(db_path).save_config_document(make_config(mode="multi"))

    registry = ConfigRegistry.from_db(db_path)

    assert not registry.is_single_provider_mode()
    assert registry.get_current_provider().code == "alpha"
    assert [p.code for p in registry.snapshot().providers] == ["alpha", "beta", "gamma"]
    assert [a.role_tag for a in registry.get_all_agents()] == [
        "comfort-agent", "advice-agent", "humor-agent"
    ]
    casual = registry.get_flow("casual-chat")
    assert [s.parallel_group for s in casual.steps] == ["banter", "banter", None]


def test_config_store_settings_override(tmp_path):
    db_path = str(tmp_path / "config.db")
    store = ConfigStore(db_path)
    store.save_config_document(make_config())

    store.save_setting("current_provider", "gamma")

    assert ConfigRegistry.from_db(db_path).get_current_provider().code == "gamma"
