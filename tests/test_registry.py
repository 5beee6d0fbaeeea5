# tests/test_registry.py
import json
from pathlib import Path

import pytest

from chat_orchestrator.errors import ConfigError
from chat_orchestrator.models import ProviderMode
from chat_orchestrator.registry import ConfigRegistry

from conftest import make_config

SHIPPED_CONFIG = Path(__file__).resolve().parents[1] / "config" / "orchestration.json"


def test_agents_sorted_by_order_and_disabled_hidden():
    data = make_config()
    data["agents"][0]["order"] = 9
    data["agents"][2]["enabled"] = False
    # humor-agent is referenced by an enabled flow, so disable that flow too
    data["flows"][1]["enabled"] = False

    registry = ConfigRegistry.from_dict(data)

    assert [a.role_tag for a in registry.get_all_agents()] == ["advice-agent", "comfort-agent"]
    assert [f.name for f in registry.get_all_flows()] == ["emotional-support"]


def test_flow_steps_and_parallel_batches():
    registry = ConfigRegistry.from_dict(make_config())

    flow = registry.get_flow("casual-chat")
    batches = flow.batches()

    assert [s.index for s in flow.steps] == [1, 2, 3]
    assert [[s.role_tag for s in b] for b in batches] == [
        ["humor-agent", "comfort-agent"],
        ["advice-agent"],
    ]
    assert registry.default_flow().role_tags == ["comfort-agent", "advice-agent"]


def test_flow_lookup_by_mode():
    data = make_config()
    data["flows"][0]["mode"] = "support"
    data["flows"][1]["enabled"] = False
    snap = ConfigRegistry.from_dict(data).snapshot()

    assert snap.get_flow_for_mode("support").name == "emotional-support"
    # mode defaults to the flow name; disabled flows are skipped
    assert snap.get_flow_for_mode("emotional-support") is None
    assert snap.get_flow_for_mode("casual-chat") is None


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda d: d["agents"].append(dict(d["agents"][0])), "Duplicate agent role_tag"),
        (lambda d: d["flows"][0]["steps"].append("ghost-agent"), "unknown agent"),
        (lambda d: d["agents"][1].update(enabled=False), "disabled agent"),
        (lambda d: d.update(default_flow="nope"), "Default flow 'nope'"),
        (lambda d: d.update(current_provider="nope"), "Current provider 'nope'"),
        (lambda d: d["agents"][0].update(model_id="missing"), "unknown model"),
        (lambda d: d["agents"][0].update(provider_id="missing"), "unknown provider"),
        (lambda d: d.update(mode="sometimes"), "Unknown provider mode"),
    ],
)
def test_invalid_configuration_is_rejected(mutate, message):
    data = make_config()
    mutate(data)

    with pytest.raises(ConfigError) as exc:
        ConfigRegistry.from_dict(data)
    assert message in str(exc.value)


def test_step_indices_must_be_contiguous():
    data = make_config()
    data["flows"][0]["steps"] = [
        {"index": 1, "role_tag": "comfort-agent"},
        {"index": 3, "role_tag": "advice-agent"},
    ]
    with pytest.raises(ConfigError, match="step indices"):
        ConfigRegistry.from_dict(data)


def test_parallel_group_must_be_contiguous():
    data = make_config()
    data["flows"][1]["steps"] = [
        {"index": 1, "role_tag": "humor-agent", "parallel_group": "g"},
        {"index": 2, "role_tag": "advice-agent"},
        {"index": 3, "role_tag": "comfort-agent", "parallel_group": "g"},
    ]
    with pytest.raises(ConfigError, match="not contiguous"):
        ConfigRegistry.from_dict(data)


def test_at_most_one_default_scene_analyzer():
    analyzer = {"provider_id": "alpha", "model_id": "alpha-chat", "is_default": True}
    data = make_config(
        scene_analyzers=[dict(analyzer, name="a1"), dict(analyzer, name="a2")]
    )
    with pytest.raises(ConfigError, match="At most one"):
        ConfigRegistry.from_dict(data)

    # an inactive second default is fine
    data["scene_analyzers"][1]["is_active"] = False
    registry = ConfigRegistry.from_dict(data)
    assert registry.snapshot().default_scene_analyzer().name == "a1"


def test_mode_toggle_swaps_snapshot_without_touching_old_one():
    registry = ConfigRegistry.from_dict(make_config())
    before = registry.snapshot()

    registry.set_single_provider_mode(False)

    assert not registry.is_single_provider_mode()
    assert registry.current_mode() is ProviderMode.MULTI
    # a Run holding the old snapshot keeps its mode
    assert before.mode is ProviderMode.SINGLE
    assert registry.snapshot().flows == before.flows
    assert registry.snapshot().agents == before.agents


def test_set_current_provider_validates():
    registry = ConfigRegistry.from_dict(make_config())

    registry.set_current_provider("beta")
    assert registry.get_current_provider().code == "beta"

    with pytest.raises(ConfigError):
        registry.set_current_provider("nope")
    assert registry.get_current_provider().code == "beta"


def test_reload_keeps_mode_and_rejects_bad_documents():
    registry = ConfigRegistry.from_dict(make_config())
    registry.set_single_provider_mode(False)

    data = make_config()
    data["agents"][0]["name"] = "Renamed"
    registry.reload(data)

    assert registry.get_agent("comfort-agent").name == "Renamed"
    assert registry.current_mode() is ProviderMode.MULTI

    bad = make_config(default_flow="nope")
    with pytest.raises(ConfigError):
        registry.reload(bad)
    assert registry.get_agent("comfort-agent").name == "Renamed"


def test_from_file(tmp_path):
    path = tmp_path / "orchestration.json"
    path.write_text(json.dumps(make_config()), encoding="utf-8")

    registry = ConfigRegistry.from_file(path)
    assert registry.get_current_provider().code == "alpha"

    with pytest.raises(ConfigError, match="not found"):
        ConfigRegistry.from_file(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError, match="not valid JSON"):
        ConfigRegistry.from_file(broken)


def test_shipped_config_is_valid():
    registry = ConfigRegistry.from_file(SHIPPED_CONFIG)

    assert registry.default_flow().role_tags == ["comfort-agent", "advice-agent"]
    assert registry.is_single_provider_mode()
    assert registry.snapshot().default_scene_analyzer() is not None
