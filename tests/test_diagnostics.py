# tests/test_diagnostics.py
import json

from chat_orchestrator.diagnostics import describe_state, main, validate_configuration
from chat_orchestrator.registry import ConfigRegistry

from conftest import make_config


def test_describe_state_reports_mode_provider_and_catalog():
    registry = ConfigRegistry.from_dict(make_config())

    state = describe_state(registry)

    assert state["mode"] == "single"
    assert state["current_provider"] == "alpha"
    assert state["scene_analyzer"] is None
    assert [a["role_tag"] for a in state["agents"]] == ["comfort-agent", "advice-agent", "humor-agent"]
    casual = next(f for f in state["flows"] if f["name"] == "casual-chat")
    assert [s["parallel_group"] for s in casual["steps"]] == ["banter", "banter", None]

    registry.set_single_provider_mode(False)
    assert describe_state(registry)["mode"] == "multi"


def test_validate_configuration_flags_missing_credentials(monkeypatch):
    monkeypatch.delenv("CHAT_ORCH_TEST_MISSING_KEY", raising=False)
    data = make_config()
    data["providers"][1]["credential"] = "env:CHAT_ORCH_TEST_MISSING_KEY"
    data["providers"][2]["active"] = False

    issues = validate_configuration(ConfigRegistry.from_dict(data))

    assert "Provider 'beta' has no usable credential" in issues
    assert not any("'gamma'" in i for i in issues)
    assert any("default scene analyzer" in i for i in issues)


def test_validate_configuration_resolves_env_credentials(monkeypatch):
    monkeypatch.setenv("CHAT_ORCH_TEST_KEY", "sk-test")
    data = make_config()
    for provider in data["providers"]:
        provider["credential"] = "env:CHAT_ORCH_TEST_KEY"

    issues = validate_configuration(ConfigRegistry.from_dict(data))

    assert not any("credential" in i for i in issues)


def test_cli_prints_json(tmp_path, capsys):
    path = tmp_path / "orchestration.json"
    path.write_text(json.dumps(make_config()), encoding="utf-8")

    code = main(["--config", str(path), "--json"])

    out = json.loads(capsys.readouterr().out)
    assert code == 0
    assert out["default_flow"] == "emotional-support"
    assert "issues" in out


def test_cli_strict_and_db_import(tmp_path, capsys):
    path = tmp_path / "orchestration.json"
    path.write_text(json.dumps(make_config()), encoding="utf-8")
    db_path = tmp_path / "config.db"

    # no scene analyzer configured -> at least one issue
    assert main(["--config", str(path), "--import-to-db", str(db_path), "--strict"]) == 1
    assert main(["--db", str(db_path)]) == 0

    out = capsys.readouterr().out
    assert "Imported configuration" in out
    assert "comfort-agent" in out
