# diagnostics.py
"""
Read-only view of the orchestration state: mode, current provider and the
agent / flow / provider / scene analyzer catalog, plus configuration checks.

Run as ``chat-orchestrator-diag`` (or ``python -m chat_orchestrator.diagnostics``).
"""
from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict, List

from chat_orchestrator.config import (
    DB_FILE_PATH,
    ORCHESTRATION_CONFIG_PATH,
    configure_logging,
    resolve_credential,
)
from chat_orchestrator.errors import ConfigError
from chat_orchestrator.registry import ConfigRegistry

logger = logging.getLogger(__name__)


def describe_state(registry: ConfigRegistry) -> Dict[str, Any]:
    snap = registry.snapshot()
    analyzer = snap.default_scene_analyzer()
    return {
        "mode": snap.mode.value,
        "current_provider": snap.current_provider,
        "default_flow": snap.default_flow,
        "scene_analyzer": analyzer.name if analyzer else None,
        "agents": [
            {
                "role_tag": a.role_tag,
                "name": a.name,
                "provider": a.provider_id,
                "model": a.model_id,
                "order": a.order,
            }
            for a in snap.enabled_agents()
        ],
        "flows": [
            {
                "name": f.name,
                "mode": f.mode,
                "steps": [
                    {"index": s.index, "role_tag": s.role_tag, "parallel_group": s.parallel_group}
                    for s in f.steps
                ],
            }
            for f in snap.enabled_flows()
        ],
        "providers": [
            {
                "code": p.code,
                "name": p.name,
                "active": p.active,
                "models": [m.code for m in p.models if m.active],
            }
            for p in snap.providers
        ],
    }


def validate_configuration(registry: ConfigRegistry) -> List[str]:
    """
    Problems that do not make the configuration invalid but will make runs
    fail or degrade. An empty list means nothing to report.
    """
    snap = registry.snapshot()
    issues: List[str] = []

    if not snap.enabled_agents():
        issues.append("No enabled agents configured")
    if not snap.enabled_flows():
        issues.append("No enabled flows configured")

    active = snap.active_providers()
    if not active:
        issues.append("No active providers configured")

    current = snap.get_provider(snap.current_provider)
    if current is not None and not current.active:
        issues.append(f"Current provider '{current.code}' is inactive")

    for provider in active:
        if not resolve_credential(provider.credential):
            issues.append(f"Provider '{provider.code}' has no usable credential")
        if provider.first_model() is None:
            issues.append(f"Provider '{provider.code}' offers no active model")

    for agent in snap.enabled_agents():
        preferred = snap.get_provider(agent.provider_id)
        if preferred is not None and not preferred.active:
            issues.append(
                f"Agent '{agent.role_tag}' prefers inactive provider '{agent.provider_id}'"
            )

    if snap.default_scene_analyzer() is None:
        issues.append("No active default scene analyzer; every message uses the default flow")

    return issues


def _print_state(state: Dict[str, Any]) -> None:
    print(f"Mode:             {state['mode']}")
    print(f"Current provider: {state['current_provider']}")
    print(f"Default flow:     {state['default_flow']}")
    print(f"Scene analyzer:   {state['scene_analyzer'] or '-'}")

    print("\nAgents:")
    print("-------")
    for a in state["agents"]:
        print(f"  {a['order']:>3}  {a['role_tag']:<24} {a['provider']}/{a['model']}")

    print("\nFlows:")
    print("------")
    for f in state["flows"]:
        steps = []
        for s in f["steps"]:
            tag = s["role_tag"]
            if s["parallel_group"]:
                tag += f" [{s['parallel_group']}]"
            steps.append(tag)
        print(f"  {f['name']:<24} {' -> '.join(steps)}")

    print("\nProviders:")
    print("----------")
    for p in state["providers"]:
        flag = "active" if p["active"] else "inactive"
        print(f"  {p['code']:<16} {flag:<9} {', '.join(p['models'])}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Show orchestration mode, providers and the agent/flow catalog."
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Orchestration JSON file (default: {ORCHESTRATION_CONFIG_PATH})",
    )
    parser.add_argument(
        "--db",
        default=None,
        help=f"Load configuration from a SQLite database instead (e.g. {DB_FILE_PATH})",
    )
    parser.add_argument(
        "--import-to-db",
        metavar="DB_PATH",
        default=None,
        help="Copy the JSON configuration into the given SQLite database",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 1 when configuration issues are found",
    )

    args = parser.parse_args(argv)
    configure_logging()

    try:
        if args.db:
            registry = ConfigRegistry.from_db(args.db)
        else:
            path = args.config or ORCHESTRATION_CONFIG_PATH
            registry = ConfigRegistry.from_file(path)
            if args.import_to_db:
                from chat_orchestrator.db.services import ConfigStore

                with open(path, encoding="utf-8") as fh:
                    ConfigStore(args.import_to_db).save_config_document(json.load(fh))
                print(f"Imported configuration into {args.import_to_db}")
    except ConfigError as e:
        raise SystemExit(f"Invalid configuration: {e}")

    state = describe_state(registry)
    issues = validate_configuration(registry)

    if args.json:
        print(json.dumps({**state, "issues": issues}, indent=2, ensure_ascii=False))
    else:
        _print_state(state)
        print("\nIssues:")
        print("-------")
        for issue in issues or ["none"]:
            print(f"  {issue}")

    return 1 if (args.strict and issues) else 0


if __name__ == "__main__":
    raise SystemExit(main())
