# registry.py
"""
Process-wide orchestration configuration.

All configuration lives in one immutable RegistrySnapshot. Readers grab the
current snapshot reference (never blocks); writers build a new snapshot and
swap the reference under a lock. A run keeps the snapshot it started with,
so a mode toggle never affects work already in flight.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from chat_orchestrator.errors import ConfigError
from chat_orchestrator.models import (
    AgentSpec,
    FlowSpec,
    ModelSpec,
    ProviderMode,
    ProviderSpec,
    SceneAnalyzerSpec,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrySnapshot:
    agents: Tuple[AgentSpec, ...]
    flows: Tuple[FlowSpec, ...]
    providers: Tuple[ProviderSpec, ...]
    default_flow: str
    current_provider: str
    mode: ProviderMode = ProviderMode.SINGLE
    scene_analyzers: Tuple[SceneAnalyzerSpec, ...] = ()
    # role_tag -> agent, built once per snapshot
    _agents_by_tag: Dict[str, AgentSpec] = field(default_factory=dict, init=False, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "_agents_by_tag", {a.role_tag: a for a in self.agents})

    # -------------------------
    # Lookups
    # -------------------------

    def get_agent(self, role_tag: str) -> Optional[AgentSpec]:
        return self._agents_by_tag.get(role_tag)

    def enabled_agents(self) -> List[AgentSpec]:
        return sorted((a for a in self.agents if a.enabled), key=lambda a: a.order)

    def enabled_flows(self) -> List[FlowSpec]:
        return [f for f in self.flows if f.enabled]

    def get_flow(self, name: str) -> Optional[FlowSpec]:
        for f in self.flows:
            if f.name == name and f.enabled:
                return f
        return None

    def get_flow_for_mode(self, mode: str) -> Optional[FlowSpec]:
        for f in self.flows:
            if f.mode == mode and f.enabled:
                return f
        return None

    def get_provider(self, code: str) -> Optional[ProviderSpec]:
        for p in self.providers:
            if p.code == code:
                return p
        return None

    def get_model(self, provider_code: str, model_code: str) -> Optional[ModelSpec]:
        provider = self.get_provider(provider_code)
        return provider.get_model(model_code) if provider else None

    def active_providers(self) -> List[ProviderSpec]:
        return [p for p in self.providers if p.active]

    def default_scene_analyzer(self) -> Optional[SceneAnalyzerSpec]:
        for a in self.scene_analyzers:
            if a.is_active and a.is_default:
                return a
        return None


# -------------------------
# Parsing / validation
# -------------------------

def parse_config(data: Dict[str, Any]) -> RegistrySnapshot:
    """
    Build a validated snapshot from a JSON-shaped document.

    Raises ConfigError on anything a run could later trip over.
    """
    if not isinstance(data, dict):
        raise ConfigError("Orchestration config must be a JSON object")

    providers = tuple(ProviderSpec.from_dict(p) for p in data.get("providers") or [])
    agents = tuple(AgentSpec.from_dict(a) for a in data.get("agents") or [])
    flows = tuple(FlowSpec.from_dict(f) for f in data.get("flows") or [])
    analyzers = tuple(
        SceneAnalyzerSpec.from_dict(s) for s in data.get("scene_analyzers") or []
    )

    raw_mode = str(data.get("mode") or ProviderMode.SINGLE.value).lower()
    try:
        mode = ProviderMode(raw_mode)
    except ValueError:
        raise ConfigError(f"Unknown provider mode '{raw_mode}'")

    snapshot = RegistrySnapshot(
        agents=agents,
        flows=flows,
        providers=providers,
        default_flow=str(data.get("default_flow") or ""),
        current_provider=str(data.get("current_provider") or ""),
        mode=mode,
        scene_analyzers=analyzers,
    )
    validate_snapshot(snapshot)
    return snapshot


def validate_snapshot(snapshot: RegistrySnapshot) -> None:
    _unique([p.code for p in snapshot.providers], "provider code")
    _unique([a.role_tag for a in snapshot.agents], "agent role_tag")
    _unique([f.name for f in snapshot.flows], "flow name")

    for agent in snapshot.agents:
        provider = snapshot.get_provider(agent.provider_id)
        if provider is None:
            raise ConfigError(
                f"Agent '{agent.role_tag}' references unknown provider '{agent.provider_id}'"
            )
        if provider.get_model(agent.model_id) is None:
            raise ConfigError(
                f"Agent '{agent.role_tag}' references unknown model "
                f"'{agent.provider_id}/{agent.model_id}'"
            )

    for flow in snapshot.enabled_flows():
        for step in flow.steps:
            agent = snapshot.get_agent(step.role_tag)
            if agent is None:
                raise ConfigError(
                    f"Flow '{flow.name}' step {step.index} references unknown agent "
                    f"'{step.role_tag}'"
                )
            if not agent.enabled:
                raise ConfigError(
                    f"Flow '{flow.name}' step {step.index} references disabled agent "
                    f"'{step.role_tag}'"
                )

    if not snapshot.default_flow:
        raise ConfigError("No default flow configured")
    if snapshot.get_flow(snapshot.default_flow) is None:
        raise ConfigError(
            f"Default flow '{snapshot.default_flow}' is unknown or disabled"
        )

    if not snapshot.current_provider:
        raise ConfigError("No current provider configured")
    if snapshot.get_provider(snapshot.current_provider) is None:
        raise ConfigError(
            f"Current provider '{snapshot.current_provider}' is unknown"
        )

    defaults = [a for a in snapshot.scene_analyzers if a.is_active and a.is_default]
    if len(defaults) > 1:
        raise ConfigError(
            "At most one active scene analyzer may be marked default, found: "
            + ", ".join(a.name for a in defaults)
        )
    for analyzer in snapshot.scene_analyzers:
        if snapshot.get_model(analyzer.provider_id, analyzer.model_id) is None:
            raise ConfigError(
                f"Scene analyzer '{analyzer.name}' references unknown model "
                f"'{analyzer.provider_id}/{analyzer.model_id}'"
            )


def _unique(values: List[str], label: str) -> None:
    seen = set()
    for v in values:
        if v in seen:
            raise ConfigError(f"Duplicate {label} '{v}'")
        seen.add(v)


# -------------------------
# ConfigRegistry
# -------------------------

class ConfigRegistry:
    """
    Configuration service passed explicitly to the gateway, classifier and
    orchestrator. No module-level singleton.
    """

    def __init__(self, snapshot: RegistrySnapshot):
        validate_snapshot(snapshot)
        self._snapshot = snapshot
        self._write_lock = threading.Lock()

    # -------------------------
    # Construction
    # -------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigRegistry":
        return cls(parse_config(data))

    @classmethod
    def from_file(cls, path: str | Path) -> "ConfigRegistry":
        path = Path(path)
        logger.info("Loading orchestration config from %s", path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {path} is not valid JSON: {e}")
        return cls.from_dict(data)

    @classmethod
    def from_db(cls, db_path: str) -> "ConfigRegistry":
        from chat_orchestrator.db.services import ConfigStore

        logger.info("Loading orchestration config from DB %s", db_path)
        return cls.from_dict(ConfigStore(db_path).load_config_document())

    # -------------------------
    # Reads (never block)
    # -------------------------

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def get_all_agents(self) -> List[AgentSpec]:
        return self._snapshot.enabled_agents()

    def get_all_flows(self) -> List[FlowSpec]:
        return self._snapshot.enabled_flows()

    def get_agent(self, role_tag: str) -> Optional[AgentSpec]:
        return self._snapshot.get_agent(role_tag)

    def get_flow(self, name: str) -> Optional[FlowSpec]:
        return self._snapshot.get_flow(name)

    def default_flow(self) -> FlowSpec:
        snap = self._snapshot
        return snap.get_flow(snap.default_flow)

    def is_single_provider_mode(self) -> bool:
        return self._snapshot.mode is ProviderMode.SINGLE

    def current_mode(self) -> ProviderMode:
        return self._snapshot.mode

    def get_current_provider(self) -> ProviderSpec:
        snap = self._snapshot
        return snap.get_provider(snap.current_provider)

    # -------------------------
    # Writes (whole-snapshot swap)
    # -------------------------

    def set_single_provider_mode(self, enabled: bool) -> None:
        mode = ProviderMode.SINGLE if enabled else ProviderMode.MULTI
        with self._write_lock:
            if self._snapshot.mode is mode:
                return
            self._snapshot = replace(self._snapshot, mode=mode)
        logger.info("Provider mode switched to %s", mode.value)

    def set_current_provider(self, code: str) -> None:
        with self._write_lock:
            candidate = replace(self._snapshot, current_provider=code)
            validate_snapshot(candidate)
            self._snapshot = candidate
        logger.info("Current provider switched to %s", code)

    def reload(self, data: Dict[str, Any], *, keep_mode: bool = True) -> None:
        """Validate a new document and swap it in; invalid input leaves state untouched."""
        snapshot = parse_config(data)
        with self._write_lock:
            if keep_mode:
                snapshot = replace(snapshot, mode=self._snapshot.mode)
            self._snapshot = snapshot
        logger.info(
            "Configuration reloaded: %d agents, %d flows, %d providers",
            len(snapshot.agents),
            len(snapshot.flows),
            len(snapshot.providers),
        )
