# models.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from chat_orchestrator.errors import ConfigError

logger = logging.getLogger(__name__)


class ProviderMode(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


def _require(data: Dict[str, Any], key: str, what: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise ConfigError(f"{what}: missing required field '{key}'")
    return value


def _as_int(value: Any, key: str, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{what}: field '{key}' must be an integer, got {value!r}")


def _as_float(value: Any, key: str, what: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{what}: field '{key}' must be a number, got {value!r}")


# -------------------------
# Configuration records
# -------------------------

@dataclass(frozen=True)
class ModelSpec:
    """
    One model offered by a provider.

    ``model_class`` groups equivalent models across vendors; failover only
    moves between models of the same class.
    """
    code: str
    provider_id: str
    context_length: int = 8192
    max_tokens: int = 4096
    capabilities: Tuple[str, ...] = ("chat",)
    model_class: str = ""
    # cents per 1K tokens: {"input": ..., "output": ...}
    pricing: Dict[str, float] = field(default_factory=dict)
    active: bool = True

    @property
    def effective_class(self) -> str:
        return self.model_class or self.code

    @classmethod
    def from_dict(cls, data: Dict[str, Any], provider_id: str) -> "ModelSpec":
        what = f"Model of provider '{provider_id}'"
        code = _require(data, "code", what)
        what = f"Model '{provider_id}/{code}'"
        pricing = data.get("pricing") or {}
        if not isinstance(pricing, dict):
            raise ConfigError(f"{what}: 'pricing' must be an object")
        return cls(
            code=str(code),
            provider_id=provider_id,
            context_length=_as_int(data.get("context_length", 8192), "context_length", what),
            max_tokens=_as_int(data.get("max_tokens", 4096), "max_tokens", what),
            capabilities=tuple(data.get("capabilities") or ("chat",)),
            model_class=str(data.get("model_class") or ""),
            pricing={k: _as_float(v, f"pricing.{k}", what) for k, v in pricing.items()},
            active=bool(data.get("active", True)),
        )


@dataclass(frozen=True)
class ProviderSpec:
    code: str
    base_url: str = ""
    # literal key or "env:NAME"
    credential: Optional[str] = None
    active: bool = True
    name: str = ""
    # adapter type registered in llm_client (e.g. "openai")
    kind: str = "openai"
    models: Tuple[ModelSpec, ...] = ()

    def get_model(self, code: str) -> Optional[ModelSpec]:
        for m in self.models:
            if m.code == code and m.active:
                return m
        return None

    def models_of_class(self, model_class: str) -> List[ModelSpec]:
        return [m for m in self.models if m.active and m.effective_class == model_class]

    def first_model(self) -> Optional[ModelSpec]:
        for m in self.models:
            if m.active:
                return m
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderSpec":
        code = str(_require(data, "code", "Provider"))
        models = tuple(
            ModelSpec.from_dict(m, code) for m in (data.get("models") or [])
        )
        seen = set()
        for m in models:
            if m.code in seen:
                raise ConfigError(f"Provider '{code}': duplicate model '{m.code}'")
            seen.add(m.code)
        return cls(
            code=code,
            base_url=str(data.get("base_url") or ""),
            credential=data.get("credential"),
            active=bool(data.get("active", True)),
            name=str(data.get("name") or code),
            kind=str(data.get("kind") or "openai"),
            models=models,
        )


@dataclass(frozen=True)
class AgentSpec:
    """
    Immutable agent (persona) definition.
    Safe to serialize, store, diff, and test.
    """
    role_tag: str
    name: str
    prompt_template: str
    provider_id: str
    model_id: str
    temperature: float = 0.7
    max_tokens: int = 1000
    order: int = 0
    enabled: bool = True
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentSpec":
        role_tag = str(_require(data, "role_tag", "Agent"))
        what = f"Agent '{role_tag}'"
        return cls(
            role_tag=role_tag,
            name=str(data.get("name") or role_tag),
            prompt_template=str(_require(data, "prompt_template", what)),
            provider_id=str(_require(data, "provider_id", what)),
            model_id=str(_require(data, "model_id", what)),
            temperature=_as_float(data.get("temperature", 0.7), "temperature", what),
            max_tokens=_as_int(data.get("max_tokens", 1000), "max_tokens", what),
            order=_as_int(data.get("order", 0), "order", what),
            enabled=bool(data.get("enabled", True)),
            description=str(data.get("description") or ""),
        )


@dataclass(frozen=True)
class StepSpec:
    index: int
    role_tag: str
    # steps sharing a tag run concurrently on the same input context
    parallel_group: Optional[str] = None


@dataclass(frozen=True)
class FlowSpec:
    name: str
    mode: str
    steps: Tuple[StepSpec, ...]
    description: str = ""
    enabled: bool = True

    @property
    def role_tags(self) -> List[str]:
        return [s.role_tag for s in self.steps]

    def batches(self) -> List[Tuple[StepSpec, ...]]:
        """
        Split steps into execution batches: a lone step, or a contiguous
        run of steps sharing the same parallel_group.
        """
        batches: List[Tuple[StepSpec, ...]] = []
        current: List[StepSpec] = []
        for step in self.steps:
            if (
                current
                and step.parallel_group is not None
                and current[-1].parallel_group == step.parallel_group
            ):
                current.append(step)
                continue
            if current:
                batches.append(tuple(current))
            current = [step]
        if current:
            batches.append(tuple(current))
        return batches

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowSpec":
        name = str(_require(data, "name", "Flow"))
        what = f"Flow '{name}'"
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise ConfigError(f"{what}: 'steps' must be a non-empty list")

        steps: List[StepSpec] = []
        for pos, raw in enumerate(raw_steps, start=1):
            # Accept the short form "role-tag" as well as full objects
            if isinstance(raw, str):
                steps.append(StepSpec(index=pos, role_tag=raw))
                continue
            if not isinstance(raw, dict):
                raise ConfigError(f"{what}: step #{pos} must be a string or object")
            steps.append(
                StepSpec(
                    index=_as_int(raw.get("index", pos), "index", what),
                    role_tag=str(_require(raw, "role_tag", f"{what} step #{pos}")),
                    parallel_group=raw.get("parallel_group") or None,
                )
            )

        indices = [s.index for s in steps]
        if indices != list(range(1, len(steps) + 1)):
            raise ConfigError(
                f"{what}: step indices must be 1..{len(steps)} in order, got {indices}"
            )

        # A parallel group may only appear as one contiguous block
        closed = set()
        previous = None
        for s in steps:
            if s.parallel_group != previous and previous is not None:
                closed.add(previous)
            if s.parallel_group is not None and s.parallel_group in closed:
                raise ConfigError(
                    f"{what}: parallel group '{s.parallel_group}' is not contiguous"
                )
            previous = s.parallel_group

        return cls(
            name=name,
            mode=str(data.get("mode") or name),
            steps=tuple(steps),
            description=str(data.get("description") or ""),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass(frozen=True)
class SceneAnalyzerSpec:
    name: str
    provider_id: str
    model_id: str
    is_default: bool = False
    is_active: bool = True
    system_prompt: str = ""
    temperature: float = 0.1
    max_tokens: int = 200

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SceneAnalyzerSpec":
        name = str(data.get("name") or "scene-analyzer")
        what = f"SceneAnalyzer '{name}'"
        return cls(
            name=name,
            provider_id=str(_require(data, "provider_id", what)),
            model_id=str(_require(data, "model_id", what)),
            is_default=bool(data.get("is_default", False)),
            is_active=bool(data.get("is_active", True)),
            system_prompt=str(data.get("system_prompt") or ""),
            temperature=_as_float(data.get("temperature", 0.1), "temperature", what),
            max_tokens=_as_int(data.get("max_tokens", 200), "max_tokens", what),
        )


# -------------------------
# Conversation records
# -------------------------

@dataclass(frozen=True)
class Conversation:
    id: str
    title: str = ""
    mode: str = ""
    selected_agents: Tuple[str, ...] = ()
    budget_cents: float = 500
    spent_cents: float = 0.0
    created_at: Optional[datetime] = None

    @property
    def remaining_cents(self) -> float:
        return self.budget_cents - self.spent_cents


@dataclass(frozen=True)
class Message:
    id: str
    conv_id: str
    role: str  # "user" | "ai"
    content: str
    agent_id: Optional[str] = None
    step: Optional[int] = None
    tokens: int = 0
    cost_cents: float = 0.0
    provider_used: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ChatTurn:
    """One prompt message handed to a provider."""
    role: str  # "system" | "user" | "assistant"
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}
