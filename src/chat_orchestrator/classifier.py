# classifier.py
"""
SceneClassifier: map an incoming message to one of the configured flows.

Classification is best-effort. Without an active default analyzer, or on any
provider / parse / timeout failure, the configured default flow is used so a
broken classifier never blocks chat.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from chat_orchestrator import config
from chat_orchestrator.errors import ClassificationFailure, ProviderError
from chat_orchestrator.gateway import ProviderGateway
from chat_orchestrator.llm_client import extract_json_object
from chat_orchestrator.models import (
    AgentSpec,
    ChatTurn,
    FlowSpec,
    Message,
    ProviderMode,
    SceneAnalyzerSpec,
)
from chat_orchestrator.registry import ConfigRegistry, RegistrySnapshot

logger = logging.getLogger(__name__)

ANALYZER_ROLE_TAG = "scene-analyzer"

DEFAULT_ANALYZER_PROMPT = (
    "You are a conversation scene analyzer. Read the user's latest message "
    "and pick the single best matching flow from the list you are given. "
    'Reply with JSON only: {"flow": "<flow name>", "confidence": <0..1>, '
    '"reasoning": "<one sentence>"}'
)


@dataclass(frozen=True)
class FlowReference:
    flow_name: str
    # "analyzer" | "default" (no analyzer configured) | "fallback" (analyzer failed)
    source: str
    confidence: float = 1.0
    reasoning: str = ""
    analyzer: Optional[str] = None
    # usage of the analyzer call, zero when no call was made
    cost_cents: float = 0.0
    tokens_used: int = 0
    provider_used: Optional[str] = None


def _normalize(name: str) -> str:
    return re.sub(r"[\s_\-]+", "-", name.strip().lower())


class SceneClassifier:
    def __init__(
        self,
        registry: ConfigRegistry,
        gateway: ProviderGateway,
        *,
        timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.gateway = gateway
        self.timeout = config.CLASSIFIER_TIMEOUT if timeout is None else timeout

    async def classify(
        self,
        text: str,
        *,
        mode: Optional[ProviderMode] = None,
        snapshot: Optional[RegistrySnapshot] = None,
        history: Sequence[Message] = (),
        cancel_event: Optional[asyncio.Event] = None,
    ) -> FlowReference:
        snap = snapshot or self.registry.snapshot()
        analyzer = snap.default_scene_analyzer()

        if analyzer is None:
            logger.debug("No active default scene analyzer; using default flow")
            return FlowReference(
                flow_name=snap.default_flow,
                source="default",
                reasoning="no active scene analyzer",
            )

        try:
            return await asyncio.wait_for(
                self._classify_with(analyzer, text, snap, mode, history, cancel_event),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            reason = f"classification timed out after {self.timeout:.1f}s"
        except (ProviderError, ClassificationFailure) as e:
            reason = f"classification failed: {e}"

        logger.warning("[scene] %s; falling back to '%s'", reason, snap.default_flow)
        return FlowReference(
            flow_name=snap.default_flow,
            source="fallback",
            confidence=0.0,
            reasoning=reason,
            analyzer=analyzer.name,
        )

    async def _classify_with(
        self,
        analyzer: SceneAnalyzerSpec,
        text: str,
        snap: RegistrySnapshot,
        mode: Optional[ProviderMode],
        history: Sequence[Message],
        cancel_event: Optional[asyncio.Event],
    ) -> FlowReference:
        agent = AgentSpec(
            role_tag=ANALYZER_ROLE_TAG,
            name=analyzer.name,
            prompt_template=analyzer.system_prompt or DEFAULT_ANALYZER_PROMPT,
            provider_id=analyzer.provider_id,
            model_id=analyzer.model_id,
            temperature=analyzer.temperature,
            max_tokens=analyzer.max_tokens,
        )
        flows = snap.enabled_flows()
        messages = self.build_prompt(agent.prompt_template, text, flows, snap, history)

        result = await self.gateway.invoke(
            agent,
            messages,
            mode or snap.mode,
            snapshot=snap,
            cancel_event=cancel_event,
        )
        usage = dict(
            cost_cents=result.cost_cents,
            tokens_used=result.tokens_used,
            provider_used=result.provider_used,
        )
        try:
            flow_name, parsed = self.parse_response(result.text, flows)
        except ClassificationFailure as e:
            reason = f"classification failed: {e}"
            logger.warning("[scene] %s; falling back to '%s'", reason, snap.default_flow)
            return FlowReference(
                flow_name=snap.default_flow,
                source="fallback",
                confidence=0.0,
                reasoning=reason,
                analyzer=analyzer.name,
                **usage,
            )

        logger.info(
            "[scene] classified as '%s' by %s via %s (%d tokens, %.4f cents)",
            flow_name,
            analyzer.name,
            result.provider_used,
            result.tokens_used,
            result.cost_cents,
        )
        confidence = parsed.get("confidence", 0.8) if parsed else 0.5
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            confidence = 0.5
        return FlowReference(
            flow_name=flow_name,
            source="analyzer",
            confidence=confidence,
            reasoning=str((parsed or {}).get("reasoning") or ""),
            analyzer=analyzer.name,
            **usage,
        )

    # -------------------------
    # Prompt / parsing
    # -------------------------

    @staticmethod
    def build_prompt(
        system_prompt: str,
        text: str,
        flows: List[FlowSpec],
        snap: RegistrySnapshot,
        history: Sequence[Message] = (),
    ) -> List[ChatTurn]:
        flow_lines = []
        for flow in flows:
            agents = ", ".join(flow.role_tags)
            desc = flow.description or flow.mode
            flow_lines.append(f"- {flow.name}: {desc} (agents: {agents})")

        recent = list(history)[-config.CLASSIFIER_HISTORY_TURNS:]
        history_lines = []
        for msg in recent:
            if msg.role == "user":
                speaker = "User"
            else:
                agent = snap.get_agent(msg.agent_id) if msg.agent_id else None
                speaker = agent.name if agent else (msg.agent_id or "AI")
            history_lines.append(f"{speaker}: {msg.content}")

        content = "\n".join([
            "[Current message]",
            text,
            "",
            "[Recent history]",
            "\n".join(history_lines) or "(none)",
            "",
            "[Available flows]",
            "\n".join(flow_lines),
            "",
            f"Default flow: {snap.default_flow}",
            "Answer with JSON only.",
        ])
        return [
            ChatTurn(role="system", content=system_prompt),
            ChatTurn(role="user", content=content),
        ]

    @staticmethod
    def parse_response(
        response: str, flows: List[FlowSpec]
    ) -> tuple[str, Optional[Dict[str, Any]]]:
        """
        Resolve the model's answer to a known flow name.

        Raises ClassificationFailure when no known flow can be identified.
        """
        by_key = {}
        for flow in flows:
            by_key[_normalize(flow.name)] = flow.name
            by_key.setdefault(_normalize(flow.mode), flow.name)

        parsed = extract_json_object(response)
        if parsed is not None:
            for key in ("flow", "sceneType", "scene", "scene_type"):
                value = parsed.get(key)
                if isinstance(value, str) and _normalize(value) in by_key:
                    return by_key[_normalize(value)], parsed
            raise ClassificationFailure(
                f"Analyzer JSON names no known flow: {parsed!r}"
            )

        # Bare answer: accept it only if exactly one known flow is mentioned
        normalized = _normalize(response or "")
        hits = {name for key, name in by_key.items() if key and key in normalized}
        if len(hits) == 1:
            return hits.pop(), None
        raise ClassificationFailure(
            f"Unparsable analyzer response: {(response or '')[:200]!r}"
        )
