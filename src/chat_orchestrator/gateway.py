# gateway.py
"""
ProviderGateway: resolve which provider/model serves an agent call and drive
the call through retry, backoff and (in multi-provider mode) failover.

Candidate resolution:
- single-provider mode: the registry's current provider, paired with the
  agent's model if offered, else the closest compatible model.
- multi-provider mode: the agent's preferred provider first, then every
  other active provider offering a model of the same model class, in
  configuration order.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from chat_orchestrator import config
from chat_orchestrator.errors import (
    AllCandidatesExhausted,
    ProviderError,
    ProviderTransient,
    RunCancelled,
)
from chat_orchestrator.llm_client import (
    CallConfig,
    LLMClient,
    TextResponse,
    build_provider_adapter,
    classify_exception,
)
from chat_orchestrator.models import (
    AgentSpec,
    ChatTurn,
    ModelSpec,
    ProviderMode,
    ProviderSpec,
)
from chat_orchestrator.registry import ConfigRegistry, RegistrySnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-candidate retry policy for transient failures.

    ``max_retries`` counts retries after the first attempt, so a candidate
    sees at most ``max_retries + 1`` calls before the gateway fails over.
    """
    max_retries: int = 2
    initial_delay: float = 0.5
    backoff_factor: float = 2.0
    max_delay: float = 8.0
    jitter: bool = True
    call_timeout: float = 30.0

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_retries=config.PROVIDER_MAX_RETRIES,
            initial_delay=config.PROVIDER_BACKOFF_INITIAL,
            backoff_factor=config.PROVIDER_BACKOFF_FACTOR,
            max_delay=config.PROVIDER_BACKOFF_MAX,
            call_timeout=config.PROVIDER_CALL_TIMEOUT,
        )

    def delay_for(self, retry_number: int) -> float:
        delay = min(
            self.initial_delay * (self.backoff_factor ** (retry_number - 1)),
            self.max_delay,
        )
        if self.jitter and delay > 0:
            delay = delay * (0.5 + random.random())
        return delay


@dataclass(frozen=True)
class Candidate:
    provider: ProviderSpec
    model: ModelSpec


@dataclass
class InvokeResult:
    text: str
    tokens_used: int
    cost_cents: float
    provider_used: str
    model_used: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    latency: Optional[float] = None
    attempts: int = 1
    # providers that failed before this one answered
    failed_over_from: List[str] = field(default_factory=list)


class ProviderGateway:
    def __init__(
        self,
        registry: ConfigRegistry,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        adapters: Optional[Dict[str, LLMClient]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        # provider code -> adapter; pre-seeded adapters win over the factory
        self._adapters: Dict[str, LLMClient] = dict(adapters or {})
        self._sleep = sleep

    # -------------------------
    # Candidate resolution
    # -------------------------

    def resolve_candidates(
        self,
        agent: AgentSpec,
        mode: ProviderMode,
        snapshot: Optional[RegistrySnapshot] = None,
    ) -> List[Candidate]:
        snap = snapshot or self.registry.snapshot()

        preferred_model = snap.get_model(agent.provider_id, agent.model_id)
        model_class = (
            preferred_model.effective_class if preferred_model else agent.model_id
        )

        if mode is ProviderMode.SINGLE:
            provider = snap.get_provider(snap.current_provider)
            if provider is None:
                return []
            model = self._closest_model(provider, agent.model_id, model_class)
            return [Candidate(provider, model)] if model else []

        candidates: List[Candidate] = []
        preferred = snap.get_provider(agent.provider_id)
        if preferred is not None and preferred.active and preferred_model is not None:
            candidates.append(Candidate(preferred, preferred_model))

        for provider in snap.active_providers():
            if provider.code == agent.provider_id:
                continue
            same_class = provider.models_of_class(model_class)
            if same_class:
                candidates.append(Candidate(provider, same_class[0]))

        return candidates

    @staticmethod
    def _closest_model(
        provider: ProviderSpec, model_code: str, model_class: str
    ) -> Optional[ModelSpec]:
        exact = provider.get_model(model_code)
        if exact is not None:
            return exact
        same_class = provider.models_of_class(model_class)
        if same_class:
            return same_class[0]
        return provider.first_model()

    # -------------------------
    # Invocation
    # -------------------------

    async def invoke(
        self,
        agent: AgentSpec,
        context: Sequence[ChatTurn],
        mode: Optional[ProviderMode] = None,
        *,
        snapshot: Optional[RegistrySnapshot] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> InvokeResult:
        """
        Run one agent call. Returns the first successful candidate's result
        or raises AllCandidatesExhausted (RunCancelled if cancelled).
        """
        snap = snapshot or self.registry.snapshot()
        mode = mode or snap.mode
        candidates = self.resolve_candidates(agent, mode, snap)

        if not candidates:
            raise AllCandidatesExhausted(
                f"No provider can serve agent '{agent.role_tag}' in {mode.value} mode"
            )

        failures: List[Tuple[str, ProviderError]] = []
        total_attempts = 0

        for position, candidate in enumerate(candidates):
            if position > 0:
                logger.info(
                    "[%s] failing over to provider '%s' (model %s)",
                    agent.role_tag,
                    candidate.provider.code,
                    candidate.model.code,
                )
            try:
                response, attempts = await self._call_candidate(
                    candidate, agent, context, cancel_event
                )
            except ProviderError as e:
                total_attempts += getattr(e, "attempts", 1)
                failures.append((candidate.provider.code, e))
                logger.warning(
                    "[%s] provider '%s' gave up (%s): %s",
                    agent.role_tag,
                    candidate.provider.code,
                    e.kind,
                    e,
                )
                continue

            total_attempts += attempts
            tokens = response.total_tokens
            if tokens is None:
                tokens = (response.input_tokens or 0) + (response.output_tokens or 0)

            return InvokeResult(
                text=response.text,
                tokens_used=int(tokens),
                cost_cents=self.compute_cost(candidate.model, response),
                provider_used=candidate.provider.code,
                model_used=response.model or candidate.model.code,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                latency=response.latency,
                attempts=total_attempts,
                failed_over_from=[code for code, _ in failures],
            )

        raise AllCandidatesExhausted(
            f"All {len(candidates)} provider candidate(s) failed for agent "
            f"'{agent.role_tag}': "
            + "; ".join(f"{code}: {err.kind}" for code, err in failures),
            failures=failures,
        )

    async def _call_candidate(
        self,
        candidate: Candidate,
        agent: AgentSpec,
        context: Sequence[ChatTurn],
        cancel_event: Optional[asyncio.Event],
    ) -> Tuple[TextResponse, int]:
        policy = self.retry_policy
        call_config = CallConfig(
            model=candidate.model.code,
            temperature=agent.temperature,
            max_tokens=min(agent.max_tokens, candidate.model.max_tokens),
            timeout=policy.call_timeout,
        )
        messages = list(context)
        max_attempts = policy.max_retries + 1

        for attempt in range(1, max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled()

            try:
                adapter = self._adapter_for(candidate.provider)
                response = await asyncio.wait_for(
                    adapter.generate(messages, call_config),
                    timeout=policy.call_timeout,
                )
                return response, attempt
            except asyncio.TimeoutError:
                error: ProviderError = ProviderTransient(
                    f"Call timed out after {policy.call_timeout:.1f}s",
                    provider=candidate.provider.code,
                    model=candidate.model.code,
                )
            except ProviderError as e:
                error = e
            except Exception as e:
                error = classify_exception(
                    e, provider=candidate.provider.code, model=candidate.model.code
                )

            error.attempts = attempt
            if not error.retryable:
                # auth / content policy / bad request: no point retrying here
                raise error

            logger.warning(
                "[%s] %s call failed (attempt %d/%d): %s",
                agent.role_tag,
                candidate.provider.code,
                attempt,
                max_attempts,
                error,
            )
            if attempt < max_attempts:
                await self._sleep(policy.delay_for(attempt))

        raise error

    def _adapter_for(self, provider: ProviderSpec) -> LLMClient:
        adapter = self._adapters.get(provider.code)
        if adapter is None:
            adapter = build_provider_adapter(provider)
            self._adapters[provider.code] = adapter
        return adapter

    # -------------------------
    # Cost
    # -------------------------

    @staticmethod
    def compute_cost(model: ModelSpec, response: TextResponse) -> float:
        """
        Cost in cents for one call. A vendor-reported cost is authoritative;
        otherwise the model's per-1K pricing is applied to reported usage.
        """
        if response.cost_cents is not None:
            return float(response.cost_cents)

        if response.input_tokens is None and response.output_tokens is None:
            return 0.0

        pricing = model.pricing or config.DEFAULT_PRICING
        inp = response.input_tokens or 0
        out = response.output_tokens or 0
        return (
            inp / 1000.0 * pricing.get("input", 0.0)
            + out / 1000.0 * pricing.get("output", 0.0)
        )
