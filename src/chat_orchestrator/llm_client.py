# llm_client.py
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from chat_orchestrator.config import resolve_credential
from chat_orchestrator.errors import (
    ProviderAuthError,
    ProviderContentPolicy,
    ProviderError,
    ProviderRequestError,
    ProviderTransient,
)
from chat_orchestrator.models import ChatTurn, ProviderSpec

logger = logging.getLogger(__name__)

__all__ = [
    "TextResponse",
    "CallConfig",
    "LLMClient",
    "OpenAICompatibleClient",
    "register_provider_adapter",
    "build_provider_adapter",
    "safe_json",
    "extract_json_object",
]

# =========================
# Public data structures
# =========================

@dataclass
class TextResponse:
    """
    Normalized text response returned by a provider adapter.
    """
    text: str
    raw: Dict[str, Any]
    # Optional usage metadata
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    latency: Optional[float] = None  # seconds
    # Set when the vendor bills per call and reports it
    cost_cents: Optional[float] = None
    model: Optional[str] = None


@dataclass(frozen=True)
class CallConfig:
    model: str
    temperature: float = 0.7
    max_tokens: int = 1000
    timeout: float = 30.0


# =========================
# Adapter interface
# =========================

class LLMClient:
    """
    Provider capability: ``generate(messages, config) -> TextResponse``.

    Responsibilities:
    - Request execution (single attempt)
    - Mapping vendor failures onto the ProviderError taxonomy
    - Response normalization

    Non-responsibilities:
    - No retry / failover (ProviderGateway owns that)
    - No agent or flow knowledge
    """

    def __init__(self, provider: ProviderSpec):
        self.provider = provider

    async def generate(self, messages: List[ChatTurn], config: CallConfig) -> TextResponse:
        raise NotImplementedError


# =========================
# OpenAI-compatible adapter
# =========================

class OpenAICompatibleClient(LLMClient):
    """
    Chat-completions adapter for any OpenAI-compatible endpoint
    (OpenAI, DeepSeek, ModelScope, BigModel, Doubao, xAI...).
    """

    def __init__(self, provider: ProviderSpec, client: Any = None):
        super().__init__(provider)
        self._client = client

    def _get_client(self, timeout: float) -> Any:
        if self._client is not None:
            return self._client

        api_key = resolve_credential(self.provider.credential)
        if not api_key:
            raise ProviderAuthError(
                f"No credential configured for provider '{self.provider.code}'",
                provider=self.provider.code,
            )

        from openai import AsyncOpenAI

        kwargs: Dict[str, Any] = {
            "api_key": api_key,
            "timeout": timeout,
            # Retries are the gateway's job
            "max_retries": 0,
        }
        if self.provider.base_url:
            kwargs["base_url"] = self.provider.base_url
        self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def generate(self, messages: List[ChatTurn], config: CallConfig) -> TextResponse:
        client = self._get_client(config.timeout)

        logger.debug(
            "LLM request: provider=%s, model=%s, messages=%d, prompt_len=%d",
            self.provider.code,
            config.model,
            len(messages),
            sum(len(m.content) for m in messages),
        )

        start_ts = time.perf_counter()
        try:
            response = await client.chat.completions.create(
                model=config.model,
                messages=[m.as_dict() for m in messages],
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            )
        except ProviderError:
            raise
        except Exception as e:
            raise classify_exception(e, provider=self.provider.code, model=config.model) from e
        latency = time.perf_counter() - start_ts

        raw_dict = _to_dict(response)

        choices = raw_dict.get("choices") or []
        first = choices[0] if choices else {}
        if first.get("finish_reason") == "content_filter":
            raise ProviderContentPolicy(
                "Response blocked by provider content filter",
                provider=self.provider.code,
                model=config.model,
            )

        text = ((first.get("message") or {}).get("content")) or ""
        usage = raw_dict.get("usage") or {}

        return TextResponse(
            text=text,
            raw=raw_dict,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
            latency=latency,
            model=raw_dict.get("model") or config.model,
        )


def _to_dict(response: Any) -> Dict[str, Any]:
    """
    Convert an SDK response into a plain dict (best-effort).
    """
    if isinstance(response, dict):
        return response
    try:
        if hasattr(response, "model_dump"):
            return response.model_dump()
        if hasattr(response, "to_dict") and callable(getattr(response, "to_dict")):
            return response.to_dict()
    except Exception:
        logger.exception("Failed to convert LLM response to dict")

    # Last-resort fallback
    return {"repr": repr(response)}


# =========================
# Error classification
# =========================

_CONTENT_POLICY_MARKERS = (
    "content_filter",
    "content policy",
    "content_policy",
    "content management policy",
    "sensitive",
)


def classify_exception(
    exc: Exception,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> ProviderError:
    """
    Map an SDK / transport exception onto the ProviderError taxonomy.

    Uses the HTTP status when the exception carries one and falls back to
    message heuristics otherwise, so adapters need not import vendor types.
    """
    msg = str(exc)
    lowered = msg.lower()
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)

    def make(cls):
        return cls(msg or exc.__class__.__name__, provider=provider, model=model, status_code=status)

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return make(ProviderTransient)

    name = exc.__class__.__name__
    if name in ("APITimeoutError", "APIConnectionError"):
        return make(ProviderTransient)

    if status is not None:
        if status in (401, 403):
            return make(ProviderAuthError)
        if status == 429 or status >= 500 or status == 408:
            return make(ProviderTransient)
        if any(marker in lowered for marker in _CONTENT_POLICY_MARKERS):
            return make(ProviderContentPolicy)
        return make(ProviderRequestError)

    if _looks_like_rate_limit(exc):
        return make(ProviderTransient)
    if any(marker in lowered for marker in _CONTENT_POLICY_MARKERS):
        return make(ProviderContentPolicy)
    if "api key" in lowered or "unauthorized" in lowered:
        return make(ProviderAuthError)

    # Unknown failure without a status: treat like a network hiccup
    return make(ProviderTransient)


def _looks_like_rate_limit(exc: Exception) -> bool:
    """
    Heuristic check to detect rate-limit-like failures
    without importing provider-specific exception types.
    """
    msg = str(exc).lower()
    return any(
        token in msg
        for token in ("rate limit", "too many requests", "429")
    )


# =========================
# Adapter registry
# =========================

AdapterFactory = Callable[[ProviderSpec], LLMClient]

_ADAPTER_FACTORIES: Dict[str, AdapterFactory] = {
    "openai": OpenAICompatibleClient,
}


def register_provider_adapter(kind: str, factory: AdapterFactory) -> None:
    """
    Register an adapter factory for a provider ``kind``.
    New vendors plug in here instead of touching the gateway.
    """
    if not kind:
        raise ValueError("Adapter kind must be non-empty")
    _ADAPTER_FACTORIES[kind] = factory


def build_provider_adapter(provider: ProviderSpec) -> LLMClient:
    factory = _ADAPTER_FACTORIES.get(provider.kind)
    if factory is None:
        raise ProviderRequestError(
            f"No adapter registered for provider kind '{provider.kind}'",
            provider=provider.code,
        )
    return factory(provider)


# =========================
# Utilities
# =========================

def safe_json(text: str) -> Optional[Any]:
    """
    Parse JSON safely; return None on failure.
    """
    try:
        return json.loads(text)
    except Exception:
        return None


_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Return the JSON object embedded in ``text`` (models like to wrap it in
    prose or code fences), or None.
    """
    if not text:
        return None
    parsed = safe_json(text.strip())
    if isinstance(parsed, dict):
        return parsed
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        return None
    parsed = safe_json(match.group(0))
    return parsed if isinstance(parsed, dict) else None
