# errors.py
"""
Typed exceptions for the orchestrator.

Provider errors carry a ``kind`` so the gateway can decide between
retry, failover and giving up without inspecting vendor SDK types.
"""
from typing import List, Optional, Tuple

__all__ = [
    "OrchestratorError",
    "ConfigError",
    "ClassificationFailure",
    "ProviderError",
    "ProviderTransient",
    "ProviderAuthError",
    "ProviderContentPolicy",
    "ProviderRequestError",
    "AllCandidatesExhausted",
    "PersistenceError",
    "ConversationNotFound",
    "ConversationBusy",
    "OrchestrationFailed",
    "RunCancelled",
]


class OrchestratorError(RuntimeError):
    """Base class for every error raised by this package."""
    pass


class ConfigError(OrchestratorError):
    """Malformed or missing agent / flow / provider configuration."""
    pass


class ClassificationFailure(OrchestratorError):
    """Scene classification could not produce a known flow."""
    pass


class ProviderError(OrchestratorError):
    kind = "provider_error"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class ProviderTransient(ProviderError):
    """Timeout, rate limit, connection failure or 5xx."""
    kind = "transient"
    retryable = True


class ProviderAuthError(ProviderError):
    kind = "auth"


class ProviderContentPolicy(ProviderError):
    kind = "content_policy"


class ProviderRequestError(ProviderError):
    """Any other non-retryable rejection (bad request, unknown model...)."""
    kind = "request"


class AllCandidatesExhausted(ProviderError):
    kind = "all_candidates_exhausted"

    def __init__(
        self,
        message: str,
        *,
        failures: Optional[List[Tuple[str, ProviderError]]] = None,
    ):
        super().__init__(message)
        # (provider_code, last error) per attempted candidate, in order
        self.failures = list(failures or [])


class PersistenceError(OrchestratorError):
    pass


class ConversationNotFound(OrchestratorError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation '{conversation_id}' not found")
        self.conversation_id = conversation_id


class ConversationBusy(OrchestratorError):
    """A run is already active for this conversation."""

    def __init__(self, conversation_id: str):
        super().__init__(
            f"Conversation '{conversation_id}' already has an active run"
        )
        self.conversation_id = conversation_id


class OrchestrationFailed(OrchestratorError):
    """Raised to callers when a run committed no AI message at all."""

    def __init__(self, message: str, *, result=None):
        super().__init__(message)
        self.result = result


class RunCancelled(OrchestratorError):
    """The owning conversation asked the run to stop."""

    def __init__(self, conversation_id: Optional[str] = None):
        super().__init__(f"Run for conversation '{conversation_id}' was cancelled")
        self.conversation_id = conversation_id
