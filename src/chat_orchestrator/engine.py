# engine.py
"""
Orchestrator: run one incoming chat message through a Flow of agents.

A Run moves CREATED -> CLASSIFYING -> EXECUTING and ends COMPLETED, FAILED
(partial) or CANCELLED. The user message is persisted before anything else;
every AI reply is persisted as soon as it is produced, so a halted Run still
reports exactly what was durably committed.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from chat_orchestrator import config
from chat_orchestrator.classifier import SceneClassifier
from chat_orchestrator.errors import (
    ConfigError,
    ConversationBusy,
    ConversationNotFound,
    OrchestrationFailed,
    PersistenceError,
    ProviderError,
    RunCancelled,
)
from chat_orchestrator.gateway import InvokeResult, ProviderGateway
from chat_orchestrator.models import (
    AgentSpec,
    ChatTurn,
    FlowSpec,
    Message,
    ModelSpec,
    ProviderMode,
    StepSpec,
)
from chat_orchestrator.registry import ConfigRegistry, RegistrySnapshot
from chat_orchestrator.utils import prompt_chars, render_transcript, safe_format

logger = logging.getLogger(__name__)

CostEstimator = Callable[[AgentSpec, Optional[ModelSpec], Sequence[ChatTurn]], float]

# outcome of a batch that ends the Run: (reason, error)
_Halt = Tuple["RunReason", Optional[BaseException]]


# =========================
# Run types
# =========================

class RunStatus(str, Enum):
    CREATED = "created"
    CLASSIFYING = "classifying"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunReason(str, Enum):
    BUDGET_EXCEEDED = "BudgetExceeded"
    PROVIDER_EXHAUSTED = "ProviderExhausted"
    PERSISTENCE_ERROR = "PersistenceError"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class RunCheckpoint:
    """
    Resume point of a Run that did not complete. Resuming skips
    classification and the user message and continues at ``next_batch``.
    """
    conversation_id: str
    input_text: str
    flow_name: str
    next_batch: int
    messages: Tuple[Message, ...] = ()
    spent_cents: float = 0.0
    user_message: Optional[Message] = None


@dataclass
class RunResult:
    """
    Structured result of one Run. ``messages`` holds the committed AI
    messages in step order, even when the Run did not complete.
    """
    conversation_id: str
    input_text: str
    status: RunStatus
    reason: Optional[RunReason] = None
    flow_name: Optional[str] = None
    # "analyzer" | "default" | "fallback" | "conversation" | "checkpoint"
    flow_source: Optional[str] = None
    user_message: Optional[Message] = None
    messages: List[Message] = field(default_factory=list)
    spent_cents: float = 0.0
    # scene analyzer usage; reported apart from the conversation spend
    classification_cents: float = 0.0
    classification_tokens: int = 0
    error: Optional[BaseException] = None
    warnings: List[str] = field(default_factory=list)
    # index into flow.batches() of the first batch not yet committed
    next_batch: int = 0

    @property
    def completed(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @property
    def total_tokens(self) -> int:
        return sum(m.tokens for m in self.messages)

    def checkpoint(self) -> Optional[RunCheckpoint]:
        if self.completed or self.flow_name is None or self.user_message is None:
            return None
        return RunCheckpoint(
            conversation_id=self.conversation_id,
            input_text=self.input_text,
            flow_name=self.flow_name,
            next_batch=self.next_batch,
            messages=tuple(self.messages),
            spent_cents=self.spent_cents,
            user_message=self.user_message,
        )


@dataclass(frozen=True)
class RunEvent:
    kind: str  # "message" | "finished"
    message: Optional[Message] = None
    result: Optional[RunResult] = None


@dataclass
class _RunState:
    conversation_id: str
    input_text: str
    snapshot: RegistrySnapshot
    mode: ProviderMode
    cancel_event: asyncio.Event
    status: RunStatus = RunStatus.CREATED
    reason: Optional[RunReason] = None
    error: Optional[BaseException] = None
    flow: Optional[FlowSpec] = None
    conversation_mode: str = ""
    flow_source: Optional[str] = None
    user_message: Optional[Message] = None
    messages: List[Message] = field(default_factory=list)
    budget_cents: float = 0.0
    # conversation spend recorded before this Run started
    spent_before: float = 0.0
    # spend carried over from a checkpoint (already inside spent_before)
    carried_cents: float = 0.0
    new_spent: float = 0.0
    next_batch: int = 0
    classification_cents: float = 0.0
    classification_tokens: int = 0
    warnings: List[str] = field(default_factory=list)

    def halt(self, reason: RunReason, error: Optional[BaseException] = None) -> None:
        self.reason = reason
        self.error = error
        self.status = (
            RunStatus.CANCELLED if reason is RunReason.CANCELLED else RunStatus.FAILED
        )

    def result(self) -> RunResult:
        return RunResult(
            conversation_id=self.conversation_id,
            input_text=self.input_text,
            status=self.status,
            reason=self.reason,
            flow_name=self.flow.name if self.flow else None,
            flow_source=self.flow_source,
            user_message=self.user_message,
            messages=list(self.messages),
            spent_cents=self.carried_cents + self.new_spent,
            classification_cents=self.classification_cents,
            classification_tokens=self.classification_tokens,
            error=self.error,
            warnings=list(self.warnings),
            next_batch=self.next_batch,
        )


class RunRegistry:
    """
    At most one active Run per conversation id. Holds each Run's cancel event.
    """

    def __init__(self):
        self._active: Dict[str, asyncio.Event] = {}
        self._lock = threading.Lock()

    def acquire(self, conversation_id: str) -> asyncio.Event:
        with self._lock:
            if conversation_id in self._active:
                raise ConversationBusy(conversation_id)
            event = asyncio.Event()
            self._active[conversation_id] = event
            return event

    def release(self, conversation_id: str, event: asyncio.Event) -> None:
        with self._lock:
            if self._active.get(conversation_id) is event:
                del self._active[conversation_id]

    def cancel(self, conversation_id: str) -> bool:
        with self._lock:
            event = self._active.get(conversation_id)
        if event is None:
            return False
        event.set()
        return True

    def is_active(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._active


def estimate_step_cost(
    agent: AgentSpec,
    model: Optional[ModelSpec],
    context: Sequence[ChatTurn],
) -> float:
    """
    Upper-bound cost in cents of one step before it runs: model pricing
    applied to the prompt's character count plus the full output allowance.
    """
    pricing = (model.pricing if model is not None else None) or config.DEFAULT_PRICING
    max_output = agent.max_tokens
    if model is not None:
        max_output = min(max_output, model.max_tokens)
    return (
        prompt_chars(context) / 1000.0 * pricing.get("input", 0.0)
        + max_output / 1000.0 * pricing.get("output", 0.0)
    )


# =========================
# Orchestrator
# =========================

class Orchestrator:
    """
    Multi-agent chat orchestration engine.

    - No UI or transport dependencies
    - Collaborators are passed in explicitly
    - Safe for CLI, tests, batch jobs
    """

    def __init__(
        self,
        registry: ConfigRegistry,
        gateway: ProviderGateway,
        store,
        *,
        classifier: Optional[SceneClassifier] = None,
        cost_estimator: Optional[CostEstimator] = None,
        on_progress: Optional[Callable[[int, Optional[str]], None]] = None,
        on_warning: Optional[Callable[[str], None]] = None,
        history_limit: Optional[int] = None,
        max_parallel_steps: Optional[int] = None,
        runs: Optional[RunRegistry] = None,
    ):
        self.registry = registry
        self.gateway = gateway
        self.store = store
        self.classifier = classifier or SceneClassifier(registry, gateway)
        self.cost_estimator = cost_estimator or estimate_step_cost
        self.on_progress = on_progress
        self.on_warning = on_warning
        self.history_limit = (
            config.HISTORY_LIMIT if history_limit is None else history_limit
        )
        self.max_parallel_steps = max(
            1,
            config.MAX_PARALLEL_STEPS if max_parallel_steps is None else max_parallel_steps,
        )
        self.runs = runs or RunRegistry()

    # -------------------------
    # Internal helpers
    # -------------------------

    def _warn(self, state: _RunState, message: str) -> None:
        state.warnings.append(message)
        if self.on_warning:
            self.on_warning(message)
        else:
            logger.warning(message)

    def _progress(self, pct: int, agent_name: Optional[str] = None) -> None:
        if self.on_progress:
            self.on_progress(pct, agent_name)

    @staticmethod
    def _speaker(snap: RegistrySnapshot, message: Message) -> str:
        if message.role == "user":
            return "User"
        agent = snap.get_agent(message.agent_id) if message.agent_id else None
        return agent.name if agent else (message.agent_id or "AI")

    # -------------------------
    # Public surface
    # -------------------------

    def cancel(self, conversation_id: str) -> bool:
        """
        Ask the active Run of a conversation to stop. Returns False when
        no Run is active.
        """
        cancelled = self.runs.cancel(conversation_id)
        if cancelled:
            logger.info("Cancellation requested for conversation %s", conversation_id)
        return cancelled

    async def delete_conversation(self, conversation_id: str) -> None:
        """
        Delete a conversation and its messages. An active Run is cancelled
        first, so it stops before its next provider call or commit.
        """
        if self.cancel(conversation_id):
            logger.info("Cancelled active run of conversation %s before delete", conversation_id)
        await self.store.delete_conversation(conversation_id)

    async def run(
        self,
        conversation_id: str,
        text: str,
        *,
        checkpoint: Optional[RunCheckpoint] = None,
    ) -> RunResult:
        result: Optional[RunResult] = None
        async with aclosing(
            self.run_stream(conversation_id, text, checkpoint=checkpoint)
        ) as events:
            async for event in events:
                if event.kind == "finished":
                    result = event.result
        return result

    async def run_chat_orchestration(self, conversation_id: str, text: str) -> List[Message]:
        """
        Caller entry point. Returns every committed AI message, even for a
        partial Run; raises OrchestrationFailed only when nothing was committed.
        """
        result = await self.run(conversation_id, text)
        if not result.messages and not result.completed:
            reason = result.reason.value if result.reason else result.status.value
            raise OrchestrationFailed(
                f"Run for conversation '{conversation_id}' produced no reply ({reason})",
                result=result,
            )
        return list(result.messages)

    async def run_stream(
        self,
        conversation_id: str,
        text: str,
        *,
        checkpoint: Optional[RunCheckpoint] = None,
    ) -> AsyncIterator[RunEvent]:
        """
        Yield a ``message`` event per committed AI message, then one
        ``finished`` event carrying the RunResult. The Run only advances
        while the consumer pulls.

        A consumer that stops early must close the stream (``aclose()`` or
        ``contextlib.aclosing``) so the conversation is released right away
        rather than when the generator is garbage collected.
        """
        if checkpoint is not None and checkpoint.conversation_id != conversation_id:
            raise ValueError("Checkpoint belongs to a different conversation")

        cancel_event = self.runs.acquire(conversation_id)
        try:
            snap = self.registry.snapshot()
            state = _RunState(
                conversation_id=conversation_id,
                input_text=checkpoint.input_text if checkpoint else text,
                snapshot=snap,
                mode=snap.mode,
                cancel_event=cancel_event,
            )
            async for event in self._execute(state, checkpoint):
                yield event

            result = state.result()
            logger.info(
                "Run for conversation %s finished: status=%s reason=%s messages=%d spent=%.4f",
                conversation_id,
                result.status.value,
                result.reason.value if result.reason else "-",
                len(result.messages),
                result.spent_cents,
            )
            yield RunEvent(kind="finished", result=result)
        finally:
            self.runs.release(conversation_id, cancel_event)

    # -------------------------
    # Run phases
    # -------------------------

    async def _execute(
        self, state: _RunState, checkpoint: Optional[RunCheckpoint]
    ) -> AsyncIterator[RunEvent]:
        cid = state.conversation_id

        try:
            conversation = await self.store.find_conversation(cid)
        except PersistenceError as e:
            state.halt(RunReason.PERSISTENCE_ERROR, e)
            return
        if conversation is None:
            raise ConversationNotFound(cid)

        state.budget_cents = conversation.budget_cents
        state.spent_before = conversation.spent_cents
        state.conversation_mode = conversation.mode

        try:
            if checkpoint is None:
                await self._start(state)
            else:
                self._resume(state, checkpoint)
            history = await self._load_history(state)
        except PersistenceError as e:
            state.halt(RunReason.PERSISTENCE_ERROR, e)
            return
        except RunCancelled as e:
            state.halt(RunReason.CANCELLED, e)
            return

        state.status = RunStatus.EXECUTING
        batches = state.flow.batches()
        total_steps = len(state.flow.steps)
        logger.info(
            "Executing flow '%s' (%d steps, %s mode) for conversation %s",
            state.flow.name,
            total_steps,
            state.mode.value,
            cid,
        )

        for batch_no in range(state.next_batch, len(batches)):
            batch = batches[batch_no]
            self._progress(
                int(100 * (batch[0].index - 1) / total_steps), batch[0].role_tag
            )

            before = len(state.messages)
            halt = await self._run_batch(state, batch, history)
            for message in state.messages[before:]:
                yield RunEvent(kind="message", message=message)

            if halt is not None:
                state.halt(*halt)
                return
            state.next_batch = batch_no + 1

        state.status = RunStatus.COMPLETED
        self._progress(100, None)

    async def _start(self, state: _RunState) -> None:
        cid = state.conversation_id
        state.user_message = await self.store.create_message(cid, "user", state.input_text)

        state.status = RunStatus.CLASSIFYING
        if state.cancel_event.is_set():
            raise RunCancelled(cid)

        recent = await self.store.list_messages(cid, self.history_limit + 1)
        prior = [m for m in recent if m.id != state.user_message.id]
        ref = await self.classifier.classify(
            state.input_text,
            mode=state.mode,
            snapshot=state.snapshot,
            history=prior,
            cancel_event=state.cancel_event,
        )

        state.classification_cents = ref.cost_cents
        state.classification_tokens = ref.tokens_used

        source = ref.source
        flow = state.snapshot.get_flow(ref.flow_name) if source == "analyzer" else None
        if flow is None and source == "analyzer":
            flow, source = self._fallback_flow(state, "fallback")
            self._warn(
                state,
                f"Classified flow '{ref.flow_name}' is not available; using '{flow.name}'",
            )
        elif flow is None:
            flow, source = self._fallback_flow(state, source)
        if ref.source == "fallback":
            self._warn(state, f"Scene classification fell back to '{flow.name}': {ref.reasoning}")

        state.flow = flow
        state.flow_source = source

    def _fallback_flow(self, state: _RunState, source: str) -> Tuple[FlowSpec, str]:
        """
        Flow used when classification gives no usable answer: the flow
        matching the conversation's mode, else the default flow.
        """
        snap = state.snapshot
        if state.conversation_mode:
            flow = snap.get_flow_for_mode(state.conversation_mode)
            if flow is not None:
                return flow, "conversation"
        flow = snap.get_flow(snap.default_flow)
        if flow is None:
            raise ConfigError(f"Default flow '{snap.default_flow}' is not available")
        return flow, source

    def _resume(self, state: _RunState, checkpoint: RunCheckpoint) -> None:
        flow = state.snapshot.get_flow(checkpoint.flow_name)
        if flow is None:
            raise ConfigError(
                f"Cannot resume: flow '{checkpoint.flow_name}' is no longer available"
            )
        if checkpoint.next_batch > len(flow.batches()):
            raise ConfigError(
                f"Cannot resume: flow '{flow.name}' has fewer steps than the checkpoint"
            )
        logger.info(
            "Resuming conversation %s at batch %d of flow '%s'",
            state.conversation_id,
            checkpoint.next_batch,
            flow.name,
        )
        state.flow = flow
        state.flow_source = "checkpoint"
        state.user_message = checkpoint.user_message
        state.messages = list(checkpoint.messages)
        state.carried_cents = checkpoint.spent_cents
        state.next_batch = checkpoint.next_batch

    async def _load_history(self, state: _RunState) -> List[Message]:
        """
        Conversation history preceding this Run's replies, including the
        user message, capped at ``history_limit`` turns.
        """
        run_ids = {m.id for m in state.messages}
        recent = await self.store.list_messages(
            state.conversation_id, self.history_limit + len(run_ids)
        )
        history = [m for m in recent if m.id not in run_ids]
        if self.history_limit <= 0:
            return []
        return history[-self.history_limit:]

    # -------------------------
    # Step execution
    # -------------------------

    def build_context(
        self,
        agent: AgentSpec,
        step: StepSpec,
        state: _RunState,
        history: Sequence[Message],
    ) -> List[ChatTurn]:
        """
        Prompt for one step: the agent's rendered system prompt, then the
        conversation so far (history + replies produced earlier in this Run).
        """
        system_prompt = safe_format(
            agent.prompt_template,
            {
                "user_input": state.input_text,
                "agent_name": agent.name,
                "role_tag": agent.role_tag,
                "step": step.index,
                "total_steps": len(state.flow.steps),
                "flow": state.flow.name,
            },
        )
        transcript = render_transcript(
            list(history) + state.messages,
            lambda m: self._speaker(state.snapshot, m),
        )
        return [
            ChatTurn(role="system", content=system_prompt),
            ChatTurn(
                role="user",
                content=f"[Conversation]\n{transcript}\n\nReply as {agent.name}.",
            ),
        ]

    def _estimate(self, state: _RunState, agent: AgentSpec, context: Sequence[ChatTurn]) -> float:
        # Worst case over every model the gateway might use for this agent
        candidates = self.gateway.resolve_candidates(agent, state.mode, state.snapshot)
        models = [c.model for c in candidates] or [
            state.snapshot.get_model(agent.provider_id, agent.model_id)
        ]
        return max(self.cost_estimator(agent, model, context) for model in models)

    async def _run_batch(
        self,
        state: _RunState,
        batch: Sequence[StepSpec],
        history: Sequence[Message],
    ) -> Optional[_Halt]:
        cid = state.conversation_id
        if state.cancel_event.is_set():
            return RunReason.CANCELLED, RunCancelled(cid)

        # a resumed group may already have some members committed
        done = {m.step for m in state.messages}
        batch = [s for s in batch if s.index not in done]
        if not batch:
            return None

        planned: List[Tuple[StepSpec, AgentSpec, List[ChatTurn]]] = []
        for step in batch:
            agent = state.snapshot.get_agent(step.role_tag)
            if agent is None:
                raise ConfigError(
                    f"Flow '{state.flow.name}' step {step.index} has no agent '{step.role_tag}'"
                )
            # Group members all see the pre-group context
            planned.append((step, agent, self.build_context(agent, step, state, history)))

        estimate = sum(self._estimate(state, agent, ctx) for _, agent, ctx in planned)
        if state.spent_before + state.new_spent + estimate > state.budget_cents:
            self._warn(
                state,
                f"Budget exceeded before step {batch[0].index}: spent "
                f"{state.spent_before + state.new_spent:.4f} + estimated {estimate:.4f} "
                f"> budget {state.budget_cents:.4f} cents",
            )
            return RunReason.BUDGET_EXCEEDED, None

        slots = asyncio.Semaphore(self.max_parallel_steps)
        outcomes = await asyncio.gather(
            *(self._invoke_step(state, agent, ctx, slots) for _, agent, ctx in planned),
            return_exceptions=True,
        )

        halt: Optional[_Halt] = None
        successes: List[Tuple[StepSpec, AgentSpec, InvokeResult]] = []
        for (step, agent, _), outcome in zip(planned, outcomes):
            if isinstance(outcome, RunCancelled):
                return RunReason.CANCELLED, outcome
            if isinstance(outcome, ProviderError):
                logger.error(
                    "Step %d (%s) failed: %s", step.index, agent.role_tag, outcome
                )
                if halt is None:
                    halt = (RunReason.PROVIDER_EXHAUSTED, outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            successes.append((step, agent, outcome))

        for step, agent, result in successes:
            # replies that arrive after a cancel are dropped
            if state.cancel_event.is_set():
                logger.info(
                    "Discarding reply of step %d (%s): run cancelled", step.index, agent.role_tag
                )
                return RunReason.CANCELLED, RunCancelled(cid)
            committed = await self._commit(state, step, agent, result)
            if committed is not None:
                return committed

        return halt

    async def _invoke_step(
        self,
        state: _RunState,
        agent: AgentSpec,
        context: Sequence[ChatTurn],
        slots: asyncio.Semaphore,
    ) -> InvokeResult:
        async with slots:
            if state.cancel_event.is_set():
                raise RunCancelled(state.conversation_id)
            return await self.gateway.invoke(
                agent,
                context,
                state.mode,
                snapshot=state.snapshot,
                cancel_event=state.cancel_event,
            )

    async def _commit(
        self,
        state: _RunState,
        step: StepSpec,
        agent: AgentSpec,
        result: InvokeResult,
    ) -> Optional[_Halt]:
        cid = state.conversation_id
        if state.spent_before + state.new_spent + result.cost_cents > state.budget_cents:
            self._warn(
                state,
                f"Step {step.index} ({agent.role_tag}) cost {result.cost_cents:.4f} cents "
                f"would exceed the budget; reply discarded",
            )
            return RunReason.BUDGET_EXCEEDED, None

        if result.failed_over_from:
            self._warn(
                state,
                f"Step {step.index} ({agent.role_tag}) served by '{result.provider_used}' "
                f"after failures on: {', '.join(result.failed_over_from)}",
            )

        try:
            # message row and spend increment share one transaction
            message = await self.store.record_reply(
                cid,
                result.text,
                agent_id=agent.role_tag,
                step=step.index,
                tokens=result.tokens_used,
                cost_cents=result.cost_cents,
                provider_used=result.provider_used,
            )
        except PersistenceError as e:
            if state.cancel_event.is_set():
                # conversation deleted under a cancelled run
                logger.info("Run for %s cancelled; reply of step %d not saved", cid, step.index)
                return RunReason.CANCELLED, RunCancelled(cid)
            logger.error("Aborting run for %s: %s", cid, e)
            return RunReason.PERSISTENCE_ERROR, e

        state.messages.append(message)
        state.new_spent += result.cost_cents

        logger.info(
            "[%s] step %d committed via %s (%d tokens, %.4f cents)",
            agent.role_tag,
            step.index,
            result.provider_used,
            result.tokens_used,
            result.cost_cents,
        )
        return None


__all__ = [
    "RunStatus",
    "RunReason",
    "RunCheckpoint",
    "RunResult",
    "RunEvent",
    "RunRegistry",
    "Orchestrator",
    "estimate_step_cost",
]
