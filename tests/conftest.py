# tests/conftest.py
import asyncio
import copy

import pytest

from chat_orchestrator.db.services import ConversationStore
from chat_orchestrator.engine import Orchestrator
from chat_orchestrator.gateway import ProviderGateway, RetryPolicy
from chat_orchestrator.llm_client import LLMClient, TextResponse
from chat_orchestrator.models import ProviderSpec
from chat_orchestrator.registry import ConfigRegistry

USER_TEXT = "我今天心情不太好，工作遇到了困难"


def _model(code, **extra):
    data = {
        "code": code,
        "model_class": "chat",
        "max_tokens": 4096,
        "pricing": {"input": 0.0, "output": 0.0},
    }
    data.update(extra)
    return data


BASE_CONFIG = {
    "mode": "single",
    "current_provider": "alpha",
    "default_flow": "emotional-support",
    "providers": [
        {"code": "alpha", "credential": "test-key", "models": [_model("alpha-chat")]},
        {"code": "beta", "credential": "test-key", "models": [_model("beta-chat")]},
        {"code": "gamma", "credential": "test-key", "models": [_model("gamma-chat")]},
    ],
    "agents": [
        {
            "role_tag": "comfort-agent",
            "name": "Comforter",
            "order": 1,
            "provider_id": "alpha",
            "model_id": "alpha-chat",
            "max_tokens": 400,
            "prompt_template": "You are {agent_name}. Comfort the user.",
        },
        {
            "role_tag": "advice-agent",
            "name": "Advisor",
            "order": 2,
            "provider_id": "alpha",
            "model_id": "alpha-chat",
            "max_tokens": 400,
            "prompt_template": "You are {agent_name}. Give advice on: {user_input}",
        },
        {
            "role_tag": "humor-agent",
            "name": "Joker",
            "order": 3,
            "provider_id": "beta",
            "model_id": "beta-chat",
            "max_tokens": 200,
            "prompt_template": "You are {agent_name}. Make a light joke.",
        },
    ],
    "flows": [
        {
            "name": "emotional-support",
            "description": "The user is upset",
            "steps": ["comfort-agent", "advice-agent"],
        },
        {
            "name": "casual-chat",
            "description": "Small talk",
            "steps": [
                {"index": 1, "role_tag": "humor-agent", "parallel_group": "banter"},
                {"index": 2, "role_tag": "comfort-agent", "parallel_group": "banter"},
                {"index": 3, "role_tag": "advice-agent"},
            ],
        },
    ],
    "scene_analyzers": [],
}


def make_config(**overrides):
    data = copy.deepcopy(BASE_CONFIG)
    data.update(overrides)
    return data


class FakeAdapter(LLMClient):
    """
    Scripted provider adapter.

    ``script`` items are consumed one per call: an exception is raised,
    ``None`` means "answer normally". Once the script is used up the
    adapter answers normally, or raises ``always_fail`` when set.
    """

    def __init__(
        self,
        code,
        script=(),
        *,
        always_fail=None,
        cost_cents=None,
        text=None,
        delay=0.0,
        on_call=None,
    ):
        super().__init__(ProviderSpec(code=code))
        self.script = list(script)
        self.always_fail = always_fail
        self.cost_cents = cost_cents
        self.text = text
        self.delay = delay
        self.on_call = on_call
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, messages, config):
        self.calls.append((list(messages), config))
        if self.on_call is not None:
            self.on_call(self)

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        if self.script:
            item = self.script.pop(0)
            if item is not None:
                raise item
        elif self.always_fail is not None:
            raise self.always_fail

        text = self.text(messages) if callable(self.text) else self.text
        return TextResponse(
            text=text or f"{self.provider.code} reply #{len(self.calls)}",
            raw={},
            input_tokens=20,
            output_tokens=10,
            total_tokens=30,
            cost_cents=self.cost_cents,
            model=config.model,
        )


def fast_policy(**overrides):
    params = dict(max_retries=1, initial_delay=0.0, jitter=False, call_timeout=5.0)
    params.update(overrides)
    return RetryPolicy(**params)


async def _no_sleep(_delay):
    return None


def build_stack(tmp_path, data=None, adapters=None, *, policy=None, **orchestrator_kwargs):
    registry = ConfigRegistry.from_dict(data or make_config())
    adapters = adapters or {
        code: FakeAdapter(code) for code in ("alpha", "beta", "gamma")
    }
    gateway = ProviderGateway(
        registry,
        retry_policy=policy or fast_policy(),
        adapters=adapters,
        sleep=_no_sleep,
    )
    store = ConversationStore(str(tmp_path / "chat.db"))
    orchestrator = Orchestrator(registry, gateway, store, **orchestrator_kwargs)
    return orchestrator, adapters


@pytest.fixture
def config_data():
    return make_config()
