# tests/test_llm_client.py
from types import SimpleNamespace

import pytest

from chat_orchestrator.errors import (
    ProviderAuthError,
    ProviderContentPolicy,
    ProviderRequestError,
    ProviderTransient,
)
from chat_orchestrator.llm_client import (
    CallConfig,
    LLMClient,
    OpenAICompatibleClient,
    build_provider_adapter,
    classify_exception,
    extract_json_object,
    register_provider_adapter,
)
from chat_orchestrator.models import ChatTurn, ProviderSpec


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize(
    "exc, expected",
    [
        (StatusError("unauthorized", 401), ProviderAuthError),
        (StatusError("forbidden", 403), ProviderAuthError),
        (StatusError("slow down", 429), ProviderTransient),
        (StatusError("bad gateway", 502), ProviderTransient),
        (StatusError("blocked by content_filter", 400), ProviderContentPolicy),
        (StatusError("model not found", 404), ProviderRequestError),
        (TimeoutError("read timed out"), ProviderTransient),
        (ConnectionError("reset by peer"), ProviderTransient),
        (Exception("Rate limit reached for requests"), ProviderTransient),
        (Exception("Invalid API key provided"), ProviderAuthError),
    ],
)
def test_classify_exception(exc, expected):
    err = classify_exception(exc, provider="p", model="m")

    assert type(err) is expected
    assert err.provider == "p"
    assert err.model == "m"


def test_classify_exception_keeps_status_code():
    err = classify_exception(StatusError("boom", 503))
    assert err.status_code == 503
    assert err.retryable


def test_extract_json_object():
    assert extract_json_object('{"flow": "a"}') == {"flow": "a"}
    assert extract_json_object('Here you go:\n```json\n{"flow": "b"}\n```') == {"flow": "b"}
    assert extract_json_object("no json here") is None
    assert extract_json_object("[1, 2]") is None
    assert extract_json_object("") is None


def _fake_sdk(payload):
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        return payload

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return client, calls


@pytest.mark.asyncio
async def test_openai_compatible_client_normalizes_response():
    client, calls = _fake_sdk(
        {
            "model": "deepseek-chat",
            "choices": [{"message": {"content": "hello"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
        }
    )
    adapter = OpenAICompatibleClient(ProviderSpec(code="deepseek"), client=client)

    response = await adapter.generate(
        [ChatTurn(role="system", content="s"), ChatTurn(role="user", content="u")],
        CallConfig(model="deepseek-chat", temperature=0.2, max_tokens=50),
    )

    assert response.text == "hello"
    assert (response.input_tokens, response.output_tokens, response.total_tokens) == (12, 3, 15)
    assert response.cost_cents is None
    assert calls[0]["messages"] == [
        {"role": "system", "content": "s"},
        {"role": "user", "content": "u"},
    ]
    assert calls[0]["max_tokens"] == 50


@pytest.mark.asyncio
async def test_openai_compatible_client_content_filter():
    client, _ = _fake_sdk(
        {"choices": [{"message": {"content": ""}, "finish_reason": "content_filter"}]}
    )
    adapter = OpenAICompatibleClient(ProviderSpec(code="p"), client=client)

    with pytest.raises(ProviderContentPolicy):
        await adapter.generate([ChatTurn(role="user", content="x")], CallConfig(model="m"))


@pytest.mark.asyncio
async def test_openai_compatible_client_requires_credential():
    adapter = OpenAICompatibleClient(ProviderSpec(code="p", credential=None))

    with pytest.raises(ProviderAuthError):
        await adapter.generate([ChatTurn(role="user", content="x")], CallConfig(model="m"))


def test_adapter_registry():
    class EchoClient(LLMClient):
        pass

    register_provider_adapter("echo-test", EchoClient)

    adapter = build_provider_adapter(ProviderSpec(code="e", kind="echo-test"))
    assert isinstance(adapter, EchoClient)
    assert isinstance(build_provider_adapter(ProviderSpec(code="o")), OpenAICompatibleClient)

    with pytest.raises(ProviderRequestError):
        build_provider_adapter(ProviderSpec(code="x", kind="carrier-pigeon"))
