"""Tests for model invocation, retry and fallback"""

import json

import pytest

from colloquy.errors.exceptions import InferenceConfigError, ModelInvocationError
from colloquy.models.conversation import (
    Message,
    Role,
    ToolCall,
    ToolCallStatus,
    ToolResult,
    ToolResultBlock,
    ToolUseBlock,
)
from colloquy.models.invocation import ModelRequest, StopReason, ToolChoice
from colloquy.models.prompt_template import InferenceConfig
from colloquy.models.tool import ToolSpec
from colloquy.router.fallback import FallbackChain
from colloquy.router.invoker import LiteLLMInvoker, from_openai_response, to_openai_messages
from colloquy.router.model_registry import ModelRegistry
from colloquy.utils.backoff import RetryPolicy
from tests.scripted import ScriptedModelInvoker, text_response

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


def request(model_id: str = "gpt-4o-mini") -> ModelRequest:
    return ModelRequest(model_id=model_id, messages=[Message.text(Role.USER, "hi")])


def test_backoff_is_capped():
    """Test exponential delays never exceed max_delay"""
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)

    assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    jittered = RetryPolicy(base_delay=1.0, max_delay=5.0)
    assert all(0 <= jittered.delay(4) <= 5.0 for _ in range(20))


def test_registry_validates_capabilities():
    """Test per-model inference constraints"""
    registry = ModelRegistry()

    registry.validate("gpt-4o", InferenceConfig(temperature=1.5, top_p=0.9))
    registry.validate("some-unknown-model", InferenceConfig(max_tokens=10 ** 6))
    with pytest.raises(InferenceConfigError):
        registry.validate("gpt-4o", InferenceConfig(temperature=2.5))
    with pytest.raises(InferenceConfigError):
        registry.validate("gpt-4o", InferenceConfig(stop_sequences=["a", "b", "c", "d", "e"]))

    params = registry.to_provider_params("claude-3-5-sonnet", InferenceConfig(stop_sequences=["END"]))
    assert params == {"max_tokens": 8192, "stop": ["END"]}


def test_openai_message_conversion():
    """Test tool calls and results map onto OpenAI chat messages"""
    call = ToolCall(id="call_1", name="getWeather", input={"city": "Paris"})
    messages = [
        Message.text(Role.USER, "Weather in Paris?"),
        Message(role=Role.ASSISTANT, content=[ToolUseBlock(call=call)]),
        Message(role=Role.TOOL, content=[ToolResultBlock(result=ToolResult(
            call_id="call_1",
            tool_name="getWeather",
            status=ToolCallStatus.DONE,
            output={"temperature": 21},
        ))]),
    ]

    payload = to_openai_messages("Be brief.", messages)

    assert payload[0] == {"role": "system", "content": "Be brief."}
    assert payload[1] == {"role": "user", "content": "Weather in Paris?"}
    assert payload[2]["tool_calls"][0]["function"] == {"name": "getWeather", "arguments": '{"city": "Paris"}'}
    assert payload[3] == {"role": "tool", "tool_call_id": "call_1", "content": json.dumps({"temperature": 21})}


def test_openai_response_conversion():
    """Test tool-call responses become tool-use blocks"""
    response = from_openai_response({
        "model": "gpt-4o-mini",
        "choices": [{
            "finish_reason": "tool_calls",
            "message": {
                "role": "assistant",
                "content": None,
                "tool_calls": [{
                    "id": "call_abc",
                    "type": "function",
                    "function": {"name": "getWeather", "arguments": '{"city": "Lima"}'},
                }],
            },
        }],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    })

    assert response.stop_reason == StopReason.TOOL_USE
    assert response.message.tool_calls[0].id == "call_abc"
    assert response.message.tool_calls[0].input == {"city": "Lima"}
    assert response.usage.total_tokens == 15


def test_build_params_includes_tools():
    """Test tool specs and tool choice reach LiteLLM"""
    invoker = LiteLLMInvoker()
    req = request().model_copy(update={
        "tool_specs": [ToolSpec(name="getWeather", description="Weather")],
        "tool_choice": ToolChoice.ANY,
    })

    params = invoker.build_params(req)

    assert params["model"] == "gpt-4o-mini"
    assert params["tools"][0]["function"]["name"] == "getWeather"
    assert params["tool_choice"] == "required"


@pytest.mark.asyncio
async def test_litellm_errors_are_wrapped(monkeypatch):
    """Test provider failures surface as ModelInvocationError"""
    invoker = LiteLLMInvoker()

    async def boom(params):
        raise ValueError("bad request")

    monkeypatch.setattr(invoker, "_call_litellm", boom)

    with pytest.raises(ModelInvocationError) as exc_info:
        await invoker.invoke(request())
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_retry_then_success():
    """Test transient errors are retried on the same model"""
    invoker = ScriptedModelInvoker([
        ModelInvocationError("rate limited", retryable=True),
        ModelInvocationError("rate limited", retryable=True),
        text_response("hello"),
    ])
    chain = FallbackChain(invoker, retry_policy=NO_WAIT)

    response = await chain.invoke(request())

    assert response.message.text_content == "hello"
    assert invoker.calls == 3
    assert {r.model_id for r in invoker.requests} == {"gpt-4o-mini"}


@pytest.mark.asyncio
async def test_non_retryable_surfaces_immediately():
    """Test non-retryable errors are neither retried nor failed over"""
    invoker = ScriptedModelInvoker([ModelInvocationError("invalid request", retryable=False)])
    chain = FallbackChain(invoker, retry_policy=NO_WAIT, fallback_models=["gpt-4o"])

    with pytest.raises(ModelInvocationError) as exc_info:
        await chain.invoke(request())

    assert exc_info.value.retryable is False
    assert invoker.calls == 1


@pytest.mark.asyncio
async def test_fallback_after_retries_exhausted():
    """Test the next model is tried once the primary gives up"""
    invoker = ScriptedModelInvoker(
        [ModelInvocationError("overloaded", retryable=True)] * 3 + [text_response("from fallback")]
    )
    chain = FallbackChain(invoker, retry_policy=NO_WAIT, fallback_models=["gpt-4o"])

    response = await chain.invoke(request())

    assert response.message.text_content == "from fallback"
    assert [r.model_id for r in invoker.requests] == ["gpt-4o-mini"] * 3 + ["gpt-4o"]


@pytest.mark.asyncio
async def test_all_models_exhausted():
    """Test a retryable error is raised when every model fails"""
    invoker = ScriptedModelInvoker([ModelInvocationError("down", retryable=True)] * 6)
    chain = FallbackChain(invoker, retry_policy=NO_WAIT, fallback_models=["gpt-4o"])

    with pytest.raises(ModelInvocationError) as exc_info:
        await chain.invoke(request())

    assert exc_info.value.retryable is True
    assert invoker.calls == 6
