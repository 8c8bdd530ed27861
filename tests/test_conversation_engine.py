"""Tests for conversation engine"""

import asyncio

import pytest

from colloquy.context.assembler import ContextAssembler
from colloquy.context.retriever import InMemoryVectorIndex
from colloquy.engine.conversation_engine import ConversationEngine, EngineConfig
from colloquy.errors.exceptions import (
    ConversationNotFoundError,
    ConversationTerminatedError,
    ModelInvocationError,
)
from colloquy.guardrails.pipeline import GuardrailPipeline
from colloquy.models.conversation import ConversationStatus, EngineState, Role, ToolCall, ToolCallStatus
from colloquy.models.guardrail import (
    GuardrailAction,
    GuardrailPolicy,
    GuardrailResult,
    PiiEntity,
    PiiRule,
    TopicRule,
)
from colloquy.models.invocation import StopReason
from colloquy.models.prompt_template import PromptVariant, TemplateKind
from colloquy.models.retrieval import RetrievedChunk
from colloquy.models.tool import ToolInputSchema, ToolProperty, ToolSpec
from colloquy.models.turn import TurnOutcome
from colloquy.prompts.template_manager import TemplateManager
from colloquy.tools.dispatcher import ToolDispatcher
from tests.scripted import ScriptedModelInvoker, text_response, tool_response

WEATHER_SPEC = ToolSpec(
    name="getWeather",
    description="Current weather for a city",
    input_schema=ToolInputSchema(
        properties={"city": ToolProperty(type="string")},
        required=["city"],
    ),
)


async def get_weather(city: str):
    return {"location": city, "temperature": 18, "condition": "light rain"}


def weather_dispatcher() -> ToolDispatcher:
    dispatcher = ToolDispatcher()
    dispatcher.register(WEATHER_SPEC, get_weather)
    return dispatcher


def summarize_weather(request):
    weather = request.messages[-1].tool_results[0].output
    return text_response(
        f"In {weather['location']} it is {weather['temperature']}°C with {weather['condition']}."
    )


async def wait_for_state(engine: ConversationEngine, conversation_id: str, state: EngineState):
    for _ in range(200):
        if (await engine.get_conversation_state(conversation_id)).state == state:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"conversation never reached {state}")


@pytest.mark.asyncio
async def test_weather_tool_flow():
    """Test a tool round trip ends in a summary of the tool output"""
    invoker = ScriptedModelInvoker([
        tool_response(ToolCall(name="getWeather", input={"city": "Seattle"})),
        summarize_weather,
    ])
    engine = ConversationEngine(invoker, dispatcher=weather_dispatcher())
    await engine.start_conversation("c1")

    result = await engine.post_user_message("c1", "What's the weather in Seattle?")

    assert result.outcome == TurnOutcome.COMPLETED
    assert "Seattle" in result.text
    assert "18" in result.text
    assert "light rain" in result.text
    assert result.tool_iterations == 1

    state = await engine.get_conversation_state("c1")
    assert [m.role for m in state.messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
    assert state.state == EngineState.AWAITING_USER_INPUT
    assert state.turn_count == 1
    assert invoker.requests[0].tool_specs[0].name == "getWeather"


@pytest.mark.asyncio
async def test_input_block_skips_model():
    """Test a blocked input never reaches the model"""
    policy = GuardrailPolicy(
        denied_topics=[TopicRule(
            name="Fiduciary Advice",
            examples=["Which stocks should I invest in?"],
        )],
        blocked_input_message="I can't provide financial advice.",
    )
    invoker = ScriptedModelInvoker([])
    engine = ConversationEngine(invoker, guardrails=GuardrailPipeline(policy))
    await engine.start_conversation("c1")

    result = await engine.post_user_message("c1", "What stocks should I invest in for my retirement?")

    assert result.outcome == TurnOutcome.BLOCKED_INPUT
    assert result.text == "I can't provide financial advice."
    assert invoker.calls == 0

    state = await engine.get_conversation_state("c1")
    assert len(state.messages) == 2
    assert all(m.excluded_from_context for m in state.messages)
    assert state.state == EngineState.AWAITING_USER_INPUT


class BlockEverythingEvaluator:
    """External evaluator that blocks without supplying a message"""

    async def evaluate(self, text, direction, context=None, query=None):
        return GuardrailResult(
            action=GuardrailAction.BLOCK,
            direction=direction,
            text=text,
            matched_rules=["external:deny"],
        )


@pytest.mark.asyncio
async def test_input_block_without_message_uses_configured_reply():
    """Test an evaluator blocking with no message falls back to the engine default"""
    invoker = ScriptedModelInvoker([])
    config = EngineConfig(blocked_input_message="That request isn't allowed here.")
    engine = ConversationEngine(invoker, guardrails=BlockEverythingEvaluator(), config=config)
    await engine.start_conversation("c1")

    result = await engine.post_user_message("c1", "anything")

    assert result.outcome == TurnOutcome.BLOCKED_INPUT
    assert result.text == "That request isn't allowed here."
    assert result.matched_rules == ["external:deny"]
    assert invoker.calls == 0


@pytest.mark.asyncio
async def test_anonymized_input_reaches_model_rewritten():
    """Test ANONYMIZE replaces PII before the model sees it"""
    policy = GuardrailPolicy(pii_rules=[PiiRule(entity=PiiEntity.EMAIL)])
    invoker = ScriptedModelInvoker([text_response("Thanks, noted.")])
    engine = ConversationEngine(invoker, guardrails=GuardrailPipeline(policy))
    await engine.start_conversation("c1")

    await engine.post_user_message("c1", "My email is ana@example.com")

    assert invoker.requests[0].messages[-1].text_content == "My email is {EMAIL}"


@pytest.mark.asyncio
async def test_output_block_replaces_message():
    """Test a blocked response is never appended to the transcript"""
    policy = GuardrailPolicy(blocked_words=["confidential"], blocked_output_message="Response withheld.")
    invoker = ScriptedModelInvoker([text_response("The confidential roadmap says...")])
    engine = ConversationEngine(invoker, guardrails=GuardrailPipeline(policy))
    await engine.start_conversation("c1")

    result = await engine.post_user_message("c1", "What is next quarter's plan?")

    assert result.outcome == TurnOutcome.BLOCKED_OUTPUT
    assert result.text == "Response withheld."
    state = await engine.get_conversation_state("c1")
    assert all("roadmap" not in m.text_content for m in state.messages)


@pytest.mark.asyncio
async def test_model_guardrail_intervention():
    """Test a provider-side intervention yields the blocked message"""
    invoker = ScriptedModelInvoker([text_response("", stop_reason=StopReason.GUARDRAIL_INTERVENED)])
    engine = ConversationEngine(invoker, config=EngineConfig(blocked_output_message="Blocked."))
    await engine.start_conversation("c1")

    result = await engine.post_user_message("c1", "hello")

    assert result.outcome == TurnOutcome.BLOCKED_OUTPUT
    assert result.text == "Blocked."


@pytest.mark.asyncio
async def test_tool_loop_limit():
    """Test the loop stops at exactly three tool iterations"""
    def another_call(request):
        return tool_response(ToolCall(name="getWeather", input={"city": "Paris"}))

    invoker = ScriptedModelInvoker([another_call] * 4 + [text_response("Back to normal.")])
    engine = ConversationEngine(
        invoker,
        dispatcher=weather_dispatcher(),
        config=EngineConfig(max_tool_iterations=3),
    )
    await engine.start_conversation("c1")

    result = await engine.post_user_message("c1", "Keep checking the weather")

    assert result.outcome == TurnOutcome.TOOL_LOOP_LIMIT
    assert result.error_type == "ToolLoopLimitExceeded"
    assert result.tool_iterations == 3
    assert invoker.calls == 4

    state = await engine.get_conversation_state("c1")
    unresolved = state.messages[-2].tool_results
    assert len(unresolved) == 1
    assert unresolved[0].error.type == "ToolLoopLimitExceeded"
    assert state.status == ConversationStatus.ACTIVE

    # The conversation stays usable
    follow_up = await engine.post_user_message("c1", "Never mind")
    assert follow_up.outcome == TurnOutcome.COMPLETED


@pytest.mark.asyncio
async def test_parallel_tool_results_keep_request_order():
    """Test three concurrent tool calls are reinserted in request order"""
    delays = {"first": 0.06, "second": 0.0, "third": 0.03}

    async def slow_weather(city: str):
        await asyncio.sleep(delays[city])
        return {"location": city}

    dispatcher = ToolDispatcher()
    dispatcher.register(WEATHER_SPEC, slow_weather)
    calls = [ToolCall(name="getWeather", input={"city": city}) for city in ("first", "second", "third")]
    invoker = ScriptedModelInvoker([tool_response(*calls), text_response("done")])
    engine = ConversationEngine(invoker, dispatcher=dispatcher)
    await engine.start_conversation("c1")

    await engine.post_user_message("c1", "Check three cities")

    results = invoker.requests[1].messages[-1].tool_results
    assert [r.call_id for r in results] == [c.id for c in calls]
    assert [r.output["location"] for r in results] == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_messages_queue_fifo():
    """Test messages posted mid-turn run in arrival order, one at a time"""
    async def slow_tool(city: str):
        await asyncio.sleep(0.1)
        return {"location": city}

    dispatcher = ToolDispatcher()
    dispatcher.register(WEATHER_SPEC, slow_tool)
    invoker = ScriptedModelInvoker([
        tool_response(ToolCall(name="getWeather", input={"city": "Rome"})),
        text_response("answer one"),
        text_response("answer two"),
    ])
    engine = ConversationEngine(invoker, dispatcher=dispatcher)
    await engine.start_conversation("c1")

    first = asyncio.create_task(engine.post_user_message("c1", "one"))
    await wait_for_state(engine, "c1", EngineState.TOOL_EXECUTING)
    second = asyncio.create_task(engine.post_user_message("c1", "two"))
    await asyncio.sleep(0)
    assert (await engine.get_conversation_state("c1")).queued_messages == 1

    results = await asyncio.gather(first, second)

    assert [r.text for r in results] == ["answer one", "answer two"]
    last_request = invoker.requests[-1]
    assert [m.text_content for m in last_request.messages if m.role == Role.USER] == ["one", "two"]


@pytest.mark.asyncio
async def test_cancel_records_cancelled_tool_results():
    """Test cancelling mid-tool leaves cancelled results and terminates"""
    async def hanging(city: str):
        await asyncio.sleep(10)

    dispatcher = ToolDispatcher()
    dispatcher.register(WEATHER_SPEC, hanging)
    invoker = ScriptedModelInvoker([tool_response(ToolCall(name="getWeather", input={"city": "Oslo"}))])
    engine = ConversationEngine(invoker, dispatcher=dispatcher)
    await engine.start_conversation("c1")

    pending = asyncio.create_task(engine.post_user_message("c1", "Weather in Oslo?"))
    await wait_for_state(engine, "c1", EngineState.TOOL_EXECUTING)
    state = await engine.cancel("c1")
    result = await pending

    assert result.outcome == TurnOutcome.CANCELLED
    assert state.state == EngineState.TERMINATED
    assert state.status == ConversationStatus.TERMINATED
    assert state.messages[-1].tool_results[0].status == ToolCallStatus.CANCELLED

    with pytest.raises(ConversationTerminatedError):
        await engine.post_user_message("c1", "hello?")


@pytest.mark.asyncio
async def test_retrieved_context_and_citations():
    """Test passages are merged into the system prompt and cited"""
    index = InMemoryVectorIndex(dimension=2)
    index.add(
        RetrievedChunk(
            chunk_id="hb-4",
            source_id="handbook",
            text="Employees get 25 vacation days per year.",
            citation="Handbook section 4",
        ),
        [1.0, 0.0],
    )
    invoker = ScriptedModelInvoker([text_response("You get 25 vacation days per year [1].")])
    engine = ConversationEngine(
        invoker,
        assembler=ContextAssembler(index),
        config=EngineConfig(system_prompt="You are an HR assistant."),
    )
    await engine.start_conversation("c1")

    result = await engine.post_user_message("c1", "How many vacation days do I get?", query_vector=[1.0, 0.0])

    system_prompt = invoker.requests[0].system_prompt
    assert system_prompt.startswith("You are an HR assistant.")
    assert "[1] Employees get 25 vacation days per year." in system_prompt
    assert result.citations == ["Handbook section 4"]
    assert result.message.metadata["citations"] == ["Handbook section 4"]


@pytest.mark.asyncio
async def test_context_overflow_ends_only_the_turn():
    """Test an oversized turn degrades without calling the model"""
    invoker = ScriptedModelInvoker([])
    engine = ConversationEngine(invoker, config=EngineConfig(context_window_tokens=10))
    await engine.start_conversation("c1")

    result = await engine.post_user_message("c1", "x" * 400)

    assert result.outcome == TurnOutcome.CONTEXT_OVERFLOW
    assert result.error_type == "ContextOverflowError"
    assert invoker.calls == 0
    state = await engine.get_conversation_state("c1")
    assert state.status == ConversationStatus.ACTIVE
    assert state.state == EngineState.AWAITING_USER_INPUT


@pytest.mark.asyncio
async def test_model_errors_propagate():
    """Test model failures surface to the caller"""
    invoker = ScriptedModelInvoker([ModelInvocationError("quota exhausted", retryable=True)])
    engine = ConversationEngine(invoker)
    await engine.start_conversation("c1")

    with pytest.raises(ModelInvocationError):
        await engine.post_user_message("c1", "hello")

    state = await engine.get_conversation_state("c1")
    assert state.state == EngineState.AWAITING_USER_INPUT


@pytest.mark.asyncio
async def test_template_supplies_prompt_and_model():
    """Test a conversation started from a template uses its variant"""
    manager = TemplateManager()
    await manager.create_template(
        "support",
        [PromptVariant(
            name="v1",
            model_id="claude-3-haiku-20240307",
            kind=TemplateKind.CHAT,
            input_variables=["product"],
            template="Help the customer with {{product}}.",
            system_prompt="You support {{product}} customers.",
        )],
        default_variant="v1",
    )
    invoker = ScriptedModelInvoker([text_response("Happy to help!")])
    engine = ConversationEngine(invoker, template_manager=manager)
    await engine.start_conversation("c1", template="support", variables={"product": "Acme Router"})

    await engine.post_user_message("c1", "My router keeps rebooting")

    assert invoker.requests[0].system_prompt == "You support Acme Router customers."
    assert invoker.requests[0].model_id == "claude-3-haiku-20240307"


@pytest.mark.asyncio
async def test_close_and_turn_limit():
    """Test close and max_turns both terminate the conversation"""
    invoker = ScriptedModelInvoker([text_response("one"), text_response("two")])
    engine = ConversationEngine(invoker, config=EngineConfig(max_turns=1))
    await engine.start_conversation("limited")
    await engine.start_conversation("closed")

    await engine.post_user_message("limited", "hi")
    limited = await engine.get_conversation_state("limited")
    closed = await engine.close("closed")

    assert limited.state == EngineState.TERMINATED
    assert closed.status == ConversationStatus.TERMINATED
    with pytest.raises(ConversationTerminatedError):
        await engine.post_user_message("limited", "again")


@pytest.mark.asyncio
async def test_unknown_conversation():
    """Test operations on an unknown id"""
    engine = ConversationEngine(ScriptedModelInvoker([]))

    with pytest.raises(ConversationNotFoundError):
        await engine.post_user_message("nope", "hello")
