"""Tests for context-window pruning"""

import pytest

from colloquy.context.tokens import estimate_message_tokens, estimate_text_tokens
from colloquy.context.window import ContextWindowManager
from colloquy.errors.exceptions import ContextOverflowError
from colloquy.models.conversation import (
    Message,
    Role,
    ToolCall,
    ToolCallStatus,
    ToolResult,
    ToolResultBlock,
    ToolUseBlock,
)


def user(text: str) -> Message:
    return Message.text(Role.USER, text)


def assistant(text: str) -> Message:
    return Message.text(Role.ASSISTANT, text)


def tool_pair(name: str = "lookup"):
    call = ToolCall(name=name, input={"q": "x"})
    use = Message(role=Role.ASSISTANT, content=[ToolUseBlock(call=call)])
    result = Message(role=Role.TOOL, content=[ToolResultBlock(result=ToolResult(
        call_id=call.id,
        tool_name=name,
        status=ToolCallStatus.DONE,
        output={"answer": 42},
    ))])
    return use, result


def test_token_heuristic():
    """Test four characters per token plus per-message overhead"""
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens("abcd") == 1
    assert estimate_text_tokens("abcde") == 2
    assert estimate_message_tokens(user("a" * 8)) == 2 + 4


def test_fits_without_pruning():
    """Test history under the limit is returned untouched"""
    manager = ContextWindowManager(limit_tokens=1000)
    messages = [user("hello"), assistant("hi"), user("how are you")]

    assert manager.fit("system", messages) == messages


def test_prunes_oldest_first():
    """Test oldest messages are dropped first and the latest user turn kept"""
    messages = [user("a" * 40), assistant("b" * 40), user("c" * 40), assistant("d" * 40), user("e" * 40)]
    # Each message costs 14 tokens
    manager = ContextWindowManager(limit_tokens=14 * 3)

    kept = manager.fit(None, messages)

    assert kept == messages[2:]


def test_tool_pair_dropped_together():
    """Test a tool-use message never survives without its result"""
    use, result = tool_pair()
    messages = [user("q" * 40), use, result, assistant("a" * 40), user("latest")]
    limit = estimate_message_tokens(messages[3]) + estimate_message_tokens(messages[4])
    manager = ContextWindowManager(limit_tokens=limit)

    kept = manager.fit(None, messages)

    assert use not in kept and result not in kept
    assert kept[-1] == messages[-1]


def test_overflow_when_floor_reached():
    """Test ContextOverflowError when only protected turns remain"""
    manager = ContextWindowManager(limit_tokens=10, min_retained_turns=1)
    messages = [assistant("old"), user("x" * 200)]

    with pytest.raises(ContextOverflowError) as exc_info:
        manager.fit(None, messages)

    assert exc_info.value.limit == 10
    assert exc_info.value.retained_messages == 1


def test_min_retained_turns_protects_recent_turns():
    """Test the last N user turns and everything after them are kept"""
    messages = [user("a" * 40), assistant("b" * 40), user("c" * 40), assistant("d" * 40), user("e" * 40)]
    manager = ContextWindowManager(limit_tokens=14 * 3 - 1, min_retained_turns=2)

    with pytest.raises(ContextOverflowError):
        manager.fit(None, messages)

    kept = manager.fit(None, messages, limit_tokens=14 * 4)
    assert kept == messages[1:]


def test_current_turn_tool_exchange_survives_pruning():
    """Test older tool pairs go while the latest turn keeps its own tool exchange"""
    old_use, old_result = tool_pair("search")
    new_use, new_result = tool_pair("getWeather")
    messages = [
        user("q" * 40),
        old_use,
        old_result,
        assistant("a" * 40),
        user("weather in Lima?"),
        new_use,
        new_result,
    ]
    limit = sum(estimate_message_tokens(m) for m in messages[4:])
    manager = ContextWindowManager(limit_tokens=limit, min_retained_turns=1)

    kept = manager.fit(None, messages)

    assert kept == [messages[4], new_use, new_result]
    assert old_use not in kept and old_result not in kept
