"""Token estimation heuristic shared by context assembly and pruning"""

import json
import math
from typing import Iterable, Optional

from colloquy.models.conversation import Message, TextBlock, ToolUseBlock, ToolResultBlock

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_text_tokens(text: Optional[str]) -> int:
    """Rough approximation: 1 token ≈ 4 characters"""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    total = MESSAGE_OVERHEAD_TOKENS
    for block in message.content:
        if isinstance(block, TextBlock):
            total += estimate_text_tokens(block.text)
        elif isinstance(block, ToolUseBlock):
            total += estimate_text_tokens(block.call.name + json.dumps(block.call.input, default=str))
        elif isinstance(block, ToolResultBlock):
            payload = block.result.error.model_dump() if block.result.error else block.result.output
            total += estimate_text_tokens(json.dumps(payload, default=str))
    return total


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)
