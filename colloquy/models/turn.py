"""Turn outcome models"""

from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field

from colloquy.models.conversation import Message
from colloquy.models.invocation import StopReason


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    BLOCKED_INPUT = "blocked_input"
    BLOCKED_OUTPUT = "blocked_output"
    TOOL_LOOP_LIMIT = "tool_loop_limit"
    CONTEXT_OVERFLOW = "context_overflow"
    CANCELLED = "cancelled"


class TurnResult(BaseModel):
    """What one postUserMessage produced"""
    conversation_id: str
    outcome: TurnOutcome
    message: Optional[Message] = None
    citations: List[str] = Field(default_factory=list)
    tool_iterations: int = 0
    stop_reason: Optional[StopReason] = None
    matched_rules: List[str] = Field(default_factory=list)
    error_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def text(self) -> str:
        return self.message.text_content if self.message else ""
