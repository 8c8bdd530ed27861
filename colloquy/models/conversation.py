"""Conversation, message and tool-call models"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Literal, Union, Annotated
from pydantic import BaseModel, Field


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    TERMINATED = "terminated"


class EngineState(str, Enum):
    """Conversation engine states"""
    AWAITING_USER_INPUT = "AWAITING_USER_INPUT"
    GUARDRAIL_INPUT = "GUARDRAIL_INPUT"
    MODEL_INVOKING = "MODEL_INVOKING"
    TOOL_REQUESTED = "TOOL_REQUESTED"
    TOOL_EXECUTING = "TOOL_EXECUTING"
    GUARDRAIL_OUTPUT = "GUARDRAIL_OUTPUT"
    TERMINATED = "TERMINATED"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ToolError(BaseModel):
    """Structured error fed back to the model instead of raising"""
    type: str
    message: str
    retryable: bool = False


class ToolCall(BaseModel):
    """Tool-use request emitted by the model"""
    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING


class ToolResult(BaseModel):
    """Exactly one per ToolCall"""
    call_id: str
    tool_name: str
    status: ToolCallStatus
    output: Optional[Any] = None
    error: Optional[ToolError] = None
    attempts: int = 0

    @property
    def is_error(self) -> bool:
        return self.error is not None


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    call: ToolCall


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    result: ToolResult


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """Single message in a conversation"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Role
    content: List[ContentBlock] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def text(cls, role: Role, text: str, **metadata: Any) -> "Message":
        return cls(role=role, content=[TextBlock(text=text)], metadata=metadata)

    @property
    def text_content(self) -> str:
        """Concatenated text blocks"""
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [block.call for block in self.content if isinstance(block, ToolUseBlock)]

    @property
    def tool_results(self) -> List[ToolResult]:
        return [block.result for block in self.content if isinstance(block, ToolResultBlock)]

    @property
    def excluded_from_context(self) -> bool:
        return bool(self.metadata.get("excluded_from_context"))


class Conversation(BaseModel):
    """Conversation with an append-only transcript"""
    id: str
    messages: List[Message] = Field(default_factory=list)
    state: EngineState = EngineState.AWAITING_USER_INPUT
    status: ConversationStatus = ConversationStatus.ACTIVE
    token_estimate: int = 0
    turn_count: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversationState(BaseModel):
    """Read-only snapshot returned by getConversationState"""
    id: str
    state: EngineState
    status: ConversationStatus
    messages: List[Message]
    token_estimate: int
    turn_count: int
    queued_messages: int = 0
