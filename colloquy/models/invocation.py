"""Model invocation request/response models"""

from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field

from colloquy.models.conversation import Message
from colloquy.models.prompt_template import InferenceConfig
from colloquy.models.tool import ToolSpec


class StopReason(str, Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    GUARDRAIL_INTERVENED = "guardrail_intervened"


class ToolChoice(str, Enum):
    AUTO = "auto"
    ANY = "any"
    NONE = "none"


class Usage(BaseModel):
    """Token usage information"""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ModelRequest(BaseModel):
    model_id: str
    system_prompt: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    inference_config: InferenceConfig = Field(default_factory=InferenceConfig)
    tool_specs: List[ToolSpec] = Field(default_factory=list)
    tool_choice: ToolChoice = ToolChoice.AUTO

    model_config = {"protected_namespaces": ()}


class ModelResponse(BaseModel):
    message: Message
    stop_reason: StopReason
    model_id: Optional[str] = None
    usage: Optional[Usage] = None

    model_config = {"protected_namespaces": ()}
