"""Pydantic models for API requests and responses"""

from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from colloquy.models.conversation import ConversationState, Message
from colloquy.models.prompt_template import PromptVariant, ResolvedPrompt
from colloquy.models.turn import TurnOutcome


class CreateTemplateRequest(BaseModel):
    """Template creation request"""
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    variants: List[PromptVariant] = Field(..., min_length=1)
    default_variant: str
    tags: List[str] = Field(default_factory=list)


class SetDefaultRequest(BaseModel):
    variant: str = Field(..., description="Variant to make the default")


class ResolveTemplateRequest(BaseModel):
    variables: Dict[str, Any] = Field(default_factory=dict)
    variant: Optional[str] = Field(None, description="Variant name; default variant if omitted")


class ResolveTemplateResponse(ResolvedPrompt):
    pass


class StartConversationRequest(BaseModel):
    conversation_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    template: Optional[str] = Field(None, description="Template supplying the system prompt")
    variant: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class PostMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, description="User message")
    query_vector: Optional[List[float]] = Field(None, description="Embedding for retrieval")


class TurnResponse(BaseModel):
    """Result of one turn"""
    conversation_id: str
    outcome: TurnOutcome
    text: str
    message: Optional[Message] = None
    citations: List[str] = Field(default_factory=list)
    tool_iterations: int = 0
    matched_rules: List[str] = Field(default_factory=list)
    error_type: Optional[str] = None


class ConversationResponse(ConversationState):
    pass
