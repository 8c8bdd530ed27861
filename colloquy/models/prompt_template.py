"""Prompt template models"""

import re
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Set
from pydantic import BaseModel, Field, model_validator

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
BRACE_PATTERN = re.compile(r"\{\{.*?\}\}", re.DOTALL)


def extract_placeholders(text: Optional[str]) -> Set[str]:
    """Extract {{variable}} names from template text"""
    if not text:
        return set()
    return set(PLACEHOLDER_PATTERN.findall(text))


def extract_malformed_placeholders(text: Optional[str]) -> Set[str]:
    """Brace tokens that are not valid {{identifier}} placeholders"""
    if not text:
        return set()
    return {token for token in BRACE_PATTERN.findall(text) if not PLACEHOLDER_PATTERN.fullmatch(token)}


class TemplateKind(str, Enum):
    """Template kinds"""
    TEXT = "TEXT"
    CHAT = "CHAT"


class InferenceConfig(BaseModel):
    """Inference parameters passed to the model"""
    max_tokens: Optional[int] = Field(None, ge=1)
    temperature: Optional[float] = Field(None, ge=0)
    top_p: Optional[float] = Field(None, gt=0, le=1)
    stop_sequences: List[str] = Field(default_factory=list)


class PromptVariant(BaseModel):
    """One immutable configuration of a prompt template"""
    name: str = Field(..., min_length=1)
    model_id: str
    kind: TemplateKind = TemplateKind.TEXT
    input_variables: List[str] = Field(default_factory=list)
    template: str  # Template text with {{variables}}
    system_prompt: Optional[str] = None  # CHAT variants only
    inference_config: InferenceConfig = Field(default_factory=InferenceConfig)
    created_at: datetime = Field(default_factory=datetime.now)

    model_config = {"frozen": True, "protected_namespaces": ()}

    @model_validator(mode="after")
    def _system_prompt_only_for_chat(self) -> "PromptVariant":
        if self.system_prompt is not None and self.kind != TemplateKind.CHAT:
            raise ValueError("system_prompt is only allowed on CHAT variants")
        return self

    def placeholders(self) -> Set[str]:
        """Variables referenced anywhere in this variant"""
        return extract_placeholders(self.template) | extract_placeholders(self.system_prompt)

    def malformed_placeholders(self) -> Set[str]:
        return extract_malformed_placeholders(self.template) | extract_malformed_placeholders(self.system_prompt)


class PromptTemplate(BaseModel):
    """Named template with an append-only list of variants"""
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    variants: List[PromptVariant] = Field(..., min_length=1)
    default_variant: str
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    # Metadata
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_variant(self, variant_name: str) -> Optional[PromptVariant]:
        for variant in self.variants:
            if variant.name == variant_name:
                return variant
        return None


class ResolvedPrompt(BaseModel):
    """Template after variable substitution"""
    template_name: str
    variant_name: str
    kind: TemplateKind
    model_id: str
    text: str
    system_prompt: Optional[str] = None
    inference_config: InferenceConfig

    model_config = {"protected_namespaces": ()}
