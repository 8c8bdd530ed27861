"""Guardrail policy and evaluation models"""

from enum import Enum
from typing import Optional, Dict, List
from pydantic import BaseModel, Field

from colloquy.errors.exceptions import GuardrailBlocked


class GuardrailAction(str, Enum):
    PASS = "PASS"
    BLOCK = "BLOCK"
    ANONYMIZE = "ANONYMIZE"


class Direction(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


class ContentCategory(str, Enum):
    HATE = "HATE"
    INSULTS = "INSULTS"
    SEXUAL = "SEXUAL"
    VIOLENCE = "VIOLENCE"
    MISCONDUCT = "MISCONDUCT"
    PROMPT_ATTACK = "PROMPT_ATTACK"


class Severity(str, Enum):
    """Filter strength and detection confidence share one scale"""
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return ["NONE", "LOW", "MEDIUM", "HIGH"].index(self.value)


class PiiEntity(str, Enum):
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    US_SOCIAL_SECURITY_NUMBER = "US_SOCIAL_SECURITY_NUMBER"
    CREDIT_DEBIT_CARD_NUMBER = "CREDIT_DEBIT_CARD_NUMBER"
    IP_ADDRESS = "IP_ADDRESS"
    URL = "URL"


class ManagedWordList(str, Enum):
    PROFANITY = "PROFANITY"


class TopicRule(BaseModel):
    """Denied topic"""
    name: str
    definition: str = ""
    examples: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)


class ContentFilter(BaseModel):
    category: ContentCategory
    input_strength: Severity = Severity.MEDIUM
    output_strength: Severity = Severity.MEDIUM


class PiiRule(BaseModel):
    entity: PiiEntity
    action: GuardrailAction = GuardrailAction.ANONYMIZE


class RegexRule(BaseModel):
    """Custom sensitive-information pattern"""
    name: str
    pattern: str
    action: GuardrailAction = GuardrailAction.ANONYMIZE


class GuardrailPolicy(BaseModel):
    """Configurable safety policy"""
    name: str = "default"
    denied_topics: List[TopicRule] = Field(default_factory=list)
    content_filters: List[ContentFilter] = Field(default_factory=list)
    category_terms: Dict[ContentCategory, List[str]] = Field(default_factory=dict)
    blocked_words: List[str] = Field(default_factory=list)
    managed_word_lists: List[ManagedWordList] = Field(default_factory=list)
    pii_rules: List[PiiRule] = Field(default_factory=list)
    regex_rules: List[RegexRule] = Field(default_factory=list)
    grounding_threshold: Optional[float] = Field(None, ge=0, le=1)
    relevance_threshold: Optional[float] = Field(None, ge=0, le=1)
    blocked_input_message: str = "Sorry, I can't help with that request."
    blocked_output_message: str = "Sorry, I can't provide that response."

    def blocked_message(self, direction: Direction) -> str:
        if direction == Direction.INPUT:
            return self.blocked_input_message
        return self.blocked_output_message


class GuardrailResult(BaseModel):
    """Outcome of one guardrail evaluation"""
    action: GuardrailAction
    direction: Direction
    text: str
    rewritten_text: Optional[str] = None
    matched_rules: List[str] = Field(default_factory=list)
    blocked_message: Optional[str] = None

    @property
    def output_text(self) -> str:
        """Text to carry forward after this check"""
        if self.action == GuardrailAction.BLOCK:
            return self.blocked_message or ""
        if self.action == GuardrailAction.ANONYMIZE and self.rewritten_text is not None:
            return self.rewritten_text
        return self.text

    def raise_for_block(self):
        if self.action == GuardrailAction.BLOCK:
            rule = self.matched_rules[0] if self.matched_rules else None
            raise GuardrailBlocked(self.direction.value, rule, self.blocked_message or "")
