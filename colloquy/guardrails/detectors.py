"""Text detectors used by the guardrail pipeline"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from colloquy.models.guardrail import (
    ContentCategory,
    GuardrailAction,
    ManagedWordList,
    PiiEntity,
    Severity,
    TopicRule,
)

WORD_PATTERN = re.compile(r"[a-z0-9']+")

STOPWORDS = {
    "the", "and", "for", "are", "but", "not", "you", "your", "all", "any", "can",
    "had", "her", "was", "one", "our", "out", "has", "have", "his", "how", "its",
    "may", "who", "did", "get", "him", "she", "too", "use", "that", "this", "with",
    "what", "when", "where", "which", "will", "would", "should", "could", "from",
    "they", "them", "then", "than", "there", "their", "about", "into", "some",
    "just", "also", "been", "being", "were", "does", "like", "more", "most",
}

# Default lexicon per category; policies may extend it
DEFAULT_CATEGORY_TERMS: Dict[ContentCategory, List[str]] = {
    ContentCategory.HATE: ["inferior race", "subhuman", "go back to your country", "vermin"],
    ContentCategory.INSULTS: ["idiot", "stupid", "moron", "loser", "worthless", "pathetic"],
    ContentCategory.SEXUAL: ["explicit sex", "nude", "porn", "sexual act"],
    ContentCategory.VIOLENCE: ["kill", "murder", "shoot", "stab", "bomb", "attack them"],
    ContentCategory.MISCONDUCT: ["steal", "launder money", "counterfeit", "hack into", "bypass security"],
    ContentCategory.PROMPT_ATTACK: [
        "ignore previous instructions",
        "ignore all previous",
        "disregard your instructions",
        "reveal your system prompt",
        "developer mode",
        "jailbreak",
    ],
}

MANAGED_WORD_LISTS: Dict[ManagedWordList, List[str]] = {
    ManagedWordList.PROFANITY: ["fuck", "shit", "bullshit", "bastard", "asshole", "crap"],
}

PII_PATTERNS: Dict[PiiEntity, re.Pattern] = {
    PiiEntity.EMAIL: re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    PiiEntity.PHONE: re.compile(r"(?<!\d)(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}(?!\d)"),
    PiiEntity.US_SOCIAL_SECURITY_NUMBER: re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    PiiEntity.CREDIT_DEBIT_CARD_NUMBER: re.compile(r"\b(?:\d[ -]?){12,18}\d\b"),
    PiiEntity.IP_ADDRESS: re.compile(
        r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b"
    ),
    PiiEntity.URL: re.compile(r"\bhttps?://[^\s<>\"]+"),
}


@dataclass
class PiiSpan:
    """Matched sensitive span"""
    entity: str
    start: int
    end: int
    action: GuardrailAction

    def overlaps(self, other: "PiiSpan") -> bool:
        return self.start < other.end and other.start < self.end


def content_words(text: str) -> set:
    """Lowercased words minus stopwords and very short tokens"""
    return {w for w in WORD_PATTERN.findall(text.lower()) if len(w) > 2 and w not in STOPWORDS}


def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(r"(?<![A-Za-z0-9])" + re.escape(phrase.strip()) + r"(?![A-Za-z0-9])", re.IGNORECASE)


def contains_phrase(text: str, phrase: str) -> bool:
    return bool(phrase.strip()) and _phrase_pattern(phrase).search(text) is not None


class TopicMatcher:
    """Keyword and example-overlap matching for denied topics"""

    def __init__(self, example_overlap: float = 0.5):
        self.example_overlap = example_overlap

    def match(self, text: str, topics: List[TopicRule]) -> Optional[TopicRule]:
        words = content_words(text)
        for topic in topics:
            if any(contains_phrase(text, keyword) for keyword in topic.keywords):
                return topic
            for example in topic.examples:
                example_words = content_words(example)
                if example_words and len(words & example_words) / len(example_words) >= self.example_overlap:
                    return topic
        return None


class KeywordContentClassifier:
    """
    Scores each content category by counting distinct lexicon hits

    One hit is LOW confidence, two MEDIUM, three or more HIGH.
    """

    def __init__(self, extra_terms: Optional[Dict[ContentCategory, List[str]]] = None):
        self.terms: Dict[ContentCategory, List[str]] = {
            category: list(terms) for category, terms in DEFAULT_CATEGORY_TERMS.items()
        }
        for category, terms in (extra_terms or {}).items():
            self.terms.setdefault(category, []).extend(terms)

    def classify(self, text: str) -> Dict[ContentCategory, Severity]:
        scores = {}
        for category, terms in self.terms.items():
            hits = sum(1 for term in set(terms) if contains_phrase(text, term))
            if hits >= 3:
                scores[category] = Severity.HIGH
            elif hits == 2:
                scores[category] = Severity.MEDIUM
            elif hits == 1:
                scores[category] = Severity.LOW
            else:
                scores[category] = Severity.NONE
        return scores


def blocking_confidence(strength: Severity) -> Optional[Severity]:
    """Lowest detected confidence a filter of this strength blocks"""
    return {
        Severity.HIGH: Severity.LOW,
        Severity.MEDIUM: Severity.MEDIUM,
        Severity.LOW: Severity.HIGH,
        Severity.NONE: None,
    }[strength]


def find_blocked_word(text: str, words: List[str]) -> Optional[str]:
    lowered = text.lower()
    for word in words:
        if word and word.lower() in lowered:
            return word
    return None


def _luhn_valid(number: str) -> bool:
    digits = [int(d) for d in number if d.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    checksum = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        checksum += digit
    return checksum % 10 == 0


def find_pii_spans(
    text: str,
    entity_actions: Dict[PiiEntity, GuardrailAction],
    regex_rules: List[Tuple[str, re.Pattern, GuardrailAction]],
) -> List[PiiSpan]:
    """All configured sensitive spans, ordered by position"""
    spans = []
    for entity, action in entity_actions.items():
        for match in PII_PATTERNS[entity].finditer(text):
            if entity == PiiEntity.CREDIT_DEBIT_CARD_NUMBER and not _luhn_valid(match.group()):
                continue
            spans.append(PiiSpan(entity.value, match.start(), match.end(), action))
    for name, pattern, action in regex_rules:
        for match in pattern.finditer(text):
            if match.end() > match.start():
                spans.append(PiiSpan(name, match.start(), match.end(), action))
    spans.sort(key=lambda s: (s.start, -(s.end - s.start)))
    return spans


def anonymize(text: str, spans: List[PiiSpan]) -> str:
    """Replace spans with {ENTITY} placeholders, merging overlaps"""
    merged: List[PiiSpan] = []
    for span in sorted(spans, key=lambda s: (s.start, -(s.end - s.start))):
        if merged and span.start < merged[-1].end:
            merged[-1].end = max(merged[-1].end, span.end)
        else:
            merged.append(PiiSpan(span.entity, span.start, span.end, span.action))

    pieces = []
    cursor = 0
    for span in merged:
        pieces.append(text[cursor:span.start])
        pieces.append("{" + span.entity + "}")
        cursor = span.end
    pieces.append(text[cursor:])
    return "".join(pieces)
