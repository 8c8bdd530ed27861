"""
Guardrail Pipeline - Input and output safety evaluation

Checks run in a fixed order and the first blocking check wins:

1. Denied topics
2. Content-category filters (highest severity decides)
3. Word and managed word lists
4. Sensitive information (PII) - BLOCK beats ANONYMIZE
5. Contextual grounding / relevance (output only)

ANONYMIZE rewrites the matched spans and lets the remaining checks run on
the rewritten text.
"""

import re
from typing import Optional, List, Protocol

from colloquy.guardrails.detectors import (
    MANAGED_WORD_LISTS,
    KeywordContentClassifier,
    TopicMatcher,
    anonymize,
    blocking_confidence,
    find_blocked_word,
    find_pii_spans,
)
from colloquy.guardrails.grounding import grounding_score, relevance_score
from colloquy.models.guardrail import (
    ContentCategory,
    Direction,
    GuardrailAction,
    GuardrailPolicy,
    GuardrailResult,
    Severity,
)
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)

TOPIC_EXAMPLE_OVERLAP = 0.5


class GuardrailEvaluator(Protocol):
    """Guardrail capability consumed by the conversation engine"""

    async def evaluate(
        self,
        text: str,
        direction: Direction,
        context: Optional[str] = None,
        query: Optional[str] = None,
    ) -> GuardrailResult:
        ...


class GuardrailPipeline:
    """Default in-process GuardrailEvaluator"""

    def __init__(self, policy: GuardrailPolicy):
        self.policy = policy
        self.topic_matcher = TopicMatcher(example_overlap=TOPIC_EXAMPLE_OVERLAP)
        self.classifier = KeywordContentClassifier(policy.category_terms)
        self.word_list = list(policy.blocked_words)
        for managed in policy.managed_word_lists:
            self.word_list.extend(MANAGED_WORD_LISTS[managed])
        self.entity_actions = {rule.entity: rule.action for rule in policy.pii_rules}
        self.regex_rules = [
            (rule.name, re.compile(rule.pattern), rule.action)
            for rule in policy.regex_rules
        ]

    async def evaluate(
        self,
        text: str,
        direction: Direction,
        context: Optional[str] = None,
        query: Optional[str] = None,
    ) -> GuardrailResult:
        """Run all checks for one direction"""
        result = self.check(text, direction, context=context, query=query)
        if result.action != GuardrailAction.PASS:
            logger.info(
                "Guardrail %s on %s: %s",
                result.action.value,
                direction.value,
                ", ".join(result.matched_rules),
            )
        return result

    def check(
        self,
        text: str,
        direction: Direction,
        context: Optional[str] = None,
        query: Optional[str] = None,
    ) -> GuardrailResult:
        policy = self.policy

        # 1. Denied topics
        topic = self.topic_matcher.match(text, policy.denied_topics)
        if topic:
            return self._block(text, direction, [f"topic:{topic.name}"])

        # 2. Content filters
        category = self._worst_category(text, direction)
        if category:
            return self._block(text, direction, [f"content:{category.value}"])

        # 3. Word lists
        word = find_blocked_word(text, self.word_list)
        if word:
            return self._block(text, direction, [f"word:{word}"])

        # 4. Sensitive information
        matched: List[str] = []
        current = text
        spans = find_pii_spans(text, self.entity_actions, self.regex_rules)
        if spans:
            blocking = [s for s in spans if s.action == GuardrailAction.BLOCK]
            if blocking:
                return self._block(text, direction, sorted({f"pii:{s.entity}" for s in blocking}))
            current = anonymize(text, spans)
            matched = sorted({f"pii:{s.entity}" for s in spans})

        # 5. Grounding and relevance
        if direction == Direction.OUTPUT:
            failed = self._grounding_failure(current, context, query)
            if failed:
                return self._block(text, direction, matched + [failed])

        if matched:
            return GuardrailResult(
                action=GuardrailAction.ANONYMIZE,
                direction=direction,
                text=text,
                rewritten_text=current,
                matched_rules=matched,
            )
        return GuardrailResult(action=GuardrailAction.PASS, direction=direction, text=text)

    def _worst_category(self, text: str, direction: Direction) -> Optional[ContentCategory]:
        if not self.policy.content_filters:
            return None

        scores = self.classifier.classify(text)
        worst: Optional[ContentCategory] = None
        worst_rank = 0
        for content_filter in self.policy.content_filters:
            if content_filter.category == ContentCategory.PROMPT_ATTACK and direction == Direction.OUTPUT:
                continue
            strength = (
                content_filter.input_strength
                if direction == Direction.INPUT
                else content_filter.output_strength
            )
            threshold = blocking_confidence(strength)
            detected = scores.get(content_filter.category, Severity.NONE)
            if threshold is None or detected == Severity.NONE:
                continue
            if detected.rank >= threshold.rank and detected.rank > worst_rank:
                worst = content_filter.category
                worst_rank = detected.rank
        return worst

    def _grounding_failure(
        self,
        text: str,
        context: Optional[str],
        query: Optional[str],
    ) -> Optional[str]:
        policy = self.policy
        if policy.grounding_threshold is not None and context:
            score = grounding_score(text, context)
            if score is not None and score < policy.grounding_threshold:
                return f"grounding:{score:.2f}"
        if policy.relevance_threshold is not None and query:
            score = relevance_score(text, query)
            if score is not None and score < policy.relevance_threshold:
                return f"relevance:{score:.2f}"
        return None

    def _block(self, text: str, direction: Direction, rules: List[str]) -> GuardrailResult:
        return GuardrailResult(
            action=GuardrailAction.BLOCK,
            direction=direction,
            text=text,
            matched_rules=rules,
            blocked_message=self.policy.blocked_message(direction),
        )
