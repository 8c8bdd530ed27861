"""Context-window budget enforcement"""

from typing import Optional, List

from colloquy.context.tokens import estimate_message_tokens, estimate_text_tokens
from colloquy.errors.exceptions import ContextOverflowError
from colloquy.models.conversation import Message, Role
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)


class ContextWindowManager:
    """
    Prunes the model's view of history to fit the context window

    The transcript itself is never touched; only the list handed to the model
    shrinks. Oldest messages go first. An assistant tool-use message and the
    tool-result message answering it are dropped together, and the last
    ``min_retained_turns`` user turns are never dropped.
    """

    def __init__(self, limit_tokens: int, min_retained_turns: int = 1):
        self.limit_tokens = limit_tokens
        self.min_retained_turns = max(1, min_retained_turns)

    def estimate(
        self,
        system_prompt: Optional[str],
        messages: List[Message],
        context_text: Optional[str] = None,
    ) -> int:
        return (
            estimate_text_tokens(system_prompt)
            + estimate_text_tokens(context_text)
            + sum(estimate_message_tokens(m) for m in messages)
        )

    def fit(
        self,
        system_prompt: Optional[str],
        messages: List[Message],
        context_text: Optional[str] = None,
        limit_tokens: Optional[int] = None,
    ) -> List[Message]:
        """
        Return the longest suffix-preserving view that fits

        Raises:
            ContextOverflowError: Still over budget with only protected turns left
        """
        limit = limit_tokens or self.limit_tokens
        total = self.estimate(system_prompt, messages, context_text)
        if total <= limit:
            return list(messages)

        protected_start = self._protected_start(messages)
        units = self._droppable_units(messages[:protected_start])
        protected = messages[protected_start:]

        dropped = 0
        while total > limit and units:
            unit = units.pop(0)
            total -= sum(estimate_message_tokens(m) for m in unit)
            dropped += len(unit)

        kept = [m for unit in units for m in unit] + list(protected)
        if total > limit:
            raise ContextOverflowError(total, limit, len(kept))

        logger.info("Pruned %d message(s) to fit %d tokens (now %d)", dropped, limit, total)
        return kept

    def _protected_start(self, messages: List[Message]) -> int:
        user_indices = [i for i, m in enumerate(messages) if m.role == Role.USER]
        if len(user_indices) < self.min_retained_turns:
            return 0
        return user_indices[-self.min_retained_turns]

    def _droppable_units(self, messages: List[Message]) -> List[List[Message]]:
        """Group messages so tool-use/tool-result pairs drop atomically"""
        units: List[List[Message]] = []
        i = 0
        while i < len(messages):
            unit = [messages[i]]
            if messages[i].role == Role.ASSISTANT and messages[i].tool_calls:
                j = i + 1
                while j < len(messages) and messages[j].role == Role.TOOL:
                    unit.append(messages[j])
                    j += 1
                i = j
            else:
                i += 1
            units.append(unit)
        return units
