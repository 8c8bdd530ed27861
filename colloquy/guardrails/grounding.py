"""Contextual grounding and relevance scoring"""

from typing import Optional

from colloquy.guardrails.detectors import content_words


def grounding_score(response: str, context: str) -> Optional[float]:
    """
    Share of the response's content words found in the source context

    Returns None when either side has no content words, in which case the
    check does not apply.
    """
    response_words = content_words(response)
    context_words = content_words(context)
    if not response_words or not context_words:
        return None
    return len(response_words & context_words) / len(response_words)


def relevance_score(response: str, query: str) -> Optional[float]:
    """Share of the query's content words addressed by the response"""
    query_words = content_words(query)
    response_words = content_words(response)
    if not query_words or not response_words:
        return None
    return len(query_words & response_words) / len(query_words)
