"""
Context Assembler - Retrieval-augmented context building

Turns a query vector into a ranked, token-budgeted block of passages with
citations that can be merged into a system prompt.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Sequence

from colloquy.context.retriever import Retriever, ranking_key
from colloquy.context.tokens import estimate_text_tokens
from colloquy.models.retrieval import AssembledContext, RetrievedChunk
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)

PASSAGE_SEPARATOR = "\n\n"


def rank_chunks(chunks: List[RetrievedChunk]) -> List[RetrievedChunk]:
    """
    Deterministic ranking

    Score descending, then newer recency first, then chunk id ascending.
    """
    return sorted(chunks, key=ranking_key)


class ContextAssembler:
    """Ranks retrieved chunks and packs them into a token budget"""

    def __init__(self, retriever: Retriever):
        self.retriever = retriever

    async def retrieve(
        self,
        query_vector: Sequence[float],
        k: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[RetrievedChunk]:
        """Fetch up to k chunks and rank them"""
        chunks = await self.retriever.search(query_vector, k, filters)
        return rank_chunks(chunks)[:k]

    def assemble(self, chunks: List[RetrievedChunk], token_budget: int) -> AssembledContext:
        """
        Greedy best-fit packing

        Chunks are visited in ranked order; a chunk that does not fit the
        remaining budget is skipped and smaller lower-ranked chunks still get
        a chance. Each chunk is charged for its rendered passage, marker and
        separator included.
        """
        remaining = token_budget
        included: List[RetrievedChunk] = []
        passages: List[str] = []

        for chunk in rank_chunks(chunks):
            passage = f"[{len(included) + 1}] {chunk.text}"
            cost = estimate_text_tokens(passage + PASSAGE_SEPARATOR)
            if cost <= remaining:
                included.append(chunk)
                passages.append(passage)
                remaining -= cost
            else:
                logger.debug("Skipping chunk %s (%d tokens, %d left)", chunk.chunk_id, cost, remaining)

        text = PASSAGE_SEPARATOR.join(passages)

        return AssembledContext(
            text=text,
            citations=[chunk.citation_ref for chunk in included],
            chunks=included,
            estimated_tokens=estimate_text_tokens(text),
            token_budget=token_budget,
        )

    async def build(
        self,
        query_vector: Sequence[float],
        k: int,
        token_budget: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> AssembledContext:
        """Retrieve then assemble"""
        started = datetime.now()
        chunks = await self.retrieve(query_vector, k, filters)
        context = self.assemble(chunks, token_budget)
        logger.info(
            "Assembled %d/%d chunks (%d/%d tokens) in %.1fms",
            len(context.chunks),
            len(chunks),
            context.estimated_tokens,
            token_budget,
            (datetime.now() - started).total_seconds() * 1000,
        )
        return context
