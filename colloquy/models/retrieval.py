"""Retrieval models"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


class RetrievedChunk(BaseModel):
    """Retrieval unit of a source document"""
    chunk_id: str
    source_id: str
    text: str
    score: float = 0.0  # Similarity to the query
    recency: Optional[datetime] = None  # None sorts as oldest
    citation: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def citation_ref(self) -> str:
        return self.citation or self.source_id


class AssembledContext(BaseModel):
    """Token-budgeted context ready to merge into a prompt"""
    text: str = ""
    citations: List[str] = Field(default_factory=list)
    chunks: List[RetrievedChunk] = Field(default_factory=list)
    estimated_tokens: int = 0
    token_budget: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.chunks
