"""Shared data structures for ranking and backend dispatch.

Design Note:
    Result records are explicit dataclasses with named optional fields rather
    than free-form dicts. A ``RankedResult`` always carries the combined score
    used for ordering; the component scores are only set by the scoring mode
    that produced them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Document:
    """A stored text fragment.

    ``score`` is the similarity score from an upstream vector query, if any.
    """

    identifier: str
    text: str
    score: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoredDocument:
    """A BM25 search hit."""

    document: Document
    score: float


@dataclass
class RankedResult:
    """One entry of a ranked result list."""

    document: Document
    score: float
    vector_score: Optional[float] = None
    bm25_score: Optional[float] = None
    bm25_normalized: Optional[float] = None
    rrf_score: Optional[float] = None

    @property
    def identifier(self) -> str:
        return self.document.identifier

    @property
    def text(self) -> str:
        return self.document.text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "text": self.text,
            "score": self.score,
            "vector_score": self.vector_score,
            "bm25_score": self.bm25_score,
            "bm25_normalized": self.bm25_normalized,
            "rrf_score": self.rrf_score,
            "metadata": dict(self.document.metadata),
        }


class BackendStatus(str, Enum):
    """Lifecycle state of a backend name inside the backend cache."""

    ABSENT = "absent"
    INITIALIZING = "initializing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
