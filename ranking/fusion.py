"""Combine vector similarity with BM25 relevance over a candidate window.

BM25 is re-scoped to the candidates of the current query: a fresh index is
built over exactly the candidate texts on every call. IDF is therefore
relative to the retrieved window rather than the whole stored corpus, which
keeps scoring stateless and avoids stale indexes.

Two fusion strategies:
- Weighted (``apply_bm25_scoring``):
      combined = alpha * vector_score + beta * bm25 / max(bm25)
- Reciprocal Rank Fusion (``reciprocal_rank_fusion``):
      rrf = alpha / (k + rank_vector) + beta / (k + rank_bm25)
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from retrieval_core import config
from retrieval_core.logging_setup import get_logger
from retrieval_core.state import Document, RankedResult
from ranking.bm25 import BM25Index


@dataclass
class FusionOptions:
    k1: float = config.BM25_K1
    b: float = config.BM25_B
    alpha: float = config.HYBRID_ALPHA
    beta: float = config.HYBRID_BETA
    rrf_k: int = config.RRF_K

    @classmethod
    def from_settings(cls, settings: config.RetrievalSettings) -> "FusionOptions":
        return cls(
            k1=settings.bm25_k1,
            b=settings.bm25_b,
            alpha=settings.alpha,
            beta=settings.beta,
            rrf_k=settings.rrf_k,
        )


def _vector_score(document: Document) -> float:
    return float(document.score) if document.score is not None else 0.0


def _bm25_window_scores(
    candidates: Sequence[Document], query: str, options: FusionOptions
) -> np.ndarray:
    index = BM25Index(k1=options.k1, b=options.b)
    index.index_documents(candidates)
    return index.score_all(query)


def _sort_stable(results: List[RankedResult]) -> List[RankedResult]:
    # sorted() is stable, so equal scores keep candidate order
    return sorted(results, key=lambda r: r.score, reverse=True)


def vector_only(candidates: Sequence[Document]) -> List[RankedResult]:
    """Rank candidates by their vector score alone."""
    results = [
        RankedResult(
            document=doc,
            score=_vector_score(doc),
            vector_score=_vector_score(doc),
        )
        for doc in candidates
    ]
    return _sort_stable(results)


def apply_bm25_scoring(
    candidates: Sequence[Document],
    query: str,
    options: Optional[FusionOptions] = None,
) -> List[RankedResult]:
    """Re-rank vector candidates with weighted BM25 fusion.

    Args:
        candidates: Documents carrying their vector similarity in ``score``.
        query: Query text scored against the candidate texts.
        options: BM25 parameters and fusion weights.

    Returns:
        All candidates sorted by combined score (descending), each annotated
        with the vector score, raw BM25 score and normalized BM25 score.
    """
    options = options or FusionOptions()
    logger = get_logger(__name__)
    candidates = list(candidates)
    if not candidates:
        return []

    raw = _bm25_window_scores(candidates, query, options)
    max_raw = float(raw.max()) if raw.size else 0.0
    if max_raw > 0:
        normalized = raw / max_raw
    else:
        normalized = np.zeros_like(raw)

    results: List[RankedResult] = []
    for doc, bm25_raw, bm25_norm in zip(candidates, raw, normalized):
        vector_score = _vector_score(doc)
        results.append(
            RankedResult(
                document=doc,
                score=options.alpha * vector_score + options.beta * float(bm25_norm),
                vector_score=vector_score,
                bm25_score=float(bm25_raw),
                bm25_normalized=float(bm25_norm),
            )
        )

    ranked = _sort_stable(results)
    logger.debug(
        "bm25_fusion_complete",
        extra={
            "candidates": len(candidates),
            "alpha": options.alpha,
            "beta": options.beta,
            "max_bm25": max_raw,
            "top_score": ranked[0].score,
        },
    )
    return ranked


def reciprocal_rank_fusion(
    candidates: Sequence[Document],
    query: str,
    options: Optional[FusionOptions] = None,
) -> List[RankedResult]:
    """Re-rank vector candidates with weighted Reciprocal Rank Fusion.

    Candidates without any BM25 match only receive the vector term.
    Scores are normalized to [0, 1] by the batch maximum.
    """
    options = options or FusionOptions()
    candidates = list(candidates)
    if not candidates:
        return []

    raw = _bm25_window_scores(candidates, query, options)
    vector_order = sorted(
        range(len(candidates)), key=lambda i: _vector_score(candidates[i]), reverse=True
    )
    bm25_order = [int(i) for i in np.argsort(-raw, kind="stable") if raw[i] > 0]

    rrf_scores: Dict[int, float] = {i: 0.0 for i in range(len(candidates))}
    for rank, idx in enumerate(vector_order, start=1):
        rrf_scores[idx] += options.alpha / (options.rrf_k + rank)
    for rank, idx in enumerate(bm25_order, start=1):
        rrf_scores[idx] += options.beta / (options.rrf_k + rank)

    max_score = max(rrf_scores.values())
    if max_score <= 0:
        max_score = 1.0

    results = [
        RankedResult(
            document=doc,
            score=rrf_scores[i] / max_score,
            vector_score=_vector_score(doc),
            bm25_score=float(raw[i]),
            rrf_score=rrf_scores[i],
        )
        for i, doc in enumerate(candidates)
    ]
    return _sort_stable(results)


def rank_candidates(
    candidates: Sequence[Document],
    query: str,
    mode: str = config.SCORING_MODE,
    options: Optional[FusionOptions] = None,
) -> List[RankedResult]:
    """Dispatch to the ranking strategy named by ``mode``."""
    mode = mode.lower()
    if mode == "vector":
        return vector_only(candidates)
    if mode == "hybrid":
        return apply_bm25_scoring(candidates, query, options)
    if mode == "rrf":
        return reciprocal_rank_fusion(candidates, query, options)
    raise ValueError(
        f"Unknown scoring mode: {mode}. Valid options: {', '.join(config.SCORING_MODES)}"
    )
