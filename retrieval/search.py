"""Ranking entry point: fetch candidates from a backend and re-rank them."""

from typing import Dict, List, Optional, Sequence

from retrieval_core import config
from retrieval_core.config import RetrievalSettings
from retrieval_core.errors import BackendQueryError, RetrievalError
from retrieval_core.logging_setup import get_logger
from retrieval_core.state import Document, RankedResult
from ranking.fusion import FusionOptions, rank_candidates
from vector_backends.base import VectorBackend
from vector_backends.manager import get_backend, get_backend_for_collection

__all__ = [
    "candidate_window",
    "rank_and_trim",
    "retrieve",
    "retrieve_for_collection",
    "retrieve_many",
]


def candidate_window(top_k: int, scoring_mode: str) -> int:
    """Number of candidates to fetch from the backend for ``top_k`` results.

    Fusion modes re-rank, so they fetch a wider window than they return.
    """
    if scoring_mode == "vector":
        return top_k
    return max(top_k, min(top_k * config.FETCH_MULTIPLIER, config.MAX_FETCH_K))


def rank_and_trim(
    candidates: Sequence[Document],
    query: str,
    settings: RetrievalSettings,
    top_k: int,
) -> List[RankedResult]:
    """Rank candidates with the configured mode, apply threshold and cut."""
    ranked = rank_candidates(
        candidates,
        query,
        mode=settings.scoring_mode,
        options=FusionOptions.from_settings(settings),
    )
    if settings.score_threshold > 0:
        ranked = [r for r in ranked if r.score >= settings.score_threshold]
    return ranked[:top_k]


def _query_failure(backend: VectorBackend, target: str, exc: Exception) -> BackendQueryError:
    # Call-time failures are reported per call; health status is untouched
    name = getattr(backend, "name", None)
    return BackendQueryError(
        f"Query against {name or 'backend'} failed for {target}: {exc}",
        backend=name,
        cause=exc,
    )


def _query_backend(
    backend: VectorBackend,
    collection_id: str,
    query: str,
    fetch_k: int,
    settings: RetrievalSettings,
) -> List[Document]:
    try:
        return backend.query_collection(collection_id, query, fetch_k, settings)
    except RetrievalError:
        raise
    except Exception as exc:
        raise _query_failure(backend, f"collection {collection_id}", exc) from exc


def _query_backend_many(
    backend: VectorBackend,
    collection_ids: List[str],
    query: str,
    fetch_k: int,
    threshold: float,
    settings: RetrievalSettings,
) -> Dict[str, List[Document]]:
    try:
        return backend.query_multiple_collections(
            collection_ids, query, fetch_k, threshold, settings
        )
    except RetrievalError:
        raise
    except Exception as exc:
        raise _query_failure(
            backend, f"collections {', '.join(collection_ids)}", exc
        ) from exc


def _retrieve_from(
    backend: VectorBackend,
    query: str,
    collection_id: str,
    settings: RetrievalSettings,
    top_k: int,
    run_id: Optional[str],
) -> List[RankedResult]:
    logger = get_logger(__name__, run_id=run_id)
    fetch_k = candidate_window(top_k, settings.scoring_mode)
    logger.debug(
        "retrieve_start",
        extra={
            "query": query,
            "collection_id": collection_id,
            "backend": getattr(backend, "name", None),
            "scoring_mode": settings.scoring_mode,
            "top_k": top_k,
            "fetch_k": fetch_k,
        },
    )
    candidates = _query_backend(backend, collection_id, query, fetch_k, settings)
    results = rank_and_trim(candidates, query, settings, top_k)
    logger.info(
        "retrieve_complete",
        extra={
            "collection_id": collection_id,
            "candidates": len(candidates),
            "results": len(results),
            "top_score": results[0].score if results else 0,
        },
    )
    return results


def retrieve(
    query: str,
    collection_id: str,
    settings: Optional[RetrievalSettings] = None,
    *,
    backend_name: Optional[str] = None,
    top_k: Optional[int] = None,
    run_id: Optional[str] = None,
) -> List[RankedResult]:
    """Return the ranked fragments of ``collection_id`` most relevant to ``query``.

    Args:
        query: Query text.
        collection_id: Collection to search.
        settings: Per-operation settings (backend, scoring mode, weights).
        backend_name: Explicit backend override.
        top_k: Number of results; defaults to ``settings.top_k``.
        run_id: Optional run correlation ID for logging.

    Raises:
        RetrievalError: Backend could not be resolved, or its query failed.
    """
    settings = settings or RetrievalSettings()
    top_k = settings.top_k if top_k is None else top_k
    if not query or not query.strip() or top_k <= 0:
        return []
    backend = get_backend(settings, backend_name)
    return _retrieve_from(backend, query, collection_id, settings, top_k, run_id)


def retrieve_for_collection(
    query: str,
    collection_id: str,
    stored_backend_name: str,
    settings: Optional[RetrievalSettings] = None,
    *,
    top_k: Optional[int] = None,
    run_id: Optional[str] = None,
) -> List[RankedResult]:
    """Like ``retrieve`` but always uses the backend the collection was created with."""
    settings = settings or RetrievalSettings()
    top_k = settings.top_k if top_k is None else top_k
    backend = get_backend_for_collection(stored_backend_name, settings)
    if not query or not query.strip() or top_k <= 0:
        return []
    return _retrieve_from(backend, query, collection_id, settings, top_k, run_id)


def retrieve_many(
    query: str,
    collection_ids: Sequence[str],
    settings: Optional[RetrievalSettings] = None,
    *,
    backend_name: Optional[str] = None,
    top_k: Optional[int] = None,
    threshold: float = 0.0,
    run_id: Optional[str] = None,
) -> List[RankedResult]:
    """Search several collections of one backend and rank the merged window.

    Collections that fail to answer contribute no candidates.
    """
    logger = get_logger(__name__, run_id=run_id)
    settings = settings or RetrievalSettings()
    top_k = settings.top_k if top_k is None else top_k
    if not query or not query.strip() or top_k <= 0 or not collection_ids:
        return []

    backend = get_backend(settings, backend_name)
    fetch_k = candidate_window(top_k, settings.scoring_mode)
    per_collection = _query_backend_many(
        backend, list(collection_ids), query, fetch_k, threshold, settings
    )

    candidates: List[Document] = []
    for collection_id in collection_ids:
        candidates.extend(per_collection.get(collection_id, []))
    # Keep the best vector scores when the merged window is too wide
    candidates.sort(key=lambda doc: doc.score or 0.0, reverse=True)
    candidates = candidates[:fetch_k]

    results = rank_and_trim(candidates, query, settings, top_k)
    logger.info(
        "retrieve_many_complete",
        extra={
            "collections": len(collection_ids),
            "candidates": len(candidates),
            "results": len(results),
        },
    )
    return results
