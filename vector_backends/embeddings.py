"""Embedding model loading for the in-process backends."""

from functools import lru_cache
from time import perf_counter

from sentence_transformers import SentenceTransformer

from retrieval_core.config import DEFAULT_EMBED_MODEL, EMBEDDING_DEVICE
from retrieval_core.logging_setup import get_logger


@lru_cache(maxsize=2)
def load_embedding_model(
    model_name: str = DEFAULT_EMBED_MODEL, device: str = EMBEDDING_DEVICE
) -> SentenceTransformer:
    """Load a sentence-transformers embedding model."""
    logger = get_logger(__name__)
    logger.info(
        "load_embedding_model_start", extra={"model_name": model_name, "device": device}
    )
    start = perf_counter()
    model = SentenceTransformer(model_name, device=device)
    duration_ms = (perf_counter() - start) * 1000
    logger.info(
        "load_embedding_model_complete",
        extra={"model_name": model_name, "device": device, "duration_ms": duration_ms},
    )
    return model
