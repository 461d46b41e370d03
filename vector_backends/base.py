"""Capability interface shared by all storage backends.

Design Note:
    ``VectorBackend`` only declares the contract; every method is abstract and
    each backend (ChromaDB, FAISS, storage-plugin HTTP) implements all of
    them. The backend cache in ``vector_backends.manager`` only relies on
    ``initialize`` and ``health_check``; the rest is passed through to callers.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from retrieval_core.config import RetrievalSettings
from retrieval_core.state import Document

# Prefixes that may appear in collection registry keys
KNOWN_BACKEND_PREFIXES = frozenset(
    ["standard", "vectra", "faiss", "lancedb", "qdrant", "milvus"]
)
KNOWN_SOURCE_PREFIXES = frozenset(
    [
        "transformers",
        "openai",
        "cohere",
        "ollama",
        "llamacpp",
        "vllm",
        "koboldcpp",
        "webllm",
        "openrouter",
        "togetherai",
        "mistral",
    ]
)


def strip_registry_prefix(collection_id: str) -> str:
    """Strip a ``backend:source:`` or legacy ``source:`` prefix.

    Examples:
        >>> strip_registry_prefix("lancedb:openai:chat_42")
        'chat_42'
        >>> strip_registry_prefix("ollama:chat_42")
        'chat_42'
        >>> strip_registry_prefix("chat:42")
        'chat:42'
    """
    if not collection_id or not isinstance(collection_id, str):
        return collection_id
    parts = collection_id.split(":")
    if (
        len(parts) >= 3
        and parts[0] in KNOWN_BACKEND_PREFIXES
        and parts[1] in KNOWN_SOURCE_PREFIXES
    ):
        return ":".join(parts[2:])
    if len(parts) >= 2 and parts[0] in KNOWN_SOURCE_PREFIXES:
        return ":".join(parts[1:])
    return collection_id


def filter_by_threshold(hits: List[Document], threshold: float) -> List[Document]:
    """Drop hits whose similarity score is below ``threshold``."""
    if threshold <= 0:
        return hits
    return [hit for hit in hits if (hit.score or 0.0) >= threshold]


class VectorBackend(ABC):
    """Abstract interface for storage backends.

    Implementations are constructed without arguments; configuration arrives
    through ``initialize`` and per-call ``settings``.
    """

    name: str = "base"

    @abstractmethod
    def initialize(self, settings: Optional[RetrievalSettings]) -> None:  # pragma: no cover - interface
        """Connect to or create the underlying store. Raises on failure."""
        raise NotImplementedError

    @abstractmethod
    def health_check(self) -> bool:  # pragma: no cover - interface
        """Return True when the backend is ready to serve requests."""
        raise NotImplementedError

    @abstractmethod
    def get_saved_hashes(
        self, collection_id: str, settings: Optional[RetrievalSettings] = None
    ) -> List[str]:  # pragma: no cover - interface
        """Return identifiers of every item stored in the collection."""
        raise NotImplementedError

    @abstractmethod
    def insert_vector_items(
        self,
        collection_id: str,
        items: Sequence[Document],
        settings: Optional[RetrievalSettings] = None,
    ) -> None:  # pragma: no cover - interface
        """Insert or update items. An empty sequence is a no-op."""
        raise NotImplementedError

    @abstractmethod
    def delete_vector_items(
        self,
        collection_id: str,
        identifiers: Sequence[str],
        settings: Optional[RetrievalSettings] = None,
    ) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def query_collection(
        self,
        collection_id: str,
        query_text: str,
        top_k: int,
        settings: Optional[RetrievalSettings] = None,
    ) -> List[Document]:  # pragma: no cover - interface
        """Return up to top_k documents with similarity in ``Document.score``.

        Results are sorted by similarity (highest first).
        """
        raise NotImplementedError

    @abstractmethod
    def query_multiple_collections(
        self,
        collection_ids: Sequence[str],
        query_text: str,
        top_k: int,
        threshold: float = 0.0,
        settings: Optional[RetrievalSettings] = None,
    ) -> Dict[str, List[Document]]:  # pragma: no cover - interface
        """Query several collections; a failing collection yields an empty list."""
        raise NotImplementedError

    @abstractmethod
    def purge_vector_index(
        self, collection_id: str, settings: Optional[RetrievalSettings] = None
    ) -> None:  # pragma: no cover - interface
        """Remove a collection and everything stored in it."""
        raise NotImplementedError

    @abstractmethod
    def purge_all_vector_indexes(
        self, settings: Optional[RetrievalSettings] = None
    ) -> None:  # pragma: no cover - interface
        raise NotImplementedError
