"""Shared pytest fixtures for hybrid-recall tests.

This module provides fake backends, a fake embedder and sample corpora so
ranking and backend lifecycle code can be tested without external I/O.
"""

import threading
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from retrieval_core.config import RetrievalSettings
from retrieval_core.state import Document
from vector_backends import manager
from vector_backends.base import VectorBackend, filter_by_threshold
from vector_backends.registry import BackendRegistry


# =============================================================================
# PYTEST MARKERS REGISTRATION
# =============================================================================


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow-running")
    config.addinivalue_line("markers", "unit: mark test as unit test")


# =============================================================================
# FAKE EMBEDDER
# =============================================================================


class FakeEmbedder:
    """Fake sentence-transformers model.

    Embeds texts by counting a fixed vocabulary, so texts sharing words with
    the query get a higher inner product.
    """

    VOCAB = ("wizard", "fire", "spell", "dragon", "magic", "tower", "sample")

    def __init__(self) -> None:
        self.calls = 0

    def encode(
        self,
        texts: List[str],
        convert_to_numpy: bool = True,
        normalize_embeddings: bool = False,
        show_progress_bar: bool = False,
    ) -> np.ndarray:
        self.calls += 1
        arr = np.array(
            [
                [float(text.lower().count(word)) for word in self.VOCAB] + [0.1]
                for text in texts
            ],
            dtype="float32",
        )
        if normalize_embeddings:
            arr = arr / np.linalg.norm(arr, axis=1, keepdims=True)
        if convert_to_numpy:
            return arr
        return arr.tolist()


@pytest.fixture
def fake_embedder():
    """Fixture providing a FakeEmbedder instance."""
    return FakeEmbedder()


# =============================================================================
# FAKE BACKENDS
# =============================================================================


class FakeBackend(VectorBackend):
    """In-memory backend that records lifecycle calls.

    ``query_collection`` returns stored documents in insertion order, each
    carrying the score it was inserted with.
    """

    name = "fake"

    def __init__(self, healthy: bool = True, init_delay: float = 0.0) -> None:
        self.healthy = healthy
        self.init_delay = init_delay
        self.init_calls = 0
        self.health_calls = 0
        self.query_calls: List[Dict[str, object]] = []
        self.settings: Optional[RetrievalSettings] = None
        self.collections: Dict[str, List[Document]] = {}

    def initialize(self, settings: Optional[RetrievalSettings]) -> None:
        self.init_calls += 1
        self.settings = settings
        if self.init_delay:
            threading.Event().wait(self.init_delay)

    def health_check(self) -> bool:
        self.health_calls += 1
        return self.healthy

    def get_saved_hashes(self, collection_id, settings=None):
        return [doc.identifier for doc in self.collections.get(collection_id, [])]

    def insert_vector_items(self, collection_id, items, settings=None):
        self.collections.setdefault(collection_id, []).extend(items)

    def delete_vector_items(self, collection_id, identifiers, settings=None):
        doomed = set(identifiers)
        self.collections[collection_id] = [
            doc
            for doc in self.collections.get(collection_id, [])
            if doc.identifier not in doomed
        ]

    def query_collection(self, collection_id, query_text, top_k, settings=None):
        self.query_calls.append(
            {"collection_id": collection_id, "query": query_text, "top_k": top_k}
        )
        return list(self.collections.get(collection_id, []))[:top_k]

    def query_multiple_collections(
        self, collection_ids, query_text, top_k, threshold=0.0, settings=None
    ):
        return {
            collection_id: filter_by_threshold(
                self.query_collection(collection_id, query_text, top_k, settings),
                threshold,
            )
            for collection_id in collection_ids
        }

    def purge_vector_index(self, collection_id, settings=None):
        self.collections.pop(collection_id, None)

    def purge_all_vector_indexes(self, settings=None):
        self.collections.clear()


class FailingBackend(FakeBackend):
    """Backend whose initialize always raises."""

    name = "failing"

    def initialize(self, settings):
        self.init_calls += 1
        raise ConnectionError("store unreachable")


class ExplodingQueryBackend(FakeBackend):
    """Backend that initializes fine but fails every query."""

    name = "exploding"

    def query_collection(self, collection_id, query_text, top_k, settings=None):
        raise RuntimeError("query timed out")


def make_registry(**factories) -> BackendRegistry:
    """Build a registry from name=factory keyword arguments."""
    return BackendRegistry(factories=factories)


@pytest.fixture
def fake_registry() -> BackendRegistry:
    """Registry with healthy, unhealthy and failing fakes.

    Includes "standard" so that alias and default resolution can be tested.
    """
    return make_registry(
        standard=FakeBackend,
        faiss=FakeBackend,
        lancedb=FakeBackend,
        qdrant=FakeBackend,
        milvus=FakeBackend,
        sick=lambda: FakeBackend(healthy=False),
        failing=FailingBackend,
        exploding=ExplodingQueryBackend,
    )


@pytest.fixture
def backend_cache(fake_registry):
    """Fresh BackendCache over the fake registry."""
    return manager.BackendCache(registry=fake_registry, max_size=3)


@pytest.fixture
def installed_cache(backend_cache):
    """Install ``backend_cache`` as the process-wide cache for the test."""
    manager.reset_backend_cache(backend_cache)
    yield backend_cache
    manager.reset_backend_cache()


# =============================================================================
# SAMPLE CORPORA
# =============================================================================


MAGIC_TEXTS = [
    "The wizard cast a powerful fire spell at the dragon",
    "Magic spells require concentration and mana",
    "The dragon breathed fire across the battlefield",
    "Ancient wizards studied magic in the tower",
    "She learned a new healing spell today",
]


@pytest.fixture
def magic_documents() -> List[Document]:
    """Five short fantasy sentences with identifiers doc-0 .. doc-4."""
    return [
        Document(identifier=f"doc-{i}", text=text, metadata={"position": i})
        for i, text in enumerate(MAGIC_TEXTS)
    ]


def with_scores(documents: Sequence[Document], scores: Sequence[float]) -> List[Document]:
    """Attach vector scores to documents."""
    return [
        Document(
            identifier=doc.identifier,
            text=doc.text,
            score=score,
            metadata=dict(doc.metadata),
        )
        for doc, score in zip(documents, scores)
    ]


@pytest.fixture
def scored_candidates(magic_documents) -> List[Document]:
    """Magic corpus carrying descending vector scores."""
    return with_scores(magic_documents, [0.9, 0.8, 0.7, 0.6, 0.5])
