"""FAISS-based in-memory backend."""

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import faiss
import numpy as np

from retrieval_core.config import RetrievalSettings
from retrieval_core.errors import BackendQueryError
from retrieval_core.logging_setup import get_logger
from retrieval_core.state import Document
from vector_backends.base import (
    VectorBackend,
    filter_by_threshold,
    strip_registry_prefix,
)
from vector_backends.embeddings import load_embedding_model


def _normalize(vecs: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vecs, axis=1, keepdims=True) + 1e-10
    return vecs / norms


@dataclass
class _FaissCollection:
    index: faiss.IndexFlatIP
    documents: List[Document] = field(default_factory=list)
    embeddings: Optional[np.ndarray] = None


class FaissBackend(VectorBackend):
    """Inner-product index over normalized embeddings, one per collection.

    Nothing is persisted; contents live as long as the instance does.
    """

    name = "faiss"

    def __init__(self) -> None:
        self.embedder = None
        self.dim = 0
        self._collections: Dict[str, _FaissCollection] = {}
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)

    def initialize(self, settings: Optional[RetrievalSettings]) -> None:
        settings = settings or RetrievalSettings()
        self._logger.info("faiss_backend_init", extra={"model_name": settings.embed_model})
        self.embedder = load_embedding_model(model_name=settings.embed_model)
        sample = self.embedder.encode(
            ["sample"], convert_to_numpy=True, normalize_embeddings=True
        )
        self.dim = sample.shape[1] if len(sample.shape) > 1 else sample.shape[0]
        self._logger.debug("faiss_backend_ready", extra={"embedding_dim": self.dim})

    def health_check(self) -> bool:
        return self.embedder is not None and self.dim > 0

    def _embed(self, texts: List[str]) -> np.ndarray:
        if self.embedder is None:
            raise BackendQueryError(
                "FAISS backend used before initialize()", backend=self.name
            )
        vectors = self.embedder.encode(
            texts, convert_to_numpy=True, normalize_embeddings=True
        )
        vectors = np.asarray(vectors, dtype="float32")
        if vectors.ndim == 1:
            vectors = vectors.reshape(1, -1)
        return _normalize(vectors).astype("float32")

    def _get(self, collection_id: str) -> Optional[_FaissCollection]:
        return self._collections.get(strip_registry_prefix(collection_id))

    def _rebuild(self, collection: _FaissCollection) -> None:
        collection.index.reset()
        if collection.embeddings is not None and len(collection.embeddings):
            collection.index.add(collection.embeddings)

    def get_saved_hashes(
        self, collection_id: str, settings: Optional[RetrievalSettings] = None
    ) -> List[str]:
        with self._lock:
            collection = self._get(collection_id)
            if collection is None:
                return []
            return [doc.identifier for doc in collection.documents]

    def insert_vector_items(
        self,
        collection_id: str,
        items: Sequence[Document],
        settings: Optional[RetrievalSettings] = None,
    ) -> None:
        if not items:
            self._logger.debug("faiss_insert_empty")
            return
        new_vectors = self._embed([item.text for item in items])
        key = strip_registry_prefix(collection_id)
        with self._lock:
            collection = self._collections.get(key)
            if collection is None:
                collection = _FaissCollection(index=faiss.IndexFlatIP(self.dim))
                self._collections[key] = collection

            # Upsert semantics: replace items whose identifier already exists
            incoming = {item.identifier for item in items}
            keep = [
                i
                for i, doc in enumerate(collection.documents)
                if doc.identifier not in incoming
            ]
            if len(keep) != len(collection.documents):
                collection.documents = [collection.documents[i] for i in keep]
                collection.embeddings = (
                    collection.embeddings[keep]
                    if collection.embeddings is not None
                    else None
                )

            collection.documents.extend(items)
            if collection.embeddings is None or collection.embeddings.size == 0:
                collection.embeddings = new_vectors
            else:
                collection.embeddings = np.vstack([collection.embeddings, new_vectors])
            self._rebuild(collection)
            total = len(collection.documents)
        self._logger.info(
            "faiss_insert_complete",
            extra={"collection_id": key, "items": len(items), "total_items": total},
        )

    def delete_vector_items(
        self,
        collection_id: str,
        identifiers: Sequence[str],
        settings: Optional[RetrievalSettings] = None,
    ) -> None:
        doomed = set(identifiers)
        with self._lock:
            collection = self._get(collection_id)
            if collection is None or not doomed:
                return
            keep = [
                i
                for i, doc in enumerate(collection.documents)
                if doc.identifier not in doomed
            ]
            collection.documents = [collection.documents[i] for i in keep]
            if collection.embeddings is not None:
                collection.embeddings = collection.embeddings[keep]
            self._rebuild(collection)

    def query_collection(
        self,
        collection_id: str,
        query_text: str,
        top_k: int,
        settings: Optional[RetrievalSettings] = None,
    ) -> List[Document]:
        with self._lock:
            collection = self._get(collection_id)
            if collection is None or collection.index.ntotal == 0 or top_k <= 0:
                return []
            n_results = min(top_k, collection.index.ntotal)
            query_vec = self._embed([query_text])
            scores, indices = collection.index.search(query_vec, n_results)
            hits: List[Document] = []
            for score, idx in zip(scores[0], indices[0]):
                if idx == -1 or idx >= len(collection.documents):
                    continue
                doc = collection.documents[idx]
                hits.append(
                    Document(
                        identifier=doc.identifier,
                        text=doc.text,
                        score=float(score),
                        metadata=dict(doc.metadata),
                    )
                )
        self._logger.info(
            "faiss_query_complete",
            extra={
                "collection_id": collection_id,
                "results": len(hits),
                "top_score": hits[0].score if hits else 0,
            },
        )
        return hits

    def query_multiple_collections(
        self,
        collection_ids: Sequence[str],
        query_text: str,
        top_k: int,
        threshold: float = 0.0,
        settings: Optional[RetrievalSettings] = None,
    ) -> Dict[str, List[Document]]:
        results: Dict[str, List[Document]] = {}
        for collection_id in collection_ids:
            try:
                hits = self.query_collection(collection_id, query_text, top_k, settings)
            except Exception as exc:
                self._logger.error(
                    "faiss_query_collection_failed",
                    extra={"collection_id": collection_id, "error": str(exc)},
                )
                hits = []
            results[collection_id] = filter_by_threshold(hits, threshold)
        return results

    def purge_vector_index(
        self, collection_id: str, settings: Optional[RetrievalSettings] = None
    ) -> None:
        with self._lock:
            removed = self._collections.pop(strip_registry_prefix(collection_id), None)
        self._logger.info(
            "faiss_purge_complete",
            extra={"collection_id": collection_id, "existed": removed is not None},
        )

    def purge_all_vector_indexes(
        self, settings: Optional[RetrievalSettings] = None
    ) -> None:
        with self._lock:
            count = len(self._collections)
            self._collections.clear()
        self._logger.info("faiss_purge_all_complete", extra={"collections": count})
