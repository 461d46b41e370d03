"""ChromaDB-backed default ("standard") backend with persistent storage."""

import hashlib
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, cast

import chromadb
from chromadb.api.types import EmbeddingFunction, Embeddable
from chromadb.config import Settings
from chromadb.utils import embedding_functions

from retrieval_core.config import RetrievalSettings
from retrieval_core.errors import BackendQueryError
from retrieval_core.logging_setup import get_logger
from retrieval_core.state import Document
from vector_backends.base import (
    VectorBackend,
    filter_by_threshold,
    strip_registry_prefix,
)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")
_MAX_NAME_LENGTH = 63


def collection_name(collection_id: str) -> str:
    """Map a collection id onto chroma's naming rules.

    Chroma names are 3-63 characters from ``[a-zA-Z0-9._-]`` and must start
    and end with an alphanumeric character.
    """
    name = _INVALID_NAME_CHARS.sub("-", strip_registry_prefix(collection_id))
    name = name.strip("._-")
    if len(name) > _MAX_NAME_LENGTH:
        digest = hashlib.sha1(collection_id.encode("utf-8")).hexdigest()[:8]
        name = name[: _MAX_NAME_LENGTH - 9].rstrip("._-") + "-" + digest
    if len(name) < 3:
        name = f"{name}-col" if name else "col"
    return name


def _clean_metadata(document: Document) -> Dict[str, Any]:
    # Chroma only stores scalar metadata values
    metadata: Dict[str, Any] = {}
    for key, value in document.metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            metadata[key] = value
        else:
            metadata[key] = json.dumps(value, default=str)
    metadata["identifier"] = document.identifier
    return metadata


class ChromaBackend(VectorBackend):
    """Persistent local store; one chroma collection per collection id."""

    name = "standard"

    def __init__(self) -> None:
        self.client = None
        self.embedding_fn = None
        self.persist_path: Optional[Path] = None
        self._logger = get_logger(__name__)

    def initialize(self, settings: Optional[RetrievalSettings]) -> None:
        settings = settings or RetrievalSettings()
        persist_path = Path(settings.data_dir) / "chromadb"
        persist_path.mkdir(parents=True, exist_ok=True)
        self._logger.info(
            "chroma_backend_init",
            extra={
                "persist_path": str(persist_path),
                "model_name": settings.embed_model,
            },
        )
        self.client = chromadb.Client(
            Settings(is_persistent=True, persist_directory=str(persist_path))
        )
        self.embedding_fn = embedding_functions.SentenceTransformerEmbeddingFunction(
            model_name=settings.embed_model
        )
        self.persist_path = persist_path

    def health_check(self) -> bool:
        if self.client is None:
            return False
        try:
            self.client.heartbeat()
        except Exception as exc:
            self._logger.warning("chroma_health_check_failed", extra={"error": str(exc)})
            return False
        return True

    def _require_client(self):
        if self.client is None:
            raise BackendQueryError(
                "Chroma backend used before initialize()", backend=self.name
            )
        return self.client

    def _collection(self, collection_id: str):
        client = self._require_client()
        return client.get_or_create_collection(
            name=collection_name(collection_id),
            embedding_function=cast(EmbeddingFunction[Embeddable], self.embedding_fn),
            metadata={"hnsw:space": "cosine"},
        )

    def get_saved_hashes(
        self, collection_id: str, settings: Optional[RetrievalSettings] = None
    ) -> List[str]:
        result = self._collection(collection_id).get(include=[])
        return [str(item_id) for item_id in (result.get("ids") or [])]

    def insert_vector_items(
        self,
        collection_id: str,
        items: Sequence[Document],
        settings: Optional[RetrievalSettings] = None,
    ) -> None:
        if not items:
            self._logger.debug("chroma_insert_empty")
            return
        self._collection(collection_id).upsert(
            ids=[item.identifier for item in items],
            documents=[item.text for item in items],
            metadatas=[_clean_metadata(item) for item in items],
        )
        self._logger.info(
            "chroma_insert_complete",
            extra={"collection_id": collection_id, "items": len(items)},
        )

    def delete_vector_items(
        self,
        collection_id: str,
        identifiers: Sequence[str],
        settings: Optional[RetrievalSettings] = None,
    ) -> None:
        if not identifiers:
            return
        self._collection(collection_id).delete(ids=list(identifiers))
        self._logger.info(
            "chroma_delete_complete",
            extra={"collection_id": collection_id, "items": len(identifiers)},
        )

    def query_collection(
        self,
        collection_id: str,
        query_text: str,
        top_k: int,
        settings: Optional[RetrievalSettings] = None,
    ) -> List[Document]:
        collection = self._collection(collection_id)
        n_results = min(top_k, collection.count())
        if n_results <= 0:
            return []
        self._logger.debug(
            "chroma_query_start",
            extra={"collection_id": collection_id, "top_k": n_results},
        )
        results = collection.query(
            query_texts=[query_text],
            n_results=n_results,
            include=["documents", "metadatas", "distances"],
        )
        documents_list = results.get("documents") or [[]]
        ids_list = results.get("ids") or [[]]
        metadatas = results.get("metadatas") or [[]]
        distances = results.get("distances") or [[]]

        hits: List[Document] = []
        for idx, text in enumerate(documents_list[0]):
            metadata = dict(metadatas[0][idx] or {}) if metadatas[0] else {}
            distance = distances[0][idx] if distances[0] else 0.0
            identifier = metadata.pop("identifier", None) or ids_list[0][idx]
            hits.append(
                Document(
                    identifier=str(identifier),
                    text=text or "",
                    score=1.0 - float(distance),
                    metadata=metadata,
                )
            )
        self._logger.info(
            "chroma_query_complete",
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
                    "chroma_query_collection_failed",
                    extra={"collection_id": collection_id, "error": str(exc)},
                )
                hits = []
            results[collection_id] = filter_by_threshold(hits, threshold)
        return results

    def purge_vector_index(
        self, collection_id: str, settings: Optional[RetrievalSettings] = None
    ) -> None:
        client = self._require_client()
        name = collection_name(collection_id)
        try:
            client.delete_collection(name)
        except Exception:
            # Nothing stored under this id yet
            self._logger.debug("chroma_purge_missing", extra={"collection_id": name})
            return
        self._logger.info("chroma_purge_complete", extra={"collection_id": name})

    def purge_all_vector_indexes(
        self, settings: Optional[RetrievalSettings] = None
    ) -> None:
        client = self._require_client()
        for collection in client.list_collections():
            # Newer chroma releases list names, older ones list Collection objects
            name = getattr(collection, "name", collection)
            try:
                client.delete_collection(name)
            except Exception as exc:
                self._logger.error(
                    "chroma_purge_failed", extra={"collection_id": name, "error": str(exc)}
                )
