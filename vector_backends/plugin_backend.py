"""HTTP client for backends served by the storage plugin (LanceDB, Qdrant, Milvus).

The plugin exposes one set of endpoints for every store it hosts; requests
carry the backend kind so a single client class serves all of them:

    POST backend/init/<kind>      GET  backend/health/<kind>
    POST chunks/list              POST chunks/insert
    POST chunks/delete            POST chunks/query
    POST chunks/purge             GET  collections
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

import requests

from retrieval_core.config import PLUGIN_LIST_LIMIT, RetrievalSettings
from retrieval_core.errors import BackendQueryError
from retrieval_core.logging_setup import get_logger
from retrieval_core.state import Document
from vector_backends.base import (
    VectorBackend,
    filter_by_threshold,
    strip_registry_prefix,
)

PLUGIN_BACKEND_KINDS = ("lancedb", "qdrant", "milvus")


def _parse_hit(item: Dict[str, Any]) -> Document:
    metadata = dict(item.get("metadata") or {})
    return Document(
        identifier=str(item.get("hash", "")),
        text=item.get("text") or "",
        score=float(item["score"]) if item.get("score") is not None else None,
        metadata=metadata,
    )


class PluginBackend(VectorBackend):
    """Thin client for one store kind hosted by the storage plugin."""

    def __init__(self, kind: str, session: Optional[requests.Session] = None) -> None:
        if kind not in PLUGIN_BACKEND_KINDS:
            raise ValueError(
                f"Unsupported plugin backend: {kind}. "
                f"Valid options: {', '.join(PLUGIN_BACKEND_KINDS)}"
            )
        self.name = kind
        self.session = session or requests.Session()
        self.settings = RetrievalSettings()
        self._logger = get_logger(__name__)

    def _url(self, path: str) -> str:
        return f"{self.settings.plugin_url.rstrip('/')}/{path.lstrip('/')}"

    def _payload(
        self, collection_id: str, settings: Optional[RetrievalSettings], **extra: Any
    ) -> Dict[str, Any]:
        settings = settings or self.settings
        payload: Dict[str, Any] = {
            "backend": self.name,
            "collectionId": strip_registry_prefix(collection_id),
            "source": settings.embedding_source or "transformers",
            "model": settings.embed_model or "",
        }
        payload.update(extra)
        return payload

    def _request(
        self, method: str, path: str, action: str, **kwargs: Any
    ) -> requests.Response:
        try:
            response = self.session.request(
                method, self._url(path), timeout=self.settings.plugin_timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise BackendQueryError(
                f"[{self.name}] Failed to {action}: {exc}", backend=self.name, cause=exc
            ) from exc
        if not response.ok:
            body = response.text or "No response body"
            raise BackendQueryError(
                f"[{self.name}] Failed to {action}: "
                f"{response.status_code} {response.reason} - {body}",
                backend=self.name,
                status_code=response.status_code,
            )
        return response

    def initialize(self, settings: Optional[RetrievalSettings]) -> None:
        self.settings = settings or RetrievalSettings()
        self._request("POST", f"backend/init/{self.name}", f"initialize {self.name}")
        self._logger.info(
            "plugin_backend_initialized",
            extra={"backend": self.name, "plugin_url": self.settings.plugin_url},
        )

    def health_check(self) -> bool:
        try:
            response = self.session.get(
                self._url(f"backend/health/{self.name}"),
                timeout=self.settings.plugin_timeout,
            )
            if not response.ok:
                return False
            return response.json().get("healthy") is True
        except (requests.RequestException, ValueError) as exc:
            self._logger.warning(
                "plugin_health_check_failed",
                extra={"backend": self.name, "error": str(exc)},
            )
            return False

    def get_saved_hashes(
        self, collection_id: str, settings: Optional[RetrievalSettings] = None
    ) -> List[str]:
        response = self._request(
            "POST",
            "chunks/list",
            f"get saved hashes for {collection_id}",
            json=self._payload(collection_id, settings, limit=PLUGIN_LIST_LIMIT),
        )
        items = response.json().get("items") or []
        return [str(item.get("hash")) for item in items]

    def insert_vector_items(
        self,
        collection_id: str,
        items: Sequence[Document],
        settings: Optional[RetrievalSettings] = None,
    ) -> None:
        if not items:
            return
        body = self._payload(
            collection_id,
            settings,
            items=[
                {
                    "hash": item.identifier,
                    "text": item.text,
                    "metadata": dict(item.metadata),
                }
                for item in items
            ],
        )
        self._request(
            "POST",
            "chunks/insert",
            f"insert {len(items)} vectors into {collection_id}",
            json=body,
        )
        self._logger.info(
            "plugin_insert_complete",
            extra={"backend": self.name, "collection_id": collection_id, "items": len(items)},
        )

    def delete_vector_items(
        self,
        collection_id: str,
        identifiers: Sequence[str],
        settings: Optional[RetrievalSettings] = None,
    ) -> None:
        self._request(
            "POST",
            "chunks/delete",
            f"delete vectors from {collection_id}",
            json=self._payload(collection_id, settings, hashes=list(identifiers)),
        )

    def _query(
        self,
        collection_id: str,
        query_text: str,
        top_k: int,
        threshold: float,
        settings: Optional[RetrievalSettings],
    ) -> List[Document]:
        response = self._request(
            "POST",
            "chunks/query",
            f"query collection {collection_id}",
            json=self._payload(
                collection_id,
                settings,
                searchText=query_text,
                topK=top_k,
                threshold=threshold,
            ),
        )
        data = response.json()
        return [_parse_hit(item) for item in data.get("results") or data.get("chunks") or []]

    def query_collection(
        self,
        collection_id: str,
        query_text: str,
        top_k: int,
        settings: Optional[RetrievalSettings] = None,
    ) -> List[Document]:
        hits = self._query(collection_id, query_text, top_k, 0.0, settings)
        self._logger.info(
            "plugin_query_complete",
            extra={
                "backend": self.name,
                "collection_id": collection_id,
                "results": len(hits),
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
                hits = self._query(collection_id, query_text, top_k, threshold, settings)
            except Exception as exc:
                self._logger.error(
                    "plugin_query_collection_failed",
                    extra={"backend": self.name, "collection_id": collection_id, "error": str(exc)},
                )
                hits = []
            results[collection_id] = filter_by_threshold(hits, threshold)
        return results

    def purge_vector_index(
        self, collection_id: str, settings: Optional[RetrievalSettings] = None
    ) -> None:
        self._request(
            "POST",
            "chunks/purge",
            f"purge collection {collection_id}",
            json=self._payload(collection_id, settings),
        )

    def purge_all_vector_indexes(
        self, settings: Optional[RetrievalSettings] = None
    ) -> None:
        settings = settings or self.settings
        response = self._request("GET", "collections", "get collections")
        for collection in response.json().get("collections") or []:
            # Each collection is purged with the embedding source it was created with
            source = collection.get("source") or settings.embedding_source
            scoped = replace(settings, embedding_source=source)
            try:
                self.purge_vector_index(str(collection.get("id")), scoped)
            except BackendQueryError as exc:
                self._logger.error(
                    "plugin_purge_failed",
                    extra={"backend": self.name, "collection_id": collection.get("id"), "error": str(exc)},
                )
