"""Lookup table from backend names to backend factories.

Names are normalized (trimmed, lower-cased, aliases resolved) before every
lookup, so an alias and its canonical name always map to the same entry.
"""

from typing import Callable, Dict, List, Mapping, Optional

from retrieval_core.errors import UnknownBackendError
from vector_backends.base import VectorBackend

BackendFactory = Callable[[], VectorBackend]

DEFAULT_BACKEND = "standard"

# Legacy name -> canonical name (host servers call the standard store "vectra")
BACKEND_ALIASES: Dict[str, str] = {
    "vectra": "standard",
}


class BackendRegistry:
    """Maps canonical backend names to factories."""

    def __init__(
        self,
        factories: Optional[Mapping[str, BackendFactory]] = None,
        aliases: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._factories: Dict[str, BackendFactory] = {}
        self._aliases: Dict[str, str] = {
            k.strip().lower(): v.strip().lower()
            for k, v in (BACKEND_ALIASES if aliases is None else aliases).items()
        }
        for name, factory in (factories or {}).items():
            self.register(name, factory)

    def normalize(self, name: Optional[str]) -> str:
        """Return the canonical cache key for ``name``."""
        if not name or not name.strip():
            return DEFAULT_BACKEND
        normalized = name.strip().lower()
        return self._aliases.get(normalized, normalized)

    def register(self, name: str, factory: BackendFactory) -> None:
        self._factories[self.normalize(name)] = factory

    def get_factory(self, name: Optional[str]) -> BackendFactory:
        normalized = self.normalize(name)
        factory = self._factories.get(normalized)
        if factory is None:
            raise UnknownBackendError(
                f"Unknown backend: {name} (normalized: {normalized}). "
                f"Available: {', '.join(self.names())}",
                backend=normalized,
            )
        return factory

    def names(self) -> List[str]:
        return list(self._factories)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.normalize(name) in self._factories


def _standard_backend() -> VectorBackend:
    from vector_backends.chroma_backend import ChromaBackend

    return ChromaBackend()


def _faiss_backend() -> VectorBackend:
    from vector_backends.faiss_backend import FaissBackend

    return FaissBackend()


def _plugin_backend(kind: str) -> BackendFactory:
    def factory() -> VectorBackend:
        from vector_backends.plugin_backend import PluginBackend

        return PluginBackend(kind)

    return factory


def default_registry() -> BackendRegistry:
    """Registry with every built-in backend.

    Factories import their backend module lazily so that selecting one
    backend never requires the client libraries of the others.
    """
    return BackendRegistry(
        factories={
            "standard": _standard_backend,
            "faiss": _faiss_backend,
            "lancedb": _plugin_backend("lancedb"),
            "qdrant": _plugin_backend("qdrant"),
            "milvus": _plugin_backend("milvus"),
        }
    )
