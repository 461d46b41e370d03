"""Backend lifecycle cache: lazy creation, health checks, reuse and LRU eviction.

Per normalized backend name the cache moves through:

    ABSENT -> INITIALIZING -> HEALTHY    (constructed, initialized, probe passed)
                           -> UNHEALTHY  (construction raised or probe failed)

A HEALTHY hit returns the cached instance and refreshes its access time
without probing again. UNHEALTHY names fail fast on later requests until
``reset_backend_health`` returns them to ABSENT. When committing a new
HEALTHY entry would exceed ``max_size``, the HEALTHY entry with the oldest
access time is evicted; UNHEALTHY entries hold no instance and do not count.

Thread-safety: one lock guards the state map and is never held across I/O.
Construction and health probes for a name run under that name's own lock,
so concurrent first requests for the same name build a single instance while
other names proceed independently.
"""

import itertools
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from retrieval_core import config
from retrieval_core.config import RetrievalSettings
from retrieval_core.errors import (
    BackendConstructionError,
    BackendHealthCheckError,
    UnknownBackendError,
)
from retrieval_core.logging_setup import get_logger
from retrieval_core.state import BackendStatus
from vector_backends.base import VectorBackend
from vector_backends.registry import DEFAULT_BACKEND, BackendRegistry, default_registry


@dataclass
class _BackendEntry:
    status: BackendStatus
    instance: Optional[VectorBackend] = None
    last_access: float = 0.0
    access_seq: int = 0
    error: Optional[str] = None


class BackendCache:
    """Bounded, health-aware cache of live backend instances."""

    def __init__(
        self,
        registry: Optional[BackendRegistry] = None,
        max_size: int = config.MAX_CACHED_BACKENDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty cache.

        Args:
            registry: Name -> factory lookup. Defaults to all built-in backends.
            max_size: Maximum number of HEALTHY instances kept at once.
            clock: Source of access timestamps.
        """
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self._registry = registry if registry is not None else default_registry()
        self._max_size = max_size
        self._clock = clock
        self._entries: Dict[str, _BackendEntry] = {}
        self._lock = threading.Lock()
        self._name_locks: Dict[str, threading.Lock] = {}
        self._access_counter = itertools.count()
        self._logger = get_logger(__name__)

    @property
    def registry(self) -> BackendRegistry:
        return self._registry

    @property
    def max_size(self) -> int:
        return self._max_size

    # ------------------------------------------------------------------
    # internal state helpers (callers hold no lock unless noted)
    # ------------------------------------------------------------------

    def _touch(self, entry: _BackendEntry) -> None:
        # Caller holds self._lock
        entry.last_access = self._clock()
        entry.access_seq = next(self._access_counter)

    def _name_lock(self, name: str) -> threading.Lock:
        with self._lock:
            lock = self._name_locks.get(name)
            if lock is None:
                lock = self._name_locks[name] = threading.Lock()
            return lock

    def _lookup(
        self, name: str
    ) -> Tuple[Optional[VectorBackend], BackendStatus, Optional[str]]:
        """Return (instance, status, error); a HEALTHY hit refreshes access time."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return None, BackendStatus.ABSENT, None
            if entry.status is BackendStatus.HEALTHY:
                self._touch(entry)
                return entry.instance, entry.status, None
            return None, entry.status, entry.error

    def _set_initializing(self, name: str) -> None:
        with self._lock:
            self._entries[name] = _BackendEntry(status=BackendStatus.INITIALIZING)

    def _mark_unhealthy(self, name: str, error: str) -> None:
        with self._lock:
            self._entries[name] = _BackendEntry(
                status=BackendStatus.UNHEALTHY, error=error
            )

    def _evict_if_needed(self, incoming: str) -> List[str]:
        # Caller holds self._lock
        cached = {
            name: entry
            for name, entry in self._entries.items()
            if entry.status is BackendStatus.HEALTHY and name != incoming
        }
        evicted: List[str] = []
        while cached and len(cached) >= self._max_size:
            oldest = min(
                cached, key=lambda n: (cached[n].last_access, cached[n].access_seq)
            )
            del cached[oldest]
            del self._entries[oldest]
            evicted.append(oldest)
        return evicted

    def _commit(self, name: str, backend: VectorBackend) -> None:
        with self._lock:
            evicted = self._evict_if_needed(name)
            entry = _BackendEntry(status=BackendStatus.HEALTHY, instance=backend)
            self._touch(entry)
            self._entries[name] = entry
        for evicted_name in evicted:
            self._logger.info(
                "backend_cache_evicted",
                extra={"backend": evicted_name, "incoming": name},
            )

    def _probe(self, name: str, backend: VectorBackend) -> bool:
        try:
            return bool(backend.health_check())
        except Exception as exc:  # health checks must never break the caller
            self._logger.warning(
                "backend_health_check_raised",
                extra={"backend": name, "error": str(exc)},
            )
            return False

    def _known_unhealthy(
        self, name: str, error: Optional[str], fail_fast: bool
    ) -> None:
        message = (
            f"Backend {name} is marked unhealthy"
            + (f" ({error})" if error else "")
            + "; reset its health status to retry"
        )
        if fail_fast:
            raise BackendHealthCheckError(message, backend=name)
        self._logger.warning(
            "backend_known_unhealthy", extra={"backend": name, "error": error}
        )
        return None

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    def initialize_backend(
        self,
        name: Optional[str],
        settings: Optional[RetrievalSettings] = None,
        fail_fast: bool = True,
    ) -> Optional[VectorBackend]:
        """Return a healthy backend instance for ``name``, creating it if needed.

        Args:
            name: Backend name or alias. Empty selects the default backend.
            settings: Passed to the backend's ``initialize``.
            fail_fast: Raise on any failure when True; otherwise log a warning
                and return None.

        Raises:
            UnknownBackendError: No implementation registered for ``name``.
            BackendConstructionError: Construction or ``initialize`` raised.
            BackendHealthCheckError: Probe failed now or on an earlier attempt.
        """
        normalized = self._registry.normalize(name)

        instance, status, error = self._lookup(normalized)
        if instance is not None:
            return instance
        if status is BackendStatus.UNHEALTHY:
            return self._known_unhealthy(normalized, error, fail_fast)

        try:
            factory = self._registry.get_factory(normalized)
        except UnknownBackendError as exc:
            if fail_fast:
                raise
            self._logger.warning(
                "backend_unknown", extra={"backend": name, "error": str(exc)}
            )
            return None

        with self._name_lock(normalized):
            # Another thread may have finished while we waited for the lock
            instance, status, error = self._lookup(normalized)
            if instance is not None:
                return instance
            if status is BackendStatus.UNHEALTHY:
                return self._known_unhealthy(normalized, error, fail_fast)

            self._set_initializing(normalized)
            self._logger.info(
                "backend_initialize_start",
                extra={
                    "backend": normalized,
                    "alias": name if name and name != normalized else None,
                },
            )

            try:
                backend = factory()
                backend.initialize(settings)
            except Exception as exc:
                self._mark_unhealthy(normalized, str(exc))
                failure = BackendConstructionError(
                    f"Failed to initialize {normalized} backend: {exc}",
                    backend=normalized,
                    cause=exc,
                )
                if fail_fast:
                    raise failure from exc
                self._logger.warning(
                    "backend_initialize_failed",
                    extra={"backend": normalized, "error": str(exc)},
                )
                return None

            if not self._probe(normalized, backend):
                self._mark_unhealthy(normalized, "health check failed")
                if fail_fast:
                    raise BackendHealthCheckError(
                        f"Backend {normalized} failed health check",
                        backend=normalized,
                    )
                self._logger.warning(
                    "backend_health_check_failed", extra={"backend": normalized}
                )
                return None

            self._commit(normalized, backend)

        self._logger.info("backend_initialize_complete", extra={"backend": normalized})
        return backend

    def get_backend(
        self,
        settings: Optional[RetrievalSettings] = None,
        preferred_name: Optional[str] = None,
    ) -> VectorBackend:
        """Resolve the effective backend name and return a live instance.

        Priority: ``preferred_name`` > ``settings.vector_backend`` >
        process-wide ``VECTOR_BACKEND`` > ``"standard"``. Always fail-fast: a
        missing backend is never swapped for another one, since writes would
        land in the wrong store.
        """
        name = (
            preferred_name
            or (settings.vector_backend if settings is not None else None)
            or config.VECTOR_BACKEND
            or DEFAULT_BACKEND
        )
        return self.initialize_backend(name, settings, fail_fast=True)

    def get_backend_for_collection(
        self,
        stored_backend_name: Optional[str],
        settings: Optional[RetrievalSettings] = None,
    ) -> VectorBackend:
        """Return the backend a collection was created with."""
        if not stored_backend_name:
            raise ValueError(
                "Collection backend not specified; every collection must record "
                "the backend it was created with"
            )
        return self.get_backend(settings, stored_backend_name)

    def is_backend_available(
        self, name: Optional[str], settings: Optional[RetrievalSettings] = None
    ) -> bool:
        """Non-throwing availability probe."""
        normalized = self._registry.normalize(name)
        with self._lock:
            entry = self._entries.get(normalized)
            if entry is not None and entry.status is BackendStatus.UNHEALTHY:
                return False
            if entry is not None and entry.status is BackendStatus.HEALTHY:
                return True
        return self.initialize_backend(name, settings, fail_fast=False) is not None

    def reset_backend_health(self, name: Optional[str] = None) -> None:
        """Forget cached state for one backend, or for all when ``name`` is empty."""
        with self._lock:
            if not name:
                cleared = list(self._entries)
                self._entries.clear()
            else:
                normalized = self._registry.normalize(name)
                cleared = [normalized] if self._entries.pop(normalized, None) else []
        self._logger.info(
            "backend_health_reset",
            extra={"backend": name or "*", "cleared": cleared},
        )

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------

    def status(self, name: Optional[str]) -> BackendStatus:
        normalized = self._registry.normalize(name)
        with self._lock:
            entry = self._entries.get(normalized)
            return entry.status if entry else BackendStatus.ABSENT

    def last_access(self, name: Optional[str]) -> Optional[float]:
        normalized = self._registry.normalize(name)
        with self._lock:
            entry = self._entries.get(normalized)
            if entry is None or entry.status is not BackendStatus.HEALTHY:
                return None
            return entry.last_access

    def cached_names(self) -> List[str]:
        """HEALTHY backend names, least recently used first."""
        with self._lock:
            healthy = [
                (entry.last_access, entry.access_seq, name)
                for name, entry in self._entries.items()
                if entry.status is BackendStatus.HEALTHY
            ]
        return [name for _, _, name in sorted(healthy)]

    def available_backends(self) -> List[str]:
        return self._registry.names()

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                name: {
                    "status": entry.status.value,
                    "last_access": entry.last_access or None,
                    "error": entry.error,
                }
                for name, entry in self._entries.items()
            }


# Singleton instance - lazy initialized
_default_cache: Optional[BackendCache] = None
_cache_lock = threading.Lock()


def get_backend_cache() -> BackendCache:
    """Get or create the process-wide backend cache."""
    global _default_cache
    with _cache_lock:
        if _default_cache is None:
            _default_cache = BackendCache()
        return _default_cache


def reset_backend_cache(cache: Optional[BackendCache] = None) -> None:
    """Replace the process-wide cache (mainly for testing)."""
    global _default_cache
    with _cache_lock:
        _default_cache = cache


def initialize_backend(
    name: Optional[str],
    settings: Optional[RetrievalSettings] = None,
    fail_fast: bool = True,
) -> Optional[VectorBackend]:
    return get_backend_cache().initialize_backend(name, settings, fail_fast)


def get_backend(
    settings: Optional[RetrievalSettings] = None,
    preferred_name: Optional[str] = None,
) -> VectorBackend:
    return get_backend_cache().get_backend(settings, preferred_name)


def get_backend_for_collection(
    stored_backend_name: Optional[str],
    settings: Optional[RetrievalSettings] = None,
) -> VectorBackend:
    return get_backend_cache().get_backend_for_collection(stored_backend_name, settings)


def is_backend_available(
    name: Optional[str], settings: Optional[RetrievalSettings] = None
) -> bool:
    return get_backend_cache().is_backend_available(name, settings)


def reset_backend_health(name: Optional[str] = None) -> None:
    get_backend_cache().reset_backend_health(name)


def get_available_backends() -> List[str]:
    return get_backend_cache().available_backends()
