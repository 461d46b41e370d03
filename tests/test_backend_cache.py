"""Tests for the backend lifecycle cache."""

import itertools
import threading

import pytest

from retrieval_core.config import RetrievalSettings
from retrieval_core.errors import (
    BackendConstructionError,
    BackendHealthCheckError,
    UnknownBackendError,
)
from retrieval_core.state import BackendStatus
from vector_backends import manager
from vector_backends.manager import BackendCache
from tests.conftest import FailingBackend, FakeBackend, make_registry


class CountingFactory:
    """Factory wrapper that records every instance it builds."""

    def __init__(self, build=FakeBackend):
        self.build = build
        self.built = []
        self._lock = threading.Lock()

    @property
    def calls(self):
        return len(self.built)

    def __call__(self):
        backend = self.build()
        with self._lock:
            self.built.append(backend)
        return backend


class RaisingHealthBackend(FakeBackend):
    def health_check(self):
        self.health_calls += 1
        raise RuntimeError("probe crashed")


def _ticking_clock():
    ticks = itertools.count(1)
    return lambda: float(next(ticks))


@pytest.fixture
def factories():
    return {
        name: CountingFactory()
        for name in ("standard", "faiss", "lancedb", "qdrant", "milvus")
    }


@pytest.fixture
def cache(factories):
    return BackendCache(
        registry=make_registry(**factories), max_size=3, clock=_ticking_clock()
    )


class TestConstruction:
    @pytest.mark.unit
    def test_max_size_must_be_positive(self):
        with pytest.raises(ValueError):
            BackendCache(registry=make_registry(), max_size=0)

    @pytest.mark.unit
    def test_first_request_builds_and_probes(self, cache, factories):
        backend = cache.initialize_backend("faiss")
        assert factories["faiss"].calls == 1
        assert backend.init_calls == 1
        assert backend.health_calls == 1
        assert cache.status("faiss") is BackendStatus.HEALTHY

    @pytest.mark.unit
    def test_settings_passed_to_initialize(self, cache):
        settings = RetrievalSettings(embed_model="tiny-model")
        backend = cache.initialize_backend("faiss", settings)
        assert backend.settings is settings

    @pytest.mark.unit
    def test_status_is_initializing_during_construction(self):
        seen = []
        cache_ref = {}

        class Observing(FakeBackend):
            def initialize(self, settings):
                seen.append(cache_ref["cache"].status("observed"))

        cache = BackendCache(registry=make_registry(observed=Observing))
        cache_ref["cache"] = cache
        cache.initialize_backend("observed")
        assert seen == [BackendStatus.INITIALIZING]
        assert cache.status("observed") is BackendStatus.HEALTHY

    @pytest.mark.unit
    def test_untouched_name_is_absent(self, cache):
        assert cache.status("qdrant") is BackendStatus.ABSENT
        assert cache.last_access("qdrant") is None


class TestReuse:
    @pytest.mark.unit
    def test_repeat_requests_return_identical_instance(self, cache, factories):
        first = cache.initialize_backend("faiss")
        for _ in range(10):
            assert cache.initialize_backend("faiss") is first
        assert factories["faiss"].calls == 1
        # Hits never probe again
        assert first.health_calls == 1

    @pytest.mark.unit
    def test_alias_shares_slot_with_canonical_name(self, cache, factories):
        via_alias = cache.initialize_backend("vectra")
        assert cache.initialize_backend("standard") is via_alias
        assert cache.initialize_backend("  Standard ") is via_alias
        assert factories["standard"].calls == 1
        assert cache.cached_names() == ["standard"]

    @pytest.mark.unit
    @pytest.mark.parametrize("name", [None, "", "  "])
    def test_blank_name_selects_default(self, cache, name):
        assert cache.initialize_backend(name) is cache.initialize_backend("standard")

    @pytest.mark.unit
    def test_hit_refreshes_last_access(self, cache):
        cache.initialize_backend("faiss")
        before = cache.last_access("faiss")
        cache.initialize_backend("faiss")
        assert cache.last_access("faiss") > before


class TestEviction:
    @pytest.mark.unit
    def test_least_recently_used_is_evicted(self, cache):
        lancedb = cache.initialize_backend("lancedb")
        cache.initialize_backend("qdrant")
        cache.initialize_backend("milvus")
        cache.initialize_backend("lancedb")

        cache.initialize_backend("faiss")

        assert cache.cached_names() == ["milvus", "lancedb", "faiss"]
        assert cache.status("qdrant") is BackendStatus.ABSENT
        assert cache.initialize_backend("lancedb") is lancedb

    @pytest.mark.unit
    def test_evicted_backend_is_rebuilt(self, cache, factories):
        qdrant = cache.initialize_backend("qdrant")
        cache.initialize_backend("lancedb")
        cache.initialize_backend("milvus")
        cache.initialize_backend("faiss")

        rebuilt = cache.initialize_backend("qdrant")
        assert rebuilt is not qdrant
        assert factories["qdrant"].calls == 2
        assert rebuilt.health_calls == 1

    @pytest.mark.unit
    def test_size_never_exceeds_bound(self, cache):
        for name in ["standard", "faiss", "lancedb", "qdrant", "milvus"] * 3:
            cache.initialize_backend(name)
            assert len(cache.cached_names()) <= cache.max_size

    @pytest.mark.unit
    def test_equal_timestamps_fall_back_to_access_order(self, factories):
        cache = BackendCache(
            registry=make_registry(**factories), max_size=2, clock=lambda: 0.0
        )
        cache.initialize_backend("faiss")
        cache.initialize_backend("qdrant")
        cache.initialize_backend("faiss")
        cache.initialize_backend("milvus")
        assert cache.cached_names() == ["faiss", "milvus"]

    @pytest.mark.unit
    def test_unhealthy_entries_do_not_take_slots(self):
        registry = make_registry(
            a=FakeBackend,
            b=FakeBackend,
            sick=lambda: FakeBackend(healthy=False),
        )
        cache = BackendCache(registry=registry, max_size=2, clock=_ticking_clock())
        cache.initialize_backend("a")
        cache.initialize_backend("b")
        assert cache.initialize_backend("sick", fail_fast=False) is None
        assert cache.cached_names() == ["a", "b"]

    @pytest.mark.unit
    def test_failed_construction_never_evicts(self):
        registry = make_registry(a=FakeBackend, broken=FailingBackend)
        cache = BackendCache(registry=registry, max_size=1)
        healthy = cache.initialize_backend("a")
        with pytest.raises(BackendConstructionError):
            cache.initialize_backend("broken")
        assert cache.initialize_backend("a") is healthy


class TestUnhealthy:
    @pytest.mark.unit
    def test_failed_probe_raises_and_marks_unhealthy(self):
        factory = CountingFactory(lambda: FakeBackend(healthy=False))
        cache = BackendCache(registry=make_registry(sick=factory))
        with pytest.raises(BackendHealthCheckError) as excinfo:
            cache.initialize_backend("sick")
        assert excinfo.value.backend == "sick"
        assert cache.status("sick") is BackendStatus.UNHEALTHY
        assert cache.cached_names() == []

    @pytest.mark.unit
    def test_unhealthy_fails_fast_without_retry(self):
        factory = CountingFactory(lambda: FakeBackend(healthy=False))
        cache = BackendCache(registry=make_registry(sick=factory))
        with pytest.raises(BackendHealthCheckError):
            cache.initialize_backend("sick")
        for _ in range(3):
            with pytest.raises(BackendHealthCheckError):
                cache.initialize_backend("sick")
        assert factory.calls == 1
        assert factory.built[0].health_calls == 1

    @pytest.mark.unit
    def test_construction_failure(self):
        factory = CountingFactory(FailingBackend)
        cache = BackendCache(registry=make_registry(broken=factory))
        with pytest.raises(BackendConstructionError) as excinfo:
            cache.initialize_backend("broken")
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        assert isinstance(excinfo.value.cause, ConnectionError)
        assert "store unreachable" in str(excinfo.value)
        assert cache.status("broken") is BackendStatus.UNHEALTHY

        with pytest.raises(BackendHealthCheckError):
            cache.initialize_backend("broken")
        assert factory.calls == 1

    @pytest.mark.unit
    def test_raising_health_check_counts_as_unhealthy(self):
        cache = BackendCache(registry=make_registry(odd=RaisingHealthBackend))
        with pytest.raises(BackendHealthCheckError):
            cache.initialize_backend("odd")
        assert cache.status("odd") is BackendStatus.UNHEALTHY

    @pytest.mark.unit
    def test_fail_soft_returns_none(self):
        cache = BackendCache(
            registry=make_registry(
                sick=lambda: FakeBackend(healthy=False), broken=FailingBackend
            )
        )
        assert cache.initialize_backend("sick", fail_fast=False) is None
        assert cache.initialize_backend("sick", fail_fast=False) is None
        assert cache.initialize_backend("broken", fail_fast=False) is None
        assert cache.initialize_backend("pinecone", fail_fast=False) is None

    @pytest.mark.unit
    def test_unknown_backend_raises_and_leaves_no_entry(self, cache):
        with pytest.raises(UnknownBackendError):
            cache.initialize_backend("pinecone")
        assert cache.status("pinecone") is BackendStatus.ABSENT
        assert cache.snapshot() == {}

    @pytest.mark.unit
    def test_snapshot_reports_errors(self):
        cache = BackendCache(registry=make_registry(broken=FailingBackend, ok=FakeBackend))
        cache.initialize_backend("ok")
        cache.initialize_backend("broken", fail_fast=False)
        snapshot = cache.snapshot()
        assert snapshot["ok"]["status"] == "healthy"
        assert snapshot["ok"]["error"] is None
        assert snapshot["broken"]["status"] == "unhealthy"
        assert "store unreachable" in snapshot["broken"]["error"]


class TestReset:
    @pytest.mark.unit
    def test_reset_single_name_allows_retry(self):
        outcomes = iter([False, True])
        factory = CountingFactory(lambda: FakeBackend(healthy=next(outcomes)))
        cache = BackendCache(registry=make_registry(flaky=factory))

        assert cache.initialize_backend("flaky", fail_fast=False) is None
        cache.reset_backend_health("flaky")
        assert cache.status("flaky") is BackendStatus.ABSENT

        backend = cache.initialize_backend("flaky")
        assert backend is factory.built[1]
        assert cache.status("flaky") is BackendStatus.HEALTHY

    @pytest.mark.unit
    def test_reset_alias_clears_canonical_entry(self, cache):
        cache.initialize_backend("standard")
        cache.reset_backend_health("vectra")
        assert cache.status("standard") is BackendStatus.ABSENT

    @pytest.mark.unit
    def test_reset_all(self, cache):
        cache.initialize_backend("faiss")
        cache.initialize_backend("qdrant")
        cache.reset_backend_health()
        assert cache.cached_names() == []
        assert cache.snapshot() == {}

    @pytest.mark.unit
    @pytest.mark.parametrize("name", [None, ""])
    def test_empty_name_resets_every_entry(self, cache, name):
        cache.initialize_backend("standard")
        cache.initialize_backend("faiss")
        cache.reset_backend_health(name)
        assert cache.status("standard") is BackendStatus.ABSENT
        assert cache.status("faiss") is BackendStatus.ABSENT

    @pytest.mark.unit
    def test_reset_healthy_entry_rebuilds(self, cache, factories):
        first = cache.initialize_backend("faiss")
        cache.reset_backend_health("faiss")
        assert cache.initialize_backend("faiss") is not first
        assert factories["faiss"].calls == 2


class TestAvailability:
    @pytest.mark.unit
    def test_available_backend(self, cache):
        assert cache.is_backend_available("faiss") is True
        assert cache.status("faiss") is BackendStatus.HEALTHY

    @pytest.mark.unit
    def test_unavailable_backends_never_raise(self):
        cache = BackendCache(
            registry=make_registry(
                sick=lambda: FakeBackend(healthy=False), broken=FailingBackend
            )
        )
        assert cache.is_backend_available("sick") is False
        assert cache.is_backend_available("broken") is False
        assert cache.is_backend_available("pinecone") is False

    @pytest.mark.unit
    def test_known_unhealthy_is_not_reprobed(self):
        factory = CountingFactory(lambda: FakeBackend(healthy=False))
        cache = BackendCache(registry=make_registry(sick=factory))
        cache.is_backend_available("sick")
        cache.is_backend_available("sick")
        assert factory.calls == 1

    @pytest.mark.unit
    def test_available_backends_lists_registry(self, cache):
        assert set(cache.available_backends()) == {
            "standard",
            "faiss",
            "lancedb",
            "qdrant",
            "milvus",
        }


class TestGetBackend:
    @pytest.mark.unit
    def test_preferred_name_wins(self, cache):
        settings = RetrievalSettings(vector_backend="qdrant")
        assert cache.get_backend(settings, "faiss") is cache.initialize_backend("faiss")
        assert cache.status("qdrant") is BackendStatus.ABSENT

    @pytest.mark.unit
    def test_settings_backend_used(self, cache):
        settings = RetrievalSettings(vector_backend="qdrant")
        assert cache.get_backend(settings) is cache.initialize_backend("qdrant")

    @pytest.mark.unit
    def test_process_default_used(self, cache, monkeypatch):
        monkeypatch.setattr(manager.config, "VECTOR_BACKEND", "lancedb")
        assert cache.get_backend(RetrievalSettings()) is cache.initialize_backend(
            "lancedb"
        )

    @pytest.mark.unit
    def test_falls_back_to_standard(self, cache, monkeypatch):
        monkeypatch.setattr(manager.config, "VECTOR_BACKEND", "")
        assert cache.get_backend() is cache.initialize_backend("standard")

    @pytest.mark.unit
    def test_never_substitutes_another_backend(self):
        cache = BackendCache(
            registry=make_registry(standard=FakeBackend, broken=FailingBackend)
        )
        cache.initialize_backend("standard")
        with pytest.raises(BackendConstructionError):
            cache.get_backend(preferred_name="broken")

    @pytest.mark.unit
    def test_for_collection_requires_stored_name(self, cache):
        with pytest.raises(ValueError):
            cache.get_backend_for_collection("")
        with pytest.raises(ValueError):
            cache.get_backend_for_collection(None)

    @pytest.mark.unit
    def test_for_collection_resolves_alias(self, cache):
        backend = cache.get_backend_for_collection("vectra")
        assert backend is cache.initialize_backend("standard")


class TestConcurrency:
    @pytest.mark.unit
    def test_concurrent_first_requests_build_once(self):
        factory = CountingFactory(lambda: FakeBackend(init_delay=0.05))
        cache = BackendCache(registry=make_registry(slow=factory))
        barrier = threading.Barrier(8)
        results = []
        errors = []

        def worker():
            barrier.wait()
            try:
                results.append(cache.initialize_backend("slow"))
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert factory.calls == 1
        assert len(results) == 8
        assert all(result is results[0] for result in results)
        assert results[0].health_calls == 1

    @pytest.mark.unit
    def test_concurrent_mixed_names_respect_bound(self):
        names = [f"b{i}" for i in range(6)]
        factories = {name: CountingFactory() for name in names}
        cache = BackendCache(registry=make_registry(**factories), max_size=2)
        barrier = threading.Barrier(12)

        def worker(name):
            barrier.wait()
            cache.initialize_backend(name)

        threads = [
            threading.Thread(target=worker, args=(name,)) for name in names * 2
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache.cached_names()) <= 2
        for name in cache.cached_names():
            assert cache.status(name) is BackendStatus.HEALTHY

    @pytest.mark.unit
    def test_concurrent_failures_probe_once(self):
        factory = CountingFactory(lambda: FakeBackend(healthy=False, init_delay=0.02))
        cache = BackendCache(registry=make_registry(sick=factory))
        barrier = threading.Barrier(6)
        outcomes = []

        def worker():
            barrier.wait()
            outcomes.append(cache.initialize_backend("sick", fail_fast=False))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes == [None] * 6
        assert factory.calls == 1
