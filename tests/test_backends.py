"""
Tests for the vector backends.

Every backend runs the shared contract tests; backends whose library is
not installed are skipped. The builtin sqlite backend is always tested.

Tests cover:
- Insert / search / remove / upsert
- Validation before mutation
- Similarity normalization per metric
- Micro-batched writes and backpressure (sqlite family)
- Persistence and integrity checks
"""

import asyncio
import math
import sqlite3
import tempfile
from pathlib import Path

import numpy as np
import pytest

ALL_BACKENDS = ["sqlite", "sqlite-vec", "faiss", "hnswlib"]
REQUIRED_MODULE = {"sqlite-vec": "sqlite_vec", "faiss": "faiss", "hnswlib": "hnswlib"}


def make_backend(name, **config):
    """Construct and initialize a backend by registry name."""
    if name in REQUIRED_MODULE:
        pytest.importorskip(REQUIRED_MODULE[name])
    from vecmem.backends import BackendConfig, BackendRegistry

    factory = BackendRegistry().candidates(name)[0]
    return factory.create(BackendConfig(**config)).initialize()


# ============================================================================
# Contract Tests
# ============================================================================

class TestBackendContract:
    """Behavior every backend must share."""

    def test_search_orders_by_similarity(self, backend):
        """Closest vector first, similarities in [0, 1]."""
        backend.insert("a", [1.0, 0.0, 0.0])
        backend.insert("b", [1.0, 1.0, 0.0])
        backend.insert("c", [0.0, 1.0, 0.0])

        results = backend.search([1.0, 0.0, 0.0], k=3)

        assert [r.id for r in results] == ["a", "b", "c"]
        assert results[0].similarity == pytest.approx(1.0, abs=1e-5)
        assert results[1].similarity == pytest.approx(1.0 - 1.0 / math.sqrt(2), abs=1e-5)
        assert results[2].similarity == pytest.approx(0.0, abs=1e-5)
        assert all(0.0 <= r.similarity <= 1.0 for r in results)

    def test_k_limits_results(self, backend):
        rng = np.random.default_rng(0)
        for i in range(20):
            backend.insert(f"v{i}", rng.standard_normal(8).astype(np.float32))

        assert len(backend.search(rng.standard_normal(8), k=5)) == 5
        assert backend.count() == 20

    def test_empty_search(self, backend):
        """Searching an empty store returns nothing."""
        assert backend.search([1.0, 2.0, 3.0], k=5) == []

    def test_metadata_round_trip(self, backend):
        backend.insert("doc", [0.5, 0.5], {"title": "hello", "__proto__": {"x": 1}})

        result = backend.search([0.5, 0.5], k=1)[0]
        assert result.metadata == {"title": "hello"}

    def test_upsert_replaces(self, backend):
        """Inserting an existing id replaces the vector."""
        backend.insert("x", [1.0, 0.0])
        backend.insert("x", [0.0, 1.0])

        assert backend.count() == 1
        result = backend.search([0.0, 1.0], k=1)[0]
        assert result.id == "x"
        assert result.similarity == pytest.approx(1.0, abs=1e-5)

    def test_dimension_mismatch(self, backend):
        """The first insert fixes the dimension."""
        from vecmem.errors import DimensionMismatchError

        backend.insert("a", [1.0, 2.0, 3.0])
        with pytest.raises(DimensionMismatchError):
            backend.insert("b", [1.0, 2.0, 3.0, 4.0])
        with pytest.raises(DimensionMismatchError):
            backend.search([1.0, 2.0], k=1)
        assert backend.count() == 1

    def test_batch_validated_before_mutation(self, backend):
        """One bad record rejects the whole batch."""
        from vecmem.errors import ValidationError

        backend.insert("seed", [1.0, 0.0, 0.0])
        with pytest.raises(ValidationError):
            backend.insert_batch([
                ("ok-1", [0.0, 1.0, 0.0]),
                ("ok-2", [0.0, 0.0, 1.0]),
                ("", [1.0, 1.0, 1.0]),
            ])
        assert backend.count() == 1

    def test_batch_mixed_dimensions(self, backend):
        from vecmem.errors import DimensionMismatchError

        with pytest.raises(DimensionMismatchError):
            backend.insert_batch([("a", [1.0, 2.0]), ("b", [1.0, 2.0, 3.0])])
        assert backend.count() == 0

    def test_insert_batch_formats(self, backend):
        """Records may be VectorRecords, dicts or tuples."""
        from vecmem.backends import VectorRecord

        inserted = backend.insert_batch([
            VectorRecord("a", np.array([1.0, 0.0], dtype=np.float32)),
            {"id": "b", "embedding": [0.0, 1.0], "metadata": {"k": 1}},
            ("c", [1.0, 1.0], {"k": 2}),
        ])
        assert inserted == 3
        assert backend.count() == 3

    def test_filter_and_threshold(self, backend):
        for i in range(6):
            angle = i * 0.2
            backend.insert(f"v{i}", [math.cos(angle), math.sin(angle)], {"group": i % 2})

        from vecmem.backends import SearchOptions

        filtered = backend.search([1.0, 0.0], k=10, options=SearchOptions(filter={"group": 0}))
        assert {r.id for r in filtered} == {"v0", "v2", "v4"}

        close = backend.search([1.0, 0.0], k=10, options=SearchOptions(threshold=0.95))
        assert close and all(r.similarity >= 0.95 for r in close)
        assert len(close) < 6

    def test_remove(self, backend):
        backend.insert("a", [1.0, 0.0])
        backend.insert("b", [0.0, 1.0])

        assert backend.remove("a") is True
        assert backend.remove("a") is False
        assert backend.count() == 1
        assert [r.id for r in backend.search([1.0, 0.0], k=5)] == ["b"]

    def test_iter_records(self, backend):
        """Every live record is yielded with its vector and metadata."""
        backend.insert_batch([
            ("a", [1.0, 0.0], {"content": "first"}),
            ("b", [0.0, 1.0], None),
            ("c", [0.6, 0.8], {"n": 3}),
        ])
        backend.remove("b")

        records = {r.id: r for r in backend.iter_records()}
        assert set(records) == {"a", "c"}
        np.testing.assert_allclose(records["c"].embedding, [0.6, 0.8], atol=1e-6)
        assert records["a"].metadata == {"content": "first"}
        assert records["c"].metadata == {"n": 3}

    def test_stats(self, backend):
        backend.insert("a", [1.0, 0.0, 0.0, 0.0])
        stats = backend.get_stats()

        assert stats["count"] == 1
        assert stats["dimension"] == 4
        assert stats["metric"] == "cosine"
        assert stats["backend"] == backend.name
        assert stats["memory_usage"] >= 0

    def test_invalid_k(self, backend):
        from vecmem.errors import ValidationError

        backend.insert("a", [1.0, 0.0])
        with pytest.raises(ValidationError):
            backend.search([1.0, 0.0], k=0)
        with pytest.raises(ValidationError):
            backend.search([1.0, 0.0], k=10_001)

    def test_async_wrappers(self, backend):
        """Awaitable variants mirror the sync operations."""
        async def run():
            await backend.insert_async("a", [1.0, 0.0])
            await backend.insert_batch_async([("b", [0.0, 1.0])])
            await backend.flush()
            results = await backend.search_async([1.0, 0.0], k=2)
            removed = await backend.remove_async("b")
            stats = await backend.get_stats_async()
            return results, removed, stats

        results, removed, stats = asyncio.run(run())
        assert [r.id for r in results] == ["a", "b"]
        assert removed is True
        assert stats["count"] == 1

    def test_closed_backend_rejects_calls(self, backend):
        from vecmem.errors import ConfigurationError

        backend.close()
        with pytest.raises(ConfigurationError):
            backend.insert("a", [1.0])


class TestMetrics:
    """Similarity normalization for l2 and inner product."""

    @pytest.mark.parametrize("name", ALL_BACKENDS)
    def test_l2(self, name):
        backend = make_backend(name, metric="l2")
        backend.insert("a", [0.0, 0.0])
        backend.insert("b", [1.0, 0.0])

        results = backend.search([0.0, 0.0], k=2)
        assert results[0].id == "a"
        assert results[0].similarity == pytest.approx(1.0, abs=1e-5)
        assert results[1].distance == pytest.approx(1.0, abs=1e-5)
        assert results[1].similarity == pytest.approx(math.exp(-1.0), abs=1e-5)
        backend.close()

    @pytest.mark.parametrize("name", ALL_BACKENDS)
    def test_inner_product(self, name):
        backend = make_backend(name, metric="ip")
        backend.insert("a", [2.0, 0.0])
        backend.insert("b", [-1.0, 0.0])

        results = backend.search([1.0, 0.0], k=2)
        assert [r.id for r in results] == ["a", "b"]
        assert results[0].similarity == pytest.approx(1.0 / (1.0 + math.exp(-2.0)), abs=1e-5)
        assert results[1].similarity == pytest.approx(1.0 / (1.0 + math.exp(1.0)), abs=1e-5)
        backend.close()

    def test_distance_to_similarity(self):
        from vecmem.backends import distance_to_similarity

        assert distance_to_similarity(0.0, "cosine") == 1.0
        assert distance_to_similarity(1.5, "cosine") == 0.0
        assert distance_to_similarity(-0.1, "cosine") == 1.0
        assert distance_to_similarity(2.0, "l2") == pytest.approx(math.exp(-2.0))
        assert distance_to_similarity(-1000.0, "ip") == pytest.approx(1.0)
        assert distance_to_similarity(1000.0, "ip") == pytest.approx(0.0)

    def test_unknown_metric(self):
        from vecmem.backends import BackendConfig
        from vecmem.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            BackendConfig(metric="manhattan")


# ============================================================================
# SQLite Family Tests
# ============================================================================

class TestFilteredSearch:
    """Metadata filters apply before results are cut to k."""

    @pytest.mark.parametrize("name", ALL_BACKENDS)
    def test_only_match_is_farthest(self, name):
        backend = make_backend(name, metric="l2")
        rng = np.random.default_rng(7)
        backend.insert_batch([
            (f"near{i}", rng.standard_normal(2), {"group": "near"}) for i in range(200)
        ])
        backend.insert("far", [1000.0, 0.0], {"group": "far"})

        from vecmem.backends import SearchOptions

        results = backend.search([0.0, 0.0], k=1, options=SearchOptions(filter={"group": "far"}))
        assert [r.id for r in results] == ["far"]
        backend.close()

    def test_approximate_backend_widens_fetch(self):
        """Approximate backends double the fetch until k matches or everything is seen."""
        from vecmem.backends import SearchOptions, SqliteBackend

        class Approximate(SqliteBackend):
            exact = False

            def __init__(self, config=None):
                super().__init__(config)
                self.fetches = []

            def _do_search(self, query, k, options):
                self.fetches.append(k)
                return super()._do_search(query, k, options)

        backend = Approximate().initialize()
        backend.insert_batch([(f"v{i}", [1.0, i * 0.001], {"even": i % 2 == 0}) for i in range(200)])
        backend.insert("odd-one", [0.0, 1.0], {"tag": "odd-one"})

        results = backend.search([1.0, 0.0], k=1, options=SearchOptions(filter={"tag": "odd-one"}))
        assert [r.id for r in results] == ["odd-one"]
        assert backend.fetches == [33, 66, 132, 201]

        backend.fetches.clear()
        backend.search([1.0, 0.0], k=2, options=SearchOptions(filter={"even": True}))
        assert backend.fetches == [34]
        backend.close()

    def test_exact_backend_ranks_everything(self):
        from vecmem.backends import SearchOptions

        backend = make_backend("sqlite")
        backend.insert_batch([(f"v{i}", [1.0, i * 0.01]) for i in range(50)])
        results = backend.search([1.0, 0.0], k=50, options=SearchOptions(threshold=0.5))
        assert len(results) == 50
        backend.close()


class TestSqliteWrites:
    """Micro-batching and backpressure in the sqlite backend."""

    def test_inserts_queue_until_threshold(self):
        backend = make_backend("sqlite", batch_threshold=5)
        for i in range(3):
            backend.insert(f"v{i}", [float(i), 1.0])

        assert backend.pending_count == 3
        assert backend.count() == 3

        backend.insert("v3", [3.0, 1.0])
        backend.insert("v4", [4.0, 1.0])
        assert backend.pending_count == 0
        backend.close()

    def test_search_flushes(self):
        backend = make_backend("sqlite", batch_threshold=100)
        backend.insert("a", [1.0, 0.0])
        assert backend.pending_count == 1

        backend.search([1.0, 0.0], k=1)
        assert backend.pending_count == 0
        backend.close()

    def test_batch_writes_through(self):
        backend = make_backend("sqlite")
        backend.insert_batch([("a", [1.0, 0.0]), ("b", [0.0, 1.0])])
        assert backend.pending_count == 0
        backend.close()

    def test_backpressure(self, monkeypatch):
        """Writes beyond the pending ceiling are rejected, not queued."""
        import vecmem.backends.sqlite as sqlite_module
        from vecmem.errors import BackpressureError

        monkeypatch.setattr(sqlite_module, "MAX_PENDING_WRITES", 3)
        backend = make_backend("sqlite", batch_threshold=100)
        for i in range(3):
            backend.insert(f"v{i}", [1.0, float(i)])

        with pytest.raises(BackpressureError):
            backend.insert("v3", [1.0, 3.0])
        assert backend.count() == 3

        asyncio.run(backend.flush())
        assert backend.pending_count == 0
        backend.insert("v3", [1.0, 3.0])
        backend.close()

    def test_get(self):
        backend = make_backend("sqlite")
        backend.insert("a", [1.0, 2.0], {"k": "v"})

        record = backend.get("a")
        assert record.id == "a"
        np.testing.assert_array_equal(record.embedding, np.array([1.0, 2.0], dtype=np.float32))
        assert record.metadata == {"k": "v"}
        assert backend.get("missing") is None
        backend.close()


class TestSqlitePersistence:
    """File-backed storage, save/load and integrity checks."""

    def test_reopen_keeps_vectors(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = str(Path(tmpdir) / "memory.db")
            backend = make_backend("sqlite", storage_path=path)
            backend.insert("a", [1.0, 0.0, 0.0], {"n": 1})
            backend.insert("b", [0.0, 1.0, 0.0])
            backend.close()

            reopened = make_backend("sqlite", storage_path=path)
            assert reopened.count() == 2
            assert reopened.dimension == 3
            assert reopened.search([1.0, 0.0, 0.0], k=1)[0].metadata == {"n": 1}
            reopened.close()

    def test_reopen_with_other_metric_fails(self):
        from vecmem.errors import ConfigurationError

        with tempfile.TemporaryDirectory() as tmpdir:
            path = str(Path(tmpdir) / "memory.db")
            backend = make_backend("sqlite", storage_path=path)
            backend.insert("a", [1.0, 0.0])
            backend.close()

            with pytest.raises(ConfigurationError):
                make_backend("sqlite", storage_path=path, metric="l2")

    def test_save_and_load(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            target = Path(tmpdir) / "export.db"
            backend = make_backend("sqlite")
            backend.insert_batch([("a", [1.0, 0.0]), ("b", [0.0, 1.0])])
            backend.save(target)
            backend.close()

            loaded = make_backend("sqlite")
            loaded.load(target)
            assert loaded.count() == 2
            assert loaded.dimension == 2
            assert loaded.search([0.0, 1.0], k=1)[0].id == "b"
            loaded.close()

    def test_saved_file_is_asset_container(self):
        """Saved stores carry the container metadata."""
        from vecmem.assets import AssetContainer

        with tempfile.TemporaryDirectory() as tmpdir:
            target = Path(tmpdir) / "export.db"
            backend = make_backend("sqlite")
            backend.insert("a", [1.0, 0.0, 0.0, 0.0])
            backend.save(target)
            backend.close()

            with AssetContainer(target) as container:
                meta = container.metadata()
                assert container.missing_meta_keys() == []
            assert meta["dimension"] == "4"
            assert meta["metric"] == "cosine"

    def test_corrupted_row_detected(self):
        from vecmem.errors import AssetIntegrityError

        with tempfile.TemporaryDirectory() as tmpdir:
            target = Path(tmpdir) / "export.db"
            backend = make_backend("sqlite")
            backend.insert_batch([("a", [1.0, 0.0]), ("b", [0.0, 1.0])])
            backend.save(target)
            backend.close()

            conn = sqlite3.connect(str(target))
            with conn:
                conn.execute("UPDATE vectors SET embedding = ? WHERE id = 'a'", (np.array([9.0, 9.0], dtype=np.float32).tobytes(),))
            conn.close()

            loaded = make_backend("sqlite")
            with pytest.raises(AssetIntegrityError):
                loaded.load(target)
            assert loaded.count() == 0
            loaded.close()

    def test_load_dimension_mismatch(self):
        from vecmem.errors import DimensionMismatchError

        with tempfile.TemporaryDirectory() as tmpdir:
            target = Path(tmpdir) / "export.db"
            backend = make_backend("sqlite")
            backend.insert("a", [1.0, 0.0, 0.0])
            backend.save(target)
            backend.close()

            other = make_backend("sqlite", dimension=4)
            with pytest.raises(DimensionMismatchError):
                other.load(target)
            other.close()

    def test_save_rejects_bad_path(self):
        from vecmem.errors import ValidationError

        backend = make_backend("sqlite")
        backend.insert("a", [1.0])
        with pytest.raises(ValidationError):
            backend.save("../escape.db")
        backend.close()


class TestIndexPersistence:
    """faiss and hnswlib save an index file plus a .meta.json sidecar."""

    @pytest.mark.parametrize("name", ["faiss", "hnswlib"])
    def test_save_and_load(self, name):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = str(Path(tmpdir) / "index.bin")
            backend = make_backend(name)
            backend.insert_batch([
                ("a", [1.0, 0.0, 0.0], {"tag": "x"}),
                ("b", [0.0, 1.0, 0.0], None),
            ])
            backend.save(path)
            backend.close()
            assert Path(f"{path}.meta.json").exists()

            loaded = make_backend(name)
            loaded.load(path)
            assert loaded.count() == 2
            result = loaded.search([1.0, 0.0, 0.0], k=1)[0]
            assert result.id == "a"
            assert result.metadata == {"tag": "x"}
            loaded.close()

    def test_hnsw_grows_capacity(self):
        backend = make_backend("hnswlib", max_elements=10)
        rng = np.random.default_rng(3)
        backend.insert_batch([(f"v{i}", rng.standard_normal(4)) for i in range(25)])

        assert backend.count() == 25
        assert backend.get_stats()["max_elements"] >= 25
        backend.close()


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(params=ALL_BACKENDS)
def backend(request):
    """Each installed backend, in memory with cosine metric."""
    instance = make_backend(request.param)
    yield instance
    instance.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
