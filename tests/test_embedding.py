"""
Tests for the embedding service.

Tests cover:
- Deterministic mock embeddings
- Provider fallback chain
- Remote provider over a mocked HTTP transport
- Cache hits, misses and eviction
"""

import asyncio
import json
import logging

import httpx
import numpy as np
import pytest


# ============================================================================
# Mock Embedding Tests
# ============================================================================

class TestMockEmbedding:
    """Tests for mock_embedding."""

    def test_deterministic(self):
        from vecmem.embedding import mock_embedding

        a = mock_embedding("vector memory", 64)
        b = mock_embedding("vector memory", 64)
        np.testing.assert_array_equal(a, b)
        assert a.dtype == np.float32

    def test_unit_norm(self):
        from vecmem.embedding import mock_embedding

        for text in ("a", "hello world", "日本語のテキスト", "x" * 500):
            v = mock_embedding(text, 128)
            assert np.linalg.norm(v) == pytest.approx(1.0, abs=1e-5)

    def test_one_char_changes_vector(self):
        from vecmem.embedding import mock_embedding

        a = mock_embedding("hello", 32)
        b = mock_embedding("hellp", 32)
        assert not np.allclose(a, b)

    def test_empty_text(self):
        """The empty string hashes to 0, so the first component is sin(0) = 0."""
        from vecmem.embedding import mock_embedding

        v = mock_embedding("", 8)
        assert v[0] == 0.0
        assert np.linalg.norm(v) == pytest.approx(1.0, abs=1e-5)

    def test_dimension(self):
        from vecmem.embedding import mock_embedding

        assert mock_embedding("abc", 384).shape == (384,)


class TestHelpers:
    """Tests for presets and dimension truncation."""

    def test_list_models(self):
        from vecmem.embedding import list_models

        models = list_models()
        assert "minilm" in models
        assert models["minilm"]["dimensions"][0] == 384

    def test_resolve_model_name(self):
        from vecmem.embedding import resolve_model_name

        assert resolve_model_name("bge-m3") == "BAAI/bge-m3"
        assert resolve_model_name("my-org/custom") == "my-org/custom"

    def test_truncate_dimensions(self):
        from vecmem.embedding import truncate_dimensions

        full = np.ones((2, 8), dtype=np.float32)
        out = truncate_dimensions(full, 4)
        assert out.shape == (2, 4)
        np.testing.assert_allclose(np.linalg.norm(out, axis=1), [1.0, 1.0], rtol=1e-6)
        assert truncate_dimensions(full, 16).shape == (2, 8)

    def test_invalid_config(self):
        from vecmem.embedding import EmbeddingConfig
        from vecmem.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            EmbeddingConfig(provider="cohere")
        with pytest.raises(ConfigurationError):
            EmbeddingConfig(dimension=0)


# ============================================================================
# Provider Tests
# ============================================================================

class TestProviderChain:
    """Tests for provider selection."""

    def test_mock_provider(self):
        from vecmem.embedding import EmbeddingConfig, EmbeddingService, mock_embedding

        service = EmbeddingService(EmbeddingConfig(provider="mock", dimension=16))
        vector = asyncio.run(service.embed("hello"))

        assert service.active_provider == "mock"
        np.testing.assert_array_equal(vector, mock_embedding("hello", 16))

    def test_remote_without_key_falls_back(self, caplog):
        from vecmem.embedding import EmbeddingConfig, EmbeddingService

        service = EmbeddingService(EmbeddingConfig(provider="remote", dimension=8))
        with caplog.at_level(logging.WARNING, logger="vecmem.embedding"):
            asyncio.run(service.initialize())

        assert service.active_provider == "mock"
        assert any("remote unavailable" in r.getMessage() for r in caplog.records)

    def test_full_chain_falls_back_to_mock(self, monkeypatch, caplog):
        """Every tier is tried in order before mock."""
        from vecmem import embedding
        from vecmem.embedding import EmbeddingConfig, EmbeddingService

        def unavailable(self):
            raise embedding.MissingDependencyError("sentence-transformers is not installed", "pip install sentence-transformers")

        monkeypatch.setattr(embedding.SentenceTransformerProvider, "initialize", unavailable)
        service = EmbeddingService(EmbeddingConfig(provider="accelerated", dimension=8))
        with caplog.at_level(logging.WARNING, logger="vecmem.embedding"):
            asyncio.run(service.initialize())

        assert service.active_provider == "mock"
        failed = [r.getMessage() for r in caplog.records if "falling back" in r.getMessage()]
        assert [m.split()[2] for m in failed] == ["accelerated", "local", "remote"]

    def test_native_dimension_caps_configured(self, monkeypatch, caplog):
        """A model smaller than the configured dimension lowers the service dimension."""
        from vecmem.embedding import EmbeddingConfig, EmbeddingService

        service = EmbeddingService(EmbeddingConfig(provider="mock", dimension=8))
        monkeypatch.setattr(service, "_build", lambda tier: SmallProvider())
        with caplog.at_level(logging.WARNING, logger="vecmem.embedding"):
            vector = asyncio.run(service.embed("text"))

        assert service.dimension == 4
        assert vector.shape == (4,)
        assert any("native 4" in r.getMessage() for r in caplog.records)

    def test_model_location(self, monkeypatch, tmp_path):
        """Local copies are used only when they hold a model config."""
        from vecmem.embedding import EmbeddingConfig, SentenceTransformerProvider

        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        monkeypatch.setenv("HF_HOME", str(tmp_path / "hf"))
        monkeypatch.setenv("SENTENCE_TRANSFORMERS_HOME", str(tmp_path / "st"))
        monkeypatch.setenv("VECMEM_MODEL_PATH", str(tmp_path / "models"))

        config = EmbeddingConfig(provider="local", cache_dir=str(tmp_path / "cache"))
        provider = SentenceTransformerProvider(config, backend="torch")
        assert provider._model_location() == "sentence-transformers/all-MiniLM-L6-v2"

        model_dir = tmp_path / "models" / "sentence-transformers" / "all-MiniLM-L6-v2"
        model_dir.mkdir(parents=True)
        (model_dir / "modules.json").write_text("[]")
        assert provider._model_location() == str(model_dir)

    def test_device_resolution(self):
        from vecmem.embedding import EmbeddingConfig, SentenceTransformerProvider

        assert SentenceTransformerProvider(EmbeddingConfig(device="cpu"))._resolve_device() == "cpu"
        assert SentenceTransformerProvider(EmbeddingConfig(use_gpu=False))._resolve_device() == "cpu"
        assert SentenceTransformerProvider(EmbeddingConfig(), backend="onnx")._resolve_device() == "cpu"
        assert SentenceTransformerProvider(EmbeddingConfig(), backend="onnx").name == "accelerated"


class TestRemoteProvider:
    """Tests for the OpenAI-compatible provider."""

    def test_request_and_ordering(self):
        """The request carries the bearer key; results are ordered by index."""
        from vecmem.embedding import EmbeddingConfig, RemoteProvider

        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [
                {"index": 1, "embedding": [0.0, 1.0, 0.0]},
                {"index": 0, "embedding": [1.0, 0.0, 0.0]},
            ]})

        async def run():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            provider = RemoteProvider(
                EmbeddingConfig(provider="remote", model="text-embedding-3-small", dimension=3,
                                api_key="sk-test", base_url="https://example.test/v1/"),
                client,
            )
            provider.initialize()
            try:
                return await provider.embed(["first", "second"])
            finally:
                await client.aclose()

        vectors = asyncio.run(run())

        assert seen["url"] == "https://example.test/v1/embeddings"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"] == {"input": ["first", "second"], "model": "text-embedding-3-small"}
        np.testing.assert_array_equal(vectors, [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])

    def test_http_error(self):
        from vecmem.embedding import EmbeddingConfig, RemoteProvider
        from vecmem.errors import EmbeddingError

        def handler(request):
            return httpx.Response(429, json={"error": "rate limited"})

        async def run():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            provider = RemoteProvider(EmbeddingConfig(provider="remote", api_key="k"), client)
            provider.initialize()
            try:
                await provider.embed(["x"])
            finally:
                await client.aclose()

        with pytest.raises(EmbeddingError) as exc:
            asyncio.run(run())
        assert exc.value.details["status_code"] == 429

    def test_connection_error(self):
        from vecmem.embedding import EmbeddingConfig, RemoteProvider
        from vecmem.errors import EmbeddingError

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def run():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            provider = RemoteProvider(EmbeddingConfig(provider="remote", api_key="k"), client)
            provider.initialize()
            try:
                await provider.embed(["x"])
            finally:
                await client.aclose()

        with pytest.raises(EmbeddingError):
            asyncio.run(run())

    def test_service_truncates_remote_vectors(self):
        """Vectors wider than the configured dimension are truncated and renormalized."""
        from vecmem.embedding import EmbeddingConfig, EmbeddingService

        def handler(request):
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [3.0, 4.0, 5.0, 6.0]}]})

        async def run():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            service = EmbeddingService(
                EmbeddingConfig(provider="remote", api_key="k", dimension=2), client=client
            )
            try:
                return await service.embed("text"), service.active_provider
            finally:
                await service.close()
                await client.aclose()

        vector, provider = asyncio.run(run())
        assert provider == "remote"
        np.testing.assert_allclose(vector, [0.6, 0.8], rtol=1e-6)


# ============================================================================
# Cache Tests
# ============================================================================

class TestCache:
    """Tests for the embedding cache."""

    def test_hits_and_misses(self):
        from vecmem.embedding import EmbeddingConfig, EmbeddingService

        service = EmbeddingService(EmbeddingConfig(provider="mock", dimension=8))

        async def run():
            first = await service.embed("same")
            second = await service.embed("same")
            return first, second

        first, second = asyncio.run(run())
        np.testing.assert_array_equal(second, first)
        stats = service.cache_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["size"] == 1

    def test_returned_vector_is_independent(self):
        """Editing a returned vector in place leaves later hits intact."""
        from vecmem.embedding import EmbeddingConfig, EmbeddingService, mock_embedding

        service = EmbeddingService(EmbeddingConfig(provider="mock", dimension=4))
        expected = mock_embedding("x", 4)

        async def run():
            miss = await service.embed("x")
            miss[:] = 0
            hit = await service.embed("x")
            hit /= 2
            return await service.embed("x")

        np.testing.assert_array_equal(asyncio.run(run()), expected)
        assert service.cache_stats()["hits"] == 2

    def test_eviction(self):
        """10,002 distinct texts leave 5,002 cached vectors."""
        from vecmem.embedding import EmbeddingConfig, EmbeddingService

        service = EmbeddingService(EmbeddingConfig(provider="mock", dimension=4))

        async def run():
            for i in range(10_002):
                await service.embed(f"text-{i}")

        asyncio.run(run())
        assert service.cache_stats()["size"] == 5_002
        assert ("minilm", "text-0") not in service._cache
        assert ("minilm", "text-10001") in service._cache

    def test_small_cache_eviction(self):
        from vecmem.embedding import EmbeddingConfig, EmbeddingService

        service = EmbeddingService(EmbeddingConfig(provider="mock", dimension=4, max_entries=3, evict_count=2))

        async def run():
            for text in ("a", "b", "c", "d", "e"):
                await service.embed(text)

        asyncio.run(run())
        assert [text for _, text in service._cache] == ["c", "d", "e"]

    def test_batch_order(self):
        from vecmem.embedding import EmbeddingConfig, EmbeddingService, mock_embedding

        service = EmbeddingService(EmbeddingConfig(provider="mock", dimension=8))
        texts = ["alpha", "beta", "gamma", "alpha"]
        vectors = asyncio.run(service.embed_batch(texts))

        assert len(vectors) == 4
        for text, vector in zip(texts, vectors):
            np.testing.assert_array_equal(vector, mock_embedding(text, 8))

    def test_clear_cache_and_info(self):
        from vecmem.embedding import EmbeddingConfig, EmbeddingService

        service = EmbeddingService(EmbeddingConfig(provider="mock", dimension=8))
        asyncio.run(service.embed("x"))
        service.clear_cache()

        assert service.cache_stats()["size"] == 0
        info = service.get_info()
        assert info["provider"] == "mock"
        assert info["dimension"] == 8
        assert info["model_name"] == "sentence-transformers/all-MiniLM-L6-v2"


# ============================================================================
# Helpers
# ============================================================================

class SmallProvider:
    name = "small"
    native_dim = 4

    def initialize(self):
        pass

    async def embed(self, texts):
        return np.ones((len(texts), 4), dtype=np.float32) / 2.0

    async def close(self):
        pass


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
