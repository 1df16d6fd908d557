"""
Tests for boundary validation and the error hierarchy.
"""

import numpy as np
import pytest


# ============================================================================
# Path / ID / Metadata Tests
# ============================================================================

class TestPathValidation:
    """Tests for validate_path."""

    @pytest.mark.parametrize("path", ["../etc/passwd", "/etc/shadow", "data\x00.db", "/proc/self/mem", ""])
    def test_rejects(self, path):
        """Traversal, system prefixes, null bytes and empty paths are rejected."""
        from vecmem.errors import ValidationError
        from vecmem.validation import validate_path

        with pytest.raises(ValidationError):
            validate_path(path)

    def test_accepts_plain_filename(self):
        from vecmem.validation import validate_path

        assert validate_path("memory.db") == "memory.db"

    def test_accepts_pathlike(self, tmp_path):
        """os.PathLike values are converted to str."""
        from vecmem.validation import validate_path

        assert validate_path(tmp_path / "store.db") == str(tmp_path / "store.db")

    def test_rejects_too_long(self):
        from vecmem.errors import ValidationError
        from vecmem.validation import MAX_PATH_LENGTH, validate_path

        with pytest.raises(ValidationError):
            validate_path("a" * (MAX_PATH_LENGTH + 1))


class TestIdAndMetadata:
    """Tests for validate_id and validate_metadata."""

    def test_id_limits(self):
        from vecmem.errors import ValidationError
        from vecmem.validation import MAX_ID_LENGTH, validate_id

        assert validate_id("doc-1") == "doc-1"
        with pytest.raises(ValidationError):
            validate_id("")
        with pytest.raises(ValidationError):
            validate_id("a\x00b")
        with pytest.raises(ValidationError):
            validate_id("x" * (MAX_ID_LENGTH + 1))

    def test_metadata_strips_forbidden_keys(self):
        """Prototype-pollution keys are removed at every level."""
        from vecmem.validation import validate_metadata

        cleaned = validate_metadata({
            "title": "a",
            "__proto__": {"admin": True},
            "nested": {"constructor": 1, "ok": [{"prototype": 2, "keep": 3}]},
        })
        assert cleaned == {"title": "a", "nested": {"ok": [{"keep": 3}]}}

    def test_metadata_does_not_mutate_input(self):
        from vecmem.validation import validate_metadata

        original = {"constructor": 1, "a": 2}
        validate_metadata(original)
        assert original == {"constructor": 1, "a": 2}

    def test_metadata_size_limit(self):
        from vecmem.errors import ValidationError
        from vecmem.validation import MAX_METADATA_BYTES, validate_metadata

        with pytest.raises(ValidationError):
            validate_metadata({"blob": "x" * MAX_METADATA_BYTES})

    def test_metadata_must_serialize(self):
        from vecmem.errors import ValidationError
        from vecmem.validation import validate_metadata

        with pytest.raises(ValidationError):
            validate_metadata({"obj": object()})


# ============================================================================
# Vector / Limit Tests
# ============================================================================

class TestVectorValidation:
    """Tests for as_vector and numeric limits."""

    def test_as_vector_float32(self):
        from vecmem.validation import as_vector

        v = as_vector([1, 2, 3])
        assert v.dtype == np.float32
        assert v.shape == (3,)

    def test_as_vector_rejects_bad_input(self):
        from vecmem.errors import ValidationError
        from vecmem.validation import as_vector

        for bad in ([], [[1.0, 2.0]], [1.0, float("nan")], None, ["a", "b"]):
            with pytest.raises(ValidationError):
                as_vector(bad)

    def test_as_vector_dimension_mismatch(self):
        from vecmem.errors import DimensionMismatchError, ValidationError
        from vecmem.validation import as_vector

        with pytest.raises(DimensionMismatchError) as exc:
            as_vector([1.0, 2.0, 3.0], expected_dim=4)
        assert isinstance(exc.value, ValidationError)
        assert "expected 4, got 3" in str(exc.value)

    def test_dimension_bounds(self):
        from vecmem.errors import ValidationError
        from vecmem.validation import MAX_VECTOR_DIMENSION, validate_dimension

        assert validate_dimension(MAX_VECTOR_DIMENSION) == MAX_VECTOR_DIMENSION
        for bad in (0, MAX_VECTOR_DIMENSION + 1, True, 3.0):
            with pytest.raises(ValidationError):
                validate_dimension(bad)

    def test_k_and_batch_limits(self):
        from vecmem.errors import ValidationError
        from vecmem.validation import MAX_BATCH_SIZE, MAX_SEARCH_K, validate_batch_size, validate_k

        assert validate_k(MAX_SEARCH_K) == MAX_SEARCH_K
        with pytest.raises(ValidationError):
            validate_k(MAX_SEARCH_K + 1)
        with pytest.raises(ValidationError):
            validate_k(0)
        with pytest.raises(ValidationError):
            validate_batch_size(MAX_BATCH_SIZE + 1)

    def test_temperature(self):
        from vecmem.errors import ValidationError
        from vecmem.validation import validate_temperature

        assert validate_temperature(0.5) == 0.5
        for bad in (0, -1.0, float("inf"), "1"):
            with pytest.raises(ValidationError):
                validate_temperature(bad)


# ============================================================================
# Error Hierarchy Tests
# ============================================================================

class TestErrors:
    """Tests for the error taxonomy."""

    def test_categories_are_distinct(self):
        """Model-state errors are not validation errors and vice versa."""
        from vecmem.errors import (
            ModelStateError,
            NotInitializedError,
            UntrainedModelError,
            ValidationError,
        )

        assert issubclass(NotInitializedError, ModelStateError)
        assert issubclass(UntrainedModelError, ModelStateError)
        assert not issubclass(NotInitializedError, ValidationError)
        assert issubclass(ValidationError, ValueError)

    def test_missing_dependency_hint(self):
        from vecmem.errors import ConfigurationError, ErrorCode, MissingDependencyError

        err = MissingDependencyError("faiss is required", "pip install faiss-cpu")
        assert isinstance(err, ImportError)
        assert isinstance(err, ConfigurationError)
        assert err.install_hint == "pip install faiss-cpu"
        assert "pip install faiss-cpu" in str(err)
        assert err.code == ErrorCode.MISSING_DEPENDENCY

    def test_backend_unavailable_lists_attempts(self):
        from vecmem.backends import Attempt
        from vecmem.errors import BackendUnavailableError

        err = BackendUnavailableError([
            Attempt("faiss", "unavailable", "missing faiss"),
            Attempt("sqlite", "initialize", "disk full"),
        ])
        assert "faiss" in str(err) and "sqlite" in str(err)
        assert len(err.attempts) == 2

    def test_to_dict(self):
        from vecmem.errors import DimensionMismatchError

        data = DimensionMismatchError(3, 4).to_dict()
        assert data["error"]["code"] == "VM-2001"
        assert "expected 3, got 4" in data["error"]["message"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
