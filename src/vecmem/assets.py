"""
Asset containers and local model resolution.

An asset container is a single SQLite file bundling named binary assets
with their sha256, next to a small key/value metadata table:

    model_assets(filename TEXT PRIMARY KEY, content BLOB NOT NULL,
                 size INTEGER NOT NULL, sha256 TEXT NOT NULL)
    model_meta(key TEXT PRIMARY KEY, value TEXT NOT NULL)

Containers are produced by an external packaging step. Readers here
verify every asset's sha256 before handing it out.
"""
from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import AssetIntegrityError, ValidationError
from .validation import validate_path

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1"
CONTAINER_SUFFIX = ".vmc"
MODEL_PATH_ENV = "VECMEM_MODEL_PATH"
REQUIRED_META_KEYS = ("model_id", "dimension", "format_version", "created_at")

ASSETS_SCHEMA = """
CREATE TABLE IF NOT EXISTS model_assets (
    filename TEXT PRIMARY KEY,
    content BLOB NOT NULL,
    size INTEGER NOT NULL,
    sha256 TEXT NOT NULL
)
"""

META_SCHEMA = """
CREATE TABLE IF NOT EXISTS model_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""

_INVALID_MODEL_CHARS = set('<>:"|?*')


@dataclass(frozen=True)
class AssetInfo:
    filename: str
    size: int
    sha256: str


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _safe_asset_name(filename: str) -> str:
    if not filename or "\x00" in filename or ".." in filename or os.path.isabs(filename):
        raise ValidationError(f"Unsafe asset filename: {filename!r}")
    return filename


def write_meta(conn: sqlite3.Connection, meta: Mapping[str, object]):
    conn.execute(META_SCHEMA)
    conn.executemany(
        "INSERT OR REPLACE INTO model_meta (key, value) VALUES (?, ?)",
        [(str(k), str(v)) for k, v in meta.items()],
    )


def write_assets(conn: sqlite3.Connection, assets: Mapping[str, bytes]):
    conn.execute(ASSETS_SCHEMA)
    conn.executemany(
        "INSERT OR REPLACE INTO model_assets (filename, content, size, sha256) VALUES (?, ?, ?, ?)",
        [
            (_safe_asset_name(name), sqlite3.Binary(data), len(data), sha256_hex(data))
            for name, data in assets.items()
        ],
    )


def build_container(
    path: str | Path,
    assets: Mapping[str, bytes],
    model_id: str,
    dimension: int,
    extra_meta: Optional[Mapping[str, object]] = None,
) -> Path:
    """Write a container file. Mostly useful for tests and local packaging."""
    path = Path(validate_path(str(path)))
    path.parent.mkdir(parents=True, exist_ok=True)
    meta = {
        "model_id": model_id,
        "dimension": dimension,
        "format_version": FORMAT_VERSION,
        "created_at": int(time.time()),
    }
    meta.update(extra_meta or {})
    conn = sqlite3.connect(str(path))
    try:
        with conn:
            write_meta(conn, meta)
            write_assets(conn, assets)
    finally:
        conn.close()
    return path


class AssetContainer:
    """
    Read-only view over an asset container file.

    Usage:
        with AssetContainer(path) as container:
            container.verify()
            container.extract_to(target_dir)
    """

    def __init__(self, path: str | Path):
        self.path = Path(validate_path(str(path)))
        self._conn: Optional[sqlite3.Connection] = None

    def open(self) -> "AssetContainer":
        if self._conn is None:
            if not self.path.exists():
                raise FileNotFoundError(f"Asset container not found: {self.path}")
            self._conn = sqlite3.connect(str(self.path))
        return self

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        self.open()
        return self._conn

    def has_table(self, name: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def metadata(self) -> dict[str, str]:
        if not self.has_table("model_meta"):
            return {}
        return dict(self.conn.execute("SELECT key, value FROM model_meta").fetchall())

    def list_assets(self) -> list[AssetInfo]:
        if not self.has_table("model_assets"):
            return []
        rows = self.conn.execute(
            "SELECT filename, size, sha256 FROM model_assets ORDER BY filename"
        ).fetchall()
        return [AssetInfo(name, size, digest) for name, size, digest in rows]

    def read_asset(self, filename: str) -> bytes:
        """Return an asset's bytes after checking its size and sha256."""
        row = self.conn.execute(
            "SELECT content, size, sha256 FROM model_assets WHERE filename = ?", (filename,)
        ).fetchone()
        if row is None:
            raise KeyError(filename)
        content, size, expected = bytes(row[0]), row[1], row[2]
        if len(content) != size:
            raise AssetIntegrityError(
                f"Size mismatch for {filename}: expected {size}, got {len(content)}",
                details={"filename": filename},
            )
        actual = sha256_hex(content)
        if actual != expected:
            raise AssetIntegrityError(
                f"SHA-256 mismatch for {filename}",
                details={"filename": filename, "expected": expected, "actual": actual},
            )
        return content

    def verify(self) -> int:
        """Verify every asset. Returns how many were checked."""
        assets = self.list_assets()
        for info in assets:
            self.read_asset(info.filename)
        return len(assets)

    def missing_meta_keys(self) -> list[str]:
        meta = self.metadata()
        return [k for k in REQUIRED_META_KEYS if k not in meta]

    def extract_to(self, target_dir: str | Path) -> list[Path]:
        """
        Extract verified assets into ``target_dir``.

        Files already present with a matching sha256 are left alone.
        """
        target = Path(validate_path(str(target_dir)))
        target.mkdir(parents=True, exist_ok=True)
        written = []
        for info in self.list_assets():
            dest = target / _safe_asset_name(info.filename)
            if dest.exists() and _file_sha256(dest) == info.sha256:
                logger.debug(f"Asset up to date, skipping: {dest}")
                continue
            content = self.read_asset(info.filename)
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(content)
            written.append(dest)
        logger.info(f"✓ Extracted {len(written)} assets from {self.path} to {target}")
        return written


# ============================================================================
# Model resolution
# ============================================================================

def validate_model_id(model_id: str) -> str:
    if not model_id or not isinstance(model_id, str):
        raise ValidationError("Model id must be a non-empty string")
    if ".." in model_id or model_id.startswith("/") or os.path.isabs(model_id):
        raise ValidationError(f"Invalid model id: {model_id!r}")
    if _INVALID_MODEL_CHARS & set(model_id):
        raise ValidationError(f"Invalid characters in model id: {model_id!r}")
    return model_id


class ModelCache:
    """
    Locates a local copy of an embedding model.

    Resolution order:
        1. ``$VECMEM_MODEL_PATH/<model_id>``
        2. bundled container ``<bundle_dir>/<model>.vmc``, extracted to the cache dir
        3. HuggingFace hub / sentence-transformers caches
        4. a previous extraction in the cache dir
    """

    def __init__(
        self,
        bundle_dir: Optional[str | Path] = None,
        cache_dir: Optional[str | Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.bundle_dir = Path(bundle_dir) if bundle_dir else None
        self.cache_dir = Path(cache_dir) if cache_dir else Path(tempfile.gettempdir()) / "vecmem-models"
        self.environ = os.environ if environ is None else environ

    @staticmethod
    def _flat_name(model_id: str) -> str:
        return model_id.replace("/", "--")

    def _hub_candidates(self, model_id: str) -> list[Path]:
        home = Path(self.environ.get("HOME", str(Path.home())))
        hf_home = Path(self.environ.get("HF_HOME", str(home / ".cache" / "huggingface")))
        st_home = Path(
            self.environ.get("SENTENCE_TRANSFORMERS_HOME", str(home / ".cache" / "torch" / "sentence_transformers"))
        )
        return [
            hf_home / "hub" / f"models--{self._flat_name(model_id)}",
            st_home / model_id.replace("/", "_"),
        ]

    def resolve(self, model_id: str) -> Optional[Path]:
        validate_model_id(model_id)
        flat = self._flat_name(model_id)

        env_path = self.environ.get(MODEL_PATH_ENV)
        if env_path:
            candidate = Path(env_path) / model_id
            if candidate.exists():
                logger.debug(f"Model {model_id} resolved from {MODEL_PATH_ENV}")
                return candidate

        if self.bundle_dir is not None:
            bundle = self.bundle_dir / f"{flat}{CONTAINER_SUFFIX}"
            if bundle.exists():
                target = self.cache_dir / flat
                with AssetContainer(bundle) as container:
                    container.extract_to(target)
                return target

        for candidate in self._hub_candidates(model_id):
            if candidate.exists():
                return candidate

        extracted = self.cache_dir / flat
        if extracted.is_dir() and any(extracted.iterdir()):
            return extracted

        return None
