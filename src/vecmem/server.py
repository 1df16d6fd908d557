"""
MCP server exposing vecmem.

Tools:
- memory_store / memory_search / memory_delete
- memory_attend: attention over every stored memory
- memory_feedback / memory_train: learned query enhancement
- memory_stats / backend_detect

Configuration comes from VECMEM_* environment variables, read once when
the server starts; the VectorMemory lives in the FastMCP lifespan context.
"""

import logging
import os
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import numpy as np
from mcp.server.fastmcp import Context, FastMCP

from .backends import BackendConfig, detect_backends
from .embedding import DEFAULT_BASE_URL, DEFAULT_DIM, DEFAULT_MODEL_KEY, EmbeddingConfig
from .engine import CONTENT_KEY, VectorMemory
from .errors import ConfigurationError, VectorMemoryError

logger = logging.getLogger(__name__)

TRUTHY = {"true", "1", "yes", "on"}


@dataclass
class ServerSettings:
    backend: str = "auto"
    backend_config: BackendConfig = field(default_factory=BackendConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    learning: bool = False


def load_settings(environ: Optional[Mapping[str, str]] = None) -> ServerSettings:
    """Build server settings from VECMEM_* environment variables."""
    env = os.environ if environ is None else environ

    db_path = env.get("VECMEM_DB_PATH", os.path.expanduser("~/.vecmem/memory.db"))

    dimension = env.get("VECMEM_DIMENSION")
    try:
        dimension = int(dimension) if dimension else None
    except ValueError as e:
        raise ConfigurationError(f"VECMEM_DIMENSION must be an integer, got {dimension!r}") from e

    embedding = EmbeddingConfig(
        provider=env.get("VECMEM_PROVIDER", "accelerated"),
        model=env.get("VECMEM_MODEL", DEFAULT_MODEL_KEY),
        dimension=dimension or DEFAULT_DIM,
        api_key=env.get("VECMEM_API_KEY") or env.get("OPENAI_API_KEY"),
        base_url=env.get("VECMEM_BASE_URL", DEFAULT_BASE_URL),
        use_gpu=env.get("VECMEM_USE_GPU", "true").lower() in TRUTHY,
    )
    backend_config = BackendConfig(
        dimension=dimension,
        metric=env.get("VECMEM_METRIC", "cosine"),
        storage_path=db_path,
    )
    return ServerSettings(
        backend=env.get("VECMEM_BACKEND", "auto"),
        backend_config=backend_config,
        embedding=embedding,
        learning=env.get("VECMEM_LEARNING", "false").lower() in TRUTHY,
    )


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[VectorMemory]:
    settings = load_settings()
    db_path = settings.backend_config.storage_path
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    memory = VectorMemory.create(
        backend=settings.backend,
        config=settings.backend_config,
        embedding=settings.embedding,
        learning=settings.learning,
    )
    logger.info(f"Vector memory ready: {settings.backend_config.storage_path}")
    try:
        yield memory
    finally:
        await memory.close()


# Initialize MCP server
mcp = FastMCP("vecmem", lifespan=lifespan)


def _memory(ctx: Context) -> VectorMemory:
    return ctx.request_context.lifespan_context


def _failure(action: str, error: Exception) -> dict:
    logger.error(f"Failed to {action}: {error}")
    result = {"success": False, "error": str(error)}
    if isinstance(error, VectorMemoryError):
        result["code"] = error.code.value
    return result


# ============================================================================
# MCP Tools
# ============================================================================

@mcp.tool()
async def memory_store(
    ctx: Context,
    content: str = "",
    id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    items: Optional[list[dict[str, Any]]] = None,
) -> dict:
    """
    Store one or multiple memories.

    Single mode (items is None or empty):
        content  : Text to store (required)
        id       : Optional unique id (generated if omitted)
        metadata : Optional metadata dictionary

    Batch mode (items is a non-empty list):
        items : List of dicts, each with text (required), id, metadata

    Returns:
        Single → {"success": True, "id": <id>}
        Batch  → {"success": True, "count": N, "ids": [...]}
    """
    memory = _memory(ctx)
    try:
        if items:
            ids = await memory.store_batch(items)
            return {"success": True, "count": len(ids), "ids": ids}
        if not content:
            return {"success": False, "error": "content is required"}
        stored = await memory.store(content, id=id, metadata=metadata)
        return {"success": True, "id": stored}
    except Exception as e:
        return _failure("store memory", e)


@mcp.tool()
async def memory_search(
    ctx: Context,
    query: str,
    k: int = 10,
    threshold: float = 0.0,
    filter: Optional[dict[str, Any]] = None,
) -> dict:
    """
    Search memories by semantic similarity.

    Args:
        query: Search text
        k: Maximum number of results
        threshold: Minimum similarity in [0, 1]
        filter: Exact-match metadata filter
    """
    try:
        results = await _memory(ctx).search(query, k=k, threshold=threshold, filter=filter)
    except Exception as e:
        return _failure("search memories", e)

    hits = []
    for r in results:
        metadata = dict(r.metadata or {})
        hits.append({
            "id": r.id,
            "content": metadata.pop(CONTENT_KEY, None),
            "similarity": round(r.similarity, 4),
            "distance": round(r.distance, 4),
            "metadata": metadata,
        })
    return {"success": True, "count": len(hits), "results": hits}


@mcp.tool()
async def memory_delete(ctx: Context, id: str) -> dict:
    """Delete a memory by id."""
    try:
        removed = _memory(ctx).remove(id)
    except Exception as e:
        return _failure("delete memory", e)
    if not removed:
        return {"success": False, "error": f"Memory not found: {id}"}
    return {"success": True, "id": id}


@mcp.tool()
async def memory_attend(
    ctx: Context,
    query: str,
    top_k: int = 10,
    min_score: float = 0.0,
    temperature: float = 1.0,
) -> dict:
    """
    Attention over every stored memory.

    The returned scores are the top_k attention weights at or above
    min_score; the attended vector norm reflects all memories.
    """
    try:
        result = await _memory(ctx).attend(query, top_k=top_k, min_score=min_score, temperature=temperature)
    except Exception as e:
        return _failure("compute attention", e)
    return {
        "success": True,
        "scores": [
            {"id": s.id, "score": round(s.score, 4), "content": s.content}
            for s in result.scores
        ],
        "attended_norm": float(np.linalg.norm(result.attended)),
        "execution_time_ms": round(result.execution_time_ms, 3),
    }


@mcp.tool()
async def memory_feedback(ctx: Context, query: str, success: bool) -> dict:
    """Record whether the results for a query were useful."""
    memory = _memory(ctx)
    try:
        await memory.feedback(query, success)
    except Exception as e:
        return _failure("record feedback", e)
    return {"success": True, "buffer_size": memory.enhancer.buffer_size}


@mcp.tool()
async def memory_train(ctx: Context, epochs: int = 100, batch_size: int = 32) -> dict:
    """Train the query enhancer on recorded feedback (needs at least 10 samples)."""
    try:
        result = _memory(ctx).train(epochs=epochs, batch_size=batch_size)
    except Exception as e:
        return _failure("train enhancer", e)
    return {"success": True, **asdict(result)}


@mcp.tool()
async def memory_stats(ctx: Context) -> dict:
    """Get backend, embedding, attention and learning statistics."""
    try:
        return {"success": True, **_memory(ctx).get_stats()}
    except Exception as e:
        return _failure("get stats", e)


@mcp.tool()
def backend_detect() -> dict:
    """Report which vector backends are installed, without initializing any."""
    return {"success": True, "backends": [asdict(d) for d in detect_backends()]}


# ============================================================================
# Server Entry Point
# ============================================================================

def run_server():
    """Run the MCP server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info("Starting vecmem MCP server...")
    mcp.run()


if __name__ == "__main__":
    run_server()
