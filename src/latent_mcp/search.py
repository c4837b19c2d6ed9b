"""Semantic search over stored chunk embeddings."""

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

import numpy as np

from latent_mcp.embedding import EmbeddingGateway
from latent_mcp.errors import ProviderError, ValidationError
from latent_mcp.indexer.models import SearchFilter, SearchResult
from latent_mcp.indexer.store import ChunkCandidate, ContentStore

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 10
DEFAULT_MIN_SCORE = 0.5


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """
    Cosine similarity of two vectors.

    Raises ValidationError when the lengths differ. A zero-magnitude vector
    has similarity 0 with anything.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValidationError(
            f"Vector length mismatch: {va.shape[0] if va.ndim else 0} != {vb.shape[0] if vb.ndim else 0}"
        )
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def rank_candidates(
    query_vector: Sequence[float] | np.ndarray,
    candidates: list[ChunkCandidate],
    top_k: int = DEFAULT_TOP_K,
    min_score: float = DEFAULT_MIN_SCORE,
) -> list[SearchResult]:
    """
    Score candidates against the query and keep the best ``top_k``.

    Candidates embedded with a different dimension (another model) are
    skipped. Scores below ``min_score`` are dropped. Ties keep candidate order.
    """
    query = np.asarray(query_vector, dtype=np.float32)
    usable = [c for c in candidates if c.embedding.shape == query.shape]
    if len(usable) < len(candidates):
        logger.debug(
            "Skipping %d chunks with mismatched embedding size", len(candidates) - len(usable)
        )
    if not usable or top_k <= 0:
        return []

    matrix = np.vstack([c.embedding for c in usable]).astype(np.float32)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, (matrix @ query) / norms, 0.0)

    results: list[SearchResult] = []
    for idx in np.argsort(-scores, kind="stable"):
        score = float(scores[idx])
        if score < min_score:
            break
        candidate = usable[idx]
        results.append(
            SearchResult(
                path=candidate.path,
                title=candidate.title or Path(candidate.path).stem,
                chunk=candidate.content,
                score=score,
                chunk_index=candidate.chunk_index,
            )
        )
        if len(results) >= top_k:
            break
    return results


class SearchEngine:
    """
    Ranks chunks by cosine similarity to an embedded query.

    Without an embedding gateway, or when embedding the query fails, falls
    back to substring matching so search stays available.
    """

    def __init__(
        self,
        store: ContentStore,
        gateway: EmbeddingGateway | None = None,
        min_score: float = DEFAULT_MIN_SCORE,
        top_k: int = DEFAULT_TOP_K,
    ):
        if top_k <= 0:
            raise ValueError(f"Default top_k must be positive, got {top_k}")
        self.store = store
        self.gateway = gateway
        self.min_score = min_score
        self.top_k = top_k

    async def search(
        self,
        query: str,
        top_k: int | None = None,
        filters: SearchFilter | None = None,
    ) -> list[SearchResult]:
        """
        Search the index.

        Args:
            query: Natural language query
            top_k: Maximum number of results, defaults to the engine's top_k
            filters: Optional tag / modification date filters

        Returns:
            At most ``top_k`` results with non-increasing scores.
        """
        if not query or not query.strip():
            raise ValidationError("Query must not be empty")
        if top_k is None:
            top_k = self.top_k
        if top_k <= 0:
            raise ValidationError(f"top_k must be positive, got {top_k}")

        if self.gateway is None:
            return await self.text_search(query, top_k, filters)

        try:
            query_vector = await self.gateway.embed_query(query)
        except ProviderError as e:
            logger.warning("Query embedding failed, falling back to text search: %s", e)
            return await self.text_search(query, top_k, filters)

        candidates = await asyncio.to_thread(self.store.get_embedded_chunks, filters)
        results = rank_candidates(query_vector, candidates, top_k, self.min_score)
        logger.debug(
            "Search %r: %d candidates, %d results", query, len(candidates), len(results)
        )
        return results

    async def text_search(
        self,
        query: str,
        top_k: int | None = None,
        filters: SearchFilter | None = None,
    ) -> list[SearchResult]:
        """Substring fallback over chunk content and titles (fixed score 1.0)."""
        if top_k is None:
            top_k = self.top_k
        return await asyncio.to_thread(self.store.search_text, query, top_k, filters)
