"""
Hybrid Retrieval Client for MedEvidence

Embeds the query (cached, retried) and makes a single call to a
hybrid_medical_search backend, which fuses semantic and full-text ranks
with Reciprocal Rank Fusion plus evidence-level and recency boosts.

Failure modes:
- Embedding provider exhausted  -> RetrievalUnavailableError
- Backend failure or bad rows   -> RetrievalBackendError (never retried)
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from medevidence.evidence.models import EvidenceRecord
from medevidence.rag.backends import RetrievalBackend
from medevidence.rag.embedding import EmbeddingClient, EmbeddingProviderError

logger = logging.getLogger(__name__)


# ============================================
# Errors
# ============================================


class RetrievalError(Exception):
    """Base class for failures the orchestrator turns into an empty result."""


class RetrievalUnavailableError(RetrievalError):
    """The query embedding could not be obtained."""


class RetrievalBackendError(RetrievalError):
    """The retrieval backend failed or returned a malformed response."""


# ============================================
# RetrievalOptions
# ============================================


@dataclass(frozen=True)
class RetrievalOptions:
    """Tunable parameters forwarded to the hybrid_medical_search backend."""

    match_count: int = 10
    semantic_weight: float = 1.0
    full_text_weight: float = 1.0
    recency_weight: float = 0.1
    evidence_boost: float = 0.2
    min_evidence_level: int = 5
    study_types: tuple[str, ...] | None = None
    mesh_terms: tuple[str, ...] | None = None
    min_year: int | None = None

    def to_rpc_params(
        self, query_text: str, query_embedding: list[float]
    ) -> dict[str, Any]:
        """Build the RPC parameter mapping, using the backend's field names."""
        return {
            "query_text": query_text,
            "query_embedding": query_embedding,
            "match_count": self.match_count,
            "full_text_weight": self.full_text_weight,
            "semantic_weight": self.semantic_weight,
            "recency_weight": self.recency_weight,
            "evidence_boost": self.evidence_boost,
            "min_evidence_level": self.min_evidence_level,
            "filter_study_types": list(self.study_types) if self.study_types else None,
            "filter_mesh_terms": list(self.mesh_terms) if self.mesh_terms else None,
            "min_year": self.min_year,
        }


def _loggable(params: Mapping[str, Any]) -> dict[str, Any]:
    """RPC params with the embedding vector elided."""
    loggable = dict(params)
    embedding = loggable.pop("query_embedding", None) or []
    loggable["query_embedding_dim"] = len(embedding)
    return loggable


# ============================================
# HybridRetriever
# ============================================


class HybridRetriever:
    """Embeds a query and runs one hybrid search against the backend."""

    def __init__(self, embedding_client: EmbeddingClient, backend: RetrievalBackend):
        self._embedding_client = embedding_client
        self._backend = backend

    async def retrieve(
        self,
        query_text: str,
        query_embedding: list[float] | None = None,
        options: RetrievalOptions | None = None,
    ) -> list[EvidenceRecord]:
        """
        Retrieve candidate evidence for a query.

        Embeds the query when no embedding is supplied, then makes a single
        backend call. Rows come back in backend order.
        """
        options = options or RetrievalOptions()

        if query_embedding is None:
            try:
                query_embedding = await self._embedding_client.embed(query_text)
            except EmbeddingProviderError as e:
                raise RetrievalUnavailableError(str(e)) from e

        params = options.to_rpc_params(query_text, query_embedding)

        try:
            rows = await self._backend.hybrid_search(params)
        except Exception as e:
            logger.error(
                "Evidence backend call failed for query %r with params %s",
                query_text,
                _loggable(params),
                exc_info=True,
            )
            raise RetrievalBackendError("Evidence search failed") from e

        if rows is None:
            rows = []
        if not isinstance(rows, list):
            logger.error(
                "Evidence backend returned %s instead of a list for query %r with params %s",
                type(rows).__name__,
                query_text,
                _loggable(params),
            )
            raise RetrievalBackendError("Evidence search returned a malformed response")

        records = []
        for row in rows:
            if not isinstance(row, Mapping):
                logger.error(
                    "Evidence backend returned a non-mapping row for query %r with params %s",
                    query_text,
                    _loggable(params),
                )
                raise RetrievalBackendError("Evidence search returned a malformed row")
            records.append(EvidenceRecord.from_row(row))

        logger.info(
            "Retrieved %d evidence candidates (match_count=%d, min_level=%d)",
            len(records),
            options.match_count,
            options.min_evidence_level,
        )
        return records
