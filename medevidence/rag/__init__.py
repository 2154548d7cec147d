"""
MedEvidence RAG Module

Retrieval side of the evidence pipeline.
Provides the embedding client and cache, hybrid retrieval backends and
the contextual reranker.
"""

from medevidence.rag.backends import (
    InMemoryEvidenceBackend,
    PostgresEvidenceBackend,
    RetrievalBackend,
    reciprocal_rank_fusion,
)
from medevidence.rag.cache import BoundedCache
from medevidence.rag.embedding import EmbeddingClient, EmbeddingProviderError
from medevidence.rag.reranker import ContextualReranker, RerankWeights
from medevidence.rag.retriever import (
    HybridRetriever,
    RetrievalBackendError,
    RetrievalError,
    RetrievalOptions,
    RetrievalUnavailableError,
)

__all__ = [
    # Embedding
    "EmbeddingClient",
    "EmbeddingProviderError",
    "BoundedCache",
    # Retrieval
    "HybridRetriever",
    "RetrievalOptions",
    "RetrievalError",
    "RetrievalUnavailableError",
    "RetrievalBackendError",
    "RetrievalBackend",
    "PostgresEvidenceBackend",
    "InMemoryEvidenceBackend",
    "reciprocal_rank_fusion",
    # Reranking
    "ContextualReranker",
    "RerankWeights",
]
