"""
MedEvidence Observability Module

Monitoring components:
- Prometheus metrics for evidence searches and the embedding cache
"""

from medevidence.observability.metrics import (
    get_metrics_text,
    record_embedding_cache,
    record_search,
    reset_metrics,
)

__all__ = ["get_metrics_text", "record_embedding_cache", "record_search", "reset_metrics"]
