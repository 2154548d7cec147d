"""
Prometheus Metrics for MedEvidence

Tracks:
- evidence_searches_total: Counter of evidence searches, by terminal state
- evidence_citations_returned_total: Counter of citations handed back
- evidence_search_latency_seconds: Histogram and percentiles of search time
- embedding_cache_hit_rate: Gauge for the query embedding cache
"""

import logging
import threading

logger = logging.getLogger(__name__)

TERMINAL_STATES = ("complete", "non_medical", "error")

# Thread-safe metrics storage
_lock = threading.Lock()

_metrics: dict[str, float] = {
    "searches_total": 0,
    "citations_returned": 0,
    "embedding_cache_hits": 0,
    "embedding_cache_misses": 0,
    "avg_latency_ms": 0.0,
}

_searches_by_state: dict[str, int] = {state: 0 for state in TERMINAL_STATES}

_latencies: list[float] = []


def record_search(latency_ms: float, state: str, citations: int = 0) -> None:
    """Record metrics for a finished evidence search."""
    with _lock:
        _metrics["searches_total"] += 1
        _searches_by_state[state] = _searches_by_state.get(state, 0) + 1
        _metrics["citations_returned"] += citations
        _latencies.append(latency_ms)
        _metrics["avg_latency_ms"] = sum(_latencies) / len(_latencies)


def record_embedding_cache(hit: bool) -> None:
    """Record an embedding cache lookup."""
    with _lock:
        if hit:
            _metrics["embedding_cache_hits"] += 1
        else:
            _metrics["embedding_cache_misses"] += 1


def get_metrics_text() -> str:
    """Generate Prometheus-compatible metrics text."""
    with _lock:
        cache_total = _metrics["embedding_cache_hits"] + _metrics["embedding_cache_misses"]
        cache_hit_rate = (
            _metrics["embedding_cache_hits"] / cache_total if cache_total > 0 else 0.0
        )

        # Compute percentile buckets
        sorted_latencies = sorted(_latencies)
        p50 = _percentile(sorted_latencies, 50)
        p95 = _percentile(sorted_latencies, 95)
        p99 = _percentile(sorted_latencies, 99)

        lines = [
            "# HELP evidence_searches_total Total number of evidence searches",
            "# TYPE evidence_searches_total counter",
            f'evidence_searches_total {int(_metrics["searches_total"])}',
        ]
        for state, count in _searches_by_state.items():
            lines.append(f'evidence_searches_total{{state="{state}"}} {count}')
        lines += [
            "",
            "# HELP evidence_citations_returned_total Citations returned to callers",
            "# TYPE evidence_citations_returned_total counter",
            f'evidence_citations_returned_total {int(_metrics["citations_returned"])}',
            "",
            "# HELP evidence_search_latency_seconds Evidence search time histogram",
            "# TYPE evidence_search_latency_seconds histogram",
            f'evidence_search_latency_seconds{{le="0.1"}} {_count_below(sorted_latencies, 100)}',
            f'evidence_search_latency_seconds{{le="0.5"}} {_count_below(sorted_latencies, 500)}',
            f'evidence_search_latency_seconds{{le="1.0"}} {_count_below(sorted_latencies, 1000)}',
            f'evidence_search_latency_seconds{{le="5.0"}} {_count_below(sorted_latencies, 5000)}',
            f"evidence_search_latency_seconds_p50 {p50 / 1000:.4f}",
            f"evidence_search_latency_seconds_p95 {p95 / 1000:.4f}",
            f"evidence_search_latency_seconds_p99 {p99 / 1000:.4f}",
            "",
            "# HELP embedding_cache_hit_rate Embedding cache hit ratio",
            "# TYPE embedding_cache_hit_rate gauge",
            f"embedding_cache_hit_rate {cache_hit_rate:.4f}",
        ]

        return "\n".join(lines) + "\n"


def reset_metrics() -> None:
    """Reset all metrics to zero."""
    with _lock:
        for key in _metrics:
            _metrics[key] = 0
        for state in list(_searches_by_state):
            if state in TERMINAL_STATES:
                _searches_by_state[state] = 0
            else:
                del _searches_by_state[state]
        _latencies.clear()


def _percentile(sorted_data: list[float], percentile: int) -> float:
    """Compute the given percentile from sorted data."""
    if not sorted_data:
        return 0.0
    idx = int(len(sorted_data) * percentile / 100)
    idx = min(idx, len(sorted_data) - 1)
    return sorted_data[idx]


def _count_below(sorted_data: list[float], threshold_ms: float) -> int:
    """Count values below threshold in sorted data."""
    count = 0
    for v in sorted_data:
        if v <= threshold_ms:
            count += 1
        else:
            break
    return count
