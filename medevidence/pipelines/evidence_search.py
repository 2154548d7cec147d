"""
Evidence Search Pipeline for MedEvidence

Runs the classify -> understand -> retrieve -> rerank -> synthesize flow as
an explicit state machine:

    idle -> classifying -> non_medical
                        -> understanding -> retrieving -> reranking
                           -> synthesizing -> complete
    retrieving (or any stage, on timeout) -> error

Every exit returns an EvidenceSearchResult. Retrieval failures and the
overall timeout end in the error state with the canonical empty context;
evidence is an enhancement, so they are logged rather than raised.
Task cancellation is not swallowed.
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from medevidence.evidence.classifier import is_medical_query
from medevidence.evidence.models import (
    EMPTY_EVIDENCE_CONTEXT,
    EvidenceContext,
    EvidenceRecord,
    EvidenceSummary,
    QueryUnderstanding,
    RerankingStats,
)
from medevidence.evidence.synthesis import generate_evidence_summary, synthesize
from medevidence.evidence.understanding import understand
from medevidence.observability.metrics import record_search
from medevidence.rag.reranker import DEFAULT_MIN_CONTEXTUAL_SCORE, ContextualReranker
from medevidence.rag.retriever import HybridRetriever, RetrievalError, RetrievalOptions

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = float(os.environ.get("EVIDENCE_SEARCH_TIMEOUT_SECONDS", "30"))
DEFAULT_MAX_RESULTS = 8
DEFAULT_CANDIDATE_MULTIPLIER = 3


class SearchState(str, Enum):
    IDLE = "idle"
    CLASSIFYING = "classifying"
    NON_MEDICAL = "non_medical"
    UNDERSTANDING = "understanding"
    RETRIEVING = "retrieving"
    RERANKING = "reranking"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_STATES = frozenset({SearchState.NON_MEDICAL, SearchState.COMPLETE, SearchState.ERROR})

# Legal transitions; ERROR is additionally reachable from any running stage on timeout
_TRANSITIONS: dict[SearchState, frozenset[SearchState]] = {
    SearchState.IDLE: frozenset({SearchState.CLASSIFYING}),
    SearchState.CLASSIFYING: frozenset({SearchState.NON_MEDICAL, SearchState.UNDERSTANDING}),
    SearchState.UNDERSTANDING: frozenset({SearchState.RETRIEVING}),
    SearchState.RETRIEVING: frozenset({SearchState.RERANKING, SearchState.ERROR}),
    SearchState.RERANKING: frozenset({SearchState.SYNTHESIZING}),
    SearchState.SYNTHESIZING: frozenset({SearchState.COMPLETE}),
}


@dataclass
class EvidenceSearchResult:
    """Outcome of one evidence search, whichever terminal state it reached."""

    context: EvidenceContext
    should_use_evidence: bool
    search_time_ms: float
    state: SearchState
    query_id: str
    understanding: QueryUnderstanding | None = None
    reranking_stats: RerankingStats = field(default_factory=RerankingStats.empty)
    steps: list[dict[str, Any]] = field(default_factory=list)
    transitions: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def summary(self) -> EvidenceSummary:
        return generate_evidence_summary(self.context.citations)

    def to_response(self) -> dict[str, Any]:
        """Outbound shape for POST /api/evidence."""
        return {
            "success": True,
            "shouldUseEvidence": self.should_use_evidence,
            "citations": [c.to_dict() for c in self.context.citations],
            "summary": self.summary.to_dict(),
            "searchTimeMs": round(self.search_time_ms, 1),
        }


class _SearchTrace:
    """Mutable bookkeeping for one run: current state, transitions, timings."""

    def __init__(self) -> None:
        self.state = SearchState.IDLE
        self.transitions: list[str] = [SearchState.IDLE.value]
        self.steps: list[dict[str, Any]] = []
        self.context: EvidenceContext = EMPTY_EVIDENCE_CONTEXT
        self.understanding: QueryUnderstanding | None = None
        self.reranking_stats = RerankingStats.empty()
        self.error: str | None = None

    def advance(self, new_state: SearchState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed and not (
            new_state is SearchState.ERROR and self.state not in TERMINAL_STATES
        ):
            raise RuntimeError(f"Illegal search transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.transitions.append(new_state.value)

    def record_step(self, name: str, step_start: float, detail: str) -> None:
        self.steps.append(
            {
                "name": name,
                "duration_ms": round((time.time() - step_start) * 1000, 1),
                "detail": detail,
            }
        )

    def fail(self, message: str) -> None:
        self.advance(SearchState.ERROR)
        self.error = message
        self.context = EMPTY_EVIDENCE_CONTEXT


class EvidenceSearchOrchestrator:
    """Classify, understand, retrieve, rerank and synthesize evidence for a query."""

    def __init__(
        self,
        retriever: HybridRetriever,
        reranker: ContextualReranker | None = None,
        min_contextual_score: float = DEFAULT_MIN_CONTEXTUAL_SCORE,
        enable_reranking: bool = True,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        candidate_multiplier: int = DEFAULT_CANDIDATE_MULTIPLIER,
    ):
        self.retriever = retriever
        self.reranker = reranker or ContextualReranker()
        self.min_contextual_score = min_contextual_score
        self.enable_reranking = enable_reranking
        self.timeout_seconds = timeout_seconds
        self.candidate_multiplier = candidate_multiplier

    async def run(
        self,
        query: str,
        max_results: int = DEFAULT_MAX_RESULTS,
        min_evidence_level: int = 5,
        study_types: list[str] | None = None,
        min_year: int | None = None,
        mesh_terms: list[str] | None = None,
    ) -> EvidenceSearchResult:
        """Execute one evidence search and return its terminal result."""
        start_time = time.time()
        query_id = str(uuid.uuid4())
        trace = _SearchTrace()

        options = RetrievalOptions(
            match_count=max_results * self.candidate_multiplier
            if self.enable_reranking
            else max_results,
            min_evidence_level=min_evidence_level,
            study_types=tuple(study_types) if study_types else None,
            mesh_terms=tuple(mesh_terms) if mesh_terms else None,
            min_year=min_year,
        )

        try:
            await asyncio.wait_for(
                self._run_stages(trace, query, max_results, options),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Evidence search %s timed out after %.1fs in state %s",
                query_id,
                self.timeout_seconds,
                trace.state.value,
            )
            if trace.state not in TERMINAL_STATES:
                trace.fail(f"Evidence search timed out after {self.timeout_seconds}s")

        elapsed_ms = (time.time() - start_time) * 1000
        result = EvidenceSearchResult(
            context=trace.context,
            should_use_evidence=trace.state is SearchState.COMPLETE
            and not trace.context.is_empty,
            search_time_ms=elapsed_ms,
            state=trace.state,
            query_id=query_id,
            understanding=trace.understanding,
            reranking_stats=trace.reranking_stats,
            steps=trace.steps,
            transitions=trace.transitions,
            error=trace.error,
        )
        record_search(elapsed_ms, trace.state.value, len(result.context.citations))
        logger.info(
            "Evidence search %s finished: state=%s citations=%d time=%.1fms",
            query_id,
            trace.state.value,
            len(result.context.citations),
            elapsed_ms,
        )
        return result

    async def _run_stages(
        self,
        trace: _SearchTrace,
        query: str,
        max_results: int,
        options: RetrievalOptions,
    ) -> None:
        # --- Classification ---
        step_start = time.time()
        trace.advance(SearchState.CLASSIFYING)
        medical = is_medical_query(query)
        trace.record_step("classify", step_start, "medical" if medical else "non-medical")
        if not medical:
            trace.advance(SearchState.NON_MEDICAL)
            return

        # --- Query understanding ---
        step_start = time.time()
        trace.advance(SearchState.UNDERSTANDING)
        understanding = understand(query)
        trace.understanding = understanding
        trace.record_step(
            "understand",
            step_start,
            f"intent={understanding.primary_intent}, "
            f"entities={len(understanding.all_entities())}",
        )
        logger.debug(
            "Query projections: keyword=%r entity=%r mesh=%s specificity=%s",
            understanding.keyword_query,
            understanding.entity_query,
            list(understanding.mesh_terms),
            understanding.specificity,
        )

        # --- Retrieval ---
        step_start = time.time()
        trace.advance(SearchState.RETRIEVING)
        try:
            candidates: list[EvidenceRecord] = await self.retriever.retrieve(
                understanding.semantic_query, options=options
            )
        except RetrievalError as e:
            logger.warning("Evidence retrieval failed, returning no evidence: %s", e)
            trace.record_step("retrieve", step_start, f"failed: {type(e).__name__}")
            trace.fail(str(e))
            return
        trace.record_step("retrieve", step_start, f"{len(candidates)} candidates")

        # --- Reranking ---
        step_start = time.time()
        trace.advance(SearchState.RERANKING)
        ranked, stats = self.reranker.rerank(
            candidates,
            understanding,
            min_contextual_score=self.min_contextual_score,
            enable_reranking=self.enable_reranking,
        )
        ranked = ranked[:max_results]
        trace.reranking_stats = stats
        trace.record_step(
            "rerank",
            step_start,
            f"{stats.initial_count} -> {len(ranked)} (avg {stats.average_contextual_score:.2f})",
        )

        # --- Synthesis ---
        step_start = time.time()
        trace.advance(SearchState.SYNTHESIZING)
        trace.context = synthesize(ranked)
        trace.record_step("synthesize", step_start, f"{len(trace.context.citations)} citations")
        trace.advance(SearchState.COMPLETE)
