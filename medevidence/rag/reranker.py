"""
Contextual Reranker for MedEvidence

Re-scores retrieval candidates against the structured query understanding
using a weighted ensemble of signals, each in [0, 1]:

- base_retrieval: min-max normalized fusion score over the candidate set
- entity_overlap: share of query concepts found as whole words in the record
- intent_match: whether the study design suits the question's intent
- evidence_quality: (6 - level) / 5
- recency: linear decay over 20 years
- mesh_match: share of the query's MeSH headings indexed on the record
- specificity_match: query specificity against record length band

mesh_match and specificity_match carry zero weight unless configured.

Final score = sum(weight * signal) / sum(weights). Candidates below the
threshold are dropped; survivors are ordered by score, evidence level,
publication year and original rank. Each survivor carries a
RelevanceBreakdown with its signals, matches and confidence band.
"""

import datetime
import logging
import os
import re
from dataclasses import dataclass, replace

from medevidence.evidence.models import (
    EvidenceRecord,
    QueryUnderstanding,
    RelevanceBreakdown,
    RelevanceSignal,
    RerankingStats,
)
from medevidence.evidence.understanding import entity_concepts

logger = logging.getLogger(__name__)

# Threshold below which reranked candidates are dropped
DEFAULT_MIN_CONTEXTUAL_SCORE = float(
    os.environ.get("EVIDENCE_MIN_CONTEXTUAL_SCORE", "0.6")
)

# Confidence bands over the contextual score
HIGH_CONFIDENCE = float(os.environ.get("EVIDENCE_HIGH_CONFIDENCE", "0.8"))
MEDIUM_CONFIDENCE = float(os.environ.get("EVIDENCE_MEDIUM_CONFIDENCE", "0.6"))

RECENCY_HORIZON_YEARS = 20

# Content length bands: short chunks are specific, long ones are broad
SPECIFIC_CONTENT_CHARS = 500
BROAD_CONTENT_CHARS = 2000
_SPECIFICITY_RANK = {"low": 0, "medium": 1, "high": 2}

SIGNAL_NAMES = (
    "base_retrieval",
    "entity_overlap",
    "intent_match",
    "evidence_quality",
    "recency",
    "mesh_match",
    "specificity_match",
)


# ============================================
# Weights
# ============================================


def _env_weight(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass(frozen=True)
class RerankWeights:
    """Signal weights; defaults overridable via RERANK_WEIGHT_* env vars."""

    base_retrieval: float = _env_weight("RERANK_WEIGHT_BASE", 0.4)
    entity_overlap: float = _env_weight("RERANK_WEIGHT_ENTITY", 0.25)
    intent_match: float = _env_weight("RERANK_WEIGHT_INTENT", 0.15)
    evidence_quality: float = _env_weight("RERANK_WEIGHT_QUALITY", 0.15)
    recency: float = _env_weight("RERANK_WEIGHT_RECENCY", 0.05)
    mesh_match: float = _env_weight("RERANK_WEIGHT_MESH", 0.0)
    specificity_match: float = _env_weight("RERANK_WEIGHT_SPECIFICITY", 0.0)

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in SIGNAL_NAMES}

    @property
    def total(self) -> float:
        return sum(self.as_dict().values())


# ============================================
# Intent / Study Design Tables
# ============================================

_SYSTEMATIC = r"meta-analys[ie]s|systematic review"
_RANDOMIZED = r"randomi[sz]ed|controlled trial|\brct\b"
_OBSERVATIONAL = r"cohort|case-control|observational|registry|cross-sectional"
_OPINION = r"editorial|letter|comment|opinion"

# intent -> (favoured designs, mismatched designs)
INTENT_STUDY_DESIGNS: dict[str, tuple[re.Pattern, re.Pattern | None]] = {
    "treatment": (
        re.compile(f"{_SYSTEMATIC}|{_RANDOMIZED}", re.IGNORECASE),
        re.compile(f"case report|{_OPINION}", re.IGNORECASE),
    ),
    "diagnosis": (
        re.compile(
            f"{_SYSTEMATIC}|diagnostic|accuracy|sensitivity|validation|"
            r"cross-sectional|cohort",
            re.IGNORECASE,
        ),
        re.compile(_OPINION, re.IGNORECASE),
    ),
    "mechanism": (
        re.compile(
            r"\breview\b|experimental|in vitro|animal|mechanis|pharmacolog",
            re.IGNORECASE,
        ),
        None,
    ),
    "outcome": (
        re.compile(
            f"{_SYSTEMATIC}|{_RANDOMIZED}|cohort|prospective|longitudinal|registry",
            re.IGNORECASE,
        ),
        re.compile(f"case report|{_OPINION}", re.IGNORECASE),
    ),
    "safety": (
        re.compile(
            f"{_SYSTEMATIC}|{_RANDOMIZED}|{_OBSERVATIONAL}|pharmacovigilance|surveillance",
            re.IGNORECASE,
        ),
        re.compile(_OPINION, re.IGNORECASE),
    ),
    "dosing": (
        re.compile(
            f"{_RANDOMIZED}|pharmacokinetic|dose-finding|dose-response|phase i",
            re.IGNORECASE,
        ),
        re.compile(f"case report|{_OPINION}", re.IGNORECASE),
    ),
    "guideline": (
        re.compile(
            f"guideline|consensus|recommendation|{_SYSTEMATIC}", re.IGNORECASE
        ),
        re.compile(r"case report|letter", re.IGNORECASE),
    ),
    "comparison": (
        re.compile(
            f"{_SYSTEMATIC}|{_RANDOMIZED}|comparative|head-to-head", re.IGNORECASE
        ),
        re.compile(r"case report|case series", re.IGNORECASE),
    ),
}


# ============================================
# Signals
# ============================================


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _record_text(record: EvidenceRecord) -> str:
    return " ".join([record.title, record.content, " ".join(record.mesh_terms)])


def base_retrieval_signal(score: float, low: float, high: float) -> float:
    """Min-max normalize a fusion score; a flat candidate set scores 1.0."""
    if high <= low:
        return 1.0
    return _clamp((score - low) / (high - low))


def matched_entities(record: EvidenceRecord, entities: list[str]) -> list[str]:
    """Names of the query concepts found as whole words in the record."""
    text = _record_text(record)
    return [c.name for c in entity_concepts(entities) if c.matches(text)]


def entity_overlap_signal(record: EvidenceRecord, entities: list[str]) -> float:
    """Fraction of query concepts present in the record; 0 without entities."""
    concepts = entity_concepts(entities)
    if not concepts:
        return 0.0
    text = _record_text(record)
    return _clamp(sum(1 for c in concepts if c.matches(text)) / len(concepts))


def intent_match_signal(record: EvidenceRecord, understanding: QueryUnderstanding) -> float:
    """1.0 favoured design, 0.5 neutral or unknown, 0.0 explicit mismatch."""
    design = record.study_type or ""
    if not design:
        return 0.5
    for intent in understanding.intents:
        table = INTENT_STUDY_DESIGNS.get(intent)
        if table and table[0].search(design):
            return 1.0
    primary = INTENT_STUDY_DESIGNS.get(understanding.primary_intent)
    if primary and primary[1] is not None and primary[1].search(design):
        return 0.0
    return 0.5


def evidence_quality_signal(level: int) -> float:
    return _clamp((6 - level) / 5)


def recency_signal(year: int | None, current_year: int) -> float:
    if year is None:
        return 0.0
    return _clamp(1 - (current_year - year) / RECENCY_HORIZON_YEARS)


def matched_mesh_terms(record: EvidenceRecord, mesh_terms: tuple[str, ...]) -> list[str]:
    """Query MeSH headings indexed on the record, compared case-insensitively."""
    indexed = {term.lower() for term in record.mesh_terms}
    return [term for term in mesh_terms if term.lower() in indexed]


def mesh_match_signal(record: EvidenceRecord, mesh_terms: tuple[str, ...]) -> float:
    """Share of query MeSH headings on the record; 0.5 when the query has none."""
    if not mesh_terms:
        return 0.5
    return _clamp(len(matched_mesh_terms(record, mesh_terms)) / len(mesh_terms))


def record_specificity(record: EvidenceRecord) -> str:
    if len(record.content) < SPECIFIC_CONTENT_CHARS:
        return "high"
    if len(record.content) < BROAD_CONTENT_CHARS:
        return "medium"
    return "low"


def specificity_match_signal(record: EvidenceRecord, specificity: str) -> float:
    """1.0 for the same band, 0.7 for an adjacent band, 0.4 otherwise."""
    distance = abs(
        _SPECIFICITY_RANK.get(specificity, 0)
        - _SPECIFICITY_RANK[record_specificity(record)]
    )
    if distance == 0:
        return 1.0
    if distance == 1:
        return 0.7
    return 0.4


def assess_confidence(score: float) -> str:
    """Band a contextual score into high / medium / low confidence."""
    if score >= HIGH_CONFIDENCE:
        return "high"
    elif score >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


# ============================================
# ContextualReranker
# ============================================


class ContextualReranker:
    """Weighted multi-signal reranker over retrieval candidates."""

    def __init__(
        self,
        weights: RerankWeights | None = None,
        current_year: int | None = None,
    ) -> None:
        self.weights = weights or RerankWeights()
        if self.weights.total <= 0:
            raise ValueError("Rerank weights must sum to a positive value")
        self._current_year = current_year

    @property
    def current_year(self) -> int:
        return self._current_year or datetime.date.today().year

    def score_signals(
        self,
        record: EvidenceRecord,
        understanding: QueryUnderstanding,
        low: float,
        high: float,
    ) -> dict[str, float]:
        """Compute every signal for one candidate."""
        return {
            "base_retrieval": base_retrieval_signal(record.score, low, high),
            "entity_overlap": entity_overlap_signal(
                record, understanding.all_entities()
            ),
            "intent_match": intent_match_signal(record, understanding),
            "evidence_quality": evidence_quality_signal(record.evidence_level),
            "recency": recency_signal(record.publication_year, self.current_year),
            "mesh_match": mesh_match_signal(record, understanding.mesh_terms),
            "specificity_match": specificity_match_signal(
                record, understanding.specificity
            ),
        }

    def combine(self, signals: dict[str, float]) -> float:
        weights = self.weights.as_dict()
        return sum(signals[name] * weights[name] for name in SIGNAL_NAMES) / self.weights.total

    def explain(
        self,
        record: EvidenceRecord,
        understanding: QueryUnderstanding,
        signals: dict[str, float],
        score: float,
    ) -> RelevanceBreakdown:
        """Attach weights, explanations, matches and a confidence band."""
        entities = understanding.all_entities()
        entity_hits = matched_entities(record, entities)
        mesh_hits = matched_mesh_terms(record, understanding.mesh_terms)
        concept_count = len(entity_concepts(entities))
        explanations = {
            "base_retrieval": f"Retrieval score {record.score:.3f}",
            "entity_overlap": f"Matched {len(entity_hits)}/{concept_count} entities",
            "intent_match": (
                f"{record.study_type or 'Unknown design'} for "
                f"{understanding.primary_intent} question"
            ),
            "evidence_quality": f"Evidence level {record.evidence_level}",
            "recency": f"Published {record.publication_year or 'unknown'}",
            "mesh_match": (
                f"Matched {len(mesh_hits)}/{len(understanding.mesh_terms)} MeSH terms"
                if understanding.mesh_terms
                else "No MeSH terms to match"
            ),
            "specificity_match": (
                f"Query specificity {understanding.specificity}, "
                f"record specificity {record_specificity(record)}"
            ),
        }
        weights = self.weights.as_dict()
        return RelevanceBreakdown(
            contextual_score=score,
            confidence=assess_confidence(score),
            signals=tuple(
                RelevanceSignal(
                    name=name,
                    score=signals[name],
                    weight=weights[name],
                    explanation=explanations[name],
                )
                for name in SIGNAL_NAMES
            ),
            matched_entities=tuple(entity_hits),
            matched_mesh_terms=tuple(mesh_hits),
        )

    def rerank(
        self,
        candidates: list[EvidenceRecord],
        understanding: QueryUnderstanding,
        min_contextual_score: float = DEFAULT_MIN_CONTEXTUAL_SCORE,
        enable_reranking: bool = True,
    ) -> tuple[list[EvidenceRecord], RerankingStats]:
        """
        Re-score, filter and order candidates.

        Each candidate's score depends only on itself, the query and the
        bounds of the original candidate set, so dropping candidates below
        the threshold never changes a survivor's score.
        """
        if not candidates:
            return [], RerankingStats.empty()

        if not enable_reranking:
            average = sum(c.score for c in candidates) / len(candidates)
            return list(candidates), RerankingStats(
                initial_count=len(candidates),
                after_reranking=len(candidates),
                average_contextual_score=average,
                signals_used=(),
            )

        low = min(c.score for c in candidates)
        high = max(c.score for c in candidates)

        scored: list[tuple[float, int, EvidenceRecord, dict[str, float]]] = []
        for rank, record in enumerate(candidates):
            signals = self.score_signals(record, understanding, low, high)
            scored.append((self.combine(signals), rank, record, signals))

        survivors = [item for item in scored if item[0] >= min_contextual_score]
        survivors.sort(
            key=lambda item: (
                -item[0],
                item[2].evidence_level,
                # unknown year sorts after every known year
                -item[2].publication_year if item[2].publication_year else 1,
                item[1],
            )
        )

        reranked = [
            replace(
                record,
                score=score,
                retrieval_score=record.score,
                relevance=self.explain(record, understanding, signals, score),
            )
            for score, _, record, signals in survivors
        ]
        weights = self.weights.as_dict()
        signals_used = tuple(
            name
            for name in SIGNAL_NAMES
            if weights[name] > 0
            and any(signals[name] > 0 for _, _, _, signals in survivors)
        )
        average = (
            sum(score for score, _, _, _ in survivors) / len(survivors)
            if survivors
            else 0.0
        )

        logger.info(
            "Reranked %d candidates -> %d above %.2f (avg %.3f)",
            len(candidates),
            len(reranked),
            min_contextual_score,
            average,
        )
        return reranked, RerankingStats(
            initial_count=len(candidates),
            after_reranking=len(reranked),
            average_contextual_score=average,
            signals_used=signals_used,
        )
