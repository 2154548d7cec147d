"""
Evidence Data Model for MedEvidence

Immutable records passed through the evidence pipeline:
- EvidenceRecord: raw hit returned by the retrieval backend
- QueryUnderstanding: structured reading of the clinical question
- EvidenceCitation / EvidenceContext: synthesized output for the chat layer
- RelevanceBreakdown: per-candidate reranking signals and confidence
- RerankingStats / EvidenceSummary: diagnostics and summary statistics
"""

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# ============================================
# Evidence Level Tables (Oxford CEBM)
# ============================================

EVIDENCE_LEVEL_LABELS: dict[int, str] = {
    1: "Meta-Analysis/Systematic Review",
    2: "Randomized Controlled Trial",
    3: "Cohort/Case-Control Study",
    4: "Case Series/Case Report",
    5: "Expert Opinion/Review",
}

EVIDENCE_LEVEL_SHORT: dict[int, str] = {
    1: "SR/MA",
    2: "RCT",
    3: "Cohort",
    4: "Case",
    5: "Opinion",
}

MIN_EVIDENCE_LEVEL = 1
MAX_EVIDENCE_LEVEL = 5

# Publication types per level, checked strongest first
_LEVEL_PUBLICATION_TYPES: list[tuple[int, tuple[str, ...]]] = [
    (
        1,
        (
            "meta-analysis",
            "systematic review",
            "practice guideline",
            "guideline",
            "consensus development conference",
        ),
    ),
    (
        2,
        (
            "randomized controlled trial",
            "controlled clinical trial",
            "clinical trial, phase iii",
            "clinical trial, phase iv",
            "pragmatic clinical trial",
            "equivalence trial",
        ),
    ),
    (
        3,
        (
            "observational study",
            "cohort study",
            "case-control study",
            "comparative study",
            "clinical trial, phase ii",
            "clinical trial, phase i",
            "clinical trial",
            "multicenter study",
            "validation study",
            "evaluation study",
            "cross-sectional study",
        ),
    ),
    (4, ("case reports", "case report", "case series", "clinical study", "twin study")),
]


def evidence_level_label(level: int) -> str:
    """Human-readable label for an evidence level."""
    return EVIDENCE_LEVEL_LABELS.get(level, "Unknown")


def clamp_evidence_level(level: Any) -> int:
    """Coerce a backend value into the 1-5 range (5 when unparseable)."""
    try:
        value = int(level)
    except (TypeError, ValueError):
        return MAX_EVIDENCE_LEVEL
    return max(MIN_EVIDENCE_LEVEL, min(MAX_EVIDENCE_LEVEL, value))


def classify_evidence_level(publication_types: list[str]) -> int:
    """Grade a list of publication types; anything unrecognised is level 5."""
    normalized = [pt.lower().strip() for pt in publication_types if pt]
    for level, patterns in _LEVEL_PUBLICATION_TYPES:
        if any(pattern in pt for pt in normalized for pattern in patterns):
            return level
    return MAX_EVIDENCE_LEVEL


# ============================================
# Relevance Breakdown
# ============================================


@dataclass(frozen=True)
class RelevanceSignal:
    """One reranking signal as applied to a single candidate."""

    name: str
    score: float
    weight: float
    explanation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "score": round(self.score, 4),
            "weight": self.weight,
            "explanation": self.explanation,
        }


@dataclass(frozen=True)
class RelevanceBreakdown:
    """Why a reranked candidate received its contextual score."""

    contextual_score: float
    confidence: str
    signals: tuple[RelevanceSignal, ...] = ()
    matched_entities: tuple[str, ...] = ()
    matched_mesh_terms: tuple[str, ...] = ()

    @property
    def relevance_reason(self) -> str:
        return "; ".join(s.explanation for s in self.signals if s.weight > 0)

    def signal_score(self, name: str) -> float | None:
        for signal in self.signals:
            if signal.name == name:
                return signal.score
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contextualScore": round(self.contextual_score, 4),
            "confidence": self.confidence,
            "relevanceReason": self.relevance_reason,
            "relevanceSignals": [s.to_dict() for s in self.signals],
            "matchedEntities": list(self.matched_entities),
            "matchedMeshTerms": list(self.matched_mesh_terms),
        }


# ============================================
# EvidenceRecord
# ============================================


def _as_tuple(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value if v)


def _as_optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class EvidenceRecord:
    """A single evidence chunk as returned by the retrieval backend."""

    id: str
    content: str
    title: str
    journal_name: str = ""
    content_with_context: str = ""
    publication_year: int | None = None
    doi: str | None = None
    authors: tuple[str, ...] = ()
    evidence_level: int = MAX_EVIDENCE_LEVEL
    study_type: str | None = None
    sample_size: int | None = None
    mesh_terms: tuple[str, ...] = ()
    major_mesh_terms: tuple[str, ...] = ()
    chemicals: tuple[str, ...] = ()
    section_type: str | None = None
    pmid: str | None = None
    score: float = 0.0
    retrieval_score: float | None = None  # Raw fusion score once reranked
    relevance: RelevanceBreakdown | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EvidenceRecord":
        """Build a record from a backend row, tolerating missing columns."""
        try:
            score = float(row.get("score") or 0.0)
        except (TypeError, ValueError):
            score = 0.0
        content = row.get("content") or ""
        return cls(
            id=str(row.get("id") or ""),
            content=content,
            content_with_context=row.get("content_with_context") or content,
            title=row.get("title") or "",
            journal_name=row.get("journal_name") or "",
            publication_year=_as_optional_int(row.get("publication_year")),
            doi=_as_optional_str(row.get("doi")),
            authors=_as_tuple(row.get("authors")),
            evidence_level=clamp_evidence_level(row.get("evidence_level")),
            study_type=_as_optional_str(row.get("study_type")),
            sample_size=_as_optional_int(row.get("sample_size")),
            mesh_terms=_as_tuple(row.get("mesh_terms")),
            major_mesh_terms=_as_tuple(row.get("major_mesh_terms")),
            chemicals=_as_tuple(row.get("chemicals")),
            section_type=_as_optional_str(row.get("section_type")),
            pmid=_as_optional_str(row.get("pmid")),
            score=score,
        )

    def is_complete(self) -> bool:
        """True when the fields a citation cannot do without are present."""
        return bool(self.id and self.title and self.content)


# ============================================
# QueryUnderstanding
# ============================================

INTENTS = (
    "treatment",
    "diagnosis",
    "mechanism",
    "outcome",
    "safety",
    "dosing",
    "guideline",
    "comparison",
    "general",
)

ENTITY_CATEGORIES = (
    "conditions",
    "drugs",
    "procedures",
    "symptoms",
    "tests",
    "anatomy",
    "demographics",
    "outcomes",
)


@dataclass(frozen=True)
class EntityBag:
    """Entity surface strings detected in a query, per category."""

    conditions: tuple[str, ...] = ()
    drugs: tuple[str, ...] = ()
    procedures: tuple[str, ...] = ()
    symptoms: tuple[str, ...] = ()
    tests: tuple[str, ...] = ()
    anatomy: tuple[str, ...] = ()
    demographics: tuple[str, ...] = ()
    outcomes: tuple[str, ...] = ()

    def categories(self) -> dict[str, tuple[str, ...]]:
        return {name: getattr(self, name) for name in ENTITY_CATEGORIES}

    def non_empty_categories(self) -> list[str]:
        return [name for name, values in self.categories().items() if values]

    def all(self) -> list[str]:
        """Flat, de-duplicated entity list in category order."""
        seen: dict[str, None] = {}
        for values in self.categories().values():
            for value in values:
                seen.setdefault(value, None)
        return list(seen)


@dataclass(frozen=True)
class QueryUnderstanding:
    """Structured reading of a clinical question, computed once per query."""

    primary_intent: str = "general"
    secondary_intents: tuple[str, ...] = ()
    question_type: str = "factual"
    specificity: str = "low"
    entities: EntityBag = field(default_factory=EntityBag)

    requires_treatment: bool = False
    requires_diagnosis: bool = False
    requires_mechanism: bool = False
    requires_outcome: bool = False
    requires_safety: bool = False
    requires_dosing: bool = False
    requires_guidelines: bool = False
    requires_comparison: bool = False

    semantic_query: str = ""
    keyword_query: str = ""
    entity_query: str = ""
    mesh_terms: tuple[str, ...] = ()

    medical_domains: tuple[str, ...] = ()
    specialties: tuple[str, ...] = ()
    urgency: str = "low"
    complexity: str = "simple"

    @classmethod
    def empty(cls, query: str = "") -> "QueryUnderstanding":
        """Degenerate understanding used for empty or unparseable input."""
        return cls(semantic_query=query, keyword_query=query)

    @property
    def intents(self) -> tuple[str, ...]:
        return (self.primary_intent, *self.secondary_intents)

    def all_entities(self) -> list[str]:
        return self.entities.all()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["entities"] = {k: list(v) for k, v in self.entities.categories().items()}
        return data


# ============================================
# Citations & Context
# ============================================


@dataclass(frozen=True)
class EvidenceCitation:
    """One numbered citation in the final evidence set."""

    index: int
    pmid: str | None
    title: str
    journal: str
    year: int | None
    doi: str | None
    authors: tuple[str, ...]
    evidence_level: int
    study_type: str | None
    sample_size: int | None
    mesh_terms: tuple[str, ...]
    url: str | None
    snippet: str
    score: float
    relevance: RelevanceBreakdown | None = None

    def to_dict(self) -> dict[str, Any]:
        """Wire shape consumed by the chat layer."""
        return {
            "index": self.index,
            "pmid": self.pmid,
            "title": self.title,
            "journal": self.journal,
            "year": self.year,
            "doi": self.doi,
            "authors": list(self.authors),
            "evidenceLevel": self.evidence_level,
            "studyType": self.study_type,
            "sampleSize": self.sample_size,
            "meshTerms": list(self.mesh_terms),
            "url": self.url,
            "snippet": self.snippet,
            "score": self.score,
            "relevance": self.relevance.to_dict() if self.relevance else None,
        }


@dataclass(frozen=True)
class EvidenceContext:
    """Citations plus the text blocks used to condition the LLM."""

    citations: tuple[EvidenceCitation, ...] = ()
    formatted_context: str = ""
    system_prompt_addition: str = ""

    @classmethod
    def empty(cls) -> "EvidenceContext":
        return EMPTY_EVIDENCE_CONTEXT

    @property
    def is_empty(self) -> bool:
        return not self.citations


# Canonical "no evidence" value, shared by every empty exit path
EMPTY_EVIDENCE_CONTEXT = EvidenceContext()


@dataclass(frozen=True)
class RerankingStats:
    """Reranking diagnostics. Observability only."""

    initial_count: int = 0
    after_reranking: int = 0
    average_contextual_score: float = 0.0
    signals_used: tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> "RerankingStats":
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {
            "initialCount": self.initial_count,
            "afterReranking": self.after_reranking,
            "averageContextualScore": round(self.average_contextual_score, 4),
            "signalsUsed": list(self.signals_used),
        }


@dataclass(frozen=True)
class EvidenceSummary:
    """Aggregate statistics over a citation set."""

    total_sources: int = 0
    highest_evidence_level: int = MAX_EVIDENCE_LEVEL
    study_type_counts: dict[str, int] = field(default_factory=dict)
    year_range: tuple[int, int] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalSources": self.total_sources,
            "highestEvidenceLevel": self.highest_evidence_level,
            "studyTypeCounts": dict(self.study_type_counts),
            "yearRange": (
                {"min": self.year_range[0], "max": self.year_range[1]}
                if self.year_range
                else None
            ),
        }
