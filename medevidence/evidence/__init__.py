"""
MedEvidence Evidence Module

Evidence data model and the pure (no I/O) pipeline stages:
- Medical query classifier
- Query understanding extractor
- Citation synthesizer
"""

from medevidence.evidence.classifier import is_medical_query
from medevidence.evidence.models import (
    EMPTY_EVIDENCE_CONTEXT,
    EVIDENCE_LEVEL_LABELS,
    EVIDENCE_LEVEL_SHORT,
    EntityBag,
    EvidenceCitation,
    EvidenceContext,
    EvidenceRecord,
    EvidenceSummary,
    QueryUnderstanding,
    RerankingStats,
    classify_evidence_level,
    evidence_level_label,
)
from medevidence.evidence.synthesis import (
    build_evidence_system_prompt,
    generate_evidence_summary,
    parse_citation_markers,
    records_to_citations,
    synthesize,
)
from medevidence.evidence.understanding import understand

__all__ = [
    # Models
    "EvidenceRecord",
    "EntityBag",
    "QueryUnderstanding",
    "EvidenceCitation",
    "EvidenceContext",
    "EMPTY_EVIDENCE_CONTEXT",
    "RerankingStats",
    "EvidenceSummary",
    "EVIDENCE_LEVEL_LABELS",
    "EVIDENCE_LEVEL_SHORT",
    "evidence_level_label",
    "classify_evidence_level",
    # Stages
    "is_medical_query",
    "understand",
    "synthesize",
    "records_to_citations",
    # Helpers
    "generate_evidence_summary",
    "parse_citation_markers",
    "build_evidence_system_prompt",
]
