"""
Tests for the MedEvidence Contextual Reranker
"""

from dataclasses import replace

import pytest

from medevidence.evidence.models import EvidenceRecord, QueryUnderstanding
from medevidence.evidence.understanding import understand
from medevidence.rag.reranker import (
    SIGNAL_NAMES,
    ContextualReranker,
    RerankWeights,
    assess_confidence,
    base_retrieval_signal,
    entity_overlap_signal,
    evidence_quality_signal,
    intent_match_signal,
    matched_entities,
    matched_mesh_terms,
    mesh_match_signal,
    recency_signal,
    record_specificity,
    specificity_match_signal,
)

CURRENT_YEAR = 2024


def _make_record(
    record_id: str,
    score: float = 0.5,
    level: int = 3,
    study_type: str | None = None,
    year: int | None = 2022,
    title: str = "Aspirin in pregnancy",
    content: str = "Aspirin use during pregnancy.",
) -> EvidenceRecord:
    return EvidenceRecord(
        id=record_id,
        content=content,
        title=title,
        publication_year=year,
        evidence_level=level,
        study_type=study_type,
        score=score,
    )


@pytest.fixture
def reranker():
    return ContextualReranker(current_year=CURRENT_YEAR)


@pytest.fixture
def aspirin_understanding():
    return understand("is aspirin safe in pregnancy")


# ============================================
# Signals
# ============================================


class TestSignals:
    """Tests for the individual [0, 1] signals."""

    @pytest.mark.unit
    def test_base_retrieval_min_max(self):
        assert base_retrieval_signal(0.2, 0.2, 0.6) == 0.0
        assert base_retrieval_signal(0.6, 0.2, 0.6) == 1.0
        assert base_retrieval_signal(0.4, 0.2, 0.6) == pytest.approx(0.5)

    @pytest.mark.unit
    def test_base_retrieval_flat_set(self):
        assert base_retrieval_signal(0.3, 0.3, 0.3) == 1.0

    @pytest.mark.unit
    def test_entity_overlap(self):
        record = _make_record("r", title="Aspirin trial", content="Adults only.")
        assert entity_overlap_signal(record, ["aspirin", "pregnancy"]) == 0.5

    @pytest.mark.unit
    def test_entity_overlap_uses_mesh_terms(self):
        record = EvidenceRecord(
            id="r", content="x", title="y", mesh_terms=("Aspirin", "Pregnancy")
        )
        assert entity_overlap_signal(record, ["aspirin", "pregnancy"]) == 1.0

    @pytest.mark.unit
    def test_entity_overlap_without_entities(self):
        assert entity_overlap_signal(_make_record("r"), []) == 0.0

    @pytest.mark.unit
    def test_intent_match_favoured(self, aspirin_understanding):
        record = _make_record("r", study_type="Meta-Analysis")
        assert intent_match_signal(record, aspirin_understanding) == 1.0

    @pytest.mark.unit
    def test_intent_match_neutral(self, aspirin_understanding):
        record = _make_record("r", study_type="Case Report")
        assert intent_match_signal(record, aspirin_understanding) == 0.5

    @pytest.mark.unit
    def test_intent_match_mismatch(self):
        u = understand("first-line treatment of hypertension")
        record = _make_record("r", study_type="Case Report")
        assert u.primary_intent == "treatment"
        assert intent_match_signal(record, u) == 0.0

    @pytest.mark.unit
    def test_intent_match_unknown_design(self, aspirin_understanding):
        assert intent_match_signal(_make_record("r"), aspirin_understanding) == 0.5

    @pytest.mark.unit
    @pytest.mark.parametrize("level,expected", [(1, 1.0), (2, 0.8), (5, 0.2)])
    def test_evidence_quality(self, level, expected):
        assert evidence_quality_signal(level) == pytest.approx(expected)

    @pytest.mark.unit
    def test_recency(self):
        assert recency_signal(2024, 2024) == 1.0
        assert recency_signal(2014, 2024) == pytest.approx(0.5)
        assert recency_signal(1990, 2024) == 0.0
        assert recency_signal(None, 2024) == 0.0


class TestEntityMatching:
    """Tests for whole-word, abbreviation-aware entity matching."""

    @pytest.mark.unit
    def test_short_entities_do_not_match_inside_words(self):
        entities = understand("CT findings in men with appendicitis").all_entities()
        record = _make_record(
            "r",
            title="Treatment effect in women",
            content="Treatment effect of statins in women.",
        )
        assert entities == ["ct", "men"]
        assert entity_overlap_signal(record, entities) == 0.0
        assert matched_entities(record, entities) == []

    @pytest.mark.unit
    def test_whole_words_match_case_insensitively(self):
        record = _make_record(
            "r",
            title="Appendicitis imaging",
            content="CT imaging in men with suspected appendicitis.",
        )
        assert entity_overlap_signal(record, ["ct", "men"]) == 1.0
        assert matched_entities(record, ["ct", "men"]) == ["ct", "men"]

    @pytest.mark.unit
    def test_abbreviation_and_expansion_are_one_entity(self):
        u = understand("COPD exacerbation treatment")
        assert u.entities.conditions == ("copd", "chronic obstructive pulmonary disease")

        short = _make_record("r", title="COPD exacerbations", content="Inhaled therapy.")
        long = _make_record(
            "s",
            title="Exacerbations",
            content="Chronic obstructive pulmonary disease exacerbations in adults.",
        )
        assert entity_overlap_signal(short, u.all_entities()) == 1.0
        assert entity_overlap_signal(long, u.all_entities()) == 1.0
        assert matched_entities(short, u.all_entities()) == ["copd"]

    @pytest.mark.unit
    def test_expansion_matches_case_sensitive_abbreviation(self):
        entities = understand("aspirin after MI").all_entities()
        assert entities == ["myocardial infarction", "aspirin"]

        upper = _make_record("r", title="Secondary prevention", content="Aspirin after MI.")
        lower = _make_record("s", title="Secondary prevention", content="Aspirin mi casa.")
        assert entity_overlap_signal(upper, entities) == 1.0
        assert entity_overlap_signal(lower, entities) == 0.5

    @pytest.mark.unit
    def test_whole_word_matching_changes_ranking(self, reranker):
        u = understand("CT findings in men with appendicitis")
        candidates = [
            _make_record(
                "women",
                score=0.3,
                level=1,
                study_type="Meta-Analysis",
                year=2023,
                title="Treatment effect in women",
                content="Treatment effect of statins in women.",
            ),
            _make_record(
                "appendicitis",
                score=0.3,
                level=3,
                study_type="Cohort Study",
                year=2023,
                title="Appendicitis imaging",
                content="CT imaging in men with suspected appendicitis.",
            ),
        ]
        ranked, _ = reranker.rerank(candidates, u, min_contextual_score=0.6)

        assert [r.id for r in ranked] == ["appendicitis", "women"]
        assert ranked[0].score == pytest.approx(0.8625)
        assert ranked[1].score == pytest.approx(0.6725)


class TestSupplementarySignals:
    """Tests for the MeSH and specificity signals and confidence bands."""

    @pytest.mark.unit
    def test_mesh_match(self):
        record = EvidenceRecord(
            id="r", content="x", title="y", mesh_terms=("Aspirin", "Pregnancy")
        )
        assert mesh_match_signal(record, ("Aspirin", "Pregnancy")) == 1.0
        assert mesh_match_signal(record, ("aspirin", "Pre-Eclampsia")) == 0.5
        assert matched_mesh_terms(record, ("aspirin", "Pre-Eclampsia")) == ["aspirin"]

    @pytest.mark.unit
    def test_mesh_match_without_query_terms(self):
        assert mesh_match_signal(_make_record("r"), ()) == 0.5

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "length,expected", [(499, "high"), (500, "medium"), (1999, "medium"), (2000, "low")]
    )
    def test_record_specificity_bands(self, length, expected):
        assert record_specificity(_make_record("r", content="x" * length)) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("specificity,expected", [("high", 1.0), ("medium", 0.7), ("low", 0.4)])
    def test_specificity_match(self, specificity, expected):
        record = _make_record("r", content="Short abstract.")
        assert specificity_match_signal(record, specificity) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "score,expected",
        [(0.95, "high"), (0.8, "high"), (0.79, "medium"), (0.6, "medium"), (0.59, "low")],
    )
    def test_assess_confidence(self, score, expected):
        assert assess_confidence(score) == expected


# ============================================
# Weights
# ============================================


class TestRerankWeights:
    """Tests for weight configuration."""

    @pytest.mark.unit
    def test_defaults(self):
        weights = RerankWeights()
        assert weights.as_dict() == {
            "base_retrieval": 0.4,
            "entity_overlap": 0.25,
            "intent_match": 0.15,
            "evidence_quality": 0.15,
            "recency": 0.05,
            "mesh_match": 0.0,
            "specificity_match": 0.0,
        }
        assert weights.total == pytest.approx(1.0)

    @pytest.mark.unit
    def test_zero_weights_rejected(self):
        zero = RerankWeights(0, 0, 0, 0, 0)
        with pytest.raises(ValueError):
            ContextualReranker(weights=zero)

    @pytest.mark.unit
    def test_combine_normalizes_by_total(self):
        reranker = ContextualReranker(weights=RerankWeights(2, 0, 0, 0, 0))
        signals = {
            "base_retrieval": 0.5,
            "entity_overlap": 1.0,
            "intent_match": 1.0,
            "evidence_quality": 1.0,
            "recency": 1.0,
            "mesh_match": 1.0,
            "specificity_match": 1.0,
        }
        assert reranker.combine(signals) == pytest.approx(0.5)


# ============================================
# ContextualReranker.rerank
# ============================================


class TestContextualReranker:
    """Tests for ordering, filtering and stats."""

    @pytest.mark.unit
    def test_meta_analysis_outranks_case_reports(self, reranker, aspirin_understanding):
        candidates = [
            _make_record("case-1", score=0.3, level=4, study_type="Case Report", year=2023),
            _make_record("meta", score=0.3, level=1, study_type="Meta-Analysis", year=2023),
            _make_record("case-2", score=0.3, level=4, study_type="Case Report", year=2023),
        ]
        ranked, stats = reranker.rerank(
            candidates, aspirin_understanding, min_contextual_score=0.0
        )
        assert [r.id for r in ranked] == ["meta", "case-1", "case-2"]
        assert ranked[0].score > ranked[1].score
        assert stats.initial_count == 3
        assert stats.after_reranking == 3

    @pytest.mark.unit
    def test_scores_bounded(self, reranker, aspirin_understanding):
        candidates = [_make_record(str(i), score=i / 10, level=(i % 5) + 1) for i in range(6)]
        ranked, _ = reranker.rerank(candidates, aspirin_understanding, min_contextual_score=0.0)
        assert all(0.0 <= r.score <= 1.0 for r in ranked)

    @pytest.mark.unit
    def test_retrieval_score_preserved(self, reranker, aspirin_understanding):
        ranked, _ = reranker.rerank(
            [_make_record("a", score=0.42)], aspirin_understanding, min_contextual_score=0.0
        )
        assert ranked[0].retrieval_score == 0.42

    @pytest.mark.unit
    def test_threshold_is_monotonic_and_does_not_rescore(self, reranker, aspirin_understanding):
        candidates = [
            _make_record("a", score=0.9, level=1, study_type="Meta-Analysis"),
            _make_record("b", score=0.5, level=3),
            _make_record("c", score=0.1, level=5, year=None, title="Other", content="Other"),
        ]
        loose, _ = reranker.rerank(candidates, aspirin_understanding, min_contextual_score=0.0)
        strict, stats = reranker.rerank(
            candidates, aspirin_understanding, min_contextual_score=0.6
        )

        loose_scores = {r.id: r.score for r in loose}
        assert {r.id for r in strict} <= {r.id for r in loose}
        for r in strict:
            assert r.score == loose_scores[r.id]
            assert r.score >= 0.6
        assert "c" not in {r.id for r in strict}
        assert stats.after_reranking == len(strict)

    @pytest.mark.unit
    def test_tie_break_by_level_then_year_then_rank(self, aspirin_understanding):
        # Only base retrieval carries weight, so every candidate ties on score
        reranker = ContextualReranker(
            weights=RerankWeights(1, 0, 0, 0, 0), current_year=CURRENT_YEAR
        )
        candidates = [
            _make_record("lvl3-old", level=3, year=2010),
            _make_record("lvl3-none", level=3, year=None),
            _make_record("lvl3-new", level=3, year=2020),
            _make_record("lvl2", level=2, year=2000),
            _make_record("lvl3-new-later", level=3, year=2020),
        ]
        ranked, _ = reranker.rerank(candidates, aspirin_understanding, min_contextual_score=0.0)
        assert [r.id for r in ranked] == [
            "lvl2",
            "lvl3-new",
            "lvl3-new-later",
            "lvl3-old",
            "lvl3-none",
        ]

    @pytest.mark.unit
    def test_disabled_returns_candidates_unchanged(self, reranker, aspirin_understanding):
        candidates = [_make_record("a", score=0.2), _make_record("b", score=0.6)]
        ranked, stats = reranker.rerank(
            candidates, aspirin_understanding, enable_reranking=False
        )
        assert ranked == candidates
        assert stats.average_contextual_score == pytest.approx(0.4)
        assert stats.signals_used == ()

    @pytest.mark.unit
    def test_empty_candidates(self, reranker, aspirin_understanding):
        ranked, stats = reranker.rerank([], aspirin_understanding)
        assert ranked == []
        assert stats.initial_count == 0

    @pytest.mark.unit
    def test_signals_used_excludes_all_zero_signals(self, reranker):
        candidates = [_make_record("a", year=None), _make_record("b", year=None)]
        _, stats = reranker.rerank(
            candidates, QueryUnderstanding.empty("aspirin"), min_contextual_score=0.0
        )
        assert "recency" not in stats.signals_used
        assert "entity_overlap" not in stats.signals_used
        assert "base_retrieval" in stats.signals_used
        assert "evidence_quality" in stats.signals_used

    @pytest.mark.unit
    def test_stats_to_dict(self, reranker, aspirin_understanding):
        _, stats = reranker.rerank(
            [_make_record("a")], aspirin_understanding, min_contextual_score=0.0
        )
        data = stats.to_dict()
        assert set(data) == {
            "initialCount",
            "afterReranking",
            "averageContextualScore",
            "signalsUsed",
        }

    @pytest.mark.unit
    def test_supplementary_signals_leave_default_scores_unchanged(
        self, reranker, aspirin_understanding
    ):
        ranked, _ = reranker.rerank(
            [_make_record("a")], aspirin_understanding, min_contextual_score=0.0
        )
        # 0.4 base + 0.25 entities + 0.075 unknown design + 0.09 level 3 + 0.045 recency
        assert ranked[0].score == pytest.approx(0.86)

    @pytest.mark.unit
    def test_weighted_mesh_signal_reorders(self, aspirin_understanding):
        reranker = ContextualReranker(
            weights=RerankWeights(0, 0, 0, 0, 0, mesh_match=1.0),
            current_year=CURRENT_YEAR,
        )
        unindexed = _make_record("unindexed")
        indexed = replace(_make_record("indexed"), mesh_terms=("Aspirin", "Pregnancy"))

        ranked, stats = reranker.rerank(
            [unindexed, indexed], aspirin_understanding, min_contextual_score=0.0
        )

        assert aspirin_understanding.mesh_terms == ("Aspirin", "Pregnancy")
        assert [r.id for r in ranked] == ["indexed", "unindexed"]
        assert [r.score for r in ranked] == [1.0, 0.0]
        assert stats.signals_used == ("mesh_match",)


# ============================================
# Relevance Breakdown
# ============================================


class TestRelevanceBreakdown:
    """Tests for the per-candidate breakdown attached by rerank."""

    @pytest.mark.unit
    def test_breakdown_attached_to_survivors(self, reranker, aspirin_understanding):
        record = replace(_make_record("a"), mesh_terms=("Aspirin",))
        ranked, _ = reranker.rerank([record], aspirin_understanding, min_contextual_score=0.0)

        relevance = ranked[0].relevance
        assert relevance is not None
        assert relevance.contextual_score == ranked[0].score
        assert relevance.confidence == "high"
        assert relevance.matched_entities == ("aspirin", "pregnancy")
        assert relevance.matched_mesh_terms == ("Aspirin",)
        assert tuple(s.name for s in relevance.signals) == SIGNAL_NAMES
        assert relevance.signal_score("entity_overlap") == 1.0
        assert relevance.signal_score("mesh_match") == 0.5

    @pytest.mark.unit
    def test_reason_lists_weighted_signals_only(self, reranker, aspirin_understanding):
        ranked, _ = reranker.rerank(
            [_make_record("a")], aspirin_understanding, min_contextual_score=0.0
        )
        reason = ranked[0].relevance.relevance_reason
        assert "Matched 2/2 entities" in reason
        assert "Unknown design for safety question" in reason
        assert "Published 2022" in reason
        assert "MeSH" not in reason

    @pytest.mark.unit
    def test_confidence_follows_score(self, reranker, aspirin_understanding):
        candidates = [
            _make_record("a", score=0.9, level=1, study_type="Meta-Analysis"),
            _make_record("b", score=0.5, level=3),
            _make_record("c", score=0.1, level=5, year=None, title="Other", content="Other"),
        ]
        ranked, _ = reranker.rerank(candidates, aspirin_understanding, min_contextual_score=0.0)
        for r in ranked:
            assert r.relevance.confidence == assess_confidence(r.score)
        assert ranked[-1].relevance.confidence == "low"

    @pytest.mark.unit
    def test_disabled_mode_has_no_breakdown(self, reranker, aspirin_understanding):
        ranked, _ = reranker.rerank(
            [_make_record("a")], aspirin_understanding, enable_reranking=False
        )
        assert ranked[0].relevance is None

    @pytest.mark.unit
    def test_to_dict_camel_case(self, reranker, aspirin_understanding):
        ranked, _ = reranker.rerank(
            [_make_record("a")], aspirin_understanding, min_contextual_score=0.0
        )
        data = ranked[0].relevance.to_dict()
        assert set(data) == {
            "contextualScore",
            "confidence",
            "relevanceReason",
            "relevanceSignals",
            "matchedEntities",
            "matchedMeshTerms",
        }
        assert data["relevanceSignals"][0] == {
            "name": "base_retrieval",
            "score": 1.0,
            "weight": 0.4,
            "explanation": "Retrieval score 0.500",
        }
