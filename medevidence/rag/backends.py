"""
Retrieval Backends for MedEvidence

Implementations of the hybrid_medical_search RPC contract:
- PostgresEvidenceBackend: calls the stored function over async SQLAlchemy
- InMemoryEvidenceBackend: reference implementation over a JSON corpus,
  fusing cosine and BM25 rankings with Reciprocal Rank Fusion

Both take the RPC parameter mapping built by RetrievalOptions.to_rpc_params
and return EvidenceRecord-shaped rows carrying a fused `score`.
"""

import datetime
import json
import logging
import math
import re
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol

from rank_bm25 import BM25Okapi
from sqlalchemy import text

from medevidence.evidence.models import classify_evidence_level

logger = logging.getLogger(__name__)

RRF_K = 60
MISSING_RANK = 1000
CANDIDATE_POOL_FACTOR = 3
RECENCY_WINDOW_YEARS = 3


class RetrievalBackend(Protocol):
    """Anything that can execute the hybrid_medical_search contract."""

    async def hybrid_search(self, params: Mapping[str, Any]) -> Any: ...


# ============================================
# Reciprocal Rank Fusion
# ============================================


def reciprocal_rank_fusion(
    rankings: Sequence[tuple[Sequence[str], float]],
    k: int = RRF_K,
    missing_rank: int = MISSING_RANK,
) -> dict[str, float]:
    """
    Fuse ranked id lists with weighted RRF.

    score(id) = sum(weight / (k + rank)) over every ranking, where rank is
    1-based and an id absent from a ranking counts as rank `missing_rank`.
    Only ids present in at least one ranking are scored.
    """
    positions: list[tuple[dict[str, int], float]] = []
    all_ids: dict[str, None] = {}
    for ids, weight in rankings:
        positions.append(({doc_id: rank for rank, doc_id in enumerate(ids, start=1)}, weight))
        for doc_id in ids:
            all_ids.setdefault(doc_id, None)

    fused: dict[str, float] = {}
    for doc_id in all_ids:
        fused[doc_id] = sum(
            weight / (k + ranks.get(doc_id, missing_rank)) for ranks, weight in positions
        )
    return fused


def evidence_boost_term(level: int, evidence_boost: float) -> float:
    """Additive boost favouring stronger evidence: boost * (6 - level) / 5."""
    return evidence_boost * (6 - level) / 5.0


def recency_term(year: int | None, recency_weight: float, current_year: int) -> float:
    """Additive boost for the last RECENCY_WINDOW_YEARS publication years."""
    if year is None or year < current_year - RECENCY_WINDOW_YEARS:
        return 0.0
    return recency_weight * (1.0 - (current_year - year) / 10.0)


# ============================================
# PostgresEvidenceBackend
# ============================================

HYBRID_SEARCH_SQL = text(
    "SELECT * FROM hybrid_medical_search("
    "query_text => :query_text, "
    "query_embedding => CAST(:query_embedding AS vector), "
    "match_count => :match_count, "
    "full_text_weight => :full_text_weight, "
    "semantic_weight => :semantic_weight, "
    "recency_weight => :recency_weight, "
    "evidence_boost => :evidence_boost, "
    "min_evidence_level => :min_evidence_level, "
    "filter_study_types => CAST(:filter_study_types AS text[]), "
    "filter_mesh_terms => CAST(:filter_mesh_terms AS text[]), "
    "min_year => :min_year)"
)


class PostgresEvidenceBackend:
    """Executes the hybrid_medical_search stored function in PostgreSQL."""

    def __init__(self, session_factory: Callable[[], Any]):
        """
        Args:
            session_factory: Zero-argument callable returning an async context
                manager that yields an AsyncSession (e.g. get_db_session).
        """
        self._session_factory = session_factory

    async def hybrid_search(self, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        bound = dict(params)
        # Format vector as pgvector literal: '[1.0,2.0,3.0]'
        bound["query_embedding"] = (
            "[" + ",".join(str(v) for v in params["query_embedding"]) + "]"
        )
        async with self._session_factory() as session:
            result = await session.execute(HYBRID_SEARCH_SQL, bound)
            return [dict(row) for row in result.mappings().all()]


# ============================================
# InMemoryEvidenceBackend
# ============================================

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


def _tokenize(value: str) -> list[str]:
    return _TOKEN_PATTERN.findall(value.lower())


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryEvidenceBackend:
    """Reference hybrid_medical_search over an in-process corpus.

    Each corpus entry is a mapping with the EvidenceRecord columns plus an
    optional `embedding` vector and optional `publication_types` list (used
    to grade entries without an explicit `evidence_level`).
    """

    def __init__(
        self,
        documents: Sequence[Mapping[str, Any]],
        current_year: int | None = None,
    ):
        self._documents: list[dict[str, Any]] = []
        for doc in documents:
            entry = dict(doc)
            if entry.get("evidence_level") is None:
                entry["evidence_level"] = classify_evidence_level(
                    entry.get("publication_types") or []
                )
            entry["id"] = str(entry.get("id", ""))
            self._documents.append(entry)
        self._current_year = current_year
        self.calls = 0

    @classmethod
    def from_json_file(
        cls, path: str | Path, current_year: int | None = None
    ) -> "InMemoryEvidenceBackend":
        """Load a corpus from a JSON file holding a list of evidence rows."""
        with open(path, encoding="utf-8") as f:
            documents = json.load(f)
        if not isinstance(documents, list):
            raise ValueError(f"Evidence corpus {path} must contain a JSON list")
        logger.info("Loaded %d evidence rows from %s", len(documents), path)
        return cls(documents, current_year=current_year)

    def __len__(self) -> int:
        return len(self._documents)

    def _passes_filters(self, doc: Mapping[str, Any], params: Mapping[str, Any]) -> bool:
        if int(doc.get("evidence_level") or 5) > params["min_evidence_level"]:
            return False
        study_types = params.get("filter_study_types")
        if study_types and doc.get("study_type") not in study_types:
            return False
        mesh_terms = params.get("filter_mesh_terms")
        if mesh_terms and not set(mesh_terms) & set(doc.get("mesh_terms") or []):
            return False
        min_year = params.get("min_year")
        if min_year is not None:
            year = doc.get("publication_year")
            if year is None or year < min_year:
                return False
        return True

    def _semantic_ranking(
        self, docs: list[dict[str, Any]], embedding: Sequence[float], limit: int
    ) -> list[str]:
        scored = [
            (doc["id"], _cosine(embedding, doc["embedding"]))
            for doc in docs
            if doc.get("embedding")
        ]
        scored.sort(key=lambda x: x[1], reverse=True)
        return [doc_id for doc_id, _ in scored[:limit]]

    def _keyword_ranking(
        self, docs: list[dict[str, Any]], query_text: str, limit: int
    ) -> list[str]:
        query_tokens = _tokenize(query_text)
        if not docs or not query_tokens:
            return []
        corpus = [
            _tokenize(
                " ".join(
                    [
                        doc.get("title") or "",
                        doc.get("content") or "",
                        " ".join(doc.get("mesh_terms") or []),
                    ]
                )
            )
            for doc in docs
        ]
        index = BM25Okapi(corpus)
        scores = index.get_scores(query_tokens)
        # Only documents sharing a term with the query enter the keyword ranking
        scored = [
            (doc["id"], float(score))
            for doc, tokens, score in zip(docs, corpus, scores, strict=True)
            if set(query_tokens) & set(tokens)
        ]
        scored.sort(key=lambda x: x[1], reverse=True)
        return [doc_id for doc_id, _ in scored[:limit]]

    async def hybrid_search(self, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        self.calls += 1
        current_year = self._current_year or datetime.date.today().year
        match_count = int(params["match_count"])
        pool = match_count * CANDIDATE_POOL_FACTOR

        docs = [doc for doc in self._documents if self._passes_filters(doc, params)]
        semantic = self._semantic_ranking(docs, params["query_embedding"], pool)
        keyword = self._keyword_ranking(docs, params["query_text"], pool)

        fused = reciprocal_rank_fusion(
            [
                (semantic, float(params["semantic_weight"])),
                (keyword, float(params["full_text_weight"])),
            ]
        )

        by_id = {doc["id"]: doc for doc in docs}
        rows = []
        for doc_id, rrf_score in fused.items():
            doc = by_id[doc_id]
            level = int(doc.get("evidence_level") or 5)
            score = (
                rrf_score
                + recency_term(
                    doc.get("publication_year"),
                    float(params["recency_weight"]),
                    current_year,
                )
                + evidence_boost_term(level, float(params["evidence_boost"]))
            )
            row = {k: v for k, v in doc.items() if k not in ("embedding", "publication_types")}
            row["score"] = score
            rows.append(row)

        # Stable on ties: score desc, then id
        rows.sort(key=lambda r: (-r["score"], r["id"]))
        return rows[:match_count]
