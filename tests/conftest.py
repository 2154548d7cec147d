"""
MedEvidence Test Configuration

Pytest fixtures and configuration for the test suite.
"""

from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from medevidence.main import app
from medevidence.pipelines.evidence_search import EvidenceSearchOrchestrator
from medevidence.rag.reranker import ContextualReranker
from medevidence.rag.retriever import HybridRetriever

CURRENT_YEAR = 2024

# ============================================
# Fakes
# ============================================


class FakeEmbeddingClient:
    """Returns a fixed vector and counts calls."""

    def __init__(self, vector: list[float] | None = None, error: Exception | None = None):
        self.vector = vector or [0.1, 0.2, 0.3]
        self.error = error
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.vector)

    async def health_check(self) -> bool:
        return self.error is None


class FakeBackend:
    """Returns canned rows (or raises) and records the params it was called with."""

    def __init__(self, rows: Any = None, error: Exception | None = None):
        self.rows = [] if rows is None else rows
        self.error = error
        self.calls = 0
        self.last_params: dict[str, Any] | None = None

    async def hybrid_search(self, params):
        self.calls += 1
        self.last_params = dict(params)
        if self.error is not None:
            raise self.error
        return self.rows


def make_row(**overrides: Any) -> dict[str, Any]:
    """A complete backend row; keyword arguments override any column."""
    row = {
        "id": "chunk-1",
        "content": "Low-dose aspirin in pregnancy reduced preeclampsia risk.",
        "content_with_context": "",
        "title": "Aspirin use during pregnancy",
        "journal_name": "BMJ",
        "publication_year": 2022,
        "doi": "10.1136/bmj.1",
        "authors": ["Smith J", "Lee K"],
        "evidence_level": 2,
        "study_type": "Randomized Controlled Trial",
        "sample_size": 1200,
        "mesh_terms": ["Aspirin", "Pregnancy"],
        "major_mesh_terms": ["Aspirin"],
        "chemicals": ["Aspirin"],
        "section_type": "results",
        "pmid": "123456",
        "score": 0.5,
    }
    row.update(overrides)
    return row


# ============================================
# Metrics Fixtures
# ============================================


@pytest.fixture(autouse=True)
def reset_metrics() -> Generator[None, None, None]:
    """Clear module-level metrics before each test."""
    from medevidence.observability.metrics import reset_metrics as _reset

    _reset()
    yield


# ============================================
# Pipeline Fixtures
# ============================================


@pytest.fixture
def fake_embedding_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def evidence_rows() -> list[dict[str, Any]]:
    """Three candidates: one meta-analysis and two case reports, tied on score."""
    return [
        make_row(
            id="case-1",
            title="Aspirin exposure in pregnancy: a case report",
            content="A pregnant patient took aspirin daily without complications.",
            evidence_level=4,
            study_type="Case Report",
            publication_year=2023,
            pmid="111",
            score=0.3,
        ),
        make_row(
            id="meta-1",
            title="Aspirin safety in pregnancy: a meta-analysis",
            content="Pooled data show aspirin in pregnancy is safe at low doses.",
            evidence_level=1,
            study_type="Meta-Analysis",
            publication_year=2023,
            pmid="222",
            score=0.3,
        ),
        make_row(
            id="case-2",
            title="Aspirin and pregnancy bleeding: a case report",
            content="Bleeding was observed after aspirin use in pregnancy.",
            evidence_level=4,
            study_type="Case Report",
            publication_year=2023,
            pmid="333",
            score=0.3,
        ),
    ]


@pytest.fixture
def fake_backend(evidence_rows) -> FakeBackend:
    return FakeBackend(rows=evidence_rows)


@pytest.fixture
def orchestrator(fake_embedding_client, fake_backend) -> EvidenceSearchOrchestrator:
    return EvidenceSearchOrchestrator(
        retriever=HybridRetriever(fake_embedding_client, fake_backend),
        reranker=ContextualReranker(current_year=CURRENT_YEAR),
    )


# ============================================
# Client Fixtures
# ============================================


@pytest.fixture
def client(
    monkeypatch, orchestrator, fake_embedding_client
) -> Generator[TestClient, None, None]:
    """Test client over the in-memory backend with a fake-backed orchestrator."""
    monkeypatch.setenv("EVIDENCE_BACKEND", "memory")
    monkeypatch.delenv("EVIDENCE_CORPUS_PATH", raising=False)
    with TestClient(app) as c:
        app.state.orchestrator = orchestrator
        app.state.embedding_client = fake_embedding_client
        yield c


# ============================================
# Pytest Configuration
# ============================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "requires_db: test requires database connection")
