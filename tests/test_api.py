"""
Tests for MedEvidence API endpoints.
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from medevidence.main import app, build_backend
from medevidence.rag.backends import InMemoryEvidenceBackend, PostgresEvidenceBackend


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.unit
    def test_health_check(self, client):
        """Test the /health endpoint returns healthy status."""
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "medevidence-api"
        assert "version" in data

    @pytest.mark.unit
    def test_readiness_check(self, client):
        """Test the /ready endpoint reports backend and embedding status."""
        response = client.get("/ready")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["ready"] is True
        assert data["checks"] == {"embedding_provider": "ok", "backend": "memory"}


class TestEvidenceEndpoint:
    """Tests for POST /api/evidence."""

    @pytest.mark.unit
    def test_medical_query_returns_citations(self, client):
        response = client.post("/api/evidence", json={"query": "is aspirin safe in pregnancy"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["shouldUseEvidence"] is True
        assert len(data["citations"]) == 3
        assert data["citations"][0]["evidenceLevel"] == 1
        assert data["citations"][0]["url"] == "https://pubmed.ncbi.nlm.nih.gov/222"
        assert data["summary"]["highestEvidenceLevel"] == 1
        assert isinstance(data["searchTimeMs"], float)

    @pytest.mark.unit
    def test_citations_carry_relevance_breakdown(self, client):
        response = client.post("/api/evidence", json={"query": "is aspirin safe in pregnancy"})

        relevance = response.json()["citations"][0]["relevance"]
        assert relevance["confidence"] in {"high", "medium", "low"}
        assert relevance["matchedEntities"] == ["aspirin", "pregnancy"]
        assert relevance["matchedMeshTerms"] == ["Aspirin", "Pregnancy"]
        assert relevance["contextualScore"] == pytest.approx(
            response.json()["citations"][0]["score"], abs=1e-4
        )

    @pytest.mark.unit
    def test_non_medical_query(self, client, fake_backend):
        response = client.post("/api/evidence", json={"query": "what's the weather today"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["shouldUseEvidence"] is False
        assert data["citations"] == []
        assert fake_backend.calls == 0

    @pytest.mark.unit
    def test_max_results_respected(self, client):
        response = client.post(
            "/api/evidence", json={"query": "is aspirin safe in pregnancy", "maxResults": 1}
        )
        assert len(response.json()["citations"]) == 1

    @pytest.mark.unit
    def test_filters_forwarded(self, client, fake_backend):
        client.post(
            "/api/evidence",
            json={
                "query": "is aspirin safe in pregnancy",
                "minEvidenceLevel": 2,
                "studyTypes": ["Meta-Analysis"],
                "minYear": 2015,
            },
        )
        assert fake_backend.last_params["min_evidence_level"] == 2
        assert fake_backend.last_params["filter_study_types"] == ["Meta-Analysis"]
        assert fake_backend.last_params["min_year"] == 2015

    @pytest.mark.unit
    @pytest.mark.parametrize("body", [{}, {"query": ""}, {"query": "   "}, {"query": None}])
    def test_missing_query_is_400(self, client, body):
        response = client.post("/api/evidence", json=body)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Query is required"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "extra",
        [{"maxResults": 0}, {"maxResults": 51}, {"minEvidenceLevel": 6}, {"minYear": 1500}],
    )
    def test_out_of_range_options_are_400(self, client, extra):
        response = client.post("/api/evidence", json={"query": "aspirin", **extra})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid request"

    @pytest.mark.unit
    def test_invalid_json_is_400(self, client):
        response = client.post(
            "/api/evidence",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid JSON body"

    @pytest.mark.unit
    def test_non_object_body_is_400(self, client):
        response = client.post("/api/evidence", json=["aspirin"])
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.unit
    def test_backend_failure_is_empty_200(self, client, fake_backend):
        fake_backend.error = RuntimeError("rpc failed")

        response = client.post("/api/evidence", json={"query": "is aspirin safe in pregnancy"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["shouldUseEvidence"] is False
        assert data["citations"] == []

    @pytest.mark.unit
    def test_unexpected_failure_is_500(self, client, orchestrator, mocker):
        mocker.patch.object(orchestrator.reranker, "rerank", side_effect=ValueError("bug"))

        response = client.post("/api/evidence", json={"query": "is aspirin safe in pregnancy"})

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"error": "Failed to search evidence", "message": "bug"}

    @pytest.mark.unit
    def test_unconfigured_orchestrator_is_500(self, client):
        app.state.orchestrator = None
        response = client.post("/api/evidence", json={"query": "aspirin"})
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR


class TestMetricsEndpoints:
    """Tests for the Prometheus endpoints."""

    @pytest.mark.unit
    def test_metrics_reflect_searches(self, client):
        client.post("/api/evidence", json={"query": "is aspirin safe in pregnancy"})

        response = client.get("/metrics")

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/plain")
        assert 'evidence_searches_total{state="complete"} 1' in response.text

    @pytest.mark.unit
    def test_metrics_reset(self, client):
        client.post("/api/evidence", json={"query": "is aspirin safe in pregnancy"})
        assert client.post("/metrics/reset").json() == {"status": "metrics_reset"}
        assert "evidence_searches_total 0" in client.get("/metrics").text


class TestStartup:
    """Tests for backend selection at startup."""

    @pytest.mark.unit
    def test_build_memory_backend(self):
        assert isinstance(build_backend("memory", None), InMemoryEvidenceBackend)

    @pytest.mark.unit
    def test_build_postgres_backend(self):
        assert isinstance(build_backend("postgres", None), PostgresEvidenceBackend)

    @pytest.mark.unit
    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError):
            build_backend("sqlite", None)

    @pytest.mark.unit
    def test_bad_backend_leaves_orchestrator_unset(self, monkeypatch):
        monkeypatch.setenv("EVIDENCE_BACKEND", "sqlite")
        with TestClient(app) as c:
            assert app.state.orchestrator is None
            response = c.post("/api/evidence", json={"query": "aspirin"})
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
