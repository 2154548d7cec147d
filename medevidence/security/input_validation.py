"""
Input Validation for MedEvidence

Validates the inbound evidence search request:
- Query required and non-empty after trimming, bounded length
- Control characters stripped
- maxResults, minEvidenceLevel and minYear range checks
"""

import logging
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000
MAX_RESULTS_LIMIT = 50
MIN_PUBLICATION_YEAR = 1800

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize(text: str) -> str:
    """Strip null bytes and control characters (newlines and tabs kept)."""
    return _CONTROL_CHARS.sub("", text).strip()


class EvidenceSearchRequest(BaseModel):
    """Validated POST /api/evidence body (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    query: str
    max_results: int = Field(default=8, alias="maxResults")
    min_evidence_level: int = Field(default=5, alias="minEvidenceLevel")
    study_types: list[str] | None = Field(default=None, alias="studyTypes")
    min_year: int | None = Field(default=None, alias="minYear")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        v = sanitize(v)
        if not v:
            raise ValueError("Query is required")
        if len(v) > MAX_QUERY_LENGTH:
            raise ValueError(f"Query must be at most {MAX_QUERY_LENGTH} characters")
        return v

    @field_validator("max_results")
    @classmethod
    def validate_max_results(cls, v: int) -> int:
        if v < 1 or v > MAX_RESULTS_LIMIT:
            raise ValueError(f"maxResults must be between 1 and {MAX_RESULTS_LIMIT}")
        return v

    @field_validator("min_evidence_level")
    @classmethod
    def validate_min_evidence_level(cls, v: int) -> int:
        if v < 1 or v > 5:
            raise ValueError("minEvidenceLevel must be between 1 and 5")
        return v

    @field_validator("study_types")
    @classmethod
    def validate_study_types(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        cleaned = [sanitize(s) for s in v if s and sanitize(s)]
        return cleaned or None

    @field_validator("min_year")
    @classmethod
    def validate_min_year(cls, v: int | None) -> int | None:
        if v is not None and v < MIN_PUBLICATION_YEAR:
            raise ValueError(f"minYear must be {MIN_PUBLICATION_YEAR} or later")
        return v
