"""
MedEvidence Security Module

Security components:
- Input validation and sanitization for evidence search requests
"""

from medevidence.security.input_validation import EvidenceSearchRequest, sanitize

__all__ = ["EvidenceSearchRequest", "sanitize"]
