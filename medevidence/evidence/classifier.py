"""
Medical Query Classifier for MedEvidence

Cheap lexical gate deciding whether a question warrants literature-backed
grounding. Six vocabulary categories are checked; any hit means "medical".
"""

import logging
import re

logger = logging.getLogger(__name__)

# ============================================
# Vocabulary Patterns
# ============================================

MEDICAL_QUERY_PATTERNS: dict[str, re.Pattern] = {
    "conditions": re.compile(
        r"\b(disease|disorder|syndrome|infection|cancer|tumor|diabetes|"
        r"hypertension|asthma|copd|heart failure|stroke|pregnancy|pregnant)\b",
        re.IGNORECASE,
    ),
    "treatments": re.compile(
        r"\b(treatment|therapy|medication|drug|surgery|procedure|intervention|"
        r"dose|dosing)\b",
        re.IGNORECASE,
    ),
    "clinical": re.compile(
        r"\b(diagnosis|symptom|sign|prognosis|risk|screening|prevention|"
        r"guideline|protocol)\b",
        re.IGNORECASE,
    ),
    "research": re.compile(
        r"\b(evidence|study|trial|research|meta-analysis|review|efficacy|safe|"
        r"safety|outcome)\b",
        re.IGNORECASE,
    ),
    "physiology": re.compile(
        r"\b(blood pressure|heart rate|glucose|cholesterol|kidney|liver|lung|"
        r"brain)\b",
        re.IGNORECASE,
    ),
    "specialties": re.compile(
        r"\b(cardiology|oncology|neurology|psychiatry|pediatric|geriatric|"
        r"emergency)\b",
        re.IGNORECASE,
    ),
}


def matched_categories(text: str | None) -> list[str]:
    """Return the vocabulary categories the text hits, in table order."""
    if not text or not isinstance(text, str):
        return []
    return [
        name for name, pattern in MEDICAL_QUERY_PATTERNS.items() if pattern.search(text)
    ]


def is_medical_query(text: str | None) -> bool:
    """True when the text contains vocabulary from any medical category.

    Empty or non-string input is simply not medical.
    """
    if not text or not isinstance(text, str):
        return False
    return any(pattern.search(text) for pattern in MEDICAL_QUERY_PATTERNS.values())
