"""
Citation Synthesis for MedEvidence

Turns ranked evidence records into the artifacts consumed by the chat layer:
- Numbered citations with resolvable URLs and bounded snippets
- A formatted evidence block for LLM context
- Evidence-based response guidelines for the system prompt

Also provides helpers used after generation: summary statistics,
citation-marker parsing and system prompt assembly.
"""

import logging
import re
from collections.abc import Iterable, Sequence

from medevidence.evidence.models import (
    EMPTY_EVIDENCE_CONTEXT,
    MAX_EVIDENCE_LEVEL,
    EvidenceCitation,
    EvidenceContext,
    EvidenceRecord,
    EvidenceSummary,
    evidence_level_label,
)

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 300
MAX_AUTHORS_SHOWN = 3
MAX_MESH_TERMS_SHOWN = 5

PUBMED_URL = "https://pubmed.ncbi.nlm.nih.gov/{pmid}"
DOI_URL = "https://doi.org/{doi}"

# ============================================
# Prompt Text
# ============================================

EVIDENCE_GUIDELINES_TEMPLATE = """
## EVIDENCE-BASED RESPONSE GUIDELINES

You have access to {count} peer-reviewed medical evidence sources. You MUST:

1. **CITE EVERY CLAIM**: Use inline citations [1], [2], etc. for every factual medical statement
2. **PRIORITIZE HIGH EVIDENCE**: Weight meta-analyses (Level 1) and RCTs (Level 2) more heavily
3. **ACKNOWLEDGE LIMITATIONS**: If evidence is from lower-quality studies, mention this
4. **BE PRECISE**: Quote study findings accurately, including sample sizes when available
5. **SYNTHESIZE**: Combine findings from multiple sources when they agree
6. **FLAG CONFLICTS**: Note when sources disagree and explain why

### Citation Format:
- Single citation: "ACE inhibitors reduce mortality [1]"
- Multiple citations: "Blood pressure control improves outcomes [1,2,3]"
- Direct quote: "The study found 'a 23% reduction in cardiovascular events' [1]"

### Evidence Quality Indicators:
- Level 1 (Meta-Analysis/SR): Strongest evidence - prioritize these
- Level 2 (RCT): Strong evidence - reliable for treatment recommendations
- Level 3 (Cohort): Moderate evidence - good for associations
- Level 4 (Case): Weak evidence - mention with caution
- Level 5 (Opinion): Expert opinion - use for context only

### AVAILABLE EVIDENCE:
{index}

Respond with a well-structured answer that synthesizes this evidence."""

EVIDENCE_PROMPT_TEMPLATE = """{base_prompt}

{addition}

### EVIDENCE CONTENT:
{formatted_context}"""


# ============================================
# Citations
# ============================================


def citation_url(pmid: str | None, doi: str | None) -> str | None:
    """PubMed URL when a PMID exists, else the DOI resolver, else None."""
    if pmid:
        return PUBMED_URL.format(pmid=pmid)
    if doi:
        return DOI_URL.format(doi=doi)
    return None


def make_snippet(content: str) -> str:
    """First SNIPPET_LENGTH characters, with '...' only when truncated."""
    if len(content) > SNIPPET_LENGTH:
        return content[:SNIPPET_LENGTH] + "..."
    return content


def records_to_citations(records: Iterable[EvidenceRecord]) -> list[EvidenceCitation]:
    """Number complete records 1..n in the given order.

    Records missing an id, title or content are dropped with a warning so
    the remaining indices stay dense.
    """
    citations: list[EvidenceCitation] = []
    for record in records:
        if not record.is_complete():
            logger.warning(
                "Dropping incomplete evidence record (id=%r, title=%r)",
                record.id,
                record.title[:60],
            )
            continue
        citations.append(
            EvidenceCitation(
                index=len(citations) + 1,
                pmid=record.pmid,
                title=record.title,
                journal=record.journal_name,
                year=record.publication_year,
                doi=record.doi,
                authors=record.authors,
                evidence_level=record.evidence_level,
                study_type=record.study_type,
                sample_size=record.sample_size,
                mesh_terms=record.mesh_terms,
                url=citation_url(record.pmid, record.doi),
                snippet=make_snippet(record.content),
                score=record.score,
                relevance=record.relevance,
            )
        )
    return citations


# ============================================
# Context Blocks
# ============================================


def _author_line(authors: Sequence[str]) -> str:
    if not authors:
        return "Unknown authors"
    shown = ", ".join(authors[:MAX_AUTHORS_SHOWN])
    return shown + (" et al." if len(authors) > MAX_AUTHORS_SHOWN else "")


def format_citation_block(citation: EvidenceCitation) -> str:
    """Render one citation as an LLM-readable evidence block."""
    source = citation.journal + (f" ({citation.year})" if citation.year else "")
    lines = [
        f"[{citation.index}] {citation.title}",
        f"Source: {source}",
        f"Authors: {_author_line(citation.authors)}",
        f"Evidence Level: {citation.evidence_level} "
        f"({evidence_level_label(citation.evidence_level)})",
    ]
    # Optional lines are kept as empty lines when the value is missing
    lines += [
        f"Study Type: {citation.study_type}" if citation.study_type else "",
        f"Sample Size: n={citation.sample_size}" if citation.sample_size else "",
        f"MeSH Terms: {', '.join(citation.mesh_terms[:MAX_MESH_TERMS_SHOWN])}"
        if citation.mesh_terms
        else "",
    ]
    lines += ["", "Content:", citation.snippet, "---"]
    return "\n".join(lines)


def format_evidence_context(citations: Sequence[EvidenceCitation]) -> str:
    return "\n\n".join(format_citation_block(c) for c in citations)


def build_system_prompt_addition(citations: Sequence[EvidenceCitation]) -> str:
    """Citation rules followed by a compact index of the available evidence."""
    if not citations:
        return ""
    index = "\n".join(
        f"[{c.index}] {c.title} ({c.journal}, {c.year or 'n.d.'}) - Level {c.evidence_level}"
        for c in citations
    )
    return EVIDENCE_GUIDELINES_TEMPLATE.format(count=len(citations), index=index)


def synthesize(records: Iterable[EvidenceRecord]) -> EvidenceContext:
    """Build the EvidenceContext for an already ranked record list."""
    citations = records_to_citations(records)
    if not citations:
        return EMPTY_EVIDENCE_CONTEXT
    return EvidenceContext(
        citations=tuple(citations),
        formatted_context=format_evidence_context(citations),
        system_prompt_addition=build_system_prompt_addition(citations),
    )


# ============================================
# Post-generation Helpers
# ============================================


def build_evidence_system_prompt(base_prompt: str, context: EvidenceContext) -> str:
    """Append evidence guidelines and content to a base system prompt."""
    if not context.system_prompt_addition:
        return base_prompt
    return EVIDENCE_PROMPT_TEMPLATE.format(
        base_prompt=base_prompt,
        addition=context.system_prompt_addition,
        formatted_context=context.formatted_context,
    )


_LIST_MARKER = re.compile(r"\[(\d+(?:,\s*\d+)*)\]")
_RANGE_MARKER = re.compile(r"\[(\d+)-(\d+)\]")
_TAGGED_MARKER = re.compile(r"\[CITATION:(\d+)\]")


def parse_citation_markers(
    response: str, citations: Sequence[EvidenceCitation]
) -> dict[int, EvidenceCitation]:
    """
    Map citation markers in a generated answer to citations.

    Recognises [1], [1,2], [1-3] and [CITATION:1]. Indices with no matching
    citation are ignored. The result is ordered by citation index.
    """
    highest = max((c.index for c in citations), default=0)
    cited: set[int] = set()
    for match in _LIST_MARKER.finditer(response):
        cited.update(int(part) for part in match.group(1).split(","))
    for match in _RANGE_MARKER.finditer(response):
        start, end = int(match.group(1)), int(match.group(2))
        cited.update(range(start, min(end, highest) + 1))
    for match in _TAGGED_MARKER.finditer(response):
        cited.add(int(match.group(1)))

    by_index = {c.index: c for c in citations}
    return {i: by_index[i] for i in sorted(cited) if i in by_index}


def generate_evidence_summary(citations: Sequence[EvidenceCitation]) -> EvidenceSummary:
    """Totals, best evidence level, study-type tallies and year range."""
    if not citations:
        return EvidenceSummary()

    study_type_counts: dict[str, int] = {}
    for c in citations:
        key = c.study_type or "Unknown"
        study_type_counts[key] = study_type_counts.get(key, 0) + 1

    years = [c.year for c in citations if c.year is not None]
    return EvidenceSummary(
        total_sources=len(citations),
        highest_evidence_level=min(
            (c.evidence_level for c in citations), default=MAX_EVIDENCE_LEVEL
        ),
        study_type_counts=study_type_counts,
        year_range=(min(years), max(years)) if years else None,
    )
