"""
MedEvidence - Evidence Retrieval & Contextual Reranking for Clinical Questions

Grounds clinical answers in peer-reviewed literature.

Features:
- Cheap medical/non-medical query gate
- Pattern-based query understanding (intents, entities, MeSH headings)
- Hybrid semantic + full-text retrieval fused with Reciprocal Rank Fusion
- Multi-signal contextual reranking with evidence-level awareness
- Numbered citations and LLM-ready evidence context
"""

__version__ = "0.1.0"
__author__ = "MedEvidence Team"
