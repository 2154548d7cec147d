#!/usr/bin/env python
"""
Sweep the contextual reranking threshold

Runs each query against an in-memory corpus and reports how many candidates
survive at each threshold, so EVIDENCE_MIN_CONTEXTUAL_SCORE can be tuned.
Corpus rows without embeddings are ranked by BM25 alone; pass --embed to
call the embedding provider instead.

Usage: python scripts/sweep_rerank_threshold.py scripts/sample_corpus.json
"""

import argparse
import asyncio
import sys

from medevidence.evidence.understanding import understand
from medevidence.rag.backends import InMemoryEvidenceBackend
from medevidence.rag.embedding import EmbeddingClient
from medevidence.rag.reranker import ContextualReranker
from medevidence.rag.retriever import HybridRetriever, RetrievalError, RetrievalOptions

DEFAULT_QUERIES = [
    "is aspirin safe in pregnancy",
    "metformin versus insulin for gestational diabetes",
    "first-line treatment of hypertension in elderly patients",
]
THRESHOLDS = [0.4, 0.5, 0.6, 0.7, 0.8]


async def sweep(corpus_path: str, queries: list[str], embed: bool) -> int:
    backend = InMemoryEvidenceBackend.from_json_file(corpus_path)
    retriever = HybridRetriever(EmbeddingClient(), backend)
    reranker = ContextualReranker()
    options = RetrievalOptions(match_count=24)

    for query in queries:
        understanding = understand(query)
        try:
            candidates = await retriever.retrieve(
                understanding.semantic_query,
                query_embedding=None if embed else [],
                options=options,
            )
        except RetrievalError as e:
            print(f"{query!r}: retrieval failed: {e}")
            return 1

        print(f"\n{query!r} (intent={understanding.primary_intent}, {len(candidates)} candidates)")
        for threshold in THRESHOLDS:
            ranked, stats = reranker.rerank(
                candidates, understanding, min_contextual_score=threshold
            )
            top = ranked[0].title[:50] if ranked else "-"
            print(
                f"  >= {threshold:.2f}: {stats.after_reranking:3d} kept, "
                f"avg {stats.average_contextual_score:.3f}, top: {top}"
            )
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("corpus", help="JSON file holding a list of evidence rows")
    parser.add_argument("queries", nargs="*", default=DEFAULT_QUERIES)
    parser.add_argument("--embed", action="store_true", help="embed queries via EMBEDDING_URL")
    args = parser.parse_args()
    return asyncio.run(sweep(args.corpus, args.queries, args.embed))


if __name__ == "__main__":
    sys.exit(main())
