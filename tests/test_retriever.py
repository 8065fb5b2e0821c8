"""
Tests for the Retriever: score threshold, retries with backoff, and failure surfacing.
"""
import math
import unittest

from helpdesk.errors import EmbeddingServiceError, RetrievalUnavailable
from helpdesk.retrieval.article_index import ArticleIndex
from helpdesk.retrieval.retriever import Retriever

from tests.fakes import FakeEmbedder, make_article

QUERY = "how do I reset my evaluation criteria"


def unit_at_cosine(cos):
    """2-d unit vector whose cosine with [1, 0] is cos."""
    return [cos, math.sqrt(1 - cos * cos)]


def build(keyword_fallback=False, max_attempts=3):
    # Scores after rescaling: (cos + 1) / 2 -> 0.81 and 0.11
    embedder = FakeEmbedder({
        QUERY: [1.0, 0.0],
        "Resetting Criteria": unit_at_cosine(0.62),
        "Billing FAQ": unit_at_cosine(-0.78),
    }, default=[0.0, 1.0])
    index = ArticleIndex(embedder)
    index.upsert(make_article("kb-1", "Resetting Criteria", content="Open settings and reset the criteria."))
    index.upsert(make_article("kb-2", "Billing FAQ", content="Invoices are sent monthly."))
    sleeps = []
    retriever = Retriever(
        embedder, index, max_attempts=max_attempts, backoff_seconds=0.5,
        keyword_fallback=keyword_fallback, sleep=sleeps.append
    )
    return embedder, retriever, sleeps


class TestRetriever(unittest.TestCase):

    def test_min_score_drops_weak_matches(self):
        """Test only the 0.81 article survives a 0.2 threshold; the 0.11 one is dropped."""
        _, retriever, _ = build()

        results = retriever.retrieve(QUERY, top_k=5, min_score=0.2)

        assert [m.article.title for m in results] == ["Resetting Criteria"]
        self.assertAlmostEqual(results[0].score, 0.81, places=5)

    def test_results_descending(self):
        _, retriever, _ = build()

        results = retriever.retrieve(QUERY, top_k=5, min_score=0.0)

        assert [m.article.article_id for m in results] == ["kb-1", "kb-2"]
        assert results[0].score >= results[1].score

    def test_transient_failures_retried_with_backoff(self):
        embedder, retriever, sleeps = build()
        embedder.failures = [
            EmbeddingServiceError("timeout", retryable=True),
            EmbeddingServiceError("timeout", retryable=True),
        ]

        results = retriever.retrieve(QUERY, top_k=5, min_score=0.2)

        assert len(results) == 1
        assert sleeps == [0.5, 1.0]

    def test_exhausted_retries_raise_retrieval_unavailable(self):
        embedder, retriever, sleeps = build()
        embedder.failures = [EmbeddingServiceError("down", retryable=True) for _ in range(3)]

        with self.assertRaises(RetrievalUnavailable) as ctx:
            retriever.retrieve(QUERY)

        assert ctx.exception.details == {"operation": "embed", "attempts": 3}
        assert isinstance(ctx.exception.cause, EmbeddingServiceError)
        assert len(sleeps) == 2

    def test_non_retryable_failure_not_retried(self):
        embedder, retriever, sleeps = build()
        embedder.failures = [EmbeddingServiceError("bad input", retryable=False)]
        calls_before = len(embedder.calls)

        with self.assertRaises(RetrievalUnavailable):
            retriever.retrieve(QUERY)

        assert len(embedder.calls) == calls_before + 1
        assert sleeps == []

    def test_keyword_fallback_only_when_vector_search_empty(self):
        _, retriever, _ = build(keyword_fallback=True)

        # Vector scores are all below 0.9; the keyword path still finds the billing article
        results = retriever.retrieve("billing invoices monthly", top_k=5, min_score=0.9)

        assert [m.article.article_id for m in results] == ["kb-2"]

    def test_keyword_fallback_disabled_by_default(self):
        _, retriever, _ = build()

        assert retriever.retrieve("billing invoices monthly", top_k=5, min_score=0.9) == []
