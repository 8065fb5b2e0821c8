"""
Tests for the in-memory ArticleIndex: publication filtering, ranking,
change detection, dimension pinning and repository write-through.
"""
import threading
import unittest

from helpdesk.db.repositories import ArticleRepository
from helpdesk.errors import EmbeddingDimensionError, EmbeddingServiceError
from helpdesk.retrieval.article_index import ArticleIndex, SearchFilter

from tests.fakes import FakeEmbedder, make_article, memory_session_factory


VECTORS = {
    "Resetting Criteria": [1.0, 0.0, 0.0],
    "Criteria Templates": [0.9, 0.1, 0.0],
    "Billing FAQ": [0.0, 1.0, 0.0],
    "Draft Notes": [1.0, 0.0, 0.0],
    "Old Criteria": [1.0, 0.0, 0.0],
}


class TestArticleIndexSearch(unittest.TestCase):

    def setUp(self):
        self.embedder = FakeEmbedder(VECTORS)
        self.index = ArticleIndex(self.embedder)
        self.index.upsert(make_article("a1", "Resetting Criteria", category_id="evaluations", tags={"criteria"}))
        self.index.upsert(make_article("a2", "Criteria Templates", category_id="evaluations"))
        self.index.upsert(make_article("a3", "Billing FAQ", category_id="billing", tags={"billing"}))
        self.index.upsert(make_article("d1", "Draft Notes", status="draft"))
        self.index.upsert(make_article("x1", "Old Criteria", status="archived"))

    def test_only_published_articles_returned(self):
        """Test draft and archived articles never appear, even with a perfect match."""
        results = self.index.search([1.0, 0.0, 0.0], k=10)

        ids = [m.article.article_id for m in results]
        assert "d1" not in ids
        assert "x1" not in ids
        assert all(m.article.is_published for m in results)

    def test_at_most_k_sorted_non_increasing(self):
        for k in (1, 2, 3, 10):
            results = self.index.search([0.7, 0.3, 0.0], k=k)
            scores = [m.score for m in results]

            assert len(results) <= k
            assert scores == sorted(scores, reverse=True)
            assert all(0.0 <= s <= 1.0 for s in scores)

    def test_score_is_rescaled_cosine(self):
        results = self.index.search([1.0, 0.0, 0.0], k=3)
        by_id = {m.article.article_id: m.score for m in results}

        self.assertAlmostEqual(by_id["a1"], 1.0)
        self.assertAlmostEqual(by_id["a3"], 0.5)

    def test_non_positive_k_and_empty_index(self):
        assert self.index.search([1.0, 0.0, 0.0], k=0) == []
        assert ArticleIndex(FakeEmbedder()).search([1.0, 0.0, 0.0], k=5) == []

    def test_filters(self):
        by_category = self.index.search([1.0, 0.0, 0.0], k=10, filter=SearchFilter(category_id="billing"))
        by_tag = self.index.search([1.0, 0.0, 0.0], k=10, filter=SearchFilter(tags=frozenset({"criteria"})))
        excluded = self.index.search([1.0, 0.0, 0.0], k=10, filter=SearchFilter(exclude_ids=frozenset({"a1"})))

        assert [m.article.article_id for m in by_category] == ["a3"]
        assert [m.article.article_id for m in by_tag] == ["a1"]
        assert "a1" not in [m.article.article_id for m in excluded]

    def test_query_dimension_mismatch_raises(self):
        with self.assertRaises(EmbeddingDimensionError):
            self.index.search([1.0, 0.0], k=3)

    def test_similar_articles_excludes_source(self):
        related = self.index.similar_articles("a1", k=3)

        ids = [m.article.article_id for m in related]
        assert "a1" not in ids
        assert ids[0] == "a2"

    def test_keyword_search(self):
        results = self.index.keyword_search("billing questions", k=5)

        assert [m.article.article_id for m in results] == ["a3"]
        self.assertAlmostEqual(results[0].score, 0.5)

    def test_stats(self):
        stats = self.index.stats()

        assert stats["articles"] == 5
        assert stats["published"] == 3
        assert stats["embedded"] == 4  # archived article is never embedded
        assert stats["dimension"] == 3


class TestArticleIndexUpsert(unittest.TestCase):

    def test_unchanged_text_is_not_re_embedded(self):
        """Test upserting identical title/description/content keeps the embedding."""
        embedder = FakeEmbedder(VECTORS)
        index = ArticleIndex(embedder)
        article = make_article("a1", "Resetting Criteria")

        assert index.upsert(article) is True
        first = index.get("a1").embedding

        article.category_id = "moved"
        assert index.upsert(article) is False

        assert len(embedder.calls) == 1
        assert index.get("a1").embedding == first
        assert index.get("a1").category_id == "moved"

    def test_changed_text_is_re_embedded(self):
        embedder = FakeEmbedder(VECTORS)
        index = ArticleIndex(embedder)
        index.upsert(make_article("a1", "Resetting Criteria"))

        assert index.upsert(make_article("a1", "Resetting Criteria", content="New steps.")) is True
        assert len(embedder.calls) == 2

    def test_force_re_embeds(self):
        embedder = FakeEmbedder(VECTORS)
        index = ArticleIndex(embedder)
        article = make_article("a1", "Resetting Criteria")
        index.upsert(article)

        assert index.upsert(article, force=True) is True
        assert len(embedder.calls) == 2

    def test_archived_article_never_embedded(self):
        embedder = FakeEmbedder(VECTORS)
        index = ArticleIndex(embedder)

        assert index.upsert(make_article("x1", "Old Criteria", status="archived")) is False
        assert embedder.calls == []
        assert index.get("x1") is not None

    def test_ties_broken_by_most_recently_updated(self):
        index = ArticleIndex(FakeEmbedder(default=[1.0, 0.0, 0.0]))
        index.upsert(make_article("old", "Same One", updated_minutes=0))
        index.upsert(make_article("new", "Same Two", updated_minutes=30))

        results = index.search([1.0, 0.0, 0.0], k=2)

        assert [m.article.article_id for m in results] == ["new", "old"]

    def test_dimension_pinned_by_first_embedding(self):
        embedder = FakeEmbedder({"Short": [1.0, 0.0]}, default=[1.0, 0.0, 0.0])
        index = ArticleIndex(embedder)
        index.upsert(make_article("a1", "Resetting Criteria"))

        with self.assertRaises(EmbeddingDimensionError):
            index.upsert(make_article("a2", "Short Vector"))

        assert index.get("a2") is None
        assert index.dimension == 3

    def test_remove(self):
        index = ArticleIndex(FakeEmbedder(VECTORS))
        index.upsert(make_article("a1", "Resetting Criteria"))

        assert index.remove("a1") is True
        assert index.remove("a1") is False
        assert index.search([1.0, 0.0, 0.0], k=5) == []

    def test_reindex_reports_failures_and_continues(self):
        embedder = FakeEmbedder(VECTORS)
        embedder.failures = [EmbeddingServiceError("backend down", retryable=True)]
        index = ArticleIndex(embedder)

        report = index.reindex([make_article("a1", "Resetting Criteria"), make_article("a3", "Billing FAQ")])

        assert report.failed == 1
        assert report.embedded == 1
        assert report.errors[0]["articleId"] == "a1"
        assert index.get("a3").embedding is not None

    def test_readers_see_consistent_snapshots_during_writes(self):
        """Test concurrent searches never fail or see unpublished articles while writers swap entries."""
        index = ArticleIndex(FakeEmbedder(default=[1.0, 0.0, 0.0]))
        index.upsert(make_article("seed", "Seed Article"))
        errors = []

        def writer():
            for i in range(50):
                index.upsert(make_article(f"w{i}", f"Written {i}", status="published" if i % 2 else "draft"))

        def reader():
            for _ in range(50):
                try:
                    results = index.search([1.0, 0.0, 0.0], k=5)
                    assert all(m.article.is_published for m in results)
                except Exception as e:  # collected and asserted below
                    errors.append(e)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(index) == 51


class TestArticleIndexPersistence(unittest.TestCase):

    def setUp(self):
        _, session_factory = memory_session_factory()
        self.repository = ArticleRepository(session_factory)

    def test_embedding_written_through_and_warm_load(self):
        """Test a restart can warm the index from stored embeddings without embedding again."""
        article = self.repository.save(make_article("a1", "Resetting Criteria"))
        ArticleIndex(FakeEmbedder(VECTORS), repository=self.repository).upsert(article)

        stored = self.repository.get("a1")
        assert stored.embedding is not None
        assert stored.content_hash is not None

        embedder = FakeEmbedder(VECTORS)
        warm = ArticleIndex(embedder, repository=self.repository)
        warm.load(self.repository.list_articles())

        results = warm.search([1.0, 0.0, 0.0], k=1)
        assert results[0].article.article_id == "a1"
        assert warm.upsert(stored) is False
        assert embedder.calls == []
