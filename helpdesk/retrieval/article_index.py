"""
In-memory article index with cosine-similarity search.

The index is read-heavy and write-light. Writers build a new mapping and swap
it in under a lock; readers grab the current mapping once per query and never
block, so a query always sees the embeddings that were valid when it started.
"""
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional
import threading
import time

import numpy as np

from helpdesk.db.repositories import ArticleRepository
from helpdesk.errors import EmbeddingDimensionError, EmbeddingServiceError
from helpdesk.ingestion.embeddings import EmbeddingService
from helpdesk.logging_config import get_logger
from helpdesk.models import ArticleMatch, ArticleStatus, KnowledgeArticle
from helpdesk.utils import content_hash, derive_slug, embedding_text, query_terms, term_overlap

logger = get_logger(__name__)


@dataclass(frozen=True)
class SearchFilter:
    """
    Restricts which articles a search may return.

    tags matches articles carrying any of the given tags.
    """
    category_id: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    exclude_ids: FrozenSet[str] = frozenset()

    def matches(self, article: KnowledgeArticle) -> bool:
        if self.category_id is not None and article.category_id != self.category_id:
            return False
        if self.tags and not (self.tags & set(article.tags)):
            return False
        if article.article_id in self.exclude_ids:
            return False
        return True


@dataclass
class ReindexReport:
    embedded: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)


class _Entry(NamedTuple):
    article: KnowledgeArticle
    unit_vector: Optional[np.ndarray]  # embedding scaled to length 1, None when not embedded


def _unit(vector: List[float]) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(arr)
    if norm == 0:
        return arr
    return arr / norm


class ArticleIndex:
    """
    Maintains {article_id -> (article, embedding)} and answers similarity queries.

    When a repository is attached, freshly computed embeddings are written
    through to it so a restart can warm the index without re-embedding.
    """

    def __init__(self, embedder: EmbeddingService, repository: Optional[ArticleRepository] = None):
        self.embedder = embedder
        self.repository = repository
        self._entries: Dict[str, _Entry] = {}
        self._dimension: Optional[int] = getattr(embedder, "dimension", None)
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def get(self, article_id: str) -> Optional[KnowledgeArticle]:
        entry = self._entries.get(article_id)
        return entry.article if entry else None

    def upsert(self, article: KnowledgeArticle, force: bool = False) -> bool:
        """
        Add or refresh an article.

        The embedding is recomputed only when the embedded text changed, no
        embedding exists yet, or force is set. Archived articles never trigger
        an embedding request.

        Returns:
            True if an embedding request was made
        """
        new_hash = content_hash(article.title, article.short_description, article.content)
        current = self._entries.get(article.article_id)

        embedding = None
        if article.embedding is not None and article.content_hash == new_hash:
            embedding = article.embedding
        elif current is not None and current.article.embedding is not None \
                and current.article.content_hash == new_hash:
            embedding = current.article.embedding

        embedded = False
        if article.status != ArticleStatus.ARCHIVED.value and (embedding is None or force):
            embed_start = time.time()
            embedding = self.embedder.embed(
                embedding_text(article.title, article.short_description, article.content)
            )
            embedded = True
            logger.info(
                f"Embedded article {article.article_id} ({len(embedding)}d) in "
                f"{(time.time() - embed_start) * 1000:.0f}ms"
            )

        indexed = replace(
            article,
            slug=article.slug or derive_slug(article.title),
            tags=set(article.tags),
            embedding=embedding,
            content_hash=new_hash if embedding is not None else None,
        )

        with self._write_lock:
            if embedding is not None:
                self._check_dimension(len(embedding))
            entries = dict(self._entries)
            entries[article.article_id] = _Entry(indexed, _unit(embedding) if embedding is not None else None)
            self._entries = entries

        if embedded and self.repository is not None:
            self.repository.store_embedding(article.article_id, embedding, new_hash)

        if not embedded:
            logger.debug(f"Article {article.article_id} text unchanged, kept existing embedding")
        return embedded

    def remove(self, article_id: str) -> bool:
        with self._write_lock:
            if article_id not in self._entries:
                return False
            entries = dict(self._entries)
            del entries[article_id]
            self._entries = entries
        logger.info(f"Removed article {article_id} from index")
        return True

    def load(self, articles: Iterable[KnowledgeArticle]) -> int:
        """
        Warm the index from persisted articles without calling the embedder.

        Articles whose stored embedding does not match the pinned dimension are
        skipped; they will be re-embedded by the next upsert.
        """
        loaded = 0
        with self._write_lock:
            entries = dict(self._entries)
            for article in articles:
                embedding = article.embedding
                if embedding is not None:
                    if self._dimension is None:
                        self._dimension = len(embedding)
                    elif len(embedding) != self._dimension:
                        logger.warning(
                            f"Skipping stored embedding for article {article.article_id}: "
                            f"{len(embedding)}d, index is {self._dimension}d"
                        )
                        embedding = None

                indexed = replace(
                    article,
                    slug=article.slug or derive_slug(article.title),
                    embedding=embedding,
                    content_hash=article.content_hash if embedding is not None else None,
                )
                entries[article.article_id] = _Entry(indexed, _unit(embedding) if embedding is not None else None)
                loaded += 1
            self._entries = entries

        logger.info(f"Loaded {loaded} articles into index (dimension={self._dimension})")
        return loaded

    def search(self, query_vector: List[float], k: int, filter: Optional[SearchFilter] = None) -> List[ArticleMatch]:
        """
        Return the k most similar published, embedded articles matching filter.

        Scores are (cos + 1) / 2, so they fall in [0, 1]. Ties are broken by
        most recently updated first. Never raises for "no results".
        """
        if k <= 0:
            return []

        snapshot = self._entries
        candidates = [
            entry for entry in snapshot.values()
            if entry.unit_vector is not None
            and entry.article.is_published
            and (filter is None or filter.matches(entry.article))
        ]
        if not candidates:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        dimension = candidates[0].unit_vector.shape[0]
        if query.shape != (dimension,):
            raise EmbeddingDimensionError(dimension, int(query.size))

        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            cosines = np.zeros(len(candidates))
        else:
            matrix = np.vstack([entry.unit_vector for entry in candidates])
            cosines = matrix @ (query / query_norm)

        scores = np.clip((cosines + 1.0) / 2.0, 0.0, 1.0)

        ranked = sorted(
            zip(candidates, scores),
            key=lambda pair: (-float(pair[1]), -pair[0].article.updated_at.timestamp())
        )
        return [ArticleMatch(article=entry.article, score=float(score)) for entry, score in ranked[:k]]

    def similar_articles(self, article_id: str, k: int = 3) -> List[ArticleMatch]:
        """Related published articles, excluding the article itself."""
        entry = self._entries.get(article_id)
        if entry is None or entry.article.embedding is None:
            return []
        return self.search(entry.article.embedding, k, SearchFilter(exclude_ids=frozenset({article_id})))

    def keyword_search(self, query: str, k: int, filter: Optional[SearchFilter] = None) -> List[ArticleMatch]:
        """
        Term-overlap search over published articles, embedding not required.

        Score is the fraction of query terms found in the article text.
        """
        terms = query_terms(query)
        if k <= 0 or not terms:
            return []

        matches = []
        for entry in self._entries.values():
            article = entry.article
            if not article.is_published or (filter is not None and not filter.matches(article)):
                continue
            text = " ".join([article.title, article.short_description, article.content, " ".join(article.tags)])
            overlap = term_overlap(terms, text)
            if overlap:
                matches.append(ArticleMatch(article=article, score=overlap / len(terms)))

        matches.sort(key=lambda m: (-m.score, -m.article.updated_at.timestamp()))
        return matches[:k]

    def reindex(self, articles: Iterable[KnowledgeArticle], force: bool = True) -> ReindexReport:
        """Regenerate embeddings for articles, collecting failures instead of stopping."""
        report = ReindexReport()
        for article in articles:
            try:
                if self.upsert(article, force=force):
                    report.embedded += 1
                else:
                    report.unchanged += 1
            except EmbeddingServiceError as e:
                report.failed += 1
                report.errors.append({"articleId": article.article_id, "title": article.title, "error": e.message})
                logger.error(f"Failed to embed article {article.article_id}: {e.message}")

        logger.info(f"Reindex complete: {report.embedded} embedded, {report.unchanged} unchanged, {report.failed} failed")
        return report

    def stats(self) -> dict:
        snapshot = self._entries
        return {
            "articles": len(snapshot),
            "embedded": sum(1 for e in snapshot.values() if e.unit_vector is not None),
            "published": sum(1 for e in snapshot.values() if e.article.is_published),
            "dimension": self._dimension,
        }

    def _check_dimension(self, length: int) -> None:
        """Pin the index dimension on first use. Caller holds the write lock."""
        if self._dimension is None:
            self._dimension = length
        elif length != self._dimension:
            raise EmbeddingDimensionError(self._dimension, length)
