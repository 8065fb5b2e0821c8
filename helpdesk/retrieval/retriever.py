"""
Query-time retrieval: embed the question, rank articles, drop weak matches.
"""
from typing import Callable, List, Optional, TypeVar
import time

from helpdesk.errors import EmbeddingServiceError, RetrievalUnavailable
from helpdesk.ingestion.embeddings import EmbeddingService
from helpdesk.logging_config import get_logger
from helpdesk.models import ArticleMatch
from helpdesk.retrieval.article_index import ArticleIndex, SearchFilter

logger = get_logger(__name__)

T = TypeVar("T")


class Retriever:
    """
    Embeds a query via the embedding service and ranks articles from the index.

    Embed and search are idempotent reads, so transient failures are retried
    with exponential backoff up to max_attempts. When retries are exhausted
    (or the failure is not transient) RetrievalUnavailable is raised and the
    caller decides whether to degrade or reject.
    """

    def __init__(
            self,
            embedder: EmbeddingService,
            index: ArticleIndex,
            max_attempts: int = 3,
            backoff_seconds: float = 0.5,
            keyword_fallback: bool = False,
            sleep: Callable[[float], None] = time.sleep
            ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.embedder = embedder
        self.index = index
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.keyword_fallback = keyword_fallback
        self._sleep = sleep

    def retrieve(
            self,
            query: str,
            top_k: int = 5,
            min_score: float = 0.2,
            filter: Optional[SearchFilter] = None
            ) -> List[ArticleMatch]:
        """
        Return up to top_k articles scoring at least min_score, best first.

        Raises:
            RetrievalUnavailable: embedding or search failed after retries
        """
        embed_start = time.time()
        query_vector = self._with_retries("embed", lambda: self.embedder.embed(query))
        embed_time = (time.time() - embed_start) * 1000
        logger.info(f"  Query embedding time: {embed_time:.0f}ms")

        search_start = time.time()
        results = self._with_retries("search", lambda: self.index.search(query_vector, top_k, filter))
        search_time = (time.time() - search_start) * 1000
        logger.info(f"  Vector search time: {search_time:.0f}ms")

        kept = [match for match in results if match.score >= min_score]
        if len(kept) < len(results):
            logger.debug(f"  Dropped {len(results) - len(kept)} results below min_score={min_score}")

        if not kept and self.keyword_fallback:
            kept = [m for m in self.index.keyword_search(query, top_k, filter) if m.score >= min_score]
            logger.info(f"  No vector matches, keyword fallback found {len(kept)} articles")

        kept.sort(key=lambda match: match.score, reverse=True)
        return kept

    def _with_retries(self, operation: str, call: Callable[[], T]) -> T:
        last_error: Optional[Exception] = None
        attempt = 0
        for attempt in range(1, self.max_attempts + 1):
            try:
                return call()
            except EmbeddingServiceError as e:
                last_error = e
                if not e.retryable:
                    break
            except (TimeoutError, ConnectionError) as e:
                last_error = e

            if attempt < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"Retrieval {operation} failed (attempt {attempt}/{self.max_attempts}), retrying in {delay:.2f}s: {last_error}")
                self._sleep(delay)

        logger.error(f"Retrieval {operation} failed after {attempt} attempt(s): {last_error}")
        raise RetrievalUnavailable(
            f"Retrieval unavailable: {operation} failed after {attempt} attempt(s)",
            cause=last_error,
            details={"operation": operation, "attempts": attempt},
        )
