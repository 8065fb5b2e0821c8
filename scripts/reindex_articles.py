"""
Regenerate embeddings for knowledge-base articles.

Re-embeds every article with the given status (published by default) using
the configured embedding backend and stores the vectors in knowledge_articles.
Failures are reported per article; the run continues past them.
"""
import argparse
import logging
import os
import time

from helpdesk.config import load_settings
from helpdesk.db.database import create_db_engine, create_session_factory
from helpdesk.db.init_db import init_db
from helpdesk.db.repositories import ArticleRepository
from helpdesk.ingestion.embeddings import build_embedding_service
from helpdesk.logging_config import setup_logging
from helpdesk.retrieval.article_index import ArticleIndex

logger = logging.getLogger(__name__)


def reindex(args):
    settings = load_settings()
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    articles = ArticleRepository(create_session_factory(engine))

    embedder = build_embedding_service(settings)
    index = ArticleIndex(embedder, repository=articles)
    index.load(articles.list_articles())

    if args.article_id:
        targets = [articles.require(args.article_id)]
    else:
        targets = articles.list_articles(status=args.status)
    if args.limit is not None:
        targets = targets[:args.limit]

    if not targets:
        logger.info(f"No articles with status='{args.status}' to reindex")
        return

    logger.info(f"Reindexing {len(targets)} articles with {settings.embedding_backend}/{settings.embedding_model} "
                f"(force={args.force})")
    start = time.time()
    report = index.reindex(targets, force=args.force)
    elapsed = time.time() - start

    logger.info(f"\n{'='*80}")
    logger.info("Reindex complete")
    logger.info(f"  Embedded:  {report.embedded}")
    logger.info(f"  Unchanged: {report.unchanged}")
    logger.info(f"  Failed:    {report.failed}")
    logger.info(f"  Time:      {elapsed:.1f}s")
    for error in report.errors:
        logger.info(f"  ✗ {error['articleId']} ({error['title']}): {error['error']}")
    logger.info(f"{'='*80}")


def main():
    """Regenerate article embeddings."""
    parser = argparse.ArgumentParser(
        description="Regenerate embeddings for knowledge-base articles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Re-embed all published articles
  python -m scripts.reindex_articles

  # Only embed articles whose text changed since the last run
  python -m scripts.reindex_articles --changed-only

  # Re-embed a single article
  python -m scripts.reindex_articles --article-id kb-42
        """
    )

    parser.add_argument("--status", type=str,
                       choices=["draft", "published", "archived"],
                       default="published",
                       help="Article status to reindex (default: published)")
    parser.add_argument("--article-id", type=str, default=None,
                       help="Reindex a single article by id")
    parser.add_argument("--changed-only", dest="force", action="store_false",
                       help="Skip articles whose embedded text is unchanged")
    parser.add_argument("--limit", type=int, default=None,
                       help="Maximum number of articles to process (default: all)")
    parser.add_argument("--log-level", type=str,
                       choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                       help="Logging level (default: LOG_LEVEL env var or INFO)")

    args = parser.parse_args()

    setup_logging(level=args.log_level or os.getenv("LOG_LEVEL", "INFO"), log_file="logs/reindex_articles.log")
    reindex(args)


if __name__ == "__main__":
    main()
