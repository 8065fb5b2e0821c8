"""
Load knowledge-base articles from a JSON file and index them.

The file holds a list of articles:

    [
      {
        "id": "kb-1",
        "title": "Resetting Criteria",
        "shortDescription": "How to reset evaluation criteria",
        "content": "...",
        "categoryId": "evaluations",
        "tags": ["criteria", "reset"],
        "status": "published"
      }
    ]

Articles are upserted by id. Embeddings are only requested for articles
whose text changed since they were last indexed.
"""
import argparse
import json
import logging
import os
from pathlib import Path
from typing import List

from helpdesk.config import load_settings
from helpdesk.db.database import create_db_engine, create_session_factory
from helpdesk.db.init_db import init_db
from helpdesk.db.repositories import ArticleRepository
from helpdesk.ingestion.embeddings import build_embedding_service
from helpdesk.logging_config import setup_logging
from helpdesk.models import ArticleStatus, KnowledgeArticle, utcnow
from helpdesk.retrieval.article_index import ArticleIndex

logger = logging.getLogger(__name__)


def parse_articles(path: Path) -> List[KnowledgeArticle]:
    """Read and validate the seed file."""
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a JSON list of articles")

    valid_statuses = [s.value for s in ArticleStatus]
    articles = []
    for position, item in enumerate(raw, 1):
        missing = [key for key in ("id", "title", "content") if not item.get(key)]
        if missing:
            raise ValueError(f"Article #{position} is missing {', '.join(missing)}")
        status = item.get("status", ArticleStatus.PUBLISHED.value)
        if status not in valid_statuses:
            raise ValueError(f"Article {item['id']} has invalid status {status!r}")

        articles.append(KnowledgeArticle(
            article_id=str(item["id"]),
            title=item["title"],
            short_description=item.get("shortDescription", ""),
            content=item["content"],
            category_id=item.get("categoryId"),
            tags=set(item.get("tags", [])),
            status=status,
            slug=item.get("slug"),
            published_at=utcnow() if status == ArticleStatus.PUBLISHED.value else None,
        ))
    return articles


def seed(args):
    articles_to_load = parse_articles(Path(args.file))
    logger.info(f"Loaded {len(articles_to_load)} articles from {args.file}")

    settings = load_settings()
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    articles = ArticleRepository(create_session_factory(engine))

    saved = [articles.save(article) for article in articles_to_load]
    logger.info(f"Stored {len(saved)} articles")

    if args.no_embed:
        logger.info("Skipping embeddings (--no-embed)")
        return

    index = ArticleIndex(build_embedding_service(settings), repository=articles)
    index.load(articles.list_articles())
    report = index.reindex(saved, force=False)

    logger.info(f"\n{'='*80}")
    logger.info(f"Seed complete: {report.embedded} embedded, {report.unchanged} unchanged, {report.failed} failed")
    for error in report.errors:
        logger.info(f"  ✗ {error['articleId']}: {error['error']}")
    logger.info(f"{'='*80}")


def main():
    """Seed the knowledge base from a JSON file."""
    parser = argparse.ArgumentParser(description="Load knowledge-base articles from JSON and index them")
    parser.add_argument("file", type=str, help="Path to the JSON file with articles")
    parser.add_argument("--no-embed", action="store_true",
                       help="Only store the articles, do not request embeddings")
    parser.add_argument("--log-level", type=str,
                       choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                       help="Logging level (default: LOG_LEVEL env var or INFO)")

    args = parser.parse_args()

    setup_logging(level=args.log_level or os.getenv("LOG_LEVEL", "INFO"), log_file="logs/seed_knowledge_base.log")
    seed(args)


if __name__ == "__main__":
    main()
