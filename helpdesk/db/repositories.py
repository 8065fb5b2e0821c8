"""
Article persistence for the chat engine.

Article authoring lives outside the engine; this repository reads articles,
stores their embeddings, and adjusts the helpful/unhelpful aggregates.
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from helpdesk.db.models import KnowledgeArticleRecord
from helpdesk.errors import ArticleNotFound
from helpdesk.logging_config import get_logger
from helpdesk.models import KnowledgeArticle, utcnow
from helpdesk.utils import derive_slug

logger = get_logger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def record_to_article(record: KnowledgeArticleRecord) -> KnowledgeArticle:
    embedding = None
    if record.embedding is not None:
        embedding = [float(x) for x in record.embedding]

    return KnowledgeArticle(
        article_id=record.article_id,
        title=record.title,
        short_description=record.short_description or "",
        content=record.content,
        category_id=record.category_id,
        tags=set(record.tags or []),
        status=record.status,
        slug=record.slug,
        embedding=embedding,
        content_hash=record.content_hash,
        helpful_count=record.helpful_count or 0,
        unhelpful_count=record.unhelpful_count or 0,
        view_count=record.view_count or 0,
        published_at=as_utc(record.published_at),
        updated_at=as_utc(record.updated_at),
    )


class ArticleRepository:
    """SQLAlchemy-backed article storage."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def save(self, article: KnowledgeArticle) -> KnowledgeArticle:
        """Insert or update the article's authored fields. Counters and embedding are left alone on update."""
        with self.session_factory() as session:
            record = session.get(KnowledgeArticleRecord, article.article_id)
            if record is None:
                record = KnowledgeArticleRecord(
                    article_id=article.article_id,
                    helpful_count=article.helpful_count,
                    unhelpful_count=article.unhelpful_count,
                    view_count=article.view_count,
                )
                session.add(record)

            record.title = article.title
            record.slug = article.slug or derive_slug(article.title)
            record.short_description = article.short_description
            record.content = article.content
            record.category_id = article.category_id
            record.tags = sorted(article.tags)
            record.status = article.status
            record.published_at = article.published_at
            record.updated_at = article.updated_at or utcnow()

            session.commit()
            return record_to_article(record)

    def get(self, article_id: str) -> Optional[KnowledgeArticle]:
        with self.session_factory() as session:
            record = session.get(KnowledgeArticleRecord, article_id)
            return record_to_article(record) if record is not None else None

    def require(self, article_id: str) -> KnowledgeArticle:
        article = self.get(article_id)
        if article is None:
            raise ArticleNotFound(article_id)
        return article

    def list_articles(self, status: Optional[str] = None) -> List[KnowledgeArticle]:
        stmt = select(KnowledgeArticleRecord).order_by(KnowledgeArticleRecord.article_id)
        if status is not None:
            stmt = stmt.where(KnowledgeArticleRecord.status == status)

        with self.session_factory() as session:
            return [record_to_article(r) for r in session.execute(stmt).scalars().all()]

    def store_embedding(self, article_id: str, embedding: List[float], content_hash: str) -> None:
        with self.session_factory() as session:
            record = session.get(KnowledgeArticleRecord, article_id)
            if record is None:
                # Index accepts articles that are not stored here yet; nothing to persist
                logger.debug(f"Skipping embedding write for unknown article {article_id}")
                return
            record.embedding = embedding
            record.content_hash = content_hash
            session.commit()
        logger.debug(f"Stored {len(embedding)}-d embedding for article {article_id}")

    def adjust_counters(
            self,
            session: Session,
            article_id: str,
            helpful_delta: int = 0,
            unhelpful_delta: int = 0
            ) -> KnowledgeArticleRecord:
        """
        Apply counter deltas inside the caller's transaction.

        Counters never go below zero.
        """
        record = session.get(KnowledgeArticleRecord, article_id)
        if record is None:
            raise ArticleNotFound(article_id)

        record.helpful_count = max(0, (record.helpful_count or 0) + helpful_delta)
        record.unhelpful_count = max(0, (record.unhelpful_count or 0) + unhelpful_delta)
        return record
