"""
Database models for the support portal chat engine.

SCHEMA OVERVIEW
===============================================================================

TABLE: knowledge_articles - Articles readable by the chat engine, plus their embeddings
-------------------------------------------------------------------------------
article_id         VARCHAR       PRIMARY KEY
title              TEXT          NOT NULL
slug               VARCHAR                          derive_slug(title) when not provided
short_description  TEXT
content            TEXT          NOT NULL
category_id        VARCHAR                          Reference into the (external) category taxonomy
tags               JSONB                            List of tag strings
status             VARCHAR       DEFAULT 'draft'    'draft' | 'published' | 'archived'
embedding          VECTOR                           NULL until indexed; one dimension per index
content_hash       VARCHAR(64)                      sha256 of the embedded text (change detection)
helpful_count      INTEGER       DEFAULT 0          Derived from feedback rows (first vote per voter)
unhelpful_count    INTEGER       DEFAULT 0          Derived from feedback rows (first vote per voter)
view_count         INTEGER       DEFAULT 0
published_at       TIMESTAMP
updated_at         TIMESTAMP     NOT NULL

INDEX: idx_articles_status ON status
INDEX: idx_articles_category ON category_id


TABLE: chat_conversations - One row per conversation, never deleted by the engine
-------------------------------------------------------------------------------
conversation_id    VARCHAR(36)   PRIMARY KEY        UUID4
user_id            VARCHAR                          NULL for anonymous sessions
session_id         VARCHAR       NOT NULL
title              VARCHAR       NOT NULL
status             VARCHAR       DEFAULT 'active'   'active' | 'closed'
client_metadata    JSONB                            userAgent, ipAddress, referrer, path
rating_score       INTEGER                          1-5
rating_feedback    TEXT
rated_at           TIMESTAMP
message_count      INTEGER       DEFAULT 0          Per-conversation sequence counter
created_at         TIMESTAMP     NOT NULL
updated_at         TIMESTAMP     NOT NULL
last_message_at    TIMESTAMP     NOT NULL           Equals created_at of the latest message

INDEX: idx_conversations_owner ON (user_id, session_id)
INDEX: idx_conversations_last_message ON last_message_at


TABLE: chat_messages - Ordered messages of a conversation
-------------------------------------------------------------------------------
message_id         VARCHAR(36)   PRIMARY KEY        UUID4
conversation_id    VARCHAR(36)   NOT NULL FK
sequence           INTEGER       NOT NULL           1, 2, 3... within the conversation
role               VARCHAR       NOT NULL           'user' | 'assistant' | 'system'
content            TEXT          NOT NULL
sources            JSONB                            [{articleId, title, score, slug}]
generation_metadata JSONB                           tokensUsed, promptTokens, completionTokens, processingTimeMs, model
helpful            BOOLEAN                          Latest helpfulness vote on this message
created_at         TIMESTAMP     NOT NULL           Monotonic along sequence

UNIQUE: (conversation_id, sequence)


TABLE: feedback - Canonical feedback records
-------------------------------------------------------------------------------
feedback_id        VARCHAR(36)   PRIMARY KEY
user_id            VARCHAR       NOT NULL           User id, or "session:<id>" for anonymous voters
item_id            VARCHAR       NOT NULL
item_type          VARCHAR       NOT NULL           'article' | 'message' | 'ticket' | 'feature' | 'support'
rating             INTEGER                          1-5
comments           TEXT
helpful            BOOLEAN
created_at         TIMESTAMP     NOT NULL
updated_at         TIMESTAMP     NOT NULL

UNIQUE: (user_id, item_id, item_type)
"""
from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from pgvector.sqlalchemy import Vector

from .database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class KnowledgeArticleRecord(Base):
    """Knowledge-base article with its embedding and feedback-derived counters."""
    __tablename__ = "knowledge_articles"

    article_id = Column(String, primary_key=True)

    # Article content (authored elsewhere)
    title = Column(Text, nullable=False)
    slug = Column(String)
    short_description = Column(Text)
    content = Column(Text, nullable=False)
    category_id = Column(String)
    tags = Column(JSONType)
    status = Column(String, default="draft", nullable=False)

    # Embedding of "title\nshort_description\ncontent", NULL until indexed
    # Dimension is pinned by the embedding model, enforced by the in-memory index
    embedding = Column(Vector())
    content_hash = Column(String(64))

    # Aggregates
    helpful_count = Column(Integer, default=0, nullable=False)
    unhelpful_count = Column(Integer, default=0, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)

    published_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_articles_status", "status"),
        Index("idx_articles_category", "category_id"),
    )

    def __repr__(self):
        return f"<KnowledgeArticleRecord(id={self.article_id}, status={self.status}, title={self.title[:50]})>"


class ConversationRecord(Base):
    __tablename__ = "chat_conversations"

    conversation_id = Column(String(36), primary_key=True)
    user_id = Column(String)
    session_id = Column(String, nullable=False)
    title = Column(String, nullable=False, default="New Conversation")
    status = Column(String, nullable=False, default="active")
    client_metadata = Column(JSONType)

    rating_score = Column(Integer)
    rating_feedback = Column(Text)
    rated_at = Column(DateTime(timezone=True))

    # Sequence counter: the next message gets message_count + 1
    message_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    last_message_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_conversations_owner", "user_id", "session_id"),
        Index("idx_conversations_last_message", "last_message_at"),
    )

    def __repr__(self):
        return f"<ConversationRecord(id={self.conversation_id}, status={self.status}, messages={self.message_count})>"


class MessageRecord(Base):
    __tablename__ = "chat_messages"

    message_id = Column(String(36), primary_key=True)
    conversation_id = Column(String(36), ForeignKey("chat_conversations.conversation_id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    sources = Column(JSONType)
    generation_metadata = Column(JSONType)
    helpful = Column(Boolean)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_message_conversation_sequence"),
    )

    def __repr__(self):
        return f"<MessageRecord(id={self.message_id}, conversation={self.conversation_id}, seq={self.sequence}, role={self.role})>"


class FeedbackRecord(Base):
    __tablename__ = "feedback"

    feedback_id = Column(String(36), primary_key=True)
    user_id = Column(String, nullable=False)
    item_id = Column(String, nullable=False)
    item_type = Column(String, nullable=False)
    rating = Column(Integer)
    comments = Column(Text, default="")
    helpful = Column(Boolean)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "item_id", "item_type", name="uq_feedback_user_item"),
    )

    def __repr__(self):
        return f"<FeedbackRecord(user={self.user_id}, item={self.item_type}:{self.item_id}, helpful={self.helpful})>"
