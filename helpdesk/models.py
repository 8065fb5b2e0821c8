"""
Core data models for the support portal chat engine.

These models represent the primary data structures used across
indexing, retrieval, generation, and conversation management.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArticleStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


FEEDBACK_ITEM_TYPES = ("article", "message", "ticket", "feature", "support")


@dataclass
class KnowledgeArticle:
    """
    A knowledge-base article as seen by the chat engine.

    Authoring happens elsewhere; the engine only reads these fields and
    attaches the embedding. embedding stays None until the article is indexed.
    """
    article_id: str
    title: str
    short_description: str
    content: str
    category_id: Optional[str] = None
    tags: Set[str] = field(default_factory=set)
    status: str = ArticleStatus.DRAFT.value
    slug: Optional[str] = None
    embedding: Optional[List[float]] = None
    content_hash: Optional[str] = None
    helpful_count: int = 0
    unhelpful_count: int = 0
    view_count: int = 0
    published_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_published(self) -> bool:
        return self.status == ArticleStatus.PUBLISHED.value


@dataclass(frozen=True)
class ArticleMatch:
    """A single ranked result from the article index, score in [0, 1]."""
    article: KnowledgeArticle
    score: float


@dataclass(frozen=True)
class Source:
    """
    Read-only projection of an article that informed an assistant answer.

    Only ever persisted as part of its message.
    """
    article_id: str
    title: str
    score: float
    slug: Optional[str] = None

    def to_dict(self) -> dict:
        return {"articleId": self.article_id, "title": self.title, "score": self.score, "slug": self.slug}

    @classmethod
    def from_dict(cls, data: dict) -> "Source":
        return cls(
            article_id=data["articleId"],
            title=data.get("title", ""),
            score=float(data.get("score", 0.0)),
            slug=data.get("slug"),
        )


@dataclass(frozen=True)
class ContextBlock:
    """
    A bounded excerpt of one retrieved article, tagged [KB-<number>] in the prompt.
    """
    number: int
    article_id: str
    title: str
    text: str
    score: float
    slug: Optional[str] = None
    truncated: bool = False

    @property
    def tag(self) -> str:
        return f"KB-{self.number}"

    def to_source(self) -> Source:
        return Source(article_id=self.article_id, title=self.title, score=self.score, slug=self.slug)


@dataclass
class GenerationMetadata:
    tokens_used: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    processing_time_ms: float = 0.0
    model: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tokensUsed": self.tokens_used,
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "processingTimeMs": self.processing_time_ms,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["GenerationMetadata"]:
        if not data:
            return None
        return cls(
            tokens_used=data.get("tokensUsed", 0),
            prompt_tokens=data.get("promptTokens", 0),
            completion_tokens=data.get("completionTokens", 0),
            processing_time_ms=data.get("processingTimeMs", 0.0),
            model=data.get("model"),
        )


@dataclass
class GeneratedAnswer:
    answer: str
    sources: List[Source]
    metadata: GenerationMetadata


@dataclass
class Conversation:
    """
    A chat conversation. user_id is None for anonymous sessions.
    """
    conversation_id: str
    session_id: str
    user_id: Optional[str] = None
    title: str = "New Conversation"
    status: str = ConversationStatus.ACTIVE.value
    metadata: Dict[str, str] = field(default_factory=dict)
    rating_score: Optional[int] = None
    rating_feedback: Optional[str] = None
    rated_at: Optional[datetime] = None
    message_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_message_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    """
    A single conversation turn. sequence is the only legal replay order.
    """
    message_id: str
    conversation_id: str
    sequence: int
    role: str
    content: str
    sources: List[Source] = field(default_factory=list)
    metadata: Optional[GenerationMetadata] = None
    helpful: Optional[bool] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_history_entry(self) -> dict:
        """Role/content pair in the chat-completions message format."""
        return {"role": self.role, "content": self.content}


@dataclass
class Feedback:
    feedback_id: str
    user_id: str
    item_id: str
    item_type: str
    rating: Optional[int] = None
    comments: str = ""
    helpful: Optional[bool] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ChatInput:
    """Validated-later input of one chat turn, as received at the boundary."""
    message: Optional[str]
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ChatResult:
    answer: str
    sources: List[Source]
    conversation_id: str
    message_id: str
    user_message_id: str
