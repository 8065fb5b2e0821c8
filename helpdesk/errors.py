"""
Error taxonomy for the support portal chat engine.

Every error carries the HTTP-style status the API boundary reports, so the
FastAPI handlers in main.py can turn any of them into a structured
{success: false, message} payload.
"""
from typing import Optional


class HelpdeskError(Exception):
    """Base class for all errors raised by the chat engine."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(HelpdeskError):
    """User-correctable bad input. Nothing is persisted when this is raised."""

    status_code = 400


class ConversationNotFound(HelpdeskError):
    """Stale, unknown or foreign conversation id."""

    status_code = 404

    def __init__(self, conversation_id: str, details: Optional[dict] = None):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found", details)


class MessageNotFound(HelpdeskError):
    status_code = 404

    def __init__(self, message_id: str, details: Optional[dict] = None):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found", details)


class ArticleNotFound(HelpdeskError):
    status_code = 404

    def __init__(self, article_id: str, details: Optional[dict] = None):
        self.article_id = article_id
        super().__init__(f"Article {article_id} not found", details)


class EmbeddingServiceError(HelpdeskError):
    """
    Embedding backend failure or unusable input.

    retryable is True for transient failures (timeouts, connection errors,
    5xx responses) and False for input problems or malformed responses.
    """

    def __init__(self, message: str, retryable: bool = False, details: Optional[dict] = None):
        self.retryable = retryable
        super().__init__(message, details)


class EmbeddingDimensionError(EmbeddingServiceError):
    """Embedding length differs from the dimension pinned for the index."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            retryable=False,
            details={"expected": expected, "actual": actual},
        )


class GenerationServiceError(HelpdeskError):
    """Language-generation backend failure. Never retried automatically."""


class RetrievalUnavailable(HelpdeskError):
    """Retrieval could not run (embedder or index failed after retries)."""

    def __init__(self, message: str, cause: Optional[Exception] = None, details: Optional[dict] = None):
        self.cause = cause
        super().__init__(message, details)
