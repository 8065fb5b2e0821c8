"""
Pure helpers used by the write paths (slugs, titles, timestamps, hashes).
"""
import hashlib
import re
from datetime import datetime
from typing import Iterable, List, Optional

from helpdesk.models import utcnow

CONVERSATION_TITLE_MAX_LENGTH = 50

_WORD_PATTERN = re.compile(r"[a-z0-9]+")

# Common words ignored when matching query terms against article text
STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "can", "do", "does", "for",
    "from", "how", "i", "in", "is", "it", "my", "of", "on", "or", "the", "to",
    "what", "when", "where", "which", "who", "why", "with", "you", "your",
})


def derive_slug(title: str) -> str:
    """
    Lowercase, strip punctuation, and join words with hyphens.

    >>> derive_slug("Resetting Criteria: A How-To")
    'resetting-criteria-a-how-to'
    """
    slug = title.lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug.strip("-")


def derive_conversation_title(message: str, max_length: int = CONVERSATION_TITLE_MAX_LENGTH) -> str:
    """Title for a new conversation: the first question, truncated with '...'."""
    message = " ".join(message.split())
    if len(message) <= max_length:
        return message
    return message[:max_length] + "..."


def touch_updated_at(record, now: Optional[datetime] = None):
    """Set record.updated_at to now (UTC) and return the record."""
    record.updated_at = now or utcnow()
    return record


def content_hash(title: str, short_description: str, content: str) -> str:
    """Stable hash of the text that gets embedded for an article."""
    digest = hashlib.sha256()
    digest.update(embedding_text(title, short_description, content).encode("utf-8"))
    return digest.hexdigest()


def embedding_text(title: str, short_description: str, content: str) -> str:
    """Text embedded for an article: title, short description, then body."""
    return f"{title}\n{short_description or ''}\n{content}"


def query_terms(text: str) -> List[str]:
    """Lowercased content words of text, stopwords removed, order preserved."""
    seen = set()
    terms = []
    for word in _WORD_PATTERN.findall(text.lower()):
        if word in STOPWORDS or word in seen:
            continue
        seen.add(word)
        terms.append(word)
    return terms


def term_overlap(terms: Iterable[str], text: str) -> int:
    """Number of distinct terms that occur as words in text."""
    words = set(_WORD_PATTERN.findall(text.lower()))
    return sum(1 for term in terms if term in words)
