"""
Context assembly: turn ranked articles into bounded context blocks.

Each block is "title\\nshort description\\nexcerpt" for one article. Blocks are
taken in score order until the budget is spent. Truncation always happens at
a word boundary, and the best-scoring article is always included.
"""
from typing import Callable, List, Optional
import re

import tiktoken

from helpdesk.logging_config import get_logger
from helpdesk.models import ArticleMatch, ContextBlock, KnowledgeArticle
from helpdesk.utils import query_terms, term_overlap

logger = get_logger(__name__)

LengthFn = Callable[[str], int]

_WORD_RUN = re.compile(r"\S+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


def char_length(text: str) -> int:
    return len(text)


class TokenCounter:
    """Counts tokens with the same tokenizer family as the generation backend."""

    def __init__(self, encoding_name: str = "cl100k_base"):  # OpenAI's tokenizer
        self.encoder = tiktoken.get_encoding(encoding_name)

    def __call__(self, text: str) -> int:
        return len(self.encoder.encode(text))


def truncate_at_whitespace(text: str, limit: int, length_fn: LengthFn = char_length) -> str:
    """
    Longest prefix of text that ends at the end of a word and measures <= limit.

    Returns "" when not even the first word fits.
    """
    if length_fn(text) <= limit:
        return text
    if limit <= 0:
        return ""

    word_ends = [m.end() for m in _WORD_RUN.finditer(text)]

    # Binary search for the last word end whose prefix still fits
    best = ""
    lo, hi = 0, len(word_ends) - 1
    while lo <= hi:
        mid = (lo + hi) // 2
        prefix = text[:word_ends[mid]]
        if length_fn(prefix) <= limit:
            best = prefix
            lo = mid + 1
        else:
            hi = mid - 1
    return best


def select_excerpt(content: str, query: Optional[str], max_chars: int) -> str:
    """
    Excerpt of content starting at the paragraph that best matches the query.

    Without a query (or without any overlap) the excerpt starts at the top.
    Whitespace is collapsed; the result is cut at a word boundary.
    """
    paragraphs = [" ".join(p.split()) for p in _PARAGRAPH_BREAK.split(content) if p.strip()]
    if not paragraphs:
        return ""

    start = 0
    terms = query_terms(query) if query else []
    if terms:
        overlaps = [term_overlap(terms, p) for p in paragraphs]
        best = max(overlaps)
        if best > 0:
            start = overlaps.index(best)

    excerpt = " ".join(paragraphs[start:])
    return truncate_at_whitespace(excerpt, max_chars)


def snippet_header(article: KnowledgeArticle) -> str:
    if article.short_description:
        return f"{article.title}\n{article.short_description}"
    return article.title


class ContextAssembler:
    """
    Selects retrieved snippets within a size budget.

    The budget is measured with length_fn: characters by default, tokens when
    a TokenCounter is passed. It covers the snippet text of all blocks.
    """

    def __init__(self, budget: int, length_fn: LengthFn = char_length, max_snippet_chars: int = 1500):
        if budget <= 0:
            raise ValueError("budget must be positive")
        self.budget = budget
        self.length_fn = length_fn
        self.max_snippet_chars = max_snippet_chars

    def build_snippet(self, article: KnowledgeArticle, query: Optional[str] = None) -> str:
        header = snippet_header(article)
        excerpt = select_excerpt(article.content, query, self.max_snippet_chars)
        return f"{header}\n{excerpt}" if excerpt else header

    def assemble(
            self,
            retrieved: List[ArticleMatch],
            budget: Optional[int] = None,
            query: Optional[str] = None
            ) -> List[ContextBlock]:
        """
        Build context blocks in score order without exceeding budget.

        The first article is always included, truncated if it alone is larger
        than the budget. A later snippet that does not fit is truncated into
        the remainder only if its header survives intact; assembly stops there.
        Empty input gives an empty context.
        """
        budget = self.budget if budget is None else budget
        if not retrieved:
            return []

        ordered = sorted(retrieved, key=lambda match: match.score, reverse=True)
        blocks: List[ContextBlock] = []
        used = 0

        for match in ordered:
            article = match.article
            snippet = self.build_snippet(article, query)
            size = self.length_fn(snippet)
            remaining = budget - used

            if size <= remaining:
                blocks.append(self._block(len(blocks) + 1, match, snippet, truncated=False))
                used += size
                continue

            truncated = truncate_at_whitespace(snippet, remaining, self.length_fn)
            header = snippet_header(article)
            if not blocks:
                if not truncated:
                    logger.warning(f"Budget {budget} too small for any word of article {article.article_id}")
                blocks.append(self._block(1, match, truncated, truncated=True))
                used += self.length_fn(truncated)
            elif len(truncated) > len(header):
                blocks.append(self._block(len(blocks) + 1, match, truncated, truncated=True))
                used += self.length_fn(truncated)
            break

        logger.debug(f"Assembled {len(blocks)}/{len(retrieved)} context blocks using {used}/{budget}")
        return blocks

    @staticmethod
    def _block(number: int, match: ArticleMatch, text: str, truncated: bool) -> ContextBlock:
        return ContextBlock(
            number=number,
            article_id=match.article.article_id,
            title=match.article.title,
            text=text,
            score=match.score,
            slug=match.article.slug,
            truncated=truncated,
        )
