"""
Tests for ContextAssembler: budget, word-boundary truncation, ordering.
"""
import unittest

from helpdesk.models import ArticleMatch
from helpdesk.rag.context_assembler import (
    ContextAssembler, select_excerpt, truncate_at_whitespace,
)

from tests.fakes import make_article

LONG_BODY = " ".join(f"word{i}" for i in range(400))


def matches(*specs):
    return [
        ArticleMatch(article=make_article(f"kb-{n}", title, content=content), score=score)
        for n, (title, content, score) in enumerate(specs, 1)
    ]


class TestTruncation(unittest.TestCase):

    def test_never_cuts_mid_word(self):
        text = "Open settings and reset the criteria"
        for limit in range(0, len(text) + 5):
            cut = truncate_at_whitespace(text, limit)

            assert len(cut) <= limit
            assert text.startswith(cut)
            # Either nothing, the whole text, or a prefix followed by whitespace
            assert cut == "" or cut == text or text[len(cut)].isspace()

    def test_custom_length_function(self):
        words = lambda s: len(s.split())
        assert truncate_at_whitespace("one two three four", 2, words) == "one two"


class TestExcerpt(unittest.TestCase):

    def test_starts_at_best_matching_paragraph(self):
        content = "Welcome to the guide.\n\nBilling is monthly.\n\nTo reset criteria open Settings."

        excerpt = select_excerpt(content, "how do I reset criteria", 500)

        assert excerpt == "To reset criteria open Settings."

    def test_starts_at_top_without_overlap(self):
        content = "First paragraph.\n\nSecond paragraph."

        assert select_excerpt(content, "unrelated", 500) == "First paragraph. Second paragraph."


class TestContextAssembler(unittest.TestCase):

    def test_empty_retrieval_gives_empty_context(self):
        assert ContextAssembler(1000).assemble([]) == []

    def test_blocks_in_score_order_and_numbered(self):
        retrieved = matches(("Billing FAQ", "Invoices monthly.", 0.4), ("Resetting Criteria", "Open settings.", 0.9))

        blocks = ContextAssembler(1000).assemble(retrieved)

        assert [b.title for b in blocks] == ["Resetting Criteria", "Billing FAQ"]
        assert [b.tag for b in blocks] == ["KB-1", "KB-2"]
        assert blocks[0].text.startswith("Resetting Criteria\nAbout resetting criteria\n")
        assert not any(b.truncated for b in blocks)

    def test_never_exceeds_budget_or_cuts_words(self):
        """Test every budget yields blocks within budget that are word-boundary prefixes of their snippets."""
        retrieved = matches(
            ("Resetting Criteria", LONG_BODY, 0.9),
            ("Criteria Templates", LONG_BODY, 0.8),
            ("Billing FAQ", LONG_BODY, 0.7),
        )
        for budget in (10, 40, 100, 250, 700, 1600, 3000, 6000):
            assembler = ContextAssembler(budget)
            blocks = assembler.assemble(retrieved)

            assert sum(len(b.text) for b in blocks) <= budget
            assert blocks[0].article_id == "kb-1"
            for block, match in zip(blocks, retrieved):
                snippet = assembler.build_snippet(match.article)
                assert snippet.startswith(block.text)
                assert block.text == snippet or block.text == "" or snippet[len(block.text)].isspace()

    def test_first_article_always_included(self):
        retrieved = matches(("Resetting Criteria", LONG_BODY, 0.9), ("Billing FAQ", "Short.", 0.5))

        blocks = ContextAssembler(60).assemble(retrieved)

        assert len(blocks) == 1
        assert blocks[0].article_id == "kb-1"
        assert blocks[0].truncated is True
        assert len(blocks[0].text) <= 60

    def test_first_article_included_even_if_no_word_fits(self):
        retrieved = matches(("Resetting Criteria", "Body.", 0.9))

        with self.assertLogs("helpdesk.rag.context_assembler", level="WARNING"):
            blocks = ContextAssembler(5).assemble(retrieved)

        assert len(blocks) == 1
        assert blocks[0].text == ""

    def test_snippet_capped_per_article(self):
        retrieved = matches(("Resetting Criteria", LONG_BODY, 0.9))

        blocks = ContextAssembler(100000, max_snippet_chars=200).assemble(retrieved)

        header = "Resetting Criteria\nAbout resetting criteria\n"
        assert len(blocks[0].text) <= len(header) + 200

    def test_budget_measured_by_length_function(self):
        words = lambda s: len(s.split())
        retrieved = matches(("Resetting Criteria", LONG_BODY, 0.9))

        blocks = ContextAssembler(20, length_fn=words).assemble(retrieved)

        assert words(blocks[0].text) <= 20
        assert len(blocks[0].text) > 20
