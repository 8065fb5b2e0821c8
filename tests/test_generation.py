"""
Tests for AnswerGenerator and the chat backends (backend clients are mocked).
"""
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import ollama
import openai

from helpdesk.errors import GenerationServiceError
from helpdesk.models import ContextBlock, Message
from helpdesk.rag.generation import (
    NO_CONTEXT_REPLY, SYSTEM_PROMPT, AnswerGenerator, OllamaChatBackend, OpenAIChatBackend,
)

from tests.fakes import FakeGenerationBackend


def block(number, title, slug=None):
    return ContextBlock(
        number=number, article_id=f"kb-{number}", title=title,
        text=f"{title}\nHow to {title.lower()}\nStep one.", score=1.0 - number / 10, slug=slug,
    )


BLOCKS = [block(1, "Resetting Criteria", "resetting-criteria"), block(2, "Billing FAQ", "billing-faq")]


def history(n):
    return [
        Message(message_id=f"m{i}", conversation_id="c1", sequence=i,
                role="user" if i % 2 else "assistant", content=f"turn {i}")
        for i in range(1, n + 1)
    ]


class TestAnswerGenerator(unittest.TestCase):

    def test_citations_map_to_sources(self):
        """Test only cited blocks become sources, renumbered for display."""
        backend = FakeGenerationBackend("You can change invoices in Billing [KB-2].")
        generator = AnswerGenerator(backend)

        answer = generator.generate("How do invoices work?", BLOCKS)

        assert [s.article_id for s in answer.sources] == ["kb-2"]
        assert answer.sources[0].slug == "billing-faq"
        assert answer.answer == "You can change invoices in Billing [1]."

    def test_uncited_answer_attributes_all_blocks(self):
        generator = AnswerGenerator(FakeGenerationBackend("Open Settings and press reset."))

        answer = generator.generate("How do I reset?", BLOCKS)

        assert [s.article_id for s in answer.sources] == ["kb-1", "kb-2"]

    def test_empty_context_skips_backend(self):
        backend = FakeGenerationBackend()

        answer = AnswerGenerator(backend).generate("Anything?", [])

        assert answer.answer == NO_CONTEXT_REPLY
        assert answer.sources == []
        assert backend.calls == []

    def test_backend_failure_propagates_once(self):
        backend = FakeGenerationBackend(error=GenerationServiceError("backend down"))

        with self.assertRaises(GenerationServiceError):
            AnswerGenerator(backend).generate("How do I reset?", BLOCKS)

        assert len(backend.calls) == 1

    def test_blank_reply_is_an_error(self):
        with self.assertRaises(GenerationServiceError):
            AnswerGenerator(FakeGenerationBackend("   ")).generate("How do I reset?", BLOCKS)

    def test_prompt_layout_and_history_window(self):
        generator = AnswerGenerator(FakeGenerationBackend(), history_window=10)

        messages = generator.build_messages("How do I reset?", BLOCKS, history(12))

        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert [m["content"] for m in messages[1:-1]] == [f"turn {i}" for i in range(3, 13)]
        final = messages[-1]
        assert final["role"] == "user"
        assert "[KB-1] Resetting Criteria" in final["content"]
        assert "[KB-2] Billing FAQ" in final["content"]
        assert final["content"].endswith("User Question: How do I reset?")

    def test_zero_history_window(self):
        generator = AnswerGenerator(FakeGenerationBackend(), history_window=0)

        assert len(generator.build_messages("q", BLOCKS, history(4))) == 2

    def test_metadata(self):
        answer = AnswerGenerator(FakeGenerationBackend()).generate("How do I reset?", BLOCKS)

        assert answer.metadata.prompt_tokens == 120
        assert answer.metadata.completion_tokens == 30
        assert answer.metadata.tokens_used == 150
        assert answer.metadata.model == "fake-llm"


class TestChatBackends(unittest.TestCase):

    def test_ollama_reply(self):
        client = MagicMock()
        client.chat.return_value = {"message": {"content": "Reset it [KB-1]."}, "prompt_eval_count": 40, "eval_count": 9}
        backend = OllamaChatBackend(model="llama3.1:8b", client=client)

        reply = backend.complete([{"role": "user", "content": "hi"}])

        assert reply.text == "Reset it [KB-1]."
        assert reply.prompt_tokens == 40
        assert reply.completion_tokens == 9
        assert client.chat.call_args[1]["model"] == "llama3.1:8b"

    def test_ollama_errors_wrapped(self):
        client = MagicMock()
        backend = OllamaChatBackend(client=client)

        client.chat.side_effect = ollama.ResponseError("model not found", 404)
        with self.assertRaises(GenerationServiceError):
            backend.complete([])

        client.chat.side_effect = httpx.ReadTimeout("timed out")
        with self.assertRaises(GenerationServiceError):
            backend.complete([])

    def test_openai_reply_and_errors(self):
        client = MagicMock()
        client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Done [KB-2]."))],
            usage=SimpleNamespace(prompt_tokens=50, completion_tokens=5),
            model="gpt-4o-mini",
        )
        backend = OpenAIChatBackend(client=client)

        reply = backend.complete([{"role": "user", "content": "hi"}])
        assert reply.text == "Done [KB-2]."
        assert reply.prompt_tokens == 50

        client.chat.completions.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )
        with self.assertRaises(GenerationServiceError):
            backend.complete([])
