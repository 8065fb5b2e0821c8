"""
Tests for the embedding backends (HTTP and SDK calls are mocked).
"""
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import openai
import requests

from helpdesk.errors import EmbeddingDimensionError, EmbeddingServiceError
from helpdesk.ingestion.embeddings import OllamaEmbeddingService, OpenAIEmbeddingService


def ok_response(vector):
    response = MagicMock()
    response.json.return_value = {"embedding": vector}
    response.raise_for_status.return_value = None
    return response


def http_error_response(status):
    response = MagicMock()
    response.raise_for_status.side_effect = requests.exceptions.HTTPError(
        response=MagicMock(status_code=status, text="upstream error")
    )
    return response


class TestOllamaEmbeddingService(unittest.TestCase):

    def setUp(self):
        self.service = OllamaEmbeddingService(base_url="http://ollama:11434/", verify_connection=False)

    @patch("helpdesk.ingestion.embeddings.requests.post")
    def test_embed_returns_floats_and_normalizes_newlines(self, mock_post):
        """Test newlines become spaces before the text is sent."""
        mock_post.return_value = ok_response([1, 2.5, -3])

        vector = self.service.embed("Resetting Criteria\nHow to reset\r\nBody")

        assert vector == [1.0, 2.5, -3.0]
        url = mock_post.call_args[0][0]
        payload = mock_post.call_args[1]["json"]
        assert url == "http://ollama:11434/api/embeddings"
        assert payload == {"model": "nomic-embed-text", "prompt": "Resetting Criteria How to reset Body"}
        assert mock_post.call_args[1]["timeout"] == 30.0

    @patch("helpdesk.ingestion.embeddings.requests.post")
    def test_empty_text_rejected_without_call(self, mock_post):
        with self.assertRaises(EmbeddingServiceError) as ctx:
            self.service.embed("   \n ")

        assert ctx.exception.retryable is False
        mock_post.assert_not_called()

    @patch("helpdesk.ingestion.embeddings.requests.post")
    def test_oversized_text_rejected(self, mock_post):
        service = OllamaEmbeddingService(max_chars=10, verify_connection=False)

        with self.assertRaises(EmbeddingServiceError) as ctx:
            service.embed("this text is longer than ten characters")

        assert ctx.exception.retryable is False
        mock_post.assert_not_called()

    @patch("helpdesk.ingestion.embeddings.requests.post")
    def test_timeout_is_retryable(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout("read timed out")

        with self.assertRaises(EmbeddingServiceError) as ctx:
            self.service.embed("query")

        assert ctx.exception.retryable is True

    @patch("helpdesk.ingestion.embeddings.requests.post")
    def test_server_error_retryable_client_error_not(self, mock_post):
        mock_post.return_value = http_error_response(503)
        with self.assertRaises(EmbeddingServiceError) as ctx:
            self.service.embed("query")
        assert ctx.exception.retryable is True

        mock_post.return_value = http_error_response(400)
        with self.assertRaises(EmbeddingServiceError) as ctx:
            self.service.embed("query")
        assert ctx.exception.retryable is False
        assert ctx.exception.details == {"status": 400}

    @patch("helpdesk.ingestion.embeddings.requests.post")
    def test_malformed_payload(self, mock_post):
        response = ok_response(None)
        response.json.return_value = {"unexpected": True}
        mock_post.return_value = response

        with self.assertRaises(EmbeddingServiceError) as ctx:
            self.service.embed("query")

        assert ctx.exception.retryable is False

    @patch("helpdesk.ingestion.embeddings.requests.post")
    def test_dimension_checked_when_configured(self, mock_post):
        service = OllamaEmbeddingService(dimension=3, verify_connection=False)
        mock_post.return_value = ok_response([0.1, 0.2])

        with self.assertRaises(EmbeddingDimensionError) as ctx:
            service.embed("query")

        assert ctx.exception.expected == 3
        assert ctx.exception.actual == 2

    @patch("helpdesk.ingestion.embeddings.requests.get")
    def test_unreachable_server_only_warns_at_init(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        with self.assertLogs("helpdesk.ingestion.embeddings", level="WARNING"):
            OllamaEmbeddingService(base_url="http://nowhere:11434")


class TestOpenAIEmbeddingService(unittest.TestCase):

    def test_embed_uses_client(self):
        client = MagicMock()
        client.embeddings.create.return_value = SimpleNamespace(data=[SimpleNamespace(embedding=[0.5, 0.25])])
        service = OpenAIEmbeddingService(client=client)

        assert service.embed("Billing\nFAQ") == [0.5, 0.25]
        kwargs = client.embeddings.create.call_args[1]
        assert kwargs["model"] == "text-embedding-3-small"
        assert kwargs["input"] == "Billing FAQ"

    def test_connection_error_is_retryable(self):
        client = MagicMock()
        client.embeddings.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/embeddings")
        )
        service = OpenAIEmbeddingService(client=client)

        with self.assertRaises(EmbeddingServiceError) as ctx:
            service.embed("query")

        assert ctx.exception.retryable is True
