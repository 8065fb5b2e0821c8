"""
Embedding generation using Ollama (primary) or OpenAI.

Every backend converts one text into one fixed-length vector. The dimension
is pinned by the model; when EMBEDDING_DIM is configured, every response is
checked against it.
"""
from typing import List, Optional
import time

import openai
import requests
from openai import OpenAI

from helpdesk.config import Settings
from helpdesk.errors import EmbeddingDimensionError, EmbeddingServiceError
from helpdesk.logging_config import get_logger

logger = get_logger(__name__)


class EmbeddingService:
    """
    Shared behaviour of the embedding backends.

    Subclasses only implement _request_embedding(); input normalization,
    validation, and dimension checks happen here. No caching at this layer.
    """

    def __init__(
            self,
            model: str,
            dimension: Optional[int] = None,
            max_chars: int = 24000,
            timeout: float = 30.0
            ):
        self.model = model
        self.dimension = dimension
        self.max_chars = max_chars
        self.timeout = timeout

    @staticmethod
    def prepare_text(text: str) -> str:
        """Newlines become spaces before the text is sent to the backend."""
        return text.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")

    def embed(self, text: str) -> List[float]:
        """
        Generate the embedding for a single text.

        Raises:
            EmbeddingServiceError: empty or oversized input (not retryable),
                or backend failure (retryable when transient)
        """
        if text is None or not text.strip():
            raise EmbeddingServiceError("Cannot embed empty text", retryable=False)

        prepared = self.prepare_text(text)
        if len(prepared) > self.max_chars:
            raise EmbeddingServiceError(
                f"Text too long to embed ({len(prepared)} > {self.max_chars} chars)",
                retryable=False,
                details={"length": len(prepared), "max_chars": self.max_chars},
            )

        embed_start = time.time()
        vector = self._request_embedding(prepared)
        embed_time = (time.time() - embed_start) * 1000

        if not vector:
            raise EmbeddingServiceError(f"Embedding backend returned an empty vector for model {self.model}")
        if self.dimension is not None and len(vector) != self.dimension:
            raise EmbeddingDimensionError(self.dimension, len(vector))

        logger.debug(f"Embedded {len(prepared)} chars with {self.model} in {embed_time:.0f}ms")
        return [float(x) for x in vector]

    def _request_embedding(self, text: str) -> List[float]:
        raise NotImplementedError


class OllamaEmbeddingService(EmbeddingService):
    """Self-hosted embeddings through the Ollama HTTP API (nomic-embed-text, 768d)."""

    def __init__(
            self,
            base_url: str = "http://localhost:11434",
            model: str = "nomic-embed-text",
            dimension: Optional[int] = None,
            max_chars: int = 24000,
            timeout: float = 30.0,
            verify_connection: bool = True
            ):
        super().__init__(model=model, dimension=dimension, max_chars=max_chars, timeout=timeout)
        self.base_url = base_url.rstrip("/")

        # Verify Ollama is accessible
        if verify_connection:
            try:
                response = requests.get(f"{self.base_url}/api/tags", timeout=5)
                response.raise_for_status()
                logger.info(f"Initialized OllamaEmbeddingService with model: {model} at {self.base_url}")
            except requests.exceptions.RequestException as e:
                logger.warning(f"Could not connect to Ollama at {self.base_url}: {e}")
                logger.warning("Embeddings will fail until Ollama is accessible")

    def _request_embedding(self, text: str) -> List[float]:
        try:
            response = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()["embedding"]

        except requests.exceptions.Timeout as e:
            logger.error(f"Embedding request timed out after {self.timeout}s: {e}")
            raise EmbeddingServiceError(f"Embedding request timed out: {e}", retryable=True) from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Could not reach Ollama at {self.base_url}: {e}")
            raise EmbeddingServiceError(f"Embedding backend unreachable: {e}", retryable=True) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            body = e.response.text[:1000] if e.response is not None else ""
            logger.error(f"Embedding HTTP error: {e}")
            logger.error(f"Response body: {body}")  # First 1000 chars
            retryable = status is None or status >= 500 or status == 429
            raise EmbeddingServiceError(
                f"Embedding backend returned HTTP {status}", retryable=retryable, details={"status": status}
            ) from e
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed embedding response: {e}", exc_info=True)
            raise EmbeddingServiceError(f"Malformed embedding response: {e}") from e


class OpenAIEmbeddingService(EmbeddingService):
    """Hosted embeddings through the OpenAI API (text-embedding-3-small, 1536d)."""

    def __init__(
            self,
            api_key: Optional[str] = None,
            model: str = "text-embedding-3-small",
            dimension: Optional[int] = None,
            max_chars: int = 24000,
            timeout: float = 30.0,
            client: Optional[OpenAI] = None
            ):
        super().__init__(model=model, dimension=dimension, max_chars=max_chars, timeout=timeout)
        # Retries are the retriever's decision, not the client's
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        logger.info(f"Initialized OpenAIEmbeddingService with model: {model}")

    def _request_embedding(self, text: str) -> List[float]:
        try:
            response = self.client.embeddings.create(
                model=self.model,
                input=text,
                encoding_format="float"
            )
            return response.data[0].embedding

        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            logger.error(f"OpenAI embedding request failed to complete: {e}")
            raise EmbeddingServiceError(f"Embedding backend unreachable: {e}", retryable=True) from e
        except (openai.RateLimitError, openai.InternalServerError) as e:
            logger.error(f"OpenAI embedding transient error: {e}")
            raise EmbeddingServiceError(f"Embedding backend unavailable: {e}", retryable=True) from e
        except openai.OpenAIError as e:
            logger.error(f"OpenAI embedding error: {e}", exc_info=True)
            raise EmbeddingServiceError(f"Embedding backend error: {e}") from e
        except (IndexError, AttributeError) as e:
            logger.error(f"Malformed embedding response: {e}", exc_info=True)
            raise EmbeddingServiceError(f"Malformed embedding response: {e}") from e


def build_embedding_service(settings: Settings) -> EmbeddingService:
    """Construct the configured embedding backend (once, at process start)."""
    if settings.embedding_backend == "ollama":
        return OllamaEmbeddingService(
            base_url=settings.ollama_base_url,
            model=settings.embedding_model,
            dimension=settings.embedding_dim,
            max_chars=settings.embedding_max_chars,
            timeout=settings.embedding_timeout_seconds,
        )
    if settings.embedding_backend == "openai":
        return OpenAIEmbeddingService(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimension=settings.embedding_dim,
            max_chars=settings.embedding_max_chars,
            timeout=settings.embedding_timeout_seconds,
        )
    raise ValueError(f"Unknown EMBEDDING_BACKEND: {settings.embedding_backend}")
