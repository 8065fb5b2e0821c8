"""
LLM-based generation for the support portal chat engine.

Takes assembled context blocks and generates a grounded answer with [KB-n]
citations, mapped back to the articles that informed it.
"""
from dataclasses import dataclass
from typing import List, Optional
import time

import httpx
import ollama
import openai
from openai import OpenAI

from helpdesk.config import DEFAULT_HISTORY_WINDOW, Settings
from helpdesk.errors import GenerationServiceError
from helpdesk.logging_config import get_logger
from helpdesk.models import ContextBlock, GeneratedAnswer, GenerationMetadata, Message, MessageRole
from helpdesk.rag.response_processing import cited_blocks, render_for_display

logger = get_logger(__name__)


SYSTEM_PROMPT = """
<Task Context>
This is the generation step of a retrieval-augmented generation (RAG) workflow that powers the support portal assistant.
Users are customers asking how to use the product, troubleshoot problems, or find account and billing information.
</Task Context>

<Role Context>
You are a friendly, precise support agent.
Your role is to answer the user's question using only the knowledge-base articles provided in <Knowledge Base>.
</Role Context>

<Constraints>
Your answer must be based exclusively on the content provided in <Knowledge Base>.
If the articles do not answer the question, say so plainly and suggest contacting the support team.
Respond concisely. Use numbered steps for procedures.
Do not add a references or sources section; sources are shown to the user separately.
CRITICAL: You MUST cite articles using their EXACT [KB-n] tags from <Knowledge Base> inline in your answer text.
</Constraints>

<Correct Examples>
"Open Settings > Evaluation and choose Reset criteria [KB-1]. Resetting does not affect past results [KB-2]."
</Correct Examples>
"""

NO_CONTEXT_REPLY = (
    "I couldn't find relevant information in our knowledge base to answer that. "
    "Could you try rephrasing your question, or contact our support team for further help?"
)


@dataclass
class BackendReply:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: Optional[str] = None


class GenerationBackend:
    """One request/response call to a chat model."""

    model: str

    def complete(self, messages: List[dict]) -> BackendReply:
        raise NotImplementedError


class OllamaChatBackend(GenerationBackend):
    """Local generation through Ollama's chat API."""

    def __init__(
            self,
            base_url: str = "http://localhost:11434",
            model: str = "llama3.1:8b",
            timeout: float = 120.0,
            temperature: float = 0.7,
            max_tokens: int = 1000,
            client: Optional[ollama.Client] = None
            ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client or ollama.Client(host=base_url, timeout=timeout)
        logger.info(f"Initialized OllamaChatBackend with model: {model} at {base_url}")

    def complete(self, messages: List[dict]) -> BackendReply:
        try:
            response = self.client.chat(
                model=self.model,
                messages=messages,
                options={"temperature": self.temperature, "num_predict": self.max_tokens},
                keep_alive=-1
            )
            return BackendReply(
                text=response["message"]["content"],
                prompt_tokens=response.get("prompt_eval_count") or 0,
                completion_tokens=response.get("eval_count") or 0,
                model=self.model,
            )
        except ollama.ResponseError as e:
            logger.error(f"Ollama returned an error: {e}")
            raise GenerationServiceError(f"Generation backend error: {e}", details={"status": e.status_code}) from e
        except (httpx.HTTPError, ConnectionError) as e:
            logger.error(f"Could not complete Ollama chat request: {e}")
            raise GenerationServiceError(f"Generation backend unavailable: {e}") from e
        except (KeyError, TypeError) as e:
            logger.error(f"Malformed Ollama chat response: {e}", exc_info=True)
            raise GenerationServiceError(f"Malformed generation response: {e}") from e


class OpenAIChatBackend(GenerationBackend):
    """Hosted generation through OpenAI chat completions."""

    def __init__(
            self,
            api_key: Optional[str] = None,
            model: str = "gpt-4o-mini",
            timeout: float = 120.0,
            temperature: float = 0.7,
            max_tokens: int = 1000,
            client: Optional[OpenAI] = None
            ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        # Generation is never retried automatically (paid, non-idempotent)
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        logger.info(f"Initialized OpenAIChatBackend with model: {model}")

    def complete(self, messages: List[dict]) -> BackendReply:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens
            )
            usage = response.usage
            return BackendReply(
                text=response.choices[0].message.content or "",
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
                model=response.model or self.model,
            )
        except openai.OpenAIError as e:
            logger.error(f"OpenAI chat completion failed: {e}", exc_info=True)
            raise GenerationServiceError(f"Generation backend error: {e}") from e
        except (IndexError, AttributeError) as e:
            logger.error(f"Malformed OpenAI chat response: {e}", exc_info=True)
            raise GenerationServiceError(f"Malformed generation response: {e}") from e


class AnswerGenerator:
    """
    Builds the prompt, calls the backend once, and attributes sources.

    Citations [KB-n] in the reply are mapped back to context blocks. If the
    reply cites nothing, every block is reported as a source.
    """

    def __init__(self, backend: GenerationBackend, history_window: int = DEFAULT_HISTORY_WINDOW):
        self.backend = backend
        self.history_window = history_window

    def build_messages(
            self,
            question: str,
            blocks: List[ContextBlock],
            history: Optional[List[Message]] = None
            ) -> List[dict]:
        """System prompt, recent history, then context and question as the final user turn."""
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]

        for message in self.history_slice(history or []):
            messages.append(message.to_history_entry())

        current_message = (
            f"<Knowledge Base>\nBelow are the {len(blocks)} most relevant knowledge-base articles for the "
            f"user's question. Each article starts with a unique [KB-n] tag.\n"
        )
        for block in blocks:
            current_message += f"[{block.tag}] {block.text}\n\n"
        current_message += f"</Knowledge Base>\nUser Question: {question}"

        messages.append({"role": "user", "content": current_message})
        return messages

    def history_slice(self, history: List[Message]) -> List[Message]:
        """The last history_window user/assistant messages, oldest first."""
        if self.history_window <= 0:
            return []
        turns = [m for m in history if m.role in (MessageRole.USER.value, MessageRole.ASSISTANT.value)]
        return turns[-self.history_window:]

    def generate(
            self,
            question: str,
            blocks: List[ContextBlock],
            history: Optional[List[Message]] = None
            ) -> GeneratedAnswer:
        """
        Generate an answer grounded in blocks.

        Empty context gets a fixed reply without calling the backend.

        Raises:
            GenerationServiceError: backend failed or returned nothing (not retried)
        """
        if not blocks:
            logger.info("No context blocks, returning no-information reply")
            return GeneratedAnswer(answer=NO_CONTEXT_REPLY, sources=[], metadata=GenerationMetadata())

        messages = self.build_messages(question, blocks, history)
        logger.debug(f"Messages:\n{messages}\n")

        llm_start = time.time()
        reply = self.backend.complete(messages)
        llm_time = (time.time() - llm_start) * 1000
        logger.info(f"LLM generation time: {llm_time:.0f}ms")

        if not reply.text or not reply.text.strip():
            raise GenerationServiceError("Generation backend returned an empty answer")

        source_blocks = cited_blocks(reply.text, blocks)
        answer = render_for_display(reply.text, source_blocks)

        metadata = GenerationMetadata(
            tokens_used=reply.prompt_tokens + reply.completion_tokens,
            prompt_tokens=reply.prompt_tokens,
            completion_tokens=reply.completion_tokens,
            processing_time_ms=round(llm_time, 1),
            model=reply.model,
        )
        return GeneratedAnswer(
            answer=answer,
            sources=[block.to_source() for block in source_blocks],
            metadata=metadata,
        )


def build_generation_backend(settings: Settings) -> GenerationBackend:
    """Construct the configured generation backend (once, at process start)."""
    if settings.llm_backend == "ollama":
        return OllamaChatBackend(
            base_url=settings.ollama_base_url,
            model=settings.llm_model,
            timeout=settings.generation_timeout_seconds,
            temperature=settings.generation_temperature,
            max_tokens=settings.generation_max_tokens,
        )
    if settings.llm_backend == "openai":
        return OpenAIChatBackend(
            api_key=settings.openai_api_key,
            model=settings.llm_model,
            timeout=settings.generation_timeout_seconds,
            temperature=settings.generation_temperature,
            max_tokens=settings.generation_max_tokens,
        )
    raise ValueError(f"Unknown LLM_BACKEND: {settings.llm_backend}")
