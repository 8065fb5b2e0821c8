"""
Chat orchestration: one chat turn from request to persisted answer.

    NEW_OR_RESUME_CONVERSATION -> RETRIEVE -> ASSEMBLE -> GENERATE -> PERSIST -> RESPOND

Input is validated before any state runs, so a rejected request persists
nothing. The user message is persisted before retrieval; a failure in a later
state leaves it in place without a paired assistant reply, and retries reuse
the same conversation id.
"""
from enum import Enum
from typing import Callable, List, Optional
import logging
import time

from helpdesk.errors import HelpdeskError, RetrievalUnavailable, ValidationError
from helpdesk.logging_config import METRICS_LOGGER_NAME, get_logger
from helpdesk.models import ArticleMatch, ChatInput, ChatResult, Conversation, MessageRole
from helpdesk.rag.context_assembler import ContextAssembler
from helpdesk.rag.conversation_store import DEFAULT_SESSION_ID, ConversationStore
from helpdesk.rag.feedback import FeedbackService, HelpfulnessResult
from helpdesk.rag.generation import AnswerGenerator
from helpdesk.rag.response_processing import format_source_links
from helpdesk.retrieval.retriever import Retriever
from helpdesk.utils import derive_conversation_title

logger = get_logger(__name__)
metrics_logger = logging.getLogger(METRICS_LOGGER_NAME)

MAX_MESSAGE_LENGTH = 4000

METADATA_KEYS = ("userAgent", "ipAddress", "referrer", "path")


class ChatState(str, Enum):
    NEW_OR_RESUME_CONVERSATION = "new_or_resume_conversation"
    RETRIEVE = "retrieve"
    ASSEMBLE = "assemble"
    GENERATE = "generate"
    PERSIST = "persist"
    RESPOND = "respond"


def _preview(text: str, length: int = 80) -> str:
    text = " ".join(text.split())
    return text if len(text) <= length else text[:length] + "..."


class ChatOrchestrator:
    """
    Drives the chat state machine over injected components.

    Retrieval failures follow retrieval_failure_policy: "degrade" answers
    from an empty context, "reject" fails the request. Generation failures
    always fail the request. Nothing is rolled back.
    """

    def __init__(
            self,
            store: ConversationStore,
            retriever: Retriever,
            assembler: ContextAssembler,
            generator: AnswerGenerator,
            feedback: Optional[FeedbackService] = None,
            top_k: int = 5,
            min_score: float = 0.2,
            retrieval_failure_policy: str = "degrade",
            idle_close_seconds: Optional[int] = None,
            append_source_links: bool = False,
            clock: Callable[[], float] = time.monotonic
            ):
        self.store = store
        self.retriever = retriever
        self.assembler = assembler
        self.generator = generator
        self.feedback = feedback
        self.top_k = top_k
        self.min_score = min_score
        self.retrieval_failure_policy = retrieval_failure_policy
        self.idle_close_seconds = idle_close_seconds
        self.append_source_links = append_source_links
        self._clock = clock
        self._last_idle_sweep: Optional[float] = None

    def validate(self, chat_input: ChatInput) -> str:
        """Return the normalized message or raise ValidationError."""
        message = chat_input.message
        if message is None or not isinstance(message, str) or not message.strip():
            raise ValidationError("Message is required")
        message = message.strip()
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message is too long (max {MAX_MESSAGE_LENGTH} characters)")
        return message

    def handle_chat(self, chat_input: ChatInput) -> ChatResult:
        """
        Run one chat turn.

        Raises:
            ValidationError: empty or oversized message (nothing persisted)
            ConversationNotFound: unknown or foreign conversation id
            RetrievalUnavailable: retrieval failed and the policy is "reject"
            GenerationServiceError: the generation backend failed
        """
        message = self.validate(chat_input)
        total_start = time.time()
        state = ChatState.NEW_OR_RESUME_CONVERSATION
        conversation_id = chat_input.conversation_id
        user_message_id = None

        try:
            self._close_idle()
            conversation = self._resume_or_create(chat_input, message)
            conversation_id = conversation.conversation_id
            history = self.store.recent_messages(conversation_id, self.generator.history_window)
            user_message = self.store.append_message(conversation_id, MessageRole.USER.value, message)
            user_message_id = user_message.message_id

            state = ChatState.RETRIEVE
            retrieval_start = time.time()
            retrieved = self._retrieve(message, conversation_id)
            retrieval_time = (time.time() - retrieval_start) * 1000

            state = ChatState.ASSEMBLE
            blocks = self.assembler.assemble(retrieved, query=message)

            state = ChatState.GENERATE
            generation_start = time.time()
            generated = self.generator.generate(message, blocks, history)
            generation_time = (time.time() - generation_start) * 1000

            state = ChatState.PERSIST
            answer = generated.answer
            if self.append_source_links and generated.sources:
                answer += format_source_links(generated.sources)
            assistant_message = self.store.append_message(
                conversation_id,
                MessageRole.ASSISTANT.value,
                answer,
                sources=generated.sources,
                metadata=generated.metadata,
            )

            state = ChatState.RESPOND
        except HelpdeskError as e:
            logger.error(
                f"Chat turn failed in state {state.value}: {e.message} "
                f"(conversation={conversation_id}, user_message={user_message_id}, query={_preview(message)!r})"
            )
            raise

        total_time = (time.time() - total_start) * 1000
        logger.info(f"Chat turn complete in {total_time:.0f}ms (conversation={conversation_id})")
        metrics_logger.info(
            f"conversation_id={conversation_id} | message_id={assistant_message.message_id} | "
            f"retrieved={len(retrieved)} | blocks={len(blocks)} | sources={len(generated.sources)} | "
            f"retrieval_ms={retrieval_time:.0f} | generation_ms={generation_time:.0f} | total_ms={total_time:.0f}"
        )

        return ChatResult(
            answer=answer,
            sources=generated.sources,
            conversation_id=conversation_id,
            message_id=assistant_message.message_id,
            user_message_id=user_message_id,
        )

    def record_feedback(
            self,
            item_id: str,
            is_helpful: bool,
            user_id: Optional[str] = None,
            session_id: Optional[str] = None,
            item_type: str = "article"
            ) -> HelpfulnessResult:
        """Helpfulness vote on an article or message. One counted vote per voter."""
        if self.feedback is None:
            raise RuntimeError("ChatOrchestrator was built without a FeedbackService")
        return self.feedback.record_helpfulness(item_id, item_type, is_helpful, user_id=user_id, session_id=session_id)

    def _resume_or_create(self, chat_input: ChatInput, message: str) -> Conversation:
        if chat_input.conversation_id:
            return self.store.resolve_conversation(
                chat_input.conversation_id,
                user_id=chat_input.user_id,
                session_id=chat_input.session_id,
            )

        metadata = {k: v for k, v in (chat_input.metadata or {}).items() if k in METADATA_KEYS and v is not None}
        return self.store.create_conversation(
            session_id=chat_input.session_id or DEFAULT_SESSION_ID,
            user_id=chat_input.user_id,
            title=derive_conversation_title(message),
            metadata=metadata,
        )

    def _retrieve(self, message: str, conversation_id: str) -> List[ArticleMatch]:
        try:
            return self.retriever.retrieve(message, top_k=self.top_k, min_score=self.min_score)
        except RetrievalUnavailable as e:
            if self.retrieval_failure_policy == "reject":
                raise
            logger.warning(
                f"Retrieval unavailable, answering without context "
                f"(conversation={conversation_id}, query={_preview(message)!r}): {e.message}"
            )
            return []

    def _close_idle(self) -> None:
        """Sweep idle conversations at most once per tenth of the idle period."""
        if not self.idle_close_seconds:
            return
        now = self._clock()
        if self._last_idle_sweep is not None and now - self._last_idle_sweep < self.idle_close_seconds / 10:
            return
        self._last_idle_sweep = now
        self.store.close_idle_conversations(self.idle_close_seconds)
