"""
Process-wide wiring of the chat engine components.

Backends and stores are constructed once at startup and passed to the
components that use them; tests build the same graph with fakes injected.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from helpdesk.config import Settings
from helpdesk.db.database import create_db_engine, create_session_factory
from helpdesk.db.init_db import init_db
from helpdesk.db.repositories import ArticleRepository
from helpdesk.ingestion.embeddings import EmbeddingService, build_embedding_service
from helpdesk.logging_config import get_logger
from helpdesk.rag.context_assembler import ContextAssembler, TokenCounter, char_length
from helpdesk.rag.conversation_store import ConversationStore
from helpdesk.rag.feedback import FeedbackService
from helpdesk.rag.generation import AnswerGenerator, GenerationBackend, build_generation_backend
from helpdesk.rag.orchestrator import ChatOrchestrator
from helpdesk.retrieval.article_index import ArticleIndex
from helpdesk.retrieval.retriever import Retriever

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    articles: ArticleRepository
    embedder: EmbeddingService
    index: ArticleIndex
    retriever: Retriever
    assembler: ContextAssembler
    generator: AnswerGenerator
    store: ConversationStore
    feedback: FeedbackService
    orchestrator: ChatOrchestrator


def build_services(
        settings: Settings,
        embedder: Optional[EmbeddingService] = None,
        generation_backend: Optional[GenerationBackend] = None,
        engine: Optional[Engine] = None
        ) -> Services:
    """
    Build every component from settings.

    Creates missing tables and warms the article index from stored
    embeddings, so no article is re-embedded at startup.
    """
    engine = engine or create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    articles = ArticleRepository(session_factory)
    embedder = embedder or build_embedding_service(settings)
    generation_backend = generation_backend or build_generation_backend(settings)

    index = ArticleIndex(embedder, repository=articles)
    index.load(articles.list_articles())

    retriever = Retriever(
        embedder,
        index,
        max_attempts=settings.retrieval_max_attempts,
        backoff_seconds=settings.retrieval_backoff_seconds,
        keyword_fallback=settings.keyword_fallback,
    )
    length_fn = TokenCounter() if settings.context_budget_unit == "tokens" else char_length
    assembler = ContextAssembler(
        settings.context_budget,
        length_fn=length_fn,
        max_snippet_chars=settings.context_max_snippet_chars,
    )
    generator = AnswerGenerator(generation_backend, history_window=settings.history_window)
    store = ConversationStore(session_factory)
    feedback = FeedbackService(session_factory, articles)

    orchestrator = ChatOrchestrator(
        store,
        retriever,
        assembler,
        generator,
        feedback=feedback,
        top_k=settings.retrieval_top_k,
        min_score=settings.retrieval_min_score,
        retrieval_failure_policy=settings.retrieval_failure_policy,
        idle_close_seconds=settings.conversation_idle_close_seconds,
        append_source_links=settings.append_source_links,
    )

    logger.info(
        f"Services ready: embedding={settings.embedding_backend}/{settings.embedding_model}, "
        f"llm={settings.llm_backend}/{settings.llm_model}, index={index.stats()}"
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        articles=articles,
        embedder=embedder,
        index=index,
        retriever=retriever,
        assembler=assembler,
        generator=generator,
        store=store,
        feedback=feedback,
        orchestrator=orchestrator,
    )
