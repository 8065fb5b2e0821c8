from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Dict, List, Literal, Optional

from helpdesk import __version__
from helpdesk.config import Settings, load_settings
from helpdesk.errors import ArticleNotFound, EmbeddingServiceError, HelpdeskError, ValidationError
from helpdesk.logging_config import get_logger, setup_logging
from helpdesk.models import ChatInput, Conversation, KnowledgeArticle, Message, utcnow
from helpdesk.retrieval.article_index import SearchFilter
from helpdesk.services import Services, build_services

logger = get_logger(__name__)


class CamelModel(BaseModel):
    """Snake-case fields in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequest(CamelModel):
    message: Optional[str] = None  # Checked by the orchestrator so a missing message is a 400
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Optional[Dict[str, Optional[str]]] = None

class SourceResponse(CamelModel):
    article_id: str
    title: str
    score: float
    slug: Optional[str] = None

class ChatResponse(CamelModel):
    success: bool = True
    answer: str
    sources: List[SourceResponse]
    conversation_id: str
    message_id: str

class MessageResponse(CamelModel):
    message_id: str
    sequence: int
    role: str
    content: str
    sources: List[SourceResponse]
    metadata: Optional[dict] = None
    helpful: Optional[bool] = None
    created_at: datetime

class ConversationSummaryResponse(CamelModel):
    conversation_id: str
    title: str
    status: str
    session_id: str
    user_id: Optional[str] = None
    message_count: int
    rating_score: Optional[int] = None
    created_at: datetime
    last_message_at: datetime

class ConversationListResponse(CamelModel):
    success: bool = True
    conversations: List[ConversationSummaryResponse]
    total: int
    page: int
    limit: int

class ConversationDetailResponse(ConversationSummaryResponse):
    success: bool = True
    metadata: Dict[str, Optional[str]] = {}
    rating_feedback: Optional[str] = None
    messages: List[MessageResponse]

class ConversationUpdateRequest(CamelModel):
    title: Optional[str] = None
    status: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None

class RatingRequest(CamelModel):
    score: int
    feedback: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None

class HelpfulnessRequest(CamelModel):
    is_helpful: bool
    user_id: Optional[str] = None
    session_id: Optional[str] = None

class DetailFeedbackRequest(CamelModel):
    feedback_text: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None

class FeedbackRequest(CamelModel):
    user_id: str
    item_id: str
    item_type: str
    rating: Optional[int] = None
    comments: Optional[str] = None
    helpful: Optional[bool] = None

class ArticlePayload(CamelModel):
    title: str
    short_description: str = ""
    content: str
    category_id: Optional[str] = None
    tags: List[str] = []
    status: Literal["draft", "published", "archived"] = "draft"
    slug: Optional[str] = None
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def source_response(source) -> SourceResponse:
    return SourceResponse(article_id=source.article_id, title=source.title, score=source.score, slug=source.slug)


def message_response(message: Message) -> MessageResponse:
    return MessageResponse(
        message_id=message.message_id,
        sequence=message.sequence,
        role=message.role,
        content=message.content,
        sources=[source_response(s) for s in message.sources],
        metadata=message.metadata.to_dict() if message.metadata else None,
        helpful=message.helpful,
        created_at=message.created_at,
    )


def conversation_summary(conversation: Conversation) -> ConversationSummaryResponse:
    return ConversationSummaryResponse(
        conversation_id=conversation.conversation_id,
        title=conversation.title,
        status=conversation.status,
        session_id=conversation.session_id,
        user_id=conversation.user_id,
        message_count=conversation.message_count,
        rating_score=conversation.rating_score,
        created_at=conversation.created_at,
        last_message_at=conversation.last_message_at,
    )


def article_result(match) -> dict:
    article = match.article
    return {
        "articleId": article.article_id,
        "title": article.title,
        "slug": article.slug,
        "shortDescription": article.short_description,
        "categoryId": article.category_id,
        "score": match.score,
    }


def get_services(request: Request) -> Services:
    return request.app.state.services


def index_article_task(services: Services, article: KnowledgeArticle):
    """Background embedding for PUT /articles/{id}/index."""
    try:
        embedded = services.index.upsert(article)
        logger.info(f"Indexed article {article.article_id} (embedded={embedded})")
    except EmbeddingServiceError as e:
        logger.error(f"Background indexing of article {article.article_id} failed: {e.message}", exc_info=True)


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API. Without injected services they are built from the
    environment on startup.
    """
    settings = settings or (services.settings if services is not None else load_settings())

    app = FastAPI(title="Support Portal Chat API", version=__version__)
    app.state.services = services

    # Configure CORS to allow requests from the support portal frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def startup_event():
        if app.state.services is None:
            setup_logging(
                level=settings.log_level,
                log_file=settings.log_file,
                metrics_file=settings.metrics_log_file
            )
            app.state.services = build_services(settings)
        logger.info("Starting Support Portal Chat API")

    @app.on_event("shutdown")
    def shutdown_event():
        logger.info("Shutting down Support Portal Chat API")

    @app.exception_handler(HelpdeskError)
    def handle_helpdesk_error(request: Request, exc: HelpdeskError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message} {exc.details}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})

    @app.exception_handler(RequestValidationError)
    def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request: {field} {first.get('msg', '')}".strip()
        return JSONResponse(status_code=400, content={"success": False, "message": message})

    @app.exception_handler(Exception)
    def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})

    @app.get("/health")
    def health_check(services: Services = Depends(get_services)):
        """Health check endpoint"""
        return {"status": "healthy", "message": "Support Portal Chat API is running", "index": services.index.stats()}

    @app.post("/chat", response_model=ChatResponse)
    def send_message(request: ChatRequest, http_request: Request, services: Services = Depends(get_services)):
        """Send a message and get an answer grounded in knowledge-base articles"""
        if request.message:
            logger.info(f"Received question: {request.message[:100]}...")

        metadata = {k: v for k, v in (request.metadata or {}).items() if v is not None}
        metadata.setdefault("userAgent", http_request.headers.get("user-agent"))
        if http_request.client is not None:
            metadata.setdefault("ipAddress", http_request.client.host)

        result = services.orchestrator.handle_chat(ChatInput(
            message=request.message,
            conversation_id=request.conversation_id,
            session_id=request.session_id,
            user_id=request.user_id,
            metadata=metadata,
        ))
        return ChatResponse(
            answer=result.answer,
            sources=[source_response(s) for s in result.sources],
            conversation_id=result.conversation_id,
            message_id=result.message_id,
        )

    @app.get("/chat/conversations", response_model=ConversationListResponse)
    def list_conversations(
            user_id: Optional[str] = Query(None, alias="userId"),
            session_id: Optional[str] = Query(None, alias="sessionId"),
            status: Optional[str] = None,
            search: Optional[str] = None,
            page: int = 1,
            limit: int = 20,
            services: Services = Depends(get_services)
            ):
        conversations, total = services.store.list_conversations(
            user_id=user_id, session_id=session_id, status=status, search=search, page=page, limit=limit
        )
        return ConversationListResponse(
            conversations=[conversation_summary(c) for c in conversations],
            total=total,
            page=page,
            limit=limit,
        )

    @app.get("/chat/conversations/{conversation_id}", response_model=ConversationDetailResponse)
    def get_conversation_detail(
            conversation_id: str,
            user_id: Optional[str] = Query(None, alias="userId"),
            session_id: Optional[str] = Query(None, alias="sessionId"),
            services: Services = Depends(get_services)
            ):
        """Get a conversation with its messages in order"""
        conversation = services.store.resolve_conversation(conversation_id, user_id=user_id, session_id=session_id)
        messages = services.store.list_messages(conversation_id)
        return ConversationDetailResponse(
            **conversation_summary(conversation).model_dump(),
            metadata=conversation.metadata,
            rating_feedback=conversation.rating_feedback,
            messages=[message_response(m) for m in messages],
        )

    @app.put("/chat/conversations/{conversation_id}", response_model=ConversationSummaryResponse)
    def update_conversation(
            conversation_id: str,
            request: ConversationUpdateRequest,
            services: Services = Depends(get_services)
            ):
        services.store.resolve_conversation(conversation_id, user_id=request.user_id, session_id=request.session_id)
        conversation = services.store.update_conversation(conversation_id, title=request.title, status=request.status)
        return conversation_summary(conversation)

    @app.post("/chat/conversations/{conversation_id}/rating")
    def rate_conversation(conversation_id: str, request: RatingRequest, services: Services = Depends(get_services)):
        services.store.resolve_conversation(conversation_id, user_id=request.user_id, session_id=request.session_id)
        conversation = services.store.rate_conversation(conversation_id, request.score, request.feedback)
        return {"success": True, "conversationId": conversation.conversation_id, "score": conversation.rating_score}

    @app.post("/chat/messages/{message_id}/feedback")
    def message_feedback(message_id: str, request: HelpfulnessRequest, services: Services = Depends(get_services)):
        result = services.orchestrator.record_feedback(
            message_id, request.is_helpful, user_id=request.user_id, session_id=request.session_id, item_type="message"
        )
        return {"success": True, "messageId": message_id, "helpful": request.is_helpful, "counted": result.changed}

    @app.post("/articles/{article_id}/feedback")
    def article_feedback(article_id: str, request: HelpfulnessRequest, services: Services = Depends(get_services)):
        """Was this article helpful? One counted vote per user (or anonymous session)"""
        result = services.orchestrator.record_feedback(
            article_id, request.is_helpful, user_id=request.user_id, session_id=request.session_id
        )
        return {
            "success": True,
            "articleId": article_id,
            "helpfulCount": result.helpful_count,
            "unhelpfulCount": result.unhelpful_count,
        }

    @app.post("/articles/{article_id}/feedback/detail")
    def article_detail_feedback(
            article_id: str,
            request: DetailFeedbackRequest,
            services: Services = Depends(get_services)
            ):
        services.feedback.log_detail_feedback(
            article_id, request.feedback_text, user_id=request.user_id, session_id=request.session_id
        )
        return {"success": True, "message": "Thank you for your feedback"}

    @app.post("/feedback")
    def submit_feedback(request: FeedbackRequest, services: Services = Depends(get_services)):
        feedback = services.feedback.submit_feedback(
            request.user_id,
            request.item_id,
            request.item_type,
            rating=request.rating,
            comments=request.comments,
            helpful=request.helpful,
        )
        return {
            "success": True,
            "feedback": {
                "feedbackId": feedback.feedback_id,
                "userId": feedback.user_id,
                "itemId": feedback.item_id,
                "itemType": feedback.item_type,
                "rating": feedback.rating,
                "comments": feedback.comments,
                "helpful": feedback.helpful,
            },
        }

    @app.put("/articles/{article_id}/index", status_code=202)
    def upsert_article_index(
            article_id: str,
            payload: ArticlePayload,
            background_tasks: BackgroundTasks,
            services: Services = Depends(get_services)
            ):
        """Store the article and (re)embed it in the background if its text changed"""
        article = services.articles.save(KnowledgeArticle(
            article_id=article_id,
            title=payload.title,
            short_description=payload.short_description,
            content=payload.content,
            category_id=payload.category_id,
            tags=set(payload.tags),
            status=payload.status,
            slug=payload.slug,
            published_at=payload.published_at,
            updated_at=payload.updated_at or utcnow(),
        ))
        background_tasks.add_task(index_article_task, services, article)
        return {"success": True, "articleId": article.article_id, "slug": article.slug, "queued": True}

    @app.delete("/articles/{article_id}/index")
    def remove_article_index(article_id: str, services: Services = Depends(get_services)):
        if not services.index.remove(article_id):
            raise ArticleNotFound(article_id)
        return {"success": True, "articleId": article_id}

    @app.post("/articles/{article_id}/embedding")
    def regenerate_embedding(article_id: str, services: Services = Depends(get_services)):
        """Re-embed one stored article now"""
        article = services.articles.require(article_id)
        services.index.upsert(article, force=True)
        return {"success": True, "articleId": article_id, "dimension": services.index.dimension}

    @app.post("/articles/reindex")
    def reindex_articles(services: Services = Depends(get_services)):
        """Regenerate embeddings for all published articles"""
        report = services.index.reindex(services.articles.list_articles(status="published"))
        return {
            "success": True,
            "embedded": report.embedded,
            "unchanged": report.unchanged,
            "failed": report.failed,
            "errors": report.errors,
        }

    @app.get("/articles/{article_id}/related")
    def related_articles(article_id: str, limit: int = 3, services: Services = Depends(get_services)):
        if services.index.get(article_id) is None:
            raise ArticleNotFound(article_id)
        matches = services.index.similar_articles(article_id, k=limit)
        return {"success": True, "articles": [article_result(m) for m in matches]}

    @app.get("/search")
    def search_articles(
            q: Optional[str] = None,
            limit: int = 10,
            category: Optional[str] = None,
            services: Services = Depends(get_services)
            ):
        """Semantic search over published articles"""
        if not q or not q.strip():
            raise ValidationError("Query parameter q is required")
        matches = services.retriever.retrieve(
            q.strip(),
            top_k=limit,
            min_score=services.settings.retrieval_min_score,
            filter=SearchFilter(category_id=category),
        )
        return {"success": True, "query": q.strip(), "articles": [article_result(m) for m in matches]}

    @app.get("/")
    def root():
        return {"message": "Welcome to the Support Portal Chat API", "docs": "/docs"}

    return app


app = create_app()
