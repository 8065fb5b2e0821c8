"""
Conversation Store for the support portal chat engine.

Persists conversations and their ordered messages in SQL. Messages of one
conversation are appended strictly in sequence, even with concurrent writers.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
import threading
import uuid
import weakref

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from helpdesk.db.models import ConversationRecord, MessageRecord
from helpdesk.db.repositories import as_utc
from helpdesk.errors import ConversationNotFound, ValidationError
from helpdesk.logging_config import get_logger
from helpdesk.models import (
    Conversation, ConversationStatus, GenerationMetadata, Message, MessageRole, Source, utcnow,
)
from helpdesk.utils import touch_updated_at

logger = get_logger(__name__)

DEFAULT_SESSION_ID = "anonymous-session"
DEFAULT_TITLE = "New Conversation"


def record_to_conversation(record: ConversationRecord) -> Conversation:
    return Conversation(
        conversation_id=record.conversation_id,
        session_id=record.session_id,
        user_id=record.user_id,
        title=record.title,
        status=record.status,
        metadata=dict(record.client_metadata or {}),
        rating_score=record.rating_score,
        rating_feedback=record.rating_feedback,
        rated_at=as_utc(record.rated_at),
        message_count=record.message_count,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
        last_message_at=as_utc(record.last_message_at),
    )


def record_to_message(record: MessageRecord) -> Message:
    return Message(
        message_id=record.message_id,
        conversation_id=record.conversation_id,
        sequence=record.sequence,
        role=record.role,
        content=record.content,
        sources=[Source.from_dict(s) for s in (record.sources or [])],
        metadata=GenerationMetadata.from_dict(record.generation_metadata),
        helpful=record.helpful,
        created_at=as_utc(record.created_at),
    )


class ConversationStore:
    """
    SQL-backed conversation and message storage.

    Handles:
    - Conversation creation, lookup with ownership checks, listing
    - Ordered message appends (per-conversation sequence numbers)
    - Title/status updates, ratings, idle closing

    Appends to one conversation are serialized by an in-process lock, and
    across processes by the UNIQUE(conversation_id, sequence) constraint: an
    append that loses the race retries with the next sequence number.
    """

    def __init__(self, session_factory: sessionmaker, max_append_attempts: int = 3):
        self.session_factory = session_factory
        self.max_append_attempts = max_append_attempts
        # Entries vanish once no append holds the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def create_conversation(
            self,
            session_id: Optional[str] = None,
            user_id: Optional[str] = None,
            title: Optional[str] = None,
            metadata: Optional[Dict[str, str]] = None
            ) -> Conversation:
        """Create an active conversation and return it."""
        now = utcnow()
        record = ConversationRecord(
            conversation_id=str(uuid.uuid4()),
            user_id=user_id,
            session_id=session_id or DEFAULT_SESSION_ID,
            title=title or DEFAULT_TITLE,
            status=ConversationStatus.ACTIVE.value,
            client_metadata=dict(metadata or {}),
            message_count=0,
            created_at=now,
            updated_at=now,
            last_message_at=now,
        )
        with self.session_factory() as session:
            session.add(record)
            session.commit()

        logger.info(f"Created conversation {record.conversation_id} (user={user_id}, session={record.session_id})")
        return record_to_conversation(record)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self.session_factory() as session:
            record = session.get(ConversationRecord, conversation_id)
            return record_to_conversation(record) if record is not None else None

    def resolve_conversation(
            self,
            conversation_id: str,
            user_id: Optional[str] = None,
            session_id: Optional[str] = None
            ) -> Conversation:
        """
        Load a conversation the caller is allowed to see.

        A conversation owned by a user is visible to that user only. An
        anonymous conversation is visible to its session (or to any caller
        that does not name a session).

        Raises:
            ConversationNotFound: unknown id, or owned by someone else
        """
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)

        if conversation.user_id is not None:
            if user_id != conversation.user_id:
                logger.warning(f"Conversation {conversation_id} requested by foreign user {user_id}")
                raise ConversationNotFound(conversation_id)
        elif session_id is not None and session_id != conversation.session_id:
            logger.warning(f"Conversation {conversation_id} requested by foreign session {session_id}")
            raise ConversationNotFound(conversation_id)

        return conversation

    def append_message(
            self,
            conversation_id: str,
            role: str,
            content: str,
            sources: Optional[List[Source]] = None,
            metadata: Optional[GenerationMetadata] = None
            ) -> Message:
        """
        Append a message with the next sequence number.

        Also moves lastMessageAt to the message's createdAt in the same
        transaction. A user message reopens a closed conversation.

        Raises:
            ConversationNotFound: unknown conversation id
        """
        lock = self._lock_for(conversation_id)
        with lock:
            for attempt in range(1, self.max_append_attempts + 1):
                try:
                    return self._insert_message(conversation_id, role, content, sources or [], metadata)
                except IntegrityError:
                    if attempt == self.max_append_attempts:
                        logger.error(f"Could not append to conversation {conversation_id} after {attempt} attempts")
                        raise
                    logger.warning(f"Sequence conflict on conversation {conversation_id}, retrying (attempt {attempt})")

    def _insert_message(
            self,
            conversation_id: str,
            role: str,
            content: str,
            sources: List[Source],
            metadata: Optional[GenerationMetadata]
            ) -> Message:
        with self.session_factory() as session:
            stmt = select(ConversationRecord).where(ConversationRecord.conversation_id == conversation_id)
            if session.get_bind().dialect.name == "postgresql":
                stmt = stmt.with_for_update()
            conversation = session.execute(stmt).scalar_one_or_none()
            if conversation is None:
                raise ConversationNotFound(conversation_id)

            # createdAt never goes backwards along the sequence, even if the clock does
            created_at = max(utcnow(), as_utc(conversation.last_message_at))
            sequence = conversation.message_count + 1

            record = MessageRecord(
                message_id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                sequence=sequence,
                role=role,
                content=content,
                sources=[s.to_dict() for s in sources],
                generation_metadata=metadata.to_dict() if metadata is not None else None,
                created_at=created_at,
            )
            session.add(record)

            conversation.message_count = sequence
            conversation.last_message_at = created_at
            if role == MessageRole.USER.value and conversation.status == ConversationStatus.CLOSED.value:
                conversation.status = ConversationStatus.ACTIVE.value
                logger.info(f"Reopened closed conversation {conversation_id}")
            touch_updated_at(conversation, created_at)

            session.commit()

        logger.debug(f"Appended {role} message #{sequence} to conversation {conversation_id}")
        return record_to_message(record)

    def list_messages(self, conversation_id: str) -> List[Message]:
        """All messages of a conversation in sequence order."""
        stmt = (
            select(MessageRecord)
            .where(MessageRecord.conversation_id == conversation_id)
            .order_by(MessageRecord.sequence)
        )
        with self.session_factory() as session:
            return [record_to_message(r) for r in session.execute(stmt).scalars().all()]

    def recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        """The last `limit` messages, oldest first."""
        if limit <= 0:
            return []
        stmt = (
            select(MessageRecord)
            .where(MessageRecord.conversation_id == conversation_id)
            .order_by(MessageRecord.sequence.desc())
            .limit(limit)
        )
        with self.session_factory() as session:
            records = session.execute(stmt).scalars().all()
        return [record_to_message(r) for r in reversed(records)]

    def get_message(self, message_id: str) -> Optional[Message]:
        with self.session_factory() as session:
            record = session.get(MessageRecord, message_id)
            return record_to_message(record) if record is not None else None

    def list_conversations(
            self,
            user_id: Optional[str] = None,
            session_id: Optional[str] = None,
            status: Optional[str] = None,
            search: Optional[str] = None,
            page: int = 1,
            limit: int = 20
            ) -> Tuple[List[Conversation], int]:
        """
        Filtered page of conversations, most recently active first.

        Returns:
            (conversations on this page, total matching count)
        """
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        stmt = select(ConversationRecord)
        if user_id is not None:
            stmt = stmt.where(ConversationRecord.user_id == user_id)
        if session_id is not None:
            stmt = stmt.where(ConversationRecord.session_id == session_id)
        if status is not None:
            stmt = stmt.where(ConversationRecord.status == status)
        if search:
            stmt = stmt.where(ConversationRecord.title.ilike(f"%{search}%"))

        count_stmt = select(func.count()).select_from(stmt.subquery())
        page_stmt = (
            stmt.order_by(ConversationRecord.last_message_at.desc(), ConversationRecord.conversation_id)
            .offset((page - 1) * limit)
            .limit(limit)
        )

        with self.session_factory() as session:
            total = session.execute(count_stmt).scalar_one()
            records = session.execute(page_stmt).scalars().all()
        return [record_to_conversation(r) for r in records], total

    def update_conversation(
            self,
            conversation_id: str,
            title: Optional[str] = None,
            status: Optional[str] = None
            ) -> Conversation:
        """Change title and/or status."""
        if title is not None and not title.strip():
            raise ValidationError("Title cannot be empty")
        valid_statuses = [s.value for s in ConversationStatus]
        if status is not None and status not in valid_statuses:
            raise ValidationError(f"Status must be one of {valid_statuses}")

        with self.session_factory() as session:
            record = session.get(ConversationRecord, conversation_id)
            if record is None:
                raise ConversationNotFound(conversation_id)
            if title is not None:
                record.title = title.strip()
            if status is not None:
                record.status = status
            touch_updated_at(record)
            session.commit()
            return record_to_conversation(record)

    def close_conversation(self, conversation_id: str) -> Conversation:
        return self.update_conversation(conversation_id, status=ConversationStatus.CLOSED.value)

    def close_idle_conversations(self, max_idle_seconds: int, now: Optional[datetime] = None) -> int:
        """
        Close active conversations with no message for max_idle_seconds.

        Conversations are never deleted; a new message reopens them.

        Returns:
            Number of conversations closed
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=max_idle_seconds)
        stmt = (
            update(ConversationRecord)
            .where(ConversationRecord.status == ConversationStatus.ACTIVE.value)
            .where(ConversationRecord.last_message_at < cutoff)
            .values(status=ConversationStatus.CLOSED.value, updated_at=now)
        )
        with self.session_factory() as session:
            closed = session.execute(stmt).rowcount
            session.commit()

        if closed:
            logger.info(f"Closed {closed} conversations idle for more than {max_idle_seconds}s")
        return closed

    def rate_conversation(self, conversation_id: str, score: int, feedback: Optional[str] = None) -> Conversation:
        """Attach a 1-5 rating (and optional comment) to a conversation."""
        if not isinstance(score, int) or isinstance(score, bool) or not 1 <= score <= 5:
            raise ValidationError("Rating score must be an integer from 1 to 5")

        with self.session_factory() as session:
            record = session.get(ConversationRecord, conversation_id)
            if record is None:
                raise ConversationNotFound(conversation_id)
            now = utcnow()
            record.rating_score = score
            record.rating_feedback = feedback
            record.rated_at = now
            touch_updated_at(record, now)
            session.commit()
            return record_to_conversation(record)

    def _lock_for(self, conversation_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[conversation_id] = lock
            return lock
