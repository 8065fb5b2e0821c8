"""
Feedback capture for articles, messages and other support items.

Feedback records are the source of truth: one row per (voter, item, item type).
Article helpful/unhelpful counters are derived from them and adjusted in the
same transaction, only when a voter's vote is new or changes:

    first vote            -> +1 on the voted counter
    same vote again       -> no change
    vote flipped          -> -1 on the old counter, +1 on the new one

A helpfulness vote on an article or message that names neither a user nor a
session cannot be deduplicated. It is counted as a raw vote (+1 on the voted
article counter, or the message's helpful flag set) and no feedback record
is written.

Feedback never influences retrieval ranking.
"""
from dataclasses import dataclass
from typing import List, Optional, Tuple
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from helpdesk.db.models import FeedbackRecord, MessageRecord
from helpdesk.db.repositories import ArticleRepository, as_utc
from helpdesk.errors import MessageNotFound, ValidationError
from helpdesk.logging_config import get_logger
from helpdesk.models import FEEDBACK_ITEM_TYPES, Feedback, utcnow
from helpdesk.utils import touch_updated_at

logger = get_logger(__name__)


@dataclass
class HelpfulnessResult:
    feedback: Optional[Feedback]  # None for anonymous raw votes
    changed: bool
    helpful_count: Optional[int] = None
    unhelpful_count: Optional[int] = None


def record_to_feedback(record: FeedbackRecord) -> Feedback:
    return Feedback(
        feedback_id=record.feedback_id,
        user_id=record.user_id,
        item_id=record.item_id,
        item_type=record.item_type,
        rating=record.rating,
        comments=record.comments or "",
        helpful=record.helpful,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


def voter_id(user_id: Optional[str], session_id: Optional[str]) -> str:
    """Identity a vote is deduplicated on: the user, else the anonymous session."""
    if user_id:
        return user_id
    if session_id:
        return f"session:{session_id}"
    raise ValidationError("userId or sessionId is required to record feedback")


class FeedbackService:
    """Upserts feedback records and keeps the derived counters in step."""

    def __init__(self, session_factory: sessionmaker, articles: ArticleRepository, max_attempts: int = 3):
        self.session_factory = session_factory
        self.articles = articles
        self.max_attempts = max_attempts

    def record_helpfulness(
            self,
            item_id: str,
            item_type: str,
            is_helpful: bool,
            user_id: Optional[str] = None,
            session_id: Optional[str] = None
            ) -> HelpfulnessResult:
        """
        Record a helpful/not-helpful vote on an article or message.

        Without userId and sessionId an article or message vote is counted
        raw, with no feedback record.

        Raises:
            ValidationError: unsupported item type, or no voter identity for
                an item type that has no raw counter
            ArticleNotFound / MessageNotFound: the item does not exist
        """
        if not isinstance(is_helpful, bool):
            raise ValidationError("isHelpful must be a boolean")
        self._check_item_type(item_type)
        if not user_id and not session_id and item_type in ("article", "message"):
            return self._record_anonymous_vote(item_id, item_type, is_helpful)
        voter = voter_id(user_id, session_id)

        def apply(session: Session) -> HelpfulnessResult:
            record, result = self._apply_vote(session, voter, item_id, item_type, is_helpful)
            session.commit()
            result.feedback = record_to_feedback(record)
            return result

        return self._with_conflict_retry(apply)

    def submit_feedback(
            self,
            user_id: str,
            item_id: str,
            item_type: str,
            rating: Optional[int] = None,
            comments: Optional[str] = None,
            helpful: Optional[bool] = None
            ) -> Feedback:
        """
        Create or update the voter's feedback record for an item.

        A helpful flag on an article or message goes through the same counter
        rules as record_helpfulness().
        """
        if not user_id:
            raise ValidationError("userId is required")
        if not item_id:
            raise ValidationError("itemId is required")
        self._check_item_type(item_type)
        if rating is not None and (isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5):
            raise ValidationError("Rating must be an integer from 1 to 5")

        if helpful is not None and not isinstance(helpful, bool):
            raise ValidationError("helpful must be a boolean")

        def apply(session: Session) -> Feedback:
            if helpful is not None:
                record, _ = self._apply_vote(session, user_id, item_id, item_type, helpful)
            else:
                record, _ = self._upsert(session, user_id, item_id, item_type)
            if rating is not None:
                record.rating = rating
            if comments is not None:
                record.comments = comments
            session.commit()
            logger.info(f"Stored feedback {record.feedback_id} for {item_type}:{item_id} from {user_id}")
            return record_to_feedback(record)

        return self._with_conflict_retry(apply)

    def get_feedback(self, user_id: str, item_id: str, item_type: str) -> Optional[Feedback]:
        with self.session_factory() as session:
            record = self._find(session, user_id, item_id, item_type)
            return record_to_feedback(record) if record is not None else None

    def list_feedback(self, item_id: str, item_type: str) -> List[Feedback]:
        stmt = (
            select(FeedbackRecord)
            .where(FeedbackRecord.item_id == item_id, FeedbackRecord.item_type == item_type)
            .order_by(FeedbackRecord.created_at)
        )
        with self.session_factory() as session:
            return [record_to_feedback(r) for r in session.execute(stmt).scalars().all()]

    def log_detail_feedback(
            self,
            article_id: str,
            feedback_text: str,
            user_id: Optional[str] = None,
            session_id: Optional[str] = None
            ) -> None:
        """Free-text feedback on an article. Logged for review, not stored."""
        if not feedback_text or not feedback_text.strip():
            raise ValidationError("feedbackText is required")
        article = self.articles.require(article_id)
        logger.info(
            f"Detailed feedback for article {article.article_id} ({article.title!r}) "
            f"from {user_id or session_id or 'anonymous'}: {feedback_text.strip()}"
        )

    def _apply_vote(
            self,
            session: Session,
            voter: str,
            item_id: str,
            item_type: str,
            is_helpful: bool
            ) -> Tuple[FeedbackRecord, HelpfulnessResult]:
        """Apply a vote inside the caller's transaction. The caller commits."""
        record, previous = self._upsert(session, voter, item_id, item_type)
        record.helpful = is_helpful
        changed = previous is not is_helpful

        result = HelpfulnessResult(feedback=record_to_feedback(record), changed=changed)

        if item_type == "article":
            helpful_delta = unhelpful_delta = 0
            if changed:
                helpful_delta = (1 if is_helpful else 0) - (1 if previous is True else 0)
                unhelpful_delta = (0 if is_helpful else 1) - (1 if previous is False else 0)
            # Zero deltas still verify the article exists before anything is committed
            article = self.articles.adjust_counters(session, item_id, helpful_delta, unhelpful_delta)
            result.helpful_count = article.helpful_count
            result.unhelpful_count = article.unhelpful_count
        elif item_type == "message":
            message = session.get(MessageRecord, item_id)
            if message is None:
                raise MessageNotFound(item_id)
            message.helpful = is_helpful

        if changed:
            logger.info(f"Recorded {'helpful' if is_helpful else 'unhelpful'} vote on {item_type}:{item_id} from {voter}")
        else:
            logger.debug(f"Repeat vote on {item_type}:{item_id} from {voter}, counters unchanged")
        return record, result

    def _record_anonymous_vote(self, item_id: str, item_type: str, is_helpful: bool) -> HelpfulnessResult:
        result = HelpfulnessResult(feedback=None, changed=True)
        with self.session_factory() as session:
            if item_type == "article":
                article = self.articles.adjust_counters(
                    session, item_id, 1 if is_helpful else 0, 0 if is_helpful else 1
                )
                result.helpful_count = article.helpful_count
                result.unhelpful_count = article.unhelpful_count
            else:
                message = session.get(MessageRecord, item_id)
                if message is None:
                    raise MessageNotFound(item_id)
                message.helpful = is_helpful
            session.commit()

        logger.info(f"Recorded anonymous {'helpful' if is_helpful else 'unhelpful'} vote on {item_type}:{item_id}")
        return result

    def _upsert(
            self,
            session: Session,
            voter: str,
            item_id: str,
            item_type: str
            ) -> Tuple[FeedbackRecord, Optional[bool]]:
        """Existing record (touched) or a new one; also returns the previous helpful flag."""
        now = utcnow()
        record = self._find(session, voter, item_id, item_type, for_update=True)
        if record is None:
            record = FeedbackRecord(
                feedback_id=str(uuid.uuid4()),
                user_id=voter,
                item_id=item_id,
                item_type=item_type,
                comments="",
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            return record, None

        touch_updated_at(record, now)
        return record, record.helpful

    @staticmethod
    def _find(
            session: Session,
            voter: str,
            item_id: str,
            item_type: str,
            for_update: bool = False
            ) -> Optional[FeedbackRecord]:
        """
        The voter's record for an item. With for_update the row stays locked
        until commit on PostgreSQL, so concurrent votes by one voter apply in turn.
        """
        stmt = select(FeedbackRecord).where(
            FeedbackRecord.user_id == voter,
            FeedbackRecord.item_id == item_id,
            FeedbackRecord.item_type == item_type,
        )
        if for_update and session.get_bind().dialect.name == "postgresql":
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _check_item_type(item_type: str) -> None:
        if item_type not in FEEDBACK_ITEM_TYPES:
            raise ValidationError(f"itemType must be one of {list(FEEDBACK_ITEM_TYPES)}")

    def _with_conflict_retry(self, apply):
        """
        Run apply(session) in a fresh session, retrying when a concurrent
        first vote from the same voter wins the unique constraint.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.session_factory() as session:
                    return apply(session)
            except IntegrityError:
                if attempt == self.max_attempts:
                    raise
                logger.warning(f"Concurrent feedback write detected, retrying (attempt {attempt})")
