import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..queue.broker import EXCHANGE, ROUTING_KEY_DIGEST, MessageBroker
from ..queue.messages import DigestTask
from ..storage.database import DatabaseManager
from ..storage.models import Article, DigestLog, DigestStatus, User, utcnow
from ..utils.email_service import EmailService

ARTICLES_PER_CATEGORY = 3
LOOKBACK_HOURS = 24


class DigestDispatcher:
    """Selects due subscribers and delivers their category digest emails.

    ``enqueue_due_digests`` is the producer half (one DigestTask per due
    subscriber); ``deliver`` is what the digest worker runs per task. Every
    ``deliver`` call for an existing user records exactly one DigestLog.
    """

    def __init__(self, db_manager: DatabaseManager, broker: MessageBroker,
                 email_service: Optional[EmailService] = None,
                 digest_config: Optional[Dict[str, Any]] = None):
        digest_config = digest_config or {}
        self.db_manager = db_manager
        self.broker = broker
        self.email_service = email_service
        self.articles_per_category = digest_config.get('articles_per_category', ARTICLES_PER_CATEGORY)
        self.lookback_hours = digest_config.get('lookback_hours', LOOKBACK_HOURS)
        self.base_url = digest_config.get('base_url', 'http://localhost:8000').rstrip('/')
        self.logger = logging.getLogger('digest')

    def enqueue_due_digests(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        subscribers = self.db_manager.find_digest_subscribers()
        due = [user for user in subscribers if user.is_due_for_digest(now)]
        self.logger.info(f"{len(due)}/{len(subscribers)} digest subscribers are due")

        enqueued = 0
        for user in due:
            try:
                if self.broker.publish(EXCHANGE, ROUTING_KEY_DIGEST, DigestTask.for_user(user).to_dict()):
                    enqueued += 1
            except Exception as e:
                self.logger.error(f"Failed to enqueue digest for user {user.email}: {e}")

        self.logger.info(f"Enqueued {enqueued} digest tasks")
        return enqueued

    def collect_articles(self, user: User, now: datetime) -> Dict[str, List[Article]]:
        since = now - timedelta(hours=self.lookback_hours)
        articles_by_category = {}
        for category in user.category_preferences:
            articles = self.db_manager.find_popular_by_category(
                category, since, limit=self.articles_per_category
            )
            if articles:
                articles_by_category[category] = articles
        return articles_by_category

    async def deliver(self, user_id: int) -> Optional[DigestLog]:
        user = self.db_manager.get_user(user_id)
        if user is None:
            self.logger.warning(f"User ID {user_id} not found, digest skipped")
            return None

        now = utcnow()
        if not user.is_due_for_digest(now):
            self.logger.debug(f"User {user.email} is not due for a digest yet")
            return self._log(user, DigestStatus.SKIPPED, error_message="Not due yet")

        if not user.category_preferences:
            self.logger.warning(f"User {user.email} has no category preferences")
            return self._log(user, DigestStatus.SKIPPED, error_message="No category preferences")

        articles_by_category = self.collect_articles(user, now)
        total_articles = sum(len(articles) for articles in articles_by_category.values())
        if total_articles == 0:
            self.logger.info(f"No new articles for user {user.email}")
            return self._log(user, DigestStatus.SKIPPED, error_message="No new articles")

        if self.email_service is None:
            self.logger.error(f"Cannot send digest to {user.email}: email delivery is not configured")
            return self._log(user, DigestStatus.FAILED, error_message="Email delivery is not configured")

        if not self.db_manager.claim_digest_send(user.id, user.last_digest_sent_at, now):
            self.logger.info(f"Digest for {user.email} is already being sent by another worker")
            return self._log(user, DigestStatus.SKIPPED, error_message="Already sent")

        unsubscribe_url = f"{self.base_url}/api/digest/unsubscribe?token={user.unsubscribe_token or ''}"
        html_content = self.email_service.render_digest(
            user_name=user.full_name,
            articles_by_category=articles_by_category,
            total_articles=total_articles,
            base_url=self.base_url,
            unsubscribe_url=unsubscribe_url,
            digest_date=now,
        )
        text_content = self.email_service.render_digest_text(articles_by_category, unsubscribe_url)
        subject = f"Your News Digest - {now.strftime('%d %B %Y')}"

        try:
            result = await self.email_service.send(
                user.email, subject, html_content, text_content, to_name=user.full_name
            )
        except BaseException:
            self.db_manager.release_digest_claim(user.id, now, user.last_digest_sent_at)
            raise

        if not result.success:
            self.db_manager.release_digest_claim(user.id, now, user.last_digest_sent_at)
            self.logger.error(f"Failed to send digest to {user.email}: {result.error}")
            return self._log(user, DigestStatus.FAILED, error_message=result.error)

        self.logger.info(f"Digest sent to {user.email} ({total_articles} articles)")
        return self._log(user, DigestStatus.SENT, articles_count=total_articles, sent_at=now)

    def _log(self, user: User, status: DigestStatus, articles_count: int = 0,
             error_message: Optional[str] = None, sent_at: Optional[datetime] = None) -> DigestLog:
        return self.db_manager.add_digest_log(DigestLog(
            user_id=user.id,
            status=status,
            recipient_email=user.email,
            articles_count=articles_count,
            error_message=error_message,
            sent_at=sent_at or utcnow(),
        ))
