"""
Queue handlers. Each takes a decoded task and returns a HandlerResult; the
worker pool owns acking, requeueing and dead-lettering.
"""
import logging
from typing import Optional

from .broker import HEADER_DEATH_REASON, HEADER_ORIGINAL_QUEUE, HandlerResult, Message
from .messages import CrawlTask, DigestTask, ScrapeTask
from ..crawler.crawl_service import CrawlService
from ..crawler.scrape_service import ScrapeOutcome, ScrapeService
from ..storage.database import DatabaseManager
from ..storage.models import CrawlOutcome, DigestStatus


class CrawlConsumer:
    def __init__(self, db_manager: DatabaseManager, crawl_service: CrawlService):
        self.db_manager = db_manager
        self.crawl_service = crawl_service
        self.logger = logging.getLogger('worker.crawl')

    async def handle(self, task: CrawlTask) -> HandlerResult:
        self.logger.info(f"Received crawl task for source ID: {task.source_id}")

        source = self.db_manager.get_source(task.source_id)
        if source is None:
            self.logger.warning(f"Source ID {task.source_id} not found, task ignored")
            return HandlerResult.ACK

        crawl_log = await self.crawl_service.crawl_source(source)
        if crawl_log.status == CrawlOutcome.FAILED:
            self.logger.warning(
                f"Crawl of source ID {task.source_id} failed "
                f"(retry {task.retry_count}): {crawl_log.error_message}"
            )
            return HandlerResult.RETRY

        return HandlerResult.ACK


class ScrapeConsumer:
    def __init__(self, scrape_service: ScrapeService):
        self.scrape_service = scrape_service
        self.logger = logging.getLogger('worker.scrape')

    async def handle(self, task: ScrapeTask) -> HandlerResult:
        outcome = await self.scrape_service.scrape_article(task.article_id)
        if outcome == ScrapeOutcome.NO_CONTENT:
            self.logger.info(f"No usable content for article ID {task.article_id}, marked scraped")
        return HandlerResult.ACK


class DigestConsumer:
    def __init__(self, dispatcher):
        self.dispatcher = dispatcher
        self.logger = logging.getLogger('worker.digest')

    async def handle(self, task: DigestTask) -> HandlerResult:
        digest_log = await self.dispatcher.deliver(task.user_id)
        if digest_log is not None and digest_log.status == DigestStatus.FAILED:
            return HandlerResult.RETRY
        return HandlerResult.ACK


class DeadLetterConsumer:
    """Logs dead-lettered messages. No retry, no side effects."""

    def __init__(self):
        self.logger = logging.getLogger('worker.dead_letter')

    async def handle(self, message: Message) -> HandlerResult:
        original_queue: Optional[str] = message.headers.get(HEADER_ORIGINAL_QUEUE)
        reason: Optional[str] = message.headers.get(HEADER_DEATH_REASON)
        self.logger.error(
            "=== DEAD LETTER MESSAGE ===\n"
            f"Original queue: {original_queue or 'unknown'}\n"
            f"Death reason: {reason or 'unknown'}\n"
            f"Routing key: {message.routing_key}\n"
            f"Message body: {message.body.decode('utf-8', errors='replace')}\n"
            "==========================="
        )
        return HandlerResult.ACK
