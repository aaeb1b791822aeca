import asyncio
import logging
import time
from typing import List

from .feed_fetcher import FeedFetcher
from ..queue.producers import CrawlOrchestrator
from ..storage.database import DatabaseManager
from ..storage.models import Article, CrawlLog, CrawlOutcome, CrawlStatus, Source
from ..utils.cache import CacheService

ARTICLE_CACHE_PATTERN = "articles:*"


class CrawlService:
    def __init__(self, db_manager: DatabaseManager, feed_fetcher: FeedFetcher,
                 orchestrator: CrawlOrchestrator, cache: CacheService):
        self.db_manager = db_manager
        self.feed_fetcher = feed_fetcher
        self.orchestrator = orchestrator
        self.cache = cache
        self.logger = logging.getLogger('crawler.service')

    async def crawl_source(self, source: Source) -> CrawlLog:
        """Run one crawl attempt for a source and record exactly one CrawlLog.

        Never raises for feed problems; the returned log carries the outcome.
        """
        self.logger.info(f"Crawling source: {source.name} (ID: {source.id})")
        started = time.perf_counter()
        crawl_log = CrawlLog(source_id=source.id)

        try:
            parsed = await asyncio.to_thread(self.feed_fetcher.fetch, source)
            crawl_log.articles_found = parsed.entries_seen

            saved = self.save_new_articles(parsed.candidates)
            crawl_log.articles_saved = len(saved)

            if saved:
                self.cache.invalidate(ARTICLE_CACHE_PATTERN)
                self.orchestrator.enqueue_scrape_for_new_articles(saved)

            self.db_manager.update_source_crawl_status(source.id, CrawlStatus.SUCCESS)
            crawl_log.status = CrawlOutcome.SUCCESS
            crawl_log.duration_ms = int((time.perf_counter() - started) * 1000)

            self.logger.info(
                f"Crawl finished for '{source.name}': {parsed.entries_seen} found, "
                f"{len(saved)} new ({crawl_log.duration_ms}ms)"
            )
        except Exception as e:
            crawl_log.status = CrawlOutcome.FAILED
            crawl_log.error_message = str(e)
            crawl_log.duration_ms = int((time.perf_counter() - started) * 1000)
            self.logger.error(f"Crawl failed for '{source.name}': {e}")
            self.db_manager.update_source_crawl_status(
                source.id, CrawlStatus.ERROR, error_message=str(e)
            )

        return self.db_manager.add_crawl_log(crawl_log)

    def save_new_articles(self, candidates: List[Article]) -> List[Article]:
        new_articles = []
        for article in candidates:
            # URL is the primary identity; GUID only counts when the feed gave a real one.
            if self.db_manager.exists_by_url(article.url):
                continue
            if article.guid and article.guid != article.url and self.db_manager.exists_by_guid(article.guid):
                continue
            new_articles.append(article)

        saved = self.db_manager.save_articles(new_articles) if new_articles else []
        self.logger.debug(f"{len(saved)} new articles out of {len(candidates)} candidates")
        return saved
