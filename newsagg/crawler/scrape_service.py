import asyncio
import logging
import random
from enum import Enum
from typing import Any, Dict, Optional

from .content_extractor import ContentExtractor
from ..storage.database import DatabaseManager


class ScrapeOutcome(str, Enum):
    SCRAPED = "scraped"
    NO_CONTENT = "no_content"
    ALREADY_SCRAPED = "already_scraped"
    NOT_FOUND = "not_found"


class ScrapeService:
    """Fills in full content and thumbnails for articles ingested from feeds.

    Every attempt that reaches the site ends with the article marked scraped,
    whether or not content came back, so a dead page is never retried forever.
    """

    def __init__(self, db_manager: DatabaseManager, extractor: ContentExtractor,
                 scraping_config: Optional[Dict[str, Any]] = None):
        scraping_config = scraping_config or {}
        self.db_manager = db_manager
        self.extractor = extractor
        self.delay_min = scraping_config.get('delay_min_seconds', 0.5)
        self.delay_max = scraping_config.get('delay_max_seconds', 1.5)
        self.batch_size = scraping_config.get('batch_size', 10)
        self.logger = logging.getLogger('crawler.scrape')

    async def scrape_article(self, article_id: int) -> ScrapeOutcome:
        article = self.db_manager.get_article(article_id)
        if article is None:
            self.logger.warning(f"Article ID {article_id} not found, task ignored")
            return ScrapeOutcome.NOT_FOUND

        if article.is_scraped:
            self.logger.debug(f"Article ID {article_id} already scraped, skipping")
            return ScrapeOutcome.ALREADY_SCRAPED

        result = await asyncio.to_thread(self.extractor.scrape, article.url)

        thumbnail = None if article.thumbnail_url else result.thumbnail_url
        self.db_manager.mark_article_scraped(article_id, result.content, thumbnail)

        await self.throttle()

        if result.content:
            self.logger.debug(f"Scraped article ID {article_id}")
            return ScrapeOutcome.SCRAPED
        return ScrapeOutcome.NO_CONTENT

    async def throttle(self):
        await asyncio.sleep(random.uniform(self.delay_min, self.delay_max))

    async def scrape_backlog(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        """Scrape up to ``batch_size`` unscraped articles, newest first, one at a time."""
        batch = self.db_manager.find_unscraped_articles(limit=batch_size or self.batch_size)
        if not batch:
            self.logger.debug("No articles waiting to be scraped")
            return {}

        self.logger.info(f"Scraping {len(batch)} articles without full content")
        counts: Dict[str, int] = {}
        for article in batch:
            try:
                outcome = await self.scrape_article(article.id)
            except Exception as e:
                self.logger.warning(f"Failed to scrape article ID {article.id}: {e}")
                continue
            counts[outcome.value] = counts.get(outcome.value, 0) + 1

        self.logger.info(
            f"Scrape sweep done: {counts.get(ScrapeOutcome.SCRAPED.value, 0)}/{len(batch)} with content"
        )
        return counts
