import pytest
import tempfile
import os
from unittest.mock import AsyncMock, Mock, patch

from newsagg.crawler.content_extractor import ScrapeResult
from newsagg.crawler.scrape_service import ScrapeOutcome, ScrapeService
from newsagg.storage.database import DatabaseManager
from newsagg.storage.models import Article, Source, utcnow


class TestScrapeService:
    def setup_method(self):
        self.temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.temp_db.close()
        self.db_manager = DatabaseManager(self.temp_db.name)
        self.source_id = self.db_manager.add_source(Source(
            name="Example", url="https://example.com/rss", category="world"
        ))

        self.extractor = Mock()
        self.service = ScrapeService(self.db_manager, self.extractor)
        self.service.throttle = AsyncMock()

    def teardown_method(self):
        os.unlink(self.temp_db.name)

    def _save(self, url, **kwargs):
        return self.db_manager.save_articles([Article(
            source_id=self.source_id, title="Title", url=url, guid=url,
            category="world", published_at=utcnow(), **kwargs
        )])[0]

    async def test_scrape_fills_content_and_thumbnail(self):
        article = self._save("https://example.com/a")
        self.extractor.scrape.return_value = ScrapeResult(
            content="Full body text", thumbnail_url="https://cdn.example.com/a.jpg", success=True
        )

        outcome = await self.service.scrape_article(article.id)

        assert outcome == ScrapeOutcome.SCRAPED
        stored = self.db_manager.get_article(article.id)
        assert stored.is_scraped
        assert stored.content == "Full body text"
        assert stored.thumbnail_url == "https://cdn.example.com/a.jpg"
        self.service.throttle.assert_awaited_once()

    async def test_feed_thumbnail_is_kept(self):
        article = self._save("https://example.com/a", thumbnail_url="https://feed.example.com/a.jpg")
        self.extractor.scrape.return_value = ScrapeResult(
            content="Body", thumbnail_url="https://cdn.example.com/a.jpg", success=True
        )

        await self.service.scrape_article(article.id)

        assert self.db_manager.get_article(article.id).thumbnail_url == "https://feed.example.com/a.jpg"

    async def test_failed_fetch_still_marks_scraped(self):
        article = self._save("https://example.com/a")
        self.extractor.scrape.return_value = ScrapeResult(content=None, thumbnail_url=None, success=False)

        outcome = await self.service.scrape_article(article.id)

        assert outcome == ScrapeOutcome.NO_CONTENT
        stored = self.db_manager.get_article(article.id)
        assert stored.is_scraped
        assert stored.content is None

    async def test_already_scraped_is_noop(self):
        article = self._save("https://example.com/a")
        self.db_manager.mark_article_scraped(article.id, "Original", "https://cdn.example.com/orig.jpg")

        outcome = await self.service.scrape_article(article.id)

        assert outcome == ScrapeOutcome.ALREADY_SCRAPED
        self.extractor.scrape.assert_not_called()
        stored = self.db_manager.get_article(article.id)
        assert stored.content == "Original"
        assert stored.thumbnail_url == "https://cdn.example.com/orig.jpg"

    async def test_missing_article(self):
        assert await self.service.scrape_article(999) == ScrapeOutcome.NOT_FOUND
        self.extractor.scrape.assert_not_called()

    async def test_backlog_continues_after_failure(self):
        first = self._save("https://example.com/1")
        second = self._save("https://example.com/2")
        self.extractor.scrape.return_value = ScrapeResult(content="Body", thumbnail_url=None, success=True)

        original = self.db_manager.mark_article_scraped
        def flaky_mark(article_id, content, thumbnail_url):
            if article_id == second.id:
                raise RuntimeError("database is locked")
            return original(article_id, content, thumbnail_url)

        with patch.object(self.db_manager, 'mark_article_scraped', side_effect=flaky_mark):
            counts = await self.service.scrape_backlog(batch_size=10)

        assert counts == {ScrapeOutcome.SCRAPED.value: 1}
        assert self.db_manager.get_article(first.id).is_scraped
        assert not self.db_manager.get_article(second.id).is_scraped

    async def test_backlog_respects_batch_size(self):
        for i in range(5):
            self._save(f"https://example.com/{i}")
        self.extractor.scrape.return_value = ScrapeResult(content=None, thumbnail_url=None, success=False)

        counts = await self.service.scrape_backlog(batch_size=3)

        assert counts == {ScrapeOutcome.NO_CONTENT.value: 3}
        assert len(self.db_manager.find_unscraped_articles(limit=10)) == 2

    async def test_empty_backlog(self):
        assert await self.service.scrape_backlog() == {}

    @patch('newsagg.crawler.scrape_service.asyncio.sleep', new_callable=AsyncMock)
    async def test_throttle_uses_jittered_delay(self, mock_sleep):
        service = ScrapeService(self.db_manager, self.extractor)

        await service.throttle()

        delay = mock_sleep.await_args.args[0]
        assert 0.5 <= delay <= 1.5
