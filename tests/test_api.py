import pytest
import tempfile
import os
from httpx import AsyncClient, ASGITransport
from unittest.mock import AsyncMock, Mock, patch

from newsagg.queue.broker import QUEUE_CRAWL_RSS, QUEUE_EMAIL_DIGEST
from newsagg.services import build_services
from newsagg.storage.models import Article, Source, User, utcnow
from newsagg.utils.config import Config
from newsagg.utils.email_service import DeliveryResult
from newsagg.web.app import app, get_scheduler, get_services

RSS = b'''<?xml version="1.0"?>
<rss version="2.0"><channel><title>Example</title><link>https://example.com</link>
<description>Example</description>
<item><title>Story</title><link>https://example.com/story</link></item>
</channel></rss>'''


@pytest.fixture(scope="function")
def services():
    temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    temp_db.close()
    config = Config.from_dict({
        'database': {'path': temp_db.name},
        'broker': {'backend': 'memory'},
        'sources': [{'name': 'Example', 'url': 'https://example.com/rss', 'category': 'world'}],
    })
    yield build_services(config)
    os.unlink(temp_db.name)


@pytest.fixture(scope="function")
async def client(services):
    app.dependency_overrides[get_services] = lambda: services

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


class TestAPI:
    async def test_health_endpoint(self, client):
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "version" in data

    async def test_get_articles_is_cached(self, client, services):
        source = services.db_manager.find_active_sources()[0]
        services.db_manager.save_articles([Article(
            source_id=source.id, title="Cached", url="https://example.com/cached",
            category="world", published_at=utcnow()
        )])

        response = await client.get("/api/articles")
        assert response.status_code == 200
        assert [a["title"] for a in response.json()] == ["Cached"]

        with patch.object(services.db_manager, 'get_articles') as mock_get_articles:
            response = await client.get("/api/articles")
            mock_get_articles.assert_not_called()
        assert [a["title"] for a in response.json()] == ["Cached"]

    async def test_crawl_all_enqueues_active_sources(self, client, services):
        response = await client.post("/api/crawler/crawl-all")

        assert response.status_code == 200
        assert response.json()["enqueued"] == 1
        assert services.broker.depth(QUEUE_CRAWL_RSS) == 1

    @patch('newsagg.crawler.feed_fetcher.requests.Session.get')
    async def test_crawl_one_source_returns_log(self, mock_get, client, services):
        mock_response = Mock()
        mock_response.content = RSS
        mock_response.raise_for_status.return_value = None
        mock_get.return_value = mock_response
        source = services.db_manager.find_active_sources()[0]

        response = await client.post(f"/api/crawler/crawl/{source.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "SUCCESS"
        assert data["articles_found"] == 1
        assert data["articles_saved"] == 1

        logs = await client.get(f"/api/crawler/logs/{source.id}")
        assert len(logs.json()) == 1

    async def test_crawl_unknown_source_is_404(self, client):
        response = await client.post("/api/crawler/crawl/999")
        assert response.status_code == 404

    async def test_scraper_run_starts_background_sweep(self, client, services):
        services.scrape_service.scrape_backlog = AsyncMock(return_value={})

        response = await client.post("/api/scraper/run?batch_size=5")

        assert response.status_code == 200
        services.scrape_service.scrape_backlog.assert_awaited_once_with(5)

    async def test_digest_trigger_all(self, client, services):
        services.db_manager.add_user(User(
            email="reader@example.com", email_verified=True, digest_enabled=True,
            category_preferences=["world"]
        ))

        response = await client.post("/api/digest/trigger-all")

        assert response.json()["enqueued"] == 1
        assert services.broker.depth(QUEUE_EMAIL_DIGEST) == 1

    async def test_digest_trigger_one_user(self, client, services):
        source = services.db_manager.find_active_sources()[0]
        services.db_manager.save_articles([Article(
            source_id=source.id, title="World news", url="https://example.com/world",
            category="world", published_at=utcnow()
        )])
        user_id = services.db_manager.add_user(User(
            email="reader@example.com", email_verified=True, digest_enabled=True,
            category_preferences=["world"]
        ))
        email_service = Mock()
        email_service.render_digest.return_value = "<html></html>"
        email_service.render_digest_text.return_value = ""
        email_service.send = AsyncMock(return_value=DeliveryResult(success=True))
        services.digest_dispatcher.email_service = email_service

        response = await client.post(f"/api/digest/trigger/{user_id}")

        assert response.status_code == 200
        assert response.json()["status"] == "SENT"
        assert response.json()["articles_count"] == 1

    async def test_digest_trigger_unknown_user_is_404(self, client):
        response = await client.post("/api/digest/trigger/999")
        assert response.status_code == 404

    async def test_unsubscribe(self, client, services):
        services.db_manager.add_user(User(
            email="reader@example.com", email_verified=True, digest_enabled=True,
            unsubscribe_token="tok-123"
        ))

        response = await client.get("/api/digest/unsubscribe", params={"token": "tok-123"})
        assert response.status_code == 200
        assert services.db_manager.find_digest_subscribers() == []

        response = await client.get("/api/digest/unsubscribe", params={"token": "unknown"})
        assert response.status_code == 404

    async def test_queue_status(self, client, services):
        services.orchestrator.enqueue_crawl_source(Source(id=1, name="Example", url="https://example.com/rss"))

        response = await client.get("/api/queues")

        assert response.status_code == 200
        assert response.json()["queues"][QUEUE_CRAWL_RSS] == 1

    async def test_scheduler_jobs(self, client):
        response = await client.get("/api/scheduler/jobs")
        assert response.status_code == 503

        scheduler = Mock()
        scheduler.get_job_status.return_value = {'running': True, 'jobs': []}
        app.dependency_overrides[get_scheduler] = lambda: scheduler

        response = await client.get("/api/scheduler/jobs")
        assert response.json()["running"] is True
