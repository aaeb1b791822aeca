from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request

from ..queue.broker import QUEUE_CRAWL_RSS, QUEUE_DEAD_LETTER, QUEUE_EMAIL_DIGEST, QUEUE_SCRAPE_ARTICLE
from ..services import Services
from ..storage.models import Article, CrawlLog, DigestLog

app = FastAPI(title="News Aggregator", version="1.0.0")


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, 'services', None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def get_scheduler(request: Request):
    return getattr(request.app.state, 'scheduler', None)


def get_worker_pools(request: Request) -> List[Any]:
    return getattr(request.app.state, 'worker_pools', None) or []


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize(record) -> Dict[str, Any]:
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
        elif hasattr(value, 'value'):
            data[key] = value.value
    return data


def serialize_article(article: Article) -> Dict[str, Any]:
    return {
        "id": article.id,
        "source_id": article.source_id,
        "title": article.title,
        "url": article.url,
        "description": article.description,
        "thumbnail_url": article.thumbnail_url,
        "author": article.author,
        "category": article.category,
        "published_at": _iso(article.published_at),
        "is_scraped": article.is_scraped,
        "view_count": article.view_count
    }


def serialize_crawl_log(crawl_log: CrawlLog) -> Dict[str, Any]:
    return _serialize(crawl_log)


def serialize_digest_log(digest_log: DigestLog) -> Dict[str, Any]:
    return _serialize(digest_log)


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0"
    }


@app.get("/api/articles")
async def get_articles(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    category: Optional[str] = Query(None),
    services: Services = Depends(get_services)
):
    cache_key = f"articles:latest:{limit}:{offset}:{category or 'all'}"
    cached = services.cache.get(cache_key)
    if cached is not None:
        return cached

    articles = services.db_manager.get_articles(limit=limit, offset=offset, category=category)
    result = [serialize_article(article) for article in articles]
    services.cache.set(cache_key, result)
    return result


@app.post("/api/crawler/crawl-all")
async def crawl_all_sources(services: Services = Depends(get_services)):
    enqueued = services.orchestrator.enqueue_crawl_for_active_sources()
    return {
        "message": "Crawl tasks enqueued",
        "enqueued": enqueued,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/api/crawler/crawl/{source_id}")
async def crawl_source(source_id: int, services: Services = Depends(get_services)):
    source = services.db_manager.get_source(source_id)
    if not source:
        raise HTTPException(status_code=404, detail="Source not found")

    crawl_log = await services.crawl_service.crawl_source(source)
    return serialize_crawl_log(crawl_log)


@app.get("/api/crawler/logs/{source_id}")
async def get_crawl_logs(
    source_id: int,
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services)
):
    if not services.db_manager.get_source(source_id):
        raise HTTPException(status_code=404, detail="Source not found")
    return [serialize_crawl_log(log) for log in services.db_manager.get_crawl_logs(source_id, limit)]


@app.post("/api/scraper/run")
async def run_scraper(
    background_tasks: BackgroundTasks,
    batch_size: Optional[int] = Query(None, ge=1, le=100),
    services: Services = Depends(get_services)
):
    background_tasks.add_task(services.scrape_service.scrape_backlog, batch_size)
    return {
        "message": "Scrape sweep started",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/api/digest/trigger-all")
async def trigger_all_digests(services: Services = Depends(get_services)):
    enqueued = services.digest_dispatcher.enqueue_due_digests()
    return {
        "message": "Digest tasks enqueued",
        "enqueued": enqueued,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/api/digest/trigger/{user_id}")
async def trigger_digest(user_id: int, services: Services = Depends(get_services)):
    digest_log = await services.digest_dispatcher.deliver(user_id)
    if digest_log is None:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize_digest_log(digest_log)


@app.get("/api/digest/unsubscribe")
async def unsubscribe_digest(token: str = Query(..., min_length=1),
                             services: Services = Depends(get_services)):
    user = services.db_manager.get_user_by_unsubscribe_token(token)
    if not user:
        raise HTTPException(status_code=404, detail="Unknown unsubscribe token")

    services.db_manager.set_digest_enabled(user.id, False)
    return {"message": "You have been unsubscribed from the news digest", "email": user.email}


@app.get("/api/queues")
async def queue_status(
    services: Services = Depends(get_services),
    worker_pools: List[Any] = Depends(get_worker_pools)
):
    queues = [QUEUE_CRAWL_RSS, QUEUE_SCRAPE_ARTICLE, QUEUE_EMAIL_DIGEST, QUEUE_DEAD_LETTER]
    return {
        "queues": {queue: services.broker.depth(queue) for queue in queues},
        "workers": [pool.status() for pool in worker_pools],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/api/scheduler/jobs")
async def scheduler_jobs(scheduler=Depends(get_scheduler)):
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    return scheduler.get_job_status()
