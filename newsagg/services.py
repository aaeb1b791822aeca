import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .crawler.content_extractor import ContentExtractor
from .crawler.crawl_service import CrawlService
from .crawler.feed_fetcher import FeedFetcher
from .crawler.scrape_service import ScrapeService
from .digest.dispatcher import DigestDispatcher
from .queue.broker import InMemoryBroker, MessageBroker, declare_topology
from .queue.producers import CrawlOrchestrator
from .queue.redis_broker import DEFAULT_URL as DEFAULT_REDIS_URL, RedisBroker
from .storage.database import DatabaseManager
from .storage.models import Source
from .utils.cache import CacheService
from .utils.config import Config
from .utils.email_service import EmailService, build_email_service

logger = logging.getLogger('services')


@dataclass
class Services:
    config: Config
    db_manager: DatabaseManager
    broker: MessageBroker
    cache: CacheService
    orchestrator: CrawlOrchestrator
    crawl_service: CrawlService
    scrape_service: ScrapeService
    digest_dispatcher: DigestDispatcher
    email_service: Optional[EmailService] = None


def seed_sources(db_manager: DatabaseManager, config: Config) -> int:
    """Insert configured sources that are not in the database yet."""
    added = 0
    for source_config in config.get_sources():
        if db_manager.get_source_by_url(source_config['url']):
            continue
        db_manager.add_source(Source(
            name=source_config['name'],
            url=source_config['url'],
            category=source_config.get('category', 'general'),
            website_url=source_config.get('website_url'),
            is_active=source_config.get('is_active', True)
        ))
        added += 1

    if added:
        logger.info(f"Added {added} sources from configuration")
    return added


def build_broker(broker_config: Dict[str, Any]) -> MessageBroker:
    backend = broker_config.get('backend', 'redis')
    max_retries = broker_config.get('max_retries', 3)
    reaper_interval = broker_config.get('reaper_interval_seconds', 30)

    if backend == 'redis':
        logger.info("Using Redis message broker")
        return RedisBroker(
            url=broker_config.get('url', DEFAULT_REDIS_URL),
            key_prefix=broker_config.get('key_prefix', 'newsagg'),
            max_retries=max_retries,
            reaper_interval=reaper_interval,
            poll_interval=broker_config.get('poll_interval_seconds', 0.5)
        )
    if backend == 'memory':
        logger.warning("Using in-memory message broker, queued tasks will not survive a restart")
        return InMemoryBroker(max_retries=max_retries, reaper_interval=reaper_interval)

    raise ValueError(f"Unknown broker backend: {backend}")


def build_services(config: Config, broker: Optional[MessageBroker] = None) -> Services:
    db_config = config.get_database_config()
    db_manager = DatabaseManager(db_config.get('path', 'data/newsagg.db'))
    seed_sources(db_manager, config)

    broker_config = config.get_broker_config()
    if broker is None:
        broker = build_broker(broker_config)
    declare_topology(
        broker,
        crawl_ttl=broker_config.get('crawl_ttl_seconds', 3600),
        scrape_ttl=broker_config.get('scrape_ttl_seconds', 3600),
        digest_ttl=broker_config.get('digest_ttl_seconds', 1800)
    )

    cache = CacheService(default_ttl=config.get('web.cache_ttl_seconds', 300))
    scraping_config = config.get_scraping_config()

    orchestrator = CrawlOrchestrator(broker, db_manager)
    crawl_service = CrawlService(db_manager, FeedFetcher(scraping_config), orchestrator, cache)
    scrape_service = ScrapeService(db_manager, ContentExtractor(scraping_config), scraping_config)

    email_service = build_email_service(config.get_email_config())
    if email_service is None:
        logger.info("Email delivery disabled in configuration")

    digest_dispatcher = DigestDispatcher(
        db_manager, broker, email_service, config.get_digest_config()
    )

    return Services(
        config=config,
        db_manager=db_manager,
        broker=broker,
        cache=cache,
        orchestrator=orchestrator,
        crawl_service=crawl_service,
        scrape_service=scrape_service,
        digest_dispatcher=digest_dispatcher,
        email_service=email_service
    )
