import logging
from typing import Iterable

from .broker import EXCHANGE, ROUTING_KEY_CRAWL, ROUTING_KEY_SCRAPE, MessageBroker
from .messages import CrawlTask, ScrapeTask
from ..storage.database import DatabaseManager
from ..storage.models import Article, Source


class CrawlOrchestrator:
    """Fans work out onto the crawl and scrape queues.

    Enqueueing is best-effort: a failure for one source or article is logged
    and the rest of the batch still goes out.
    """

    def __init__(self, broker: MessageBroker, db_manager: DatabaseManager):
        self.broker = broker
        self.db_manager = db_manager
        self.logger = logging.getLogger('queue.producer')

    def enqueue_crawl_source(self, source: Source) -> bool:
        task = CrawlTask.for_source(source)
        try:
            routed = self.broker.publish(EXCHANGE, ROUTING_KEY_CRAWL, task.to_dict())
        except Exception as e:
            self.logger.error(f"Failed to enqueue crawl task for source {source.name}: {e}")
            return False

        self.logger.debug(f"Enqueued crawl task for source {source.name} (ID: {source.id})")
        return routed > 0

    def enqueue_crawl_for_active_sources(self) -> int:
        sources = self.db_manager.find_active_sources()
        self.logger.info(f"Sending {len(sources)} crawl tasks to the queue")

        accepted = sum(1 for source in sources if self.enqueue_crawl_source(source))

        self.logger.info(f"Enqueued {accepted}/{len(sources)} crawl tasks")
        return accepted

    def enqueue_scrape_article(self, article: Article) -> bool:
        task = ScrapeTask.for_article(article)
        try:
            routed = self.broker.publish(EXCHANGE, ROUTING_KEY_SCRAPE, task.to_dict())
        except Exception as e:
            self.logger.error(f"Failed to enqueue scrape task for article {article.id}: {e}")
            return False

        self.logger.debug(f"Enqueued scrape task for article ID: {article.id}")
        return routed > 0

    def enqueue_scrape_for_new_articles(self, articles: Iterable[Article]) -> int:
        articles = list(articles)
        self.logger.info(f"Sending {len(articles)} scrape tasks to the queue")
        return sum(1 for article in articles if self.enqueue_scrape_article(article))
