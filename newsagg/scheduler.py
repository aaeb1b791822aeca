import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from .crawler.crawl_service import ARTICLE_CACHE_PATTERN
from .utils.config import Config


class FixedDelaySweep:
    """A recurring job whose next run is scheduled only after the current one ends.

    Each run registers a one-shot DateTrigger for ``delay_seconds`` after it
    returns, so a slow run pushes the next one back instead of overlapping it.
    """

    def __init__(self, scheduler: AsyncIOScheduler, job_id: str, name: str,
                 sweep: Callable[[], Awaitable[Any]], delay_seconds: float,
                 initial_delay_seconds: float = 0):
        self.scheduler = scheduler
        self.job_id = job_id
        self.name = name
        self.sweep = sweep
        self.delay_seconds = delay_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.running = False
        self.stopped = False
        self.logger = logging.getLogger('scheduler')

    def schedule(self, delay_seconds: float):
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self.scheduler.add_job(
            self.run,
            DateTrigger(run_date=run_date),
            id=self.job_id,
            name=self.name,
            replace_existing=True,
            misfire_grace_time=None
        )

    def start(self):
        self.stopped = False
        self.schedule(self.initial_delay_seconds)

    def stop(self):
        self.stopped = True

    async def run(self):
        self.running = True
        try:
            await self.sweep()
        except Exception as e:
            self.logger.error(f"Error during {self.name.lower()}: {e}")
        finally:
            self.running = False
            if not self.stopped:
                self.schedule(self.delay_seconds)


class NewsScheduler:
    def __init__(self, config: Config, services):
        self.config = config
        self.services = services
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.logger = logging.getLogger('scheduler')
        self.sweeps: Dict[str, FixedDelaySweep] = {}

        self._setup_jobs()

    def _setup_jobs(self):
        scheduling_config = self.config.get_scheduling_config()

        crawl_interval = scheduling_config.get('crawl_interval_minutes', 15)
        scrape_interval = scheduling_config.get('scrape_interval_minutes', 5)

        self.sweeps['crawl_sources'] = FixedDelaySweep(
            self.scheduler,
            job_id='crawl_sources',
            name='Enqueue crawl tasks for active sources',
            sweep=self.run_ingestion_sweep,
            delay_seconds=crawl_interval * 60,
            initial_delay_seconds=scheduling_config.get('crawl_initial_delay_seconds', 30)
        )

        self.sweeps['scrape_articles'] = FixedDelaySweep(
            self.scheduler,
            job_id='scrape_articles',
            name='Scrape full content for new articles',
            sweep=self.run_scrape_sweep,
            delay_seconds=scrape_interval * 60,
            initial_delay_seconds=scheduling_config.get('scrape_initial_delay_seconds', 60)
        )

        for sweep in self.sweeps.values():
            sweep.start()

        cleanup_hour = scheduling_config.get('cleanup_hour', 2)
        cleanup_minute = scheduling_config.get('cleanup_minute', 0)
        self.scheduler.add_job(
            self.cleanup_old_articles,
            CronTrigger(hour=cleanup_hour, minute=cleanup_minute, timezone=timezone.utc),
            id='cleanup_articles',
            name='Clean up old articles',
            replace_existing=True
        )

        if self.services.email_service:
            digest_config = self.config.get_digest_config()
            send_hour = digest_config.get('send_time_hour', 7)
            send_minute = digest_config.get('send_time_minute', 0)

            self.scheduler.add_job(
                self.dispatch_digests,
                CronTrigger(hour=send_hour, minute=send_minute, timezone=timezone.utc),
                id='dispatch_digests',
                name='Enqueue due digest emails',
                replace_existing=True
            )
            self.logger.info(f"Scheduled digest dispatch at {send_hour:02d}:{send_minute:02d} daily")
        else:
            self.logger.info("Email delivery disabled, digest dispatch not scheduled")

        self.logger.info(f"Scheduled crawling every {crawl_interval} minutes after each sweep")
        self.logger.info(f"Scheduled scraping every {scrape_interval} minutes after each sweep")
        self.logger.info(f"Scheduled cleanup at {cleanup_hour:02d}:{cleanup_minute:02d} daily")

    async def run_ingestion_sweep(self):
        self.logger.info("Starting scheduled crawl of active sources")
        count = self.services.orchestrator.enqueue_crawl_for_active_sources()
        self.logger.info(f"Crawl sweep enqueued {count} sources")

    async def run_scrape_sweep(self):
        batch_size = self.config.get_scheduling_config().get('scrape_batch_size', 10)
        await self.services.scrape_service.scrape_backlog(batch_size)

    async def cleanup_old_articles(self):
        self.logger.info("Starting scheduled cleanup of old articles")
        try:
            db_config = self.config.get_database_config()
            retention_days = db_config.get('retention_days', 30)

            deleted_count = self.services.db_manager.cleanup_old_articles(retention_days)
            if deleted_count:
                self.services.cache.invalidate(ARTICLE_CACHE_PATTERN)
            self.logger.info(f"Cleaned up {deleted_count} old articles (older than {retention_days} days)")

        except Exception as e:
            self.logger.error(f"Error during cleanup: {e}")

    async def dispatch_digests(self):
        self.logger.info("Starting scheduled digest dispatch")
        try:
            self.services.digest_dispatcher.enqueue_due_digests()
        except Exception as e:
            self.logger.error(f"Error dispatching digests: {e}")

    def start(self):
        self.logger.info("Starting news scheduler")
        self.scheduler.start()

    def shutdown(self):
        self.logger.info("Shutting down news scheduler")
        for sweep in self.sweeps.values():
            sweep.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def get_job_status(self) -> Dict[str, Any]:
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger),
                'running': self.sweeps[job.id].running if job.id in self.sweeps else None
            })

        return {
            'running': self.scheduler.running,
            'jobs': jobs,
            'status_time': datetime.now(timezone.utc).isoformat()
        }
