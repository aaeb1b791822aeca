import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .broker import (
    QUEUE_CRAWL_RSS, QUEUE_DEAD_LETTER, QUEUE_EMAIL_DIGEST, QUEUE_SCRAPE_ARTICLE,
    REASON_REJECTED, HandlerResult, Message, MessageBroker,
)
from .consumers import CrawlConsumer, DeadLetterConsumer, DigestConsumer, ScrapeConsumer
from .messages import CrawlTask, DigestTask, ScrapeTask
from ..exceptions import BrokerError, MessageDecodeError

DEFAULT_CONCURRENCY = {
    'crawl': 3,
    'scrape': 5,
    'digest': 3,
    'dead_letter': 1,
}


def _payload(message: Message) -> Dict[str, Any]:
    payload = message.json()
    if not isinstance(payload, dict):
        raise MessageDecodeError(f"Expected a JSON object, got {type(payload).__name__}")
    return payload


def decode_crawl_task(message: Message) -> CrawlTask:
    task = CrawlTask.from_dict(_payload(message))
    task.retry_count = message.retry_count
    return task


def decode_scrape_task(message: Message) -> ScrapeTask:
    task = ScrapeTask.from_dict(_payload(message))
    task.retry_count = message.retry_count
    return task


def decode_digest_task(message: Message) -> DigestTask:
    return DigestTask.from_dict(_payload(message))


class WorkerPool:
    """A fixed number of asyncio workers draining one queue.

    Each worker holds at most one message at a time. Undecodable messages go
    straight to the dead-letter exchange; a handler exception counts as RETRY.
    """

    def __init__(self, broker: MessageBroker, queue: str,
                 handler: Callable[[Any], Awaitable[HandlerResult]],
                 decode: Optional[Callable[[Message], Any]] = None,
                 concurrency: int = 1, name: Optional[str] = None):
        self.broker = broker
        self.queue = queue
        self.handler = handler
        self.decode = decode
        self.concurrency = max(1, concurrency)
        self.name = name or queue
        self.processed = 0
        self.failed = 0
        self._tasks: List[asyncio.Task] = []
        self._busy: Dict[int, bool] = {}
        self._stopping = False
        self.logger = logging.getLogger(f'worker.pool.{self.name}')

    async def start(self):
        if self._tasks:
            return
        self._stopping = False
        for index in range(self.concurrency):
            self._busy[index] = False
            self._tasks.append(asyncio.create_task(
                self._work(index), name=f"{self.name}-worker-{index}"
            ))
        self.logger.info(f"Started {self.concurrency} workers on '{self.queue}'")

    async def _work(self, index: int):
        while not self._stopping:
            try:
                message = await self.broker.consume(self.queue)
            except BrokerError as e:
                if self._stopping:
                    break
                self.logger.error(f"Worker {index} could not consume from '{self.queue}': {e}")
                break

            self._busy[index] = True
            try:
                await self.process(message)
            finally:
                self._busy[index] = False

    async def process(self, message: Message) -> HandlerResult:
        try:
            task = self.decode(message) if self.decode else message
        except (MessageDecodeError, ValueError) as e:
            self.logger.error(f"Poison message {message.message_id} on '{self.queue}': {e}")
            self.failed += 1
            self.broker.settle(self.queue, message, HandlerResult.DEAD_LETTER, REASON_REJECTED)
            return HandlerResult.DEAD_LETTER

        try:
            result = await self.handler(task)
        except asyncio.CancelledError:
            # Interrupted mid-handler: hand the message back for another worker.
            self.broker.settle(self.queue, message, HandlerResult.RETRY)
            raise
        except Exception as e:
            self.logger.error(f"Handler failed for message {message.message_id} on '{self.queue}': {e}")
            result = HandlerResult.RETRY

        if result == HandlerResult.ACK:
            self.processed += 1
        else:
            self.failed += 1
        self.broker.settle(self.queue, message, result)
        return result

    @property
    def busy_workers(self) -> int:
        return sum(1 for busy in self._busy.values() if busy)

    async def stop(self, drain_timeout: float = 30.0):
        """Stop taking messages, cancel idle workers, let in-flight ones finish."""
        self._stopping = True
        if not self._tasks:
            return

        in_flight = []
        for index, task in enumerate(self._tasks):
            if self._busy.get(index):
                in_flight.append(task)
            else:
                task.cancel()

        if in_flight:
            self.logger.info(f"Draining {len(in_flight)} in-flight messages on '{self.queue}'")
            _, pending = await asyncio.wait(in_flight, timeout=drain_timeout)
            for task in pending:
                self.logger.warning(f"Drain timeout on '{self.queue}', cancelling {task.get_name()}")
                task.cancel()

        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._busy = {}
        self.logger.info(f"Workers on '{self.queue}' stopped")

    def status(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'queue': self.queue,
            'concurrency': self.concurrency,
            'busy': self.busy_workers,
            'processed': self.processed,
            'failed': self.failed,
        }


def build_worker_pools(services) -> List[WorkerPool]:
    workers_config = services.config.get_workers_config()

    def concurrency(key: str) -> int:
        return int(workers_config.get(f'{key}_concurrency', DEFAULT_CONCURRENCY[key]))

    crawl = CrawlConsumer(services.db_manager, services.crawl_service)
    scrape = ScrapeConsumer(services.scrape_service)
    digest = DigestConsumer(services.digest_dispatcher)
    dead_letter = DeadLetterConsumer()

    return [
        WorkerPool(services.broker, QUEUE_CRAWL_RSS, crawl.handle, decode_crawl_task,
                   concurrency('crawl'), name='crawl'),
        WorkerPool(services.broker, QUEUE_SCRAPE_ARTICLE, scrape.handle, decode_scrape_task,
                   concurrency('scrape'), name='scrape'),
        WorkerPool(services.broker, QUEUE_EMAIL_DIGEST, digest.handle, decode_digest_task,
                   concurrency('digest'), name='digest'),
        WorkerPool(services.broker, QUEUE_DEAD_LETTER, dead_letter.handle, None,
                   concurrency('dead_letter'), name='dead_letter'),
    ]
