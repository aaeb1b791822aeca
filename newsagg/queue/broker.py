"""
Message broker abstraction and the in-process implementation.

Topology::

    newsagg.exchange (direct)
      crawl.rss       -> crawl.rss.queue       ttl 1h
      scrape.article  -> scrape.article.queue  ttl 1h
      email.digest    -> email.digest.queue    ttl 30min

    dead.letter.exchange (topic)
      #               -> dead.letter.queue

A message that expires unconsumed, or that its handler rejects beyond the
retry budget, is republished to the queue's dead-letter exchange with
``x-original-queue`` and ``x-death-reason`` headers.

``InMemoryBroker`` keeps messages in the process; the durable backend used in
production is ``redis_broker.RedisBroker``.
"""
import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ..exceptions import BrokerError

EXCHANGE = "newsagg.exchange"
EXCHANGE_DEAD_LETTER = "dead.letter.exchange"

QUEUE_CRAWL_RSS = "crawl.rss.queue"
ROUTING_KEY_CRAWL = "crawl.rss"

QUEUE_SCRAPE_ARTICLE = "scrape.article.queue"
ROUTING_KEY_SCRAPE = "scrape.article"

QUEUE_EMAIL_DIGEST = "email.digest.queue"
ROUTING_KEY_DIGEST = "email.digest"

QUEUE_DEAD_LETTER = "dead.letter.queue"

HEADER_ORIGINAL_QUEUE = "x-original-queue"
HEADER_DEATH_REASON = "x-death-reason"
HEADER_RETRY_COUNT = "x-retry-count"

REASON_EXPIRED = "expired"
REASON_REJECTED = "rejected"


class HandlerResult(str, Enum):
    ACK = "ack"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass
class Message:
    body: bytes
    routing_key: str
    published_at: float
    headers: Dict[str, Any] = field(default_factory=dict)
    delivery_count: int = 0
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    receipt: Optional[str] = field(default=None, repr=False, compare=False)

    def json(self) -> Any:
        return json.loads(self.body.decode('utf-8'))

    @property
    def retry_count(self) -> int:
        return max(self.delivery_count - 1, 0)

    def to_envelope(self) -> str:
        return json.dumps({
            'id': self.message_id,
            'routingKey': self.routing_key,
            'publishedAt': self.published_at,
            'headers': self.headers,
            'deliveryCount': self.delivery_count,
            'body': self.body.decode('utf-8'),
        })

    @classmethod
    def from_envelope(cls, raw: str) -> 'Message':
        data = json.loads(raw)
        return cls(
            body=data['body'].encode('utf-8'),
            routing_key=data['routingKey'],
            published_at=float(data['publishedAt']),
            headers=dict(data.get('headers') or {}),
            delivery_count=int(data.get('deliveryCount', 0)),
            message_id=data.get('id') or uuid.uuid4().hex,
            receipt=raw,
        )


@dataclass
class QueueSpec:
    name: str
    ttl_seconds: Optional[float] = None
    dead_letter_exchange: Optional[str] = None
    dead_letter_routing_key: Optional[str] = None
    durable: bool = True


def topic_matches(binding_key: str, routing_key: str) -> bool:
    """AMQP topic matching: ``*`` is exactly one word, ``#`` is zero or more."""
    def match(pattern: List[str], words: List[str]) -> bool:
        if not pattern:
            return not words
        head, rest = pattern[0], pattern[1:]
        if head == '#':
            return any(match(rest, words[i:]) for i in range(len(words) + 1))
        if not words:
            return False
        if head == '*' or head == words[0]:
            return match(rest, words[1:])
        return False

    return match(binding_key.split('.'), routing_key.split('.'))


class MessageBroker(ABC):
    """Exchanges, queues and bindings are declared the same way for every
    backend; subclasses own message storage and delivery."""

    def __init__(self):
        self._exchanges: Dict[str, str] = {}
        self._bindings: Dict[str, List[Tuple[str, str]]] = {}
        self._queues: Dict[str, QueueSpec] = {}

    def declare_exchange(self, name: str, kind: str = "direct"):
        if kind not in ("direct", "topic"):
            raise BrokerError(f"Unsupported exchange type: {kind}")
        self._exchanges[name] = kind
        self._bindings.setdefault(name, [])

    def declare_queue(self, spec: QueueSpec):
        self._queues[spec.name] = spec

    def bind(self, queue: str, exchange: str, binding_key: str):
        if exchange not in self._exchanges:
            raise BrokerError(f"Unknown exchange: {exchange}")
        if queue not in self._queues:
            raise BrokerError(f"Unknown queue: {queue}")
        if (binding_key, queue) not in self._bindings[exchange]:
            self._bindings[exchange].append((binding_key, queue))

    def _targets(self, exchange: str, routing_key: str) -> List[str]:
        kind = self._exchanges.get(exchange)
        if kind is None:
            raise BrokerError(f"Unknown exchange: {exchange}")

        targets = []
        for binding_key, queue in self._bindings[exchange]:
            if kind == "direct":
                matched = binding_key == routing_key
            else:
                matched = topic_matches(binding_key, routing_key)
            if matched and queue not in targets:
                targets.append(queue)
        return targets

    def _encode(self, routing_key: str, payload: Any) -> bytes:
        try:
            return json.dumps(payload).encode('utf-8')
        except (TypeError, ValueError) as e:
            raise BrokerError(f"Cannot serialize message for '{routing_key}': {e}")

    def _dead_letter_message(self, queue: str, message: Message, reason: str,
                             published_at: float) -> Optional[Tuple[str, Message]]:
        """Build the dead-lettered copy of ``message``, or None when ``queue`` has no DLX."""
        spec = self._queues[queue]
        if not spec.dead_letter_exchange:
            self.logger.warning(
                f"Message {message.message_id} on '{queue}' dropped ({reason}); "
                f"queue has no dead-letter exchange"
            )
            return None

        headers = dict(message.headers)
        headers[HEADER_ORIGINAL_QUEUE] = queue
        headers[HEADER_DEATH_REASON] = reason
        return spec.dead_letter_exchange, Message(
            body=message.body,
            routing_key=spec.dead_letter_routing_key or message.routing_key,
            published_at=published_at,
            headers=headers,
            message_id=message.message_id,
        )

    @abstractmethod
    def publish(self, exchange: str, routing_key: str, payload: Any,
                headers: Optional[Dict[str, Any]] = None) -> int:
        """Serialize and route a payload. Returns the number of queues it reached."""

    @abstractmethod
    async def consume(self, queue: str) -> Message:
        """Wait for and hand out the next message (one at a time per caller)."""

    @abstractmethod
    def settle(self, queue: str, message: Message, result: HandlerResult,
               reason: Optional[str] = None):
        ...

    @abstractmethod
    def expire_stale(self) -> int:
        ...

    @abstractmethod
    def depth(self, queue: str) -> int:
        ...

    def depths(self) -> Dict[str, int]:
        return {queue: self.depth(queue) for queue in self._queues}

    async def start(self):
        pass

    async def close(self):
        pass


class InMemoryBroker(MessageBroker):
    """Process-local broker. Messages do not survive a restart; used in tests
    and when ``broker.backend`` is ``memory``."""

    def __init__(self, max_retries: int = 3, reaper_interval: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__()
        self.max_retries = max_retries
        self.reaper_interval = reaper_interval
        self._clock = clock
        self._messages: Dict[str, Deque[Message]] = {}
        self._ready: Dict[str, asyncio.Event] = {}
        self._reaper: Optional[asyncio.Task] = None
        self._closed = False
        self.logger = logging.getLogger('queue.broker')

    def declare_queue(self, spec: QueueSpec):
        super().declare_queue(spec)
        self._messages.setdefault(spec.name, deque())
        self._ready.setdefault(spec.name, asyncio.Event())

    def publish(self, exchange: str, routing_key: str, payload: Any,
                headers: Optional[Dict[str, Any]] = None) -> int:
        if self._closed:
            raise BrokerError("Broker is closed")
        message = Message(
            body=self._encode(routing_key, payload),
            routing_key=routing_key,
            published_at=self._clock(),
            headers=dict(headers or {}),
        )
        return self._route(exchange, message)

    def _route(self, exchange: str, message: Message) -> int:
        targets = self._targets(exchange, message.routing_key)
        if not targets:
            self.logger.warning(
                f"Unroutable message on '{exchange}' with key '{message.routing_key}', dropped"
            )
            return 0

        for queue in targets:
            copy = Message(
                body=message.body,
                routing_key=message.routing_key,
                published_at=message.published_at,
                headers=dict(message.headers),
                message_id=message.message_id,
            )
            self._messages[queue].append(copy)
            self._ready[queue].set()
        return len(targets)

    async def consume(self, queue: str) -> Message:
        if queue not in self._queues:
            raise BrokerError(f"Unknown queue: {queue}")
        while True:
            if self._closed:
                raise BrokerError("Broker is closed")
            self._expire_queue(queue)
            pending = self._messages[queue]
            if pending:
                message = pending.popleft()
                message.delivery_count += 1
                return message
            self._ready[queue].clear()
            await self._ready[queue].wait()

    def settle(self, queue: str, message: Message, result: HandlerResult,
               reason: Optional[str] = None):
        if result == HandlerResult.ACK:
            return

        if result == HandlerResult.RETRY and message.delivery_count <= self.max_retries:
            message.headers[HEADER_RETRY_COUNT] = message.delivery_count
            self._messages[queue].append(message)
            self._ready[queue].set()
            self.logger.info(
                f"Requeued message {message.message_id} on '{queue}' "
                f"(attempt {message.delivery_count}/{self.max_retries + 1})"
            )
            return

        self._dead_letter(queue, message, reason or REASON_REJECTED)

    def _dead_letter(self, queue: str, message: Message, reason: str):
        dead = self._dead_letter_message(queue, message, reason, self._clock())
        if dead is not None:
            self._route(*dead)

    def _expire_queue(self, queue: str) -> int:
        spec = self._queues[queue]
        pending = self._messages[queue]
        if spec.ttl_seconds is None or not pending:
            return 0

        now = self._clock()
        kept = deque()
        expired = []
        for message in pending:
            if now - message.published_at >= spec.ttl_seconds:
                expired.append(message)
            else:
                kept.append(message)
        if not expired:
            return 0

        self._messages[queue] = kept
        for message in expired:
            self._dead_letter(queue, message, REASON_EXPIRED)
        self.logger.warning(f"{len(expired)} message(s) expired on '{queue}'")
        return len(expired)

    def expire_stale(self) -> int:
        return sum(self._expire_queue(queue) for queue in list(self._queues))

    def depth(self, queue: str) -> int:
        return len(self._messages.get(queue, ()))

    async def _reap_forever(self):
        while True:
            await asyncio.sleep(self.reaper_interval)
            self.expire_stale()

    async def start(self):
        if self._reaper is None:
            self._reaper = asyncio.create_task(self._reap_forever())

    async def close(self):
        self._closed = True
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
        for event in self._ready.values():
            event.set()


def declare_topology(broker: MessageBroker, crawl_ttl: float = 3600,
                     scrape_ttl: float = 3600, digest_ttl: float = 1800):
    broker.declare_exchange(EXCHANGE, "direct")
    broker.declare_exchange(EXCHANGE_DEAD_LETTER, "topic")

    for queue, routing_key, ttl in (
        (QUEUE_CRAWL_RSS, ROUTING_KEY_CRAWL, crawl_ttl),
        (QUEUE_SCRAPE_ARTICLE, ROUTING_KEY_SCRAPE, scrape_ttl),
        (QUEUE_EMAIL_DIGEST, ROUTING_KEY_DIGEST, digest_ttl),
    ):
        broker.declare_queue(QueueSpec(
            name=queue,
            ttl_seconds=ttl,
            dead_letter_exchange=EXCHANGE_DEAD_LETTER,
            dead_letter_routing_key=f"dead.{routing_key}",
        ))
        broker.bind(queue, EXCHANGE, routing_key)

    broker.declare_queue(QueueSpec(name=QUEUE_DEAD_LETTER))
    broker.bind(QUEUE_DEAD_LETTER, EXCHANGE_DEAD_LETTER, "#")
