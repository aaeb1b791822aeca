"""
Durable broker backed by Redis lists.

Every declared queue is a list ``<prefix>:queue:<name>`` holding JSON
envelopes. A consumer moves the head envelope atomically into
``<prefix>:queue:<name>:unacked`` and removes it from there when the message
is settled, so a message is never in both lists. Envelopes left unacked by a
crash are moved back to the head of their queue on ``start``.

Exchanges and bindings are declared in process at startup, the same way the
topology is re-declared against a fresh connection on every boot.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import redis

from .broker import (
    REASON_EXPIRED, REASON_REJECTED, HEADER_RETRY_COUNT,
    HandlerResult, Message, MessageBroker,
)
from ..exceptions import BrokerError

DEFAULT_URL = "redis://localhost:6379/0"


class RedisBroker(MessageBroker):
    def __init__(self, client: Optional[redis.Redis] = None, url: str = DEFAULT_URL,
                 key_prefix: str = "newsagg", max_retries: int = 3,
                 reaper_interval: float = 30.0, poll_interval: float = 0.5,
                 clock: Callable[[], float] = time.time):
        super().__init__()
        self.client = client if client is not None else redis.Redis.from_url(url, decode_responses=True)
        self.key_prefix = key_prefix
        self.max_retries = max_retries
        self.reaper_interval = reaper_interval
        self.poll_interval = poll_interval
        self._clock = clock
        self._reaper: Optional[asyncio.Task] = None
        self._closed = False
        self.logger = logging.getLogger('queue.broker')

    def _key(self, queue: str) -> str:
        return f"{self.key_prefix}:queue:{queue}"

    def _unacked_key(self, queue: str) -> str:
        return f"{self.key_prefix}:queue:{queue}:unacked"

    def _push(self, pipe, exchange: str, message: Message) -> List[str]:
        targets = self._targets(exchange, message.routing_key)
        if not targets:
            self.logger.warning(
                f"Unroutable message on '{exchange}' with key '{message.routing_key}', dropped"
            )
            return targets

        envelope = message.to_envelope()
        for queue in targets:
            pipe.rpush(self._key(queue), envelope)
        return targets

    def _push_dead_letter(self, pipe, queue: str, message: Message, reason: str):
        dead = self._dead_letter_message(queue, message, reason, self._clock())
        if dead is not None:
            self._push(pipe, *dead)

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

        pipe = self.client.pipeline()
        targets = self._push(pipe, exchange, message)
        if not targets:
            return 0
        try:
            pipe.execute()
        except redis.RedisError as e:
            raise BrokerError(f"Cannot publish '{routing_key}' to {exchange}: {e}")
        return len(targets)

    async def consume(self, queue: str) -> Message:
        if queue not in self._queues:
            raise BrokerError(f"Unknown queue: {queue}")
        spec = self._queues[queue]

        while True:
            if self._closed:
                raise BrokerError("Broker is closed")
            try:
                raw = self.client.lmove(self._key(queue), self._unacked_key(queue), 'LEFT', 'RIGHT')
            except redis.RedisError as e:
                self.logger.error(f"Cannot read from '{queue}': {e}")
                raw = None

            if raw is None:
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                message = Message.from_envelope(raw)
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                self.logger.error(f"Dropping corrupt envelope on '{queue}': {e}")
                pipe = self.client.pipeline()
                pipe.lrem(self._unacked_key(queue), 1, raw)
                self._execute(pipe)
                continue

            if spec.ttl_seconds is not None and self._clock() - message.published_at >= spec.ttl_seconds:
                self.logger.warning(f"Message {message.message_id} expired on '{queue}'")
                pipe = self.client.pipeline()
                pipe.lrem(self._unacked_key(queue), 1, raw)
                self._push_dead_letter(pipe, queue, message, REASON_EXPIRED)
                self._execute(pipe)
                continue

            message.delivery_count += 1
            return message

    def settle(self, queue: str, message: Message, result: HandlerResult,
               reason: Optional[str] = None):
        pipe = self.client.pipeline()
        if message.receipt is not None:
            pipe.lrem(self._unacked_key(queue), 1, message.receipt)

        if result == HandlerResult.RETRY and message.delivery_count <= self.max_retries:
            message.headers[HEADER_RETRY_COUNT] = message.delivery_count
            pipe.rpush(self._key(queue), message.to_envelope())
            self.logger.info(
                f"Requeued message {message.message_id} on '{queue}' "
                f"(attempt {message.delivery_count}/{self.max_retries + 1})"
            )
        elif result != HandlerResult.ACK:
            self._push_dead_letter(pipe, queue, message, reason or REASON_REJECTED)

        self._execute(pipe)

    def _execute(self, pipe) -> bool:
        # A failed settle leaves the envelope unacked; start() moves it back.
        try:
            pipe.execute()
            return True
        except redis.RedisError as e:
            self.logger.error(f"Redis transaction failed: {e}")
            return False

    def _expire_queue(self, queue: str) -> int:
        spec = self._queues[queue]
        if spec.ttl_seconds is None:
            return 0

        now = self._clock()
        expired = 0
        for raw in self.client.lrange(self._key(queue), 0, -1):
            try:
                message = Message.from_envelope(raw)
            except (ValueError, KeyError, TypeError, AttributeError):
                continue
            if now - message.published_at < spec.ttl_seconds:
                continue
            # Only the caller that removes the envelope dead-letters it.
            if not self.client.lrem(self._key(queue), 1, raw):
                continue
            pipe = self.client.pipeline()
            self._push_dead_letter(pipe, queue, message, REASON_EXPIRED)
            self._execute(pipe)
            expired += 1

        if expired:
            self.logger.warning(f"{expired} message(s) expired on '{queue}'")
        return expired

    def expire_stale(self) -> int:
        try:
            return sum(self._expire_queue(queue) for queue in list(self._queues))
        except redis.RedisError as e:
            self.logger.error(f"Expiry sweep failed: {e}")
            return 0

    def recover_unacked(self) -> int:
        """Move envelopes left unacked by a previous process back to the head of their queue."""
        recovered = 0
        for queue in self._queues:
            while self.client.lmove(self._unacked_key(queue), self._key(queue), 'RIGHT', 'LEFT'):
                recovered += 1
        if recovered:
            self.logger.warning(f"Recovered {recovered} unacknowledged message(s)")
        return recovered

    def depth(self, queue: str) -> int:
        try:
            return int(self.client.llen(self._key(queue)))
        except redis.RedisError as e:
            raise BrokerError(f"Cannot read depth of '{queue}': {e}")

    async def _reap_forever(self):
        while True:
            await asyncio.sleep(self.reaper_interval)
            self.expire_stale()

    async def start(self):
        try:
            self.client.ping()
            self.recover_unacked()
        except redis.RedisError as e:
            raise BrokerError(f"Cannot connect to Redis: {e}")

        self.logger.info(f"Connected to Redis broker (prefix '{self.key_prefix}')")
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
        self.client.close()
