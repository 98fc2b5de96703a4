"""
Site Status — RabbitMQ task queue.

One channel per adapter with prefetch 1: at most one unacknowledged task is
in flight at a time. Successful handlers ack; any handler failure (including
an undecodable body) rejects the message without requeue.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika.abc import (
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustChannel,
    AbstractRobustConnection,
)

logger = logging.getLogger(__name__)

MAX_RETRIES = 5          # connection attempts before giving up
RETRY_DELAY = 1.0        # seconds; attempt n waits 2**n * RETRY_DELAY
PREFETCH_COUNT = 1

TaskHandler = Callable[[Any], Awaitable[None]]


class QueueError(Exception):
    """Base error of the broker adapter."""


class QueueConnectionError(QueueError):
    """The broker could not be reached after all retries."""


class TaskQueue:
    """Durable task queue on top of an aio-pika robust connection."""

    def __init__(self, url: str, *, retry_delay: float = RETRY_DELAY):
        self._url = url
        self._retry_delay = retry_delay
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractRobustChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._handler: Optional[TaskHandler] = None
        self._consumer_tag: Optional[str] = None
        self._resume_task: Optional[asyncio.Task] = None
        self._processed = 0
        self._rejected = 0

    # ── Connection ──────────────────────────────────────

    async def connect(self) -> None:
        """Connect and open the channel. Raises QueueConnectionError when all retries fail."""
        last_err: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                self._connection = await aio_pika.connect_robust(self._url)
                self._channel = await self._connection.channel()
                await self._channel.set_qos(prefetch_count=PREFETCH_COUNT)
                self._connection.close_callbacks.add(self._on_connection_close)
                self._connection.reconnect_callbacks.add(self._on_reconnect)
                logger.info("Connected to broker")
                return
            except Exception as e:
                last_err = e
                logger.error("Error connecting to message broker: %s", e)
                if attempt < MAX_RETRIES:
                    delay = (2 ** attempt) * self._retry_delay
                    logger.info("Retrying broker connection in %.1fs (%d/%d)", delay, attempt, MAX_RETRIES)
                    await asyncio.sleep(delay)

        logger.error("Max retries reached. Giving up on broker connection")
        raise QueueConnectionError(f"Could not connect to message broker: {last_err}") from last_err

    async def close(self) -> None:
        if self._resume_task:
            self._resume_task.cancel()
            self._resume_task = None
        try:
            if self._channel and not self._channel.is_closed:
                await self._channel.close()
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
            logger.info("Connection to broker closed")
        except Exception as e:
            logger.error("Error closing broker connection: %s", e)
        finally:
            self._channel = None
            self._connection = None
            self._queue = None
            self._consumer_tag = None

    def _on_connection_close(self, _sender: Any, exc: BaseException | None = None) -> None:
        if exc:
            logger.warning("Connection to broker lost: %s. Reconnecting...", exc)
        else:
            logger.info("Connection to broker closed by client")

    def _on_reconnect(self, _sender: Any) -> None:
        logger.info("Reconnected to broker")

    # ── Consume / publish ───────────────────────────────

    async def consume(self, queue_name: str, handler: TaskHandler) -> None:
        """Register ``handler`` for every message delivered on ``queue_name``.

        Signature: ``async handler(payload) -> None``; raising rejects the message.
        """
        if not self._channel:
            raise QueueError("Channel is not available. Connect to the broker first.")

        self._handler = handler
        self._queue = await self._channel.declare_queue(queue_name, durable=True)
        self._consumer_tag = await self._queue.consume(self._on_message)
        logger.info("Listening to the queue: %s", queue_name)

    async def publish(self, queue_name: str, payload: Any) -> None:
        """Enqueue one persistent JSON task."""
        if not self._channel:
            raise QueueError("Channel is not available. Connect to the broker first.")

        await self._channel.declare_queue(queue_name, durable=True)
        message = aio_pika.Message(
            body=json.dumps(payload).encode(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await self._channel.default_exchange.publish(message, routing_key=queue_name)
        logger.debug("Task published to %s: %s", queue_name, payload)

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        body = message.body.decode(errors="replace")
        logger.debug("Received message: %s", body)

        try:
            payload = json.loads(body)
            if self._handler:
                await self._handler(payload)
        except Exception as e:
            self._rejected += 1
            logger.error("Error processing message: %s", e)
            await message.reject(requeue=False)
            return

        self._processed += 1
        await message.ack()

    # ── Backpressure ────────────────────────────────────

    async def pause(self, seconds: float) -> None:
        """Stop taking deliveries for ``seconds``, then resume on the same queue."""
        if not self._queue or not self._consumer_tag:
            return
        await self._queue.cancel(self._consumer_tag)
        self._consumer_tag = None
        logger.warning("Consumption paused for %.0fs", seconds)

        if self._resume_task:
            self._resume_task.cancel()
        self._resume_task = asyncio.create_task(self._resume_after(seconds))

    async def _resume_after(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        if self._queue and self._consumer_tag is None:
            self._consumer_tag = await self._queue.consume(self._on_message)
            logger.info("Consumption resumed on %s", self._queue.name)
        self._resume_task = None

    @property
    def is_paused(self) -> bool:
        return self._queue is not None and self._consumer_tag is None

    @property
    def stats(self) -> dict:
        return {"processed": self._processed, "rejected": self._rejected, "paused": self.is_paused}


async def queue_site_to_audit(task_queue: TaskQueue, queue_name: str, site_id: str) -> None:
    """Queue a single site to audit."""
    await task_queue.publish(queue_name, {"siteId": site_id})


async def queue_sites_to_audit(task_queue: TaskQueue, queue_name: str, site_ids: list[str]) -> None:
    """Queue many sites to audit, one task each."""
    for site_id in site_ids:
        await task_queue.publish(queue_name, {"siteId": site_id})
    logger.info("%d audit tasks sent to %s", len(site_ids), queue_name)
