"""Generic event consumer for Redis Streams with consumer groups."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Coroutine, Mapping, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


EventHandler = Callable[[str, dict[str, Any]], Coroutine[Any, Any, None]]


class EventConsumer:
    """
    Consume events from Redis Streams using consumer groups.

    Example:
        consumer = EventConsumer(
            redis_url="redis://localhost:6379",
            stream_name="booking-events",
            group_name="automation-service",
            consumer_name="automation-worker-1"
        )

        async def handle_booking_created(event_type: str, payload: dict):
            ...

        consumer.register_handler("booking.created", handle_booking_created)
        await consumer.start()
    """

    def __init__(
        self,
        redis_url: str,
        stream_name: str,
        group_name: str,
        consumer_name: str,
        *,
        block_ms: int = 5000,
        count: int = 10,
    ) -> None:
        """
        Args:
            redis_url: Redis connection URL
            stream_name: Name of the Redis Stream to consume
            group_name: Consumer group name (all workers in same group share load)
            consumer_name: Unique name for this consumer instance
            block_ms: Time to block waiting for new messages (milliseconds)
            count: Maximum number of messages to read per batch
        """
        self._redis_url = redis_url
        self._stream_name = stream_name
        self._group_name = group_name
        self._consumer_name = consumer_name
        self._block_ms = block_ms
        self._count = count
        self._handlers: dict[str, EventHandler] = {}
        self._client: Optional[aioredis.Redis] = None
        self._running = False

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self._handlers[event_type] = handler
        logger.info(f"Registered handler for event type: {event_type}")

    def register_handlers(self, handlers: Mapping[str, EventHandler]) -> None:
        for event_type, handler in handlers.items():
            self.register_handler(event_type, handler)

    async def _ensure_consumer_group(self) -> None:
        """Create consumer group if it doesn't exist."""
        try:
            await self._client.xgroup_create(
                name=self._stream_name,
                groupname=self._group_name,
                id="0",
                mkstream=True,
            )
            logger.info(
                f"Created consumer group '{self._group_name}' for stream '{self._stream_name}'"
            )
        except aioredis.ResponseError as e:
            # Group already exists
            if "BUSYGROUP" not in str(e):
                raise

    async def _process_message(self, message_id: bytes, data: dict[bytes, bytes]) -> None:
        """Process a single message from the stream and acknowledge it."""
        try:
            event_type = data.get(b"event_type", b"").decode("utf-8")
            payload = json.loads(data.get(b"payload", b"{}").decode("utf-8"))

            metadata_raw = data.get(b"metadata")
            if metadata_raw:
                # Envelope metadata (tenant id, correlation) fills gaps in the payload
                metadata = json.loads(metadata_raw.decode("utf-8"))
                for key, value in metadata.items():
                    payload.setdefault(key, value)

            handler = self._handlers.get(event_type)
            if handler:
                logger.debug(f"Processing {event_type}: {message_id.decode()}")
                await handler(event_type, payload)
            else:
                logger.debug(f"No handler for event type: {event_type}")

            await self._client.xack(
                self._stream_name,
                self._group_name,
                message_id,
            )

        except Exception as e:
            # left pending, picked up again by _read_pending_messages
            logger.error(f"Error processing message {message_id}: {e}", exc_info=True)

    async def _read_pending_messages(self) -> None:
        """Process messages that were delivered to this consumer but never acknowledged."""
        try:
            pending = await self._client.xpending_range(
                name=self._stream_name,
                groupname=self._group_name,
                min="-",
                max="+",
                count=self._count,
                consumername=self._consumer_name,
            )

            if pending:
                logger.info(f"Found {len(pending)} pending messages to process")

                for entry in pending:
                    message_id = entry["message_id"]
                    messages = await self._client.xrange(
                        self._stream_name,
                        min=message_id,
                        max=message_id,
                    )
                    if messages:
                        _, data = messages[0]
                        await self._process_message(message_id, data)

        except Exception as e:
            logger.error(f"Error reading pending messages: {e}", exc_info=True)

    async def start(self) -> None:
        """Start consuming events (blocking call)."""
        if self._running:
            logger.warning("Consumer already running")
            return

        self._running = True
        self._client = aioredis.Redis.from_url(self._redis_url)

        try:
            await self._ensure_consumer_group()
            logger.info(
                f"Consumer '{self._consumer_name}' started on stream '{self._stream_name}'"
            )

            await self._read_pending_messages()

            while self._running:
                try:
                    messages = await self._client.xreadgroup(
                        groupname=self._group_name,
                        consumername=self._consumer_name,
                        streams={self._stream_name: ">"},
                        count=self._count,
                        block=self._block_ms,
                    )

                    if not messages:
                        continue

                    for _stream, stream_messages in messages:
                        for message_id, data in stream_messages:
                            await self._process_message(message_id, data)

                except asyncio.CancelledError:
                    logger.info("Consumer task cancelled")
                    break
                except Exception as e:
                    logger.error(f"Error in consumer loop: {e}", exc_info=True)
                    await asyncio.sleep(1)

        finally:
            self._running = False
            if self._client:
                await self._client.aclose()
            logger.info(f"Consumer '{self._consumer_name}' stopped")

    async def stop(self) -> None:
        """Stop consuming events."""
        self._running = False
        logger.info("Stopping consumer...")


async def cleanup_consumer(
    consumer: Optional[EventConsumer],
    task: Optional[asyncio.Task],
    log: Optional[logging.Logger] = None,
    *,
    timeout: float = 5.0,
) -> None:
    """Stop a consumer started with ``asyncio.create_task(consumer.start())``."""
    log = log or logger
    if consumer is not None:
        try:
            await consumer.stop()
        except Exception as exc:
            log.warning("Error stopping consumer: %s", exc)
    if task is None or task.done():
        return
    task.cancel()
    try:
        await asyncio.wait_for(task, timeout=timeout)
    except asyncio.CancelledError:
        pass
    except asyncio.TimeoutError:
        log.warning("Consumer task did not stop within %.1fs", timeout)
