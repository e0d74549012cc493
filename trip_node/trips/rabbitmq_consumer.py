"""
RabbitMQ consumer for the trip node
Consumes telemetry messages and feeds them to the trip pipeline.
Ack only after the unit of work committed; decode failures are dead-lettered at once;
store failures are requeued until max_retries, then dead-lettered.
"""
import asyncio
import hashlib
import logging
from typing import Any, Dict, List, Optional

import aio_pika
from aio_pika import ExchangeType, IncomingMessage
from aio_pika.abc import AbstractChannel, AbstractQueue, AbstractRobustConnection
from aio_pika.exceptions import AMQPError

import metrics
from config import Config, ServerParams

from . import health_server
from .pipeline import TripPipeline
from .processor import ProcessOutcome
from .retry_tracker import clear_retry_count, increment_retry_count

logger = logging.getLogger(__name__)


def _message_id(message: IncomingMessage) -> str:
    if message.message_id:
        return message.message_id
    return hashlib.sha256(message.body).hexdigest()


class TripEventConsumer:
    """One channel consuming the trip events queue; concurrency bounded by prefetch_count."""

    def __init__(self, queue_name: str, pipeline: TripPipeline, max_retries: int = 5, worker_id: int = 0):
        self.queue_name = queue_name
        self.pipeline = pipeline
        self.max_retries = max_retries
        self.worker_id = worker_id
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None
        self._consuming = False
        self._stop_event = asyncio.Event()
        self._inflight = 0
        self._processed = 0
        self._duplicates = 0
        self._rejected = 0
        self._errors = 0

    @property
    def name(self) -> str:
        return f"{self.queue_name}#{self.worker_id}"

    def _queue_arguments(self) -> Dict[str, Any]:
        rabbitmq_config = Config.load().get('rabbitmq', {})
        return {
            "x-dead-letter-exchange": rabbitmq_config.get('dead_letter_exchange', 'dlx_tracking_data'),
            "x-dead-letter-routing-key": rabbitmq_config.get('dead_letter_routing_key', 'dlq_trip_events'),
        }

    async def connect(self, retry: bool = True):
        """
        Connect to RabbitMQ, declare exchange, queue and dead-letter queue.

        Args:
            retry: If True, retry connection indefinitely with exponential backoff
        """
        async def _connect():
            rabbitmq_config = Config.load().get('rabbitmq', {})
            host = rabbitmq_config.get('host', 'localhost')
            port = rabbitmq_config.get('port', 5672)
            virtual_host = rabbitmq_config.get('virtual_host', '/')
            username = rabbitmq_config.get('username', 'guest')
            password = rabbitmq_config.get('password', 'guest')
            exchange_name = rabbitmq_config.get('exchange', 'tracking_data_exchange')
            routing_key = rabbitmq_config.get('routing_key', '#')
            dlx_name = rabbitmq_config.get('dead_letter_exchange', 'dlx_tracking_data')
            dlq_routing_key = rabbitmq_config.get('dead_letter_routing_key', 'dlq_trip_events')

            logger.info(f"[{self.name}] Connecting to RabbitMQ at {host}:{port}...")
            self.connection = await aio_pika.connect_robust(
                host=host, port=port, login=username, password=password, virtualhost=virtual_host
            )
            self.channel = await self.connection.channel()

            prefetch = ServerParams.get_int('consumer.prefetch_count', 50)
            await self.channel.set_qos(prefetch_count=prefetch)

            exchange = await self.channel.declare_exchange(exchange_name, ExchangeType.TOPIC, durable=True)

            dlx = await self.channel.declare_exchange(dlx_name, ExchangeType.DIRECT, durable=True)
            dlq = await self.channel.declare_queue(f"{self.queue_name}_dlq", durable=True)
            await dlq.bind(dlx, routing_key=dlq_routing_key)

            self.queue = await self.channel.declare_queue(
                self.queue_name,
                durable=True,
                arguments=self._queue_arguments()
            )
            await self.queue.bind(exchange, routing_key=routing_key)

            metrics.set_connection_connected(self.queue_name, True)
            health_server.set_rabbitmq_ready(True)
            logger.info(f"[{self.name}] ✓ Connected to RabbitMQ, queue: {self.queue_name}, bound to {routing_key}")

        if retry:
            from .retry_handler import retry_with_backoff
            await retry_with_backoff(
                _connect,
                max_retries=-1,
                initial_delay=1.0,
                max_delay=30.0
            )
        else:
            await _connect()

    def _connection_lost(self) -> bool:
        return (
            self.connection is None or self.connection.is_closed
            or self.channel is None or self.channel.is_closed
            or self.queue is None
        )

    async def _process_message(self, message: IncomingMessage):
        """Callback for queue.consume(): settle the message according to the pipeline outcome"""
        message_id = _message_id(message)
        self._inflight += 1
        try:
            try:
                result = await self.pipeline.handle(message.body, message_id=message_id)
            except Exception as e:
                self._errors += 1
                await self._handle_failure(message, message_id, e)
                return

            if result.outcome == ProcessOutcome.REJECTED:
                self._rejected += 1
                await message.reject(requeue=False)
                metrics.record_dlq_message(self.queue_name, "decode_error")
                logger.info(f"[{self.name}] Undecodable message sent to DLQ: {message_id}")
                return

            await message.ack()
            if result.outcome == ProcessOutcome.DUPLICATE:
                self._duplicates += 1
            self._processed += 1
            if message.redelivered:
                await clear_retry_count(message_id)

            if self._processed % 1000 == 0:
                logger.info(f"[{self.name}] Milestone: processed {self._processed} messages ({self._duplicates} duplicates)")
        finally:
            self._inflight -= 1

    async def _handle_failure(self, message: IncomingMessage, message_id: str, error: Exception) -> None:
        retry_count = await increment_retry_count(message_id, self.queue_name, str(error))

        if retry_count >= self.max_retries:
            logger.error(
                f"[{self.name}] ✗ Message failed {retry_count} times - sending to DLQ. "
                f"Message ID: {message_id}, Error: {error}",
                exc_info=error,
            )
            await message.nack(requeue=False)
            metrics.record_dlq_message(self.queue_name, "max_retries")
            await clear_retry_count(message_id)
        else:
            logger.warning(
                f"[{self.name}] ✗ Message failed (retry {retry_count}/{self.max_retries}): {error}. "
                f"Message ID: {message_id}, Redelivered: {message.redelivered}"
            )
            await message.nack(requeue=True)

    async def start_consuming(self):
        """
        Consume until stop() is called.
        Reconnects (with retry) whenever the connection or channel is lost.
        """
        self._consuming = True
        self._stop_event.clear()

        while self._consuming:
            try:
                if self._connection_lost():
                    await self.connect(retry=True)

                self._consumer_tag = await self.queue.consume(self._process_message, no_ack=False)
                logger.info(f"[{self.name}] ✓ Consumer registered, waiting for messages...")

                while self._consuming and not self._connection_lost():
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=1.0)
                    except asyncio.TimeoutError:
                        continue

                if self._consuming:
                    logger.warning(f"[{self.name}] Connection lost during consumption, reconnecting...")
                    metrics.set_connection_connected(self.queue_name, False)
                    health_server.set_rabbitmq_ready(False)
            except asyncio.CancelledError:
                logger.info(f"[{self.name}] Consumption cancelled")
                break
            except (ConnectionError, OSError, AMQPError) as e:
                logger.warning(f"[{self.name}] Connection error during consumption: {e}. Retrying in 5s...")
                metrics.set_connection_connected(self.queue_name, False)
                await asyncio.sleep(5)

        if self.queue is not None and self._consumer_tag is not None:
            try:
                await self.queue.cancel(self._consumer_tag)
            except Exception as e:
                logger.debug(f"[{self.name}] Error cancelling consumer: {e}")
            self._consumer_tag = None
        logger.info(f"[{self.name}] Exiting start_consuming()")

    def stop(self) -> None:
        self._consuming = False
        self._stop_event.set()

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight messages to settle."""
        waited = 0.0
        while self._inflight > 0 and waited < timeout:
            await asyncio.sleep(0.1)
            waited += 0.1
        if self._inflight:
            logger.warning(f"[{self.name}] {self._inflight} messages still in flight after {timeout}s; they will be redelivered")

    async def disconnect(self):
        """Disconnect from RabbitMQ"""
        self.stop()
        if self.channel is not None:
            try:
                await self.channel.close()
            except Exception as e:
                logger.debug(f"[{self.name}] Error closing channel: {e}")
            self.channel = None
        if self.connection is not None:
            try:
                await self.connection.close()
            except Exception as e:
                logger.debug(f"[{self.name}] Error closing connection: {e}")
            self.connection = None
        self.queue = None
        metrics.set_connection_connected(self.queue_name, False)
        logger.debug(f"[{self.name}] Disconnected from RabbitMQ")

    def get_stats(self) -> Dict[str, Any]:
        """Get consumer statistics"""
        return {
            "queue_name": self.queue_name,
            "worker_id": self.worker_id,
            "consuming": self._consuming,
            "in_flight": self._inflight,
            "processed": self._processed,
            "duplicates": self._duplicates,
            "rejected": self._rejected,
            "errors": self._errors,
        }


def create_trip_consumers(pipeline: TripPipeline, workers: int = 2) -> List[TripEventConsumer]:
    """
    Create `workers` consumers on the trip events queue sharing one pipeline.

    Each consumer owns a connection/channel; RabbitMQ round-robins messages
    between them, and per-device ordering is enforced by the row lock, not here.
    """
    queue_name = ServerParams.get('rabbitmq.queue', 'trip_events_queue')
    max_retries = ServerParams.get_int('consumer.max_retries', 5)
    consumers = [
        TripEventConsumer(queue_name, pipeline, max_retries=max_retries, worker_id=i)
        for i in range(max(1, workers))
    ]
    logger.info(f"Created {len(consumers)} consumers for {queue_name} (max_retries={max_retries})")
    return consumers
