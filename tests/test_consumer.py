"""
Tests for TripEventConsumer message settlement (ack / requeue / dead-letter).
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from trips.exceptions import TransientStoreError
from trips.processor import ProcessOutcome, ProcessResult
from trips.rabbitmq_consumer import TripEventConsumer, create_trip_consumers


def make_message(body=b'{"data": {}}', message_id="msg-1", redelivered=False):
    message = MagicMock()
    message.body = body
    message.message_id = message_id
    message.redelivered = redelivered
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    message.reject = AsyncMock()
    return message


def make_consumer(result=None, error=None, max_retries=3):
    pipeline = MagicMock()
    pipeline.handle = AsyncMock(return_value=result, side_effect=error)
    return TripEventConsumer("trip_events_queue", pipeline, max_retries=max_retries)


@pytest.fixture
def retry_store():
    with patch("trips.rabbitmq_consumer.increment_retry_count", new=AsyncMock(return_value=1)) as increment, \
            patch("trips.rabbitmq_consumer.clear_retry_count", new=AsyncMock()) as clear:
        yield increment, clear


class TestProcessMessage:

    @pytest.mark.asyncio
    async def test_applied_is_acked(self, retry_store):
        consumer = make_consumer(ProcessResult(outcome=ProcessOutcome.APPLIED, device_id="D1"))
        message = make_message()

        await consumer._process_message(message)

        consumer.pipeline.handle.assert_awaited_once_with(message.body, message_id="msg-1")
        message.ack.assert_awaited_once()
        message.nack.assert_not_awaited()
        assert consumer.get_stats()["processed"] == 1
        assert consumer.get_stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_is_acked(self, retry_store):
        consumer = make_consumer(ProcessResult(outcome=ProcessOutcome.DUPLICATE, device_id="D1"))
        message = make_message()

        await consumer._process_message(message)

        message.ack.assert_awaited_once()
        assert consumer.get_stats()["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_rejected_goes_to_dlq_without_requeue(self, retry_store):
        consumer = make_consumer(ProcessResult(outcome=ProcessOutcome.REJECTED, error="DEVICE_ID: missing"))
        message = make_message()

        await consumer._process_message(message)

        message.reject.assert_awaited_once_with(requeue=False)
        message.ack.assert_not_awaited()
        assert consumer.get_stats()["rejected"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_requeued(self, retry_store):
        increment, _ = retry_store
        consumer = make_consumer(error=TransientStoreError("connection"))
        message = make_message()

        await consumer._process_message(message)

        increment.assert_awaited_once()
        message.nack.assert_awaited_once_with(requeue=True)
        message.ack.assert_not_awaited()
        assert consumer.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_at_max_retries_is_dead_lettered(self, retry_store):
        increment, clear = retry_store
        increment.return_value = 3
        consumer = make_consumer(error=TransientStoreError("connection"), max_retries=3)
        message = make_message(redelivered=True)

        await consumer._process_message(message)

        message.nack.assert_awaited_once_with(requeue=False)
        clear.assert_awaited_once_with("msg-1")

    @pytest.mark.asyncio
    async def test_redelivered_success_clears_retry_count(self, retry_store):
        _, clear = retry_store
        consumer = make_consumer(ProcessResult(outcome=ProcessOutcome.APPLIED))

        await consumer._process_message(make_message(redelivered=True))

        clear.assert_awaited_once_with("msg-1")

    @pytest.mark.asyncio
    async def test_message_without_id_uses_body_hash(self, retry_store):
        increment, _ = retry_store
        consumer = make_consumer(error=TransientStoreError("connection"))

        await consumer._process_message(make_message(body=b"abc", message_id=None))

        message_id = increment.await_args.args[0]
        assert len(message_id) == 64
        assert message_id == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_drain_returns_when_idle(self):
        consumer = make_consumer()
        await consumer.drain(timeout=0.2)
        assert consumer.get_stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_disconnect_closes_channel_and_connection(self):
        consumer = make_consumer()
        channel = MagicMock(close=AsyncMock())
        connection = MagicMock(close=AsyncMock())
        consumer.channel = channel
        consumer.connection = connection

        await consumer.disconnect()

        channel.close.assert_awaited_once()
        connection.close.assert_awaited_once()
        assert consumer.connection is None
        assert consumer.get_stats()["consuming"] is False

    def test_dead_letter_arguments(self):
        args = make_consumer()._queue_arguments()
        assert args["x-dead-letter-exchange"] == "dlx_tracking_data"
        assert args["x-dead-letter-routing-key"] == "dlq_trip_events"

    def test_create_trip_consumers(self):
        consumers = create_trip_consumers(MagicMock(), workers=3)
        assert [c.worker_id for c in consumers] == [0, 1, 2]
        assert len({c.name for c in consumers}) == 3

    def test_create_trip_consumers_at_least_one(self):
        assert len(create_trip_consumers(MagicMock(), workers=0)) == 1
