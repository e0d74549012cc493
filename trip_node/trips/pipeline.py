"""
Trip pipeline: raw message -> decode -> process with bounded backoff.
Logs and counts every message by outcome (applied, duplicate, rejected, retrying).
Decode failures are final; store failures propagate after retries so the
transport leaves the message unacknowledged.
"""
import logging
from typing import Any, Mapping, Optional, Union

import metrics
from config import ServerParams

from .circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from .decoder import decode_message
from .exceptions import DecodeError, TransientStoreError
from .processor import ProcessOutcome, ProcessResult, TripProcessor
from .retry_handler import retry_with_backoff

logger = logging.getLogger(__name__)

RETRYABLE = (TransientStoreError, CircuitBreakerOpenError)


class TripPipeline:

    def __init__(
        self,
        processor: TripProcessor,
        odometer_scale: float = 1000,
        store_retries: int = 3,
        retry_initial_delay: float = 0.2,
        retry_max_delay: float = 5.0,
    ):
        self.processor = processor
        self.odometer_scale = odometer_scale
        self.store_retries = store_retries
        self.retry_initial_delay = retry_initial_delay
        self.retry_max_delay = retry_max_delay

    @classmethod
    def from_config(cls, uow_factory=None) -> "TripPipeline":
        """Build processor and pipeline from config.json (processor.*, decoder.*)."""
        breaker = CircuitBreaker(
            failure_threshold=ServerParams.get_int('processor.breaker_failure_threshold', 5),
            recovery_timeout=ServerParams.get_float('processor.breaker_recovery_timeout', 30.0),
            expected_exception=TransientStoreError,
            name="trip_store",
        )
        processor_kwargs = dict(
            breaker=breaker,
            attempt_timeout=ServerParams.get_float('processor.attempt_timeout', 10.0),
            max_jump_km=ServerParams.get_float('processor.max_point_jump_km', 10.0),
        )
        if uow_factory is not None:
            processor_kwargs['uow_factory'] = uow_factory
        return cls(
            TripProcessor(**processor_kwargs),
            odometer_scale=ServerParams.get_float('decoder.odometer_scale', 1000),
            store_retries=ServerParams.get_int('processor.store_retries', 3),
            retry_initial_delay=ServerParams.get_float('processor.retry_initial_delay', 0.2),
            retry_max_delay=ServerParams.get_float('processor.retry_max_delay', 5.0),
        )

    async def handle(self, payload: Union[bytes, str, Mapping[str, Any]],
                     message_id: Optional[str] = None) -> ProcessResult:
        """
        Decode and apply one message.

        Returns:
            ProcessResult (APPLIED, DUPLICATE or REJECTED)

        Raises:
            TransientStoreError / CircuitBreakerOpenError: still failing after
                store_retries; the message must be redelivered
        """
        try:
            event = decode_message(payload, odometer_scale=self.odometer_scale)
        except DecodeError as e:
            logger.warning(
                f"Rejected message {message_id or '-'}: {e}",
                extra={'outcome': ProcessOutcome.REJECTED.value, 'field': e.field, 'message_id': message_id},
            )
            metrics.record_decode_failure(e.field)
            metrics.record_outcome(ProcessOutcome.REJECTED.value)
            return ProcessResult(outcome=ProcessOutcome.REJECTED, error=str(e))

        try:
            result = await retry_with_backoff(
                self.processor.process,
                event,
                max_retries=self.store_retries,
                initial_delay=self.retry_initial_delay,
                max_delay=self.retry_max_delay,
                retry_on=RETRYABLE,
            )
        except RETRYABLE as e:
            logger.warning(
                f"[{event.device_id}] Event {event.correlation_id} left for redelivery: {e}",
                extra={'outcome': ProcessOutcome.RETRYING.value, 'device_id': event.device_id,
                       'correlation_id': str(event.correlation_id)},
            )
            metrics.record_outcome(ProcessOutcome.RETRYING.value)
            raise

        log = logger.info if result.outcome == ProcessOutcome.APPLIED else logger.debug
        log(
            f"[{event.device_id}] {result.outcome.value} {event.correlation_id} "
            f"at {event.event_time.isoformat()} ({', '.join(result.notes) or 'state refreshed'})",
            extra={'outcome': result.outcome.value, 'device_id': event.device_id,
                   'correlation_id': str(event.correlation_id)},
        )
        metrics.record_outcome(result.outcome.value)
        return result
