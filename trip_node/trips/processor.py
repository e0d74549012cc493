"""
Trip processor: applies one TelemetryEvent to one device's durable state.

lock device row -> redelivery guard -> decide -> apply ledger writes -> save state -> commit,
all in a single unit of work bounded by attempt_timeout and guarded by a circuit breaker.
Devices never wait on each other; events for the same device serialize on the row lock.
"""
import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

import metrics

from .circuit_breaker import CircuitBreaker
from .decision import AppendPoint, CloseTrip, OpenTrip, RecordAlert, RecordIdleActivity, decide
from .decoder import TelemetryEvent
from .distance import MAX_POINT_DISTANCE_KM
from .exceptions import TransientStoreError
from .unit_of_work import SqlUnitOfWork

logger = logging.getLogger(__name__)


class ProcessOutcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    RETRYING = "retrying"


@dataclass
class ProcessResult:
    outcome: ProcessOutcome
    device_id: Optional[str] = None
    notes: List[str] = field(default_factory=list)
    trips_opened: int = 0
    trips_closed: int = 0
    points_inserted: int = 0
    alerts_recorded: List[str] = field(default_factory=list)
    idle_recorded: int = 0
    error: Optional[str] = None


class _ReplayAbsorbed(Exception):
    """Ignition-on replay whose trip already exists; abort the unit without writes."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TripProcessor:

    def __init__(
        self,
        uow_factory: Callable = SqlUnitOfWork,
        breaker: Optional[CircuitBreaker] = None,
        attempt_timeout: float = 10.0,
        max_jump_km: float = MAX_POINT_DISTANCE_KM,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.uow_factory = uow_factory
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=TransientStoreError,
            name="trip_store",
        )
        self.attempt_timeout = attempt_timeout
        self.max_jump_km = max_jump_km
        self._clock = clock

    async def process(self, event: TelemetryEvent) -> ProcessResult:
        """
        Apply one event atomically.

        Returns:
            ProcessResult with outcome APPLIED or DUPLICATE

        Raises:
            TransientStoreError: store failed or the attempt timed out; nothing was committed
            CircuitBreakerOpenError: store breaker is open
        """
        return await self.breaker.call(self._attempt, event)

    async def _attempt(self, event: TelemetryEvent) -> ProcessResult:
        started = time.monotonic()
        try:
            return await asyncio.wait_for(self._apply(event), timeout=self.attempt_timeout)
        except asyncio.TimeoutError:
            metrics.record_store_failure("attempt_timeout")
            raise TransientStoreError(
                "attempt_timeout",
                f"unit of work for {event.device_id} exceeded {self.attempt_timeout}s",
            )
        except TransientStoreError as e:
            metrics.record_store_failure(e.reason)
            raise
        finally:
            metrics.observe_unit_of_work_time(time.monotonic() - started)

    async def _already_applied(self, uow, event: TelemetryEvent) -> bool:
        """True when the event's keyed row (alert, point or idle activity) is already committed."""
        key = (event.device_id, event.correlation_id, event.event_time)
        if event.alert_signal is not None:
            return await uow.alerts.exists(*key)
        return await uow.trips.point_exists(*key) or await uow.idle.exists(*key)

    async def _apply(self, event: TelemetryEvent) -> ProcessResult:
        result = ProcessResult(outcome=ProcessOutcome.APPLIED, device_id=event.device_id)
        try:
            async with self.uow_factory() as uow:
                pre = await uow.devices.lock(event.device_id)

                # Replays leave without saving the device state
                if await self._already_applied(uow, event):
                    result.outcome = ProcessOutcome.DUPLICATE
                    result.notes.append("event_already_applied")
                    return result

                decision = decide(pre, event, now=self._clock(), max_jump_km=self.max_jump_km)
                result.notes.extend(decision.notes)

                attempted_inserts = 0
                absorbed_inserts = 0
                for write in decision.writes:
                    if isinstance(write, OpenTrip):
                        if not await uow.trips.open_trip(write):
                            raise _ReplayAbsorbed(write.trip_id)
                        result.trips_opened += 1
                    elif isinstance(write, CloseTrip):
                        if await uow.trips.close_trip(write) is not None:
                            result.trips_closed += 1
                    elif isinstance(write, AppendPoint):
                        attempted_inserts += 1
                        if await uow.trips.add_point(write):
                            result.points_inserted += 1
                        else:
                            absorbed_inserts += 1
                    elif isinstance(write, RecordAlert):
                        attempted_inserts += 1
                        if await uow.alerts.record(write):
                            result.alerts_recorded.append(write.alert_type.value)
                        else:
                            absorbed_inserts += 1
                    elif isinstance(write, RecordIdleActivity):
                        attempted_inserts += 1
                        if await uow.idle.record(write):
                            result.idle_recorded += 1
                        else:
                            absorbed_inserts += 1

                if attempted_inserts and attempted_inserts == absorbed_inserts and not (
                    result.trips_opened or result.trips_closed
                ):
                    # Lost a race with the same event; the unit rolls back with the state untouched
                    return ProcessResult(
                        outcome=ProcessOutcome.DUPLICATE, device_id=event.device_id, notes=["event_already_applied"]
                    )

                await uow.devices.save(decision.state)
                await uow.commit()
        except _ReplayAbsorbed as e:
            logger.info(f"[{event.device_id}] Trip {e.args[0]} already exists; ignition on replay ignored")
            result = ProcessResult(
                outcome=ProcessOutcome.DUPLICATE, device_id=event.device_id, notes=["trip_already_opened"]
            )
            return result

        metrics.record_ledger_writes(
            opened=result.trips_opened,
            closed=result.trips_closed,
            points=result.points_inserted,
            alerts=result.alerts_recorded,
            idle=result.idle_recorded,
        )
        return result
