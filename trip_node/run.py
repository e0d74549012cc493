"""
Trip Node Entry Point
Consumes telemetry from RabbitMQ and maintains trips, trip points and alerts in PostgreSQL
"""
import asyncio
import logging
import signal
from typing import List

from config import Config, ServerParams
from logging_config import setup_logging_from_config
from trips import health_server
from trips.orm_init import close_orm, init_orm
from trips.pipeline import TripPipeline
from trips.rabbitmq_consumer import TripEventConsumer, create_trip_consumers
from trips.retry_tracker import cleanup_old_retry_counts

logger = logging.getLogger(__name__)

RETRY_COUNT_CLEANUP_INTERVAL = 3600

_consumers: List[TripEventConsumer] = []
_shutdown_event: asyncio.Event


async def _cleanup_retry_counts_loop():
    while True:
        await asyncio.sleep(RETRY_COUNT_CLEANUP_INTERVAL)
        removed = await cleanup_old_retry_counts(hours=24)
        if removed:
            logger.info(f"Removed {removed} stale message retry counts")


async def main():
    """Main entry point for the trip node"""
    global _consumers, _shutdown_event
    _shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(_request_shutdown, signum))

    config = Config.load()
    workers = ServerParams.get_int('consumer.workers', 2)
    logger.info(f"Starting Trip Node: queue={config['rabbitmq'].get('queue')}, workers={workers}")

    health_server.start_health_server(ServerParams.get_int('health.port', 9091))

    cleanup_task = None
    consume_tasks: List[asyncio.Task] = []
    try:
        logger.info("Initializing database connection (will retry if unavailable)...")
        init_task = asyncio.create_task(init_orm(retry=True))
        stop_task = asyncio.create_task(_shutdown_event.wait())
        await asyncio.wait({init_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if not init_task.done():
            init_task.cancel()
            logger.info("Database initialization cancelled due to shutdown")
            return
        stop_task.cancel()
        init_task.result()
        health_server.set_db_ready(True)
        logger.info("✓ Database connection initialized")

        cleanup_task = asyncio.create_task(_cleanup_retry_counts_loop())

        pipeline = TripPipeline.from_config()
        _consumers = create_trip_consumers(pipeline, workers=workers)
        consume_tasks = [asyncio.create_task(c.start_consuming()) for c in _consumers]
        logger.info(f"✓ Started {len(_consumers)} consumers")

        await _shutdown_event.wait()

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        logger.info("Shutting down consumers gracefully...")
        for consumer in _consumers:
            consumer.stop()

        logger.info("Waiting for in-flight messages to complete...")
        await asyncio.gather(*[c.drain(timeout=10.0) for c in _consumers], return_exceptions=True)

        results = await asyncio.gather(*consume_tasks, return_exceptions=True)
        for consumer, result in zip(_consumers, results):
            if isinstance(result, Exception):
                logger.error(f"Consumer {consumer.name} crashed: {result}", exc_info=result)

        for consumer in _consumers:
            try:
                await consumer.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting {consumer.name}: {e}", exc_info=True)
            logger.info(f"Final stats {consumer.name}: {consumer.get_stats()}")

        if cleanup_task is not None:
            cleanup_task.cancel()

        await close_orm()
        health_server.stop_health_server()
        logger.info("Trip node shutdown complete")


def _request_shutdown(signum):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, initiating shutdown...")
    _shutdown_event.set()


def cli():
    setup_logging_from_config()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutdown complete")


if __name__ == "__main__":
    cli()
