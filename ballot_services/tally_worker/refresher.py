"""
Async tally refresh service.

Consumes change-feed events from RabbitMQ, batches the touched elections,
bumps their tally cache versions in Redis and re-derives their totals from
the ballot ledger for the Prometheus gauges.
"""
import asyncio
import json
import logging
import signal
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, Set

from aio_pika.abc import AbstractIncomingMessage
from prometheus_client import Counter, Gauge, start_http_server

from ..shared import BallotEvent, BallotEventType
from .config import config
from .database import Database, DatabaseError
from .rabbitmq_client import RabbitMQClient
from .redis_client import RedisClient

logger = logging.getLogger(__name__)

# Prometheus metrics
refresh_events_total = Counter(
    'tally_refresh_events_total',
    'Total number of change-feed events received'
)

refresh_batches_total = Counter(
    'tally_refresh_batches_total',
    'Total number of refresh batches processed'
)

refresh_errors = Counter(
    'tally_refresh_errors_total',
    'Total number of tally refresh errors',
    ['error_type']
)

current_vote_totals = Gauge(
    'current_vote_totals',
    'Current ballot count per candidate',
    ['election_id', 'candidate_id']
)

batch_processing_duration = Gauge(
    'tally_refresh_batch_duration_seconds',
    'Time taken to process a refresh batch'
)


class TallyRefresher:
    """Change-feed consumer keeping cached and exported tallies fresh."""

    def __init__(self, database=None, redis_client=None, rabbitmq=None):
        """
        Args:
            database: Tally reader (connects from config when omitted)
            redis_client: Cache version client, or None to skip cache bumps
            rabbitmq: Change-feed consumer (connects from config when omitted)
        """
        self.database = database if database is not None else Database()
        self.redis = redis_client
        self.rabbitmq = rabbitmq if rabbitmq is not None else RabbitMQClient()
        self.running = True

        # Batching: election_id -> True when the last event seen deleted it
        self.pending: Dict[str, bool] = {}
        self.batch_lock = asyncio.Lock()
        self.last_batch_time = time.time()

        # Gauge label sets currently exported, per election
        self.exported: Dict[str, Set[str]] = {}

        # Thread pool for blocking database and Redis calls
        self.executor = ThreadPoolExecutor(max_workers=4)

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.running = False

    async def start(self):
        """Start the refresh service."""
        logger.info(f"Starting Prometheus metrics server on port {config.PROMETHEUS_PORT}")
        start_http_server(config.PROMETHEUS_PORT)

        await self._sync_active_elections()

        batch_task = asyncio.create_task(self._batch_processor_loop())

        logger.info("Starting RabbitMQ consumer...")
        try:
            await self.rabbitmq.consume(callback=self._on_message)
        except asyncio.CancelledError:
            logger.info("Consumer cancelled")
        finally:
            batch_task.cancel()
            try:
                await batch_task
            except asyncio.CancelledError:
                pass

    async def _on_message(self, message: AbstractIncomingMessage):
        """
        Callback for RabbitMQ messages.

        Args:
            message: Incoming message from RabbitMQ
        """
        try:
            event = BallotEvent.from_json(message.body.decode())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Failed to decode message: {e}")
            refresh_errors.labels(error_type='json_decode').inc()
            await message.reject(requeue=False)
            return
        except (TypeError, AttributeError) as e:
            logger.error(f"Malformed change-feed event: {e}")
            refresh_errors.labels(error_type='invalid_event').inc()
            await message.reject(requeue=False)
            return

        is_valid, error = event.validate()
        if not is_valid:
            logger.error(f"Invalid change-feed event: {error}")
            refresh_errors.labels(error_type='invalid_event').inc()
            await message.reject(requeue=False)
            return

        refresh_events_total.inc()
        logger.debug(f"Received {event.event_type} for election={event.election_id}")

        try:
            async with self.batch_lock:
                self.pending[event.election_id] = event.event_type == BallotEventType.ELECTION_DELETED.value

                if len(self.pending) >= config.BATCH_SIZE:
                    logger.info(f"Batch size reached ({config.BATCH_SIZE}), processing batch")
                    await self._process_batch()

        except Exception as e:
            logger.error(f"Error processing message: {e}", exc_info=True)
            refresh_errors.labels(error_type='processing').inc()
            await message.nack(requeue=True)

    async def _batch_processor_loop(self):
        """Background task to process batches on timeout."""
        while self.running:
            try:
                await asyncio.sleep(0.1)

                async with self.batch_lock:
                    if (self.pending and
                            time.time() - self.last_batch_time >= config.BATCH_TIMEOUT_SECONDS):
                        await self._process_batch()

            except Exception as e:
                logger.error(f"Error in batch processor loop: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _process_batch(self) -> bool:
        """
        Refresh every election in the current batch.

        Must be called with batch_lock held. On a database error the batch
        is kept and retried on the next timeout.

        Returns:
            bool: True if the batch was processed and cleared
        """
        if not self.pending:
            return True

        batch_start_time = time.time()
        batch = dict(self.pending)
        deleted = [election_id for election_id, gone in batch.items() if gone]
        live = [election_id for election_id, gone in batch.items() if not gone]

        loop = asyncio.get_running_loop()
        await self._invalidate_cache(loop, live, deleted)

        try:
            tallies = await loop.run_in_executor(
                self.executor,
                self.database.get_election_tallies,
                live
            )
        except DatabaseError as e:
            logger.error(f"Database error processing batch: {e}")
            refresh_errors.labels(error_type='database').inc()
            return False

        self._export(tallies, batch.keys())

        batch_duration = time.time() - batch_start_time
        batch_processing_duration.set(batch_duration)
        refresh_batches_total.inc()
        logger.info(
            f"Refreshed tallies: {len(live)} elections, {len(deleted)} deleted, "
            f"duration: {batch_duration:.3f}s"
        )

        self.pending.clear()
        self.last_batch_time = time.time()
        return True

    async def _invalidate_cache(self, loop, live, deleted):
        """Bump versions of changed elections and drop those of deleted ones."""
        if self.redis is None:
            return
        try:
            await loop.run_in_executor(self.executor, self.redis.bump_versions, live)
            for election_id in deleted:
                await loop.run_in_executor(self.executor, self.redis.forget, election_id)
        except Exception as e:
            logger.error(f"Failed to invalidate tally cache: {e}")
            refresh_errors.labels(error_type='redis').inc()

    def _export(self, tallies: Dict[str, Dict[str, int]], election_ids: Iterable[str]):
        """Set gauges for the given elections, removing labels that no longer exist."""
        for election_id in election_ids:
            counts = tallies.get(election_id, {})

            for candidate_id in self.exported.get(election_id, set()) - set(counts):
                current_vote_totals.remove(election_id, candidate_id)

            for candidate_id, count in counts.items():
                current_vote_totals.labels(election_id=election_id, candidate_id=candidate_id).set(count)

            if counts:
                self.exported[election_id] = set(counts)
            else:
                self.exported.pop(election_id, None)

    async def _sync_active_elections(self):
        """Export totals of every active election on startup."""
        try:
            loop = asyncio.get_running_loop()
            tallies = await loop.run_in_executor(
                self.executor,
                self.database.get_all_election_tallies
            )
            self._export(tallies, tallies.keys())
            logger.info(f"Exported totals for {len(tallies)} active elections")
        except DatabaseError as e:
            logger.error(f"Error syncing tallies to Prometheus: {e}")
            refresh_errors.labels(error_type='database').inc()

    async def shutdown(self):
        """Graceful shutdown."""
        logger.info("Shutting down tally refresher...")
        self.running = False

        async with self.batch_lock:
            if self.pending:
                logger.info(f"Processing final batch of {len(self.pending)} elections")
                try:
                    await self._process_batch()
                except Exception as e:
                    logger.error(f"Error processing final batch: {e}")

        await self.rabbitmq.close()
        self.executor.shutdown(wait=True)

        self.database.close()
        if self.redis is not None:
            self.redis.close()

        logger.info("Tally refresher shutdown complete")


async def main():
    """Main entry point."""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    logger.info("=" * 60)
    logger.info("Starting Tally Refresh Service")
    logger.info(f"RabbitMQ: {config.RABBITMQ_HOST}:{config.RABBITMQ_PORT}")
    logger.info(f"Queue: {config.RABBITMQ_QUEUE}")
    logger.info(f"Batch Size: {config.BATCH_SIZE}")
    logger.info(f"Batch Timeout: {config.BATCH_TIMEOUT_SECONDS}s")
    logger.info("=" * 60)

    refresher = TallyRefresher(redis_client=RedisClient())
    refresher.install_signal_handlers()

    try:
        await refresher.start()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        await refresher.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
