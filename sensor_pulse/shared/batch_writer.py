import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Generic, Optional, Sequence, TypeVar

import asyncpg

from sensor_pulse.shared.logging import log_exception
from sensor_pulse.shared.metrics import (
    batch_flush_duration_seconds,
    batch_flushes_skipped_total,
    batch_pending_records,
    batch_records_dropped_total,
    batch_records_written_total,
)
from sensor_pulse.shared.telemetry import Reading

if TYPE_CHECKING:
    from sensor_pulse.evaluator.evaluator import AlertLogRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BatchWriter(Generic[T]):
    """
    Buffers records in memory and writes them as one statement per tick.

    At most one flush is in flight: a tick that fires while a flush is still
    running is skipped and the buffer is picked up by the next tick. A batch
    whose write fails is logged and dropped, never requeued.
    """

    name = "batch"

    def __init__(
        self,
        pool: asyncpg.Pool,
        flush_interval_ms: int = 1000,
        max_buffer_size: int = 50000,
    ):
        self.pool = pool
        self.flush_interval = flush_interval_ms / 1000.0
        self.max_buffer_size = max_buffer_size
        self.batch: list[T] = []
        self._flushing = False
        self._flush_task: Optional[asyncio.Task] = None
        self._running = False

        # Metrics
        self.records_written = 0
        self.records_dropped = 0
        self.batches_flushed = 0
        self.flushes_skipped = 0
        self.write_errors = 0
        self.last_flush_time: Optional[datetime] = None
        self.last_flush_latency_ms: float = 0

    @property
    def flushing(self) -> bool:
        return self._flushing

    async def start(self):
        """Start the background flush loop."""
        if self._running:
            return
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info(
            "%s writer started (flush_interval=%.1fs)",
            self.name,
            self.flush_interval,
        )

    async def stop(self):
        """Stop the flush loop and make one last attempt at the buffer."""
        self._running = False
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()
        logger.info("%s writer stopped", self.name)

    def add(self, record: T) -> None:
        if len(self.batch) >= self.max_buffer_size:
            self.batch.pop(0)
            self.records_dropped += 1
            batch_records_dropped_total.labels(writer=self.name, reason="buffer_full").inc()
            logger.warning(
                "batch writer buffer full, dropping oldest record",
                extra={"writer": self.name, "buffer_size": self.max_buffer_size},
            )
        self.batch.append(record)
        batch_pending_records.labels(writer=self.name).set(len(self.batch))

    def add_many(self, records: Sequence[T]) -> None:
        for record in records:
            self.add(record)

    async def _flush_loop(self):
        while self._running:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    async def flush(self) -> int:
        """Drain the whole buffer into one write. Returns the records written."""
        if self._flushing:
            self.flushes_skipped += 1
            batch_flushes_skipped_total.labels(writer=self.name).inc()
            return 0
        if not self.batch:
            return 0

        self._flushing = True
        records, self.batch = self.batch, []
        batch_pending_records.labels(writer=self.name).set(0)
        start_time = time.monotonic()
        try:
            async with self.pool.acquire() as conn:
                await self._write(conn, records)
        except Exception as e:
            self.write_errors += 1
            self.records_dropped += len(records)
            batch_records_dropped_total.labels(writer=self.name, reason="flush_error").inc(len(records))
            log_exception(
                logger,
                "batch write failed, dropping batch",
                e,
                {"writer": self.name, "records": len(records)},
            )
            return 0
        finally:
            self._flushing = False

        elapsed = time.monotonic() - start_time
        self.records_written += len(records)
        self.batches_flushed += 1
        self.last_flush_time = datetime.now(timezone.utc)
        self.last_flush_latency_ms = elapsed * 1000
        batch_records_written_total.labels(writer=self.name).inc(len(records))
        batch_flush_duration_seconds.labels(writer=self.name).observe(elapsed)

        if self.last_flush_latency_ms > 250:
            logger.warning(
                "Slow batch flush: %d records in %.1fms",
                len(records),
                self.last_flush_latency_ms,
            )
        else:
            logger.debug("%s writer flushed %d records", self.name, len(records))
        return len(records)

    async def _write(self, conn: asyncpg.Connection, records: list[T]) -> None:
        raise NotImplementedError

    def get_stats(self) -> dict:
        return {
            "records_written": self.records_written,
            "records_dropped": self.records_dropped,
            "batches_flushed": self.batches_flushed,
            "flushes_skipped": self.flushes_skipped,
            "write_errors": self.write_errors,
            "pending_records": len(self.batch),
            "last_flush_time": self.last_flush_time.isoformat() if self.last_flush_time else None,
            "last_flush_latency_ms": self.last_flush_latency_ms,
        }


INSERT_READINGS_SQL = """
INSERT INTO sensor_readings (
    device_id, "timestamp", temperature, temperature_r, temperature_y, temperature_b,
    humidity, flow_rate, pressure, total_volume, ip_address, status
)
SELECT * FROM unnest(
    $1::text[], $2::timestamptz[], $3::float8[], $4::float8[], $5::float8[], $6::float8[],
    $7::float8[], $8::float8[], $9::float8[], $10::float8[], $11::text[], $12::text[]
)
"""


class ReadingBatchWriter(BatchWriter[Reading]):
    """Accepted readings -> sensor_readings."""

    name = "readings"

    async def _write(self, conn: asyncpg.Connection, records: list[Reading]) -> None:
        rows = [
            (r.device_uid, r.captured_at, *r.column_values(), r.ip_address, r.status)
            for r in records
        ]
        # One array per column so the whole batch is a single INSERT.
        columns = [list(col) for col in zip(*rows)]
        await conn.execute(INSERT_READINGS_SQL, *columns)


INSERT_ALERT_LOGS_SQL = """
INSERT INTO alert_logs (
    device_id, user_id, rule_id, input_name, triggered_value, condition, threshold,
    notify_email, notify_sms, notify_chat, sent_status, action_taken, created_at
)
SELECT u.* FROM unnest(
    $1::bigint[], $2::bigint[], $3::bigint[], $4::text[], $5::float8[], $6::text[], $7::float8[],
    $8::bool[], $9::bool[], $10::bool[], $11::text[], $12::bool[], $13::timestamptz[]
) AS u(
    device_id, user_id, rule_id, input_name, triggered_value, condition, threshold,
    notify_email, notify_sms, notify_chat, sent_status, action_taken, created_at
)
-- The rule snapshot may lag a device delete; skip those rows instead of failing the batch.
WHERE EXISTS (SELECT 1 FROM devices d WHERE d.id = u.device_id)
"""


class AlertLogBatchWriter(BatchWriter["AlertLogRecord"]):
    """Fired alerts -> alert_logs."""

    name = "alert_logs"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.orphans_skipped = 0

    async def _write(self, conn: asyncpg.Connection, records: list["AlertLogRecord"]) -> None:
        rows = [
            (
                r.device_pk,
                r.user_id,
                r.rule_id,
                r.input_name,
                r.triggered_value,
                r.condition,
                r.threshold,
                r.notify_email,
                r.notify_sms,
                r.notify_chat,
                r.sent_status,
                r.action_taken,
                r.created_at,
            )
            for r in records
        ]
        columns = [list(col) for col in zip(*rows)]
        status = await conn.execute(INSERT_ALERT_LOGS_SQL, *columns)
        try:
            inserted = int(status.split()[-1])
        except (AttributeError, IndexError, ValueError):
            return
        if inserted < len(records):
            skipped = len(records) - inserted
            self.orphans_skipped += skipped
            logger.warning(
                "skipped alerts for devices that no longer exist",
                extra={"writer": self.name, "skipped": skipped},
            )

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats["orphans_skipped"] = self.orphans_skipped
        return stats
