"""
30-minute rollup of raw sensor readings.

Each run aggregates the trailing closed bucket [end - 30 min, end) where
end is "now" floored to the bucket boundary, so a bucket is only ever
written once it can no longer receive readings. Re-running for the same
window inserts nothing: existing buckets are left as they are.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import asyncpg

from sensor_pulse.shared.logging import log_exception
from sensor_pulse.shared.metrics import rollup_rows_inserted_total
from sensor_pulse.shared.telemetry import AVERAGED_CHANNELS

logger = logging.getLogger(__name__)

BUCKET_SECONDS = 30 * 60
DEVICE_BATCH_SIZE = 500

FETCH_ACTIVE_DEVICES_SQL = """
SELECT DISTINCT device_id
FROM sensor_readings
WHERE "timestamp" >= $1 AND "timestamp" < $2
ORDER BY device_id
"""

_ROLLUP_COLUMNS = ",\n    ".join(AVERAGED_CHANNELS)
_ROLLUP_AVERAGES = ",\n    ".join(f"ROUND(AVG({c})::numeric, 1)" for c in AVERAGED_CHANNELS)

INSERT_ROLLUP_SQL = f"""
INSERT INTO sensor_readings_30min (
    device_id, bucket_start,
    {_ROLLUP_COLUMNS},
    total_volume
)
SELECT
    device_id,
    to_timestamp(floor(extract(epoch FROM "timestamp") / $4::integer) * $4::integer) AS bucket_start,
    {_ROLLUP_AVERAGES},
    MAX(total_volume)
FROM sensor_readings
WHERE device_id = ANY($1::text[])
  AND "timestamp" >= $2 AND "timestamp" < $3
GROUP BY device_id, bucket_start
ON CONFLICT (device_id, bucket_start) DO NOTHING
"""


@dataclass
class RollupResult:
    window_start: datetime
    window_end: datetime
    devices: int = 0
    rows_inserted: int = 0
    batches: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def floor_to_bucket(ts: datetime, bucket_seconds: int = BUCKET_SECONDS) -> datetime:
    epoch = int(ts.timestamp())
    return datetime.fromtimestamp(epoch - epoch % bucket_seconds, tz=timezone.utc)


def rollup_window(now: datetime, bucket_seconds: int = BUCKET_SECONDS) -> tuple[datetime, datetime]:
    """Return the most recent closed bucket as (start, end)."""
    end = floor_to_bucket(now, bucket_seconds)
    return end - timedelta(seconds=bucket_seconds), end


def _rows_from_status(status: str) -> int:
    # asyncpg returns the command tag, e.g. "INSERT 0 42".
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


async def fetch_active_devices(conn: asyncpg.Connection, start: datetime, end: datetime) -> list[str]:
    rows = await conn.fetch(FETCH_ACTIVE_DEVICES_SQL, start, end)
    return [row["device_id"] for row in rows]


async def insert_rollup_batch(
    conn: asyncpg.Connection,
    devices: list[str],
    start: datetime,
    end: datetime,
    bucket_seconds: int = BUCKET_SECONDS,
) -> int:
    status = await conn.execute(INSERT_ROLLUP_SQL, devices, start, end, bucket_seconds)
    return _rows_from_status(status)


async def run_rollup(
    pool: asyncpg.Pool,
    now: Optional[datetime] = None,
    batch_size: int = DEVICE_BATCH_SIZE,
    bucket_seconds: int = BUCKET_SECONDS,
    window: Optional[tuple[datetime, datetime]] = None,
) -> RollupResult:
    """Aggregate the trailing closed bucket for every device active in it.

    Pass `window` to re-run a specific bucket. Errors are logged and reported
    on the result, never raised.
    """
    if window is None:
        window = rollup_window(now or datetime.now(timezone.utc), bucket_seconds)
    start, end = window
    result = RollupResult(window_start=start, window_end=end)
    started = time.monotonic()

    try:
        async with pool.acquire() as conn:
            devices = await fetch_active_devices(conn, start, end)
            result.devices = len(devices)
            if not devices:
                logger.warning(
                    "no active devices in rollup window",
                    extra={"window_start": start.isoformat(), "window_end": end.isoformat()},
                )
                return result

            for i in range(0, len(devices), batch_size):
                batch = devices[i:i + batch_size]
                inserted = await insert_rollup_batch(conn, batch, start, end, bucket_seconds)
                result.batches += 1
                result.rows_inserted += inserted
                rollup_rows_inserted_total.inc(inserted)
                logger.debug(
                    "rollup batch processed",
                    extra={"devices": len(batch), "rows_inserted": inserted},
                )
    except Exception as exc:
        result.error = f"{type(exc).__name__}: {exc}"
        log_exception(
            logger,
            "rollup failed",
            exc,
            {"window_start": start.isoformat(), "rows_inserted": result.rows_inserted},
        )
        return result

    logger.info(
        "rollup complete",
        extra={
            "window_start": start.isoformat(),
            "window_end": end.isoformat(),
            "devices": result.devices,
            "batches": result.batches,
            "rows_inserted": result.rows_inserted,
            "elapsed_ms": round((time.monotonic() - started) * 1000, 1),
        },
    )
    return result
