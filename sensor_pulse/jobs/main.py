"""
Scheduled jobs: 30-minute rollup and device status reconciliation.

Run via: python -m sensor_pulse.jobs.main
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone

import asyncpg

from sensor_pulse.jobs.device_status import reconcile_device_status
from sensor_pulse.jobs.rollup import RollupResult, rollup_window, run_rollup
from sensor_pulse.shared.config import Settings
from sensor_pulse.shared.db import create_pool, report_pool_stats
from sensor_pulse.shared.health import start_health_server
from sensor_pulse.shared.logging import configure_logging, run_id_var
from sensor_pulse.shared.metrics import job_duration_seconds

logger = logging.getLogger(__name__)

SERVICE_NAME = "jobs"
MAX_PENDING_WINDOWS = 48
# Fire just after the boundary so the bucket that closed is the one rolled up.
BOUNDARY_SLACK_SECONDS = 1.0


def seconds_until_next_boundary(now: datetime, interval_seconds: int) -> float:
    """Seconds until the next wall-clock multiple of interval_seconds (:00/:30 for 1800)."""
    epoch = now.timestamp()
    return interval_seconds - (epoch % interval_seconds)


class RollupJob:
    """Runs the rollup for the latest closed bucket and re-runs buckets that failed."""

    def __init__(self, batch_size: int, bucket_seconds: int):
        self.batch_size = batch_size
        self.bucket_seconds = bucket_seconds
        self.failed_windows: list[tuple[datetime, datetime]] = []
        self.last_result: RollupResult | None = None

    async def __call__(self, pool: asyncpg.Pool) -> None:
        now = datetime.now(timezone.utc)
        windows = self.failed_windows + [rollup_window(now, self.bucket_seconds)]
        # A retried bucket can coincide with the current one.
        windows = sorted(set(windows))
        self.failed_windows = []
        for window in windows:
            result = await run_rollup(
                pool,
                batch_size=self.batch_size,
                bucket_seconds=self.bucket_seconds,
                window=window,
            )
            self.last_result = result
            if not result.ok:
                self.failed_windows.append(window)
        if len(self.failed_windows) > MAX_PENDING_WINDOWS:
            dropped = self.failed_windows[:-MAX_PENDING_WINDOWS]
            self.failed_windows = self.failed_windows[-MAX_PENDING_WINDOWS:]
            logger.error(
                "giving up on rollup windows",
                extra={"windows": [start.isoformat() for start, _ in dropped]},
            )


async def run_tick(fn, pool: asyncpg.Pool, name: str | None = None) -> None:
    run_token = run_id_var.set(str(uuid.uuid4()))
    name = name or getattr(fn, "__name__", "unknown")
    try:
        logger.info("tick_start", extra={"tick": name})
        tick_start = time.monotonic()
        await fn(pool)
        job_duration_seconds.labels(job=name).observe(time.monotonic() - tick_start)
        logger.info("tick_done", extra={"tick": name})
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Worker loop failed", extra={"worker": name})
    finally:
        run_id_var.reset(run_token)
    report_pool_stats(pool, SERVICE_NAME)


async def worker_loop(fn, pool: asyncpg.Pool, interval: int, name: str | None = None) -> None:
    while True:
        await run_tick(fn, pool, name)
        await asyncio.sleep(interval)


async def aligned_worker_loop(fn, pool: asyncpg.Pool, interval: int, name: str | None = None) -> None:
    """
    Like worker_loop, but ticks fire on wall-clock boundaries.

    The first tick runs immediately so the bucket that closed while the
    service was down still gets rolled up.
    """
    await run_tick(fn, pool, name)
    while True:
        delay = seconds_until_next_boundary(datetime.now(timezone.utc), interval)
        await asyncio.sleep(delay + BOUNDARY_SLACK_SECONDS)
        await run_tick(fn, pool, name)


async def main() -> None:
    configure_logging(SERVICE_NAME)
    settings = Settings.from_env()
    pool = await create_pool(settings)

    rollup = RollupJob(settings.rollup_device_batch_size, settings.rollup_interval_seconds)

    def stats() -> dict:
        last = rollup.last_result
        return {
            "pending_rollup_windows": len(rollup.failed_windows),
            "last_rollup": None if last is None else {
                "window_start": last.window_start.isoformat(),
                "devices": last.devices,
                "rows_inserted": last.rows_inserted,
                "error": last.error,
            },
        }

    runner = await start_health_server(SERVICE_NAME, stats, settings.health_port)
    try:
        await asyncio.gather(
            aligned_worker_loop(rollup, pool, interval=settings.rollup_interval_seconds, name="rollup"),
            worker_loop(reconcile_device_status, pool, interval=settings.status_reconcile_seconds),
        )
    finally:
        await runner.cleanup()
        await pool.close()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
