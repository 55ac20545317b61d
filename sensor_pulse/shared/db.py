import asyncio
import logging

import asyncpg

from sensor_pulse.shared.config import Settings
from sensor_pulse.shared.metrics import db_pool_free, db_pool_size

logger = logging.getLogger(__name__)

CONNECT_ATTEMPTS = 60
RETRY_DELAY_SECONDS = 1.0


async def _init_db_connection(conn: asyncpg.Connection) -> None:
    # Set per session rather than as a startup parameter (PgBouncer rejects it).
    await conn.execute("SET statement_timeout TO 30000")


async def _connect(settings: Settings) -> asyncpg.Pool:
    if settings.database_url:
        return await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=settings.pg_pool_min,
            max_size=settings.pg_pool_max,
            command_timeout=30,
            init=_init_db_connection,
        )
    return await asyncpg.create_pool(
        host=settings.pg_host,
        port=settings.pg_port,
        database=settings.pg_db,
        user=settings.pg_user,
        password=settings.pg_pass,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=30,
        init=_init_db_connection,
    )


async def create_pool(settings: Settings) -> asyncpg.Pool:
    """Create the asyncpg pool, retrying while the database comes up."""
    attempt = 0
    while True:
        try:
            return await _connect(settings)
        except (OSError, asyncpg.PostgresError) as exc:
            attempt += 1
            if attempt >= CONNECT_ATTEMPTS:
                raise
            logger.warning(
                "database not ready, retrying",
                extra={"attempt": attempt, "error": str(exc)},
            )
            await asyncio.sleep(RETRY_DELAY_SECONDS)


def report_pool_stats(pool: asyncpg.Pool, service: str) -> None:
    db_pool_size.labels(service=service).set(pool.get_size())
    db_pool_free.labels(service=service).set(pool.get_idle_size())


async def update_device_status(pool: asyncpg.Pool, device_uid: str, status: str) -> bool:
    """Set devices.status for one device. Failures are logged, not raised."""
    try:
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE devices SET status = $1 WHERE device_uid = $2",
                status,
                device_uid,
            )
    except Exception as exc:
        logger.error(
            "device status update failed",
            extra={
                "device_uid": device_uid,
                "status": status,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        return False
    logger.info("device marked %s", status, extra={"device_uid": device_uid})
    return True
