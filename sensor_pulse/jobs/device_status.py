import logging

import asyncpg

logger = logging.getLogger(__name__)

OFFLINE_AFTER_MINUTES = 30

# Only rows whose status actually changes are touched.
RECONCILE_STATUS_SQL = """
WITH latest AS (
    SELECT d.id, MAX(s."timestamp") AS last_seen
    FROM devices d
    LEFT JOIN sensor_readings s ON s.device_id = d.device_uid
    GROUP BY d.id
), computed AS (
    SELECT
        id,
        CASE
            WHEN last_seen IS NOT NULL AND last_seen >= now() - make_interval(mins => $1::integer)
                THEN 'online'
            ELSE 'offline'
        END AS status
    FROM latest
)
UPDATE devices d
SET status = computed.status
FROM computed
WHERE d.id = computed.id
  AND d.status IS DISTINCT FROM computed.status
"""


async def reconcile_device_status(pool: asyncpg.Pool, offline_after_minutes: int = OFFLINE_AFTER_MINUTES) -> int:
    """Recompute devices.status from the newest raw reading. Returns rows changed."""
    async with pool.acquire() as conn:
        status = await conn.execute(RECONCILE_STATUS_SQL, offline_after_minutes)
    try:
        changed = int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        changed = 0
    if changed:
        logger.info("device statuses reconciled", extra={"changed": changed})
    return changed
