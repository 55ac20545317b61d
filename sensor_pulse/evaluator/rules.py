"""
In-memory snapshot of enabled alert rules, keyed by device UID.

The snapshot is rebuilt from the database on a fixed period and swapped in
whole; readers only ever see a complete snapshot. A failed refresh keeps
serving the previous one.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

import asyncpg

from sensor_pulse.shared.logging import log_exception
from sensor_pulse.shared.metrics import evaluator_refresh_errors_total, evaluator_rules_loaded
from sensor_pulse.shared.telemetry import normalize_key, resolve_channel, to_float

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 10
REFRESH_SECONDS = 10.0
SUPPORTED_CONDITIONS = (">", ">=", "<", "<=", "==")

FETCH_RULES_SQL = """
SELECT
    r.id,
    r.device_id,
    d.device_uid,
    d.device_name,
    r.user_id,
    r.threshold_type,
    r.condition,
    r.threshold_value,
    r.interval_minutes,
    r.notify_email,
    r.notify_sms,
    r.notify_chat
FROM device_alert_rules r
JOIN devices d ON r.device_id = d.id
WHERE r.enabled = true
"""


@dataclass(frozen=True)
class AlertRule:
    id: int
    device_pk: int
    device_uid: str
    user_id: int
    threshold_type: str
    channel: str
    condition: str
    threshold: float
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    notify_email: bool = False
    notify_sms: bool = False
    notify_chat: bool = False
    device_name: Optional[str] = None

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60.0


def rule_from_row(row: Mapping) -> Optional[AlertRule]:
    """Build an AlertRule from a database row, or None if the row is unusable."""
    condition = str(row["condition"] or "").strip()
    if condition not in SUPPORTED_CONDITIONS:
        logger.warning(
            "skipping alert rule with unsupported condition",
            extra={"rule_id": row["id"], "condition": condition},
        )
        return None
    threshold = to_float(row["threshold_value"])
    if threshold is None:
        logger.warning(
            "skipping alert rule with non-numeric threshold",
            extra={"rule_id": row["id"], "threshold_value": row["threshold_value"]},
        )
        return None
    threshold_type = str(row["threshold_type"] or "")
    # Unknown channel names never match a reading, same as an absent channel.
    channel = resolve_channel(threshold_type) or normalize_key(threshold_type)
    return AlertRule(
        id=row["id"],
        device_pk=row["device_id"],
        device_uid=str(row["device_uid"]).strip(),
        device_name=row["device_name"],
        user_id=row["user_id"],
        threshold_type=threshold_type,
        channel=channel,
        condition=condition,
        threshold=threshold,
        interval_minutes=row["interval_minutes"] or DEFAULT_INTERVAL_MINUTES,
        notify_email=bool(row["notify_email"]),
        notify_sms=bool(row["notify_sms"]),
        notify_chat=bool(row["notify_chat"]),
    )


def build_snapshot(rows) -> dict[str, tuple[AlertRule, ...]]:
    grouped: dict[str, list[AlertRule]] = {}
    for row in rows:
        rule = rule_from_row(row)
        if rule is not None:
            grouped.setdefault(rule.device_uid, []).append(rule)
    return {uid: tuple(rules) for uid, rules in grouped.items()}


class RuleSnapshotStore:
    def __init__(self, pool: Optional[asyncpg.Pool] = None, refresh_seconds: float = REFRESH_SECONDS):
        self.pool = pool
        self.refresh_seconds = refresh_seconds
        self._snapshot: dict[str, tuple[AlertRule, ...]] = {}
        self._refresh_task: Optional[asyncio.Task] = None
        self.loaded_at: Optional[datetime] = None
        self.refresh_errors = 0
        # Bumped on every swap so consumers can tell the snapshot changed.
        self.version = 0
        self._rule_ids: frozenset[int] = frozenset()

    def rules_for(self, device_uid: str) -> tuple[AlertRule, ...]:
        return self._snapshot.get(device_uid, ())

    @property
    def device_count(self) -> int:
        return len(self._snapshot)

    @property
    def rule_count(self) -> int:
        return sum(len(rules) for rules in self._snapshot.values())

    def rule_ids(self) -> frozenset[int]:
        return self._rule_ids

    def replace(self, snapshot: dict[str, tuple[AlertRule, ...]]) -> None:
        self._snapshot = snapshot
        self._rule_ids = frozenset(rule.id for rules in snapshot.values() for rule in rules)
        self.version += 1
        self.loaded_at = datetime.now(timezone.utc)
        evaluator_rules_loaded.set(self.rule_count)

    async def refresh(self) -> bool:
        """Reload the snapshot. Returns False (keeping the old one) on error."""
        started = time.monotonic()
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(FETCH_RULES_SQL)
        except Exception as exc:
            self.refresh_errors += 1
            evaluator_refresh_errors_total.inc()
            log_exception(
                logger,
                "alert rule refresh failed, keeping stale snapshot",
                exc,
                {"devices": self.device_count},
            )
            return False
        self.replace(build_snapshot(rows))
        logger.debug(
            "alert rules refreshed",
            extra={
                "devices": self.device_count,
                "rules": self.rule_count,
                "elapsed_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        return True

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_seconds)
            await self.refresh()

    async def start(self) -> None:
        """Load once, then keep refreshing in the background."""
        await self.refresh()
        logger.info(
            "alert rules loaded",
            extra={"devices": self.device_count, "rules": self.rule_count},
        )
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
