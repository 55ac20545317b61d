"""
Per-device liveness state and adaptive debounce.

Every message refreshes the device's last-seen time and re-arms a single
offline timer. Whether a reading is persisted depends on how fast the
device reports: the mean gap over its last few arrivals picks a fast (1 s)
or slow (60 s) minimum spacing between persisted readings. Readings that
arrive inside that spacing are dropped, not deferred.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Optional

from sensor_pulse.shared.metrics import device_status_transitions_total, liveness_devices

logger = logging.getLogger(__name__)

OFFLINE_AFTER_SECONDS = 30 * 60
ARRIVAL_WINDOW = 5
HIGH_FREQUENCY_GAP_SECONDS = 30.0
FAST_INTERVAL_SECONDS = 1.0
SLOW_INTERVAL_SECONDS = 60.0

StatusCallback = Callable[[str, str], Awaitable[Any]]


@dataclass
class DeviceLivenessEntry:
    device_uid: str
    last_seen_at: float
    last_persisted_at: Optional[float] = None
    min_interval: float = SLOW_INTERVAL_SECONDS
    arrivals: deque = field(default_factory=deque)
    offline_timer: Optional[asyncio.TimerHandle] = None

    def mean_gap(self) -> Optional[float]:
        if len(self.arrivals) < 2:
            return None
        return (self.arrivals[-1] - self.arrivals[0]) / (len(self.arrivals) - 1)


class DeviceLivenessCache:
    """
    Owns every DeviceLivenessEntry. Must be used from the event loop thread.
    """

    def __init__(
        self,
        offline_after: float = OFFLINE_AFTER_SECONDS,
        arrival_window: int = ARRIVAL_WINDOW,
        high_frequency_gap: float = HIGH_FREQUENCY_GAP_SECONDS,
        fast_interval: float = FAST_INTERVAL_SECONDS,
        slow_interval: float = SLOW_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        on_status: Optional[StatusCallback] = None,
    ):
        self.offline_after = offline_after
        self.arrival_window = arrival_window
        self.high_frequency_gap = high_frequency_gap
        self.fast_interval = fast_interval
        self.slow_interval = slow_interval
        self._clock = clock
        self._on_status = on_status
        self._entries: dict[str, DeviceLivenessEntry] = {}
        self._status_tasks: set[asyncio.Task] = set()
        # Last status write per device; the next one waits for it.
        self._status_tail: dict[str, asyncio.Task] = {}

        self.accepted = 0
        self.debounced = 0
        self.offline_transitions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, device_uid: str) -> bool:
        return device_uid in self._entries

    def get(self, device_uid: str) -> Optional[DeviceLivenessEntry]:
        return self._entries.get(device_uid)

    def min_interval(self, device_uid: str) -> float:
        entry = self._entries.get(device_uid)
        return entry.min_interval if entry else self.slow_interval

    def observe(self, device_uid: str) -> bool:
        """
        Record one arrival. Returns True when the reading should be persisted.
        """
        now = self._clock()
        entry = self._entries.get(device_uid)
        if entry is None:
            entry = DeviceLivenessEntry(
                device_uid=device_uid,
                last_seen_at=now,
                min_interval=self.slow_interval,
                arrivals=deque(maxlen=self.arrival_window),
            )
            self._entries[device_uid] = entry
            liveness_devices.set(len(self._entries))
            self._emit_status(device_uid, "online")

        entry.last_seen_at = now
        entry.arrivals.append(now)
        gap = entry.mean_gap()
        if gap is not None:
            entry.min_interval = self.fast_interval if gap < self.high_frequency_gap else self.slow_interval

        self._rearm_offline_timer(entry)

        if entry.last_persisted_at is None or now - entry.last_persisted_at >= entry.min_interval:
            entry.last_persisted_at = now
            self.accepted += 1
            return True
        self.debounced += 1
        return False

    def _rearm_offline_timer(self, entry: DeviceLivenessEntry) -> None:
        # Cancel before scheduling: one live timer per device.
        if entry.offline_timer is not None:
            entry.offline_timer.cancel()
        loop = asyncio.get_running_loop()
        entry.offline_timer = loop.call_later(self.offline_after, self._expire, entry)

    def _expire(self, entry: DeviceLivenessEntry) -> None:
        if self._entries.get(entry.device_uid) is not entry:
            return
        del self._entries[entry.device_uid]
        entry.offline_timer = None
        liveness_devices.set(len(self._entries))
        self.offline_transitions += 1
        logger.info(
            "device went silent, marking offline",
            extra={"device_uid": entry.device_uid, "offline_after_s": self.offline_after},
        )
        self._emit_status(entry.device_uid, "offline")

    def _emit_status(self, device_uid: str, status: str) -> None:
        device_status_transitions_total.labels(status=status).inc()
        if self._on_status is None:
            return
        previous = self._status_tail.get(device_uid)
        task = asyncio.get_running_loop().create_task(self._run_status(device_uid, status, previous))
        self._status_tail[device_uid] = task
        self._status_tasks.add(task)
        task.add_done_callback(partial(self._status_done, device_uid))

    def _status_done(self, device_uid: str, task: asyncio.Task) -> None:
        self._status_tasks.discard(task)
        if self._status_tail.get(device_uid) is task:
            del self._status_tail[device_uid]

    async def _run_status(self, device_uid: str, status: str, previous: Optional[asyncio.Task]) -> None:
        if previous is not None:
            # Writes for one device land in the order they were emitted.
            await asyncio.wait({previous})
        try:
            await self._on_status(device_uid, status)
        except Exception:
            logger.exception(
                "status callback failed",
                extra={"device_uid": device_uid, "status": status},
            )

    def stats(self) -> dict:
        return {
            "devices": len(self._entries),
            "accepted": self.accepted,
            "debounced": self.debounced,
            "offline_transitions": self.offline_transitions,
        }

    async def close(self) -> None:
        """Cancel every offline timer and wait for in-flight status writes."""
        for entry in self._entries.values():
            if entry.offline_timer is not None:
                entry.offline_timer.cancel()
                entry.offline_timer = None
        if self._status_tasks:
            await asyncio.gather(*list(self._status_tasks), return_exceptions=True)
