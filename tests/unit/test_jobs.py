import asyncio
from datetime import datetime, timezone

import pytest

from sensor_pulse.jobs import main as jobs_main
from sensor_pulse.jobs.device_status import RECONCILE_STATUS_SQL, reconcile_device_status
from sensor_pulse.jobs.main import RollupJob, aligned_worker_loop, run_tick, seconds_until_next_boundary
from sensor_pulse.jobs.rollup import RollupResult
from sensor_pulse.shared.logging import run_id_var
from tests.fakes import FakeConn, FakePool

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


async def test_seconds_until_next_half_hour():
    assert seconds_until_next_boundary(_utc(2024, 5, 1, 12, 29, 0), 1800) == 60
    assert seconds_until_next_boundary(_utc(2024, 5, 1, 12, 30, 0), 1800) == 1800
    assert seconds_until_next_boundary(_utc(2024, 5, 1, 12, 0, 30), 1800) == 1770


async def test_reconcile_only_counts_changed_rows():
    conn = FakeConn(execute_status="UPDATE 3")
    changed = await reconcile_device_status(FakePool(conn))

    assert changed == 3
    query, args = conn.execute_calls[0]
    assert query == RECONCILE_STATUS_SQL
    assert args == (30,)
    assert "IS DISTINCT FROM" in RECONCILE_STATUS_SQL


async def test_reconcile_with_nothing_to_change():
    conn = FakeConn(execute_status="UPDATE 0")
    assert await reconcile_device_status(FakePool(conn)) == 0


async def test_failed_rollup_window_is_retried_next_tick(monkeypatch):
    calls = []
    outcomes = iter([False, True, True])

    async def fake_run_rollup(pool, batch_size, bucket_seconds, window):
        calls.append(window)
        ok = next(outcomes)
        return RollupResult(window_start=window[0], window_end=window[1], error=None if ok else "boom")

    ticks = iter([_utc(2024, 5, 1, 12, 30, 1), _utc(2024, 5, 1, 13, 0, 1)])

    class FrozenDatetime(datetime):
        @classmethod
        def now(cls, tz=None):
            return next(ticks)

    monkeypatch.setattr(jobs_main, "run_rollup", fake_run_rollup)
    monkeypatch.setattr(jobs_main, "datetime", FrozenDatetime)

    job = RollupJob(batch_size=500, bucket_seconds=1800)
    await job(FakePool(FakeConn()))
    assert job.failed_windows == [(_utc(2024, 5, 1, 12, 0), _utc(2024, 5, 1, 12, 30))]

    await job(FakePool(FakeConn()))
    assert calls == [
        (_utc(2024, 5, 1, 12, 0), _utc(2024, 5, 1, 12, 30)),
        (_utc(2024, 5, 1, 12, 0), _utc(2024, 5, 1, 12, 30)),
        (_utc(2024, 5, 1, 12, 30), _utc(2024, 5, 1, 13, 0)),
    ]
    assert job.failed_windows == []


async def test_run_tick_contains_failures_and_resets_run_id(caplog):
    seen = []

    async def failing(_pool):
        seen.append(run_id_var.get())
        raise RuntimeError("tick exploded")

    await run_tick(failing, FakePool(FakeConn()))

    assert seen[0] != ""
    assert run_id_var.get() == ""
    assert "Worker loop failed" in caplog.text


async def test_run_tick_logs_under_explicit_name(caplog):
    caplog.set_level("INFO")

    async def job(_pool):
        pass

    await run_tick(job, FakePool(FakeConn()), name="rollup")

    ticks = [r.tick for r in caplog.records if r.getMessage() in ("tick_start", "tick_done")]
    assert ticks == ["rollup", "rollup"]


async def test_aligned_loop_ticks_once_at_startup(monkeypatch):
    events = []

    async def job(_pool):
        events.append("tick")
        if events.count("tick") == 2:
            raise asyncio.CancelledError

    def next_boundary(_now, _interval):
        events.append("wait")
        return 0

    monkeypatch.setattr(jobs_main, "seconds_until_next_boundary", next_boundary)
    monkeypatch.setattr(jobs_main, "BOUNDARY_SLACK_SECONDS", 0)

    with pytest.raises(asyncio.CancelledError):
        await aligned_worker_loop(job, FakePool(FakeConn()), interval=1800, name="rollup")

    assert events == ["tick", "wait", "tick"]
