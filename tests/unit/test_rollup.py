from datetime import datetime, timedelta, timezone

import pytest

from sensor_pulse.jobs.rollup import (
    FETCH_ACTIVE_DEVICES_SQL,
    INSERT_ROLLUP_SQL,
    floor_to_bucket,
    rollup_window,
    run_rollup,
)
from sensor_pulse.shared.telemetry import AVERAGED_CHANNELS
from tests.fakes import FakeConn, FakePool

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _devices(*uids):
    return [{"device_id": uid} for uid in uids]


async def test_window_is_trailing_closed_bucket():
    start, end = rollup_window(_utc(2024, 5, 1, 12, 47, 13))
    assert start == _utc(2024, 5, 1, 12, 0)
    assert end == _utc(2024, 5, 1, 12, 30)


async def test_window_on_exact_boundary():
    start, end = rollup_window(_utc(2024, 5, 1, 13, 0, 0))
    assert (start, end) == (_utc(2024, 5, 1, 12, 30), _utc(2024, 5, 1, 13, 0))


async def test_floor_to_bucket_handles_offset_timezones():
    ist = timezone(timedelta(hours=5, minutes=30))
    assert floor_to_bucket(datetime(2024, 5, 1, 18, 17, tzinfo=ist)) == _utc(2024, 5, 1, 12, 30)


async def test_no_active_devices_is_a_noop(caplog):
    conn = FakeConn(fetch_result=[])
    result = await run_rollup(FakePool(conn), now=_utc(2024, 5, 1, 12, 31))

    assert result.ok
    assert result.devices == 0
    assert conn.execute_calls == []
    assert "no active devices in rollup window" in caplog.text


async def test_rollup_inserts_for_active_devices():
    conn = FakeConn(fetch_result=_devices("D1", "D2"), execute_status="INSERT 0 2")
    result = await run_rollup(FakePool(conn), now=_utc(2024, 5, 1, 12, 31))

    assert result.ok
    assert result.rows_inserted == 2
    assert conn.fetch_calls[0] == (FETCH_ACTIVE_DEVICES_SQL, (_utc(2024, 5, 1, 12, 0), _utc(2024, 5, 1, 12, 30)))
    query, args = conn.execute_calls[0]
    assert query == INSERT_ROLLUP_SQL
    assert args == (["D1", "D2"], _utc(2024, 5, 1, 12, 0), _utc(2024, 5, 1, 12, 30), 1800)


async def test_rollup_sql_is_idempotent_and_rounds():
    assert "ON CONFLICT (device_id, bucket_start) DO NOTHING" in INSERT_ROLLUP_SQL
    assert "ROUND(AVG(temperature)::numeric, 1)" in INSERT_ROLLUP_SQL
    assert "MAX(total_volume)" in INSERT_ROLLUP_SQL


async def test_rerun_of_same_window_inserts_nothing():
    written = set()

    def insert(_query, args):
        devices, start = args[0], args[1]
        new = {(d, start) for d in devices} - written
        written.update(new)
        return f"INSERT 0 {len(new)}"

    conn = FakeConn(fetch_result=_devices("D1", "D2"), execute_status=insert)
    pool = FakePool(conn)
    now = _utc(2024, 5, 1, 12, 31)

    first = await run_rollup(pool, now=now)
    second = await run_rollup(pool, now=now)

    assert first.rows_inserted == 2
    assert second.rows_inserted == 0
    assert second.window_start == first.window_start


async def test_devices_are_chunked():
    conn = FakeConn(fetch_result=_devices(*[f"D{i}" for i in range(5)]), execute_status="INSERT 0 1")
    result = await run_rollup(FakePool(conn), now=_utc(2024, 5, 1, 12, 31), batch_size=2)

    assert result.batches == 3
    assert [len(args[0]) for _, args in conn.execute_calls] == [2, 2, 1]
    assert result.rows_inserted == 3


async def test_failure_is_reported_not_raised():
    conn = FakeConn(fail_with=OSError("connection refused"))
    result = await run_rollup(FakePool(conn), now=_utc(2024, 5, 1, 12, 31))

    assert not result.ok
    assert "connection refused" in result.error


async def test_explicit_window_overrides_now():
    conn = FakeConn(fetch_result=_devices("D1"), execute_status="INSERT 0 1")
    window = (_utc(2024, 5, 1, 9, 0), _utc(2024, 5, 1, 9, 30))
    result = await run_rollup(FakePool(conn), window=window)

    assert (result.window_start, result.window_end) == window
    assert conn.fetch_calls[0][1] == window


async def test_every_averaged_channel_is_rolled_up():
    for channel in AVERAGED_CHANNELS:
        assert f"ROUND(AVG({channel})::numeric, 1)" in INSERT_ROLLUP_SQL


async def test_failure_log_carries_error_type(caplog):
    conn = FakeConn(fetch_result=_devices("D1"), fail_with=OSError("connection refused"))
    await run_rollup(FakePool(conn), now=_utc(2024, 5, 1, 12, 31))

    [record] = [r for r in caplog.records if r.getMessage() == "rollup failed"]
    assert record.error_type == "OSError"
    assert record.window_start == _utc(2024, 5, 1, 12, 0).isoformat()
