import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from sensor_pulse.evaluator.evaluator import AlertLogRecord
from sensor_pulse.shared.batch_writer import (
    INSERT_ALERT_LOGS_SQL,
    INSERT_READINGS_SQL,
    AlertLogBatchWriter,
    ReadingBatchWriter,
)
from sensor_pulse.shared.telemetry import Reading
from tests.fakes import FakeConn, FakePool

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _reading(uid="D1", **channels):
    return Reading(
        device_uid=uid,
        captured_at=NOW,
        channels=channels or {"temperature": 21.0},
        ip_address="10.0.0.1",
        status="online",
    )


class BlockingConn(FakeConn):
    """execute() waits until released, to hold a flush in flight."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, query, *args):
        self.entered.set()
        await self.release.wait()
        return await super().execute(query, *args)


class RecordingPool(FakePool):
    """Checks the in-flight flag is raised for the whole duration of a write."""

    def __init__(self, conn, writer_ref):
        super().__init__(conn)
        self.writer_ref = writer_ref
        self.flag_seen = []

    @asynccontextmanager
    async def acquire(self):
        self.flag_seen.append(self.writer_ref[0].flushing)
        yield self.conn


async def test_flush_writes_whole_batch_in_one_statement():
    conn = FakeConn()
    writer = ReadingBatchWriter(FakePool(conn))
    writer.add(_reading("D1", temperature=21.0, flow_rate=3.0))
    writer.add(_reading("D2", humidity=40.0))

    written = await writer.flush()

    assert written == 2
    assert len(conn.execute_calls) == 1
    query, args = conn.execute_calls[0]
    assert query == INSERT_READINGS_SQL
    assert len(args) == 12
    device_ids, timestamps, temperature = args[0], args[1], args[2]
    assert device_ids == ["D1", "D2"]
    assert timestamps == [NOW, NOW]
    assert temperature == [21.0, None]
    assert args[6] == [None, 40.0]  # humidity
    assert args[7] == [3.0, None]  # flow_rate
    assert args[10] == ["10.0.0.1", "10.0.0.1"]
    assert args[11] == ["online", "online"]
    assert writer.batch == []
    assert writer.records_written == 2


async def test_empty_flush_touches_nothing():
    conn = FakeConn()
    pool = FakePool(conn)
    writer = ReadingBatchWriter(pool)
    assert await writer.flush() == 0
    assert pool.acquired == 0


async def test_failed_flush_drops_batch_and_clears_flag():
    conn = FakeConn(fail_with=ConnectionError("db gone"))
    writer = ReadingBatchWriter(FakePool(conn))
    writer.add(_reading())
    writer.add(_reading("D2"))

    assert await writer.flush() == 0

    assert writer.batch == []
    assert writer.flushing is False
    assert writer.records_dropped == 2
    assert writer.write_errors == 1

    # Not requeued: the next flush has nothing to write.
    conn.fail_with = None
    assert await writer.flush() == 0
    assert conn.execute_calls == []


async def test_flag_is_set_while_writing():
    conn = FakeConn()
    holder = []
    pool = RecordingPool(conn, holder)
    writer = ReadingBatchWriter(pool)
    holder.append(writer)

    writer.add(_reading())
    await writer.flush()

    assert pool.flag_seen == [True]
    assert writer.flushing is False


async def test_concurrent_flush_is_skipped():
    conn = BlockingConn()
    writer = ReadingBatchWriter(FakePool(conn))
    writer.add(_reading("D1"))

    first = asyncio.create_task(writer.flush())
    await conn.entered.wait()
    assert writer.flushing is True

    # Records arriving mid-flush wait for the next tick.
    writer.add(_reading("D2"))
    assert await writer.flush() == 0
    assert writer.flushes_skipped == 1

    conn.release.set()
    assert await first == 1
    assert [r.device_uid for r in writer.batch] == ["D2"]

    assert await writer.flush() == 1
    assert len(conn.execute_calls) == 2


async def test_full_buffer_drops_oldest():
    writer = ReadingBatchWriter(FakePool(FakeConn()), max_buffer_size=2)
    writer.add(_reading("D1"))
    writer.add(_reading("D2"))
    writer.add(_reading("D3"))

    assert [r.device_uid for r in writer.batch] == ["D2", "D3"]
    assert writer.records_dropped == 1


async def test_background_loop_flushes_and_stop_drains():
    conn = FakeConn()
    writer = ReadingBatchWriter(FakePool(conn), flush_interval_ms=20)
    await writer.start()
    writer.add(_reading("D1"))
    await asyncio.sleep(0.08)
    assert writer.records_written == 1

    writer.add(_reading("D2"))
    await writer.stop()
    assert writer.records_written == 2
    assert writer.batch == []


async def test_alert_log_writer_maps_columns():
    conn = FakeConn(execute_status="INSERT 0 1")
    writer = AlertLogBatchWriter(FakePool(conn))
    writer.add(
        AlertLogRecord(
            device_pk=7,
            device_uid="D1",
            user_id=3,
            rule_id=11,
            input_name="temperature",
            triggered_value=55.0,
            condition=">",
            threshold=50.0,
            notify_email=True,
            notify_sms=False,
            notify_chat=True,
            created_at=NOW,
        )
    )

    assert await writer.flush() == 1

    query, args = conn.execute_calls[0]
    assert query == INSERT_ALERT_LOGS_SQL
    assert [a[0] for a in args] == [
        7, 3, 11, "temperature", 55.0, ">", 50.0, True, False, True, "queued", False, NOW,
    ]
    assert writer.orphans_skipped == 0


def _alert(device_pk, rule_id):
    return AlertLogRecord(
        device_pk=device_pk,
        device_uid=f"D{device_pk}",
        user_id=3,
        rule_id=rule_id,
        input_name="temperature",
        triggered_value=55.0,
        condition=">",
        threshold=50.0,
        created_at=NOW,
    )


async def test_alerts_for_deleted_devices_do_not_fail_the_batch(caplog):
    # The database keeps only the row whose device still exists.
    conn = FakeConn(execute_status="INSERT 0 1")
    writer = AlertLogBatchWriter(FakePool(conn))
    writer.add_many([_alert(7, 11), _alert(99, 12)])

    assert await writer.flush() == 2
    assert "WHERE EXISTS (SELECT 1 FROM devices" in conn.execute_calls[0][0]
    assert writer.write_errors == 0
    assert writer.orphans_skipped == 1
    assert writer.get_stats()["orphans_skipped"] == 1
    assert "skipped alerts for devices that no longer exist" in caplog.text
