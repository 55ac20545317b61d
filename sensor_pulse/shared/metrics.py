"""
Prometheus metrics for the ingest pipeline and scheduled jobs.

Services expose these via prometheus_client.generate_latest() on /metrics.
"""

from prometheus_client import Counter, Gauge, Histogram

# Ingest
ingest_messages_total = Counter(
    "sensor_ingest_messages_total",
    "Total MQTT messages handled",
    ["result"],  # normalized | empty | malformed
)

ingest_readings_total = Counter(
    "sensor_ingest_readings_total",
    "Normalized readings by debounce decision",
    ["decision"],  # accepted | debounced
)

device_status_transitions_total = Counter(
    "sensor_device_status_transitions_total",
    "Liveness transitions emitted by the in-memory cache",
    ["status"],  # online | offline
)

liveness_devices = Gauge(
    "sensor_liveness_devices",
    "Devices currently tracked in the liveness cache",
)

# Batch writers
batch_records_written_total = Counter(
    "sensor_batch_records_written_total",
    "Records persisted by a batch writer",
    ["writer"],
)

batch_records_dropped_total = Counter(
    "sensor_batch_records_dropped_total",
    "Records lost to a failed flush or a full buffer",
    ["writer", "reason"],  # flush_error | buffer_full
)

batch_flushes_skipped_total = Counter(
    "sensor_batch_flushes_skipped_total",
    "Flush attempts skipped because another flush was in flight",
    ["writer"],
)

batch_pending_records = Gauge(
    "sensor_batch_pending_records",
    "Records buffered and waiting for the next flush",
    ["writer"],
)

batch_flush_duration_seconds = Histogram(
    "sensor_batch_flush_duration_seconds",
    "Duration of a single batch flush",
    ["writer"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# Evaluator
evaluator_rules_loaded = Gauge(
    "sensor_evaluator_rules_loaded",
    "Enabled alert rules in the current snapshot",
)

evaluator_refresh_errors_total = Counter(
    "sensor_evaluator_refresh_errors_total",
    "Rule snapshot refreshes that failed and kept the stale snapshot",
)

evaluator_alerts_fired_total = Counter(
    "sensor_evaluator_alerts_fired_total",
    "Alert rules that fired",
    ["channel"],
)

# Jobs
rollup_rows_inserted_total = Counter(
    "sensor_rollup_rows_inserted_total",
    "Rollup buckets inserted",
)

job_duration_seconds = Histogram(
    "sensor_job_duration_seconds",
    "Duration of a scheduled job run",
    ["job"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
)

db_pool_size = Gauge(
    "sensor_db_pool_size",
    "Current total size of the database connection pool",
    ["service"],
)

db_pool_free = Gauge(
    "sensor_db_pool_free",
    "Current number of idle connections in the pool",
    ["service"],
)
