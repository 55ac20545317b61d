import logging
from datetime import datetime, timezone
from typing import Callable

from sensor_pulse.evaluator.evaluator import AlertEvaluator
from sensor_pulse.ingest.liveness import DeviceLivenessCache
from sensor_pulse.ingest.normalizer import MalformedPayloadError, normalize_message
from sensor_pulse.shared.batch_writer import AlertLogBatchWriter, ReadingBatchWriter
from sensor_pulse.shared.metrics import ingest_messages_total, ingest_readings_total
from sensor_pulse.shared.telemetry import Reading

logger = logging.getLogger(__name__)

PAYLOAD_PREVIEW_BYTES = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestPipeline:
    """
    Message -> readings -> {liveness/debounce, alert evaluation} -> write buffers.

    Runs synchronously on the event loop; the only awaits in the ingest path
    belong to the batch writers' own flush ticks.
    """

    def __init__(
        self,
        liveness: DeviceLivenessCache,
        evaluator: AlertEvaluator,
        reading_writer: ReadingBatchWriter,
        alert_writer: AlertLogBatchWriter,
        default_ip: str = "0.0.0.0",
        now: Callable[[], datetime] = utcnow,
    ):
        self.liveness = liveness
        self.evaluator = evaluator
        self.reading_writer = reading_writer
        self.alert_writer = alert_writer
        self.default_ip = default_ip
        self._now = now

        self.msg_received = 0
        self.msg_malformed = 0
        self.msg_empty = 0
        self.readings_seen = 0

    def handle_message(self, topic: str, payload: bytes) -> list[Reading]:
        self.msg_received += 1
        try:
            readings = normalize_message(topic, payload, received_at=self._now(), default_ip=self.default_ip)
        except MalformedPayloadError as exc:
            self.msg_malformed += 1
            ingest_messages_total.labels(result="malformed").inc()
            logger.warning(
                "discarding malformed message",
                extra={
                    "topic": topic,
                    "error": str(exc),
                    "payload_preview": payload[:PAYLOAD_PREVIEW_BYTES].decode("utf-8", errors="replace"),
                },
            )
            return []

        if not readings:
            self.msg_empty += 1
            ingest_messages_total.labels(result="empty").inc()
            return []

        ingest_messages_total.labels(result="normalized").inc()
        for reading in readings:
            self.readings_seen += 1
            if self.liveness.observe(reading.device_uid):
                self.reading_writer.add(reading)
                ingest_readings_total.labels(decision="accepted").inc()
            else:
                ingest_readings_total.labels(decision="debounced").inc()

            alerts = self.evaluator.evaluate(reading)
            if alerts:
                self.alert_writer.add_many(alerts)
        return readings

    def stats(self) -> dict:
        return {
            "messages_received": self.msg_received,
            "messages_malformed": self.msg_malformed,
            "messages_empty": self.msg_empty,
            "readings_seen": self.readings_seen,
            "liveness": self.liveness.stats(),
            "evaluator": self.evaluator.stats(),
            "readings_writer": self.reading_writer.get_stats(),
            "alert_writer": self.alert_writer.get_stats(),
        }
