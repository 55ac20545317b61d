"""
Sensor telemetry ingest service.

Subscribes to the device topics on the MQTT broker, normalizes every
message, debounces and batches readings into sensor_readings, evaluates
alert rules and batches fired alerts into alert_logs.

Run via: python -m sensor_pulse.ingest.ingest
"""

import asyncio
import logging
import signal
import ssl
from dataclasses import dataclass
from functools import partial
from typing import Optional
from urllib.parse import urlparse

import asyncpg
import paho.mqtt.client as mqtt

from sensor_pulse.evaluator.evaluator import AlertEvaluator
from sensor_pulse.evaluator.rules import RuleSnapshotStore
from sensor_pulse.ingest.liveness import DeviceLivenessCache
from sensor_pulse.ingest.normalizer import local_ip_address
from sensor_pulse.ingest.pipeline import IngestPipeline
from sensor_pulse.shared.batch_writer import AlertLogBatchWriter, ReadingBatchWriter
from sensor_pulse.shared.config import Settings
from sensor_pulse.shared.db import create_pool, report_pool_stats, update_device_status
from sensor_pulse.shared.health import start_health_server
from sensor_pulse.shared.logging import configure_logging, log_event

logger = logging.getLogger("ingest")

SERVICE_NAME = "ingest"
LOG_STATS_EVERY_SECONDS = 30
MQTT_RETRY_SECONDS = 5.0


@dataclass(frozen=True)
class BrokerAddress:
    host: str
    port: int
    transport: str  # "tcp" | "websockets"
    tls: bool
    path: str = "/mqtt"


_SCHEME_DEFAULTS = {
    "mqtt": ("tcp", False, 1883),
    "tcp": ("tcp", False, 1883),
    "mqtts": ("tcp", True, 8883),
    "ssl": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


def parse_broker_url(url: str) -> BrokerAddress:
    parsed = urlparse(url)
    scheme = (parsed.scheme or "mqtt").lower()
    if scheme not in _SCHEME_DEFAULTS:
        raise ValueError(f"unsupported MQTT broker scheme {scheme!r} in {url!r}")
    transport, tls, default_port = _SCHEME_DEFAULTS[scheme]
    path = parsed.path if parsed.path not in ("", "/") else "/mqtt"
    return BrokerAddress(
        host=parsed.hostname or "localhost",
        port=parsed.port or default_port,
        transport=transport,
        tls=tls,
        path=path,
    )


def build_pipeline(settings: Settings, pool: asyncpg.Pool, rule_store: RuleSnapshotStore) -> IngestPipeline:
    liveness = DeviceLivenessCache(
        offline_after=settings.offline_after_seconds,
        on_status=partial(update_device_status, pool),
    )
    return IngestPipeline(
        liveness=liveness,
        evaluator=AlertEvaluator(rule_store),
        reading_writer=ReadingBatchWriter(
            pool,
            flush_interval_ms=settings.reading_flush_interval_ms,
            max_buffer_size=settings.max_buffer_size,
        ),
        alert_writer=AlertLogBatchWriter(
            pool,
            flush_interval_ms=settings.alert_flush_interval_ms,
            max_buffer_size=settings.max_buffer_size,
        ),
        default_ip=local_ip_address(),
    )


class Ingestor:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.broker = parse_broker_url(settings.mqtt_broker_url)
        self.pool: Optional[asyncpg.Pool] = None
        self.rule_store: Optional[RuleSnapshotStore] = None
        self.pipeline: Optional[IngestPipeline] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._mqtt: Optional[mqtt.Client] = None
        self._shutdown = asyncio.Event()
        self._stats_task: Optional[asyncio.Task] = None
        self._health_runner = None
        self.msg_dropped = 0

    # --- MQTT callbacks (paho network thread) ---

    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error("mqtt connect refused", extra={"reason": str(reason_code)})
            return
        log_event(logger, "mqtt connected", topics=list(self.settings.mqtt_topics))
        client.subscribe([(topic, 0) for topic in self.settings.mqtt_topics])

    def on_disconnect(self, client, userdata, flags, reason_code, properties):
        logger.warning("mqtt disconnected", extra={"reason": str(reason_code)})

    def on_message(self, client, userdata, msg):
        if self.loop is None or self.loop.is_closed():
            self.msg_dropped += 1
            return
        # Hand off to the event loop; arrival order is preserved.
        self.loop.call_soon_threadsafe(self._dispatch, msg.topic, bytes(msg.payload))

    # --- event loop side ---

    def _dispatch(self, topic: str, payload: bytes) -> None:
        try:
            self.pipeline.handle_message(topic, payload)
        except Exception:
            logger.exception("message handling failed", extra={"topic": topic})

    def _build_mqtt_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.settings.mqtt_client_id,
            transport=self.broker.transport,
        )
        if self.broker.transport == "websockets":
            client.ws_set_options(path=self.broker.path)
        if self.settings.mqtt_username:
            client.username_pw_set(self.settings.mqtt_username, self.settings.mqtt_password)
        if self.broker.tls:
            client.tls_set(tls_version=ssl.PROTOCOL_TLS_CLIENT)
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        client.on_connect = self.on_connect
        client.on_disconnect = self.on_disconnect
        client.on_message = self.on_message
        return client

    def _try_init_mqtt(self) -> bool:
        client = self._build_mqtt_client()
        try:
            client.connect(self.broker.host, self.broker.port, keepalive=60)
        except OSError as exc:
            logger.warning(
                "mqtt connect failed",
                extra={"host": self.broker.host, "port": self.broker.port, "error": str(exc)},
            )
            return False
        client.loop_start()
        self._mqtt = client
        return True

    async def stats_worker(self):
        while True:
            await asyncio.sleep(LOG_STATS_EVERY_SECONDS)
            log_event(logger, "ingest stats", **self.stats())
            report_pool_stats(self.pool, SERVICE_NAME)

    def stats(self) -> dict:
        stats = {"messages_dropped": self.msg_dropped}
        if self.pipeline is not None:
            stats.update(self.pipeline.stats())
        if self.rule_store is not None:
            stats["rules"] = {
                "devices": self.rule_store.device_count,
                "rules": self.rule_store.rule_count,
                "loaded_at": self.rule_store.loaded_at.isoformat() if self.rule_store.loaded_at else None,
                "refresh_errors": self.rule_store.refresh_errors,
            }
        return stats

    async def run(self):
        self.loop = asyncio.get_running_loop()
        self.pool = await create_pool(self.settings)
        self.rule_store = RuleSnapshotStore(self.pool, refresh_seconds=self.settings.rule_refresh_seconds)
        self.pipeline = build_pipeline(self.settings, self.pool, self.rule_store)
        self._health_runner = await start_health_server(SERVICE_NAME, self.stats, self.settings.health_port)

        await self.rule_store.start()
        await self.pipeline.reading_writer.start()
        await self.pipeline.alert_writer.start()
        self._stats_task = asyncio.create_task(self.stats_worker())

        for sig in (signal.SIGTERM, signal.SIGINT):
            self.loop.add_signal_handler(sig, self._shutdown.set)

        # The broker may come up after us; keep retrying until shutdown.
        while not self._shutdown.is_set():
            if self._try_init_mqtt():
                break
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=MQTT_RETRY_SECONDS)
            except asyncio.TimeoutError:
                pass

        await self._shutdown.wait()
        await self.shutdown()

    async def shutdown(self):
        log_event(logger, "shutdown initiated")
        if self._mqtt is not None:
            self._mqtt.disconnect()
            self._mqtt.loop_stop()
        if self._stats_task is not None:
            self._stats_task.cancel()
        if self.rule_store is not None:
            await self.rule_store.stop()
        if self.pipeline is not None:
            # Best effort: a flush still in flight or failing here is lost.
            await self.pipeline.reading_writer.stop()
            await self.pipeline.alert_writer.stop()
            await self.pipeline.liveness.close()
        if self._health_runner is not None:
            await self._health_runner.cleanup()
        if self.pool is not None:
            await self.pool.close()
        log_event(logger, "shutdown complete")


async def main():
    configure_logging(SERVICE_NAME)
    ingestor = Ingestor(Settings.from_env())
    await ingestor.run()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
