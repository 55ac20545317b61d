import os
from dataclasses import dataclass
from typing import Optional


def require_env(name: str) -> str:
    """
    Read a required environment variable.
    Raises RuntimeError at startup if the variable is absent or empty.
    Use this for credentials (database password, broker password).
    """
    value = os.environ.get(name, "").strip()
    if not value:
        raise RuntimeError(
            f"Required environment variable '{name}' is not set. "
            "Set it before starting the service."
        )
    return value


def optional_env(name: str, default: str = "") -> str:
    """Read an optional, non-sensitive environment variable."""
    return os.environ.get(name, default)


def int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be an integer, got {raw!r}")


def float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be a number, got {raw!r}")


def split_topics(raw: str) -> tuple[str, ...]:
    return tuple(t.strip() for t in raw.split(",") if t.strip())


@dataclass(frozen=True)
class Settings:
    """Runtime configuration shared by the ingest and jobs services."""

    database_url: Optional[str] = None
    pg_host: str = "localhost"
    pg_port: int = 5432
    pg_db: str = "sensor_pulse"
    pg_user: str = "sensor"
    pg_pass: str = ""
    pg_pool_min: int = 2
    pg_pool_max: int = 10

    mqtt_broker_url: str = "mqtt://localhost:1883"
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_topics: tuple[str, ...] = ("Sense/#",)
    mqtt_client_id: str = ""

    reading_flush_interval_ms: int = 1000
    alert_flush_interval_ms: int = 3000
    max_buffer_size: int = 50000
    rule_refresh_seconds: float = 10.0
    offline_after_seconds: float = 1800.0

    rollup_interval_seconds: int = 1800
    rollup_device_batch_size: int = 500
    status_reconcile_seconds: int = 60

    health_port: int = 8080

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = optional_env("DATABASE_URL") or None
        # The password is only mandatory when no DSN carries it.
        pg_pass = optional_env("PG_PASS") if database_url else require_env("PG_PASS")
        return cls(
            database_url=database_url,
            pg_host=optional_env("PG_HOST", "localhost"),
            pg_port=int_env("PG_PORT", 5432),
            pg_db=optional_env("PG_DB", "sensor_pulse"),
            pg_user=optional_env("PG_USER", "sensor"),
            pg_pass=pg_pass,
            pg_pool_min=int_env("PG_POOL_MIN", 2),
            pg_pool_max=int_env("PG_POOL_MAX", 10),
            mqtt_broker_url=optional_env("MQTT_BROKER_URL", "mqtt://localhost:1883"),
            mqtt_username=optional_env("MQTT_USERNAME") or None,
            mqtt_password=optional_env("MQTT_PASSWORD") or None,
            mqtt_topics=split_topics(optional_env("MQTT_TOPICS", "Sense/#")),
            mqtt_client_id=optional_env("MQTT_CLIENT_ID", ""),
            reading_flush_interval_ms=int_env("READING_FLUSH_INTERVAL_MS", 1000),
            alert_flush_interval_ms=int_env("ALERT_FLUSH_INTERVAL_MS", 3000),
            max_buffer_size=int_env("MAX_BUFFER_SIZE", 50000),
            rule_refresh_seconds=float_env("RULE_REFRESH_SECONDS", 10.0),
            offline_after_seconds=float_env("OFFLINE_AFTER_SECONDS", 1800.0),
            rollup_interval_seconds=int_env("ROLLUP_INTERVAL_SECONDS", 1800),
            rollup_device_batch_size=int_env("ROLLUP_DEVICE_BATCH_SIZE", 500),
            status_reconcile_seconds=int_env("STATUS_RECONCILE_SECONDS", 60),
            health_port=int_env("HEALTH_PORT", 8080),
        )
