"""
Turns raw broker messages into Reading records.

A payload is either one device reading (the device identifier sits at the
top level) or a container of named sub-objects such as ``Meter_1`` and
``Meter_2``, each of which is a reading when it carries a device identifier
and at least one recognized channel. Field names are matched
case-insensitively and punctuation-insensitively, so ``FlowRate``,
``flow_rate`` and ``Level`` all land on the ``flow_rate`` channel.
"""

import json
import logging
import socket
from datetime import datetime, timezone
from typing import Optional

from sensor_pulse.shared.telemetry import CHANNEL_ALIASES, Reading, normalize_key, to_float

logger = logging.getLogger(__name__)

DEVICE_ID_KEYS = ("deviceuid", "deviceid")
STATUS_KEYS = ("status", "error")
IP_KEYS = ("localip",)
DEFAULT_STATUS = "online"


class MalformedPayloadError(ValueError):
    """The payload is not a UTF-8 JSON object."""


def local_ip_address() -> str:
    """Primary outbound IPv4 address of this host, 0.0.0.0 when offline."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent for a UDP connect; it only selects a route.
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return "0.0.0.0"
    finally:
        sock.close()


def parse_payload(payload: bytes) -> dict:
    try:
        text = payload.decode("utf-8").strip()
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError(str(exc)) from exc
    if not isinstance(data, dict):
        raise MalformedPayloadError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _flatten(obj: dict) -> dict:
    """Scalar fields keyed by normalized name; first occurrence wins."""
    fields = {}
    for key, value in obj.items():
        if isinstance(value, (dict, list)):
            continue
        fields.setdefault(normalize_key(key), value)
    return fields


def _first(fields: dict, names) -> Optional[object]:
    """First truthy value among names; used for status and IP, where 0 and "" mean unset."""
    for name in names:
        value = fields.get(name)
        if value:
            return value
    return None


def _device_uid(fields: dict) -> Optional[str]:
    # A numeric 0 is a valid id; only missing, boolean and blank values are not.
    for name in DEVICE_ID_KEYS:
        raw = fields.get(name)
        if raw is None or isinstance(raw, bool):
            continue
        uid = str(raw).strip()
        if uid:
            return uid
    return None


def extract_channels(fields: dict) -> dict[str, float]:
    channels = {}
    for channel, aliases in CHANNEL_ALIASES.items():
        for alias in aliases:
            if alias not in fields:
                continue
            value = to_float(fields[alias])
            if value is not None:
                channels[channel] = value
                break
    return channels


def _build_reading(
    fields: dict,
    device_uid: str,
    received_at: datetime,
    default_ip: str,
    topic: Optional[str],
    channels: Optional[dict[str, float]] = None,
) -> Reading:
    status = _first(fields, STATUS_KEYS)
    ip_address = _first(fields, IP_KEYS)
    return Reading(
        device_uid=device_uid,
        captured_at=received_at,
        channels=channels if channels is not None else extract_channels(fields),
        ip_address=str(ip_address) if ip_address else default_ip,
        status=str(status) if status else DEFAULT_STATUS,
        topic=topic,
    )


def normalize_payload(
    data: dict,
    received_at: datetime,
    default_ip: str = "0.0.0.0",
    topic: Optional[str] = None,
) -> list[Reading]:
    fields = _flatten(data)
    device_uid = _device_uid(fields)
    if device_uid is not None:
        return [_build_reading(fields, device_uid, received_at, default_ip, topic)]

    readings = []
    for value in data.values():
        if not isinstance(value, dict):
            continue
        sub_fields = _flatten(value)
        sub_uid = _device_uid(sub_fields)
        if sub_uid is None:
            continue
        channels = extract_channels(sub_fields)
        if not channels:
            continue
        readings.append(
            _build_reading(sub_fields, sub_uid, received_at, default_ip, topic, channels=channels)
        )
    return readings


def normalize_message(
    topic: str,
    payload: bytes,
    received_at: Optional[datetime] = None,
    default_ip: str = "0.0.0.0",
) -> list[Reading]:
    """
    Parse and normalize one broker message.

    Raises MalformedPayloadError when the payload is not a JSON object.
    A well-formed payload without any device reading yields an empty list.
    """
    data = parse_payload(payload)
    when = received_at or datetime.now(timezone.utc)
    readings = normalize_payload(data, when, default_ip=default_ip, topic=topic)
    if not readings:
        logger.debug("message carried no device readings", extra={"topic": topic})
    return readings
