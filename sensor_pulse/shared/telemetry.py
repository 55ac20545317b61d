import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

# Canonical channel -> accepted field names, in lookup priority order.
# Names are compared after normalize_key(), so "Flow_Rate", "FLOWRATE" and
# "flowrate" are all the same field.
CHANNEL_ALIASES: dict[str, tuple[str, ...]] = {
    "temperature": ("temperature", "temp"),
    "temperature_r": ("temperaturer", "tempr", "temp1"),
    "temperature_y": ("temperaturey", "tempy", "temp2"),
    "temperature_b": ("temperatureb", "tempb", "temp3"),
    "humidity": ("humidity", "hum"),
    "flow_rate": ("flowrate", "flow", "level"),
    "pressure": ("pressure",),
    "total_volume": ("totalizer", "totalvolume"),
}

CHANNELS: tuple[str, ...] = tuple(CHANNEL_ALIASES)

# Continuous channels are averaged in rollups; total_volume is cumulative.
AVERAGED_CHANNELS: tuple[str, ...] = tuple(c for c in CHANNELS if c != "total_volume")

_ALIAS_TO_CHANNEL: dict[str, str] = {
    alias: channel for channel, aliases in CHANNEL_ALIASES.items() for alias in aliases
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_key(key: str) -> str:
    return _NON_ALNUM.sub("", str(key).lower())


def resolve_channel(name: Optional[str]) -> Optional[str]:
    """Map any alias or canonical channel name to its canonical channel."""
    if not name:
        return None
    return _ALIAS_TO_CHANNEL.get(normalize_key(name))


def to_float(value) -> Optional[float]:
    """Finite numbers and numeric strings become floats; everything else is None."""
    if isinstance(value, bool) or value is None:
        return None
    if not isinstance(value, (int, float, str)):
        return None
    try:
        number = float(value.strip() if isinstance(value, str) else value)
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


@dataclass(frozen=True)
class Reading:
    """One normalized telemetry sample for one device."""

    device_uid: str
    captured_at: datetime
    channels: dict[str, float] = field(default_factory=dict)
    ip_address: Optional[str] = None
    status: str = "online"
    topic: Optional[str] = None

    def value(self, channel: str) -> Optional[float]:
        return self.channels.get(channel)

    def column_values(self) -> tuple[Optional[float], ...]:
        """Channel values in CHANNELS order, None where the device sent nothing."""
        return tuple(self.channels.get(c) for c in CHANNELS)
