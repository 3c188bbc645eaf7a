"""Fixed-layout telemetry record shared by the scheduler, workers and persistence."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, Mapping, Tuple

MIC_BIN_COUNT = 32


class Validity(IntEnum):
    """Per-channel validity flag, packed as one byte."""

    OFF = 0
    ON = 1
    ERROR = 2


class Channel(str, Enum):
    BATTERY = "battery"
    O2 = "o2"
    CLIMATE = "climate"
    PRESSURE = "pressure"
    CO2 = "co2"
    MAGNETOMETER = "magnetometer"
    GAS_REFERENCE = "gas_reference"
    COSMIC_WATCH_1 = "cosmic_watch_1"
    COSMIC_WATCH_2 = "cosmic_watch_2"
    MICROPHONE = "microphone"

    @property
    def event_fed(self) -> bool:
        return self in EVENT_CHANNELS


EVENT_CHANNELS = frozenset(
    {Channel.COSMIC_WATCH_1, Channel.COSMIC_WATCH_2, Channel.MICROPHONE}
)

_INT_RANGES = {
    "B": (0, 0xFF),
    "H": (0, 0xFFFF),
    "h": (-0x8000, 0x7FFF),
    "I": (0, 0xFFFFFFFF),
}


@dataclass(frozen=True)
class FieldSpec:
    """One packed field of the record: its name and struct format code."""

    name: str
    fmt: str

    @property
    def zero(self) -> Any:
        if self.fmt.endswith("s"):
            return bytes(struct.calcsize(self.fmt))
        if self.fmt == "f":
            return 0.0
        return 0

    def coerce(self, value: Any) -> Any:
        if self.fmt.endswith("s"):
            size = struct.calcsize(self.fmt)
            return bytes(value)[:size].ljust(size, b"\x00")
        if self.fmt == "f":
            return float(value)
        low, high = _INT_RANGES[self.fmt]
        return max(low, min(high, int(round(value))))


def _cosmic_watch_fields(prefix: str) -> Tuple[FieldSpec, ...]:
    return (
        FieldSpec(f"{prefix}_role", "B"),
        FieldSpec(f"{prefix}_event", "H"),
        FieldSpec(f"{prefix}_elapsed_ms", "I"),
        FieldSpec(f"{prefix}_rate", "H"),
        FieldSpec(f"{prefix}_sipm_mv", "f"),
        FieldSpec(f"{prefix}_deadtime_ms", "I"),
        FieldSpec(f"{prefix}_temp_c", "f"),
    )


CHANNEL_FIELDS: Dict[Channel, Tuple[FieldSpec, ...]] = {
    Channel.BATTERY: (FieldSpec("battery_mv", "f"),),
    Channel.O2: (FieldSpec("o2_mv", "f"), FieldSpec("o2_percent", "f")),
    Channel.CLIMATE: (
        FieldSpec("climate_temp_c", "f"),
        FieldSpec("climate_humidity_pct", "f"),
    ),
    Channel.PRESSURE: (
        FieldSpec("pressure_hpa", "f"),
        FieldSpec("pressure_temp_c", "f"),
    ),
    Channel.CO2: (FieldSpec("co2_ppm", "H"),),
    Channel.MAGNETOMETER: (
        FieldSpec("mag_x_ut", "f"),
        FieldSpec("mag_y_ut", "f"),
        FieldSpec("mag_z_ut", "f"),
    ),
    Channel.GAS_REFERENCE: (
        FieldSpec("ref_o2_percent", "f"),
        FieldSpec("ref_temp_c", "f"),
    ),
    Channel.COSMIC_WATCH_1: _cosmic_watch_fields("cw1"),
    Channel.COSMIC_WATCH_2: _cosmic_watch_fields("cw2"),
    Channel.MICROPHONE: (
        FieldSpec("mic_max_level", "B"),
        FieldSpec("mic_max_bin", "B"),
        FieldSpec("sound_psd", f"{MIC_BIN_COUNT}s"),
    ),
}

FIELD_OWNERS: Dict[str, Channel] = {
    spec.name: channel
    for channel, specs in CHANNEL_FIELDS.items()
    for spec in specs
}

_FIELD_SPECS: Dict[str, FieldSpec] = {
    spec.name: spec for specs in CHANNEL_FIELDS.values() for spec in specs
}

RECORD_FORMAT = (
    "<Q"
    + "".join(spec.fmt for channel in Channel for spec in CHANNEL_FIELDS[channel])
    + "B" * len(Channel)
)
RECORD_STRUCT = struct.Struct(RECORD_FORMAT)
RECORD_SIZE = RECORD_STRUCT.size


def field_spec(name: str) -> FieldSpec:
    return _FIELD_SPECS[name]


def channel_fields(channel: Channel) -> Iterable[str]:
    return (spec.name for spec in CHANNEL_FIELDS[channel])


@dataclass
class TelemetryRecord:
    """One sampling tick's worth of telemetry.

    Every channel starts OFF with zeroed fields. A channel that is OFF or
    ERROR always carries zeroes; use :meth:`reset_channel` to enforce that.
    """

    timestamp_ms: int = 0
    values: Dict[str, Any] = field(
        default_factory=lambda: {name: spec.zero for name, spec in _FIELD_SPECS.items()}
    )
    validity: Dict[Channel, Validity] = field(
        default_factory=lambda: {channel: Validity.OFF for channel in Channel}
    )

    def set_channel(self, channel: Channel, values: Mapping[str, Any]) -> None:
        """Write a complete or partial set of a channel's fields and mark it ON."""

        coerced: Dict[str, Any] = {}
        for name, value in values.items():
            owner = FIELD_OWNERS.get(name)
            if owner is not channel:
                raise KeyError(f"Field '{name}' is not owned by channel '{channel.value}'")
            coerced[name] = _FIELD_SPECS[name].coerce(value)
        self.values.update(coerced)
        self.validity[channel] = Validity.ON

    def reset_channel(self, channel: Channel, validity: Validity) -> None:
        for spec in CHANNEL_FIELDS[channel]:
            self.values[spec.name] = spec.zero
        self.validity[channel] = validity

    def channel_values(self, channel: Channel) -> Dict[str, Any]:
        return {name: self.values[name] for name in channel_fields(channel)}

    def pack(self) -> bytes:
        ordered = [
            self.values[spec.name]
            for channel in Channel
            for spec in CHANNEL_FIELDS[channel]
        ]
        flags = [int(self.validity[channel]) for channel in Channel]
        return RECORD_STRUCT.pack(self.timestamp_ms, *ordered, *flags)

    @classmethod
    def unpack(cls, data: bytes) -> "TelemetryRecord":
        if len(data) != RECORD_SIZE:
            raise ValueError(
                f"Telemetry record must be {RECORD_SIZE} bytes, got {len(data)}"
            )
        unpacked = RECORD_STRUCT.unpack(data)
        timestamp_ms = unpacked[0]
        names = [spec.name for channel in Channel for spec in CHANNEL_FIELDS[channel]]
        field_values = unpacked[1 : 1 + len(names)]
        flags = unpacked[1 + len(names) :]
        return cls(
            timestamp_ms=timestamp_ms,
            values=dict(zip(names, field_values)),
            validity={
                channel: Validity(flag) for channel, flag in zip(Channel, flags)
            },
        )
