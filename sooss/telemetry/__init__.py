"""Telemetry record, shared store, frame parsing and compensation."""

from .compensation import (
    DEFAULT_COMPENSATION_TEMPERATURE_C,
    DEFAULT_PRESSURE_REFERENCE_HPA,
    BreakpointTable,
    compensate_o2,
    parse_breakpoints,
)
from .frames import (
    CosmicWatchFrame,
    DetectorRole,
    FrameParseResult,
    FrameRejected,
    MicrophoneFrame,
    ParsedFrame,
    parse_cosmic_watch,
    parse_microphone,
)
from .record import (
    CHANNEL_FIELDS,
    EVENT_CHANNELS,
    RECORD_SIZE,
    Channel,
    TelemetryRecord,
    Validity,
)
from .store import ChannelReading, PollFailure, PollResult, TelemetryStore

__all__ = [
    "BreakpointTable",
    "CHANNEL_FIELDS",
    "Channel",
    "ChannelReading",
    "CosmicWatchFrame",
    "DEFAULT_COMPENSATION_TEMPERATURE_C",
    "DEFAULT_PRESSURE_REFERENCE_HPA",
    "DetectorRole",
    "EVENT_CHANNELS",
    "FrameParseResult",
    "FrameRejected",
    "MicrophoneFrame",
    "ParsedFrame",
    "PollFailure",
    "PollResult",
    "RECORD_SIZE",
    "TelemetryRecord",
    "TelemetryStore",
    "Validity",
    "compensate_o2",
    "parse_breakpoints",
    "parse_cosmic_watch",
    "parse_microphone",
]
