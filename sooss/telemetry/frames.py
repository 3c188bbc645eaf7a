"""Parsers for serial frames received from CosmicWatch detectors and the ultrasonic mic.

Parsing is pure: a line is tokenised into an immutable tuple, every token is
validated, and only then is a frame built. A rejected line yields a
:class:`FrameRejected` result and never touches the telemetry store.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from .record import MIC_BIN_COUNT

COSMIC_WATCH_TOKEN_COUNT = 7
MIC_FRAME_MARKER = b"D"
MIC_HEADER_TERMINATOR = b","

_UINT16_MAX = 0xFFFF
_UINT32_MAX = 0xFFFFFFFF


class DetectorRole(str, Enum):
    PRIMARY = "M"
    SECONDARY = "S"

    @property
    def code(self) -> int:
        return 1 if self is DetectorRole.PRIMARY else 2


@dataclass(frozen=True)
class CosmicWatchFrame:
    role: DetectorRole
    event_number: int
    elapsed_ms: int
    rate: int
    sipm_mv: float
    deadtime_ms: int
    temperature_c: float
    raw: str

    def as_fields(self, prefix: str) -> Dict[str, Any]:
        return {
            f"{prefix}_role": self.role.code,
            # The packed field is 16 bits wide; the counter wraps.
            f"{prefix}_event": self.event_number & _UINT16_MAX,
            f"{prefix}_elapsed_ms": self.elapsed_ms,
            f"{prefix}_rate": self.rate,
            f"{prefix}_sipm_mv": self.sipm_mv,
            f"{prefix}_deadtime_ms": self.deadtime_ms,
            f"{prefix}_temp_c": self.temperature_c,
        }


@dataclass(frozen=True)
class MicrophoneFrame:
    bins: bytes
    raw: bytes

    @property
    def max_level(self) -> int:
        return max(self.bins)

    @property
    def max_bin(self) -> int:
        return self.bins.index(self.max_level)

    def as_fields(self) -> Dict[str, Any]:
        return {
            "mic_max_level": self.max_level,
            "mic_max_bin": self.max_bin,
            "sound_psd": self.bins,
        }


@dataclass(frozen=True)
class ParsedFrame:
    frame: Union[CosmicWatchFrame, MicrophoneFrame]


@dataclass(frozen=True)
class FrameRejected:
    reason: str


FrameParseResult = Union[ParsedFrame, FrameRejected]


def tokenize(line: str) -> Tuple[str, ...]:
    return tuple(line.split())


def _parse_uint(token: str, name: str, limit: Optional[int] = None) -> int:
    value = int(token)
    if value < 0 or (limit is not None and value > limit):
        raise ValueError(f"{name} out of range: {token}")
    return value


def parse_cosmic_watch(line: str) -> FrameParseResult:
    """Parse ``role event elapsed_ms rate sipm_mv deadtime_ms temp_c``."""

    tokens = tokenize(line)
    if len(tokens) != COSMIC_WATCH_TOKEN_COUNT:
        return FrameRejected(
            f"expected {COSMIC_WATCH_TOKEN_COUNT} tokens, got {len(tokens)}"
        )

    marker = tokens[0]
    if len(marker) != 1:
        return FrameRejected(f"role marker must be one character: {marker!r}")
    try:
        role = DetectorRole(marker)
    except ValueError:
        return FrameRejected(f"unknown role marker: {marker!r}")

    try:
        event_number = _parse_uint(tokens[1], "event")
        elapsed_ms = _parse_uint(tokens[2], "elapsed_ms", _UINT32_MAX)
        rate = round(float(tokens[3]))
        if rate < 0 or rate > _UINT16_MAX:
            raise ValueError(f"rate out of range: {tokens[3]}")
        sipm_mv = float(tokens[4])
        deadtime_ms = _parse_uint(tokens[5], "deadtime_ms", _UINT32_MAX)
        temperature_c = float(tokens[6])
    except (ValueError, OverflowError) as exc:
        return FrameRejected(str(exc))

    return ParsedFrame(
        CosmicWatchFrame(
            role=role,
            event_number=event_number,
            elapsed_ms=elapsed_ms,
            rate=rate,
            sipm_mv=sipm_mv,
            deadtime_ms=deadtime_ms,
            temperature_c=temperature_c,
            raw=line,
        )
    )


def parse_microphone_header(header: bytes) -> int:
    """Return the bin count announced by a ``D nn,`` header.

    Raises ``ValueError`` when the header is malformed.
    """

    if not header.startswith(MIC_FRAME_MARKER):
        raise ValueError(f"missing frame marker: {header[:8]!r}")
    body = header[len(MIC_FRAME_MARKER) :].rstrip(MIC_HEADER_TERMINATOR).strip()
    count = int(body.decode("ascii"))
    if count != MIC_BIN_COUNT:
        raise ValueError(f"expected {MIC_BIN_COUNT} bins, got {count}")
    return count


def parse_microphone(payload: bytes) -> FrameParseResult:
    """Parse a complete ``D nn,<nn bin bytes>`` response."""

    header, separator, bins = payload.partition(MIC_HEADER_TERMINATOR)
    if not separator:
        return FrameRejected("missing header terminator")
    try:
        count = parse_microphone_header(header + separator)
    except (ValueError, UnicodeDecodeError) as exc:
        return FrameRejected(str(exc))
    if len(bins) != count:
        return FrameRejected(f"expected {count} bin bytes, got {len(bins)}")
    return ParsedFrame(MicrophoneFrame(bins=bytes(bins), raw=bytes(payload)))
