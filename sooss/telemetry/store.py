"""Mutex-guarded telemetry record shared by the scheduler and serial workers."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .record import FIELD_OWNERS, Channel, TelemetryRecord, Validity


@dataclass(frozen=True)
class ChannelReading:
    """Successful poll of one channel: field name -> physical value."""

    values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PollFailure:
    """Failed poll of one channel."""

    reason: str


PollResult = Union[ChannelReading, PollFailure]


class TelemetryStore:
    """Owns the process-wide :class:`TelemetryRecord`.

    Every mutation and every snapshot happens inside the same lock, so a
    snapshot never contains a half-applied channel update. Callers never get
    a reference to the live record.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._record = TelemetryRecord()
        self._lock = Lock()

    def merge_poll(self, channel: Channel, result: PollResult) -> None:
        with self._lock:
            if isinstance(result, ChannelReading):
                self._record.set_channel(channel, result.values)
            else:
                self._record.reset_channel(channel, Validity.ERROR)

    def merge_event(self, channel: Channel, values: Mapping[str, Any]) -> None:
        with self._lock:
            self._record.set_channel(channel, values)

    def mark(self, channel: Channel, validity: Validity) -> None:
        if validity is Validity.ON:
            raise ValueError("Channels are marked ON only by merging a reading")
        with self._lock:
            self._record.reset_channel(channel, validity)

    def stamp(self) -> int:
        """Advance the record timestamp; stamps are strictly increasing."""

        now_ms = int(self._clock() * 1000)
        with self._lock:
            stamp = max(now_ms, self._record.timestamp_ms + 1)
            self._record.timestamp_ms = stamp
        return stamp

    def snapshot(self) -> TelemetryRecord:
        with self._lock:
            return copy.deepcopy(self._record)

    def validity(self, channel: Channel) -> Validity:
        with self._lock:
            return self._record.validity[channel]

    def value(self, name: str) -> Any:
        if name not in FIELD_OWNERS:
            raise KeyError(name)
        with self._lock:
            return self._record.values[name]

    def channel_values(self, channel: Channel) -> Dict[str, Any]:
        with self._lock:
            return self._record.channel_values(channel)
