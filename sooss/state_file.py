"""Operational state: the mutable subset of configuration re-read at runtime.

The state file holds ``key=value`` lines. It is owned by the surrounding
tooling (and by ``sooss set-state``); the sampling loop only reads it.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Callable, Dict, Optional

from .telemetry.record import RECORD_SIZE, Channel

LOGGER = logging.getLogger(__name__)

SENSOR_LOG_LEVELS = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: logging.DEBUG,
}

_BOUNDS: Dict[str, tuple[int, int]] = {
    "period_to_send_telem_in_seconds": (1, 3600),
    "period_to_store_wod_in_seconds": (1, 86400),
    "wod_max_file_size": (RECORD_SIZE, 1 << 31),
    "cw_max_file_size_in_kb": (1, 1 << 20),
    "sensor_log_level": (min(SENSOR_LOG_LEVELS), max(SENSOR_LOG_LEVELS)),
}


@dataclass(frozen=True)
class OperationalState:
    sensors_enabled: bool = True
    co2_enabled: bool = True
    magnetometer_enabled: bool = True
    cosmic_watch_enabled: bool = True
    mic_enabled: bool = True
    period_to_send_telem_in_seconds: int = 60
    period_to_store_wod_in_seconds: int = 60
    wod_max_file_size: int = 64 * 1024
    cw_max_file_size_in_kb: int = 512
    sensor_log_level: int = 1

    def clamped(self) -> "OperationalState":
        updates = {}
        for name, (low, high) in _BOUNDS.items():
            value = getattr(self, name)
            bounded = max(low, min(high, value))
            if bounded != value:
                LOGGER.warning(
                    "State value %s=%s out of range; using %s", name, value, bounded
                )
                updates[name] = bounded
        return replace(self, **updates) if updates else self

    def channel_enabled(self, channel: Channel, *, calibration: bool = False) -> bool:
        if not self.sensors_enabled:
            return False
        if channel is Channel.CO2:
            return self.co2_enabled
        if channel is Channel.MAGNETOMETER:
            return self.magnetometer_enabled
        if channel in (Channel.COSMIC_WATCH_1, Channel.COSMIC_WATCH_2):
            return self.cosmic_watch_enabled
        if channel is Channel.MICROPHONE:
            return self.mic_enabled
        if channel is Channel.GAS_REFERENCE:
            return calibration
        return True

    @property
    def log_level(self) -> int:
        return SENSOR_LOG_LEVELS[self.sensor_log_level]


_FIELD_TYPES = {item.name: item.type for item in fields(OperationalState)}


def parse_state_value(key: str, raw: str) -> object:
    value = int(raw.strip())
    if _FIELD_TYPES[key] == "bool":
        return value != 0
    return value


def load_state(path: Path, current: Optional[OperationalState] = None) -> OperationalState:
    """Parse ``path`` on top of ``current`` (defaults when None).

    Keys missing from the file keep their current value. An unreadable
    file returns ``current`` unchanged.
    """

    base = current or OperationalState()
    LOGGER.debug("Loading state from: %s", path)
    try:
        with path.open("r", encoding="utf-8") as stream:
            lines = stream.readlines()
    except (OSError, UnicodeDecodeError) as exc:
        LOGGER.warning("Could not load state file %s: %s", path, exc)
        return base

    updates: Dict[str, object] = {}
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, separator, raw_value = stripped.partition("=")
        if not separator:
            continue
        key = key.strip()
        if key not in _FIELD_TYPES:
            LOGGER.warning("Unknown key in state file %s: %s", path, key)
            continue
        try:
            updates[key] = parse_state_value(key, raw_value)
        except ValueError:
            LOGGER.warning("Ignoring unparseable state value %s=%s", key, raw_value.strip())
            continue
        LOGGER.debug(" %s = %s", key, updates[key])

    return replace(base, **updates).clamped()


def save_state(path: Path, state: OperationalState) -> None:
    """Write the state file atomically (``<path>.tmp`` then rename)."""

    tmp_path = path.with_name(path.name + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("w", encoding="utf-8") as stream:
        for item in fields(OperationalState):
            value = getattr(state, item.name)
            stream.write(f"{item.name}={int(value)}\n")
        stream.flush()
        os.fsync(stream.fileno())
    os.replace(tmp_path, path)


class StateReconciler:
    """Reloads the state file on its own timer or on request."""

    def __init__(
        self,
        path: Path,
        *,
        initial: Optional[OperationalState] = None,
        interval_seconds: float = 10.0,
        monotonic: Optional[Callable[[], float]] = None,
        logger_name: str = "sooss",
    ) -> None:
        self._path = path
        self._interval = max(interval_seconds, 0.0)
        self._monotonic = monotonic or time.monotonic
        self._logger_name = logger_name
        self._reload_requested = threading.Event()
        self._last_reload: Optional[float] = None
        self._applied_level: Optional[int] = None
        self._state = initial or OperationalState()

    @property
    def state(self) -> OperationalState:
        return self._state

    @property
    def path(self) -> Path:
        return self._path

    def request_reload(self) -> None:
        self._reload_requested.set()

    def maybe_reload(self) -> bool:
        now = self._monotonic()
        due = self._last_reload is None or now - self._last_reload >= self._interval
        if not due and not self._reload_requested.is_set():
            return False
        self.reload()
        return True

    def reload(self) -> OperationalState:
        self._reload_requested.clear()
        self._last_reload = self._monotonic()
        previous = self._state
        self._state = load_state(self._path, previous)
        if self._state != previous:
            LOGGER.info("Operational state updated: %s", self._state)
        if self._applied_level != self._state.log_level:
            logging.getLogger(self._logger_name).setLevel(self._state.log_level)
            self._applied_level = self._state.log_level
        return self._state
