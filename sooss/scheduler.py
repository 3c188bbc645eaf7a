"""Main sampling loop: poll sensors, merge, persist, sleep."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .persistence import PersistenceError, TelemetryPersistence
from .sensors import POLL_ORDER, SensorFacade, SensorReadError
from .state_file import OperationalState, StateReconciler
from .telemetry.record import EVENT_CHANNELS, Channel, Validity
from .telemetry.store import ChannelReading, PollFailure, PollResult, TelemetryStore

LOGGER = logging.getLogger(__name__)
# Per-channel cycle lines; kept at INFO in verbose mode whatever the state file sets.
CYCLE_LOGGER = logging.getLogger("sooss.cycle")


@dataclass
class CycleReport:
    """What one scheduler iteration did."""

    timestamp_ms: int = 0
    polled: List[Channel] = field(default_factory=list)
    failed: List[Channel] = field(default_factory=list)
    disabled: List[Channel] = field(default_factory=list)
    rt_written: bool = False
    wod_appended: bool = False
    wod_rolled: bool = False


class SamplingScheduler:
    """Drives the sampling cadence.

    Each cycle reloads the operational state when due, polls every enabled
    channel in :data:`POLL_ORDER`, writes the RT file and, when the WOD period
    has elapsed, appends to the WOD archive. Persistence failures are counted;
    once the count exceeds ``max_persistence_errors`` the loop stops and
    ``shutdown_reason`` is set.

    :meth:`run_forever` runs each cycle on a worker thread, one cycle at a
    time, so blocking bus reads never stall the event loop.
    """

    def __init__(
        self,
        store: TelemetryStore,
        facade: SensorFacade,
        persistence: TelemetryPersistence,
        reconciler: StateReconciler,
        *,
        calibration_mode: bool = False,
        verbose: bool = False,
        max_persistence_errors: int = 10,
        clock: Optional[Callable[[], float]] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        self._store = store
        self._facade = facade
        self._persistence = persistence
        self._reconciler = reconciler
        self.calibration_mode = calibration_mode
        self.verbose = verbose
        self.max_persistence_errors = max_persistence_errors
        self._clock = clock or time.time
        self._monotonic = monotonic or time.monotonic
        self._stop_event = asyncio.Event()
        self._last_wod: Optional[float] = None
        self.persistence_errors = 0
        self.cycles = 0
        self.last_cycle_at: Optional[float] = None
        self.last_error: Optional[str] = None
        self.last_report: Optional[CycleReport] = None
        self.shutdown_reason: Optional[str] = None
        if verbose:
            CYCLE_LOGGER.setLevel(logging.INFO)

    @property
    def state(self) -> OperationalState:
        return self._reconciler.state

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set() or self.shutdown_reason is not None

    def run_cycle(self) -> CycleReport:
        self._reconciler.maybe_reload()
        state = self._reconciler.state
        report = CycleReport()

        for channel in POLL_ORDER:
            if not state.channel_enabled(channel, calibration=self.calibration_mode):
                self._store.mark(channel, Validity.OFF)
                report.disabled.append(channel)
                continue
            result = self._poll(channel)
            self._store.merge_poll(channel, result)
            report.polled.append(channel)
            if isinstance(result, PollFailure):
                report.failed.append(channel)
            if self.verbose:
                self._report_channel(channel, result)

        for channel in sorted(EVENT_CHANNELS, key=lambda item: item.value):
            if not state.channel_enabled(channel):
                self._store.mark(channel, Validity.OFF)
                report.disabled.append(channel)
            elif self.verbose:
                self._report_event_channel(channel)

        if self.verbose and self.calibration_mode:
            self._report_calibration()

        report.timestamp_ms = self._store.stamp()
        record = self._store.snapshot()

        try:
            self._persistence.write_rt(record)
            report.rt_written = True
        except PersistenceError as exc:
            self._persistence_failed(exc)

        now = self._monotonic()
        if self._last_wod is None or now - self._last_wod >= state.period_to_store_wod_in_seconds:
            # A failed append waits for the next WOD period like a good one.
            self._last_wod = now
            self._persistence.wod.max_bytes = state.wod_max_file_size
            try:
                report.wod_rolled = self._persistence.append_wod(record)
                report.wod_appended = True
            except PersistenceError as exc:
                self._persistence_failed(exc)

        self.cycles += 1
        self.last_cycle_at = self._clock()
        self.last_report = report
        return report

    async def run_forever(self) -> None:
        LOGGER.info("Sampling scheduler started")
        while not self.stopped:
            started = self._monotonic()
            await asyncio.to_thread(self.run_cycle)
            if self.stopped:
                break

            period = float(self._reconciler.state.period_to_send_telem_in_seconds)
            elapsed = self._monotonic() - started
            delay = min(max(period - elapsed, 0.0), period)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

        if self.shutdown_reason:
            LOGGER.error("Sampling scheduler stopping: %s", self.shutdown_reason)
        else:
            LOGGER.info("Sampling scheduler stopped")

    def _poll(self, channel: Channel) -> PollResult:
        try:
            return self._facade.read_channel(channel, self._inputs_for(channel))
        except SensorReadError as exc:
            return PollFailure(str(exc))

    def _inputs_for(self, channel: Channel) -> Dict[str, Any]:
        if channel is Channel.O2 and self._store.validity(Channel.CLIMATE) is Validity.ON:
            return {"temperature_c": self._store.value("climate_temp_c")}
        if channel is Channel.CO2 and self._store.validity(Channel.PRESSURE) is Validity.ON:
            return {"pressure_hpa": self._store.value("pressure_hpa")}
        return {}

    def _persistence_failed(self, exc: PersistenceError) -> None:
        self.persistence_errors += 1
        self.last_error = str(exc)
        LOGGER.error(
            "%s (%d/%d)", exc, self.persistence_errors, self.max_persistence_errors
        )
        if self.persistence_errors > self.max_persistence_errors:
            self.shutdown_reason = (
                f"{self.persistence_errors} persistence errors; storage assumed failed"
            )

    def _report_channel(self, channel: Channel, result: PollResult) -> None:
        if isinstance(result, ChannelReading):
            values = ", ".join(
                f"{name}={_format_value(value)}" for name, value in result.values.items()
            )
            CYCLE_LOGGER.info("%s: %s", channel.value, values)
        else:
            CYCLE_LOGGER.info("%s: read failed: %s", channel.value, result.reason)

    def _report_event_channel(self, channel: Channel) -> None:
        validity = self._store.validity(channel)
        if validity is Validity.ON:
            values = self._store.channel_values(channel)
            CYCLE_LOGGER.info(
                "%s: %s",
                channel.value,
                ", ".join(f"{name}={_format_value(value)}" for name, value in values.items()),
            )
        else:
            CYCLE_LOGGER.info("%s: no data (%s)", channel.value, validity.name)

    def _report_calibration(self) -> None:
        if (
            self._store.validity(Channel.O2) is not Validity.ON
            or self._store.validity(Channel.GAS_REFERENCE) is not Validity.ON
        ):
            return
        cell = self._store.value("o2_percent")
        reference = self._store.value("ref_o2_percent")
        CYCLE_LOGGER.info(
            "O2 cell %.2f%% vs reference %.2f%% (diff %+.2f%%)",
            cell,
            reference,
            cell - reference,
        )


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, bytes):
        return value.hex()
    return str(value)
