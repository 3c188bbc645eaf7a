"""Main application entry-point for sooss."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from enum import Enum
from typing import Callable, List, Optional

from . import constants
from .config import SoossConfig, load_config
from .health import HealthReporter, HealthServer
from .ingest import (
    ChannelOwnership,
    CosmicWatchWorker,
    MicrophoneWorker,
    RawLineLog,
    SerialIngestionWorker,
    WorkerAlreadyRunningError,
    WorkerOutcome,
    open_serial_link,
)
from .ingest.serial_link import SerialFactory
from .logging import configure_logging, flush_logging
from .persistence import TelemetryPersistence, WodArchive
from .scheduler import SamplingScheduler
from .sensors import SensorFacade
from .state_file import OperationalState, StateReconciler
from .telemetry import Channel, TelemetryStore

LOGGER = logging.getLogger(__name__)
# Startup and shutdown lines; kept at INFO whatever the state file sets.
LIFECYCLE_LOGGER = logging.getLogger("sooss.lifecycle")

HEALTH_REFRESH_SECONDS = 5.0
WORKER_JOIN_SECONDS = 2.0
RAW_LOG_HEADER_LABELS = {
    Channel.COSMIC_WATCH_1: "SOOSS CosmicWatch",
    Channel.COSMIC_WATCH_2: "SOOSS CosmicWatch",
    Channel.MICROPHONE: "SOOSS Microphone",
}


class AgentState(str, Enum):
    COLD_START = "cold_start"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


class SoossApp:
    """Coordinates startup, supervision and shutdown.

    The scheduler runs as a coroutine on the event loop; each serial worker
    runs on its own daemon thread and reports its exit back to the loop,
    where it is optionally restarted after ``worker_restart_seconds``.
    """

    def __init__(
        self,
        config: Optional[SoossConfig] = None,
        *,
        verbose: bool = False,
        calibration_mode: bool = False,
        facade: Optional[SensorFacade] = None,
        serial_factory: SerialFactory = open_serial_link,
        ownership: Optional[ChannelOwnership] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config or load_config()
        paths = self._config.paths
        telemetry = self._config.telemetry

        self._store = TelemetryStore()
        self._reconciler = StateReconciler(
            paths.state_file,
            initial=OperationalState(
                period_to_send_telem_in_seconds=telemetry.period_to_sample_telem_in_seconds
            ).clamped(),
            interval_seconds=telemetry.state_reload_seconds,
            monotonic=monotonic,
            logger_name=constants.APP_NAME,
        )
        self._reconciler.reload()
        state = self._reconciler.state

        self._facade = facade or SensorFacade(
            telemetry.i2c_bus,
            o2_air_mv=telemetry.o2_air_mv,
            o2_table=telemetry.o2_temperature_table,
        )
        self._persistence = TelemetryPersistence(
            paths.rt_telem_path,
            WodArchive(
                paths.wod_telem_path,
                paths.wod_archive_dir,
                max_bytes=state.wod_max_file_size,
            ),
        )
        self._scheduler = SamplingScheduler(
            self._store,
            self._facade,
            self._persistence,
            self._reconciler,
            calibration_mode=calibration_mode,
            verbose=verbose,
            max_persistence_errors=telemetry.max_persistence_errors,
            monotonic=monotonic,
        )
        self._serial_factory = serial_factory
        self._ownership = ownership or ChannelOwnership()
        self._raw_logs: List[RawLineLog] = []
        self._workers = self._build_workers()
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = AgentState.COLD_START
        self._stopping = False
        LIFECYCLE_LOGGER.setLevel(logging.INFO)

    @property
    def scheduler(self) -> SamplingScheduler:
        return self._scheduler

    @property
    def workers(self) -> List[SerialIngestionWorker]:
        return list(self._workers)

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def state(self) -> AgentState:
        return self._state

    def _raw_log(self, template: str, channel: Channel) -> RawLineLog:
        log_dir = self._config.paths.log_dir
        log = RawLineLog(
            log_dir / template.format(channel=channel.value),
            log_dir / "archive",
            max_bytes=self._reconciler.state.cw_max_file_size_in_kb * 1024,
            header_label=RAW_LOG_HEADER_LABELS[channel],
        )
        self._raw_logs.append(log)
        return log

    def _enabled(self, channel: Channel) -> Callable[[], bool]:
        return lambda: self._reconciler.state.channel_enabled(channel)

    def _build_workers(self) -> List[SerialIngestionWorker]:
        serial = self._config.serial
        common = dict(
            serial_factory=self._serial_factory,
            ownership=self._ownership,
            on_exit=self._on_worker_exit,
        )
        workers: List[SerialIngestionWorker] = []
        for channel, device in (
            (Channel.COSMIC_WATCH_1, serial.cw1_serial_device),
            (Channel.COSMIC_WATCH_2, serial.cw2_serial_device),
        ):
            workers.append(
                CosmicWatchWorker(
                    channel,
                    device,
                    self._store,
                    baud=serial.cw_baud,
                    enabled=self._enabled(channel),
                    primary_log=self._raw_log(constants.CW_PRIMARY_LOG_TEMPLATE, channel),
                    coincident_log=self._raw_log(
                        constants.CW_COINCIDENT_LOG_TEMPLATE, channel
                    ),
                    **common,
                )
            )
        workers.append(
            MicrophoneWorker(
                serial.mic_serial_device,
                self._store,
                baud=serial.mic_baud,
                request_interval=serial.mic_request_interval_seconds,
                enabled=self._enabled(Channel.MICROPHONE),
                raw_log=self._raw_log(constants.MIC_LOG_TEMPLATE, Channel.MICROPHONE),
                **common,
            )
        )
        return workers

    async def run(self) -> int:
        """Run until stopped; returns the process exit status."""

        self._loop = asyncio.get_running_loop()
        self._stopping = False
        LIFECYCLE_LOGGER.info("sooss starting with config: %s", self._config.path)
        self._install_signal_handlers()
        await self._start_services()

        health_task = asyncio.create_task(self._health_loop())
        try:
            await self._scheduler.run_forever()
        except asyncio.CancelledError:
            LIFECYCLE_LOGGER.info("sooss received shutdown signal")
            raise
        finally:
            health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await health_task
            await self._stop_services()
            self._remove_signal_handlers()

        if self._scheduler.shutdown_reason:
            LOGGER.error("sooss exiting: %s", self._scheduler.shutdown_reason)
            return 1
        return 0

    def request_stop(self) -> None:
        LIFECYCLE_LOGGER.info("Stop requested")
        self._scheduler.stop()

    def request_reload(self) -> None:
        LOGGER.info("State reload requested")
        self._reconciler.request_reload()

    @classmethod
    def start(
        cls,
        config: Optional[SoossConfig] = None,
        *,
        verbose: bool = False,
        calibration_mode: bool = False,
    ) -> int:
        config = config or load_config()
        configure_logging(config.logging.level, log_path=config.logging.path)
        instance = cls(config, verbose=verbose, calibration_mode=calibration_mode)
        try:
            return asyncio.run(instance.run())
        except KeyboardInterrupt:
            LIFECYCLE_LOGGER.info("sooss received shutdown signal")
            return 0

    def _install_signal_handlers(self) -> None:
        assert self._loop is not None
        handlers = {
            signal.SIGTERM: self.request_stop,
            signal.SIGINT: self.request_stop,
            signal.SIGHUP: self.request_reload,
        }
        for signum, handler in handlers.items():
            with contextlib.suppress(NotImplementedError, RuntimeError):
                self._loop.add_signal_handler(signum, handler)

    def _remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for signum in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                self._loop.remove_signal_handler(signum)

    async def _transition_state(
        self, state: AgentState, *, detail: Optional[str] = None
    ) -> None:
        if state != self._state:
            LOGGER.info(
                "Agent state transition %s -> %s (%s)",
                self._state.value,
                state.value,
                detail or state.value,
            )
        self._state = state
        await self._health.set_agent_state(
            state.value, healthy=state == AgentState.ACTIVE, detail=detail
        )

    async def _start_services(self) -> None:
        await self._transition_state(AgentState.COLD_START, detail="initialising")
        await self._start_health_server()
        for worker in self._workers:
            self._start_worker(worker)
        await self._refresh_health()

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled:
            return
        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Health endpoint unavailable: %s", exc)
            return
        self._health_server = server

    def _start_worker(self, worker: SerialIngestionWorker) -> None:
        try:
            worker.start()
        except WorkerAlreadyRunningError as exc:
            LOGGER.warning("%s", exc)

    def _on_worker_exit(
        self, worker: SerialIngestionWorker, outcome: WorkerOutcome
    ) -> None:
        # Runs on the worker thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(self._handle_worker_exit, worker, outcome)

    def _handle_worker_exit(
        self, worker: SerialIngestionWorker, outcome: WorkerOutcome
    ) -> None:
        LOGGER.warning(
            "Worker for %s exited: %s", worker.channel.value, outcome.value
        )
        if self._stopping:
            return
        delay = self._config.serial.worker_restart_seconds
        if delay <= 0:
            return
        assert self._loop is not None
        self._loop.call_later(delay, self._restart_worker, worker)

    def _restart_worker(self, worker: SerialIngestionWorker) -> None:
        if self._stopping:
            return
        LOGGER.info("Restarting worker for %s", worker.channel.value)
        self._start_worker(worker)

    def _apply_state(self) -> None:
        max_bytes = self._reconciler.state.cw_max_file_size_in_kb * 1024
        for log in self._raw_logs:
            log.max_bytes = max_bytes

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(HEALTH_REFRESH_SECONDS)
            self._apply_state()
            await self._refresh_health()

    async def _refresh_health(self) -> None:
        scheduler = self._scheduler
        report = scheduler.last_report
        await self._health.update(
            "scheduler",
            scheduler.shutdown_reason is None,
            scheduler.shutdown_reason or f"{scheduler.cycles} cycles",
            counters={"cycles": scheduler.cycles},
        )
        persistence_ok = report is None or report.rt_written
        await self._health.update(
            "persistence",
            persistence_ok,
            None if persistence_ok else scheduler.last_error,
            counters={
                "errors": scheduler.persistence_errors,
                "wodRolls": self._persistence.wod.rolls,
            },
        )

        unhealthy: List[str] = []
        if not persistence_ok or scheduler.shutdown_reason:
            unhealthy.append("persistence")
        for worker in self._workers:
            enabled = self._reconciler.state.channel_enabled(worker.channel)
            healthy = worker.running or not enabled
            if not healthy:
                unhealthy.append(worker.channel.value)
            await self._health.update(
                worker.channel.value,
                healthy,
                "listening" if worker.running else "not running",
                counters={
                    "merged": worker.merged_frames,
                    "rejected": worker.rejected_frames,
                    "dropped": worker.dropped_frames,
                },
            )

        if self._stopping:
            return
        if unhealthy:
            await self._transition_state(
                AgentState.DEGRADED, detail=", ".join(unhealthy) + " unhealthy"
            )
        else:
            await self._transition_state(AgentState.ACTIVE)

    async def _stop_services(self) -> None:
        self._stopping = True
        await self._refresh_health()
        await self._transition_state(AgentState.STOPPING, detail="shutting down")
        for worker in self._workers:
            worker.stop()
        for worker in self._workers:
            await asyncio.to_thread(worker.join, WORKER_JOIN_SECONDS)
        self._facade.close()
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None
        flush_logging()
        LIFECYCLE_LOGGER.info("sooss stopped")
