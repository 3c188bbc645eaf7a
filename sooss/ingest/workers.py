"""Long-running serial ingestion workers.

Each worker owns one channel and one serial link. A session runs on a
daemon thread: open the link, read frames, parse them, merge good frames
into the telemetry store. When the session ends the channel is marked
ERROR and the outcome is handed to ``on_exit`` so a supervisor can decide
whether to restart it.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Set

from ..telemetry.frames import (
    MIC_FRAME_MARKER,
    MIC_HEADER_TERMINATOR,
    DetectorRole,
    FrameRejected,
    parse_cosmic_watch,
    parse_microphone,
    parse_microphone_header,
)
from ..telemetry.record import Channel, Validity
from ..telemetry.store import TelemetryStore
from .raw_log import RawLineLog
from .serial_link import SerialFactory, SerialLink, SerialLinkError, open_serial_link

LOGGER = logging.getLogger(__name__)

COSMIC_WATCH_BAUD = 9600
COSMIC_WATCH_TERMINATOR = b"\r"
COSMIC_WATCH_MAX_LINE = 1024
MICROPHONE_BAUD = 38400
_MIC_HEADER_MAX = 16

_CW_FIELD_PREFIXES: Dict[Channel, str] = {
    Channel.COSMIC_WATCH_1: "cw1",
    Channel.COSMIC_WATCH_2: "cw2",
}


class WorkerAlreadyRunningError(RuntimeError):
    """Raised when a second worker is started for a channel that is owned."""


class WorkerOutcome(str, Enum):
    SESSION_ENDED = "session_ended"
    OPEN_FAILED = "open_failed"
    CRASHED = "crashed"


@dataclass(frozen=True)
class OwnershipToken:
    channel: Channel
    registry: "ChannelOwnership" = field(compare=False, repr=False)

    def release(self) -> None:
        self.registry.release(self)


class ChannelOwnership:
    """Registry guaranteeing at most one running worker per channel."""

    def __init__(self) -> None:
        self._owned: Set[Channel] = set()
        self._lock = threading.Lock()

    def acquire(self, channel: Channel) -> OwnershipToken:
        with self._lock:
            if channel in self._owned:
                raise WorkerAlreadyRunningError(
                    f"A worker is already running for channel '{channel.value}'"
                )
            self._owned.add(channel)
        return OwnershipToken(channel=channel, registry=self)

    def release(self, token: OwnershipToken) -> None:
        with self._lock:
            self._owned.discard(token.channel)

    def owned(self, channel: Channel) -> bool:
        with self._lock:
            return channel in self._owned


PROCESS_OWNERSHIP = ChannelOwnership()

ExitCallback = Callable[["SerialIngestionWorker", WorkerOutcome], None]


class SerialIngestionWorker:
    """Base class for a channel's serial session."""

    baud = COSMIC_WATCH_BAUD

    def __init__(
        self,
        channel: Channel,
        device: str,
        store: TelemetryStore,
        *,
        baud: Optional[int] = None,
        enabled: Optional[Callable[[], bool]] = None,
        serial_factory: SerialFactory = open_serial_link,
        ownership: Optional[ChannelOwnership] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> None:
        self.channel = channel
        self.device = device
        self.baud = baud or self.baud
        self.rejected_frames = 0
        self.dropped_frames = 0
        self.merged_frames = 0
        self.on_exit = on_exit
        self._store = store
        self._enabled = enabled or (lambda: True)
        self._serial_factory = serial_factory
        self._ownership = ownership or PROCESS_OWNERSHIP
        self._stop_event = threading.Event()
        self._link: Optional[SerialLink] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> threading.Thread:
        """Claim the channel and run one session on a daemon thread.

        Raises :class:`WorkerAlreadyRunningError` if the channel already has a
        running worker.
        """

        token = self._ownership.acquire(self.channel)
        self._stop_event.clear()
        thread = threading.Thread(
            target=self._thread_main,
            args=(token,),
            name=f"sooss-{self.channel.value}",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def stop(self) -> None:
        self._stop_event.set()
        link = self._link
        if link is not None:
            # Unblocks a pending read on a real port.
            with contextlib.suppress(OSError):
                link.close()

    def _thread_main(self, token: OwnershipToken) -> None:
        try:
            outcome = self.run()
        except Exception:
            LOGGER.exception("%s: worker crashed", self.channel.value)
            self._store.mark(self.channel, Validity.ERROR)
            outcome = WorkerOutcome.CRASHED
        finally:
            token.release()
        if self.on_exit is not None:
            self.on_exit(self, outcome)

    def run(self) -> WorkerOutcome:
        """Execute one session synchronously and report how it ended."""

        try:
            link = self._serial_factory(self.device, self.baud)
        except SerialLinkError as exc:
            LOGGER.error("%s: %s", self.channel.value, exc)
            self._store.mark(self.channel, Validity.ERROR)
            return WorkerOutcome.OPEN_FAILED

        self._link = link
        LOGGER.info("Listening for %s on %s", self.channel.value, self.device)
        try:
            self.listen(link)
        except OSError as exc:
            if not self.stopping:
                LOGGER.error("%s: serial link lost: %s", self.channel.value, exc)
        finally:
            self._link = None
            with contextlib.suppress(OSError):
                link.close()

        self._store.mark(self.channel, Validity.ERROR)
        LOGGER.warning("%s session ended", self.channel.value)
        return WorkerOutcome.SESSION_ENDED

    def listen(self, link: SerialLink) -> None:
        raise NotImplementedError

    def _reject(self, result: FrameRejected, raw: object) -> None:
        self.rejected_frames += 1
        LOGGER.debug("%s: rejected frame %r (%s)", self.channel.value, raw, result.reason)


class CosmicWatchWorker(SerialIngestionWorker):
    """Reads ``\\r``-terminated event lines from a CosmicWatch detector.

    Lines from the primary detector go to ``primary_log``; coincidence
    lines reported by the secondary go to ``coincident_log``.
    """

    baud = COSMIC_WATCH_BAUD

    def __init__(
        self,
        channel: Channel,
        device: str,
        store: TelemetryStore,
        *,
        primary_log: Optional[RawLineLog] = None,
        coincident_log: Optional[RawLineLog] = None,
        **kwargs,
    ) -> None:
        if channel not in _CW_FIELD_PREFIXES:
            raise ValueError(f"Not a CosmicWatch channel: {channel.value}")
        super().__init__(channel, device, store, **kwargs)
        self.primary_log = primary_log
        self.coincident_log = coincident_log
        self._prefix = _CW_FIELD_PREFIXES[channel]

    def listen(self, link: SerialLink) -> None:
        while not self.stopping:
            chunk = link.read_until(COSMIC_WATCH_TERMINATOR, COSMIC_WATCH_MAX_LINE)
            if not chunk:
                return
            if (
                len(chunk) >= COSMIC_WATCH_MAX_LINE
                and not chunk.endswith(COSMIC_WATCH_TERMINATOR)
            ):
                self._reject(FrameRejected("line too long"), chunk[:32])
                if not self._discard_line(link):
                    return
                continue
            line = chunk.decode("ascii", errors="replace").strip()
            if line:
                self.handle_line(line)

    def _discard_line(self, link: SerialLink) -> bool:
        """Skip the rest of an overlong line; False when the link closed first."""

        while not self.stopping:
            chunk = link.read_until(COSMIC_WATCH_TERMINATOR, COSMIC_WATCH_MAX_LINE)
            if not chunk:
                return False
            if chunk.endswith(COSMIC_WATCH_TERMINATOR):
                return True
        return False

    def handle_line(self, line: str) -> None:
        result = parse_cosmic_watch(line)
        if isinstance(result, FrameRejected):
            self._reject(result, line)
            return
        if not self._enabled():
            self.dropped_frames += 1
            return

        frame = result.frame
        log = self.primary_log if frame.role is DetectorRole.PRIMARY else self.coincident_log
        if log is not None:
            log.write(line)
        self._store.merge_event(self.channel, frame.as_fields(self._prefix))
        self.merged_frames += 1


class MicrophoneWorker(SerialIngestionWorker):
    """Polls the ultrasonic microphone for its 32-bin spectrum."""

    baud = MICROPHONE_BAUD

    def __init__(
        self,
        device: str,
        store: TelemetryStore,
        *,
        request_interval: float = 1.0,
        raw_log: Optional[RawLineLog] = None,
        **kwargs,
    ) -> None:
        super().__init__(Channel.MICROPHONE, device, store, **kwargs)
        self.request_interval = request_interval
        self.raw_log = raw_log

    def listen(self, link: SerialLink) -> None:
        while not self.stopping:
            link.write(MIC_FRAME_MARKER)
            header = link.read_until(MIC_HEADER_TERMINATOR, _MIC_HEADER_MAX)
            if not header:
                return
            try:
                count = parse_microphone_header(header)
            except (ValueError, UnicodeDecodeError) as exc:
                self._reject(FrameRejected(str(exc)), header)
                link.reset_input_buffer()
            else:
                payload = link.read(count)
                if len(payload) < count:
                    return
                self.handle_payload(header + payload)

            if self._stop_event.wait(self.request_interval):
                return

    def handle_payload(self, payload: bytes) -> None:
        result = parse_microphone(payload)
        if isinstance(result, FrameRejected):
            self._reject(result, payload)
            return
        if not self._enabled():
            self.dropped_frames += 1
            return

        frame = result.frame
        if self.raw_log is not None:
            self.raw_log.write(" ".join(str(level) for level in frame.bins))
        self._store.merge_event(self.channel, frame.as_fields())
        self.merged_frames += 1
