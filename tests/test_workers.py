"""Tests for the serial ingestion workers."""

from __future__ import annotations

import threading
import time
from collections import deque
from pathlib import Path
from typing import Iterable, List, Optional

import pytest

from sooss.ingest import (
    ChannelOwnership,
    CosmicWatchWorker,
    MicrophoneWorker,
    RawLineLog,
    SerialLinkError,
    WorkerAlreadyRunningError,
    WorkerOutcome,
)
from sooss.telemetry.record import Channel, Validity
from sooss.telemetry.store import TelemetryStore

EVENT_LINE = "M 12 4500 137 58.21 3 24.6"


class _FakeSerial:
    """Serves queued chunks; an empty queue reads as a closed port."""

    def __init__(self, chunks: Iterable[bytes], *, block: Optional[threading.Event] = None) -> None:
        self._chunks = deque(chunks)
        self._block = block
        self.written: List[bytes] = []
        self.flushes = 0
        self.closed = False

    def _next(self) -> bytes:
        if self._chunks:
            return self._chunks.popleft()
        if self._block is not None:
            self._block.wait(5.0)
        return b""

    def read_until(self, expected: bytes = b"\n", size: Optional[int] = None) -> bytes:
        return self._next()

    def read(self, size: int = 1) -> bytes:
        return self._next()

    def write(self, data: bytes) -> int:
        self.written.append(data)
        return len(data)

    def reset_input_buffer(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        self.closed = True
        if self._block is not None:
            self._block.set()


def _factory(link: _FakeSerial, opened: Optional[list] = None):
    def open_link(device: str, baud: int) -> _FakeSerial:
        if opened is not None:
            opened.append((device, baud))
        return link

    return open_link


def _failing_factory(device: str, baud: int):
    raise SerialLinkError(f"Unable to open serial device {device}")


def _cw_worker(store: TelemetryStore, link: _FakeSerial, **kwargs) -> CosmicWatchWorker:
    kwargs.setdefault("ownership", ChannelOwnership())
    return CosmicWatchWorker(
        Channel.COSMIC_WATCH_1,
        "/dev/serial1",
        store,
        serial_factory=_factory(link),
        **kwargs,
    )


def test_event_line_is_merged_into_store() -> None:
    store = TelemetryStore()
    worker = _cw_worker(store, _FakeSerial([]))

    worker.handle_line(EVENT_LINE)

    assert store.validity(Channel.COSMIC_WATCH_1) is Validity.ON
    assert store.value("cw1_event") == 12
    assert store.value("cw1_rate") == 137
    assert store.value("cw1_elapsed_ms") == 4500
    assert worker.merged_frames == 1


def test_malformed_line_leaves_store_unchanged() -> None:
    store = TelemetryStore()
    worker = _cw_worker(store, _FakeSerial([]))
    worker.handle_line(EVENT_LINE)
    before = store.channel_values(Channel.COSMIC_WATCH_1)

    worker.handle_line("M 13 4600")
    worker.handle_line("Q 13 4600 140 58.0 3 24.6")

    assert store.channel_values(Channel.COSMIC_WATCH_1) == before
    assert store.validity(Channel.COSMIC_WATCH_1) is Validity.ON
    assert worker.rejected_frames == 2


def test_session_logs_lines_by_role_and_ends_in_error(tmp_path: Path, utc_clock) -> None:
    store = TelemetryStore()
    link = _FakeSerial(
        [
            b"M 1 100 2 40.0 1 20.0\r",
            b"\r",
            b"S 2 200 3 41.0 1 20.5\r",
            b"garbage\r",
        ]
    )
    primary = RawLineLog(
        tmp_path / "raw.log", tmp_path / "archive", max_bytes=4096,
        header_label="CW", clock=utc_clock,
    )
    coincident = RawLineLog(
        tmp_path / "coincident.log", tmp_path / "archive", max_bytes=4096,
        header_label="CW", clock=utc_clock,
    )
    opened: list = []
    worker = CosmicWatchWorker(
        Channel.COSMIC_WATCH_1,
        "/dev/serial1",
        store,
        primary_log=primary,
        coincident_log=coincident,
        serial_factory=_factory(link, opened),
        ownership=ChannelOwnership(),
    )

    outcome = worker.run()

    assert outcome is WorkerOutcome.SESSION_ENDED
    assert opened == [("/dev/serial1", 9600)]
    assert link.closed
    assert worker.merged_frames == 2
    assert worker.rejected_frames == 1
    assert (tmp_path / "raw.log").read_text(encoding="utf-8").splitlines()[1:] == [
        "M 1 100 2 40.0 1 20.0"
    ]
    assert (tmp_path / "coincident.log").read_text(encoding="utf-8").splitlines()[1:] == [
        "S 2 200 3 41.0 1 20.5"
    ]
    assert store.validity(Channel.COSMIC_WATCH_1) is Validity.ERROR
    assert store.value("cw1_event") == 0


def test_overlong_line_is_rejected() -> None:
    store = TelemetryStore()
    worker = _cw_worker(store, _FakeSerial([b"M" * 1024, b"1 2 3 4.0 5 6.0\r"]))

    worker.run()

    assert worker.rejected_frames == 1
    assert worker.merged_frames == 0


def test_tail_of_overlong_line_is_discarded() -> None:
    store = TelemetryStore()
    link = _FakeSerial(
        [
            b"X" * 1024,
            b"X" * 1024,
            b" M 99 4500 137 58.21 3 24.6\r",
            (EVENT_LINE + "\r").encode("ascii"),
        ]
    )
    worker = _cw_worker(store, link)

    worker.listen(link)

    assert worker.rejected_frames == 1
    assert worker.merged_frames == 1
    assert store.value("cw1_event") == 12


def test_event_counter_wraps_past_16_bits() -> None:
    store = TelemetryStore()
    worker = _cw_worker(store, _FakeSerial([]))

    worker.handle_line("M 65535 4500 137 58.21 3 24.6")
    worker.handle_line("M 65537 4600 140 58.21 3 24.6")

    assert worker.rejected_frames == 0
    assert worker.merged_frames == 2
    assert store.value("cw1_event") == 1
    assert store.value("cw1_rate") == 140


def test_disabled_channel_drops_frames(tmp_path: Path) -> None:
    store = TelemetryStore()
    log = RawLineLog(tmp_path / "raw.log", tmp_path / "archive", max_bytes=4096, header_label="CW")
    worker = _cw_worker(store, _FakeSerial([]), enabled=lambda: False, primary_log=log)

    worker.handle_line(EVENT_LINE)

    assert worker.dropped_frames == 1
    assert store.validity(Channel.COSMIC_WATCH_1) is Validity.OFF
    assert not (tmp_path / "raw.log").exists()


def test_open_failure_marks_channel_error() -> None:
    store = TelemetryStore()
    worker = CosmicWatchWorker(
        Channel.COSMIC_WATCH_2,
        "/dev/missing",
        store,
        serial_factory=_failing_factory,
        ownership=ChannelOwnership(),
    )

    assert worker.run() is WorkerOutcome.OPEN_FAILED
    assert store.validity(Channel.COSMIC_WATCH_2) is Validity.ERROR


def test_second_start_on_owned_channel_is_rejected() -> None:
    ownership = ChannelOwnership()
    block = threading.Event()
    store = TelemetryStore()
    first = _cw_worker(store, _FakeSerial([], block=block), ownership=ownership)
    second = _cw_worker(store, _FakeSerial([]), ownership=ownership)

    first.start()
    try:
        with pytest.raises(WorkerAlreadyRunningError):
            second.start()
        with pytest.raises(WorkerAlreadyRunningError):
            first.start()
    finally:
        first.stop()
        first.join(2.0)

    assert not first.running
    assert not ownership.owned(Channel.COSMIC_WATCH_1)


def test_thread_reports_outcome_and_releases_channel() -> None:
    ownership = ChannelOwnership()
    exits: list = []
    finished = threading.Event()

    def on_exit(worker, outcome) -> None:
        exits.append((worker.channel, outcome))
        finished.set()

    worker = _cw_worker(
        TelemetryStore(), _FakeSerial([EVENT_LINE.encode() + b"\r"]),
        ownership=ownership, on_exit=on_exit,
    )

    worker.start()

    assert finished.wait(2.0)
    assert exits == [(Channel.COSMIC_WATCH_1, WorkerOutcome.SESSION_ENDED)]
    assert not ownership.owned(Channel.COSMIC_WATCH_1)
    assert worker.merged_frames == 1


class _GarbledSerial(_FakeSerial):
    def read_until(self, expected: bytes = b"\n", size: Optional[int] = None) -> bytes:
        raise RuntimeError("driver returned garbage")


def test_unexpected_error_still_reports_outcome() -> None:
    store = TelemetryStore()
    ownership = ChannelOwnership()
    exits: list = []
    finished = threading.Event()

    def on_exit(worker, outcome) -> None:
        exits.append(outcome)
        finished.set()

    worker = _cw_worker(store, _GarbledSerial([]), ownership=ownership, on_exit=on_exit)
    store.merge_event(Channel.COSMIC_WATCH_1, {"cw1_event": 7})

    worker.start()

    assert finished.wait(2.0)
    assert exits == [WorkerOutcome.CRASHED]
    assert store.validity(Channel.COSMIC_WATCH_1) is Validity.ERROR
    assert store.value("cw1_event") == 0
    assert not ownership.owned(Channel.COSMIC_WATCH_1)


def test_cosmic_watch_worker_requires_cosmic_watch_channel() -> None:
    with pytest.raises(ValueError):
        CosmicWatchWorker(Channel.MICROPHONE, "/dev/serial0", TelemetryStore())


def test_microphone_request_response(tmp_path: Path) -> None:
    store = TelemetryStore()
    bins = bytes(range(32))
    link = _FakeSerial([b"D 32,", bins])
    log = RawLineLog(tmp_path / "mic.log", tmp_path / "archive", max_bytes=4096, header_label="MIC")
    opened: list = []
    worker = MicrophoneWorker(
        "/dev/serial0",
        store,
        request_interval=0.0,
        raw_log=log,
        serial_factory=_factory(link, opened),
        ownership=ChannelOwnership(),
    )
    merged: list = []
    original_merge = store.merge_event

    def capture(channel, values):
        original_merge(channel, values)
        merged.append(store.channel_values(channel))

    store.merge_event = capture  # type: ignore[method-assign]

    assert worker.run() is WorkerOutcome.SESSION_ENDED

    assert opened == [("/dev/serial0", 38400)]
    assert link.written[0] == b"D"
    assert worker.merged_frames == 1
    assert merged[0]["sound_psd"] == bins
    assert merged[0]["mic_max_level"] == 31
    assert merged[0]["mic_max_bin"] == 31
    lines = (tmp_path / "mic.log").read_text(encoding="utf-8").splitlines()
    assert lines[1] == " ".join(str(level) for level in bins)


def test_microphone_bad_header_is_rejected_and_input_flushed() -> None:
    store = TelemetryStore()
    link = _FakeSerial([b"X 32,"])
    worker = MicrophoneWorker(
        "/dev/serial0",
        store,
        request_interval=0.0,
        serial_factory=_factory(link),
        ownership=ChannelOwnership(),
    )

    worker.run()

    assert worker.rejected_frames == 1
    assert link.flushes == 1
    assert worker.merged_frames == 0


def test_microphone_stop_interrupts_request_interval() -> None:
    link = _FakeSerial([b"D 32,", bytes(32)])
    finished = threading.Event()
    worker = MicrophoneWorker(
        "/dev/serial0",
        TelemetryStore(),
        request_interval=30.0,
        serial_factory=_factory(link),
        ownership=ChannelOwnership(),
        on_exit=lambda worker, outcome: finished.set(),
    )

    worker.start()
    deadline = time.monotonic() + 2.0
    while worker.merged_frames == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    worker.stop()

    assert finished.wait(2.0)
    assert worker.merged_frames == 1
    assert len(link.written) == 1


def test_microphone_short_payload_ends_session() -> None:
    store = TelemetryStore()
    store.merge_event(Channel.MICROPHONE, {"mic_max_level": 9})
    link = _FakeSerial([b"D 32,", bytes(10)])
    worker = MicrophoneWorker(
        "/dev/serial0",
        store,
        request_interval=0.0,
        serial_factory=_factory(link),
        ownership=ChannelOwnership(),
    )

    assert worker.run() is WorkerOutcome.SESSION_ENDED

    assert worker.merged_frames == 0
    assert worker.rejected_frames == 0
    assert link.closed
    assert store.validity(Channel.MICROPHONE) is Validity.ERROR
    assert store.value("mic_max_level") == 0
