"""Line-oriented raw log of instrument output, rolled by size."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from ..persistence import roll_file

LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RawLineLog:
    """Appends raw frames verbatim, one per line.

    Each file an instance writes starts with a run-start header so
    consecutive runs can be told apart. Write errors are reported once per
    streak and never raised.
    """

    def __init__(
        self,
        path: Path,
        archive_dir: Path,
        *,
        max_bytes: int,
        header_label: str,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.path = path
        self.archive_dir = archive_dir
        self.max_bytes = max_bytes
        self.header_label = header_label
        self.failures = 0
        self._clock = clock
        self._header_written = False
        self._failing = False
        self._lock = threading.Lock()

    def header(self) -> str:
        stamp = self._clock().strftime("%y%m%d %H%M%S")
        return f"{self.header_label} start: {stamp} UTC"

    def write(self, line: str) -> bool:
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as stream:
                    if not self._header_written:
                        stream.write(self.header() + "\n")
                        self._header_written = True
                    stream.write(line.rstrip("\r\n") + "\n")
                size = self.path.stat().st_size
                if size > self.max_bytes:
                    target = roll_file(self.path, self.archive_dir, clock=self._clock)
                    LOGGER.info("Rolled raw log %s to %s", self.path, target)
                    self._header_written = False
            except OSError as exc:
                self.failures += 1
                if not self._failing:
                    LOGGER.error("Unable to write raw log %s: %s", self.path, exc)
                    self._failing = True
                return False

            if self._failing:
                LOGGER.info("Raw log %s writable again", self.path)
                self._failing = False
            return True
