"""Durable telemetry files: atomic real-time snapshot and rolling WOD archive."""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable

from .telemetry.record import TelemetryRecord

LOGGER = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when a telemetry file could not be written."""

    def __init__(self, operation: str, path: Path, cause: BaseException) -> None:
        super().__init__(f"{operation} failed for {path}: {cause}")
        self.operation = operation
        self.path = path
        self.cause = cause


def write_atomic(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data``; readers see the old or new file, never a mix."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tempfile.NamedTemporaryFile(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    )
    try:
        with tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp.name, path)
    except BaseException:
        try:
            os.unlink(tmp.name)
        except FileNotFoundError:
            pass
        raise


class ArchiveState(str, Enum):
    ACTIVE = "active"
    ROLLING = "rolling"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def roll_file(
    path: Path, archive_dir: Path, *, clock: Callable[[], datetime] = _utc_now
) -> Path:
    """Move ``path`` into ``archive_dir`` under a timestamped name.

    The next writer to open ``path`` starts a fresh file at offset 0.
    """

    archive_dir.mkdir(parents=True, exist_ok=True)
    stamp = clock().strftime("%Y%m%d%H%M%S")
    target = archive_dir / f"{path.stem}_{stamp}{path.suffix}"
    counter = 1
    while target.exists():
        target = archive_dir / f"{path.stem}_{stamp}_{counter}{path.suffix}"
        counter += 1
    os.replace(path, target)
    return target


class WodArchive:
    """Append-only whole-orbit-data file rolled when it exceeds ``max_bytes``."""

    def __init__(
        self,
        path: Path,
        archive_dir: Path,
        *,
        max_bytes: int,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.path = path
        self.archive_dir = archive_dir
        self.max_bytes = max_bytes
        self.state = ArchiveState.ACTIVE
        self.rolls = 0
        self._clock = clock

    def append(self, data: bytes) -> bool:
        """Append ``data``; return True when the append triggered a roll."""

        if self.state is ArchiveState.ROLLING:
            # A previous roll failed half way; finish it before writing.
            self.roll()

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("ab") as stream:
                stream.write(data)
                stream.flush()
                os.fsync(stream.fileno())
            size = self.path.stat().st_size
        except OSError as exc:
            raise PersistenceError("wod append", self.path, exc) from exc

        if size <= self.max_bytes:
            return False

        LOGGER.info(
            "Rolling WOD file %s as it is %.1f KB", self.path, size / 1024.0
        )
        self.roll()
        return True

    def roll(self) -> Path:
        self.state = ArchiveState.ROLLING
        try:
            target = roll_file(self.path, self.archive_dir, clock=self._clock)
        except OSError as exc:
            raise PersistenceError("wod roll", self.path, exc) from exc
        self.state = ArchiveState.ACTIVE
        self.rolls += 1
        return target


class TelemetryPersistence:
    """Writes packed telemetry records to the RT file and the WOD archive."""

    def __init__(self, rt_path: Path, wod: WodArchive) -> None:
        self.rt_path = rt_path
        self.wod = wod

    def write_rt(self, record: TelemetryRecord) -> None:
        try:
            write_atomic(self.rt_path, record.pack())
        except OSError as exc:
            raise PersistenceError("rt write", self.rt_path, exc) from exc

    def append_wod(self, record: TelemetryRecord) -> bool:
        return self.wod.append(record.pack())
