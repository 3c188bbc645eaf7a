"""Serial ingestion for event-fed instruments."""

from .raw_log import RawLineLog
from .serial_link import SerialLinkError, open_serial_link
from .workers import (
    PROCESS_OWNERSHIP,
    ChannelOwnership,
    CosmicWatchWorker,
    MicrophoneWorker,
    SerialIngestionWorker,
    WorkerAlreadyRunningError,
    WorkerOutcome,
)

__all__ = [
    "ChannelOwnership",
    "CosmicWatchWorker",
    "MicrophoneWorker",
    "PROCESS_OWNERSHIP",
    "RawLineLog",
    "SerialIngestionWorker",
    "SerialLinkError",
    "WorkerAlreadyRunningError",
    "WorkerOutcome",
    "open_serial_link",
]
