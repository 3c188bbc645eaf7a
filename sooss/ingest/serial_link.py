"""Opening serial ports for the instrument links."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

import serial

LOGGER = logging.getLogger(__name__)


class SerialLinkError(RuntimeError):
    """Raised when a serial device cannot be opened."""


class SerialLink(Protocol):
    def read(self, size: int = 1) -> bytes: ...

    def read_until(self, expected: bytes = b"\n", size: Optional[int] = None) -> bytes: ...

    def write(self, data: bytes) -> Optional[int]: ...

    def reset_input_buffer(self) -> None: ...

    def close(self) -> None: ...


SerialFactory = Callable[[str, int], SerialLink]


def open_serial_link(device: str, baud: int) -> SerialLink:
    """Open ``device`` as 8N1 with no flow control and blocking reads.

    Bytes that arrived before the open are discarded.
    """

    try:
        link = serial.Serial(
            port=device,
            baudrate=baud,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            xonxoff=False,
            rtscts=False,
            timeout=None,
        )
        link.reset_input_buffer()
    except (serial.SerialException, OSError, ValueError) as exc:
        raise SerialLinkError(f"Unable to open serial device {device}: {exc}") from exc
    LOGGER.debug("Opened %s at %d baud", device, baud)
    return link
