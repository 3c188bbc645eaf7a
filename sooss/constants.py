"""Constants used across the sooss package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "sooss"
DEFAULT_DATA_DIR = Path.home() / "sooss"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / DEFAULT_CONFIG_FILENAME
DEFAULT_STATE_FILENAME = f"{APP_NAME}.state"

DEFAULT_RT_TELEM_FILENAME = "sensors_rt.bin"
DEFAULT_WOD_TELEM_FILENAME = "sensors_wod.bin"
DEFAULT_WOD_ARCHIVE_DIRNAME = "wod_queue"
DEFAULT_LOG_DIRNAME = "log"

DEFAULT_CW1_SERIAL_DEVICE = "/dev/serial1"
DEFAULT_CW2_SERIAL_DEVICE = "/dev/serial2"
DEFAULT_MIC_SERIAL_DEVICE = "/dev/serial0"
DEFAULT_CW_BAUD = 9600
DEFAULT_MIC_BAUD = 38400

CW_PRIMARY_LOG_TEMPLATE = "{channel}_raw.log"
CW_COINCIDENT_LOG_TEMPLATE = "{channel}_coincident.log"
MIC_LOG_TEMPLATE = "{channel}.log"
