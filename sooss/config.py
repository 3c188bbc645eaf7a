"""Startup configuration loader for sooss."""

from __future__ import annotations

import configparser
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants
from .telemetry.compensation import BreakpointTable, parse_breakpoints

DEFAULT_SAMPLE_PERIOD_SECONDS = 60
DEFAULT_MAX_PERSISTENCE_ERRORS = 10


class ConfigurationError(RuntimeError):
    """Raised when the startup configuration cannot be loaded."""


@dataclass(slots=True)
class PathsConfig:
    data_dir: Path = constants.DEFAULT_DATA_DIR
    rt_telem_path: Path = constants.DEFAULT_DATA_DIR / constants.DEFAULT_RT_TELEM_FILENAME
    wod_telem_path: Path = constants.DEFAULT_DATA_DIR / constants.DEFAULT_WOD_TELEM_FILENAME
    wod_archive_dir: Path = constants.DEFAULT_DATA_DIR / constants.DEFAULT_WOD_ARCHIVE_DIRNAME
    log_dir: Path = constants.DEFAULT_DATA_DIR / constants.DEFAULT_LOG_DIRNAME
    state_file: Path = constants.DEFAULT_DATA_DIR / constants.DEFAULT_STATE_FILENAME


@dataclass(slots=True)
class SerialConfig:
    cw1_serial_device: str = constants.DEFAULT_CW1_SERIAL_DEVICE
    cw2_serial_device: str = constants.DEFAULT_CW2_SERIAL_DEVICE
    mic_serial_device: str = constants.DEFAULT_MIC_SERIAL_DEVICE
    cw_baud: int = constants.DEFAULT_CW_BAUD
    mic_baud: int = constants.DEFAULT_MIC_BAUD
    mic_request_interval_seconds: float = 1.0
    worker_restart_seconds: float = 0.0  # 0 leaves restarts to the process supervisor


@dataclass(slots=True)
class TelemetryConfig:
    period_to_sample_telem_in_seconds: int = DEFAULT_SAMPLE_PERIOD_SECONDS
    state_reload_seconds: float = 10.0
    max_persistence_errors: int = DEFAULT_MAX_PERSISTENCE_ERRORS
    i2c_bus: int = 1
    o2_air_mv: float = 13.0  # nominal; set to the fitted cell's in-air reading
    o2_temperature_table: Optional[BreakpointTable] = None


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class SoossConfig:
    paths: PathsConfig
    serial: SerialConfig
    telemetry: TelemetryConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def _resolve(base: Path, value: str) -> Path:
    candidate = Path(value).expanduser()
    if candidate.is_absolute():
        return candidate
    return base / candidate


def _breakpoints(value: str) -> Optional[BreakpointTable]:
    value = value.strip()
    return parse_breakpoints(value) if value else None


def load_config(path: Optional[Path] = None, *, data_dir: Optional[Path] = None) -> SoossConfig:
    """Load configuration from disk, applying defaults where necessary.

    Unlike the operational state file, the startup configuration is
    mandatory: a missing or unparseable file raises ConfigurationError.
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "paths": {
                "data_dir": str(constants.DEFAULT_DATA_DIR),
                "rt_telem_path": constants.DEFAULT_RT_TELEM_FILENAME,
                "wod_telem_path": constants.DEFAULT_WOD_TELEM_FILENAME,
                "wod_archive_dir": constants.DEFAULT_WOD_ARCHIVE_DIRNAME,
                "log_dir": constants.DEFAULT_LOG_DIRNAME,
                "state_file": constants.DEFAULT_STATE_FILENAME,
            },
            "serial": {
                "cw1_serial_device": constants.DEFAULT_CW1_SERIAL_DEVICE,
                "cw2_serial_device": constants.DEFAULT_CW2_SERIAL_DEVICE,
                "mic_serial_device": constants.DEFAULT_MIC_SERIAL_DEVICE,
                "cw_baud": str(constants.DEFAULT_CW_BAUD),
                "mic_baud": str(constants.DEFAULT_MIC_BAUD),
                "mic_request_interval_seconds": "1.0",
                "worker_restart_seconds": "0",
            },
            "telemetry": {
                "period_to_sample_telem_in_seconds": str(DEFAULT_SAMPLE_PERIOD_SECONDS),
                "state_reload_seconds": "10",
                "max_persistence_errors": str(DEFAULT_MAX_PERSISTENCE_ERRORS),
                "i2c_bus": "1",
                "o2_air_mv": "13.0",
                "o2_temperature_table": "",
            },
            "logging": {
                "level": "INFO",
                "path": "",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    try:
        with config_path.open("r", encoding="utf-8") as stream:
            parser.read_file(stream)
    except OSError as exc:
        raise ConfigurationError(
            f"Could not load sensor config file {config_path}: {exc}"
        ) from exc
    except configparser.Error as exc:
        raise ConfigurationError(f"Malformed config file {config_path}: {exc}") from exc

    if data_dir is not None:
        parser.set("paths", "data_dir", str(data_dir))

    try:
        base = Path(parser.get("paths", "data_dir")).expanduser()
        paths = PathsConfig(
            data_dir=base,
            rt_telem_path=_resolve(base, parser.get("paths", "rt_telem_path")),
            wod_telem_path=_resolve(base, parser.get("paths", "wod_telem_path")),
            wod_archive_dir=_resolve(base, parser.get("paths", "wod_archive_dir")),
            log_dir=_resolve(base, parser.get("paths", "log_dir")),
            state_file=_resolve(base, parser.get("paths", "state_file")),
        )

        serial = SerialConfig(
            cw1_serial_device=parser.get("serial", "cw1_serial_device"),
            cw2_serial_device=parser.get("serial", "cw2_serial_device"),
            mic_serial_device=parser.get("serial", "mic_serial_device"),
            cw_baud=parser.getint("serial", "cw_baud"),
            mic_baud=parser.getint("serial", "mic_baud"),
            mic_request_interval_seconds=max(
                0.1, parser.getfloat("serial", "mic_request_interval_seconds")
            ),
            worker_restart_seconds=max(
                0.0, parser.getfloat("serial", "worker_restart_seconds")
            ),
        )

        telemetry = TelemetryConfig(
            period_to_sample_telem_in_seconds=max(
                1, parser.getint("telemetry", "period_to_sample_telem_in_seconds")
            ),
            state_reload_seconds=max(
                1.0, parser.getfloat("telemetry", "state_reload_seconds")
            ),
            max_persistence_errors=max(
                0, parser.getint("telemetry", "max_persistence_errors")
            ),
            i2c_bus=parser.getint("telemetry", "i2c_bus"),
            o2_air_mv=parser.getfloat("telemetry", "o2_air_mv"),
            o2_temperature_table=_breakpoints(
                parser.get("telemetry", "o2_temperature_table")
            ),
        )
        if telemetry.o2_air_mv <= 0:
            raise ValueError("o2_air_mv must be positive")

        log_path_value = parser.get("logging", "path", fallback="")
        logging_config = LoggingConfig(
            level=parser.get("logging", "level", fallback="INFO"),
            path=_resolve(paths.log_dir, log_path_value) if log_path_value else None,
        )

        health = HealthConfig(
            enabled=parser.getboolean("health", "enabled"),
            host=parser.get("health", "host"),
            port=parser.getint("health", "port"),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid value in {config_path}: {exc}") from exc

    return SoossConfig(
        paths=paths,
        serial=serial,
        telemetry=telemetry,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )
