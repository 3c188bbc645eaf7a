"""Minimal smbus2 drivers for the I2C sensors on the payload.

Every driver performs a complete transaction against a bus handed to it and
keeps no state between reads, so a failed read never poisons the next one.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from smbus2 import SMBus, i2c_msg


class SensorReadError(RuntimeError):
    """Raised when a sensor transaction fails or returns implausible data."""


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _crc8(data: Sequence[int]) -> int:
    crc = 0xFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            crc = ((crc << 1) ^ 0x31) & 0xFF if crc & 0x80 else (crc << 1) & 0xFF
    return crc


def _signed16(low: int, high: int) -> int:
    value = (high << 8) | low
    return value - 0x10000 if value & 0x8000 else value


@dataclass
class ADS1015:
    """4-channel ADC; single-shot reads at +/-4.096 V full scale."""

    address: int = 0x48
    sleep: Callable[[float], None] = _sleep

    MV_PER_LSB = 0.125
    BATTERY_INPUT = 3
    O2_INPUT = 0

    _REG_CONVERSION = 0x00
    _REG_CONFIG = 0x01
    _OS_SINGLE = 0x8000
    _PGA_4096 = 0x0200
    _MODE_SINGLE = 0x0100
    _DR_1600 = 0x0080
    _COMP_DISABLE = 0x0003

    def read_mv(self, bus: SMBus, channel: int) -> float:
        if not 0 <= channel <= 3:
            raise ValueError(f"ADS1015 input must be 0..3, got {channel}")
        config = (
            self._OS_SINGLE
            | ((0x4 + channel) << 12)
            | self._PGA_4096
            | self._MODE_SINGLE
            | self._DR_1600
            | self._COMP_DISABLE
        )
        try:
            bus.write_i2c_block_data(
                self.address, self._REG_CONFIG, [config >> 8, config & 0xFF]
            )
            self.sleep(0.02)
            high, low = bus.read_i2c_block_data(self.address, self._REG_CONVERSION, 2)
        except OSError as exc:
            raise SensorReadError(f"ADS1015 read failed: {exc}") from exc
        raw = _signed16(low, high)
        return raw * self.MV_PER_LSB


@dataclass
class SHTC3:
    """Temperature and relative humidity."""

    address: int = 0x70
    sleep: Callable[[float], None] = _sleep

    _WAKEUP = (0x35, 0x17)
    _MEASURE_T_FIRST = (0x78, 0x66)
    _SLEEP = (0xB0, 0x98)

    def read(self, bus: SMBus) -> Tuple[float, float]:
        """Return ``(temperature_c, humidity_pct)``."""

        try:
            bus.i2c_rdwr(i2c_msg.write(self.address, list(self._WAKEUP)))
            self.sleep(0.001)
            bus.i2c_rdwr(i2c_msg.write(self.address, list(self._MEASURE_T_FIRST)))
            self.sleep(0.013)
            reply = i2c_msg.read(self.address, 6)
            bus.i2c_rdwr(reply)
            data: List[int] = list(reply)
            bus.i2c_rdwr(i2c_msg.write(self.address, list(self._SLEEP)))
        except OSError as exc:
            raise SensorReadError(f"SHTC3 read failed: {exc}") from exc

        if _crc8(data[0:2]) != data[2] or _crc8(data[3:5]) != data[5]:
            raise SensorReadError("SHTC3 CRC mismatch")
        raw_t = (data[0] << 8) | data[1]
        raw_rh = (data[3] << 8) | data[4]
        return -45.0 + 175.0 * raw_t / 65536.0, 100.0 * raw_rh / 65536.0


@dataclass
class LPS22HB:
    """Barometric pressure in one-shot mode."""

    address: int = 0x5C
    sleep: Callable[[float], None] = _sleep
    attempts: int = 10

    _CTRL_REG1 = 0x10
    _CTRL_REG2 = 0x11
    _STATUS = 0x27
    _PRESS_OUT_XL = 0x28
    _TEMP_OUT_L = 0x2B

    def read(self, bus: SMBus) -> Tuple[float, float]:
        """Return ``(pressure_hpa, temperature_c)``."""

        try:
            bus.write_byte_data(self.address, self._CTRL_REG1, 0x02)
            bus.write_byte_data(self.address, self._CTRL_REG2, 0x11)
            for _ in range(self.attempts):
                self.sleep(0.01)
                status = bus.read_byte_data(self.address, self._STATUS)
                if status & 0x03 == 0x03:
                    break
            else:
                raise SensorReadError("LPS22HB conversion timed out")
            xl, low, high = bus.read_i2c_block_data(self.address, self._PRESS_OUT_XL, 3)
            t_low, t_high = bus.read_i2c_block_data(self.address, self._TEMP_OUT_L, 2)
        except OSError as exc:
            raise SensorReadError(f"LPS22HB read failed: {exc}") from exc
        pressure = ((high << 16) | (low << 8) | xl) / 4096.0
        return pressure, _signed16(t_low, t_high) / 100.0


@dataclass
class PASCO2:
    """Photoacoustic CO2 sensor, single-shot with pressure compensation."""

    address: int = 0x28
    sleep: Callable[[float], None] = _sleep
    attempts: int = 20

    _MEAS_CFG = 0x04
    _CO2PPM_H = 0x05
    _MEAS_STS = 0x07
    _PRESS_REF_H = 0x0B
    _SINGLE_SHOT = 0x01
    _DRDY = 0x10

    def read(self, bus: SMBus, pressure_hpa: float) -> int:
        pressure = int(round(pressure_hpa))
        if not 750 <= pressure <= 1150:
            pressure = max(750, min(1150, pressure))
        try:
            bus.write_i2c_block_data(
                self.address, self._PRESS_REF_H, [pressure >> 8, pressure & 0xFF]
            )
            bus.write_byte_data(self.address, self._MEAS_CFG, self._SINGLE_SHOT)
            for _ in range(self.attempts):
                self.sleep(0.1)
                if bus.read_byte_data(self.address, self._MEAS_STS) & self._DRDY:
                    break
            else:
                raise SensorReadError("PASCO2 measurement not ready")
            high, low = bus.read_i2c_block_data(self.address, self._CO2PPM_H, 2)
        except OSError as exc:
            raise SensorReadError(f"PASCO2 read failed: {exc}") from exc
        return (high << 8) | low


@dataclass
class DFRobotGasSensor:
    """Reference electrochemical O2 sensor used for calibration runs."""

    address: int = 0x74
    sleep: Callable[[float], None] = _sleep

    _CMD_GET_GAS_CONCENTRATION = 0x86
    _CMD_GET_TEMP = 0x87
    _B_THERMISTOR = 3380.13

    @staticmethod
    def _checksum(frame: Sequence[int]) -> int:
        return (~sum(frame[1:8]) + 1) & 0xFF

    def _command(self, bus: SMBus, command: int) -> List[int]:
        frame = [0xFF, 0x01, command, 0x00, 0x00, 0x00, 0x00, 0x00]
        frame.append(self._checksum(frame))
        try:
            bus.write_i2c_block_data(self.address, 0x00, frame)
            self.sleep(0.1)
            reply = list(bus.read_i2c_block_data(self.address, 0x00, 9))
        except OSError as exc:
            raise SensorReadError(f"Gas sensor command {command:#x} failed: {exc}") from exc
        if self._checksum(reply) != reply[8]:
            raise SensorReadError(f"Gas sensor checksum mismatch for {command:#x}")
        return reply

    def read(self, bus: SMBus) -> Tuple[float, float]:
        """Return ``(o2_percent, temperature_c)``."""

        reply = self._command(bus, self._CMD_GET_GAS_CONCENTRATION)
        decimals = {1: 0.1, 2: 0.01}.get(reply[5], 1.0)
        concentration = ((reply[2] << 8) | reply[3]) * decimals

        reply = self._command(bus, self._CMD_GET_TEMP)
        raw = (reply[2] << 8) | reply[3]
        volts = 3.0 * raw / 1024.0
        if not 0.0 < volts < 3.0:
            raise SensorReadError(f"Gas sensor thermistor out of range: {raw}")
        resistance = volts * 10000.0 / (3.0 - volts)
        temperature = (
            1.0 / (1.0 / 298.15 + math.log(resistance / 10000.0) / self._B_THERMISTOR)
            - 273.15
        )
        return concentration, temperature


@dataclass
class AK09918:
    """3-axis magnetometer, single measurement mode."""

    address: int = 0x0C
    sleep: Callable[[float], None] = _sleep
    attempts: int = 10

    UT_PER_LSB = 0.15
    _WIA2 = 0x01
    _DEVICE_ID = 0x0C
    _ST1 = 0x10
    _HXL = 0x11
    _ST2 = 0x18
    _CNTL2 = 0x31
    _SINGLE = 0x01

    def read(self, bus: SMBus) -> Tuple[float, float, float]:
        try:
            if bus.read_byte_data(self.address, self._WIA2) != self._DEVICE_ID:
                raise SensorReadError("AK09918 not found")
            bus.write_byte_data(self.address, self._CNTL2, self._SINGLE)
            for _ in range(self.attempts):
                self.sleep(0.01)
                if bus.read_byte_data(self.address, self._ST1) & 0x01:
                    break
            else:
                raise SensorReadError("AK09918 data not ready")
            data = bus.read_i2c_block_data(self.address, self._HXL, 6)
            overflow = bus.read_byte_data(self.address, self._ST2) & 0x08
        except OSError as exc:
            raise SensorReadError(f"AK09918 read failed: {exc}") from exc
        if overflow:
            raise SensorReadError("AK09918 magnetic sensor overflow")
        return (
            _signed16(data[0], data[1]) * self.UT_PER_LSB,
            _signed16(data[2], data[3]) * self.UT_PER_LSB,
            _signed16(data[4], data[5]) * self.UT_PER_LSB,
        )
