"""Single entry point for polling the I2C sensors by channel."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from smbus2 import SMBus

from ..telemetry.compensation import (
    DEFAULT_COMPENSATION_TEMPERATURE_C,
    DEFAULT_PRESSURE_REFERENCE_HPA,
    BreakpointTable,
    compensate_o2,
)
from ..telemetry.record import Channel
from ..telemetry.store import ChannelReading
from .drivers import ADS1015, AK09918, LPS22HB, PASCO2, SHTC3, DFRobotGasSensor, SensorReadError

LOGGER = logging.getLogger(__name__)

# Channels are polled in this order; prerequisites come first.
POLL_ORDER: Tuple[Channel, ...] = (
    Channel.BATTERY,
    Channel.CLIMATE,
    Channel.O2,
    Channel.PRESSURE,
    Channel.CO2,
    Channel.MAGNETOMETER,
    Channel.GAS_REFERENCE,
)

BusFactory = Callable[[int], Any]


class SensorFacade:
    """Reads one polled channel per call, opening the bus for that read only."""

    def __init__(
        self,
        bus_number: int = 1,
        bus_factory: BusFactory = SMBus,
        *,
        o2_air_mv: float = 13.0,
        o2_table: Optional[BreakpointTable] = None,
        adc: Optional[ADS1015] = None,
        climate: Optional[SHTC3] = None,
        barometer: Optional[LPS22HB] = None,
        co2: Optional[PASCO2] = None,
        magnetometer: Optional[AK09918] = None,
        gas_reference: Optional[DFRobotGasSensor] = None,
    ) -> None:
        self.bus_number = bus_number
        self.o2_air_mv = o2_air_mv
        self.o2_table = o2_table
        self._bus_factory = bus_factory
        self._adc = adc or ADS1015()
        self._climate = climate or SHTC3()
        self._barometer = barometer or LPS22HB()
        self._co2 = co2 or PASCO2()
        self._magnetometer = magnetometer or AK09918()
        self._gas_reference = gas_reference or DFRobotGasSensor()
        self._closed = False
        self._readers: Dict[Channel, Callable[[Any, Mapping[str, Any]], Dict[str, Any]]] = {
            Channel.BATTERY: self._read_battery,
            Channel.CLIMATE: self._read_climate,
            Channel.O2: self._read_o2,
            Channel.PRESSURE: self._read_pressure,
            Channel.CO2: self._read_co2,
            Channel.MAGNETOMETER: self._read_magnetometer,
            Channel.GAS_REFERENCE: self._read_gas_reference,
        }

    def read_channel(
        self, channel: Channel, inputs: Optional[Mapping[str, Any]] = None
    ) -> ChannelReading:
        """Poll ``channel``; raises :class:`SensorReadError` on failure.

        ``inputs`` carries values from prerequisite channels: ``temperature_c``
        for the O2 cell and ``pressure_hpa`` for the CO2 sensor.
        """

        if self._closed:
            raise SensorReadError("Sensor facade is closed")
        reader = self._readers.get(channel)
        if reader is None:
            raise ValueError(f"Channel '{channel.value}' is not polled")
        try:
            with self._bus_factory(self.bus_number) as bus:
                values = reader(bus, inputs or {})
        except OSError as exc:
            raise SensorReadError(f"I2C bus {self.bus_number} unavailable: {exc}") from exc
        return ChannelReading(values)

    def close(self) -> None:
        if not self._closed:
            LOGGER.debug("Closing sensor facade for bus %d", self.bus_number)
        self._closed = True

    def _read_battery(self, bus: Any, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        return {"battery_mv": self._adc.read_mv(bus, ADS1015.BATTERY_INPUT)}

    def _read_o2(self, bus: Any, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        o2_mv = self._adc.read_mv(bus, ADS1015.O2_INPUT)
        temperature = inputs.get("temperature_c", DEFAULT_COMPENSATION_TEMPERATURE_C)
        return {
            "o2_mv": o2_mv,
            "o2_percent": compensate_o2(
                o2_mv, temperature, air_mv=self.o2_air_mv, table=self.o2_table
            ),
        }

    def _read_climate(self, bus: Any, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        temperature, humidity = self._climate.read(bus)
        return {"climate_temp_c": temperature, "climate_humidity_pct": humidity}

    def _read_pressure(self, bus: Any, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        pressure, temperature = self._barometer.read(bus)
        return {"pressure_hpa": pressure, "pressure_temp_c": temperature}

    def _read_co2(self, bus: Any, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        pressure = inputs.get("pressure_hpa", DEFAULT_PRESSURE_REFERENCE_HPA)
        return {"co2_ppm": self._co2.read(bus, pressure)}

    def _read_magnetometer(self, bus: Any, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        x, y, z = self._magnetometer.read(bus)
        return {"mag_x_ut": x, "mag_y_ut": y, "mag_z_ut": z}

    def _read_gas_reference(self, bus: Any, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        o2_percent, temperature = self._gas_reference.read(bus)
        return {"ref_o2_percent": o2_percent, "ref_temp_c": temperature}
