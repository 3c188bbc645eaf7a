"""I2C sensor drivers and the facade the scheduler polls through."""

from .drivers import (
    ADS1015,
    AK09918,
    LPS22HB,
    PASCO2,
    SHTC3,
    DFRobotGasSensor,
    SensorReadError,
)
from .facade import POLL_ORDER, SensorFacade

__all__ = [
    "ADS1015",
    "AK09918",
    "DFRobotGasSensor",
    "LPS22HB",
    "PASCO2",
    "POLL_ORDER",
    "SHTC3",
    "SensorFacade",
    "SensorReadError",
]
