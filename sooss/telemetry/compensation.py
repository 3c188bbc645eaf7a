"""Temperature compensation for the O2 cell reading."""

from __future__ import annotations

from bisect import bisect_right
from typing import Iterable, Optional, Sequence, Tuple

O2_IN_AIR_PERCENT = 20.9
DEFAULT_COMPENSATION_TEMPERATURE_C = 25.0
DEFAULT_PRESSURE_REFERENCE_HPA = 1013


class BreakpointTable:
    """Piecewise-linear lookup over sorted ``(x, y)`` breakpoints.

    Inputs outside the table are clamped to the first or last breakpoint.
    """

    def __init__(self, points: Iterable[Tuple[float, float]]) -> None:
        ordered = tuple((float(x), float(y)) for x, y in points)
        if len(ordered) < 2:
            raise ValueError("Breakpoint table needs at least two points")
        xs = [x for x, _ in ordered]
        if any(b <= a for a, b in zip(xs, xs[1:])):
            raise ValueError("Breakpoint x values must be strictly increasing")
        self._xs: Sequence[float] = xs
        self._ys: Sequence[float] = [y for _, y in ordered]

    def interpolate(self, x: float) -> float:
        xs, ys = self._xs, self._ys
        if x <= xs[0]:
            return ys[0]
        if x >= xs[-1]:
            return ys[-1]
        index = bisect_right(xs, x)
        x0, x1 = xs[index - 1], xs[index]
        y0, y1 = ys[index - 1], ys[index]
        return y0 + (y1 - y0) * (x - x0) / (x1 - x0)


def parse_breakpoints(text: str) -> BreakpointTable:
    """Parse ``"x:y, x:y, ..."`` into a table; raises ``ValueError``."""

    points = []
    for item in text.split(","):
        x, separator, y = item.strip().partition(":")
        if not separator:
            raise ValueError(f"Breakpoint must be 'x:y', got {item.strip()!r}")
        points.append((float(x), float(y)))
    return BreakpointTable(points)


def compensate_o2(
    o2_mv: float,
    temperature_c: float,
    *,
    air_mv: float,
    table: Optional[BreakpointTable] = None,
) -> float:
    """Convert an O2 cell voltage to percent O2 at the given temperature.

    ``air_mv`` is the cell voltage measured in air (20.9% O2). ``table`` maps
    temperature to a correction factor for the fitted cell; without one no
    temperature correction is applied. The raw ``o2_mv`` is what the record
    keeps as the authoritative reading.
    """

    if air_mv <= 0:
        raise ValueError("air_mv must be positive")
    factor = table.interpolate(temperature_c) if table is not None else 1.0
    return O2_IN_AIR_PERCENT * o2_mv / air_mv * factor
