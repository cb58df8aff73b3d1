"""Unit conversion for display.

Values are cached in mph and Fahrenheit; these helpers are applied only when a
value is read out.
"""

from cux_lib.models import SpeedUnits, TemperatureUnits

_SPEED_FACTORS = {
    SpeedUnits.MPH: 1.0,
    SpeedUnits.FPS: 1.46666667,
    SpeedUnits.KPH: 1.609344,
}


def convert_speed(value_mph: float, units: SpeedUnits) -> float:
    """Convert a speed in miles per hour to the requested units."""
    if units is SpeedUnits.MPH:
        return value_mph
    return value_mph * _SPEED_FACTORS[units]


def convert_temperature(value_f: float, units: TemperatureUnits) -> float:
    """Convert a temperature in degrees Fahrenheit to the requested units."""
    if units is TemperatureUnits.CELSIUS:
        return (value_f - 32) * 5 / 9
    return value_f
