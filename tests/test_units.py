"""Tests for speed and temperature unit conversion."""

import pytest

from cux_lib.models import SpeedUnits, TemperatureUnits
from cux_lib.units import convert_speed, convert_temperature


def test_speed_mph_is_identity() -> None:
    assert convert_speed(0, SpeedUnits.MPH) == 0
    assert convert_speed(55, SpeedUnits.MPH) == 55


def test_speed_fps() -> None:
    assert convert_speed(60, SpeedUnits.FPS) == pytest.approx(88.0, abs=1e-5)
    assert int(convert_speed(30, SpeedUnits.FPS)) == 44


def test_speed_kph() -> None:
    assert convert_speed(100, SpeedUnits.KPH) == pytest.approx(160.9344)
    assert int(convert_speed(30, SpeedUnits.KPH)) == 48


def test_temperature_fahrenheit_is_identity() -> None:
    assert convert_temperature(185, TemperatureUnits.FAHRENHEIT) == 185


def test_temperature_celsius() -> None:
    assert convert_temperature(212, TemperatureUnits.CELSIUS) == pytest.approx(100.0)
    assert convert_temperature(32, TemperatureUnits.CELSIUS) == pytest.approx(0.0)
    assert convert_temperature(-40, TemperatureUnits.CELSIUS) == pytest.approx(-40.0)


def test_display_truncates_toward_zero() -> None:
    """Display getters use int(), which truncates rather than rounds."""
    assert int(convert_temperature(185, TemperatureUnits.CELSIUS)) == 85
    assert int(convert_temperature(20, TemperatureUnits.CELSIUS)) == -6
