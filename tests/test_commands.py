"""Tests for one-shot commands, settings and display getters of ECUController."""

from pathlib import Path

import pytest

from conftest import wait_until
from cux_lib import ECUController
from cux_lib.errors import CUXError, InvalidCommandValue
from cux_lib.models import (
    AirflowType,
    LambdaTrimType,
    Notification,
    SampleKind,
    SpeedUnits,
    TemperatureUnits,
    ThrottlePosType,
)
from cux_lib.notifications import wait_for_event
from fakes.fake_link import FakeDeviceLink


@pytest.fixture
def connected(controller):
    """Controller with an open link and no poll loop; yields (controller, listener)."""
    listener = controller.hub.listen()
    controller.connect()
    event = wait_for_event(listener, [Notification.CONNECTED], 2.0)
    assert event is not None
    return controller, listener


# =============================================================================
# Commands Without a Link
# =============================================================================

def test_command_without_worker_emits_not_connected() -> None:
    controller = ECUController(FakeDeviceLink)
    listener = controller.hub.listen()

    assert controller.request_fault_codes() is False
    assert controller.request_prom_image() is False
    assert controller.run_fuel_pump() is False

    kinds = [listener.get_nowait().kind for _ in range(3)]
    assert kinds == [Notification.NOT_CONNECTED] * 3
    assert not controller.is_worker_running()


def test_command_while_offline_emits_not_connected(controller, fake_link) -> None:
    """With the worker running but no open link, the worker reports NOT_CONNECTED."""
    listener = controller.hub.listen()
    controller.start()

    assert controller.request_fault_codes() is True

    assert wait_for_event(listener, [Notification.NOT_CONNECTED], 2.0) is not None
    assert fake_link.call_count("read_fault_codes") == 0


# =============================================================================
# Fault Codes
# =============================================================================

def test_read_fault_codes(connected) -> None:
    controller, listener = connected

    controller.request_fault_codes()

    event = wait_for_event(
        listener, [Notification.FAULT_CODES_READY, Notification.FAULT_CODES_READ_FAILED], 2.0
    )
    assert event.kind is Notification.FAULT_CODES_READY
    assert event.payload.active() == ["coolant_temp_sensor", "right_lambda_sensor"]
    assert controller.fault_codes.active() == ["coolant_temp_sensor", "right_lambda_sensor"]


def test_read_fault_codes_failure(connected, fake_link) -> None:
    controller, listener = connected
    fake_link.failing.add("read_fault_codes")

    controller.request_fault_codes()

    event = wait_for_event(
        listener, [Notification.FAULT_CODES_READY, Notification.FAULT_CODES_READ_FAILED], 2.0
    )
    assert event.kind is Notification.FAULT_CODES_READ_FAILED
    assert controller.fault_codes is None


def test_clear_fault_codes_rereads_block(connected, fake_link) -> None:
    controller, listener = connected

    controller.clear_fault_codes()

    event = wait_for_event(
        listener, [Notification.FAULT_CODES_CLEARED, Notification.FAULT_CODES_CLEAR_FAILED], 2.0
    )
    assert event.kind is Notification.FAULT_CODES_CLEARED
    assert event.payload.active() == []
    assert fake_link.call_names()[-2:] == ["clear_fault_codes", "read_fault_codes"]


def test_clear_fault_codes_failure(connected, fake_link) -> None:
    controller, listener = connected
    fake_link.clear_ok = False

    controller.clear_fault_codes()

    event = wait_for_event(
        listener, [Notification.FAULT_CODES_CLEARED, Notification.FAULT_CODES_CLEAR_FAILED], 2.0
    )
    assert event.kind is Notification.FAULT_CODES_CLEAR_FAILED


# =============================================================================
# Fuel Maps
# =============================================================================

def test_fuel_map_read_with_adjustment_and_rpm_limit(connected) -> None:
    controller, listener = connected

    controller.request_fuel_map(3)

    ready = wait_for_event(listener, [Notification.FUEL_MAP_READY], 2.0)
    assert ready is not None and ready.payload == 3
    limit = wait_for_event(listener, [Notification.RPM_LIMIT_READY], 2.0)
    assert limit is not None and limit.payload == 5750

    table = controller.fuel_map(3)
    assert len(table) == 128
    assert table[0] == 48
    assert controller.values.fuel_map_adj_factor == 0x83
    assert controller.values.rpm_limit == 5750


def test_fuel_map_update_is_copy_on_write(connected) -> None:
    controller, listener = connected
    controller.request_fuel_map(0)
    assert wait_for_event(listener, [Notification.FUEL_MAP_READY], 2.0) is not None
    before = controller.values.fuel_maps

    controller.request_fuel_map(1)
    assert wait_for_event(listener, [Notification.FUEL_MAP_READY], 2.0) is not None

    assert set(before) == {0}
    assert set(controller.values.fuel_maps) == {0, 1}


@pytest.mark.parametrize("map_id", [-1, 6, 42])
def test_fuel_map_id_out_of_range(controller, fake_link, map_id: int) -> None:
    with pytest.raises(InvalidCommandValue):
        controller.request_fuel_map(map_id)
    assert not controller.is_worker_running()


def test_fuel_map_read_failure_keeps_previous_tables(connected, fake_link) -> None:
    controller, listener = connected
    fake_link.failing.add("read_fuel_map")

    controller.request_fuel_map(4)

    assert wait_for_event(listener, [Notification.RPM_LIMIT_READY], 2.0) is not None
    assert controller.fuel_map(4) is None


# =============================================================================
# PROM Image
# =============================================================================

def test_prom_image_and_save(connected, tmp_path: Path) -> None:
    controller, listener = connected

    controller.request_prom_image()

    event = wait_for_event(
        listener, [Notification.PROM_IMAGE_READY, Notification.PROM_IMAGE_READ_FAILED], 2.0
    )
    assert event.kind is Notification.PROM_IMAGE_READY
    assert len(event.payload) == 16384

    saved = controller.save_prom_image(tmp_path / "tune.bin")
    assert Path(saved).read_bytes() == event.payload


def test_cancel_prom_read_through_controller(connected, fake_link) -> None:
    controller, listener = connected
    fake_link.dump_delay_s = 3.0

    controller.request_prom_image()
    assert fake_link.dump_started.wait(timeout=2.0)
    controller.cancel_prom_read()

    assert wait_for_event(
        listener, [Notification.PROM_IMAGE_READY, Notification.PROM_IMAGE_READ_FAILED], 0.8
    ) is None
    assert controller.prom_image is None

    # Worker is free again for the next command
    controller.request_fault_codes()
    assert wait_for_event(listener, [Notification.FAULT_CODES_READY], 2.0) is not None


def test_save_without_image_raises(controller, tmp_path: Path) -> None:
    with pytest.raises(CUXError):
        controller.save_prom_image(tmp_path / "none.bin")


# =============================================================================
# Actuators
# =============================================================================

def test_run_fuel_pump(connected, fake_link) -> None:
    controller, _ = connected
    assert controller.run_fuel_pump() is True
    assert wait_until(lambda: fake_link.pump_runs == 1)


def test_move_idle_air_control(connected, fake_link) -> None:
    controller, _ = connected
    assert controller.move_idle_air_control(1, 40) is True
    assert wait_until(lambda: fake_link.iac_moves == [(1, 40)])


@pytest.mark.parametrize("direction, steps", [(2, 10), (-1, 10), (0, 256), (1, -5)])
def test_idle_air_control_rejects_bad_values(controller, direction: int, steps: int) -> None:
    with pytest.raises(InvalidCommandValue):
        controller.move_idle_air_control(direction, steps)


def test_commands_interleave_with_polling(controller, fake_link) -> None:
    """A one-shot request runs between cycles and polling carries on after it."""
    listener = controller.hub.listen()
    controller.start_polling()
    assert wait_for_event(listener, [Notification.DATA_READY], 2.0) is not None

    controller.request_fault_codes()
    assert wait_for_event(listener, [Notification.FAULT_CODES_READY], 2.0) is not None
    assert wait_for_event(listener, [Notification.DATA_READY], 2.0) is not None


# =============================================================================
# Settings and Display Values
# =============================================================================

def test_unit_getters_convert_at_read_time(controller) -> None:
    controller.values.road_speed_mph = 30
    controller.values.coolant_temp_f = 185
    controller.values.fuel_temp_f = 95

    assert controller.road_speed == 30
    assert controller.coolant_temp == 185

    controller.set_speed_units("kph")
    controller.set_temperature_units(TemperatureUnits.CELSIUS)

    assert controller.speed_units is SpeedUnits.KPH
    assert controller.road_speed == 48
    assert controller.coolant_temp == 85
    assert controller.fuel_temp == 35
    assert controller.values.road_speed_mph == 30

    controller.set_speed_units("FPS")
    assert controller.road_speed == 44


def test_reading_modes(controller) -> None:
    controller.set_lambda_trim_type("long")
    controller.set_airflow_type("direct")
    controller.set_throttle_type(ThrottlePosType.ABSOLUTE)

    assert controller.options.lambda_trim_type is LambdaTrimType.LONG
    assert controller.options.airflow_type is AirflowType.DIRECT
    assert controller.options.throttle_type is ThrottlePosType.ABSOLUTE

    controller.set_lambda_trim_type(1)
    assert controller.options.lambda_trim_type is LambdaTrimType.SHORT


@pytest.mark.parametrize(
    "setter, value",
    [
        ("set_speed_units", "furlongs"),
        ("set_temperature_units", "kelvin"),
        ("set_lambda_trim_type", 3),
        ("set_airflow_type", "sideways"),
    ],
)
def test_bad_setting_rejected(controller, setter: str, value) -> None:
    with pytest.raises(InvalidCommandValue):
        getattr(controller, setter)(value)


def test_set_enabled_samples(controller) -> None:
    controller.set_enabled_samples({"maf": False, SampleKind.GEAR_SELECTION: False})

    assert not controller.registry.is_enabled(SampleKind.MAF)
    assert not controller.registry.is_enabled(SampleKind.GEAR_SELECTION)
    assert controller.registry.is_enabled(SampleKind.ENGINE_RPM)


def test_set_serial_device_used_on_next_connect(controller, fake_link) -> None:
    listener = controller.hub.listen()
    controller.set_serial_device("/dev/ttyS3")
    controller.connect()

    assert wait_for_event(listener, [Notification.CONNECTED], 2.0) is not None
    assert fake_link.connected_address == "/dev/ttyS3"


def test_snapshot_has_display_values(controller) -> None:
    snapshot = controller.snapshot()

    for key in ("road_speed", "engine_rpm", "coolant_temp", "fuel_temp", "gear", "mil_on", "main_voltage"):
        assert key in snapshot
    assert snapshot["gear"] == "no_reading"
    assert snapshot["speed_units"] == "mph"
