"""High-level controller for live 14CUX data with a dedicated I/O worker."""

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Type, TypeVar, Union

from cux_lib import protocol
from cux_lib.errors import CUXError, InvalidCommandValue, LifecycleError, LinkIOError
from cux_lib.lifecycle import ConnectionManager
from cux_lib.link import DeviceLink, LinkFactory, safe_read
from cux_lib.models import (
    AirflowType,
    FaultCodes,
    Gear,
    LambdaTrimType,
    LastKnownValues,
    LifecycleState,
    Notification,
    PollOptions,
    SpeedUnits,
    TemperatureUnits,
    ThrottlePosType,
)
from cux_lib.notifications import NotificationHub
from cux_lib.registry import SampleKey, SampleRegistry
from cux_lib.scheduler import PollScheduler
from cux_lib.transfer import CancellableTransfer, save_image
from cux_lib.units import convert_speed, convert_temperature
from cux_lib.worker import WorkerContext

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


def _coerce_enum(enum_cls: Type[E], value: Union[E, Any]) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        pass
    try:
        return enum_cls[str(value).upper()]
    except KeyError:
        valid = [member.value for member in enum_cls]
        raise InvalidCommandValue(
            f"{enum_cls.__name__} must be one of {valid}, got {value!r}"
        ) from None


class ECUController:
    """Interactive-side facade over the polling worker.

    Every command either flips a cross-thread flag or posts a task to the
    worker; none of them performs device I/O on the calling thread. Values
    are read back through getters that convert units at read time.
    """

    def __init__(
        self,
        link_factory: LinkFactory,
        address: str = "/dev/ttyUSB0",
        speed_units: SpeedUnits = SpeedUnits.MPH,
        temperature_units: TemperatureUnits = TemperatureUnits.FAHRENHEIT,
        enabled_samples: Optional[Mapping[SampleKey, bool]] = None,
        clock: Callable[[], float] = time.monotonic,
        history: int = 256,
    ) -> None:
        """Initialize controller. No thread is started and no link is built yet.

        Args:
            link_factory: Builds the device link; called once, on the worker.
            address: Serial device name or path used on connect.
            speed_units: Units for road speed getters.
            temperature_units: Units for temperature getters.
            enabled_samples: Overrides for the default "all enabled" registry.
            clock: Monotonic clock in seconds used for tier gating.
            history: Number of notifications kept for ``recent_events()``.
        """
        self._address = address
        self._speed_units = speed_units
        self._temperature_units = temperature_units

        self._hub = NotificationHub(history=history)
        self._registry = SampleRegistry(enabled_samples)
        self._values = LastKnownValues()
        self._options = PollOptions()
        self._transfer = CancellableTransfer(self._hub)
        self._manager = ConnectionManager(link_factory, self._hub, self._values, self._transfer)
        self._worker = WorkerContext(
            name="CUXWorker",
            on_started=self._on_worker_started,
            on_finished=self._manager.teardown,
        )
        self._scheduler = PollScheduler(
            self._manager,
            self._registry,
            self._values,
            self._options,
            self._hub,
            self._worker,
            clock=clock,
        )

    # ========================================================================
    # Worker Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Start the worker thread if it is not running.

        The worker builds the link on its own thread and then publishes
        INTERFACE_READY.

        Raises:
            LifecycleError: If the worker has been shut down
        """
        if self._worker.is_running():
            return
        if self._manager.state == LifecycleState.TORN_DOWN or self._manager.session.shutdown.is_set():
            raise LifecycleError("Worker has been shut down; create a new controller")
        logger.info("Starting worker...")
        self._worker.start()

    def shutdown(self, timeout: float = protocol.SHUTDOWN_WAIT_S) -> bool:
        """Stop polling, close the link and end the worker thread.

        Returns:
            True if the worker exited within ``timeout``
        """
        if not self._worker.is_running():
            return True

        logger.info("Shutting down worker...")
        self._manager.session.shutdown.set()
        self._worker.post(self._on_shutdown_request)
        return self._worker.join(timeout=timeout)

    # ========================================================================
    # Commands
    # ========================================================================

    def start_polling(self) -> None:
        """Connect (starting the worker if needed) and begin polling."""
        self.start()
        logger.info(f"Start polling requested on {self._address}")
        self._manager.session.stop_polling.clear()
        self._worker.post(self._on_start_polling, self._address)

    def stop_polling(self) -> None:
        """Ask the poll loop to disconnect after the current cycle."""
        logger.info("Stop polling requested")
        self._manager.request_stop()

    def connect(self, address: Optional[str] = None) -> None:
        """Open the link without starting the poll loop."""
        if address is not None:
            self._address = address
        self.start()
        self._worker.post(self._manager.connect, self._address)

    def disconnect(self) -> None:
        """Stop polling and drop session data (PROM image, fuel maps)."""
        self._manager.request_stop()
        if self._worker.is_running():
            self._worker.post(self._manager.disconnect_and_reset)

    def request_fault_codes(self) -> bool:
        return self._post_link_command(self._on_fault_codes_requested)

    def clear_fault_codes(self) -> bool:
        return self._post_link_command(self._on_fault_codes_clear_requested)

    def request_prom_image(self) -> bool:
        """Queue a full PROM dump; completion arrives as PROM_IMAGE_READY."""
        return self._post_link_command(self._on_prom_image_requested)

    def cancel_prom_read(self) -> None:
        """Cancel the in-flight PROM dump; its result is discarded."""
        self._transfer.request_cancel(self._manager.link)

    def request_fuel_map(self, map_id: int) -> bool:
        """Queue a read of one fuel map table (ids 0-5).

        Raises:
            InvalidCommandValue: If map_id is out of range
        """
        if map_id not in protocol.VALID_FUEL_MAP_IDS:
            raise InvalidCommandValue(
                f"Fuel map id must be {protocol.VALID_FUEL_MAP_IDS.start}-"
                f"{protocol.VALID_FUEL_MAP_IDS.stop - 1}, got {map_id}"
            )
        return self._post_link_command(self._on_fuel_map_requested, map_id)

    def run_fuel_pump(self) -> bool:
        return self._post_link_command(self._on_fuel_pump_run_requested)

    def move_idle_air_control(self, direction: int, steps: int) -> bool:
        """Queue an idle air control valve movement.

        Args:
            direction: 0 to open, 1 to close
            steps: Number of motor steps (0-255)

        Raises:
            InvalidCommandValue: If direction or steps are out of range
        """
        if direction not in (protocol.IAC_DIRECTION_OPEN, protocol.IAC_DIRECTION_CLOSE):
            raise InvalidCommandValue(f"IAC direction must be 0 (open) or 1 (close), got {direction}")
        if not (0 <= steps <= protocol.IAC_MAX_STEPS):
            raise InvalidCommandValue(f"IAC steps must be 0-{protocol.IAC_MAX_STEPS}, got {steps}")
        return self._post_link_command(self._on_idle_air_control_requested, direction, steps)

    def set_serial_device(self, address: str) -> None:
        """Set the device used on the next connect."""
        self._address = address

    def set_speed_units(self, units: Union[SpeedUnits, str]) -> None:
        self._speed_units = _coerce_enum(SpeedUnits, units)

    def set_temperature_units(self, units: Union[TemperatureUnits, str]) -> None:
        self._temperature_units = _coerce_enum(TemperatureUnits, units)

    def set_lambda_trim_type(self, trim_type: Union[LambdaTrimType, int, str]) -> None:
        self._options.lambda_trim_type = _coerce_enum(LambdaTrimType, trim_type)

    def set_airflow_type(self, airflow_type: Union[AirflowType, str]) -> None:
        self._options.airflow_type = _coerce_enum(AirflowType, airflow_type)

    def set_throttle_type(self, throttle_type: Union[ThrottlePosType, str]) -> None:
        self._options.throttle_type = _coerce_enum(ThrottlePosType, throttle_type)

    def set_enabled_samples(self, samples: Mapping[SampleKey, bool]) -> None:
        """Enable or disable sample kinds, one entry at a time."""
        self._registry.update(samples)

    # ========================================================================
    # Published Values
    # ========================================================================

    @property
    def road_speed(self) -> int:
        return int(convert_speed(self._values.road_speed_mph, self._speed_units))

    @property
    def coolant_temp(self) -> int:
        return int(convert_temperature(self._values.coolant_temp_f, self._temperature_units))

    @property
    def fuel_temp(self) -> int:
        return int(convert_temperature(self._values.fuel_temp_f, self._temperature_units))

    @property
    def engine_rpm(self) -> int:
        return self._values.engine_rpm

    @property
    def target_idle_rpm(self) -> int:
        return self._values.target_idle_rpm

    @property
    def throttle_pos(self) -> float:
        return self._values.throttle_pos

    @property
    def maf_reading(self) -> float:
        return self._values.maf_reading

    @property
    def idle_bypass_pos(self) -> float:
        return self._values.idle_bypass_pos

    @property
    def main_voltage(self) -> float:
        return self._values.main_voltage

    @property
    def gear(self) -> Gear:
        return self._values.gear

    @property
    def mil_on(self) -> bool:
        return self._values.mil_on

    @property
    def fault_codes(self) -> Optional[FaultCodes]:
        return self._values.fault_codes

    @property
    def prom_image(self) -> Optional[bytes]:
        return self._transfer.image

    def fuel_map(self, map_id: int) -> Optional[bytes]:
        """Table for ``map_id``, or None if it has not been retrieved this session."""
        return self._values.fuel_maps.get(map_id)

    def snapshot(self) -> Dict[str, Any]:
        """Every display value in the selected units.

        Values may be one cycle stale; the worker never waits for readers.
        """
        v = self._values
        return {
            "road_speed": self.road_speed,
            "speed_units": self._speed_units.value,
            "engine_rpm": v.engine_rpm,
            "target_idle_rpm": v.target_idle_rpm,
            "idle_mode": v.idle_mode,
            "coolant_temp": self.coolant_temp,
            "fuel_temp": self.fuel_temp,
            "temperature_units": self._temperature_units.value,
            "throttle_pos": v.throttle_pos,
            "maf_reading": v.maf_reading,
            "idle_bypass_pos": v.idle_bypass_pos,
            "main_voltage": v.main_voltage,
            "gear": v.gear.value,
            "left_lambda_trim": v.left_lambda_trim,
            "right_lambda_trim": v.right_lambda_trim,
            "fuel_pump_relay_on": v.fuel_pump_relay_on,
            "mil_on": v.mil_on,
            "current_fuel_map": v.current_fuel_map,
            "fuel_map_row": v.fuel_map_row,
            "fuel_map_column": v.fuel_map_column,
            "fuel_map_adj_factor": v.fuel_map_adj_factor,
            "rpm_limit": v.rpm_limit,
            "tune_revision": v.tune_revision,
        }

    def save_prom_image(self, path: Union[str, Path]) -> str:
        """Write the last completed PROM image to ``path``.

        Raises:
            CUXError: If no complete image is available
        """
        image = self._transfer.image
        if image is None:
            raise CUXError("No PROM image has been read")
        return save_image(image, path)

    @property
    def values(self) -> LastKnownValues:
        """Raw cache in canonical units (mph, Fahrenheit). Read only."""
        return self._values

    @property
    def hub(self) -> NotificationHub:
        return self._hub

    @property
    def registry(self) -> SampleRegistry:
        return self._registry

    @property
    def options(self) -> PollOptions:
        return self._options

    @property
    def state(self) -> LifecycleState:
        return self._manager.state

    @property
    def address(self) -> str:
        return self._address

    @property
    def speed_units(self) -> SpeedUnits:
        return self._speed_units

    @property
    def temperature_units(self) -> TemperatureUnits:
        return self._temperature_units

    @property
    def cycle_count(self) -> int:
        return self._manager.session.cycle_count

    @property
    def data_generation(self) -> int:
        """Incremented every time the worker publishes DATA_READY."""
        return self._scheduler.data_generation

    def is_worker_running(self) -> bool:
        return self._worker.is_running()

    def is_connected(self) -> bool:
        return self._manager.is_connected()

    def is_polling(self) -> bool:
        return self._manager.session.poll_armed

    # ========================================================================
    # Worker-Side Handlers
    # ========================================================================

    def _post_link_command(self, handler: Callable[..., None], *args: Any) -> bool:
        """Queue a command that needs the link.

        With no worker running there is no link at all, so NOT_CONNECTED is
        published straight away.

        Returns:
            True if the command was queued
        """
        if not self._worker.is_running():
            logger.warning(f"{handler.__name__}: worker not running")
            self._hub.emit(Notification.NOT_CONNECTED)
            return False
        self._worker.post(handler, *args)
        return True

    def _require_link(self) -> Optional[DeviceLink]:
        if not self._manager.is_connected():
            logger.warning("Command requires a connected ECU")
            self._hub.emit(Notification.NOT_CONNECTED)
            return None
        return self._manager.link

    def _on_worker_started(self) -> None:
        self._manager.prepare()
        self._hub.emit(Notification.INTERFACE_READY)

    def _on_shutdown_request(self) -> None:
        self._manager.disconnect_link()
        self._worker.quit()

    def _on_start_polling(self, address: str) -> None:
        if self._manager.session.shutdown.is_set():
            return
        if self._manager.is_connected() or self._manager.connect(address):
            self._scheduler.arm()

    def _on_fault_codes_requested(self) -> None:
        link = self._require_link()
        if link is None:
            return

        codes, ok = safe_read(link.read_fault_codes)
        if ok:
            self._values.fault_codes = codes
            logger.info(f"Fault codes read: {codes.active()}")
            self._hub.emit(Notification.FAULT_CODES_READY, codes)
        else:
            logger.warning("Failed to read fault codes")
            self._hub.emit(Notification.FAULT_CODES_READ_FAILED)

    def _on_fault_codes_clear_requested(self) -> None:
        link = self._require_link()
        if link is None:
            return

        cleared = self._run_command(link.clear_fault_codes)
        codes, ok = safe_read(link.read_fault_codes) if cleared else (None, False)
        if ok:
            self._values.fault_codes = codes
            logger.info("Fault codes cleared")
            self._hub.emit(Notification.FAULT_CODES_CLEARED, codes)
        else:
            logger.warning("Failed to clear fault codes")
            self._hub.emit(Notification.FAULT_CODES_CLEAR_FAILED)

    def _on_prom_image_requested(self) -> None:
        link = self._require_link()
        if link is None:
            return
        self._transfer.run(link)

    def _on_fuel_map_requested(self, map_id: int) -> None:
        link = self._require_link()
        if link is None:
            return

        buffer = bytearray(protocol.FUEL_MAP_SIZE)
        adj_factor, ok = safe_read(link.read_fuel_map, map_id, buffer)
        if ok and len(buffer) == protocol.FUEL_MAP_SIZE:
            self._values.fuel_maps = {**self._values.fuel_maps, map_id: bytes(buffer)}
            self._values.fuel_map_adj_factor = adj_factor
            logger.info(f"Fuel map {map_id} read (adjustment factor 0x{adj_factor:X})")
            self._hub.emit(Notification.FUEL_MAP_READY, map_id)
        else:
            logger.warning(f"Failed to read fuel map {map_id}")

        rpm_limit, ok = safe_read(link.read_rpm_limit)
        if ok:
            self._values.rpm_limit = rpm_limit
            self._hub.emit(Notification.RPM_LIMIT_READY, rpm_limit)

    def _on_fuel_pump_run_requested(self) -> None:
        link = self._require_link()
        if link is None:
            return
        if not self._run_command(link.run_fuel_pump):
            logger.warning("Fuel pump run command failed")

    def _on_idle_air_control_requested(self, direction: int, steps: int) -> None:
        link = self._require_link()
        if link is None:
            return
        if not self._run_command(link.drive_idle_air_control_motor, direction, steps):
            logger.warning(f"Idle air control move failed (direction={direction}, steps={steps})")

    @staticmethod
    def _run_command(command: Callable[..., bool], *args: Any) -> bool:
        try:
            return bool(command(*args))
        except LinkIOError as e:
            logger.error(f"{command.__name__} raised: {e}")
            return False
