"""Interface of the device link that talks to the 14CUX.

The link owns the wire protocol. The polling layer only calls these methods
and looks at the boolean each one reports.
"""

import importlib
import logging
from typing import Any, Callable, Protocol, Tuple

from cux_lib.errors import LifecycleError, LinkIOError
from cux_lib.models import AirflowType, FaultCodes, Gear, ThrottlePosType

logger = logging.getLogger(__name__)


class DeviceLink(Protocol):
    """Protocol for a stateful 14CUX link (allows test doubles).

    Every point read returns ``(value, ok)``; when ``ok`` is False the value
    must be ignored. Implementations may raise ``LinkIOError`` instead of
    returning ``ok=False``.
    """

    def connect(self, address: str) -> bool:
        """Open the transport (no-op returning True if already open)."""
        ...

    def is_connected(self) -> bool:
        ...

    def disconnect(self) -> None:
        ...

    # High-frequency fields
    def read_maf(self, airflow_type: AirflowType) -> Tuple[float, bool]:
        ...

    def read_throttle_position(self, throttle_type: ThrottlePosType) -> Tuple[float, bool]:
        ...

    def read_lambda_trim_short(self, bank: str) -> Tuple[int, bool]:
        """Short-term lambda trim for bank "left" or "right"."""
        ...

    def read_engine_rpm(self) -> Tuple[int, bool]:
        ...

    def read_fuel_map_row_index(self) -> Tuple[int, bool]:
        ...

    def read_fuel_map_column_index(self) -> Tuple[int, bool]:
        ...

    def read_idle_bypass_position(self) -> Tuple[float, bool]:
        ...

    # Mid-frequency fields
    def read_lambda_trim_long(self, bank: str) -> Tuple[int, bool]:
        """Long-term lambda trim for bank "left" or "right"."""
        ...

    def read_main_voltage(self) -> Tuple[float, bool]:
        ...

    def read_target_idle(self) -> Tuple[int, bool]:
        ...

    def read_idle_mode(self) -> Tuple[bool, bool]:
        ...

    def read_fuel_pump_relay(self) -> Tuple[bool, bool]:
        ...

    def read_gear_selection(self) -> Tuple[Gear, bool]:
        ...

    def read_road_speed(self) -> Tuple[int, bool]:
        """Road speed in mph."""
        ...

    # Low-frequency fields
    def read_mil_status(self) -> Tuple[bool, bool]:
        ...

    def read_coolant_temp(self) -> Tuple[int, bool]:
        """Coolant temperature in degrees Fahrenheit."""
        ...

    def read_fuel_temp(self) -> Tuple[int, bool]:
        """Fuel temperature in degrees Fahrenheit."""
        ...

    def read_current_fuel_map(self) -> Tuple[int, bool]:
        ...

    # One-shot requests
    def read_tune_revision(self) -> Tuple[int, bool]:
        ...

    def read_rpm_limit(self) -> Tuple[int, bool]:
        ...

    def read_fault_codes(self) -> Tuple[FaultCodes, bool]:
        ...

    def clear_fault_codes(self) -> bool:
        ...

    def read_fuel_map(self, map_id: int, buffer: bytearray) -> Tuple[int, bool]:
        """Fill ``buffer`` with fuel map ``map_id``; returns the adjustment factor."""
        ...

    def dump_rom(self, buffer: bytearray) -> bool:
        """Fill ``buffer`` with the full PROM image (slow, cancellable)."""
        ...

    def cancel_read(self) -> None:
        """Unblock an in-flight ``dump_rom`` (called from another thread)."""
        ...

    def run_fuel_pump(self) -> bool:
        ...

    def drive_idle_air_control_motor(self, direction: int, steps: int) -> bool:
        ...


LinkFactory = Callable[[], DeviceLink]


def safe_read(read_fn: Callable[..., Tuple[Any, bool]], *args: Any) -> Tuple[Any, bool]:
    """Call a point read, folding a raised ``LinkIOError`` into ``ok=False``."""
    try:
        return read_fn(*args)
    except LinkIOError as e:
        logger.debug(f"{getattr(read_fn, '__name__', read_fn)} raised: {e}")
        return None, False


def load_link_factory(path: str) -> LinkFactory:
    """Import a device-link factory given as "package.module:callable".

    Raises:
        LifecycleError: If the path is malformed or does not name a callable
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise LifecycleError(f"Link factory must look like 'module:callable', got {path!r}")

    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise LifecycleError(f"{path} is not callable")
    return factory
