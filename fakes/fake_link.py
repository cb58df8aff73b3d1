"""Fake 14CUX device link that simulates an ECU behind a serial cable.

Point reads return configurable values, individual reads can be made to fail
(or raise), and the link can be dropped mid-session to simulate a pulled
cable. The PROM dump is slow and honours ``cancel_read`` from another thread.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Set, Tuple

from cux_lib.errors import LinkIOError
from cux_lib.models import AirflowType, FaultCodes, Gear, ThrottlePosType

logger = logging.getLogger(__name__)


def default_fault_codes() -> FaultCodes:
    return FaultCodes(
        flags={
            "prom_checksum_failure": False,
            "coolant_temp_sensor": True,
            "fuel_temp_sensor": False,
            "maf_sensor": False,
            "throttle_pot": False,
            "left_lambda_sensor": False,
            "right_lambda_sensor": True,
            "road_speed_sensor": False,
        }
    )


class FakeDeviceLink:
    """Deterministic stand-in for a 14CUX link.

    Reads are keyed by method name in ``readings``; a name listed in
    ``failing`` returns ``ok=False`` and one listed in ``raising`` raises
    LinkIOError. Every call is recorded in order.
    """

    def __init__(
        self,
        connect_ok: bool = True,
        dump_delay_s: float = 0.0,
        read_delay_s: float = 0.0,
        tune_revision: int = 11,
        rpm_limit: int = 5750,
    ) -> None:
        """Initialize fake ECU.

        Args:
            connect_ok: Whether ``connect()`` succeeds
            dump_delay_s: Total time the PROM dump takes
            read_delay_s: Delay applied to every point read
            tune_revision: Value returned by ``read_tune_revision``
            rpm_limit: Value returned by ``read_rpm_limit``
        """
        self.connect_ok = connect_ok
        self.dump_delay_s = dump_delay_s
        self.read_delay_s = read_delay_s

        self.readings: Dict[str, Any] = {
            "read_maf": 0.25,
            "read_throttle_position": 0.12,
            "read_lambda_trim_short": 3,
            "read_lambda_trim_long": -2,
            "read_engine_rpm": 850,
            "read_fuel_map_row_index": 1,
            "read_fuel_map_column_index": 2,
            "read_idle_bypass_position": 0.4,
            "read_main_voltage": 13.8,
            "read_target_idle": 800,
            "read_idle_mode": True,
            "read_fuel_pump_relay": True,
            "read_gear_selection": Gear.PARK_NEUTRAL,
            "read_road_speed": 30,
            "read_mil_status": False,
            "read_coolant_temp": 185,
            "read_fuel_temp": 95,
            "read_current_fuel_map": 5,
            "read_tune_revision": tune_revision,
            "read_rpm_limit": rpm_limit,
        }
        self.failing: Set[str] = set()
        self.raising: Set[str] = set()
        self.fault_codes = default_fault_codes()
        self.clear_ok = True
        self.dump_ok = True
        self.dump_length: Optional[int] = None  # Bytes to leave after a dump (None = full)

        self.is_open = False
        self.connected_address: Optional[str] = None
        self.pump_runs = 0
        self.iac_moves: List[Tuple[int, int]] = []

        self._calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self._calls_lock = threading.Lock()
        self._cancel = threading.Event()
        self.dump_started = threading.Event()

    # ========================================================================
    # Call Log
    # ========================================================================

    def _record(self, name: str, *args: Any) -> None:
        with self._calls_lock:
            self._calls.append((name, args))

    @property
    def calls(self) -> List[Tuple[str, Tuple[Any, ...]]]:
        """Copy of every call made so far, in order."""
        with self._calls_lock:
            return list(self._calls)

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def call_count(self, name: str) -> int:
        return sum(1 for n, _ in self.calls if n == name)

    def reset_calls(self) -> None:
        with self._calls_lock:
            self._calls.clear()

    # ========================================================================
    # Transport
    # ========================================================================

    def connect(self, address: str) -> bool:
        self._record("connect", address)
        if self.is_open:
            return True
        if not self.connect_ok:
            logger.debug(f"FakeDeviceLink refused connection to {address}")
            return False
        self.is_open = True
        self.connected_address = address
        return True

    def is_connected(self) -> bool:
        return self.is_open

    def disconnect(self) -> None:
        self._record("disconnect")
        self.is_open = False

    def drop(self) -> None:
        """Simulate the cable being pulled: the transport closes silently."""
        self.is_open = False
        logger.debug("FakeDeviceLink dropped")

    # ========================================================================
    # Point Reads
    # ========================================================================

    def _point(self, name: str, *args: Any) -> Tuple[Any, bool]:
        self._record(name, *args)
        if self.read_delay_s:
            time.sleep(self.read_delay_s)
        if name in self.raising:
            raise LinkIOError(f"{name}: no response from ECU")
        if not self.is_open or name in self.failing:
            return None, False
        return self.readings[name], True

    def read_maf(self, airflow_type: AirflowType) -> Tuple[float, bool]:
        return self._point("read_maf", airflow_type)

    def read_throttle_position(self, throttle_type: ThrottlePosType) -> Tuple[float, bool]:
        return self._point("read_throttle_position", throttle_type)

    def read_lambda_trim_short(self, bank: str) -> Tuple[int, bool]:
        return self._point("read_lambda_trim_short", bank)

    def read_engine_rpm(self) -> Tuple[int, bool]:
        return self._point("read_engine_rpm")

    def read_fuel_map_row_index(self) -> Tuple[int, bool]:
        return self._point("read_fuel_map_row_index")

    def read_fuel_map_column_index(self) -> Tuple[int, bool]:
        return self._point("read_fuel_map_column_index")

    def read_idle_bypass_position(self) -> Tuple[float, bool]:
        return self._point("read_idle_bypass_position")

    def read_lambda_trim_long(self, bank: str) -> Tuple[int, bool]:
        return self._point("read_lambda_trim_long", bank)

    def read_main_voltage(self) -> Tuple[float, bool]:
        return self._point("read_main_voltage")

    def read_target_idle(self) -> Tuple[int, bool]:
        return self._point("read_target_idle")

    def read_idle_mode(self) -> Tuple[bool, bool]:
        return self._point("read_idle_mode")

    def read_fuel_pump_relay(self) -> Tuple[bool, bool]:
        return self._point("read_fuel_pump_relay")

    def read_gear_selection(self) -> Tuple[Gear, bool]:
        return self._point("read_gear_selection")

    def read_road_speed(self) -> Tuple[int, bool]:
        return self._point("read_road_speed")

    def read_mil_status(self) -> Tuple[bool, bool]:
        return self._point("read_mil_status")

    def read_coolant_temp(self) -> Tuple[int, bool]:
        return self._point("read_coolant_temp")

    def read_fuel_temp(self) -> Tuple[int, bool]:
        return self._point("read_fuel_temp")

    def read_current_fuel_map(self) -> Tuple[int, bool]:
        return self._point("read_current_fuel_map")

    def read_tune_revision(self) -> Tuple[int, bool]:
        return self._point("read_tune_revision")

    def read_rpm_limit(self) -> Tuple[int, bool]:
        return self._point("read_rpm_limit")

    # ========================================================================
    # One-Shot Requests
    # ========================================================================

    def read_fault_codes(self) -> Tuple[FaultCodes, bool]:
        self._record("read_fault_codes")
        if not self.is_open or "read_fault_codes" in self.failing:
            return FaultCodes(), False
        return FaultCodes(flags=dict(self.fault_codes.flags)), True

    def clear_fault_codes(self) -> bool:
        self._record("clear_fault_codes")
        if not self.is_open or not self.clear_ok:
            return False
        self.fault_codes = FaultCodes(flags={name: False for name in self.fault_codes.flags})
        return True

    def read_fuel_map(self, map_id: int, buffer: bytearray) -> Tuple[int, bool]:
        """Fill ``buffer`` with a pattern derived from ``map_id``."""
        self._record("read_fuel_map", map_id)
        if not self.is_open or "read_fuel_map" in self.failing:
            return 0, False
        for i in range(len(buffer)):
            buffer[i] = (map_id * 16 + i) & 0xFF
        return 0x80 + map_id, True

    def dump_rom(self, buffer: bytearray) -> bool:
        """Fill ``buffer`` in 16 chunks, pausing between them.

        Returns False as soon as ``cancel_read`` is observed.
        """
        self._record("dump_rom")
        self._cancel.clear()
        self.dump_started.set()
        if not self.is_open:
            return False

        chunks = 16
        chunk_size = len(buffer) // chunks
        pause = self.dump_delay_s / chunks
        for chunk in range(chunks):
            if self._cancel.wait(pause) if pause else self._cancel.is_set():
                logger.debug(f"FakeDeviceLink dump cancelled at chunk {chunk}")
                self._cancel.clear()
                return False
            start = chunk * chunk_size
            for i in range(start, start + chunk_size):
                buffer[i] = i & 0xFF

        if self.dump_length is not None:
            del buffer[self.dump_length:]
        return self.dump_ok

    def cancel_read(self) -> None:
        self._record("cancel_read")
        self._cancel.set()

    def run_fuel_pump(self) -> bool:
        self._record("run_fuel_pump")
        if not self.is_open:
            return False
        self.pump_runs += 1
        return True

    def drive_idle_air_control_motor(self, direction: int, steps: int) -> bool:
        self._record("drive_idle_air_control_motor", direction, steps)
        if not self.is_open:
            return False
        self.iac_moves.append((direction, steps))
        return True


def fake_link_factory() -> FakeDeviceLink:
    """Link factory for running the API and tools without hardware."""
    return FakeDeviceLink(dump_delay_s=2.0, read_delay_s=0.002)

