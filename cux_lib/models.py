"""Data models for the 14CUX live-data library."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ReadOutcome(Enum):
    """Aggregated verdict of a group of point reads.

    ``UNSET`` is the identity of ``join``; once a group holds ``SUCCESS`` no
    later failure can take it back to ``FAILURE``.
    """

    UNSET = "unset"
    SUCCESS = "success"
    FAILURE = "failure"

    @classmethod
    def from_read(cls, ok: bool) -> "ReadOutcome":
        """Outcome of a single point read."""
        return cls.SUCCESS if ok else cls.FAILURE

    def join(self, other: "ReadOutcome") -> "ReadOutcome":
        """Merge a tier outcome into this running total.

        The total is kept unless it is still ``UNSET`` or ``other`` is a
        success.
        """
        if self is ReadOutcome.UNSET or other is ReadOutcome.SUCCESS:
            return other
        return self

    def join_read(self, ok: bool) -> "ReadOutcome":
        """Merge one point-read result into this running total."""
        if self is ReadOutcome.UNSET:
            return ReadOutcome.from_read(ok)
        if self is ReadOutcome.FAILURE and ok:
            return ReadOutcome.SUCCESS
        return self


class SampleKind(Enum):
    """Logical fields a consumer may enable or disable for polling."""

    ENGINE_TEMPERATURE = "engine_temperature"
    ROAD_SPEED = "road_speed"
    ENGINE_RPM = "engine_rpm"
    FUEL_TEMPERATURE = "fuel_temperature"
    MAF = "maf"
    THROTTLE = "throttle"
    IDLE_BYPASS_POSITION = "idle_bypass_position"
    TARGET_IDLE_RPM = "target_idle_rpm"
    GEAR_SELECTION = "gear_selection"
    MAIN_VOLTAGE = "main_voltage"
    LAMBDA_TRIM = "lambda_trim"
    FUEL_MAP = "fuel_map"
    FUEL_PUMP_RELAY = "fuel_pump_relay"


class SpeedUnits(Enum):
    MPH = "mph"
    FPS = "fps"
    KPH = "kph"


class TemperatureUnits(Enum):
    FAHRENHEIT = "fahrenheit"
    CELSIUS = "celsius"


class LambdaTrimType(Enum):
    """Which lambda trim the scheduler reads (and in which tier)."""

    SHORT = 1
    LONG = 2


class AirflowType(Enum):
    LINEARIZED = "linearized"
    DIRECT = "direct"


class ThrottlePosType(Enum):
    ABSOLUTE = "absolute"
    CORRECTED = "corrected"


class Gear(Enum):
    NO_READING = "no_reading"
    PARK_NEUTRAL = "park_neutral"
    DRIVE_REVERSE = "drive_reverse"
    MANUAL = "manual"


class LifecycleState(Enum):
    """Connection lifecycle states.

    CONNECTED with no armed poll cycle is the idle state; TORN_DOWN is
    terminal.
    """

    UNINITIALIZED = "uninitialized"
    PREPARED = "prepared"
    CONNECTED = "connected"
    POLLING = "polling"
    DISCONNECTED = "disconnected"
    TORN_DOWN = "torn_down"


class Notification(Enum):
    """Outbound notifications published by the worker."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    NOT_CONNECTED = "not_connected"
    FAILED_TO_CONNECT = "failed_to_connect"
    READ_SUCCESS = "read_success"
    READ_ERROR = "read_error"
    DATA_READY = "data_ready"
    FAULT_CODES_READY = "fault_codes_ready"
    FAULT_CODES_READ_FAILED = "fault_codes_read_failed"
    FAULT_CODES_CLEARED = "fault_codes_cleared"
    FAULT_CODES_CLEAR_FAILED = "fault_codes_clear_failed"
    FUEL_MAP_READY = "fuel_map_ready"
    PROM_IMAGE_READY = "prom_image_ready"
    PROM_IMAGE_READ_FAILED = "prom_image_read_failed"
    TUNE_REVISION_READY = "tune_revision_ready"
    RPM_LIMIT_READY = "rpm_limit_ready"
    INTERFACE_READY = "interface_ready"


@dataclass
class Event:
    """A published notification.

    Attributes:
        kind: Which notification this is.
        payload: Optional value carried with it (fuel map id, tune revision,
            fault codes, PROM image bytes, ...).
        ts: UTC timestamp at which it was emitted.
    """

    kind: Notification
    payload: Any = None
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class FaultCodes:
    """Fault code block as reported by the ECU.

    Attributes:
        flags: Fault name -> whether it is currently logged.
    """

    flags: Dict[str, bool] = field(default_factory=dict)

    def active(self) -> List[str]:
        """Names of the faults that are currently set."""
        return sorted(name for name, is_set in self.flags.items() if is_set)


@dataclass
class PollOptions:
    """Reading modes chosen by the user, consulted by the scheduler each tick."""

    lambda_trim_type: LambdaTrimType = LambdaTrimType.SHORT
    airflow_type: AirflowType = AirflowType.LINEARIZED
    throttle_type: ThrottlePosType = ThrottlePosType.CORRECTED


@dataclass
class LastKnownValues:
    """Last successfully read value of every polled field.

    Written only by the worker; speeds are mph and temperatures Fahrenheit.
    ``fuel_maps`` is replaced as a whole on update, never mutated in place.
    """

    road_speed_mph: int = 0
    engine_rpm: int = 0
    target_idle_rpm: int = 0
    idle_mode: bool = False
    coolant_temp_f: int = 0
    fuel_temp_f: int = 0
    throttle_pos: float = 0.0
    maf_reading: float = 0.0
    idle_bypass_pos: float = 0.0
    main_voltage: float = 0.0
    gear: Gear = Gear.NO_READING
    left_lambda_trim: int = 0
    right_lambda_trim: int = 0
    fuel_pump_relay_on: bool = False
    mil_on: bool = False
    current_fuel_map: int = 0
    fuel_map_row: int = 0
    fuel_map_column: int = 0
    fuel_map_adj_factor: int = 0
    rpm_limit: Optional[int] = None
    tune_revision: Optional[int] = None
    fault_codes: Optional[FaultCodes] = None
    fuel_maps: Dict[int, bytes] = field(default_factory=dict)
