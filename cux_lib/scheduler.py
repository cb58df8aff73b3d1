"""Tiered poll scheduler.

Each cycle reads a high-frequency tier unconditionally, a mid-frequency tier
at most every 200 ms and a low-frequency tier at most every 800 ms (both
measured from the tier's last successful run), folds every point read into a
single ReadOutcome, publishes the verdict and queues the next cycle on the
worker. There is no sleep between cycles; the tier gates keep the slow link
from being flooded.
"""

import logging
import time
from typing import Any, Callable, Optional

from cux_lib import protocol
from cux_lib.lifecycle import ConnectionManager, ConnectionState
from cux_lib.link import DeviceLink, safe_read
from cux_lib.models import (
    LambdaTrimType,
    LastKnownValues,
    Notification,
    PollOptions,
    ReadOutcome,
    SampleKind,
)
from cux_lib.notifications import NotificationHub
from cux_lib.registry import SampleRegistry
from cux_lib.worker import WorkerContext

logger = logging.getLogger(__name__)


class PollScheduler:
    """Runs poll cycles on the worker context and re-arms itself."""

    def __init__(
        self,
        manager: ConnectionManager,
        registry: SampleRegistry,
        values: LastKnownValues,
        options: PollOptions,
        hub: NotificationHub,
        worker: WorkerContext,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize scheduler.

        Args:
            manager: Connection manager owning the link and session flags.
            registry: Sample enablement, consulted on every read.
            values: Cache of last good values; written only here (and by
                worker-side commands).
            options: Reading modes (trim horizon, airflow, throttle).
            hub: Where notifications are published.
            worker: Worker context the cycles are queued on.
            clock: Monotonic clock in seconds (injectable for tests).
        """
        self._manager = manager
        self._registry = registry
        self._values = values
        self._options = options
        self._hub = hub
        self._worker = worker
        self._clock = clock
        self.data_generation = 0

    @property
    def session(self) -> ConnectionState:
        return self._manager.session

    # ========================================================================
    # Cycle Control
    # ========================================================================

    def arm(self) -> None:
        """Queue a poll cycle unless one is already queued or running."""
        if self.session.poll_armed:
            logger.debug("Poll cycle already armed")
            return
        self.session.poll_armed = True
        self._manager.mark_polling()
        self._worker.post(self.poll)

    def poll(self) -> None:
        """Execute one poll cycle (worker thread only)."""
        session = self.session
        link = session.link

        if (
            session.stop_polling.is_set()
            or session.shutdown.is_set()
            or link is None
            or not link.is_connected()
        ):
            session.poll_armed = False
            logger.info(
                f"Polling stopped after {session.cycle_count} cycles "
                f"(stop={session.stop_polling.is_set()}, shutdown={session.shutdown.is_set()})"
            )
            self._manager.disconnect_link()
            if session.shutdown.is_set():
                self._worker.quit()
            return

        outcome = self.read_data(link)

        if outcome is ReadOutcome.SUCCESS:
            self.data_generation += 1
            self._hub.emit(Notification.READ_SUCCESS)
            self._hub.emit(Notification.DATA_READY)
        elif outcome is ReadOutcome.FAILURE:
            self._hub.emit(Notification.READ_ERROR)

        session.cycle_count += 1
        self._worker.post(self.poll)

    def read_data(self, link: DeviceLink) -> ReadOutcome:
        """Read every tier that is due and merge the results."""
        now = self._clock()
        total = ReadOutcome.UNSET

        total = total.join(self.read_high_freq(link))

        if self._due(self.session.last_mid_read, protocol.MID_TIER_INTERVAL_S, now):
            total = total.join(self.read_mid_freq(link))

        if self._due(self.session.last_low_read, protocol.LOW_TIER_INTERVAL_S, now):
            total = total.join(self.read_low_freq(link))

        return total

    @staticmethod
    def _due(last: Optional[float], interval: float, now: float) -> bool:
        return last is None or now > last + interval

    # ========================================================================
    # Tiers
    # ========================================================================

    def read_high_freq(self, link: DeviceLink) -> ReadOutcome:
        """Fast-changing values, read every cycle."""
        result = ReadOutcome.UNSET
        options = self._options

        if self._enabled(SampleKind.MAF):
            result = self._read_into(result, "maf_reading", link.read_maf, options.airflow_type)

        if self._enabled(SampleKind.THROTTLE):
            result = self._read_into(
                result, "throttle_pos", link.read_throttle_position, options.throttle_type
            )

        if self._enabled(SampleKind.LAMBDA_TRIM) and options.lambda_trim_type is LambdaTrimType.SHORT:
            result = self._read_into(result, "left_lambda_trim", link.read_lambda_trim_short, "left")
            result = self._read_into(result, "right_lambda_trim", link.read_lambda_trim_short, "right")

        if self._enabled(SampleKind.ENGINE_RPM):
            result = self._read_into(result, "engine_rpm", link.read_engine_rpm)

        if self._enabled(SampleKind.FUEL_MAP):
            result = self._read_into(result, "fuel_map_row", link.read_fuel_map_row_index)
            result = self._read_into(result, "fuel_map_column", link.read_fuel_map_column_index)

        if self._enabled(SampleKind.IDLE_BYPASS_POSITION):
            result = self._read_into(result, "idle_bypass_pos", link.read_idle_bypass_position)

        return result

    def read_mid_freq(self, link: DeviceLink) -> ReadOutcome:
        """Values that change over a few hundred milliseconds."""
        result = ReadOutcome.UNSET

        if self._enabled(SampleKind.LAMBDA_TRIM) and self._options.lambda_trim_type is LambdaTrimType.LONG:
            result = self._read_into(result, "left_lambda_trim", link.read_lambda_trim_long, "left")
            result = self._read_into(result, "right_lambda_trim", link.read_lambda_trim_long, "right")

        if self._enabled(SampleKind.MAIN_VOLTAGE):
            result = self._read_into(result, "main_voltage", link.read_main_voltage)

        if self._enabled(SampleKind.TARGET_IDLE_RPM):
            result = self._read_into(result, "target_idle_rpm", link.read_target_idle)
            result = self._read_into(result, "idle_mode", link.read_idle_mode)

        if self._enabled(SampleKind.FUEL_PUMP_RELAY):
            result = self._read_into(result, "fuel_pump_relay_on", link.read_fuel_pump_relay)

        if self._enabled(SampleKind.GEAR_SELECTION):
            result = self._read_into(result, "gear", link.read_gear_selection)

        if self._enabled(SampleKind.ROAD_SPEED):
            result = self._read_into(result, "road_speed_mph", link.read_road_speed)

        if result is ReadOutcome.SUCCESS:
            self.session.last_mid_read = self._clock()

        return result

    def read_low_freq(self, link: DeviceLink) -> ReadOutcome:
        """Slow values: MIL, temperatures and the active fuel map."""
        result = ReadOutcome.UNSET
        cycle = self.session.cycle_count

        # MIL never fails the cycle; an unreadable lamp shows as off
        mil_on, ok = safe_read(link.read_mil_status)
        self._values.mil_on = bool(mil_on) if ok else False

        # Alternate coolant and fuel temperature on cycle parity
        if self._enabled(SampleKind.ENGINE_TEMPERATURE) and cycle % 2 == 0:
            result = self._read_into(result, "coolant_temp_f", link.read_coolant_temp)
        elif self._enabled(SampleKind.FUEL_TEMPERATURE):
            result = self._read_into(result, "fuel_temp_f", link.read_fuel_temp)

        if self._enabled(SampleKind.FUEL_MAP) and cycle % protocol.FUEL_MAP_INDEX_CHECK_MODULUS == 0:
            result = self._read_into(result, "current_fuel_map", link.read_current_fuel_map)

        if result is ReadOutcome.SUCCESS:
            self.session.last_low_read = self._clock()

        return result

    # ========================================================================
    # Internal Helpers
    # ========================================================================

    def _enabled(self, kind: SampleKind) -> bool:
        return self._registry.is_enabled(kind)

    def _read_into(
        self,
        result: ReadOutcome,
        field_name: str,
        read_fn: Callable[..., Any],
        *args: Any,
    ) -> ReadOutcome:
        """Perform one point read, cache the value on success, merge the result."""
        value, ok = safe_read(read_fn, *args)
        if ok:
            setattr(self._values, field_name, value)
        else:
            logger.debug(f"Read of {field_name} failed")
        return result.join_read(ok)
