#!/usr/bin/env python3
"""
Runbook: Live Data Monitor
Expected: connect, tune revision reported, steady DATA_READY stream,
fault codes and one fuel map read between poll cycles, clean shutdown
"""

import logging
import time

from cux_lib import ECUController, Notification, SpeedUnits, TemperatureUnits
from cux_lib.link import load_link_factory
from cux_lib.notifications import wait_for_event
from data_store import DataRecorder, DataStore

# ============================================================================
# CONFIGURATION - EDIT THIS
# ============================================================================
SERIAL_PORT = "/dev/ttyUSB0"  # Change to your port
LINK_FACTORY = "fakes.fake_link:fake_link_factory"  # module:callable of your device link
RUN_DURATION_S = 10.0
FUEL_MAP_ID = 1
EXPORT_CSV = "live_monitor.csv"

# ============================================================================
# TEST SCRIPT - DO NOT EDIT BELOW
# ============================================================================

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

print("=" * 70)
print("Runbook: 14CUX Live Data Monitor")
print("=" * 70)
print(f"Port: {SERIAL_PORT}")
print(f"Link factory: {LINK_FACTORY}")
print(f"Duration: {RUN_DURATION_S}s")
print()

controller = ECUController(
    load_link_factory(LINK_FACTORY),
    address=SERIAL_PORT,
    speed_units=SpeedUnits.KPH,
    temperature_units=TemperatureUnits.CELSIUS,
)
listener = controller.hub.listen()
store = DataStore(max_rows=10000)
recorder = DataRecorder(controller, store)

try:
    # Step 1: Connect and start polling
    print("[1/4] Starting polling...")
    controller.start_polling()
    event = wait_for_event(listener, [Notification.CONNECTED, Notification.FAILED_TO_CONNECT], 5.0)
    if event is None or event.kind is not Notification.CONNECTED:
        raise SystemExit(f"      Could not connect to {SERIAL_PORT}")
    print("      Connected.")
    event = wait_for_event(listener, [Notification.TUNE_REVISION_READY], 2.0)
    if event is not None:
        print(f"      Tune revision: {event.payload}")
    else:
        print("      Tune revision unavailable")
    print()

    # Step 2: Record live values
    print(f"[2/4] Recording for {RUN_DURATION_S}s...")
    recorder.start()
    start_time = time.time()
    while time.time() - start_time < RUN_DURATION_S:
        time.sleep(1.0)
        values = controller.snapshot()
        print(f"      [{time.time() - start_time:5.1f}s] cycles={controller.cycle_count} "
              f"rpm={values['engine_rpm']} speed={values['road_speed']} {values['speed_units']} "
              f"coolant={values['coolant_temp']} ({values['temperature_units']}) "
              f"mil={'ON' if values['mil_on'] else 'off'}")
    print()

    # Step 3: One-shot requests run between poll cycles
    print("[3/4] Requesting fault codes and fuel map...")
    controller.request_fault_codes()
    event = wait_for_event(
        listener, [Notification.FAULT_CODES_READY, Notification.FAULT_CODES_READ_FAILED], 5.0
    )
    if event is not None and event.kind is Notification.FAULT_CODES_READY:
        print(f"      Active faults: {event.payload.active() or 'none'}")
    else:
        print("      Fault code read failed")

    controller.request_fuel_map(FUEL_MAP_ID)
    event = wait_for_event(listener, [Notification.FUEL_MAP_READY], 5.0)
    table = controller.fuel_map(FUEL_MAP_ID)
    if event is not None and table is not None:
        print(f"      Fuel map {FUEL_MAP_ID}: {len(table)} bytes, "
              f"adjustment factor 0x{controller.values.fuel_map_adj_factor:X}, "
              f"RPM limit {controller.values.rpm_limit}")
    else:
        print(f"      Fuel map {FUEL_MAP_ID} read failed")
    print()

    # Step 4: Results
    print("[4/4] Stopping...")
    export_path = recorder.stop(export_path=EXPORT_CSV)
    stats = store.get_stats()
    print(f"      Rows recorded: {stats['row_count']} ({stats['est_row_rate_hz']:.1f} Hz)")
    print(f"      Exported to: {export_path}")

    if stats["row_count"] > 0:
        print("✓ PASS: Live data recorded")
    else:
        print("✗ FAIL: No rows recorded")

finally:
    if recorder.is_running():
        recorder.stop()
    controller.hub.unlisten(listener)
    controller.shutdown()
    print()
    print("Shut down.")
    print("=" * 70)
