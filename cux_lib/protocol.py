"""Timing, sizing and range constants for polling a Lucas 14CUX ECU.

The byte-level protocol lives in the device link; this module only pins the
numbers the polling layer depends on.
"""

from typing import Final

# ============================================================================
# Serial Port
# ============================================================================

# The 14CUX talks at 7812.5 baud, 8N1; 7812 is the closest standard divisor
SERIAL_BAUD: Final[int] = 7812
SERIAL_PROBE_TIMEOUT_S: Final[float] = 0.5

# ============================================================================
# Tier Cadence
# ============================================================================

# Minimum spacing between tier runs, measured from the last successful run
MID_TIER_INTERVAL_S: Final[float] = 0.200
LOW_TIER_INTERVAL_S: Final[float] = 0.800

# Active fuel map only changes when a different tune resistor is fitted
FUEL_MAP_INDEX_CHECK_MODULUS: Final[int] = 7

# ============================================================================
# Bulk Transfers
# ============================================================================

PROM_SIZE: Final[int] = 16384  # Full PROM image, 16 KiB
FUEL_MAP_SIZE: Final[int] = 128  # One 8 x 16 fuel map table

VALID_FUEL_MAP_IDS: Final[range] = range(0, 6)

# ============================================================================
# Idle Air Control
# ============================================================================

IAC_DIRECTION_OPEN: Final[int] = 0
IAC_DIRECTION_CLOSE: Final[int] = 1
IAC_MAX_STEPS: Final[int] = 255

# ============================================================================
# Worker Shutdown
# ============================================================================

SHUTDOWN_WAIT_S: Final[float] = 2.0
