"""Schema normalization for 14CUX live values to DataFrame format.

Rows are always in canonical units (mph, degrees Fahrenheit) so a log does
not change meaning when the display units are switched mid-session.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cux_lib.models import LastKnownValues

# DataFrame schema: column names and their dtypes
# All columns are always present; fields never read are None (becomes NaN in DataFrame)
SCHEMA = {
    "timestamp": str,  # UTC ISO 8601 format
    "generation": int,  # DATA_READY generation the row was taken at
    "road_speed_mph": int,
    "engine_rpm": int,
    "target_idle_rpm": int,
    "idle_mode": bool,
    "coolant_temp_f": int,
    "fuel_temp_f": int,
    "throttle_pos": float,
    "maf_reading": float,
    "idle_bypass_pos": float,
    "main_voltage": float,
    "gear": str,
    "left_lambda_trim": int,
    "right_lambda_trim": int,
    "fuel_pump_relay_on": bool,
    "mil_on": bool,
    "current_fuel_map": int,
    "fuel_map_row": int,
    "fuel_map_column": int,
    "tune_revision": int,  # Optional
}


def values_to_row(
    values: LastKnownValues,
    generation: int,
    ts: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Convert the live-value cache to a DataFrame row dictionary.

    Args:
        values: Controller's canonical value cache
        generation: Data generation the values belong to
        ts: Row timestamp; defaults to now (UTC). Naive values are taken as UTC.

    Returns:
        Dictionary with all SCHEMA keys, ready for DataFrame append
    """
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    else:
        ts = ts.astimezone(timezone.utc)

    row: Dict[str, Any] = {"timestamp": ts.isoformat(), "generation": generation}
    for column in SCHEMA:
        if column in row:
            continue
        row[column] = getattr(values, column)

    row["gear"] = values.gear.value
    return row
