"""DataFrame recording layer for 14CUX live data."""

from data_store.schemas import SCHEMA, values_to_row
from data_store.store import DataRecorder, DataStore

__all__ = ["SCHEMA", "values_to_row", "DataStore", "DataRecorder"]
