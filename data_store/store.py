"""Thread-safe DataFrame store and background recorder for 14CUX live values.

This module provides:
- DataStore: Thread-safe in-memory DataFrame of per-cycle rows with CSV export
- DataRecorder: Background thread that samples the controller each time a poll
  cycle publishes new data and records one row to a DataStore

Design notes:
- The recorder never touches the device link; it only reads the value cache
- A row is taken per observed data generation, so a slow recorder drops
  intermediate cycles rather than duplicating rows
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Event, RLock, Thread
from typing import Any, Dict, Iterable, Optional

import pandas as pd

from cux_lib.controller import ECUController
from data_store.schemas import SCHEMA, values_to_row

logger = logging.getLogger(__name__)


class DataStore:
    """Thread-safe in-memory DataFrame store for live-value rows.

    Keeps at most ``max_rows`` rows, dropping the oldest first.
    """

    def __init__(self, max_rows: int = 100000) -> None:
        self._lock = RLock()
        self._df = pd.DataFrame(columns=list(SCHEMA.keys()))
        self._max_rows = max_rows

    def append_rows(self, rows: Iterable[Dict[str, Any]]) -> None:
        """Append rows produced by ``values_to_row``.

        Args:
            rows: Row dictionaries keyed by SCHEMA columns
        """
        rows = list(rows)
        if not rows:
            return

        with self._lock:
            new_df = pd.DataFrame(rows, columns=list(SCHEMA.keys()))
            if self._df.empty:
                self._df = new_df
            else:
                self._df = pd.concat([self._df, new_df], ignore_index=True)

            if len(self._df) > self._max_rows:
                excess = len(self._df) - self._max_rows
                self._df = self._df.iloc[excess:].reset_index(drop=True)
                logger.debug(f"Trimmed {excess} oldest rows, now {len(self._df)} rows")

    def get_dataframe(self) -> pd.DataFrame:
        """Get a copy of the entire DataFrame."""
        with self._lock:
            return self._df.copy()

    def get_recent(self, seconds: int = 60) -> pd.DataFrame:
        """Get rows from the last N seconds.

        Args:
            seconds: Number of seconds of recent history to retrieve

        Returns:
            DataFrame containing only rows within the time window
        """
        with self._lock:
            if self._df.empty:
                return pd.DataFrame(columns=list(SCHEMA.keys()))

            df = self._df.copy()

        stamps = pd.to_datetime(df["timestamp"], format="ISO8601", utc=True)
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=seconds)
        return df[stamps >= cutoff].reset_index(drop=True)

    def get_latest(self) -> Optional[dict]:
        """Most recent row as a dictionary of plain Python values, or None if empty.

        Missing values come back as None rather than NaN.
        """
        with self._lock:
            if self._df.empty:
                return None
            row = self._df.iloc[[-1]].to_dict(orient="records")[0]
        return {key: (None if pd.isna(value) else value) for key, value in row.items()}

    def get_stats(self) -> dict:
        """Get summary statistics about stored rows.

        Returns:
            Dictionary with keys:
                - row_count: Total number of rows
                - start_time: ISO timestamp of first row (or None)
                - end_time: ISO timestamp of last row (or None)
                - duration_s: Time span of data in seconds (or 0)
                - est_row_rate_hz: Estimated rows per second (or 0)
        """
        with self._lock:
            if self._df.empty:
                return {
                    "row_count": 0,
                    "start_time": None,
                    "end_time": None,
                    "duration_s": 0.0,
                    "est_row_rate_hz": 0.0,
                }

            timestamps = pd.to_datetime(self._df["timestamp"], format="ISO8601", utc=True)
            start = timestamps.iloc[0]
            end = timestamps.iloc[-1]
            duration_s = (end - start).total_seconds()

            rate_hz = 0.0
            if duration_s > 0 and len(self._df) > 1:
                rate_hz = (len(self._df) - 1) / duration_s

            return {
                "row_count": len(self._df),
                "start_time": start.isoformat(),
                "end_time": end.isoformat(),
                "duration_s": duration_s,
                "est_row_rate_hz": rate_hz,
            }

    def export_csv(self, path: Optional[str] = None) -> str:
        """Export DataFrame to a CSV file.

        Args:
            path: Output file path. If None, generates timestamped filename.

        Returns:
            Absolute path to exported file
        """
        with self._lock:
            if path is None:
                timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                path = f"cux_log_{timestamp}.csv"

            self._df.to_csv(path, index=False)
            abs_path = str(Path(path).resolve())
            logger.info(f"Exported {len(self._df)} rows to CSV: {abs_path}")
            return abs_path

    def clear(self) -> None:
        """Drop all rows, keeping the schema."""
        with self._lock:
            self._df = pd.DataFrame(columns=list(SCHEMA.keys()))
            logger.debug("DataStore cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._df)


class DataRecorder:
    """Background recorder that samples ECUController values into a DataStore.

    Every ``poll_interval_s`` the recorder compares the controller's data
    generation with the last one it recorded and appends one row when it has
    advanced.
    """

    def __init__(
        self,
        controller: ECUController,
        store: DataStore,
        poll_interval_s: float = 0.1,
    ) -> None:
        """Initialize recorder (does not start automatically).

        Args:
            controller: Controller whose value cache is sampled
            store: DataStore instance to write rows to
            poll_interval_s: How often to check for a new generation
        """
        self._controller = controller
        self._store = store
        self._poll_interval = poll_interval_s

        self._thread: Optional[Thread] = None
        self._stop_event = Event()
        self._last_generation: Optional[int] = None

    def start(self) -> None:
        """Start background recording thread.

        Raises:
            RuntimeError: If recorder is already running
        """
        if self._thread and self._thread.is_alive():
            raise RuntimeError("Recorder already running")

        logger.info(f"Starting DataRecorder (poll interval: {self._poll_interval}s)...")
        self._stop_event.clear()
        self._last_generation = self._controller.data_generation

        self._thread = Thread(target=self._recorder_loop, name="DataRecorder", daemon=True)
        self._thread.start()

    def stop(self, export_path: Optional[str] = None) -> Optional[str]:
        """Stop recording and optionally export the store to CSV.

        Args:
            export_path: If given, write the store to this CSV path after stopping

        Returns:
            Path to the exported file, or None
        """
        if not self._thread or not self._thread.is_alive():
            logger.warning("Recorder not running, nothing to stop")
            return None

        logger.info("Stopping DataRecorder...")
        self._stop_event.set()
        self._thread.join(timeout=5.0)
        if self._thread.is_alive():
            logger.warning("DataRecorder thread did not stop cleanly")
        self._thread = None

        # One last sample so the final cycle before stop is not lost
        self.sample_once()

        if export_path is not None:
            return self._store.export_csv(export_path)
        return None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sample_once(self) -> bool:
        """Record a row if the controller has published new data.

        Returns:
            True if a row was appended
        """
        generation = self._controller.data_generation
        if generation == self._last_generation:
            return False

        self._store.append_rows([values_to_row(self._controller.values, generation)])
        self._last_generation = generation
        logger.debug(f"Recorded generation {generation}")
        return True

    def _recorder_loop(self) -> None:
        logger.info(f"Recorder loop started (thread {threading.get_ident()})")

        while not self._stop_event.wait(timeout=self._poll_interval):
            try:
                self.sample_once()
            except Exception as e:
                logger.error(f"Error in recorder loop: {e}", exc_info=True)

        logger.info("Recorder loop stopped")
