"""Tests for DataFrame recording layer (DataStore and DataRecorder).

These tests use a stub controller whose data generation is advanced by hand,
so no worker thread or device link is involved.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Thread

import pandas as pd
import pytest

from conftest import wait_until
from cux_lib.models import Gear, LastKnownValues
from data_store import SCHEMA, DataRecorder, DataStore, values_to_row


class FakeController:
    """Stand-in for ECUController exposing only what the recorder reads."""

    def __init__(self) -> None:
        self.values = LastKnownValues(engine_rpm=850, road_speed_mph=30, coolant_temp_f=185)
        self.data_generation = 0

    def publish(self, **changes) -> None:
        """Simulate one completed poll cycle."""
        for name, value in changes.items():
            setattr(self.values, name, value)
        self.data_generation += 1


def _rows(count: int, start: datetime, step_s: float = 0.1):
    values = LastKnownValues()
    rows = []
    for i in range(count):
        values.engine_rpm = 800 + i
        rows.append(values_to_row(values, i, ts=start + timedelta(seconds=i * step_s)))
    return rows


# =============================================================================
# Schema
# =============================================================================

def test_row_has_every_schema_column() -> None:
    values = LastKnownValues(engine_rpm=900, gear=Gear.DRIVE_REVERSE)

    row = values_to_row(values, 7)

    assert set(row.keys()) == set(SCHEMA.keys())
    assert row["generation"] == 7
    assert row["engine_rpm"] == 900
    assert row["gear"] == "drive_reverse"
    assert row["tune_revision"] is None


def test_row_timestamps_are_utc() -> None:
    naive = datetime(2024, 3, 1, 12, 0, 0)
    row = values_to_row(LastKnownValues(), 1, ts=naive)
    assert row["timestamp"] == "2024-03-01T12:00:00+00:00"

    offset = datetime(2024, 3, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    row = values_to_row(LastKnownValues(), 1, ts=offset)
    assert row["timestamp"] == "2024-03-01T12:00:00+00:00"


def test_rows_stay_in_canonical_units() -> None:
    """A row records mph and Fahrenheit whatever the display units are."""
    values = LastKnownValues(road_speed_mph=30, coolant_temp_f=185)
    row = values_to_row(values, 1)
    assert row["road_speed_mph"] == 30
    assert row["coolant_temp_f"] == 185


# =============================================================================
# DataStore
# =============================================================================

def test_store_append_and_read_back() -> None:
    store = DataStore()
    store.append_rows(_rows(5, datetime.now(timezone.utc)))

    df = store.get_dataframe()
    assert len(df) == 5
    assert list(df.columns) == list(SCHEMA.keys())
    assert df["engine_rpm"].tolist() == [800, 801, 802, 803, 804]
    assert len(store) == 5


def test_store_ignores_empty_append() -> None:
    store = DataStore()
    store.append_rows([])
    assert len(store) == 0
    assert store.get_latest() is None


def test_store_trims_oldest_rows() -> None:
    store = DataStore(max_rows=10)
    store.append_rows(_rows(25, datetime.now(timezone.utc)))

    df = store.get_dataframe()
    assert len(df) == 10
    assert df["engine_rpm"].iloc[0] == 815
    assert store.get_latest()["engine_rpm"] == 824


def test_get_recent_filters_by_window() -> None:
    store = DataStore()
    now = datetime.now(timezone.utc)
    store.append_rows(_rows(3, now - timedelta(minutes=10)))
    store.append_rows(_rows(4, now - timedelta(seconds=5)))

    recent = store.get_recent(seconds=60)
    assert len(recent) == 4


def test_stats_report_rate() -> None:
    store = DataStore()
    assert store.get_stats()["row_count"] == 0

    store.append_rows(_rows(11, datetime(2024, 3, 1, tzinfo=timezone.utc), step_s=0.1))

    stats = store.get_stats()
    assert stats["row_count"] == 11
    assert stats["duration_s"] == pytest.approx(1.0)
    assert stats["est_row_rate_hz"] == pytest.approx(10.0)


def test_export_csv(tmp_path: Path) -> None:
    store = DataStore()
    store.append_rows(_rows(3, datetime.now(timezone.utc)))

    path = store.export_csv(str(tmp_path / "log.csv"))

    df = pd.read_csv(path)
    assert len(df) == 3
    assert list(df.columns) == list(SCHEMA.keys())


def test_clear_keeps_schema() -> None:
    store = DataStore()
    store.append_rows(_rows(3, datetime.now(timezone.utc)))
    store.clear()
    assert len(store) == 0
    assert list(store.get_dataframe().columns) == list(SCHEMA.keys())


def test_concurrent_appends() -> None:
    store = DataStore()
    start = datetime.now(timezone.utc)

    threads = [Thread(target=store.append_rows, args=(_rows(20, start),)) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store) == 100


# =============================================================================
# DataRecorder
# =============================================================================

def test_sample_once_records_only_new_generations() -> None:
    controller = FakeController()
    store = DataStore()
    recorder = DataRecorder(controller, store)

    assert recorder.sample_once() is True  # last generation starts unset
    assert recorder.sample_once() is False

    controller.publish(engine_rpm=1200)
    assert recorder.sample_once() is True

    df = store.get_dataframe()
    assert df["generation"].tolist() == [0, 1]
    assert df["engine_rpm"].tolist() == [850, 1200]


def test_recorder_thread_follows_generations(tmp_path: Path) -> None:
    controller = FakeController()
    store = DataStore()
    recorder = DataRecorder(controller, store, poll_interval_s=0.01)

    recorder.start()
    assert recorder.is_running()

    for rpm in (900, 950, 1000):
        controller.publish(engine_rpm=rpm)
        assert wait_until(lambda: store.get_latest() is not None and store.get_latest()["engine_rpm"] == rpm)

    path = recorder.stop(export_path=str(tmp_path / "run.csv"))

    assert not recorder.is_running()
    assert Path(path).exists()
    assert store.get_dataframe()["engine_rpm"].tolist() == [900, 950, 1000]


def test_stop_records_final_generation() -> None:
    controller = FakeController()
    store = DataStore()
    recorder = DataRecorder(controller, store, poll_interval_s=10.0)

    recorder.start()
    controller.publish(engine_rpm=3000)
    recorder.stop()

    assert store.get_latest()["engine_rpm"] == 3000


def test_start_twice_raises() -> None:
    recorder = DataRecorder(FakeController(), DataStore(), poll_interval_s=0.01)
    recorder.start()
    try:
        with pytest.raises(RuntimeError):
            recorder.start()
    finally:
        recorder.stop()


def test_stop_when_not_running() -> None:
    recorder = DataRecorder(FakeController(), DataStore())
    assert recorder.stop() is None
    assert not recorder.is_running()
