"""Tests for the pandas export of retained plot samples."""

from pathlib import Path

import pandas as pd

from data_store import SCHEMA, SeriesStore, sample_to_row
from tic80_lib.models import PlotSample
from tic80_lib.plot_manager import PlotSubscriptionManager
from tic80_lib.session import RemoteSession


def make_store(export_dir="."):
    manager = PlotSubscriptionManager(RemoteSession())
    return manager, SeriesStore(manager, export_dir=export_dir)


def fill(manager, expression, rate_hz, values, start_ms=1_700_000_000_000.0):
    manager.subscribe(expression, rate_hz)
    state = manager.get_series(expression, rate_hz)
    for i, value in enumerate(values):
        state.samples.append(PlotSample(start_ms + i * 50.0, value))


def test_sample_to_row() -> None:
    """Test row normalization for one sample."""
    manager, _ = make_store()
    fill(manager, "x", 20, [3.5])
    state = manager.get_series("x", 20)

    row = sample_to_row("20:x", state, state.samples.snapshot()[0])

    assert set(row.keys()) == set(SCHEMA.keys())
    assert row["series"] == "20:x"
    assert row["expression"] == "x"
    assert row["rate_hz"] == 20.0
    assert row["value"] == 3.5
    assert row["timestamp"] == "2023-11-14T22:13:20+00:00"


def test_dataframe_contains_all_series() -> None:
    """Test that every retained sample of every series becomes a row."""
    manager, store = make_store()
    fill(manager, "x", 20, [1.0, 2.0, 3.0])
    fill(manager, "y", 10, [7.0])

    df = store.get_dataframe()

    assert list(df.columns) == list(SCHEMA.keys())
    assert len(df) == 4
    assert list(df[df["series"] == "20:x"]["value"]) == [1.0, 2.0, 3.0]
    assert list(df[df["series"] == "10:y"]["value"]) == [7.0]


def test_empty_dataframe_keeps_schema() -> None:
    """Test that no samples gives an empty frame with the schema columns."""
    manager, store = make_store()
    manager.subscribe("x")

    df = store.get_dataframe()

    assert df.empty
    assert list(df.columns) == list(SCHEMA.keys())


def test_stats() -> None:
    """Test per-series statistics."""
    manager, store = make_store()
    fill(manager, "x", 20, [1.0, 2.0, 6.0])

    stats = store.get_stats()

    assert stats["row_count"] == 3
    assert stats["series"]["20:x"] == {"rows": 3, "min": 1.0, "max": 6.0, "mean": 3.0}
    assert make_store()[1].get_stats() == {"row_count": 0, "series": {}}


def test_export_csv_to_path(tmp_path) -> None:
    """Test CSV export to an explicit path."""
    manager, store = make_store()
    fill(manager, "x", 20, [1.0, 2.0])

    path = store.export_csv(tmp_path / "out.csv")

    assert Path(path).exists()
    df = pd.read_csv(path)
    assert list(df.columns) == list(SCHEMA.keys())
    assert list(df["value"]) == [1.0, 2.0]


def test_export_csv_auto_name(tmp_path) -> None:
    """Test timestamped export into the export directory."""
    manager, store = make_store(export_dir=tmp_path / "exports")
    fill(manager, "x", 20, [1.0])

    path = Path(store.export_csv())

    assert path.parent == (tmp_path / "exports").resolve()
    assert path.name.startswith("tic80_plot_")
    assert path.suffix == ".csv"
