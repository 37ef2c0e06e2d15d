"""pandas export of the samples retained by the plot manager.

The plot manager keeps at most twice the display window per series. This
module flattens whatever is retained at call time into one DataFrame and
writes it to CSV.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from data_store.schemas import SCHEMA, sample_to_row
from tic80_lib.plot_manager import PlotSubscriptionManager

logger = logging.getLogger(__name__)


class SeriesStore:
    """DataFrame view over a PlotSubscriptionManager."""

    def __init__(self, manager: PlotSubscriptionManager, export_dir: Union[str, Path] = ".") -> None:
        """Initialize store.

        Args:
            manager: Plot manager whose retained samples are exported
            export_dir: Directory for auto-named exports
        """
        self._manager = manager
        self._export_dir = Path(export_dir)

    def get_dataframe(self) -> pd.DataFrame:
        """Build a DataFrame of every retained sample, oldest first per series.

        Returns:
            DataFrame with SCHEMA columns (empty if nothing is retained)
        """
        rows = [
            sample_to_row(key, state, sample)
            for key, state in self._manager.items()
            for sample in state.samples.snapshot()
        ]
        if not rows:
            return pd.DataFrame(columns=list(SCHEMA.keys()))
        return pd.DataFrame(rows, columns=list(SCHEMA.keys()))

    def get_stats(self) -> dict:
        """Per-series row count and value range."""
        df = self.get_dataframe()
        if df.empty:
            return {"row_count": 0, "series": {}}

        series = {}
        for key, group in df.groupby("series", sort=False):
            values = group["value"].astype(float)
            series[key] = {
                "rows": int(len(group)),
                "min": float(values.min()),
                "max": float(values.max()),
                "mean": float(values.mean()),
            }
        return {"row_count": int(len(df)), "series": series}

    def export_csv(self, path: Optional[Union[str, Path]] = None) -> str:
        """Export retained samples to a CSV file.

        Args:
            path: Output file path. If None, generates a timestamped filename
                  in the export directory.

        Returns:
            Absolute path to exported file
        """
        df = self.get_dataframe()
        if path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self._export_dir.mkdir(parents=True, exist_ok=True)
            path = self._export_dir / f"tic80_plot_{timestamp}.csv"

        df.to_csv(path, index=False)
        abs_path = str(Path(path).resolve())
        logger.info(f"Exported {len(df)} rows to CSV: {abs_path}")
        return abs_path
