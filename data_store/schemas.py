"""Schema normalization for plot samples to DataFrame format.

Every exported row carries its series identity (expression and rate) so that
samples from all series fit in one flat table.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from tic80_lib.models import PlotSample, PlotSeriesState

# DataFrame schema: column names and their dtypes
SCHEMA = {
    "timestamp": str,  # UTC ISO 8601 format
    "series": str,  # "<rate>:<expression>" key
    "expression": str,  # Expression evaluated remotely
    "rate_hz": float,  # Series sample rate
    "value": float,  # Sampled numeric value
}


def sample_to_row(key: str, state: PlotSeriesState, sample: PlotSample) -> Dict[str, Any]:
    """Convert one retained sample to a DataFrame row dictionary.

    Sample timestamps are wall-clock milliseconds; they are rendered as UTC
    ISO 8601 strings.

    Args:
        key: Series key the sample belongs to
        state: Series the sample was taken for
        sample: The sample

    Returns:
        Dictionary with all SCHEMA keys
    """
    ts = datetime.fromtimestamp(sample.t / 1000.0, tz=timezone.utc)
    return {
        "timestamp": ts.isoformat(),
        "series": key,
        "expression": state.expression,
        "rate_hz": state.rate_hz,
        "value": sample.v,
    }
