"""DataFrame export layer for sampled plot series."""

from data_store.schemas import SCHEMA, sample_to_row
from data_store.store import SeriesStore

__all__ = ["SCHEMA", "sample_to_row", "SeriesStore"]
