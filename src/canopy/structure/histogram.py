#!/usr/bin/env python3
"""histogram.py

Turn neighbourhood samples into vegetation-structure histograms.

Two variants, both emitting HistogramRecord rows:

- Max-return binning (canopy height models, one height per cell)
    bins are half-open [start, end); the last bin is closed [start, max_height]
    NaN samples and samples outside [min_height, max_height] are left out
- Multi-band collapse (return-histogram mosaics)
    columns 0-1 are each cell's (min, max) bin range, columns 2.. are counts
    counts are summed over cells; bin edges come from the median min/max
    cells with a no-data value in any band are dropped

An empty or all-no-data neighbourhood produces no records at all, so the
frequencies of every emitted (point, year) sum to 1.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable, List, Optional

import geopandas as gpd
import numpy as np
import pandas as pd

from canopy.config import HistogramParams
from canopy.raster.io import Raster
from canopy.vectors import normalize_code, read_table, require_columns
from canopy.structure.neighborhood import iter_neighborhoods


MODES = ("max-return", "multiband")

RECORD_COLUMNS = ["point_id", "site", "year", "bin_index", "bin_start", "bin_end", "count", "frequency"]


@dataclass(frozen=True)
class HistogramRecord:
    point_id: str
    site: str
    year: int
    bin_index: int
    bin_start: float
    bin_end: float
    count: float
    frequency: float


def _records(
    counts: np.ndarray,
    edges: np.ndarray,
    *,
    point_id: str,
    site: str,
    year: int,
) -> List[HistogramRecord]:
    total = float(counts.sum())
    if not total > 0:
        return []
    return [
        HistogramRecord(
            point_id=point_id,
            site=site,
            year=int(year),
            bin_index=i,
            bin_start=float(edges[i]),
            bin_end=float(edges[i + 1]),
            count=float(c),
            frequency=float(c) / total,
        )
        for i, c in enumerate(counts)
    ]


def bin_edges(min_height: float, max_height: float, bin_count: int) -> np.ndarray:
    return np.linspace(min_height, max_height, bin_count + 1)


def bin_max_returns(
    samples: Iterable[float],
    *,
    min_height: float,
    max_height: float,
    bin_count: int,
    year: int,
    point_id: str = "",
    site: str = "",
) -> List[HistogramRecord]:
    """Bin one height per cell into `bin_count` equal-width bins."""
    if not min_height < max_height:
        raise ValueError(f"min_height must be < max_height, got {min_height} >= {max_height}")
    if bin_count < 1:
        raise ValueError(f"bin_count must be >= 1, got {bin_count}")

    values = np.asarray(list(samples) if not isinstance(samples, np.ndarray) else samples, dtype="float64").ravel()
    values = values[np.isfinite(values)]
    values = values[(values >= min_height) & (values <= max_height)]

    edges = bin_edges(min_height, max_height, bin_count)
    # side="right": a sample equal to an edge opens the bin that starts there
    index = np.searchsorted(edges, values, side="right") - 1
    index = np.clip(index, 0, bin_count - 1)
    counts = np.bincount(index, minlength=bin_count)
    return _records(counts, edges, point_id=point_id, site=site, year=year)


def collapse_multiband(
    cells: np.ndarray,
    *,
    year: int,
    point_id: str = "",
    site: str = "",
) -> List[HistogramRecord]:
    """Sum per-cell return histograms into one histogram for the neighbourhood."""
    cells = np.asarray(cells, dtype="float64")
    if cells.ndim != 2 or cells.shape[1] < 3:
        raise ValueError(f"Expected (n_cells, 2 + n_bins) values, got shape {cells.shape}")

    cells = cells[np.isfinite(cells).all(axis=1)]
    if cells.shape[0] == 0:
        return []

    counts = cells[:, 2:].sum(axis=0)
    low = float(np.median(cells[:, 0]))
    high = float(np.median(cells[:, 1]))
    edges = bin_edges(low, high, counts.size)
    return _records(counts, edges, point_id=point_id, site=site, year=year)


def records_to_frame(records: Iterable[HistogramRecord]) -> pd.DataFrame:
    """Histogram table, sorted by (site, year, point_id, bin_index)."""
    rows = [asdict(r) for r in records]
    df = pd.DataFrame(rows, columns=RECORD_COLUMNS)
    if df.empty:
        return df
    df = df.astype({"year": "int64", "bin_index": "int64"})
    return df.sort_values(["site", "year", "point_id", "bin_index"]).reset_index(drop=True)


def read_histogram_table(csv_path: Path) -> pd.DataFrame:
    """Load a histogram table written by `python -m canopy.structure histograms`."""
    df = read_table(csv_path)
    require_columns(df, RECORD_COLUMNS, Path(csv_path))
    df = df[RECORD_COLUMNS].copy()
    df["point_id"] = df["point_id"].map(normalize_code)
    df["site"] = df["site"].map(normalize_code)
    return df.astype({"year": "int64", "bin_index": "int64"})


def point_histograms(
    raster: Raster,
    points: gpd.GeoDataFrame,
    *,
    year: int,
    mode: str = "max-return",
    params: Optional[HistogramParams] = None,
) -> pd.DataFrame:
    """Histogram table for every survey point on one year's raster.

    `points` needs `point_id` and `site` columns (see canopy.vectors.load_survey_points).
    In max-return mode only the first band is binned.
    """
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
    params = params or HistogramParams()
    for col in ("point_id", "site"):
        if col not in points.columns:
            raise ValueError(f"Survey points need a '{col}' column. Available columns: {list(points.columns)}")

    records: List[HistogramRecord] = []
    skipped = 0
    for row, cells in iter_neighborhoods(raster, points, params.radius):
        if mode == "max-return":
            point_records = bin_max_returns(
                cells[:, 0] if cells.size else [],
                min_height=params.min_height,
                max_height=params.max_height,
                bin_count=params.bin_count,
                year=year,
                point_id=str(row["point_id"]),
                site=str(row["site"]),
            )
        else:
            point_records = collapse_multiband(
                cells if cells.size else np.empty((0, max(raster.count, 3))),
                year=year,
                point_id=str(row["point_id"]),
                site=str(row["site"]),
            )
        if not point_records:
            skipped += 1
        records.extend(point_records)

    print(f"[HIST] {year} {mode}: {len(points) - skipped} points binned, {skipped} skipped (no valid cells)")
    return records_to_frame(records)


def check_frequencies(histograms: pd.DataFrame, tolerance: float = 1e-9) -> pd.Series:
    """Frequency sum per (point_id, site, year); raises ValueError if any is off 1."""
    sums = histograms.groupby(["point_id", "site", "year"])["frequency"].sum()
    bad = sums[(sums - 1.0).abs() > tolerance]
    if not bad.empty:
        raise ValueError(f"Histogram frequencies do not sum to 1 for: {bad.index.tolist()}")
    return sums
