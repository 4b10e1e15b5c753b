#!/usr/bin/env python3
"""correlate.py

Per-pixel Spearman correlation between two return-histogram rasters.

Each histogram mosaic stores, per pixel:
- band 1: lowest bin height
- band 2: highest bin height
- bands 3..N: LiDAR return counts per height bin

For every pixel the bin-count vectors of the two years are ranked (average
ranks for ties) and correlated. Scaling counts to frequencies does not change
ranks, so raw counts are used directly.

Output is a single-band raster in [-1, 1]. NaN where:
- either input has a no-data value in any band at that pixel, or
- either year's bin vector is constant (rank variance of zero).
"""

from __future__ import annotations

import numpy as np
from scipy.stats import rankdata

from canopy.raster.io import Raster, assert_same_grid


def _centered_ranks(counts: np.ndarray) -> np.ndarray:
    ranks = rankdata(counts, axis=0)
    return ranks - ranks.mean(axis=0, keepdims=True)


def correlate_histograms(first: Raster, second: Raster, bin_offset: int = 2) -> Raster:
    """Spearman's rho between `first` and `second` bin vectors, pixel by pixel.

    Args:
        first, second: histogram rasters on the same grid with the same band count.
        bin_offset: number of leading non-count bands (the min/max height bands).

    Raises:
        ValueError: grid or band-count mismatch, or fewer than two bins.
    """
    assert_same_grid(first, second, context="histogram rasters")
    if first.count != second.count:
        raise ValueError(f"Histogram rasters have different band counts ({first.count} vs {second.count})")
    n_bins = first.count - bin_offset
    if n_bins < 2:
        raise ValueError(f"Need at least two bin bands after offset {bin_offset}, got {first.count} bands")

    valid = np.isfinite(first.data).all(axis=0) & np.isfinite(second.data).all(axis=0)

    # rankdata propagates NaN, so blank out invalid pixels before ranking
    a = np.where(valid, first.data[bin_offset:], 0.0)
    b = np.where(valid, second.data[bin_offset:], 0.0)
    ra = _centered_ranks(a)
    rb = _centered_ranks(b)

    numerator = (ra * rb).sum(axis=0)
    denominator = np.sqrt((ra * ra).sum(axis=0) * (rb * rb).sum(axis=0))
    valid &= denominator > 0

    rho = np.full(valid.shape, np.nan)
    rho[valid] = np.clip(numerator[valid] / denominator[valid], -1.0, 1.0)

    print(f"[CORRELATE] {int(valid.sum())} of {valid.size} pixels correlated over {n_bins} bins")
    return first.with_data(rho[np.newaxis, :, :])
