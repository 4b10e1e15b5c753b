#!/usr/bin/env python3
"""powerline.py

Remove power-line (and other wire/bird) spikes from a canopy height model.

A pixel is dropped (set to NaN) when it stands more than `threshold` metres
above a chosen percentile of its square neighbourhood:

    value - percentile(neighbours) > threshold      -> NaN
    otherwise                                        -> value unchanged

The neighbourhood is the (2k+1) x (2k+1) window around the pixel with the
centre cell left out. Near the raster edge only in-bounds cells count, and
NaN neighbours are ignored.

Large rasters can be processed in row blocks (`block_rows`); each block is
read with a halo of k rows on either side, so blocking never changes results.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
from scipy import ndimage

from canopy.config import FilterParams
from canopy.raster.io import Raster


def _footprint(kernel_half_width: int) -> np.ndarray:
    side = 2 * kernel_half_width + 1
    footprint = np.ones((side, side), dtype=bool)
    footprint[kernel_half_width, kernel_half_width] = False
    return footprint


def _percentile_or_nan(values: np.ndarray, percentile: float) -> float:
    values = values[np.isfinite(values)]
    if values.size == 0:
        return np.nan
    return float(np.percentile(values, percentile))


def _complete_window_percentile(band: np.ndarray, footprint: np.ndarray, percentile: float) -> np.ndarray:
    """Linear-interpolated percentile from two rank filters.

    Only valid where the whole footprint is in bounds and finite.
    """
    n = int(footprint.sum())
    position = percentile / 100.0 * (n - 1)
    lower = int(np.floor(position))
    upper = min(lower + 1, n - 1)
    t = position - lower

    filled = np.where(np.isfinite(band), band, 0.0)
    below = ndimage.rank_filter(filled, lower, footprint=footprint, mode="nearest")
    if upper == lower or t == 0:
        return below
    above = ndimage.rank_filter(filled, upper, footprint=footprint, mode="nearest")
    diff = above - below
    # same interpolation as np.percentile(method="linear")
    return np.where(t >= 0.5, above - diff * (1 - t), below + diff * t)


def neighbourhood_percentile(band: np.ndarray, kernel_half_width: int, percentile: float) -> np.ndarray:
    """Percentile of each pixel's neighbours (centre excluded, edges truncated).

    Pixels whose window is complete go through scipy's rank filter; those
    near the edge or next to a NaN are computed one window at a time.
    """
    band = np.asarray(band, dtype="float64")
    if kernel_half_width == 0:
        return np.full(band.shape, np.nan)
    k = kernel_half_width
    footprint = _footprint(k)
    out = _complete_window_percentile(band, footprint, percentile)

    incomplete = ndimage.maximum_filter(
        (~np.isfinite(band)).astype(np.uint8),
        footprint=footprint,
        mode="constant",
        cval=1,
    ).astype(bool)
    padded = np.pad(band, k, mode="constant", constant_values=np.nan)
    side = 2 * k + 1
    for r, c in zip(*np.nonzero(incomplete)):
        out[r, c] = _percentile_or_nan(padded[r:r + side, c:c + side][footprint], percentile)
    return out


def _filter_band(band: np.ndarray, params: FilterParams) -> np.ndarray:
    reference = neighbourhood_percentile(band, params.kernel_half_width, params.percentile)
    with np.errstate(invalid="ignore"):
        spikes = (band - reference) > params.threshold
    out = band.copy()
    out[spikes] = np.nan
    return out


def _filter_band_blocked(band: np.ndarray, params: FilterParams, block_rows: int) -> np.ndarray:
    halo = params.kernel_half_width
    n_rows = band.shape[0]
    out = np.empty_like(band)
    for start in range(0, n_rows, block_rows):
        stop = min(start + block_rows, n_rows)
        lo = max(0, start - halo)
        hi = min(n_rows, stop + halo)
        filtered = _filter_band(band[lo:hi], params)
        out[start:stop] = filtered[start - lo:stop - lo]
    return out


def filter_artifacts(
    raster: Raster,
    kernel_half_width: int = 12,
    percentile: float = 70.0,
    threshold: float = 10.0,
    *,
    block_rows: Optional[int] = None,
) -> Raster:
    """Return a copy of `raster` with spike pixels set to NaN.

    Each band is filtered independently. The comparison is strict: a pixel
    exactly `threshold` above the neighbourhood percentile is kept.
    """
    params = FilterParams(
        kernel_half_width=kernel_half_width,
        percentile=percentile,
        threshold=threshold,
        block_rows=block_rows,
    )
    return filter_with_params(raster, params)


def filter_with_params(raster: Raster, params: FilterParams) -> Raster:
    bands = []
    for band in raster.data:
        if params.block_rows is not None and params.block_rows < band.shape[0]:
            bands.append(_filter_band_blocked(band, params, params.block_rows))
        else:
            bands.append(_filter_band(band, params))
    out = np.stack(bands)

    before = int(np.isfinite(raster.data).sum())
    after = int(np.isfinite(out).sum())
    print(
        f"[FILTER] kernel={2 * params.kernel_half_width + 1}x{2 * params.kernel_half_width + 1} "
        f"p{params.percentile:g} threshold={params.threshold:g}: removed {before - after} of {before} valid pixels"
    )
    return raster.with_data(out)
