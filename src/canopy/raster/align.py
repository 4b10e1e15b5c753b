#!/usr/bin/env python3
"""align.py

Put one raster onto another raster's pixel grid.

`align_to` reprojects/resamples the source into the target's CRS, resolution
and grid alignment, then crops the result to where the two original extents
overlap (the source extent is projected into the target CRS first).

`align_pair` goes one step further and crops the target to the same window,
returning two rasters that can be differenced cell-for-cell.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from rasterio.warp import Resampling, reproject, transform_bounds

from canopy.config import format_bbox, intersect_bbox
from canopy.raster.io import Raster, assert_same_grid, crop_to_bounds


RESAMPLING_METHODS = {
    "nearest": Resampling.nearest,
    "bilinear": Resampling.bilinear,
}


def align_to(source: Raster, target: Raster, method: str = "bilinear") -> Raster:
    """Resample `source` onto `target`'s grid, cropped to the shared extent.

    Bilinear is the default for continuous height data; use "nearest" for
    categorical or count rasters.

    Raises:
        ValueError: unknown method, missing CRS, or extents that don't overlap.
    """
    if method not in RESAMPLING_METHODS:
        raise ValueError(f"method must be one of {sorted(RESAMPLING_METHODS)}, got {method!r}")
    if source.crs is None or target.crs is None:
        raise ValueError("Both rasters need a CRS to be aligned.")

    destination = np.full((source.count, target.height, target.width), np.nan, dtype="float64")
    reproject(
        source=source.data,
        destination=destination,
        src_transform=source.transform,
        src_crs=source.crs,
        src_nodata=np.nan,
        dst_transform=target.transform,
        dst_crs=target.crs,
        dst_nodata=np.nan,
        resampling=RESAMPLING_METHODS[method],
    )
    aligned = target.with_data(destination)

    # densified edges for curved reprojected extents
    source_bounds = source.bounds
    if source.crs != target.crs:
        source_bounds = transform_bounds(source.crs, target.crs, *source_bounds, densify_pts=21)

    common = intersect_bbox(source_bounds, target.bounds)
    if common is None:
        raise ValueError(
            f"Rasters do not overlap: source {format_bbox(source_bounds, 2)} vs target {format_bbox(target.bounds, 2)}"
        )
    out = crop_to_bounds(aligned, common)
    print(
        f"[ALIGN] {method}: {source.height}x{source.width} @ {source.res[0]:g} -> "
        f"{out.height}x{out.width} @ {out.res[0]:g} ({target.crs})"
    )
    return out


def align_pair(source: Raster, target: Raster, method: str = "bilinear") -> Tuple[Raster, Raster]:
    """Return (aligned source, target cropped to the same window)."""
    aligned = align_to(source, target, method=method)
    cropped = crop_to_bounds(target, aligned.bounds)
    assert_same_grid(aligned, cropped, context="aligned source and target")
    return aligned, cropped
