#!/usr/bin/env python3
"""neighborhood.py

Gather the raster cells around each survey point.

For one point:
1. reproject the point into the raster CRS
2. buffer it by `radius` (raster CRS units, metres for projected CRSs)
3. keep every cell the buffer touches, fully or partially
4. return one row per cell with all band values (NaN for no-data)

Neighbourhoods are computed on demand and handed straight to the binning step.
"""

from __future__ import annotations

from typing import Any, Iterator, Optional, Tuple

import geopandas as gpd
import numpy as np
from rasterio.features import geometry_mask
from shapely.geometry import Point

from canopy.raster.io import Raster, bounds_to_window, crop_window


def _empty(raster: Raster) -> np.ndarray:
    return np.empty((0, raster.count), dtype="float64")


def extract_neighborhood(
    raster: Raster,
    point: Point,
    radius: float,
    point_crs: Optional[Any] = None,
) -> np.ndarray:
    """Cell values within `radius` of `point`, shape (n_cells, n_bands).

    `point_crs` defaults to the raster CRS. A buffer that misses the raster
    entirely yields an empty (0, n_bands) array.
    """
    if radius <= 0:
        raise ValueError(f"radius must be > 0, got {radius}")
    if point_crs is not None and raster.crs is not None:
        point = gpd.GeoSeries([point], crs=point_crs).to_crs(raster.crs).iloc[0]

    buffer = point.buffer(radius)
    try:
        window = bounds_to_window(raster, buffer.bounds, outward=True)
    except ValueError:
        return _empty(raster)

    sub = crop_window(raster, window)
    inside = geometry_mask(
        [buffer],
        out_shape=(sub.height, sub.width),
        transform=sub.transform,
        all_touched=True,
        invert=True,
    )
    if not inside.any():
        return _empty(raster)
    return sub.data[:, inside].T.copy()


def iter_neighborhoods(
    raster: Raster,
    points: gpd.GeoDataFrame,
    radius: float,
) -> Iterator[Tuple[Any, np.ndarray]]:
    """Yield (row, cells) for every point in `points`.

    Points are reprojected to the raster CRS once, up front.
    """
    if points.crs is None:
        raise ValueError("Survey points have no CRS; can't place them on the raster.")
    projected = points.to_crs(raster.crs) if raster.crs is not None else points
    for (_, row), geom in zip(points.iterrows(), projected.geometry):
        yield row, extract_neighborhood(raster, geom, radius)
