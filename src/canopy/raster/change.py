#!/usr/bin/env python3
"""change.py

Canopy change between two aligned canopy height models, and region masks.

compute_change(a, b) = b - a wherever both inputs hold a measurement.

Zero convention (treat_zero_as_nodata, default True):
- a zero in either input is taken as "not measured", and
- a zero difference is written as NaN too.
This keeps unmeasured ground out of the change map, at the cost of also
hiding cells that truly did not change. Pass treat_zero_as_nodata=False to
keep zeros as real values.
"""

from __future__ import annotations

from typing import Dict, Union

import geopandas as gpd
import numpy as np
from rasterio.features import geometry_mask
from shapely.geometry.base import BaseGeometry

from canopy.config import BBox, intersect_bbox
from canopy.raster.io import Raster, assert_same_grid, crop_to_bounds


Region = Union[gpd.GeoDataFrame, gpd.GeoSeries]


def compute_change(earlier: Raster, later: Raster, *, treat_zero_as_nodata: bool = True) -> Raster:
    """Pixel-wise `later - earlier` on a shared grid.

    Raises ValueError if the two rasters are not on the same grid; run
    align_pair first.
    """
    assert_same_grid(earlier, later, context="earlier and later canopy rasters")
    if earlier.count != later.count:
        raise ValueError(f"Band counts differ ({earlier.count} vs {later.count})")

    a = earlier.data
    b = later.data
    valid = np.isfinite(a) & np.isfinite(b)
    if treat_zero_as_nodata:
        valid &= (a != 0) & (b != 0)

    diff = np.full(a.shape, np.nan)
    diff[valid] = b[valid] - a[valid]
    if treat_zero_as_nodata:
        diff[diff == 0] = np.nan

    n_valid = int(np.isfinite(diff).sum())
    print(f"[CHANGE] {n_valid} of {diff.size} cells hold a change value")
    return earlier.with_data(diff)


def _region_geometries(raster: Raster, region: Union[Region, BaseGeometry]):
    if isinstance(region, BaseGeometry):
        return [region]
    if region.crs is None:
        raise ValueError("Region geometries have no CRS; can't mask safely.")
    reprojected = region.to_crs(raster.crs)
    geoms = [g for g in reprojected.geometry if g is not None and not g.is_empty]
    if not geoms:
        raise ValueError("Region has no non-empty geometries.")
    return geoms


def _geometry_bounds(geoms) -> BBox:
    xs = [g.bounds for g in geoms]
    return (min(b[0] for b in xs), min(b[1] for b in xs), max(b[2] for b in xs), max(b[3] for b in xs))


def mask_to_region(raster: Raster, region: Union[Region, BaseGeometry], *, crop: bool = False) -> Raster:
    """Set every cell outside `region` to NaN.

    `region` may be a GeoDataFrame/GeoSeries (reprojected to the raster CRS)
    or a bare shapely geometry already in the raster CRS. With crop=True the
    raster is first cropped to the region bounds. A region that misses the
    raster leaves it uncropped and all NaN.
    """
    geoms = _region_geometries(raster, region)
    if crop:
        bounds = _geometry_bounds(geoms)
        if intersect_bbox(bounds, raster.bounds) is not None:
            raster = crop_to_bounds(raster, bounds, outward=True)

    inside = geometry_mask(
        geoms,
        out_shape=(raster.height, raster.width),
        transform=raster.transform,
        invert=True,
    )
    out = np.where(inside[np.newaxis, :, :], raster.data, np.nan)
    return raster.with_data(out)


def mask_to_regions(
    raster: Raster,
    regions: gpd.GeoDataFrame,
    name_field: str = "name",
    *,
    crop: bool = False,
) -> Dict[str, Raster]:
    """One masked raster per named region (rows sharing a name are combined)."""
    if name_field not in regions.columns:
        raise ValueError(f"Region field '{name_field}' not found. Available columns: {list(regions.columns)}")
    out: Dict[str, Raster] = {}
    for name, group in regions.groupby(name_field, sort=True):
        geoms = _region_geometries(raster, group)
        if intersect_bbox(_geometry_bounds(geoms), raster.bounds) is None:
            print(f"[MASK] region {name} outside raster, skipped")
            continue
        out[str(name)] = mask_to_region(raster, group, crop=crop)
        print(f"[MASK] region {name}")
    return out
