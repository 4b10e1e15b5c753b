#!/usr/bin/env python3
"""mosaic.py

Fold a directory of overlapping tile rasters into one raster per year.

Where tiles overlap, the per-pixel maximum is kept. The fold is a pure
left-reduce over `max_composite`, which is commutative and associative, so the
order tiles are listed in never changes the result.

Called by:
  python -m canopy.raster mosaic --tiles-dir data/veg_rasters_2018 --out outputs/histogram_2018_mosaic.tif

Tiles must already share a CRS and pixel grid; nothing is reprojected here.
"""

from __future__ import annotations

from functools import reduce
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
from rasterio.transform import from_origin

from canopy.config import format_bbox, union_bbox
from canopy.raster.io import GRID_TOLERANCE, Raster, read_raster


ON_ERROR_POLICIES = ("abort", "skip")


def _check_compatible(acc: Raster, tile: Raster) -> None:
    if acc.crs != tile.crs:
        raise ValueError(f"Cannot mosaic tiles with different CRS ({acc.crs} vs {tile.crs})")
    if acc.count != tile.count:
        raise ValueError(f"Cannot mosaic tiles with different band counts ({acc.count} vs {tile.count})")
    if not np.allclose(acc.res, tile.res, rtol=0.0, atol=GRID_TOLERANCE):
        raise ValueError(f"Cannot mosaic tiles with different resolutions ({acc.res} vs {tile.res})")

    # Grid phase: origins must differ by a whole number of pixels
    xres, yres = acc.res
    for delta, res in ((tile.transform.c - acc.transform.c, xres), (tile.transform.f - acc.transform.f, yres)):
        steps = delta / res
        if abs(steps - round(steps)) > GRID_TOLERANCE:
            raise ValueError(
                "Cannot mosaic tiles whose pixel grids are offset by a fraction of a pixel "
                f"({acc.transform.c}, {acc.transform.f}) vs ({tile.transform.c}, {tile.transform.f})"
            )


def max_composite(acc: Optional[Raster], tile: Raster) -> Raster:
    """Combine two rasters, keeping the per-pixel maximum.

    `acc=None` is the empty mosaic and yields `tile` unchanged. Otherwise the
    result covers the union of both extents; NaN loses to any value, so cells
    covered by only one input keep that input's value.
    """
    if acc is None:
        return tile
    _check_compatible(acc, tile)

    xres, yres = acc.res
    xmin, ymin, xmax, ymax = union_bbox([acc.bounds, tile.bounds])  # type: ignore[misc]
    width = int(round((xmax - xmin) / xres))
    height = int(round((ymax - ymin) / yres))

    out = np.full((acc.count, height, width), np.nan, dtype="float64")
    for r in (acc, tile):
        col = int(round((r.bounds[0] - xmin) / xres))
        row = int(round((ymax - r.bounds[3]) / yres))
        view = out[:, row:row + r.height, col:col + r.width]
        out[:, row:row + r.height, col:col + r.width] = np.fmax(view, r.data)

    return Raster(data=out, transform=from_origin(xmin, ymax, xres, yres), crs=acc.crs)


def _load_tile(path: Path, on_error: str) -> Optional[Raster]:
    print(f"  Loading a new image from {path}")
    try:
        return read_raster(path)
    except SystemExit as e:
        if on_error == "skip":
            print(f"  - warning: skipping tile: {e}")
            return None
        raise


def build_mosaic(tile_paths: Sequence[Path], *, on_error: str = "abort") -> Raster:
    """Read every tile and max-composite them into one raster.

    Parameters
    ----------
    tile_paths : list[Path]
        Tile GeoTIFFs, all in the same CRS and pixel grid.
    on_error : "abort" | "skip"
        "abort" (default) stops on the first unreadable tile, naming it.
        "skip" prints a warning per bad tile and carries on.

    Raises
    ------
    SystemExit
        No tiles given, a tile unreadable under "abort", or nothing readable under "skip".
    ValueError
        Tiles on incompatible grids.
    """
    if on_error not in ON_ERROR_POLICIES:
        raise ValueError(f"on_error must be one of {ON_ERROR_POLICIES}, got {on_error!r}")
    paths = [Path(p) for p in tile_paths]
    if not paths:
        raise SystemExit("No tiles to mosaic.")

    print(f"[MOSAIC] Starting to construct raster from {len(paths)} input rasters.")
    tiles = (_load_tile(p, on_error) for p in paths)
    mosaic = reduce(
        lambda acc, tile: acc if tile is None else max_composite(acc, tile),
        tiles,
        None,
    )
    if mosaic is None:
        raise SystemExit(f"None of the {len(paths)} tiles could be read.")

    print(f"[MOSAIC] Mosaic is {mosaic.height}x{mosaic.width} ({mosaic.count} bands), bounds {format_bbox(mosaic.bounds, 2)}")
    return mosaic


def list_tiles(directory: Path, pattern: str = "*histogram.tif") -> List[Path]:
    """Sorted tile paths in `directory` matching `pattern`."""
    directory = Path(directory)
    if not directory.is_dir():
        raise SystemExit(f"Tile directory not found: {directory}")
    return sorted(directory.glob(pattern))


def mosaic_directory(directory: Path, pattern: str = "*histogram.tif", *, on_error: str = "abort") -> Raster:
    """Mosaic every tile in one year's directory."""
    paths = list_tiles(directory, pattern)
    if not paths:
        raise SystemExit(f"No tiles matching {pattern!r} in {directory}")
    return build_mosaic(paths, on_error=on_error)

