#!/usr/bin/env python3
"""io.py

In-memory raster type plus GeoTIFF read/write and grid helpers.

Every stage in canopy.raster and canopy.structure passes `Raster` objects
around instead of open datasets:
- data is always a 3-D float64 array (bands, rows, cols)
- NaN is the only no-data marker (file nodata values are converted on read)
- rasters are never modified after construction; each stage builds a new one

Required deps (typical conda geo stack): rasterio, numpy
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.errors import RasterioIOError, WindowError
from rasterio.transform import Affine, array_bounds, from_origin
from rasterio.windows import Window, from_bounds
from rasterio.windows import transform as window_transform

from canopy.config import BBox


# Tolerance for comparing transforms / resolutions (in CRS units)
GRID_TOLERANCE = 1e-6


@dataclass(frozen=True, eq=False)
class Raster:
    data: np.ndarray
    transform: Affine
    crs: Optional[CRS]

    def __post_init__(self) -> None:
        data = np.asarray(self.data, dtype="float64")
        if data.ndim == 2:
            data = data[np.newaxis, :, :]
        if data.ndim != 3:
            raise ValueError(f"Raster data must be 2-D or 3-D, got shape {data.shape}")
        object.__setattr__(self, "data", data)

    @classmethod
    def from_array(
        cls,
        array: Any,
        *,
        origin: Tuple[float, float] = (0.0, 0.0),
        res: float = 1.0,
        crs: Any = "EPSG:32611",
    ) -> "Raster":
        """Build a north-up raster whose top-left corner sits at `origin` (x, y)."""
        return cls(
            data=np.asarray(array, dtype="float64"),
            transform=from_origin(origin[0], origin[1], res, res),
            crs=CRS.from_user_input(crs) if crs is not None else None,
        )

    @property
    def count(self) -> int:
        return self.data.shape[0]

    @property
    def height(self) -> int:
        return self.data.shape[1]

    @property
    def width(self) -> int:
        return self.data.shape[2]

    @property
    def res(self) -> Tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def bounds(self) -> BBox:
        """(xmin, ymin, xmax, ymax) in the raster's CRS."""
        west, south, east, north = array_bounds(self.height, self.width, self.transform)
        return (west, south, east, north)

    def with_data(self, data: np.ndarray) -> "Raster":
        """New raster on the same grid."""
        return Raster(data=data, transform=self.transform, crs=self.crs)


# -----------------------------------------------------------------------------
# Read / write
# -----------------------------------------------------------------------------

def read_raster(path: Path, bands: Optional[Sequence[int]] = None) -> Raster:
    """Read a GeoTIFF (all bands unless `bands` given) into a Raster.

    Raises SystemExit naming the file when it is missing or unreadable.
    """
    path = Path(path)
    if not path.exists():
        raise SystemExit(f"Raster not found: {path}")
    try:
        with rasterio.open(path) as src:
            if src.crs is None:
                raise SystemExit(f"Raster has no CRS: {path}")
            indexes = list(bands) if bands is not None else None
            masked = src.read(indexes=indexes, masked=True)
            data = masked.astype("float64").filled(np.nan)
            return Raster(data=data, transform=src.transform, crs=src.crs)
    except RasterioIOError as e:
        raise SystemExit(f"Failed to read raster {path}: {e}") from e


def write_raster(raster: Raster, path: Path) -> Path:
    """Write a Raster as a tiled, deflate-compressed float32 GeoTIFF."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    profile = {
        "driver": "GTiff",
        "height": raster.height,
        "width": raster.width,
        "count": raster.count,
        "dtype": "float32",
        "crs": raster.crs,
        "transform": raster.transform,
        "nodata": np.nan,
        "tiled": True,
        "compress": "deflate",
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(raster.data.astype("float32"))
    return path


# -----------------------------------------------------------------------------
# Grid checks
# -----------------------------------------------------------------------------

def grid_mismatch(a: Raster, b: Raster) -> Optional[str]:
    """Describe the first grid property where a and b differ, or None if they match."""
    if a.crs != b.crs:
        return f"CRS differs ({a.crs} vs {b.crs})"
    if (a.height, a.width) != (b.height, b.width):
        return f"shape differs ({a.height}x{a.width} vs {b.height}x{b.width})"
    if not np.allclose(tuple(a.transform)[:6], tuple(b.transform)[:6], rtol=0.0, atol=GRID_TOLERANCE):
        return f"transform differs ({tuple(a.transform)[:6]} vs {tuple(b.transform)[:6]})"
    return None


def same_grid(a: Raster, b: Raster) -> bool:
    return grid_mismatch(a, b) is None


def assert_same_grid(a: Raster, b: Raster, context: str = "rasters") -> None:
    """Raise ValueError unless a and b share CRS, shape and transform."""
    problem = grid_mismatch(a, b)
    if problem:
        raise ValueError(f"Grid mismatch between {context}: {problem}. Align them first (align_pair).")


# -----------------------------------------------------------------------------
# Cropping
# -----------------------------------------------------------------------------

def _snap(window: Window, outward: bool) -> Window:
    (row0, row1), (col0, col1) = window.toranges()
    if outward:
        row0, row1 = math.floor(row0), math.ceil(row1)
        col0, col1 = math.floor(col0), math.ceil(col1)
    else:
        row0, row1 = int(round(row0)), int(round(row1))
        col0, col1 = int(round(col0)), int(round(col1))
    return Window(col0, row0, col1 - col0, row1 - row0)


def bounds_to_window(raster: Raster, bounds: BBox, *, outward: bool = False) -> Window:
    """Snap bounds to the raster's pixel grid and clip to its extent.

    By default edges are rounded to the nearest pixel edge, so bounds that
    already sit on the grid map exactly. With outward=True the window grows to
    include every pixel the bounds touch.

    Raises ValueError when the bounds miss the raster.
    """
    window = _snap(from_bounds(*bounds, transform=raster.transform), outward)
    full = Window(0, 0, raster.width, raster.height)
    try:
        window = full.intersection(window)
    except WindowError:
        window = None
    if window is None or window.width < 1 or window.height < 1:
        raise ValueError(f"Bounds {bounds} do not overlap raster extent {raster.bounds}")
    return window


def crop_window(raster: Raster, window: Window) -> Raster:
    rows, cols = window.toslices()
    return Raster(
        data=raster.data[:, rows, cols].copy(),
        transform=window_transform(window, raster.transform),
        crs=raster.crs,
    )


def crop_to_bounds(raster: Raster, bounds: BBox, *, outward: bool = False) -> Raster:
    """Crop to `bounds` (in the raster's CRS), snapped to the raster's own grid."""
    return crop_window(raster, bounds_to_window(raster, bounds, outward=outward))
