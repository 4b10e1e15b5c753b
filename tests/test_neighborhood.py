#!/usr/bin/env python3

from __future__ import annotations

import math
import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from canopy.raster.io import Raster
from canopy.structure.neighborhood import extract_neighborhood, iter_neighborhoods


def _grid():
    # value = row * 10 + col, top-left corner at (0, 10)
    data = np.add.outer(np.arange(10) * 10, np.arange(10)).astype(float)
    return Raster.from_array(data, origin=(0, 10))


def test_small_buffer_hits_one_cell():
    cells = extract_neighborhood(_grid(), Point(5.5, 5.5), radius=0.4)
    # (5.5, 5.5) is row 4, col 5
    assert cells.shape == (1, 1)
    assert cells[0, 0] == 45


def test_partially_covered_cells_are_included():
    cells = extract_neighborhood(_grid(), Point(5.5, 5.5), radius=1.2)
    assert sorted(cells[:, 0]) == [34, 35, 36, 44, 45, 46, 54, 55, 56]


def test_nodata_cells_are_kept_as_nan():
    r = _grid()
    data = r.data.copy()
    data[0, 4, 5] = np.nan
    cells = extract_neighborhood(r.with_data(data), Point(5.5, 5.5), radius=1.2)
    assert cells.shape == (9, 1)
    assert np.isnan(cells[:, 0]).sum() == 1


def test_multiband_rows_carry_every_band():
    r = _grid()
    stacked = r.with_data(np.stack([r.data[0], r.data[0] * 2, r.data[0] * 3]))
    cells = extract_neighborhood(stacked, Point(5.5, 5.5), radius=0.4)
    np.testing.assert_array_equal(cells, [[45, 90, 135]])


def test_point_outside_raster_is_empty():
    cells = extract_neighborhood(_grid(), Point(50, 50), radius=2)
    assert cells.shape == (0, 1)


def test_point_is_reprojected_into_raster_crs():
    lonlat = Point(-120.5, 38.5)
    projected = gpd.GeoSeries([lonlat], crs="EPSG:4326").to_crs("EPSG:32610").iloc[0]
    x0, y0 = math.floor(projected.x) - 5, math.floor(projected.y) + 5
    r = Raster.from_array(np.add.outer(np.arange(10) * 10, np.arange(10)).astype(float), origin=(x0, y0), crs="EPSG:32610")

    cells = extract_neighborhood(r, lonlat, radius=0.01, point_crs="EPSG:4326")
    row = int(y0 - projected.y)
    col = int(projected.x - x0)
    assert cells.shape == (1, 1)
    assert cells[0, 0] == row * 10 + col


def test_iter_neighborhoods_requires_crs():
    points = gpd.GeoDataFrame({"point_id": ["A"]}, geometry=[Point(5.5, 5.5)])
    with pytest.raises(ValueError, match="CRS"):
        list(iter_neighborhoods(_grid(), points, 1.0))

    points = points.set_crs("EPSG:32611")
    (row, cells), = list(iter_neighborhoods(_grid(), points, 0.4))
    assert row["point_id"] == "A"
    assert cells[0, 0] == 45
