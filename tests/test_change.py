#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from canopy.raster.change import compute_change, mask_to_region, mask_to_regions
from canopy.raster.io import Raster
from canopy.raster.powerline import filter_artifacts

nan = np.nan


def _random_chm(seed):
    rng = np.random.default_rng(seed)
    data = rng.uniform(0, 30, size=(6, 7)).round(1)
    data[0, 0] = 0.0
    data[3, 4] = nan
    return Raster.from_array(data)


def test_change_against_itself_is_all_nodata():
    a = _random_chm(1)
    assert np.isnan(compute_change(a, a).data).all()


def test_change_is_antisymmetric():
    a, b = _random_chm(1), _random_chm(2)
    ab = compute_change(a, b).data
    ba = compute_change(b, a).data
    np.testing.assert_array_equal(np.isnan(ab), np.isnan(ba))
    valid = np.isfinite(ab)
    assert valid.any()
    np.testing.assert_array_equal(ab[valid], -ba[valid])


def test_zero_handling_is_configurable():
    a = Raster.from_array([[0.0, 2.0, 3.0]])
    b = Raster.from_array([[4.0, 2.0, 5.0]])
    np.testing.assert_array_equal(compute_change(a, b).data[0], [[nan, nan, 2.0]])
    np.testing.assert_array_equal(compute_change(a, b, treat_zero_as_nodata=False).data[0], [[4.0, 0.0, 2.0]])


def test_misaligned_rasters_are_rejected():
    a = Raster.from_array(np.ones((2, 2)), origin=(0, 2))
    with pytest.raises(ValueError, match="transform"):
        compute_change(a, Raster.from_array(np.ones((2, 2)), origin=(1, 2)))
    with pytest.raises(ValueError, match="CRS"):
        compute_change(a, Raster.from_array(np.ones((2, 2)), origin=(0, 2), crs="EPSG:32610"))
    with pytest.raises(ValueError, match="shape"):
        compute_change(a, Raster.from_array(np.ones((3, 2)), origin=(0, 2)))


def test_filter_then_change_matches_hand_computed_grid():
    earlier = Raster.from_array(
        [
            [1.0, 1.0, 1.0],
            [1.0, 9.0, 1.0],
            [1.0, 1.0, 1.0],
        ]
    )
    later = Raster.from_array(
        [
            [1.0, 3.0, 2.0],
            [3.0, 4.0, 3.0],
            [2.0, 3.0, 2.0],
        ]
    )
    f_earlier = filter_artifacts(earlier, kernel_half_width=1, percentile=50, threshold=2)
    f_later = filter_artifacts(later, kernel_half_width=1, percentile=50, threshold=2)

    # 9 sits 8 above the median of its neighbours (1): removed
    np.testing.assert_array_equal(
        f_earlier.data[0],
        [
            [1.0, 1.0, 1.0],
            [1.0, nan, 1.0],
            [1.0, 1.0, 1.0],
        ],
    )
    # every later cell is within 2 of its neighbourhood median
    np.testing.assert_array_equal(f_later.data, later.data)

    change = compute_change(f_earlier, f_later)
    np.testing.assert_array_equal(
        change.data[0],
        [
            [nan, 2.0, 1.0],
            [2.0, nan, 2.0],
            [1.0, 2.0, 1.0],
        ],
    )


def test_mask_to_region_geometry():
    r = Raster.from_array(np.arange(16, dtype=float).reshape(4, 4), origin=(0, 4))
    out = mask_to_region(r, box(0, 0, 2, 2))
    np.testing.assert_array_equal(
        out.data[0],
        [
            [nan, nan, nan, nan],
            [nan, nan, nan, nan],
            [8.0, 9.0, nan, nan],
            [12.0, 13.0, nan, nan],
        ],
    )
    cropped = mask_to_region(r, box(0, 0, 2, 2), crop=True)
    assert cropped.bounds == (0, 0, 2, 2)
    np.testing.assert_array_equal(cropped.data[0], [[8, 9], [12, 13]])


def test_mask_to_regions_by_name():
    r = Raster.from_array(np.ones((4, 4)), origin=(0, 4))
    sites = gpd.GeoDataFrame(
        {"name": ["woodland", "channel"]},
        geometry=[box(0, 0, 2, 4), box(2, 0, 4, 2)],
        crs="EPSG:32611",
    )
    masked = mask_to_regions(r, sites)
    assert sorted(masked) == ["channel", "woodland"]
    assert np.isfinite(masked["woodland"].data).sum() == 8
    assert np.isfinite(masked["channel"].data).sum() == 4

    with pytest.raises(ValueError, match="region_code"):
        mask_to_regions(r, sites, name_field="region_code")


def test_region_outside_raster_is_skipped(capsys):
    r = Raster.from_array(np.ones((4, 4)), origin=(0, 4))
    sites = gpd.GeoDataFrame(
        {"name": ["woodland", "restoration"]},
        geometry=[box(0, 0, 2, 4), box(100, 100, 110, 110)],
        crs="EPSG:32611",
    )
    masked = mask_to_regions(r, sites, crop=True)
    assert list(masked) == ["woodland"]
    assert masked["woodland"].bounds == (0, 0, 2, 4)
    assert np.isfinite(masked["woodland"].data).all()
    assert "region restoration outside raster, skipped" in capsys.readouterr().out


def test_mask_to_disjoint_geometry_is_all_nodata():
    r = Raster.from_array(np.ones((4, 4)), origin=(0, 4))
    out = mask_to_region(r, box(100, 100, 110, 110), crop=True)
    assert out.data.shape == (1, 4, 4)
    assert np.isnan(out.data).all()
