#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from canopy.raster.align import align_pair, align_to
from canopy.raster.io import Raster, assert_same_grid, crop_to_bounds, same_grid


def test_same_grid_is_a_no_op():
    data = np.arange(16, dtype=float).reshape(4, 4)
    r = Raster.from_array(data, origin=(0, 4))
    out = align_to(r, r, method="nearest")
    assert same_grid(out, r)
    np.testing.assert_array_equal(out.data[0], data)


def test_resample_onto_coarser_grid():
    source = Raster.from_array(np.full((4, 4), 5.0), origin=(0, 4), res=1.0)
    target = Raster.from_array(np.zeros((2, 2)), origin=(0, 4), res=2.0)
    out = align_to(source, target, method="nearest")
    assert same_grid(out, target)
    np.testing.assert_array_equal(out.data[0], [[5, 5], [5, 5]])


def test_result_is_cropped_to_shared_extent():
    source = Raster.from_array(np.full((4, 2), 3.0), origin=(0, 4), res=1.0)
    target = Raster.from_array(np.zeros((2, 2)), origin=(0, 4), res=2.0)
    out = align_to(source, target, method="nearest")
    assert out.bounds == (0, 0, 2, 4)
    assert out.data.shape == (1, 2, 1)
    np.testing.assert_array_equal(out.data[0, :, 0], [3, 3])


def test_align_pair_returns_matching_grids():
    source = Raster.from_array(np.full((4, 2), 3.0), origin=(0, 4), res=1.0)
    target = Raster.from_array(np.arange(4, dtype=float).reshape(2, 2), origin=(0, 4), res=2.0)
    aligned, cropped = align_pair(source, target, method="nearest")
    assert_same_grid(aligned, cropped)
    np.testing.assert_array_equal(cropped.data[0, :, 0], [0, 2])


def test_bilinear_keeps_constant_field():
    source = Raster.from_array(np.full((8, 8), 2.5), origin=(0, 8), res=1.0)
    target = Raster.from_array(np.zeros((4, 4)), origin=(0, 8), res=2.0)
    out = align_to(source, target)
    interior = out.data[0, 1:3, 1:3]
    np.testing.assert_allclose(interior, 2.5)


def test_bad_inputs():
    r = Raster.from_array(np.ones((2, 2)), origin=(0, 2))
    far = Raster.from_array(np.ones((2, 2)), origin=(100, 102))
    with pytest.raises(ValueError, match="method"):
        align_to(r, r, method="cubic")
    with pytest.raises(ValueError, match="overlap"):
        align_to(far, r)


def test_crop_to_bounds_snaps_to_grid():
    r = Raster.from_array(np.arange(16, dtype=float).reshape(4, 4), origin=(0, 4))
    c = crop_to_bounds(r, (1.1, 0.9, 2.9, 3.05))
    assert c.bounds == (1, 1, 3, 3)
    np.testing.assert_array_equal(c.data[0], [[5, 6], [9, 10]])
    c = crop_to_bounds(r, (1.1, 0.9, 2.9, 3.05), outward=True)
    assert c.bounds == (1, 0, 3, 4)


def test_crop_to_disjoint_bounds_raises():
    r = Raster.from_array(np.ones((4, 4)), origin=(0, 4))
    with pytest.raises(ValueError, match="do not overlap"):
        crop_to_bounds(r, (100, 100, 110, 110))
    with pytest.raises(ValueError, match="do not overlap"):
        crop_to_bounds(r, (4, 0, 6, 4), outward=True)


def test_crop_to_bounds_clips_to_raster_extent():
    r = Raster.from_array(np.arange(16, dtype=float).reshape(4, 4), origin=(0, 4))
    c = crop_to_bounds(r, (-3.2, 2.5, 1.4, 9.0), outward=True)
    assert c.bounds == (0, 2, 2, 4)
    np.testing.assert_array_equal(c.data[0], [[0, 1], [4, 5]])
