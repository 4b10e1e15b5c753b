#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest
from scipy.stats import spearmanr

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from canopy.raster.correlate import correlate_histograms
from canopy.raster.io import Raster


def _histogram_raster(counts):
    """Stack min/max bands (0 m, 20 m) in front of a (bins, rows, cols) count array."""
    counts = np.asarray(counts, dtype=float)
    _, rows, cols = counts.shape
    lo = np.zeros((1, rows, cols))
    hi = np.full((1, rows, cols), 20.0)
    return Raster.from_array(np.concatenate([lo, hi, counts]), origin=(0, rows))


def _random_counts(seed, shape=(6, 3, 4)):
    return np.random.default_rng(seed).integers(0, 50, size=shape).astype(float)


def test_identical_rasters_correlate_perfectly():
    r = _histogram_raster(_random_counts(1))
    rho = correlate_histograms(r, r)
    assert rho.count == 1
    valid = np.isfinite(rho.data)
    assert valid.all()
    np.testing.assert_allclose(rho.data[valid], 1.0)


def test_matches_scipy_spearman():
    a, b = _random_counts(1), _random_counts(2)
    rho = correlate_histograms(_histogram_raster(a), _histogram_raster(b)).data[0]
    for i in range(a.shape[1]):
        for j in range(a.shape[2]):
            expected = spearmanr(a[:, i, j], b[:, i, j])[0]
            assert rho[i, j] == pytest.approx(expected)


def test_reversed_bins_correlate_negatively():
    a = np.arange(1, 6, dtype=float).reshape(5, 1, 1)
    rho = correlate_histograms(_histogram_raster(a), _histogram_raster(a[::-1])).data
    assert rho[0, 0, 0] == pytest.approx(-1.0)


def test_nodata_in_any_band_gives_nodata():
    a = _random_counts(3)
    b = _random_counts(4)
    b[2, 1, 1] = np.nan
    first = _histogram_raster(a)
    second_data = _histogram_raster(b).data.copy()
    second_data[1, 0, 3] = np.nan  # max-height band
    rho = correlate_histograms(first, first.with_data(second_data)).data[0]
    assert np.isnan(rho[1, 1])
    assert np.isnan(rho[0, 3])
    assert np.isfinite(rho).sum() == rho.size - 2


def test_constant_histogram_gives_nodata():
    a = np.ones((4, 1, 1))
    b = np.arange(4, dtype=float).reshape(4, 1, 1)
    rho = correlate_histograms(_histogram_raster(a), _histogram_raster(b)).data
    assert np.isnan(rho[0, 0, 0])


def test_mismatched_inputs_are_rejected():
    r = _histogram_raster(_random_counts(1))
    with pytest.raises(ValueError, match="band counts"):
        correlate_histograms(r, _histogram_raster(_random_counts(1, shape=(5, 3, 4))))
    shifted = Raster(data=r.data, transform=Raster.from_array(r.data, origin=(1, 3)).transform, crs=r.crs)
    with pytest.raises(ValueError, match="Grid mismatch"):
        correlate_histograms(r, shifted)
