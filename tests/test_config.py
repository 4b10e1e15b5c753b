#!/usr/bin/env python3

from __future__ import annotations

import math
import sys
from pathlib import Path

import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from canopy import config as cfg


def test_defaults_match_analysis_parameters():
    c = cfg.load_analysis_config(None)
    p = cfg.filter_params(c)
    assert (p.kernel_half_width, p.percentile, p.threshold) == (12, 70.0, 10.0)
    assert [s.name for s in cfg.strata_from_config(c)] == ["understory", "midstory", "lower_canopy", "upper_canopy"]


def test_partial_yaml_is_merged_over_defaults(tmp_path):
    path = tmp_path / "analysis.yaml"
    path.write_text("filter:\n  threshold: 4\nhistogram:\n  bin_count: 8\n")
    c = cfg.load_analysis_config(path)
    assert cfg.filter_params(c).threshold == 4.0
    assert cfg.filter_params(c).kernel_half_width == 12
    assert cfg.histogram_params(c).bin_count == 8
    assert cfg.histogram_params(c).max_height == 40.0


def test_missing_or_bad_yaml_fails_fast(tmp_path):
    with pytest.raises(SystemExit):
        cfg.load_analysis_config(tmp_path / "nope.yaml")
    bad = tmp_path / "list.yaml"
    bad.write_text("- 1\n- 2\n")
    with pytest.raises(SystemExit):
        cfg.load_yaml(bad)


def test_filter_params_validation():
    with pytest.raises(ValueError):
        cfg.FilterParams(percentile=101)
    with pytest.raises(ValueError):
        cfg.FilterParams(kernel_half_width=-1)
    with pytest.raises(ValueError):
        cfg.FilterParams(block_rows=0)


def test_histogram_params_validation():
    with pytest.raises(ValueError):
        cfg.HistogramParams(min_height=5, max_height=5)
    with pytest.raises(ValueError):
        cfg.HistogramParams(bin_count=0)
    assert cfg.HistogramParams(min_height=0, max_height=10, bin_count=5).bin_width == 2.0


def test_strata_open_upper_and_overlap():
    strata = cfg.strata_from_config({"strata": [{"name": "top", "lower": 10}, {"name": "low", "lower": 0, "upper": 10}]})
    assert [s.name for s in strata] == ["low", "top"]
    assert strata[1].upper == math.inf
    assert strata[1].contains(55.0)
    assert not strata[0].contains(10.0)

    with pytest.raises(ValueError):
        cfg.strata_from_config({"strata": [{"name": "a", "lower": 0, "upper": 5}, {"name": "b", "lower": 4, "upper": 8}]})


def test_bbox_helpers():
    assert cfg.union_bbox([(0, 0, 1, 1), (2, -1, 3, 0.5)]) == (0, -1, 3, 1)
    assert cfg.union_bbox([]) is None
    assert cfg.intersect_bbox((0, 0, 2, 2), (1, 1, 3, 3)) == (1, 1, 2, 2)
    assert cfg.intersect_bbox((0, 0, 1, 1), (1, 0, 2, 1)) is None
    assert cfg.format_bbox((0, 0, 1, 1), precision=1) == "[0.0, 0.0, 1.0, 1.0]"
