#!/usr/bin/env python3
"""canopy.config

Shared configuration utilities for the canopy CLI subsystems.

This module provides common helpers used across canopy.raster,
canopy.structure and canopy.model. Centralizing these avoids duplication and
keeps every stage reading its numeric parameters from the same place.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- User YAML is deep-merged over DEFAULT_CONFIG, so partial files are fine.
- Parameter objects validate themselves; bad values raise ValueError.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml


BBox = Tuple[float, float, float, float]


# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
# Every number the analysis uses lives here, not in the stage modules.

DEFAULT_CONFIG: Dict[str, Any] = {
    "mosaic": {
        "pattern": "*histogram.tif",
        "on_error": "abort",
    },
    "filter": {
        "kernel_half_width": 12,
        "percentile": 70.0,
        "threshold": 10.0,
        "block_rows": None,
    },
    "align": {
        "method": "bilinear",
    },
    "change": {
        "treat_zero_as_nodata": True,
        "region_field": "name",
    },
    "histogram": {
        "radius": 50.0,
        "min_height": 0.0,
        "max_height": 40.0,
        "bin_count": 40,
        "bin_offset": 2,
    },
    "survey": {
        "id_field": "station",
        "lon_field": "longitude",
        "lat_field": "latitude",
        "site_field": "site",
        "crs": "EPSG:4326",
    },
    "abundance": {
        "columns": {
            "site": "site",
            "year": "year",
            "species": "species",
            "total_birds": "total_birds",
            "relative_abundance_index": "relative_abundance_index",
        },
        "response": "relative_abundance_index",
    },
    "strata": [
        {"name": "understory", "lower": 0.0, "upper": 2.0},
        {"name": "midstory", "lower": 2.0, "upper": 5.0},
        {"name": "lower_canopy", "lower": 5.0, "upper": 10.0},
        {"name": "upper_canopy", "lower": 10.0, "upper": None},
    ],
}


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def load_analysis_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Return DEFAULT_CONFIG with the YAML at `path` merged over it.

    `path=None` means "defaults only". A path that does not exist is an error,
    except for the default path, which is optional so the CLIs work out of the box.
    """
    if path is None:
        return copy.deepcopy(DEFAULT_CONFIG)
    if not path.exists() and path == DEFAULT_CONFIG_YAML:
        return copy.deepcopy(DEFAULT_CONFIG)
    return _deep_merge(DEFAULT_CONFIG, load_yaml(path))


# -----------------------------------------------------------------------------
# Parameter objects
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class FilterParams:
    """Power-line filter settings (25x25 window, 70th percentile, 10 m by default)."""

    kernel_half_width: int = 12
    percentile: float = 70.0
    threshold: float = 10.0
    block_rows: Optional[int] = None

    def __post_init__(self) -> None:
        if int(self.kernel_half_width) < 0:
            raise ValueError(f"kernel_half_width must be >= 0, got {self.kernel_half_width}")
        if not 0.0 <= float(self.percentile) <= 100.0:
            raise ValueError(f"percentile must be within 0..100, got {self.percentile}")
        if self.block_rows is not None and int(self.block_rows) < 1:
            raise ValueError(f"block_rows must be >= 1, got {self.block_rows}")


@dataclass(frozen=True)
class HistogramParams:
    """Fixed height bins shared by every point and year."""

    min_height: float = 0.0
    max_height: float = 40.0
    bin_count: int = 40
    radius: float = 50.0
    bin_offset: int = 2

    def __post_init__(self) -> None:
        if not float(self.min_height) < float(self.max_height):
            raise ValueError(
                f"min_height must be < max_height, got {self.min_height} >= {self.max_height}"
            )
        if int(self.bin_count) < 1:
            raise ValueError(f"bin_count must be >= 1, got {self.bin_count}")
        if float(self.radius) <= 0:
            raise ValueError(f"radius must be > 0, got {self.radius}")

    @property
    def bin_width(self) -> float:
        return (self.max_height - self.min_height) / self.bin_count


@dataclass(frozen=True)
class Stratum:
    """A named height band [lower, upper); upper=inf means open-ended."""

    name: str
    lower: float
    upper: float = math.inf

    def contains(self, height: float) -> bool:
        return self.lower <= height < self.upper


def filter_params(cfg: Dict[str, Any]) -> FilterParams:
    f = cfg.get("filter", {})
    block_rows = f.get("block_rows")
    return FilterParams(
        kernel_half_width=int(f.get("kernel_half_width", 12)),
        percentile=float(f.get("percentile", 70.0)),
        threshold=float(f.get("threshold", 10.0)),
        block_rows=int(block_rows) if block_rows is not None else None,
    )


def histogram_params(cfg: Dict[str, Any]) -> HistogramParams:
    h = cfg.get("histogram", {})
    return HistogramParams(
        min_height=float(h.get("min_height", 0.0)),
        max_height=float(h.get("max_height", 40.0)),
        bin_count=int(h.get("bin_count", 40)),
        radius=float(h.get("radius", 50.0)),
        bin_offset=int(h.get("bin_offset", 2)),
    )


def strata_from_config(cfg: Dict[str, Any]) -> List[Stratum]:
    """Build the stratum list, sorted by lower bound.

    Expects structure like:
        strata:
          - name: understory
            lower: 0
            upper: 2

    Raises ValueError on missing names, empty bands or overlaps.
    """
    raw = cfg.get("strata")
    if not isinstance(raw, list) or not raw:
        raise ValueError("Config must have a non-empty 'strata:' list.")

    strata: List[Stratum] = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ValueError(f"Stratum entry needs a name: {entry}")
        upper = entry.get("upper")
        s = Stratum(
            name=str(entry["name"]),
            lower=float(entry.get("lower", 0.0)),
            upper=math.inf if upper is None else float(upper),
        )
        if not s.lower < s.upper:
            raise ValueError(f"Stratum {s.name} has lower >= upper ({s.lower} >= {s.upper})")
        strata.append(s)

    strata.sort(key=lambda s: s.lower)
    names = [s.name for s in strata]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate stratum names: {names}")
    for prev, nxt in zip(strata, strata[1:]):
        if nxt.lower < prev.upper:
            raise ValueError(f"Strata {prev.name} and {nxt.name} overlap")
    return strata


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------
# Used by the mosaic (extent union) and aligner (extent intersection).

def union_bbox(bboxes: Iterable[BBox]) -> Optional[BBox]:
    """Compute the bounding box that contains all input bboxes.

    Returns None if input is empty.
    """
    bboxes = list(bboxes)
    if not bboxes:
        return None
    xmin = min(b[0] for b in bboxes)
    ymin = min(b[1] for b in bboxes)
    xmax = max(b[2] for b in bboxes)
    ymax = max(b[3] for b in bboxes)
    return (xmin, ymin, xmax, ymax)


def intersect_bbox(a: BBox, b: BBox) -> Optional[BBox]:
    """Overlap of two bboxes, or None if they don't overlap."""
    xmin = max(a[0], b[0])
    ymin = max(a[1], b[1])
    xmax = min(a[2], b[2])
    ymax = min(a[3], b[3])
    if xmin >= xmax or ymin >= ymax:
        return None
    return (xmin, ymin, xmax, ymax)


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_CONFIG_YAML = Path("config/analysis.yaml")
