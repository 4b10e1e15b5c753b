#!/usr/bin/env python3
"""canopy.vectors

Load the vector inputs of the analysis: survey points (CSV) and site polygons.

Notes:
- Site/station codes are normalized so "07", 7 and " 7 " match when tables are joined.
- Polygon layers must carry a CRS; everything downstream depends on it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import geopandas as gpd
import pandas as pd


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def normalize_code(x) -> str:
    """Normalize a site or station code to a comparable string.

    Handles ints, '07', ' 7 ', 'sjr1', etc. Purely numeric codes lose leading
    zeros; everything else is upper-cased. Returns empty string for missing input.
    """
    if x is None:
        return ""
    try:
        if pd.isna(x):
            return ""
    except (TypeError, ValueError):
        pass
    if isinstance(x, float) and x.is_integer():
        x = int(x)
    s = str(x).strip()
    if not s:
        return ""
    if s.isdigit():
        return str(int(s))
    return s.upper()


def require_columns(df: pd.DataFrame, columns, source: Path) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{source} is missing columns {missing}. Available columns: {list(df.columns)}")


def _make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Fix invalid geometries (self-intersecting site outlines are common)."""
    gdf = gdf.copy()
    gdf["geometry"] = gdf.geometry.make_valid()
    return gdf


def read_table(path: Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise SystemExit(f"Table not found: {path}")
    try:
        return pd.read_csv(path)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise SystemExit(f"Failed to read table {path}: {e}") from e


# -----------------------------------------------------------------------------
# Survey points
# -----------------------------------------------------------------------------

def load_survey_points(
    csv_path: Path,
    *,
    id_field: str = "station",
    lon_field: str = "longitude",
    lat_field: str = "latitude",
    site_field: Optional[str] = "site",
    crs: str = "EPSG:4326",
) -> gpd.GeoDataFrame:
    """Read survey stations from a CSV with coordinate columns.

    Returns a GeoDataFrame with canonical `point_id` and `site` columns (plus
    every original column). Rows without coordinates are dropped.
    """
    df = read_table(csv_path)
    required = [id_field, lon_field, lat_field] + ([site_field] if site_field else [])
    require_columns(df, required, Path(csv_path))

    df = df.copy()
    df[lon_field] = pd.to_numeric(df[lon_field], errors="coerce")
    df[lat_field] = pd.to_numeric(df[lat_field], errors="coerce")
    has_coords = df[lon_field].notna() & df[lat_field].notna()
    if not has_coords.all():
        print(f"[POINTS] dropping {int((~has_coords).sum())} rows without coordinates from {csv_path}")
        df = df[has_coords]

    df["point_id"] = df[id_field].map(normalize_code)
    df["site"] = df[site_field].map(normalize_code) if site_field else ""

    gdf = gpd.GeoDataFrame(
        df,
        geometry=gpd.points_from_xy(df[lon_field], df[lat_field]),
        crs=crs,
    )
    print(f"[POINTS] loaded {len(gdf)} survey points from {csv_path}")
    return gdf


# -----------------------------------------------------------------------------
# Site polygons
# -----------------------------------------------------------------------------

def load_site_polygons(path: Path, name_field: str = "name", layer: Optional[str] = None) -> gpd.GeoDataFrame:
    """Read site polygons (woodland, channel, restoration, ...) and clean geometries.

    Raises:
        SystemExit: missing file, zero features or no CRS.
        ValueError: `name_field` not present.
    """
    path = Path(path)
    if not path.exists():
        raise SystemExit(f"Site polygons not found: {path}")

    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    if gdf.empty:
        raise SystemExit(f"Loaded {path} but it contains zero features. Wrong file?")
    if gdf.crs is None:
        raise SystemExit(
            f"{path} has no CRS (.prj missing or unreadable). "
            "Fix that first; everything downstream depends on CRS."
        )
    if name_field not in gdf.columns:
        raise ValueError(f"Site name field '{name_field}' not found. Available columns: {list(gdf.columns)}")

    gdf = _make_valid(gdf)
    gdf = gdf[~gdf.geometry.is_empty & gdf.geometry.notna()].copy()
    return gdf
