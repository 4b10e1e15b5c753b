#!/usr/bin/env python3
"""canopy.structure

Vegetation-structure CLI: per-point height histograms.

This is one of several canopy subsystem CLIs:
- canopy.raster    → mosaics, power-line filter, alignment, change, correlation
- canopy.structure → survey-point neighbourhoods and height histograms (this file)
- canopy.model     → stratum aggregation and bird abundance regressions

Examples:
  # Max-return histograms from a filtered canopy height model
  python -m canopy.structure histograms --raster outputs/chm_2015_filtered.tif \
    --points data/point_count_stations.csv --year 2015 --out outputs/hist_chm_2015.csv

  # Collapse the multi-band return histograms around each station
  python -m canopy.structure histograms --raster outputs/histogram_2018_mosaic.tif \
    --points data/point_count_stations.csv --year 2018 --mode multiband \
    --out outputs/hist_returns_2018.csv
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from canopy.config import (
    DEFAULT_CONFIG_YAML,
    HistogramParams,
    histogram_params,
    load_analysis_config,
)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="canopy.structure", description="Per-point vegetation structure histograms")

    ap.add_argument("--config", type=Path, default=DEFAULT_CONFIG_YAML, help=f"Path to analysis YAML (default: {DEFAULT_CONFIG_YAML})")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- histograms ---
    hist = sub.add_parser("histograms", help="Bin raster cells around each survey point")
    hist.add_argument("--raster", required=True, type=Path, help="Canopy height or return-histogram GeoTIFF")
    hist.add_argument("--points", required=True, type=Path, help="Survey station CSV with lon/lat columns")
    hist.add_argument("--year", required=True, type=int, help="Survey year the raster represents")
    hist.add_argument("--mode", choices=["max-return", "multiband"], default="max-return")
    hist.add_argument("--radius", type=float, default=None, help="Buffer radius in raster CRS units")
    hist.add_argument("--min-height", type=float, default=None)
    hist.add_argument("--max-height", type=float, default=None)
    hist.add_argument("--bin-count", type=int, default=None)
    hist.add_argument("--out", required=True, type=Path, help="Output histogram CSV")

    return ap


def _histogram_params(args: argparse.Namespace, cfg) -> HistogramParams:
    base = histogram_params(cfg)
    return HistogramParams(
        min_height=args.min_height if args.min_height is not None else base.min_height,
        max_height=args.max_height if args.max_height is not None else base.max_height,
        bin_count=args.bin_count if args.bin_count is not None else base.bin_count,
        radius=args.radius if args.radius is not None else base.radius,
        bin_offset=base.bin_offset,
    )


def _handle_histograms(args: argparse.Namespace, cfg) -> int:
    params = _histogram_params(args, cfg)
    survey = cfg["survey"]

    if args.dry_run:
        print("[dry-run] Would build histograms:")
        print(f"  Raster: {args.raster} ({args.mode}, year {args.year})")
        print(f"  Points: {args.points}")
        print(f"  Params: {params}")
        print(f"  Output: {args.out}")
        return 0
    if args.out.exists() and not args.overwrite:
        print(f"[SKIP] {args.out} exists (use --overwrite)")
        return 0

    # Lazy import: avoids loading rasterio/geopandas for --help
    from canopy.raster.io import read_raster
    from canopy.structure.histogram import point_histograms
    from canopy.vectors import load_survey_points

    points = load_survey_points(
        args.points,
        id_field=survey["id_field"],
        lon_field=survey["lon_field"],
        lat_field=survey["lat_field"],
        site_field=survey.get("site_field"),
        crs=survey["crs"],
    )
    table = point_histograms(read_raster(args.raster), points, year=args.year, mode=args.mode, params=params)

    args.out.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(args.out, index=False)
    print(f"Wrote {len(table)} histogram rows -> {args.out}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for canopy.structure CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)
    cfg = load_analysis_config(args.config)

    handlers = {
        "histograms": _handle_histograms,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")
    return handler(args, cfg)


if __name__ == "__main__":
    raise SystemExit(main())
