#!/usr/bin/env python3
"""canopy.raster

Raster processing CLI for the canopy change analysis.

This is one of several canopy subsystem CLIs:
- canopy.raster    → mosaics, power-line filter, alignment, change, correlation (this file)
- canopy.structure → survey-point neighbourhoods and height histograms
- canopy.model     → stratum aggregation and bird abundance regressions

Design notes:
- Numeric defaults come from the analysis YAML (--config); flags override them
- Lazy-imports the stage modules to keep CLI startup fast
- All subcommands support --dry-run and refuse to overwrite without --overwrite

Examples:
  # Build one year's return-histogram mosaic from its tiles
  python -m canopy.raster mosaic --tiles-dir data/veg_rasters_2018 \
    --out outputs/histogram_2018_mosaic.tif

  # Remove power-line spikes from a canopy height model
  python -m canopy.raster filter --in data/chm_2015.tif --out outputs/chm_2015_filtered.tif

  # 2015 -> 2018 canopy change, plus one masked copy per site polygon
  python -m canopy.raster change --earlier outputs/chm_2015_filtered.tif \
    --later outputs/chm_2018_filtered.tif --out outputs/chm_change.tif \
    --regions data/sites.gpkg --region-dir outputs/change_by_site

  # Per-pixel Spearman correlation between two histogram mosaics
  python -m canopy.raster correlate --first outputs/histogram_2015_mosaic.tif \
    --second outputs/histogram_2018_mosaic.tif --out outputs/histogram_correlation.tif
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional

from canopy.config import (
    DEFAULT_CONFIG_YAML,
    FilterParams,
    filter_params,
    load_analysis_config,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for canopy.raster.

    Structure:
    - Global args: apply to all subcommands (--config, --dry-run, --overwrite)
    - Subcommands: one per raster stage
    """
    ap = argparse.ArgumentParser(
        prog="canopy.raster",
        description="Raster processing for the canopy change analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m canopy.raster     # Raster processing (this)
  python -m canopy.structure  # Neighbourhood histograms
  python -m canopy.model      # Abundance regressions
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_YAML,
        help=f"Path to analysis YAML (default: {DEFAULT_CONFIG_YAML})",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )

    sub = ap.add_subparsers(dest="command", required=True)

    # --- mosaic ---
    mosaic = sub.add_parser("mosaic", help="Max-composite a directory of tiles into one raster")
    mosaic.add_argument("--tiles-dir", required=True, type=Path, help="Directory holding one year's tiles")
    mosaic.add_argument("--pattern", default=None, help="Glob for tile names (default from config: *histogram.tif)")
    mosaic.add_argument("--on-error", choices=["abort", "skip"], default=None, help="Unreadable tile policy (default from config: abort)")
    mosaic.add_argument("--out", required=True, type=Path, help="Output mosaic GeoTIFF")

    # --- filter ---
    filt = sub.add_parser("filter", help="Remove power-line spikes from a canopy height model")
    filt.add_argument("--in", dest="input", required=True, type=Path, help="Input canopy height GeoTIFF")
    filt.add_argument("--out", required=True, type=Path, help="Output filtered GeoTIFF")
    filt.add_argument("--kernel-half-width", type=int, default=None, help="Half-width k of the (2k+1)^2 window")
    filt.add_argument("--percentile", type=float, default=None, help="Neighbourhood percentile (0-100)")
    filt.add_argument("--threshold", type=float, default=None, help="Height above the percentile that marks a spike")
    filt.add_argument("--block-rows", type=int, default=None, help="Process in row blocks of this size")

    # --- align ---
    align = sub.add_parser("align", help="Resample one raster onto another's grid")
    align.add_argument("--source", required=True, type=Path, help="Raster to resample")
    align.add_argument("--target", required=True, type=Path, help="Raster whose grid is used")
    align.add_argument("--method", choices=["nearest", "bilinear"], default=None, help="Resampling (default from config: bilinear)")
    align.add_argument("--out", required=True, type=Path, help="Output aligned GeoTIFF")

    # --- change ---
    change = sub.add_parser(
        "change",
        help="Masked difference later - earlier, optionally per site polygon",
        description="""
Compute canopy change between two canopy height models.

This command:
1. Aligns the later raster onto the earlier raster's grid
2. Crops both to their shared extent
3. Writes later - earlier (zeros treated as no-data unless --keep-zeros)
4. Optionally writes one masked copy per site polygon
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    change.add_argument("--earlier", required=True, type=Path, help="Earlier canopy height GeoTIFF")
    change.add_argument("--later", required=True, type=Path, help="Later canopy height GeoTIFF")
    change.add_argument("--out", required=True, type=Path, help="Output change GeoTIFF")
    change.add_argument("--method", choices=["nearest", "bilinear"], default=None, help="Resampling used for alignment")
    change.add_argument("--keep-zeros", action="store_true", help="Treat zero heights/differences as real values")
    _add_region_args(change)

    # --- correlate ---
    corr = sub.add_parser("correlate", help="Per-pixel Spearman correlation of two histogram rasters")
    corr.add_argument("--first", required=True, type=Path, help="Earlier histogram mosaic")
    corr.add_argument("--second", required=True, type=Path, help="Later histogram mosaic (aligned onto --first, nearest)")
    corr.add_argument("--out", required=True, type=Path, help="Output correlation GeoTIFF")
    corr.add_argument("--bin-offset", type=int, default=None, help="Leading non-count bands (default from config: 2)")
    _add_region_args(corr)

    return ap


def _add_region_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--regions", type=Path, default=None, help="Site polygons (GeoPackage/shapefile) for masked variants")
    p.add_argument("--region-field", default=None, help="Polygon name column (default from config: name)")
    p.add_argument("--region-layer", default=None, help="Layer name inside --regions")
    p.add_argument("--region-dir", type=Path, default=None, help="Directory for per-region outputs")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _should_skip(path: Path, overwrite: bool) -> bool:
    if path.exists() and not overwrite:
        print(f"[SKIP] {path} exists (use --overwrite)")
        return True
    return False


def _write(raster, path: Path, overwrite: bool) -> None:
    from canopy.raster.io import write_raster

    if _should_skip(path, overwrite):
        return
    write_raster(raster, path)
    print(f"Wrote {raster.count}-band {raster.height}x{raster.width} raster -> {path}")


def _write_region_variants(raster, args: argparse.Namespace, cfg: Dict[str, Any], stem: str) -> None:
    if args.regions is None:
        return
    from canopy.raster.change import mask_to_regions
    from canopy.vectors import load_site_polygons

    field = args.region_field or cfg["change"].get("region_field", "name")
    region_dir = args.region_dir or args.out.parent / f"{stem}_by_region"
    sites = load_site_polygons(args.regions, name_field=field, layer=args.region_layer)
    for name, masked in mask_to_regions(raster, sites, name_field=field, crop=True).items():
        _write(masked, region_dir / f"{stem}_{name}.tif", args.overwrite)


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_mosaic(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    pattern = args.pattern or cfg["mosaic"]["pattern"]
    on_error = args.on_error or cfg["mosaic"]["on_error"]

    if args.dry_run:
        print("[dry-run] Would build mosaic:")
        print(f"  Tiles: {args.tiles_dir}/{pattern}")
        print(f"  On error: {on_error}")
        print(f"  Output: {args.out}")
        return 0
    if _should_skip(args.out, args.overwrite):
        return 0

    from canopy.raster.mosaic import mosaic_directory

    mosaic = mosaic_directory(args.tiles_dir, pattern, on_error=on_error)
    _write(mosaic, args.out, args.overwrite)
    return 0


def _filter_params(args: argparse.Namespace, cfg: Dict[str, Any]) -> FilterParams:
    base = filter_params(cfg)
    return FilterParams(
        kernel_half_width=args.kernel_half_width if args.kernel_half_width is not None else base.kernel_half_width,
        percentile=args.percentile if args.percentile is not None else base.percentile,
        threshold=args.threshold if args.threshold is not None else base.threshold,
        block_rows=args.block_rows if args.block_rows is not None else base.block_rows,
    )


def _handle_filter(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    params = _filter_params(args, cfg)

    if args.dry_run:
        print("[dry-run] Would filter power-line artifacts:")
        print(f"  Input: {args.input}")
        print(f"  Params: {params}")
        print(f"  Output: {args.out}")
        return 0
    if _should_skip(args.out, args.overwrite):
        return 0

    from canopy.raster.io import read_raster
    from canopy.raster.powerline import filter_with_params

    filtered = filter_with_params(read_raster(args.input), params)
    _write(filtered, args.out, args.overwrite)
    return 0


def _handle_align(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    method = args.method or cfg["align"]["method"]

    if args.dry_run:
        print(f"[dry-run] Would resample {args.source} onto the grid of {args.target} ({method}) -> {args.out}")
        return 0
    if _should_skip(args.out, args.overwrite):
        return 0

    from canopy.raster.align import align_to
    from canopy.raster.io import read_raster

    aligned = align_to(read_raster(args.source), read_raster(args.target), method=method)
    _write(aligned, args.out, args.overwrite)
    return 0


def _handle_change(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    method = args.method or cfg["align"]["method"]
    treat_zero = False if args.keep_zeros else bool(cfg["change"]["treat_zero_as_nodata"])

    if args.dry_run:
        print("[dry-run] Would compute canopy change:")
        print(f"  Earlier: {args.earlier}")
        print(f"  Later: {args.later} (aligned with {method})")
        print(f"  Zero as no-data: {treat_zero}")
        print(f"  Output: {args.out}")
        if args.regions:
            print(f"  Per-region masks from: {args.regions}")
        return 0
    if _should_skip(args.out, args.overwrite):
        return 0

    from canopy.raster.align import align_pair
    from canopy.raster.change import compute_change
    from canopy.raster.io import read_raster

    later, earlier = align_pair(read_raster(args.later), read_raster(args.earlier), method=method)
    change = compute_change(earlier, later, treat_zero_as_nodata=treat_zero)
    _write(change, args.out, args.overwrite)
    _write_region_variants(change, args, cfg, args.out.stem)
    return 0


def _handle_correlate(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    bin_offset = args.bin_offset if args.bin_offset is not None else int(cfg["histogram"]["bin_offset"])

    if args.dry_run:
        print(f"[dry-run] Would correlate {args.first} with {args.second} (bin offset {bin_offset}) -> {args.out}")
        return 0
    if _should_skip(args.out, args.overwrite):
        return 0

    from canopy.raster.align import align_pair
    from canopy.raster.correlate import correlate_histograms
    from canopy.raster.io import read_raster

    # Bin counts are resampled by nearest neighbour only
    second, first = align_pair(read_raster(args.second), read_raster(args.first), method="nearest")
    rho = correlate_histograms(first, second, bin_offset=bin_offset)
    _write(rho, args.out, args.overwrite)
    _write_region_variants(rho, args, cfg, args.out.stem)
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for canopy.raster CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    # Load config once, inside main (so import doesn't have side effects)
    cfg = load_analysis_config(args.config)

    handlers = {
        "mosaic": _handle_mosaic,
        "filter": _handle_filter,
        "align": _handle_align,
        "change": _handle_change,
        "correlate": _handle_correlate,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args, cfg)


if __name__ == "__main__":
    raise SystemExit(main())
