#!/usr/bin/env python3
"""canopy.model

Abundance modelling CLI: strata tables and per-species regressions.

This is one of several canopy subsystem CLIs:
- canopy.raster    → mosaics, power-line filter, alignment, change, correlation
- canopy.structure → survey-point neighbourhoods and height histograms
- canopy.model     → stratum aggregation and bird abundance regressions (this file)

Examples:
  # Stratum frequencies per site and year
  python -m canopy.model strata --histograms outputs/hist_chm_2015.csv outputs/hist_chm_2018.csv \
    --out outputs/strata.csv

  # No-intercept OLS per species
  python -m canopy.model fit --histograms outputs/hist_chm_2015.csv outputs/hist_chm_2018.csv \
    --abundance data/bird_abundance.csv --species SOSP YEWA --out-dir outputs/models
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from canopy.config import DEFAULT_CONFIG_YAML, load_analysis_config, strata_from_config


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="canopy.model", description="Vegetation structure vs bird abundance")

    ap.add_argument("--config", type=Path, default=DEFAULT_CONFIG_YAML, help=f"Path to analysis YAML (default: {DEFAULT_CONFIG_YAML})")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- strata ---
    strata = sub.add_parser("strata", help="Sum histogram bins into height strata per site/year")
    strata.add_argument("--histograms", required=True, nargs="+", type=Path, help="Histogram CSVs (any years)")
    strata.add_argument("--out", required=True, type=Path, help="Output strata CSV")

    # --- fit ---
    fit = sub.add_parser("fit", help="Fit per-species no-intercept regressions")
    fit.add_argument("--histograms", required=True, nargs="+", type=Path, help="Histogram CSVs (any years)")
    fit.add_argument("--abundance", required=True, type=Path, help="Bird abundance CSV")
    fit.add_argument("--species", nargs="+", default=None, help="Species to fit (default: all in the abundance table)")
    fit.add_argument("--response", default=None, help="Abundance column to model (default from config)")
    fit.add_argument("--out-dir", required=True, type=Path, help="Directory for coefficient and prediction CSVs")

    return ap


def _load_histograms(paths: List[Path]):
    import pandas as pd

    from canopy.structure.histogram import read_histogram_table

    return pd.concat([read_histogram_table(p) for p in paths], ignore_index=True)


def _handle_strata(args: argparse.Namespace, cfg) -> int:
    strata = strata_from_config(cfg)
    if args.dry_run:
        print(f"[dry-run] Would aggregate {len(args.histograms)} histogram tables into {[s.name for s in strata]} -> {args.out}")
        return 0
    if args.out.exists() and not args.overwrite:
        print(f"[SKIP] {args.out} exists (use --overwrite)")
        return 0

    from canopy.model.abundance import stratum_table

    table = stratum_table(_load_histograms(args.histograms), strata)
    args.out.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(args.out, index=False)
    print(f"Wrote {len(table)} site/year rows -> {args.out}")
    return 0


def _handle_fit(args: argparse.Namespace, cfg) -> int:
    strata = strata_from_config(cfg)
    response = args.response or cfg["abundance"]["response"]
    coef_path = args.out_dir / "coefficients.csv"
    pred_path = args.out_dir / "predictions.csv"

    if args.dry_run:
        print("[dry-run] Would fit abundance models:")
        print(f"  Histograms: {[str(p) for p in args.histograms]}")
        print(f"  Abundance: {args.abundance} (response {response})")
        print(f"  Species: {args.species or 'all'}")
        print(f"  Strata: {[s.name for s in strata]}")
        print(f"  Outputs: {coef_path}, {pred_path}")
        return 0
    if coef_path.exists() and not args.overwrite:
        print(f"[SKIP] {coef_path} exists (use --overwrite)")
        return 0

    import pandas as pd

    from canopy.model.abundance import fit_all_species, load_abundance, summarize_models

    abundance = load_abundance(args.abundance, cfg["abundance"]["columns"])
    models = fit_all_species(
        _load_histograms(args.histograms),
        abundance,
        strata,
        species=args.species,
        response=response,
    )
    if not models:
        raise SystemExit("No species could be fitted; check that site codes and years match.")

    args.out_dir.mkdir(parents=True, exist_ok=True)
    summarize_models(models).to_csv(coef_path, index=False)
    predictions = pd.concat(
        [m.predictions.assign(species=sp) for sp, m in models.items()],
        ignore_index=True,
    )
    predictions.to_csv(pred_path, index=False)
    print(f"Wrote {len(models)} models -> {coef_path}, {pred_path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for canopy.model CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)
    cfg = load_analysis_config(args.config)

    handlers = {
        "strata": _handle_strata,
        "fit": _handle_fit,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")
    return handler(args, cfg)


if __name__ == "__main__":
    raise SystemExit(main())
