#!/usr/bin/env python3
"""abundance.py

Relate vegetation structure to bird abundance.

Steps:
1. Collapse fine height bins into a few strata (understory, midstory, ...)
   by summing bin frequencies per point, then averaging points per (site, year).
2. Join the strata table to the bird survey table on (site, year).
3. Per species, fit OLS of the abundance index on the stratum frequencies.
   The model is fitted through the origin (no intercept term).

Degenerate designs (a stratum that never varies, rank-deficient predictors)
do not stop the run; they are reported as warnings on the fitted model.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm

from canopy.config import Stratum
from canopy.vectors import normalize_code, read_table, require_columns


ABUNDANCE_COLUMNS = ["site", "year", "species", "total_birds", "relative_abundance_index"]


@dataclass
class AbundanceModel:
    species: str
    coefficients: pd.Series
    std_errors: pd.Series
    rsquared: float
    residual_std: float
    n_obs: int
    predictions: pd.DataFrame
    warnings: List[str] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------

def load_abundance(csv_path: Path, columns: Optional[Mapping[str, str]] = None) -> pd.DataFrame:
    """Read bird survey records and rename them to the canonical columns.

    `columns` maps canonical name -> column name in the CSV.
    """
    columns = dict(columns or {c: c for c in ABUNDANCE_COLUMNS})
    df = read_table(csv_path)
    require_columns(df, [columns[c] for c in ABUNDANCE_COLUMNS], Path(csv_path))

    out = df[[columns[c] for c in ABUNDANCE_COLUMNS]].copy()
    out.columns = ABUNDANCE_COLUMNS
    out["site"] = out["site"].map(normalize_code)
    out["year"] = pd.to_numeric(out["year"], errors="raise").astype("int64")
    out["species"] = out["species"].astype(str).str.strip()
    out["total_birds"] = pd.to_numeric(out["total_birds"], errors="coerce")
    out["relative_abundance_index"] = pd.to_numeric(out["relative_abundance_index"], errors="coerce")
    print(f"[MODEL] loaded {len(out)} abundance records ({out['species'].nunique()} species) from {csv_path}")
    return out


def assign_strata(histograms: pd.DataFrame, strata: Sequence[Stratum]) -> pd.Series:
    """Stratum name for each histogram row, by bin midpoint (None if uncovered)."""
    midpoints = (histograms["bin_start"] + histograms["bin_end"]) / 2.0

    def pick(h: float) -> Optional[str]:
        for s in strata:
            if s.contains(h):
                return s.name
        return None

    return midpoints.map(pick)


def stratum_table(histograms: pd.DataFrame, strata: Sequence[Stratum]) -> pd.DataFrame:
    """Wide (site, year, <stratum>...) table of mean stratum frequencies."""
    names = [s.name for s in strata]
    if histograms.empty:
        return pd.DataFrame(columns=["site", "year"] + names)

    df = histograms.copy()
    df["site"] = df["site"].map(normalize_code)
    df["stratum"] = assign_strata(df, strata)
    df = df[df["stratum"].notna()]

    per_point = (
        df.groupby(["site", "year", "point_id", "stratum"])["frequency"]
        .sum()
        .unstack("stratum")
        .reindex(columns=names)
        .fillna(0.0)
    )
    per_site = per_point.groupby(level=["site", "year"]).mean().reset_index()
    per_site.columns.name = None
    return per_site[["site", "year"] + names]


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------

def _design_warnings(X: pd.DataFrame) -> List[str]:
    notes: List[str] = []
    constant = [c for c in X.columns if float(X[c].std(ddof=0)) == 0.0]
    if constant:
        notes.append(f"zero variance in predictors: {constant}")
    rank = int(np.linalg.matrix_rank(X.to_numpy(dtype="float64")))
    if rank < X.shape[1]:
        notes.append(f"design matrix is rank deficient (rank {rank} < {X.shape[1]} predictors)")
    if X.shape[0] <= X.shape[1]:
        notes.append(f"only {X.shape[0]} observations for {X.shape[1]} predictors")
    return notes


def fit_abundance_model(
    histograms: pd.DataFrame,
    abundance: pd.DataFrame,
    species: str,
    strata: Sequence[Stratum],
    *,
    response: str = "relative_abundance_index",
) -> AbundanceModel:
    """Fit a no-intercept OLS of `response` on stratum frequencies for one species.

    Raises ValueError when the species has no rows that join to the histograms.
    """
    names = [s.name for s in strata]
    table = stratum_table(histograms, strata)

    birds = abundance[abundance["species"] == species].copy()
    birds["site"] = birds["site"].map(normalize_code)
    joined = table.merge(birds, on=["site", "year"], how="inner")
    joined = joined[joined[response].notna()].reset_index(drop=True)
    if joined.empty:
        raise ValueError(f"No (site, year) rows join histograms to abundance for species {species!r}")

    X = joined[names].astype("float64")
    y = joined[response].astype("float64")
    notes = _design_warnings(X)
    for note in notes:
        warnings.warn(f"{species}: {note}", UserWarning, stacklevel=2)

    # no sm.add_constant(): the model is fitted through the origin
    with np.errstate(divide="ignore", invalid="ignore"):
        fit = sm.OLS(y, X).fit()
        residual_std = float(np.sqrt(fit.scale)) if fit.df_resid > 0 else float("nan")
        rsquared = float(fit.rsquared)

    predictions = pd.DataFrame(
        {
            "site": joined["site"],
            "year": joined["year"],
            "observed": y,
            "predicted": fit.fittedvalues,
            "residual": y - fit.fittedvalues,
        }
    )
    return AbundanceModel(
        species=species,
        coefficients=fit.params,
        std_errors=fit.bse,
        rsquared=rsquared,
        residual_std=residual_std,
        n_obs=int(fit.nobs),
        predictions=predictions,
        warnings=notes,
    )


def fit_all_species(
    histograms: pd.DataFrame,
    abundance: pd.DataFrame,
    strata: Sequence[Stratum],
    *,
    species: Optional[Sequence[str]] = None,
    response: str = "relative_abundance_index",
) -> Dict[str, AbundanceModel]:
    """Fit one model per species; species with no joined rows are reported and skipped."""
    wanted = list(species) if species else sorted(abundance["species"].unique())
    models: Dict[str, AbundanceModel] = {}
    for sp in wanted:
        try:
            models[sp] = fit_abundance_model(histograms, abundance, sp, strata, response=response)
        except ValueError as e:
            print(f"[MODEL] skipping {sp}: {e}")
            continue
        m = models[sp]
        print(f"[MODEL] {sp}: n={m.n_obs} R2(uncentered)={m.rsquared:.3f}")
    return models


def summarize_models(models: Mapping[str, AbundanceModel]) -> pd.DataFrame:
    """One row per (species, stratum) with coefficient and standard error."""
    rows = []
    for sp, m in models.items():
        for stratum, coef in m.coefficients.items():
            rows.append(
                {
                    "species": sp,
                    "stratum": stratum,
                    "coefficient": float(coef),
                    "std_error": float(m.std_errors.get(stratum, np.nan)),
                    "rsquared": m.rsquared,
                    "residual_std": m.residual_std,
                    "n_obs": m.n_obs,
                    "warnings": "; ".join(m.warnings),
                }
            )
    return pd.DataFrame(
        rows,
        columns=["species", "stratum", "coefficient", "std_error", "rsquared", "residual_std", "n_obs", "warnings"],
    )
