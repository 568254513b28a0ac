from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
import statsmodels.api as sm

from ovarian_meta.config import SUBGROUP_COLUMNS, MetaConfig, Subgroups
from ovarian_meta.studies import Study
from ovarian_meta.survival import fit_cox_gene

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CovariateAssociation:
    table: pd.DataFrame  # one row per tested covariate
    best: str
    intercept: float
    slope: float
    p: float
    r2: float
    n_studies: int
    model: object  # statsmodels RegressionResults

    def predict(self, x: np.ndarray) -> np.ndarray:
        return self.intercept + self.slope * np.asarray(x, dtype=float)


def subgroup_fraction(clinical: pd.DataFrame, column: str, level: str | None) -> float:
    """
    Fraction of samples in the subgroup among samples with the field recorded.
    ``level=None`` means age above Subgroups.AGE_CUTOFF.
    """
    if column not in clinical.columns:
        return float("nan")
    if level is None:
        vals = pd.to_numeric(clinical[column], errors="coerce").dropna()
        if vals.empty:
            return float("nan")
        return float((vals > Subgroups.AGE_CUTOFF).mean())
    vals = clinical[column].dropna().astype(str).str.strip().str.lower()
    vals = vals[~vals.isin(["", "na", "nan"])]
    if vals.empty:
        return float("nan")
    return float((vals == level).mean())


def covariate_summary(studies: dict[str, Study], gene: str, config: MetaConfig) -> pd.DataFrame:
    rows: list[dict] = []
    for name, study in studies.items():
        eff = fit_cox_gene(study, gene, penalizer=config.penalizer, min_samples=config.min_samples)
        if eff is None:
            continue
        row: dict[str, object] = {"study": name}
        for out_col, (field, level) in SUBGROUP_COLUMNS.items():
            row[out_col] = subgroup_fraction(study.clinical, field, level)
        row["n"] = study.n_samples
        row["coef"] = eff.coef
        row["se"] = eff.se
        rows.append(row)
    if not rows:
        return pd.DataFrame()
    return pd.DataFrame(rows).set_index("study")


def _fit_wls(summary: pd.DataFrame, covariate: str):
    d = summary[["coef", "n", covariate]].dropna()
    if d.shape[0] < 3 or d[covariate].nunique() < 2:
        return None, d
    x = sm.add_constant(d[covariate].to_numpy(dtype=float), has_constant="add")
    model = sm.WLS(d["coef"].to_numpy(dtype=float), x, weights=d["n"].to_numpy(dtype=float))
    return model.fit(), d


def covariate_association(summary: pd.DataFrame) -> CovariateAssociation | None:
    """
    Weighted (by study size) regression of the per-study log HR on each
    subgroup fraction; the covariate with the smallest slope p-value is kept.
    """
    if summary.empty:
        return None
    rows: list[dict] = []
    fits: dict[str, tuple[object, pd.DataFrame]] = {}
    for covariate in SUBGROUP_COLUMNS:
        if covariate not in summary.columns:
            continue
        res, d = _fit_wls(summary, covariate)
        if res is None:
            logger.info("covariate %s: too few studies with variation (n=%d); skipped", covariate, d.shape[0])
            continue
        fits[covariate] = (res, d)
        rows.append(
            {
                "covariate": covariate,
                "n_studies": int(d.shape[0]),
                "intercept": float(res.params[0]),
                "slope": float(res.params[1]),
                "slope_se": float(res.bse[1]),
                "p": float(res.pvalues[1]),
                "r2": float(res.rsquared),
            }
        )
    if not rows:
        return None
    table = pd.DataFrame(rows).sort_values(["p", "covariate"], kind="mergesort").reset_index(drop=True)
    best = str(table.iloc[0]["covariate"])
    res, d = fits[best]
    logger.info("best-associated covariate: %s (p=%.3g, studies=%d)", best, float(res.pvalues[1]), d.shape[0])
    return CovariateAssociation(
        table=table,
        best=best,
        intercept=float(res.params[0]),
        slope=float(res.params[1]),
        p=float(res.pvalues[1]),
        r2=float(res.rsquared),
        n_studies=int(d.shape[0]),
        model=res,
    )
