from __future__ import annotations

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import fdrcorrection


def fdr_bh(pvalues: np.ndarray) -> np.ndarray:
    p = np.asarray(pvalues, dtype=float)
    p = np.where(np.isfinite(p), p, 1.0)
    if p.size == 0:
        return p
    _, q = fdrcorrection(p, alpha=0.05, method="indep")
    return q


def fdr_bh_series(p: pd.Series) -> pd.Series:
    """
    BH over the finite entries of ``p``; non-finite entries stay NaN.
    """
    vals = pd.to_numeric(p, errors="coerce")
    ok = vals.notna() & np.isfinite(vals)
    out = pd.Series(np.nan, index=p.index, dtype=float)
    if ok.any():
        out.loc[ok] = fdr_bh(vals[ok].to_numpy(dtype=float))
    return out
