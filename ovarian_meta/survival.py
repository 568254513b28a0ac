from __future__ import annotations

import logging
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError, ConvergenceWarning

from ovarian_meta.config import ClinicalFields
from ovarian_meta.studies import Study

EXPR_TERM = "expr"
FOREST_COLUMNS = ["study", "gene", "coef", "se", "hr", "hr_ci_lower", "hr_ci_upper", "n", "events"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneEffect:
    study: str
    gene: str
    coef: float
    se: float
    n: int
    events: int

    @property
    def hr(self) -> float:
        return float(np.exp(self.coef))

    def hr_ci(self, z: float = 1.959963984540054) -> tuple[float, float]:
        return float(np.exp(self.coef - z * self.se)), float(np.exp(self.coef + z * self.se))


@dataclass
class GeneEffects:
    gene: str
    effects: list[GeneEffect] = field(default_factory=list)
    n_dropped: int = 0
    n_absent: int = 0

    @property
    def k(self) -> int:
        return len(self.effects)

    @property
    def coefs(self) -> np.ndarray:
        return np.array([e.coef for e in self.effects], dtype=float)

    @property
    def ses(self) -> np.ndarray:
        return np.array([e.se for e in self.effects], dtype=float)

    def to_frame(self, *, z: float = 1.959963984540054) -> pd.DataFrame:
        """Per-study rows for a forest table; ``z`` sets the CI level."""
        rows = []
        for e in self.effects:
            lo, hi = e.hr_ci(z)
            rows.append(
                {
                    "study": e.study,
                    "gene": e.gene,
                    "coef": e.coef,
                    "se": e.se,
                    "hr": e.hr,
                    "hr_ci_lower": lo,
                    "hr_ci_upper": hi,
                    "n": e.n,
                    "events": e.events,
                }
            )
        return pd.DataFrame(rows, columns=FOREST_COLUMNS)


@contextmanager
def quiet_convergence_warnings() -> Iterator[None]:
    """
    Silence lifelines separation warnings for a whole batch of fits.

    Enter once, in the thread that starts the batch: the warnings filter list
    is process-global and not safe to modify from worker threads.
    """
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        yield


def _survival_frame(study: Study, gene: str) -> pd.DataFrame:
    d = pd.DataFrame(
        {
            "time": pd.to_numeric(study.clinical[ClinicalFields.SURV_TIME], errors="coerce"),
            "event": pd.to_numeric(study.clinical[ClinicalFields.SURV_EVENT], errors="coerce"),
            EXPR_TERM: pd.to_numeric(study.expr.loc[gene, study.clinical.index], errors="coerce"),
        },
        index=study.clinical.index,
    )
    return d.dropna()


def fit_cox_gene(
    study: Study,
    gene: str,
    *,
    penalizer: float = 0.0,
    min_samples: int = 10,
) -> GeneEffect | None:
    """
    Cox PH of overall survival on one gene's expression within one study.

    Returns None when the gene is absent, the data are degenerate, or the
    fitter does not converge.
    """
    if not study.has_gene(gene):
        return None
    d = _survival_frame(study, gene)
    if d.shape[0] < max(2, min_samples):
        return None
    events = int(d["event"].sum())
    if events < 1:
        return None
    if d[EXPR_TERM].nunique() < 2:
        return None

    cph = CoxPHFitter(penalizer=penalizer)
    try:
        cph.fit(d, duration_col="time", event_col="event")
    except (ConvergenceError, np.linalg.LinAlgError, ValueError) as e:
        logger.debug("[%s] %s: Cox fit failed: %s", study.name, gene, e)
        return None

    summ = cph.summary
    if EXPR_TERM not in summ.index:
        return None
    coef = float(summ.loc[EXPR_TERM, "coef"])
    se = float(summ.loc[EXPR_TERM, "se(coef)"])
    if not np.isfinite(coef) or not np.isfinite(se) or se <= 0:
        logger.debug("[%s] %s: non-finite Cox estimate", study.name, gene)
        return None
    return GeneEffect(study=study.name, gene=gene, coef=coef, se=se, n=int(d.shape[0]), events=events)


def gene_effects(
    gene: str,
    studies: dict[str, Study],
    *,
    penalizer: float = 0.0,
    min_samples: int = 10,
) -> GeneEffects:
    out = GeneEffects(gene=gene)
    for study in studies.values():
        if not study.has_gene(gene):
            out.n_absent += 1
            continue
        eff = fit_cox_gene(study, gene, penalizer=penalizer, min_samples=min_samples)
        if eff is None:
            out.n_dropped += 1
            continue
        out.effects.append(eff)
    return out
