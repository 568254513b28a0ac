from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from ovarian_meta.config import MetaConfig
from ovarian_meta.meta_analysis import (
    MetaConvergenceError,
    MetaResult,
    fixed_effects_meta,
    random_effects_meta,
)
from ovarian_meta.stats import fdr_bh_series
from ovarian_meta.studies import Study
from ovarian_meta.survival import GeneEffects, gene_effects, quiet_convergence_warnings

STATUS_OK = "ok"
STATUS_NOT_CONVERGED = "not_converged"
STATUS_NO_STUDIES = "no_studies"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneMetaResult:
    """
    Fixed- and random-effects synthesis for one gene, kept together so the
    two can never drift apart when genes are filtered.
    """

    gene: str
    k: int
    n_dropped: int
    n_absent: int
    fixed: MetaResult | None
    random: MetaResult | None
    converged: bool
    error: str | None = None

    @property
    def status(self) -> str:
        if self.fixed is None:
            return STATUS_NO_STUDIES
        if not self.converged:
            return STATUS_NOT_CONVERGED
        return STATUS_OK

    def as_row(self) -> dict[str, object]:
        row: dict[str, object] = {
            "gene": self.gene,
            "k": self.k,
            "n_dropped": self.n_dropped,
            "n_absent": self.n_absent,
            "converged": self.converged,
            "status": self.status,
        }
        for prefix, res in (("fe", self.fixed), ("re", self.random)):
            row[f"{prefix}_log_hr"] = res.log_effect if res is not None else np.nan
            row[f"{prefix}_se"] = res.se if res is not None else np.nan
            row[f"{prefix}_hr"] = res.effect if res is not None else np.nan
            row[f"{prefix}_p"] = res.p if res is not None else np.nan
        het = self.random if self.random is not None else self.fixed
        row["re_method"] = self.random.method if self.random is not None else None
        row["tau2"] = self.random.tau2 if self.random is not None else np.nan
        row["i2"] = self.random.i2 if self.random is not None else np.nan
        row["q"] = het.q if het is not None else np.nan
        row["q_p"] = het.q_p if het is not None else np.nan
        row["re_iterations"] = self.random.iterations if self.random is not None else np.nan
        row["error"] = self.error
        return row


@dataclass(frozen=True)
class TopGenes:
    fixed: str
    random: str

    @property
    def agree(self) -> bool:
        return self.fixed == self.random


def combine_effects(effects: GeneEffects, config: MetaConfig) -> GeneMetaResult:
    fixed = fixed_effects_meta(effects.coefs, effects.ses, alpha=config.alpha)
    base = {
        "gene": effects.gene,
        "k": effects.k,
        "n_dropped": effects.n_dropped,
        "n_absent": effects.n_absent,
    }
    if fixed is None:
        return GeneMetaResult(**base, fixed=None, random=None, converged=False, error="no study could be fitted")
    try:
        random = random_effects_meta(
            effects.coefs,
            effects.ses,
            method=config.method,
            max_iterations=config.max_iterations,
            step_adjustment=config.step_adjustment,
            threshold=config.threshold,
            alpha=config.alpha,
        )
    except MetaConvergenceError as e:
        return GeneMetaResult(**base, fixed=fixed, random=None, converged=False, error=str(e))
    return GeneMetaResult(**base, fixed=fixed, random=random, converged=True)


def synthesize_gene(gene: str, studies: dict[str, Study], config: MetaConfig) -> GeneMetaResult:
    effects = gene_effects(gene, studies, penalizer=config.penalizer, min_samples=config.min_samples)
    if effects.n_dropped:
        logger.debug("%s: %d study fit(s) skipped", gene, effects.n_dropped)
    return combine_effects(effects, config)


def screen_genes(
    studies: dict[str, Study],
    genes: list[str],
    config: MetaConfig,
    *,
    show_progress: bool = False,
) -> list[GeneMetaResult]:
    """
    Synthesize every gene; results come back in the order of ``genes``.
    Set config.n_jobs>1 to spread genes over threads.
    """
    n_jobs = max(1, int(config.n_jobs))
    iterator = tqdm(genes, desc="Gene meta-analysis", disable=not show_progress)
    with quiet_convergence_warnings():
        if n_jobs > 1:
            return list(
                Parallel(n_jobs=n_jobs, prefer="threads")(
                    delayed(synthesize_gene)(g, studies, config) for g in iterator
                )
            )
        return [synthesize_gene(g, studies, config) for g in iterator]


def results_table(results: list[GeneMetaResult]) -> pd.DataFrame:
    out = pd.DataFrame([r.as_row() for r in results])
    if out.empty:
        return out
    ok = out["converged"].astype(bool)
    for col in ("fe_p", "re_p", "q_p"):
        fdr = pd.Series(np.nan, index=out.index, dtype=float)
        fdr.loc[ok] = fdr_bh_series(out.loc[ok, col])
        out[col.replace("_p", "_fdr")] = fdr
    return out


def drop_unconverged(table: pd.DataFrame) -> tuple[pd.DataFrame, list[str], list[str]]:
    """
    Keep genes with both syntheses for ranking.

    Returns ``(kept, not_converged, no_studies)``: genes whose random-effects
    fit ran out of iterations are reported apart from genes no study could fit.
    """
    if table.empty:
        return table, [], []
    status = table["status"]
    dropped = table.loc[status == STATUS_NOT_CONVERGED, "gene"].astype(str).tolist()
    no_studies = table.loc[status == STATUS_NO_STUDIES, "gene"].astype(str).tolist()
    kept = table.loc[status == STATUS_OK].reset_index(drop=True)
    for gene in dropped:
        logger.warning("dropped %s: random-effects fit did not converge", gene)
    for gene in no_studies:
        logger.info("excluded %s: no study could be fitted", gene)
    logger.info(
        "genes remaining for ranking: %d (not converged %d, no studies %d)",
        kept.shape[0],
        len(dropped),
        len(no_studies),
    )
    return kept, dropped, no_studies


def top_survival_gene(table: pd.DataFrame) -> TopGenes:
    if table.empty:
        raise ValueError("no genes to rank")
    fe = table.dropna(subset=["fe_p"]).sort_values(["fe_p", "gene"], kind="mergesort")
    re = table.dropna(subset=["re_p"]).sort_values(["re_p", "gene"], kind="mergesort")
    if fe.empty or re.empty:
        raise ValueError("no gene has both fixed- and random-effects p-values")
    top = TopGenes(fixed=str(fe.iloc[0]["gene"]), random=str(re.iloc[0]["gene"]))
    if not top.agree:
        logger.warning("top survival gene differs: FE=%s RE=%s", top.fixed, top.random)
    return top


def top_heterogeneity_gene(table: pd.DataFrame) -> str:
    # Single-study genes have no Q test.
    d = table[(table["k"] >= 2) & table["q_p"].notna()]
    if d.empty:
        raise ValueError("no gene has at least two contributing studies")
    d = d.sort_values(["q_p", "q", "gene"], ascending=[True, False, True], kind="mergesort")
    return str(d.iloc[0]["gene"])
