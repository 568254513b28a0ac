from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import pandas as pd

from ovarian_meta.config import MetaConfig
from ovarian_meta.covariates import CovariateAssociation, covariate_association, covariate_summary
from ovarian_meta.gene_meta import (
    STATUS_NO_STUDIES,
    STATUS_NOT_CONVERGED,
    TopGenes,
    combine_effects,
    drop_unconverged,
    results_table,
    screen_genes,
    top_heterogeneity_gene,
    top_survival_gene,
)
from ovarian_meta.io import ensure_dir, write_tsv
from ovarian_meta.meta_analysis import z_critical
from ovarian_meta.plots import covariate_scatter, forest_plot, q_histogram
from ovarian_meta.session import write_session_report
from ovarian_meta.studies import (
    Study,
    filter_studies,
    gene_universe,
    load_study_collection,
    study_summary,
)
from ovarian_meta.survival import gene_effects, quiet_convergence_warnings

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    results: pd.DataFrame  # every screened gene, converged or not
    ranked: pd.DataFrame  # converged genes only
    dropped: list[str]  # random-effects fit did not converge
    no_studies: list[str]  # no study could be fitted
    top_survival: TopGenes
    top_heterogeneity: str
    covariates: pd.DataFrame
    association: CovariateAssociation | None


def _gene_slug(gene: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in gene)


def _forest(
    studies: dict[str, Study],
    gene: str,
    config: MetaConfig,
    *,
    label: str,
    tables_dir: Path,
    figs_dir: Path,
) -> None:
    with quiet_convergence_warnings():
        effects = gene_effects(gene, studies, penalizer=config.penalizer, min_samples=config.min_samples)
    # Same confidence level as the pooled diamond.
    per_study = effects.to_frame(z=z_critical(config.alpha))
    write_tsv(per_study, tables_dir / f"forest_{label}_{_gene_slug(gene)}.tsv")
    if not config.plot:
        return
    res = combine_effects(effects, config)
    if res.fixed is None or res.random is None:
        return
    out_path = figs_dir / f"forest_{label}_{_gene_slug(gene)}.png"
    forest_plot(
        per_study,
        random=res.random,
        fixed=res.fixed,
        title=f"{gene} ({label.replace('_', ' ')})",
        out_path=out_path,
    )
    logger.info("wrote forest plot: %s", out_path)


def run_analysis(
    studies: dict[str, Study],
    config: MetaConfig,
    *,
    out_dir: Path,
    gene_mode: str = "intersection",
    max_genes: int = 0,
    show_progress: bool = False,
) -> PipelineResult:
    tables_dir = out_dir / "tables"
    figs_dir = out_dir / "figures"
    ensure_dir(tables_dir)
    if config.plot:
        ensure_dir(figs_dir)

    write_tsv(study_summary(studies), tables_dir / "study_summary.tsv")

    genes = gene_universe(studies, mode=gene_mode)
    if max_genes > 0:
        genes = genes[:max_genes]
    logger.info("screening %d genes across %d studies (method=%s)", len(genes), len(studies), config.method)

    t0 = time.perf_counter()
    results = results_table(screen_genes(studies, genes, config, show_progress=show_progress))
    logger.info("screened %d genes (%.1fs)", results.shape[0], time.perf_counter() - t0)
    if results.empty:
        raise ValueError("no gene could be screened")
    write_tsv(results, tables_dir / "gene_meta_results.tsv")

    ranked, dropped, no_studies = drop_unconverged(results)
    write_tsv(
        results.loc[results["status"] == STATUS_NOT_CONVERGED, ["gene", "k", "error"]],
        tables_dir / "dropped_unconverged.tsv",
    )
    write_tsv(
        results.loc[results["status"] == STATUS_NO_STUDIES, ["gene", "n_dropped", "n_absent"]],
        tables_dir / "excluded_no_studies.tsv",
    )

    top = top_survival_gene(ranked)
    het_gene = top_heterogeneity_gene(ranked)
    logger.info("top survival gene: FE=%s RE=%s (agree=%s)", top.fixed, top.random, top.agree)
    logger.info("top heterogeneity gene: %s", het_gene)
    write_tsv(
        pd.DataFrame(
            [
                {"ranking": "survival_fixed", "gene": top.fixed},
                {"ranking": "survival_random", "gene": top.random},
                {"ranking": "heterogeneity", "gene": het_gene},
            ]
        ).merge(ranked, on="gene", how="left"),
        tables_dir / "top_genes.tsv",
    )

    if config.plot:
        # All screened genes, so non-converged ones still show in the distribution.
        q_histogram(results["q_p"], title="Heterogeneity across genes", out_path=figs_dir / "q_pvalue_histogram.png")

    _forest(studies, top.random, config, label="top_survival", tables_dir=tables_dir, figs_dir=figs_dir)
    _forest(studies, het_gene, config, label="top_heterogeneity", tables_dir=tables_dir, figs_dir=figs_dir)

    with quiet_convergence_warnings():
        cov = covariate_summary(studies, het_gene, config)
    write_tsv(cov, tables_dir / "covariate_summary.tsv", index=True)
    assoc = covariate_association(cov)
    if assoc is None:
        logger.warning("%s: no covariate could be regressed (too few studies with annotation)", het_gene)
    else:
        write_tsv(assoc.table, tables_dir / "covariate_association.tsv")
        logger.info(
            "%s log HR ~ %s: slope=%.3f p=%.3g r2=%.2f",
            het_gene,
            assoc.best,
            assoc.slope,
            assoc.p,
            assoc.r2,
        )
        if config.plot:
            covariate_scatter(
                cov,
                covariate=assoc.best,
                intercept=assoc.intercept,
                slope=assoc.slope,
                p=assoc.p,
                title=f"{het_gene} effect vs {assoc.best.replace('_', ' ')}",
                out_path=figs_dir / f"covariate_{assoc.best}.png",
            )

    return PipelineResult(
        results=results,
        ranked=ranked,
        dropped=dropped,
        no_studies=no_studies,
        top_survival=top,
        top_heterogeneity=het_gene,
        covariates=cov,
        association=assoc,
    )


def run_pipeline(
    *,
    data_dir: Path,
    out_dir: Path,
    exclude: Iterable[str] = (),
    method: str = "REML",
    max_iterations: int = 1000,
    step_adjustment: float = 0.5,
    plot: bool = True,
    penalizer: float = 0.0,
    min_samples: int = 10,
    min_study_samples: int = 0,
    min_study_events: int = 0,
    gene_mode: str = "intersection",
    max_genes: int = 0,
    n_jobs: int = 1,
    overwrite: bool = False,
    show_progress: bool = True,
) -> PipelineResult:
    if out_dir.exists():
        if out_dir.is_file():
            raise FileExistsError(f"--out must be a directory, but got an existing file: {out_dir}")
        if any(p.name != "run.log" for p in out_dir.iterdir()) and not overwrite:
            raise FileExistsError(
                f"Output directory is not empty: {out_dir} (use --overwrite or choose a new --out)"
            )
    config = MetaConfig(
        method=method,
        max_iterations=max_iterations,
        step_adjustment=step_adjustment,
        plot=plot,
        penalizer=penalizer,
        min_samples=min_samples,
        n_jobs=n_jobs,
    )
    ensure_dir(out_dir)
    logger.info(
        "starting pipeline: data=%s out=%s method=%s max_iterations=%d step_adjustment=%.3g plot=%s gene_mode=%s max_genes=%d n_jobs=%d",
        data_dir,
        out_dir,
        method,
        max_iterations,
        step_adjustment,
        plot,
        gene_mode,
        max_genes,
        n_jobs,
    )

    t0 = time.perf_counter()
    studies = load_study_collection(data_dir, exclude=exclude)
    studies = filter_studies(
        studies,
        min_samples=min_study_samples,
        min_events=min_study_events,
        common_genes=gene_mode == "intersection",
    )
    logger.info("loaded %d studies (%.1fs)", len(studies), time.perf_counter() - t0)

    result = run_analysis(
        studies,
        config,
        out_dir=out_dir,
        gene_mode=gene_mode,
        max_genes=max_genes,
        show_progress=show_progress,
    )
    write_session_report(out_dir / "session_info.txt")
    logger.info("wrote session report: %s", out_dir / "session_info.txt")
    return result
