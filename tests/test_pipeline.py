from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import pytest

from ovarian_meta.config import MetaConfig
from ovarian_meta.io import write_tsv
from ovarian_meta.logging_utils import configure_logging
from ovarian_meta.pipeline import run_analysis, run_pipeline
from ovarian_meta.session import package_versions, session_report


def _write_collection(studies, data_dir):
    for name, study in studies.items():
        write_tsv(study.expr, data_dir / f"{name}.expr.tsv", index=True)
        clinical = study.clinical.drop(columns=["time", "event"], errors="ignore")
        if "vital_status" not in clinical.columns:
            clinical["event"] = study.clinical["event"].astype(int)
        write_tsv(clinical, data_dir / f"{name}.clinical.tsv", index=True)


def test_run_analysis_writes_tables_and_figures(studies, tmp_path):
    result = run_analysis(studies, MetaConfig(plot=True), out_dir=tmp_path)

    assert result.top_survival.fixed == "G_STRONG"
    assert result.top_survival.agree
    assert result.top_heterogeneity == "G_HET"
    assert result.association is not None
    assert result.association.best == "suboptimal_debulking"

    tables = tmp_path / "tables"
    for name in (
        "gene_meta_results.tsv",
        "dropped_unconverged.tsv",
        "excluded_no_studies.tsv",
        "study_summary.tsv",
        "top_genes.tsv",
        "covariate_summary.tsv",
        "covariate_association.tsv",
        "forest_top_survival_G_STRONG.tsv",
        "forest_top_heterogeneity_G_HET.tsv",
    ):
        assert (tables / name).exists(), name
    figs = tmp_path / "figures"
    assert (figs / "q_pvalue_histogram.png").exists()
    assert (figs / "forest_top_survival_G_STRONG.png").exists()
    assert (figs / "forest_top_heterogeneity_G_HET.png").exists()
    assert (figs / "covariate_suboptimal_debulking.png").exists()

    top = pd.read_csv(tables / "top_genes.tsv", sep="\t")
    assert top["gene"].tolist() == ["G_STRONG", "G_STRONG", "G_HET"]


def test_run_analysis_without_plots(studies, tmp_path):
    run_analysis(studies, MetaConfig(plot=False), out_dir=tmp_path)
    assert not (tmp_path / "figures").exists()


def test_forest_table_uses_configured_alpha(studies, tmp_path):
    result = run_analysis(studies, MetaConfig(plot=False, alpha=0.10), out_dir=tmp_path)
    forest = pd.read_csv(tmp_path / "tables" / f"forest_top_survival_{result.top_survival.random}.tsv", sep="\t")
    z90 = 1.6448536269514722
    np.testing.assert_allclose(forest["hr_ci_lower"], np.exp(forest["coef"] - z90 * forest["se"]))
    np.testing.assert_allclose(forest["hr_ci_upper"], np.exp(forest["coef"] + z90 * forest["se"]))


def test_unconverged_genes_are_reported_and_excluded(studies, tmp_path, caplog, monkeypatch):
    from ovarian_meta import gene_meta
    from ovarian_meta.meta_analysis import MetaConvergenceError

    real = gene_meta.random_effects_meta

    def flaky(log_effects, ses, **kw):
        # opposite strong effects stand in for a solver that runs out of budget
        if min(log_effects) < -0.5 and max(log_effects) > 0.5:
            raise MetaConvergenceError("REML did not converge after 1 iterations")
        return real(log_effects, ses, **kw)

    monkeypatch.setattr(gene_meta, "random_effects_meta", flaky)
    with caplog.at_level(logging.WARNING, logger="ovarian_meta.gene_meta"):
        result = run_analysis(studies, MetaConfig(plot=False), out_dir=tmp_path)

    assert result.dropped == ["G_HET"]
    assert result.no_studies == []
    assert len(result.results) == len(result.ranked) + len(result.dropped)
    assert not set(result.dropped) & set(result.ranked["gene"])
    assert result.ranked["converged"].all()
    assert "G_HET" in caplog.text
    dropped = pd.read_csv(tmp_path / "tables" / "dropped_unconverged.tsv", sep="\t")
    assert set(dropped["gene"]) == set(result.dropped)


def test_run_pipeline_from_files(studies, tmp_path):
    data_dir = tmp_path / "data"
    _write_collection(studies, data_dir)
    out_dir = tmp_path / "out"
    root = logging.getLogger()
    saved = (root.handlers[:], root.level)
    configure_logging(out_dir=out_dir, level="INFO")
    try:
        _check_pipeline_outputs(studies, data_dir, out_dir)
    finally:
        for h in root.handlers[:]:
            root.removeHandler(h)
            h.close()
        for h in saved[0]:
            root.addHandler(h)
        root.setLevel(saved[1])


def _check_pipeline_outputs(studies, data_dir, out_dir):
    result = run_pipeline(
        data_dir=data_dir,
        out_dir=out_dir,
        plot=False,
        show_progress=False,
        gene_mode="union",
    )
    assert "G_Z" in result.results["gene"].tolist()
    g_z = result.results.set_index("gene").loc["G_Z"]
    assert g_z["k"] == len(studies) - 1
    assert (out_dir / "session_info.txt").exists()
    assert (out_dir / "run.log").exists()

    with pytest.raises(FileExistsError):
        run_pipeline(data_dir=data_dir, out_dir=out_dir, plot=False, show_progress=False)

    excluded = run_pipeline(
        data_dir=data_dir,
        out_dir=out_dir,
        exclude=["StudyD"],
        plot=False,
        show_progress=False,
        overwrite=True,
    )
    assert excluded.results["k"].max() == len(studies) - 1


def test_config_validation():
    with pytest.raises(ValueError):
        MetaConfig(method="PM")
    with pytest.raises(ValueError):
        MetaConfig(max_iterations=0)
    with pytest.raises(ValueError):
        MetaConfig(step_adjustment=1.5)


def test_session_report_lists_stack():
    versions = package_versions()
    assert "lifelines" in versions
    text = session_report()
    assert "python:" in text
    assert "numpy" in text
