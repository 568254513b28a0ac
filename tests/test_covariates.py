from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from ovarian_meta.covariates import covariate_association, covariate_summary, subgroup_fraction
from ovarian_meta.config import SUBGROUP_COLUMNS


def test_subgroup_fraction_ignores_missing():
    clinical = pd.DataFrame(
        {
            "debulking": ["suboptimal", "optimal", None, "Suboptimal"],
            "age_at_initial_pathologic_diagnosis": [65, 71, np.nan, 80],
        }
    )
    assert subgroup_fraction(clinical, "debulking", "suboptimal") == pytest.approx(2 / 3)
    assert subgroup_fraction(clinical, "age_at_initial_pathologic_diagnosis", None) == pytest.approx(2 / 3)
    assert np.isnan(subgroup_fraction(clinical, "summarystage", "late"))


def test_covariate_association_picks_planted_covariate():
    rng = np.random.default_rng(3)
    frac = np.array([0.1, 0.3, 0.5, 0.7, 0.9, 0.4])
    summary = pd.DataFrame(
        {
            "suboptimal_debulking": rng.uniform(0.2, 0.8, size=6),
            "serous_histology": rng.uniform(0.6, 1.0, size=6),
            "high_grade": frac,
            "late_stage": rng.uniform(0.5, 0.9, size=6),
            "age_over_70": [np.nan] * 6,
            "n": [100, 150, 80, 200, 120, 90],
            "coef": 2.0 * frac - 1.0 + rng.normal(scale=0.01, size=6),
        },
        index=[f"s{i}" for i in range(6)],
    )
    assoc = covariate_association(summary)
    assert assoc is not None
    assert assoc.best == "high_grade"
    assert assoc.slope == pytest.approx(2.0, abs=0.1)
    assert assoc.p < 0.001
    assert assoc.n_studies == 6
    # age has no data anywhere and is skipped
    assert "age_over_70" not in assoc.table["covariate"].tolist()
    assert assoc.predict([0.5])[0] == pytest.approx(0.0, abs=0.05)


def test_covariate_association_needs_three_studies():
    summary = pd.DataFrame(
        {col: [0.2, 0.8] for col in SUBGROUP_COLUMNS} | {"n": [10, 20], "coef": [0.1, 0.5]},
        index=["a", "b"],
    )
    assert covariate_association(summary) is None
    assert covariate_association(pd.DataFrame()) is None


def test_covariate_summary_on_synthetic_collection(studies, config):
    summary = covariate_summary(studies, "G_HET", config)
    assert list(summary.index) == list(studies)
    assert set(SUBGROUP_COLUMNS) <= set(summary.columns)
    assert summary.loc["StudyA", "suboptimal_debulking"] == pytest.approx(0.8)
    assert summary.loc["StudyB", "suboptimal_debulking"] == pytest.approx(0.2)
    assert summary.loc["StudyA", "coef"] > 0 > summary.loc["StudyB", "coef"]

    assoc = covariate_association(summary)
    assert assoc.best == "suboptimal_debulking"
    assert assoc.slope > 0
