"""
Synthetic study collection with known per-gene survival effects.
"""

from __future__ import annotations

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from ovarian_meta.config import MetaConfig
from ovarian_meta.studies import Study, make_study

# log HR per unit expression, per study
STUDY_BETAS = {
    "StudyA": {"G_STRONG": 0.9, "G_HET": 1.0},
    "StudyB": {"G_STRONG": 0.9, "G_HET": -1.0},
    "StudyC": {"G_STRONG": 0.9, "G_HET": 0.0},
    "StudyD": {"G_STRONG": 0.9, "G_HET": 0.5},
}
# fraction of suboptimally debulked / serous / high grade / late stage / age>70
STUDY_SUBGROUPS = {
    "StudyA": (0.8, 0.9, 0.6, 0.7, 0.2),
    "StudyB": (0.2, 0.8, 0.7, 0.8, 0.3),
    "StudyC": (0.5, 1.0, 0.9, 0.6, 0.1),
    "StudyD": (0.65, 0.7, 0.5, 0.9, 0.15),
}
NOISE_GENES = ["G_NULL1", "G_NULL2", "G_NULL3"]
ALL_GENES = ["G_STRONG", "G_HET", *NOISE_GENES, "G_Z"]


def _labels(rng: np.random.Generator, n: int, frac: float, yes: str, no: str) -> list[str]:
    n_yes = int(round(frac * n))
    labels = np.array([yes] * n_yes + [no] * (n - n_yes), dtype=object)
    rng.shuffle(labels)
    return labels.tolist()


def simulate_study(
    rng: np.random.Generator,
    name: str,
    *,
    n: int = 150,
    betas: dict[str, float],
    subgroups: tuple[float, float, float, float, float],
    genes: list[str] = ALL_GENES,
    vital_status: bool = False,
) -> Study:
    samples = [f"{name}_S{i:03d}" for i in range(n)]
    expr = pd.DataFrame(rng.normal(size=(len(genes), n)), index=genes, columns=samples)

    lp = np.zeros(n)
    for gene, beta in betas.items():
        if gene in expr.index:
            lp += beta * expr.loc[gene].to_numpy()
    event_time = rng.exponential(scale=1000.0 * np.exp(-lp))
    censor_time = rng.uniform(200.0, 4000.0, size=n)
    time = np.minimum(event_time, censor_time)
    event = (event_time <= censor_time).astype(int)

    sub, ser, grade, stage, old = subgroups
    clinical = pd.DataFrame(
        {
            "days_to_death": np.round(time, 1),
            "debulking": _labels(rng, n, sub, "suboptimal", "optimal"),
            "histological_type": _labels(rng, n, ser, "ser", "endo"),
            "summarygrade": _labels(rng, n, grade, "high", "low"),
            "summarystage": _labels(rng, n, stage, "late", "early"),
            "age_at_initial_pathologic_diagnosis": np.where(
                np.array(_labels(rng, n, old, "old", "young")) == "old",
                rng.integers(71, 85, size=n),
                rng.integers(40, 70, size=n),
            ),
        },
        index=samples,
    )
    if vital_status:
        clinical["vital_status"] = np.where(event == 1, "deceased", "living")
    else:
        clinical["event"] = event
    return make_study(name, expr, clinical)


@pytest.fixture(scope="session")
def studies() -> dict[str, Study]:
    rng = np.random.default_rng(20240501)
    out: dict[str, Study] = {}
    for i, (name, betas) in enumerate(STUDY_BETAS.items()):
        genes = ALL_GENES if name != "StudyD" else [g for g in ALL_GENES if g != "G_Z"]
        out[name] = simulate_study(
            rng,
            name,
            betas=betas,
            subgroups=STUDY_SUBGROUPS[name],
            genes=genes,
            vital_status=i % 2 == 1,
        )
    return out


@pytest.fixture
def config() -> MetaConfig:
    return MetaConfig(plot=False)
