from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import numpy as np
import pandas as pd

from ovarian_meta.config import ClinicalFields, Subgroups
from ovarian_meta.io import read_tsv_matrix

EXPR_SUFFIX = ".expr.tsv"
CLINICAL_SUFFIX = ".clinical.tsv"

logger = logging.getLogger(__name__)


class StudyCollectionError(ValueError):
    """The study collection cannot be analysed as given."""


@dataclass(frozen=True, eq=False)
class Study:
    name: str
    expr: pd.DataFrame  # rows=genes, cols=samples
    clinical: pd.DataFrame  # rows=samples

    def __post_init__(self) -> None:
        validate_study(self)

    @property
    def genes(self) -> list[str]:
        return self.expr.index.tolist()

    @property
    def n_samples(self) -> int:
        return int(self.expr.shape[1])

    @property
    def n_events(self) -> int:
        ev = pd.to_numeric(self.clinical[ClinicalFields.SURV_EVENT], errors="coerce")
        return int(ev.fillna(0).sum())

    def has_gene(self, gene: str) -> bool:
        return gene in self.expr.index


def validate_study(study: Study) -> None:
    name = study.name
    for col in (ClinicalFields.SURV_TIME, ClinicalFields.SURV_EVENT):
        if col not in study.clinical.columns:
            raise StudyCollectionError(f"[{name}] clinical table lacks column {col!r}")
    if study.expr.index.has_duplicates:
        dups = study.expr.index[study.expr.index.duplicated()].unique().tolist()[:5]
        raise StudyCollectionError(f"[{name}] duplicated gene ids in expression matrix: {dups}")
    if study.expr.columns.has_duplicates or study.clinical.index.has_duplicates:
        raise StudyCollectionError(f"[{name}] duplicated sample ids")
    expr_samples = set(study.expr.columns)
    clin_samples = set(study.clinical.index)
    if expr_samples != clin_samples:
        only_expr = sorted(expr_samples - clin_samples)[:5]
        only_clin = sorted(clin_samples - expr_samples)[:5]
        raise StudyCollectionError(
            f"[{name}] expression/clinical samples differ "
            f"(expression only: {only_expr}, clinical only: {only_clin})"
        )


def _event_from_vital_status(s: pd.Series) -> pd.Series:
    status = s.astype(str).str.strip().str.lower()
    mapping = {Subgroups.DECEASED: 1.0, Subgroups.LIVING: 0.0}
    out = pd.to_numeric(status.map(mapping), errors="coerce")
    # Some studies already ship 0/1.
    numeric = pd.to_numeric(s, errors="coerce")
    return out.fillna(numeric)


def prepare_clinical(clinical: pd.DataFrame) -> pd.DataFrame:
    df = clinical.copy()
    if ClinicalFields.SURV_TIME in df.columns:
        time = df[ClinicalFields.SURV_TIME]
    elif ClinicalFields.TIME in df.columns:
        time = df[ClinicalFields.TIME]
    else:
        raise StudyCollectionError(
            f"clinical table needs {ClinicalFields.SURV_TIME!r} or {ClinicalFields.TIME!r}"
        )
    if ClinicalFields.SURV_EVENT in df.columns:
        event = pd.to_numeric(df[ClinicalFields.SURV_EVENT], errors="coerce")
    elif ClinicalFields.VITAL_STATUS in df.columns:
        event = _event_from_vital_status(df[ClinicalFields.VITAL_STATUS])
    else:
        raise StudyCollectionError(
            f"clinical table needs {ClinicalFields.SURV_EVENT!r} or {ClinicalFields.VITAL_STATUS!r}"
        )
    df[ClinicalFields.SURV_TIME] = pd.to_numeric(time, errors="coerce")
    df[ClinicalFields.SURV_EVENT] = event
    bad = df[ClinicalFields.SURV_EVENT].notna() & ~df[ClinicalFields.SURV_EVENT].isin([0.0, 1.0])
    if bad.any():
        raise StudyCollectionError(
            f"event indicator must be 0/1, got {sorted(df.loc[bad, ClinicalFields.SURV_EVENT].unique())[:5]}"
        )
    return df


def make_study(name: str, expr: pd.DataFrame, clinical: pd.DataFrame) -> Study:
    clinical = prepare_clinical(clinical)
    clinical.index = clinical.index.astype(str)
    expr = expr.copy()
    expr.index = expr.index.astype(str)
    expr.columns = [str(c) for c in expr.columns]
    expr = expr.apply(pd.to_numeric, errors="coerce")
    # Keep the expression column order as the canonical sample order.
    if set(expr.columns) == set(clinical.index):
        clinical = clinical.loc[expr.columns]
    return Study(name=name, expr=expr, clinical=clinical)


def load_study(name: str, expr_path: Path, clinical_path: Path) -> Study:
    expr = read_tsv_matrix(expr_path)
    clinical = read_tsv_matrix(clinical_path)
    return make_study(name, expr, clinical)


def load_study_collection(data_dir: Path, *, exclude: Iterable[str] = ()) -> dict[str, Study]:
    """
    Load every ``<name>.expr.tsv`` / ``<name>.clinical.tsv`` pair under ``data_dir``.

    Studies named in ``exclude`` (duplicated patients, incompatible platforms)
    are skipped before reading.
    """
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise StudyCollectionError(f"study directory does not exist: {data_dir}")
    excluded = set(exclude)

    expr_files = {p.name[: -len(EXPR_SUFFIX)]: p for p in data_dir.glob(f"*{EXPR_SUFFIX}")}
    clin_files = {p.name[: -len(CLINICAL_SUFFIX)]: p for p in data_dir.glob(f"*{CLINICAL_SUFFIX}")}
    unpaired = sorted(set(expr_files) ^ set(clin_files))
    if unpaired:
        raise StudyCollectionError(f"studies missing an expression or clinical file: {unpaired}")

    studies: dict[str, Study] = {}
    for name in sorted(expr_files):
        if name in excluded:
            logger.info("[%s] excluded", name)
            continue
        studies[name] = load_study(name, expr_files[name], clin_files[name])
        logger.info(
            "[%s] loaded: genes=%d samples=%d",
            name,
            len(studies[name].genes),
            studies[name].n_samples,
        )
    if not studies:
        raise StudyCollectionError(f"no studies loaded from {data_dir}")
    return studies


def restrict_to_complete_survival(study: Study) -> Study:
    clin = study.clinical
    keep = clin[ClinicalFields.SURV_TIME].notna() & clin[ClinicalFields.SURV_EVENT].notna()
    keep &= clin[ClinicalFields.SURV_TIME] >= 0
    samples = clin.index[keep].tolist()
    return Study(name=study.name, expr=study.expr.loc[:, samples], clinical=clin.loc[samples])


def gene_universe(studies: dict[str, Study], *, mode: str = "intersection") -> list[str]:
    """
    Genes to screen: present in every study ("intersection") or in any study ("union").
    """
    if not studies:
        raise StudyCollectionError("empty study collection")
    gene_lists = [s.genes for s in studies.values()]
    if mode == "intersection":
        common = set(gene_lists[0])
        for genes in gene_lists[1:]:
            common &= set(genes)
        return sorted(common)
    if mode == "union":
        seen: dict[str, None] = {}
        for genes in gene_lists:
            for g in genes:
                seen.setdefault(g, None)
        return list(seen)
    raise ValueError(f"mode must be 'intersection' or 'union', got {mode!r}")


def filter_studies(
    studies: dict[str, Study],
    *,
    min_samples: int = 0,
    min_events: int = 0,
    common_genes: bool = True,
) -> dict[str, Study]:
    if not studies:
        raise StudyCollectionError("empty study collection")

    out: dict[str, Study] = {}
    for name, study in studies.items():
        s = restrict_to_complete_survival(study)
        if s.n_samples < min_samples or s.n_events < min_events:
            logger.info(
                "[%s] dropped: samples=%d events=%d (min_samples=%d min_events=%d)",
                name,
                s.n_samples,
                s.n_events,
                min_samples,
                min_events,
            )
            continue
        out[name] = s
    if not out:
        raise StudyCollectionError("no study passed the sample/event filters")

    if common_genes:
        genes = gene_universe(out, mode="intersection")
        if not genes:
            raise StudyCollectionError("studies share no genes")
        out = {
            name: Study(name=name, expr=s.expr.loc[genes], clinical=s.clinical)
            for name, s in out.items()
        }
        logger.info("common genes across %d studies: %d", len(out), len(genes))
    return out


def study_summary(studies: dict[str, Study]) -> pd.DataFrame:
    rows: list[dict] = []
    for name, s in studies.items():
        time = pd.to_numeric(s.clinical[ClinicalFields.SURV_TIME], errors="coerce")
        rows.append(
            {
                "study": name,
                "n": s.n_samples,
                "events": s.n_events,
                "genes": len(s.genes),
                "median_followup_days": float(np.nanmedian(time)) if time.notna().any() else np.nan,
            }
        )
    return pd.DataFrame(rows)
