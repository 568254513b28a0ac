from __future__ import annotations

from pathlib import Path

import pandas as pd


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def write_tsv(df: pd.DataFrame, path: Path, *, index: bool = False) -> None:
    ensure_dir(path.parent)
    df.to_csv(path, sep="\t", index=index)


def read_tsv_matrix(path: Path) -> pd.DataFrame:
    """
    Read a TSV whose first column is the row index (gene ids or sample ids).
    """
    df = pd.read_csv(path, sep="\t", index_col=0)
    df.index = df.index.astype(str)
    df.columns = [str(c) for c in df.columns]
    return df
