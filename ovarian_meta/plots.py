from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from ovarian_meta.meta_analysis import MetaResult


def init_style() -> None:
    sns.set_theme(style="whitegrid", context="paper")
    sns.set_palette("colorblind")


def savefig(fig: plt.Figure, path: Path, *, dpi: int = 200) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)


def q_histogram(q_p: pd.Series, *, title: str, out_path: Path, bins: int = 50) -> None:
    init_style()
    vals = pd.to_numeric(q_p, errors="coerce").dropna()
    if vals.empty:
        return
    fig, ax = plt.subplots(figsize=(6.0, 4.2))
    sns.histplot(vals, bins=bins, binrange=(0.0, 1.0), ax=ax, color="#4c72b0")
    ax.set_title(title)
    ax.set_xlabel("Cochran's Q p-value")
    ax.set_ylabel("Genes")
    savefig(fig, out_path)


def forest_plot(
    per_study: pd.DataFrame,
    *,
    random: MetaResult,
    fixed: MetaResult,
    title: str,
    out_path: Path,
) -> None:
    """
    Per-study hazard ratios with the random-effects summary as the bottom row;
    the fixed-effects summary is overlaid on that row.
    """
    init_style()
    df = per_study.dropna(subset=["hr", "hr_ci_lower", "hr_ci_upper"]).copy()
    if df.empty:
        return
    df = df.sort_values("hr", ascending=False).reset_index(drop=True)

    n = df.shape[0]
    y = np.arange(n, 0, -1, dtype=float)
    fig, ax = plt.subplots(figsize=(6.5, max(3.5, 0.35 * n + 2)))

    hr = df["hr"].to_numpy(dtype=float)
    lo = df["hr_ci_lower"].to_numpy(dtype=float)
    hi = df["hr_ci_upper"].to_numpy(dtype=float)
    sizes = 20 + 180 * (df["n"] / df["n"].max()).to_numpy(dtype=float) if "n" in df.columns else 40
    ax.hlines(y, lo, hi, color="gray", linewidth=1)
    ax.scatter(hr, y, s=sizes, marker="s", color="black", zorder=3)

    # RE diamond at y=0
    re_x = [random.effect_ci_lower, random.effect, random.effect_ci_upper, random.effect]
    ax.fill(re_x, [0.0, 0.25, 0.0, -0.25], color="#1f77b4", alpha=0.8, label=f"RE ({random.method})")
    ax.errorbar(
        [fixed.effect],
        [0.0],
        xerr=[[fixed.effect - fixed.effect_ci_lower], [fixed.effect_ci_upper - fixed.effect]],
        fmt="o",
        color="#d62728",
        ecolor="#d62728",
        capsize=3,
        label="FE",
        zorder=4,
    )
    ax.axvline(1.0, color="red", linestyle="--", linewidth=1)
    ax.set_yticks([*y.tolist(), 0.0])
    ax.set_yticklabels([*df["study"].astype(str).tolist(), "Summary"])
    ax.set_xscale("log")
    ax.set_xlabel("Hazard ratio per unit expression")
    ax.set_title(f"{title}\nQ p={random.q_p:.2e}  I2={random.i2:.1f}%")
    ax.legend(frameon=True, loc="best")
    savefig(fig, out_path)


def covariate_scatter(
    summary: pd.DataFrame,
    *,
    covariate: str,
    intercept: float,
    slope: float,
    p: float,
    title: str,
    out_path: Path,
) -> None:
    init_style()
    d = summary[[covariate, "coef", "n"]].dropna()
    if d.empty:
        return
    fig, ax = plt.subplots(figsize=(6.0, 4.8))
    ax.scatter(d[covariate], d["coef"], s=20 + 280 * d["n"] / d["n"].max(), alpha=0.7, edgecolor="black")
    for study, r in d.iterrows():
        ax.text(r[covariate], r["coef"], str(study), fontsize=7)
    xs = np.linspace(0.0, 1.0, 50)
    ax.plot(xs, intercept + slope * xs, color="#d62728", linewidth=2)
    ax.axhline(0.0, color="gray", linestyle=":", linewidth=1)
    ax.set_xlim(-0.05, 1.05)
    ax.set_xlabel(f"Fraction {covariate.replace('_', ' ')}")
    ax.set_ylabel("Study log hazard ratio")
    ax.set_title(f"{title}\nweighted regression p={p:.2e}")
    savefig(fig, out_path)
