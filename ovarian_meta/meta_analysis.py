from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy import stats


class MetaConvergenceError(RuntimeError):
    """The iterative tau^2 estimator did not converge within its budget."""


@dataclass(frozen=True)
class MetaResult:
    method: str
    k: int
    log_effect: float
    se: float
    ci_lower: float
    ci_upper: float
    z: float
    p: float
    tau2: float
    q: float
    q_df: int
    q_p: float
    i2: float
    h2: float
    iterations: int = 0

    @property
    def effect(self) -> float:
        return float(np.exp(self.log_effect))

    @property
    def effect_ci_lower(self) -> float:
        return float(np.exp(self.ci_lower))

    @property
    def effect_ci_upper(self) -> float:
        return float(np.exp(self.ci_upper))


def _clean(log_effects: object, ses: object) -> tuple[np.ndarray, np.ndarray]:
    theta = np.asarray(log_effects, dtype=float).reshape(-1)
    se = np.asarray(ses, dtype=float).reshape(-1)
    if theta.shape != se.shape:
        raise ValueError(f"log_effects and ses differ in length: {theta.size} vs {se.size}")
    ok = np.isfinite(theta) & np.isfinite(se) & (se > 0)
    return theta[ok], se[ok]


def _weighted_mean(theta: np.ndarray, w: np.ndarray) -> tuple[float, float]:
    sw = float(np.sum(w))
    return float(np.sum(w * theta) / sw), float(np.sqrt(1.0 / sw))


def cochran_q(log_effects: object, ses: object) -> tuple[float, int, float]:
    """
    Cochran's Q with inverse-variance weights.

    Returns (Q, df, p). With a single study df=0 and p is NaN: there is no
    heterogeneity to test.
    """
    theta, se = _clean(log_effects, ses)
    k = int(theta.size)
    if k == 0:
        return float("nan"), 0, float("nan")
    w = 1.0 / (se * se)
    mu, _ = _weighted_mean(theta, w)
    q = float(np.sum(w * (theta - mu) ** 2))
    df = k - 1
    if df < 1:
        return q, df, float("nan")
    q_p = float(stats.chi2.sf(q, df))
    return q, df, min(1.0, max(0.0, q_p))


def _heterogeneity(se: np.ndarray, q: float, df: int, tau2: float) -> tuple[float, float]:
    # I^2 / H^2 from tau^2 and the typical within-study variance
    if df < 1:
        return 0.0, 1.0
    w = 1.0 / (se * se)
    sw = float(np.sum(w))
    denom = sw * sw - float(np.sum(w * w))
    if denom <= 0:
        return 0.0, 1.0
    s2 = df * sw / denom
    i2 = float(100.0 * tau2 / (tau2 + s2))
    h2 = float((tau2 + s2) / s2)
    return i2, h2


def z_critical(alpha: float) -> float:
    return float(stats.norm.ppf(1.0 - alpha / 2.0))


def _result(
    method: str,
    theta: np.ndarray,
    se: np.ndarray,
    tau2: float,
    *,
    alpha: float,
    iterations: int = 0,
) -> MetaResult:
    w = 1.0 / (se * se + tau2)
    mu, se_mu = _weighted_mean(theta, w)
    z_crit = z_critical(alpha)
    z = mu / se_mu
    p = float(2.0 * stats.norm.sf(abs(z)))
    q, df, q_p = cochran_q(theta, se)
    i2, h2 = _heterogeneity(se, q, df, tau2)
    return MetaResult(
        method=method,
        k=int(theta.size),
        log_effect=mu,
        se=se_mu,
        ci_lower=float(mu - z_crit * se_mu),
        ci_upper=float(mu + z_crit * se_mu),
        z=float(z),
        p=p,
        tau2=float(tau2),
        q=q,
        q_df=df,
        q_p=q_p,
        i2=i2,
        h2=h2,
        iterations=iterations,
    )


def fixed_effects_meta(log_effects: object, ses: object, *, alpha: float = 0.05) -> MetaResult | None:
    """
    Inverse-variance fixed-effects combination. Closed form; None only if no
    study has a finite estimate with a positive standard error.
    """
    theta, se = _clean(log_effects, ses)
    if theta.size == 0:
        return None
    return _result("FE", theta, se, 0.0, alpha=alpha)


def tau2_dersimonian_laird(theta: np.ndarray, se: np.ndarray) -> float:
    k = int(theta.size)
    if k < 2:
        return 0.0
    w = 1.0 / (se * se)
    mu, _ = _weighted_mean(theta, w)
    q = float(np.sum(w * (theta - mu) ** 2))
    c = float(np.sum(w) - (np.sum(w * w) / np.sum(w)))
    return float(max(0.0, (q - (k - 1)) / c)) if c > 0 else 0.0


def tau2_reml(
    theta: np.ndarray,
    se: np.ndarray,
    *,
    max_iterations: int = 1000,
    step_adjustment: float = 0.5,
    threshold: float = 1e-5,
) -> tuple[float, int]:
    """
    REML estimate of the between-study variance by Fisher scoring.

    Starts from the DerSimonian-Laird estimate. Each step is scaled by
    ``step_adjustment`` and halved while it would make tau^2 negative; tau^2
    is truncated at zero. Returns (tau2, iterations) or raises
    MetaConvergenceError.
    """
    k = int(theta.size)
    if k < 2:
        return 0.0, 0
    v = se * se
    tau2 = tau2_dersimonian_laird(theta, se)
    for it in range(1, int(max_iterations) + 1):
        w = 1.0 / (v + tau2)
        sw = float(np.sum(w))
        mu = float(np.sum(w * theta) / sw)
        py = w * (theta - mu)
        tr_p = sw - float(np.sum(w * w)) / sw
        tr_pp = float(np.sum(w * w)) - 2.0 * float(np.sum(w**3)) / sw + (float(np.sum(w * w)) / sw) ** 2
        if not np.isfinite(tr_pp) or tr_pp <= 0:
            raise MetaConvergenceError(f"degenerate REML information (tr(PP)={tr_pp})")
        adj = (float(np.sum(py * py)) - tr_p) / tr_pp * float(step_adjustment)
        while tau2 + adj < 0 and abs(adj) > threshold:
            adj /= 2.0
        new_tau2 = max(0.0, tau2 + adj)
        if not np.isfinite(new_tau2):
            raise MetaConvergenceError("REML produced a non-finite tau^2")
        change = abs(new_tau2 - tau2)
        tau2 = new_tau2
        if change <= threshold:
            return tau2, it
    raise MetaConvergenceError(
        f"REML did not converge after {max_iterations} iterations (step adjustment {step_adjustment})"
    )


def random_effects_meta(
    log_effects: object,
    ses: object,
    *,
    method: str = "REML",
    max_iterations: int = 1000,
    step_adjustment: float = 0.5,
    threshold: float = 1e-5,
    alpha: float = 0.05,
) -> MetaResult | None:
    """
    Random-effects combination with tau^2 from REML (iterative) or
    DerSimonian-Laird (closed form); ``method="FE"`` fixes tau^2 at zero.
    """
    theta, se = _clean(log_effects, ses)
    if theta.size == 0:
        return None
    if method == "FE":
        return _result("FE", theta, se, 0.0, alpha=alpha)
    if method == "DL":
        return _result("DL", theta, se, tau2_dersimonian_laird(theta, se), alpha=alpha)
    if method == "REML":
        tau2, iterations = tau2_reml(
            theta,
            se,
            max_iterations=max_iterations,
            step_adjustment=step_adjustment,
            threshold=threshold,
        )
        return _result("REML", theta, se, tau2, alpha=alpha, iterations=iterations)
    raise ValueError(f"unknown meta-analysis method: {method!r}")
