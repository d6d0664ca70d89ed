"""
Power and type-I error of a random-intercept model under heterogeneous
intra-pair correlation (two groups, two timepoints).

This module simulates paired longitudinal data for two donor groups whose
within-subject correlation differs, fits a mixed-effects model that assumes a
single common correlation, and estimates how often the test for the ``time``
effect rejects at level alpha.

Approach
--------
- Data model, per subject i with measurements at time 0 and time 1:
    (e_i0, e_i1) ~ N2(0, [[1, r], [r, 1]]),  r = r11 (group 0) or r12 (group 1)
    y_it = e_it + b * t * I[group 1]
  so only group 1 shifts by ``b`` at time 1; the shift is deterministic.
- Subjects 1..N belong to group 0 and N+1..2N to group 1; every subject
  contributes exactly two rows (time 0 then time 1), 4N rows in total.
- Analysis models:
    common     y ~ time with a random intercept per subject (one residual
               variance and one correlation for everybody; misspecified
               when r11 != r12)
    dummy      y ~ time + grp, same random intercept
    gls_known  GLS for y ~ time using the true block covariance per group
               (correctly specified reference)
- p-values: Wald z for MixedLM fits, t with n - p df for the GLS reference.
- Power (or type-I error when b = 0) is the share of valid repetitions with
  p < alpha. Repetitions whose fit fails are excluded from the denominator
  and counted separately; a grid point where every fit failed reports NaN.

Usage
-----
1) Power for one configuration:
   python3 -m corr_misspec.power_corr_misspec --mode power --n-per-group 100 \
     --b 0.25 --r11 0.6 --r12 0.2 --model common --sims 1500

2) Power curve over the effect grid (CSV to stdout, optionally to a file):
   python3 -m corr_misspec.power_corr_misspec --mode curve --r11 0.6 --r12 0.2 \
     --b-values 0,0.05,0.1,0.15,0.2,0.25,0.3,0.35,0.4,0.45,0.5 --output curve.csv

3) Type-I error across correlation settings:
   python3 -m corr_misspec.power_corr_misspec --mode type1 \
     --corr-pairs 0.6:0.6,0.6:0.2,0.2:0.6 --sims 1500

Notes
-----
- The RNG is always an explicitly seeded ``numpy.random.Generator``. Work is
  split into chunks whose seeds are derived from ``seed``, so a fixed
  (seed, chunk_size) gives identical results for any number of workers.
- Every grid point of a curve reuses the same seed (common random numbers),
  which keeps curves smooth in ``b``.
- Increase --sims to tighten Monte Carlo precision; the binomial standard
  error at power p is sqrt(p * (1 - p) / sims).

"""

from __future__ import annotations

import argparse
import math
import os
import sys
import warnings
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

import scipy.stats as sps
import statsmodels.formula.api as smf


DEFAULT_CHUNK_SIZE = 64
DEFAULT_SIMS = 1500
DEFAULT_B_GRID = tuple(round(0.05 * i, 2) for i in range(11))

MODELS = ("common", "dummy", "gls_known")
_MIXEDLM_FORMULAS = {
    "common": "y ~ time",
    "dummy": "y ~ time + grp",
}

# Exceptions statsmodels raises from MixedLM on degenerate samples.
_FIT_ERRORS = (np.linalg.LinAlgError, ValueError, ArithmeticError)


class FitFailureWarning(UserWarning):
    """Some repetitions of a simulation produced no usable p-value."""


# ---------- Validation ----------

def validate_probability(value: float, name: str, allow_zero: bool = True, allow_one: bool = True) -> None:
    """Check that value lies in [0, 1]; allow_zero/allow_one control whether the ends are open."""
    lo = "[" if allow_zero else "("
    hi = "]" if allow_one else ")"
    if value is None or math.isnan(value):
        raise ValueError(f"{name} must be a number in {lo}0, 1{hi}, got {value!r}")
    below = value < 0.0 if allow_zero else value <= 0.0
    above = value > 1.0 if allow_one else value >= 1.0
    if below or above:
        raise ValueError(f"{name} must be in {lo}0, 1{hi}, got {value}")


def validate_correlation(value: float, name: str) -> None:
    """Validate an intra-pair correlation in [0, 1)."""
    if value is None or not (value == value):
        raise ValueError(f"{name} must be a real number in [0, 1)")
    if not (0.0 <= value < 1.0):
        raise ValueError(f"{name} must be in [0, 1), got {value}")


def validate_n_per_group(n_per_group: int) -> None:
    if isinstance(n_per_group, bool) or not isinstance(n_per_group, (int, np.integer)):
        raise ValueError(f"n_per_group must be an integer, got {n_per_group!r}")
    if n_per_group < 1:
        raise ValueError(f"n_per_group must be >= 1, got {n_per_group}")


@dataclass(frozen=True)
class CorrMisspecSpec:
    n_per_group: int
    b: float = 0.0            # mean shift at time 1 for group 1
    r11: float = 0.6          # intra-pair correlation, group 0
    r12: float = 0.2          # intra-pair correlation, group 1
    alpha: float = 0.05
    model: str = "common"     # "common", "dummy" or "gls_known"
    reml: bool = True
    seed: Optional[int] = 12345

    def validate(self) -> None:
        validate_n_per_group(self.n_per_group)
        validate_correlation(self.r11, "r11")
        validate_correlation(self.r12, "r12")
        validate_probability(self.alpha, "alpha", allow_zero=False, allow_one=False)
        if self.b is None or not math.isfinite(self.b):
            raise ValueError(f"b must be a finite real number, got {self.b!r}")
        if self.model not in MODELS:
            raise ValueError(f"model must be one of {MODELS}, got {self.model!r}")


# ---------- Data generation ----------

def simulate_dataset(n_per_group: int, b: float, r11: float, r12: float,
                     rng: np.random.Generator) -> pd.DataFrame:
    """Draw one paired two-group dataset.

    Returns a dataframe with 4 * n_per_group rows and columns y, subject,
    time, grp. Rows are ordered by subject, time 0 before time 1.
    """
    validate_n_per_group(n_per_group)
    validate_correlation(r11, "r11")
    validate_correlation(r12, "r12")
    n = int(n_per_group)

    mean = np.zeros(2)
    pairs_g0 = rng.multivariate_normal(mean, [[1.0, r11], [r11, 1.0]], size=n)
    pairs_g1 = rng.multivariate_normal(mean, [[1.0, r12], [r12, 1.0]], size=n)
    # Mean shift for group 1 at time 1 only
    pairs_g1[:, 1] += b

    n_subjects = 2 * n
    return pd.DataFrame({
        "y": np.concatenate([pairs_g0.ravel(), pairs_g1.ravel()]),
        "subject": np.repeat(np.arange(1, n_subjects + 1), 2),
        "time": np.tile([0, 1], n_subjects),
        "grp": np.repeat([0, 1], 2 * n),
    })


# ---------- Model fitting ----------

@dataclass
class GlsFit:
    """Array-backed result of the known-covariance GLS fit."""

    params: np.ndarray
    bse: np.ndarray
    pvalues: np.ndarray
    sigma2: float
    df_resid: int
    exog_names: Tuple[str, ...] = ("Intercept", "time")


@dataclass
class FitResult:
    fit: Any
    pvalue: float
    coef: float
    pvalue_grp: Optional[float] = None
    converged: bool = True
    failure_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.converged and np.isfinite(self.pvalue))


def _failed_fit(reason: str, with_grp: bool, fit: Any = None) -> FitResult:
    return FitResult(
        fit=fit,
        pvalue=float("nan"),
        coef=float("nan"),
        pvalue_grp=float("nan") if with_grp else None,
        converged=False,
        failure_reason=reason,
    )


def fit_model(df: pd.DataFrame, model: str = "common", *, reml: bool = True,
              r11: Optional[float] = None, r12: Optional[float] = None) -> FitResult:
    """Fit one analysis model and extract the p-value for ``time``.

    model in {"common", "dummy", "gls_known"}; ``gls_known`` needs r11 and r12.
    Fits that raise or report non-convergence come back with a NaN p-value and
    ``converged=False`` instead of raising.
    """
    if model == "gls_known":
        if r11 is None or r12 is None:
            raise ValueError("gls_known requires r11 and r12")
        return _fit_gls_known(df, r11, r12)
    if model not in _MIXEDLM_FORMULAS:
        raise ValueError(f"model must be one of {MODELS}, got {model!r}")

    with_grp = model == "dummy"
    try:
        # Boundary and convergence warnings are expected at low correlation;
        # the converged flag below decides whether the fit is usable.
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            result = smf.mixedlm(_MIXEDLM_FORMULAS[model], df, groups=df["subject"]).fit(reml=reml)
    except _FIT_ERRORS as exc:
        return _failed_fit(f"{type(exc).__name__}: {exc}", with_grp)

    if not getattr(result, "converged", True):
        return _failed_fit("MixedLM did not converge", with_grp, fit=result)

    pval = float(result.pvalues.get("time", np.nan))
    coef = float(result.params.get("time", np.nan))
    if not np.isfinite(pval):
        return _failed_fit("non-finite p-value for time", with_grp, fit=result)

    pval_grp = float(result.pvalues.get("grp", np.nan)) if with_grp else None
    return FitResult(fit=result, pvalue=pval, coef=coef, pvalue_grp=pval_grp)


def _t_two_sided_pvalue(t: float, df: int) -> float:
    return float(2.0 * sps.t.sf(abs(t), df))


def _fit_gls_known(df: pd.DataFrame, r11: float, r12: float) -> FitResult:
    """GLS for y ~ time with the true per-group 2x2 correlation blocks.

    - Blockwise C^{-1} per subject: (1/(1-rho^2)) * [[1,-rho],[-rho,1]],
      rho = r11 for group 0 and r12 for group 1.
    - sigma2_hat = Q / (n - p) from the GLS residual quadratic form.
    - Two-sided t-test with df = n - p.
    """
    validate_correlation(r11, "r11")
    validate_correlation(r12, "r12")
    ordered = df.sort_values(["subject", "time"], kind="stable")
    times = ordered["time"].to_numpy()
    if len(ordered) == 0 or len(ordered) % 2 == 1 or not np.all(times.reshape(-1, 2) == [0, 1]):
        raise ValueError("gls_known requires exactly one time-0 and one time-1 row per subject")

    n = len(ordered)
    X = np.column_stack([np.ones(n, dtype=float), times.astype(float)])
    y = ordered["y"].to_numpy(dtype=float)
    p = X.shape[1]

    rho = np.where(ordered["grp"].to_numpy()[::2] == 1, r12, r11).astype(float)
    denom = np.maximum(1e-9, 1.0 - rho * rho)
    c_inv = np.empty((len(rho), 2, 2), dtype=float)
    c_inv[:, 0, 0] = c_inv[:, 1, 1] = 1.0 / denom
    c_inv[:, 0, 1] = c_inv[:, 1, 0] = -rho / denom

    X_blocks = X.reshape(-1, 2, p)
    y_blocks = y.reshape(-1, 2)
    M = np.einsum("kip,kij,kjq->pq", X_blocks, c_inv, X_blocks)
    rhs = np.einsum("kip,kij,kj->p", X_blocks, c_inv, y_blocks)
    try:
        M_inv = np.linalg.inv(M)
    except np.linalg.LinAlgError as exc:
        return _failed_fit(f"LinAlgError: {exc}", with_grp=False)

    beta = M_inv @ rhs
    resid = (y - X @ beta).reshape(-1, 2)
    Q = float(np.einsum("ki,kij,kj->", resid, c_inv, resid))

    df_dof = max(1, n - p)
    sigma2_hat = Q / float(df_dof)
    bse = np.sqrt(np.maximum(1e-12, np.diag(sigma2_hat * M_inv)))
    tvals = beta / bse
    pvals = np.array([_t_two_sided_pvalue(t, df_dof) for t in tvals])

    fit = GlsFit(params=beta, bse=bse, pvalues=pvals, sigma2=sigma2_hat, df_resid=df_dof)
    return FitResult(fit=fit, pvalue=float(pvals[1]), coef=float(beta[1]))


# ---------- Analytic reference ----------

def _two_sided_power_normal(lam: float, alpha: float) -> float:
    """P(|Z + lam| > z_crit) for standard normal Z."""
    z = _critical_z(alpha)
    return float(sps.norm.sf(z - lam) + sps.norm.sf(z + lam))


def analytic_power_time(n_per_group: int, b: float, r11: float, r12: float, alpha: float = 0.05) -> float:
    """Normal-approximation power for the average time effect.

    The time estimate is the mean of the 2N within-subject differences:
    mean b/2, variance (2 - r11 - r12) / (2N).
    """
    validate_n_per_group(n_per_group)
    validate_correlation(r11, "r11")
    validate_correlation(r12, "r12")
    validate_probability(alpha, "alpha", allow_zero=False, allow_one=False)
    se = math.sqrt((2.0 - r11 - r12) / (2.0 * n_per_group))
    lam = (b / 2.0) / se
    return float(max(0.0, min(1.0, _two_sided_power_normal(lam, alpha))))


def analytic_n_for_power(target_power: float, b: float, r11: float, r12: float,
                         alpha: float = 0.05, n_lo: int = 1, n_hi: int = 100_000) -> Tuple[int, float]:
    """Smallest per-group N reaching target power under the analytic approximation."""

    validate_probability(target_power, "target_power", allow_zero=False, allow_one=False)
    if b == 0:
        return n_hi, analytic_power_time(n_hi, b, r11, r12, alpha)

    low = max(1, n_lo)
    high = max(low, n_hi)
    best_n = high
    best_pw = analytic_power_time(high, b, r11, r12, alpha)
    while low <= high:
        mid = (low + high) // 2
        pw = analytic_power_time(mid, b, r11, r12, alpha)
        if pw >= target_power:
            best_n, best_pw = mid, pw
            high = mid - 1
        else:
            low = mid + 1
    return best_n, best_pw


def _critical_z(alpha: float) -> float:
    return float(sps.norm.isf(alpha / 2.0))


def binomial_wilson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Wilson score interval for binomial proportion k/n (two-sided alpha)."""
    if n <= 0:
        return (float("nan"), float("nan"))
    z2 = _critical_z(alpha) ** 2
    p = k / n
    scale = 1.0 / (1.0 + z2 / n)
    mid = scale * (p + z2 / (2.0 * n))
    spread = scale * math.sqrt(z2 * max(0.0, p * (1.0 - p) / n + z2 / (4.0 * n * n)))
    return max(0.0, mid - spread), min(1.0, mid + spread)


def monte_carlo_se(power: float, sims: int) -> float:
    if sims <= 0 or not np.isfinite(power):
        return float("nan")
    return math.sqrt(max(0.0, power * (1.0 - power)) / sims)


# ---------- Monte Carlo engine ----------

@dataclass(frozen=True)
class _SimWorkerInput:
    start: int
    count: int
    seed: Optional[int]
    spec: CorrMisspecSpec
    return_details: bool


@dataclass
class _SimWorkerResult:
    start: int
    count: int
    hits: int
    coef_sum: float
    valid_count: int
    coefs: Optional[np.ndarray]
    pvals: Optional[np.ndarray]


@dataclass
class PowerEstimate:
    power: float
    hits: int
    n_valid: int
    n_failed: int
    sims: int
    avg_coef: float

    def ci(self, alpha: float = 0.05) -> Tuple[float, float]:
        """Wilson interval over the valid repetitions."""
        return binomial_wilson_ci(self.hits, self.n_valid, alpha=alpha)


def _resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Translate user-provided n_jobs into an actual worker count."""
    if n_jobs is None or n_jobs == 0:
        return 1
    if n_jobs < 0:
        cpu = os.cpu_count() or 1
        # Example: -1 -> cpu, -2 -> cpu-1
        return max(1, cpu + 1 + n_jobs)
    return max(1, int(n_jobs))


def _effective_chunk_size(sims: int, chunk_size: Optional[int]) -> int:
    size = DEFAULT_CHUNK_SIZE if not chunk_size or chunk_size <= 0 else int(chunk_size)
    return max(1, min(size, sims))


def _chunk_indices(total: int, chunk_size: int) -> List[Tuple[int, int]]:
    chunks: List[Tuple[int, int]] = []
    start = 0
    while start < total:
        count = min(chunk_size, total - start)
        chunks.append((start, count))
        start += count
    return chunks


def _generate_chunk_seeds(base_seed: Optional[int], num_chunks: int) -> List[int]:
    if num_chunks <= 0:
        return []
    rng = np.random.default_rng(base_seed)
    seeds = rng.integers(0, 2**63 - 1, size=num_chunks, dtype=np.int64)
    # Python ints pickle cleanly across processes
    return [int(s) for s in seeds]


def _run_repetition(spec: CorrMisspecSpec, rng: np.random.Generator) -> FitResult:
    df = simulate_dataset(spec.n_per_group, spec.b, spec.r11, spec.r12, rng)
    return fit_model(df, spec.model, reml=spec.reml, r11=spec.r11, r12=spec.r12)


def _run_simulation_chunk(payload: _SimWorkerInput) -> _SimWorkerResult:
    spec = payload.spec
    rng = np.random.default_rng(payload.seed)
    hits = 0
    coef_sum = 0.0
    valid_count = 0
    coefs = np.full(payload.count, np.nan) if payload.return_details else None
    pvals = np.full(payload.count, np.nan) if payload.return_details else None

    for idx in range(payload.count):
        res = _run_repetition(spec, rng)
        if res.ok:
            valid_count += 1
            coef_sum += res.coef
            if res.pvalue < spec.alpha:
                hits += 1
        if payload.return_details:
            coefs[idx] = res.coef
            pvals[idx] = res.pvalue

    return _SimWorkerResult(
        start=payload.start,
        count=payload.count,
        hits=hits,
        coef_sum=coef_sum,
        valid_count=valid_count,
        coefs=coefs,
        pvals=pvals,
    )


def _merge_results(results: Iterable[_SimWorkerResult], sims: int, return_details: bool) -> _SimWorkerResult:
    merged = _SimWorkerResult(
        start=0,
        count=sims,
        hits=0,
        coef_sum=0.0,
        valid_count=0,
        coefs=np.full(sims, np.nan) if return_details else None,
        pvals=np.full(sims, np.nan) if return_details else None,
    )
    for result in results:
        merged.hits += result.hits
        merged.coef_sum += result.coef_sum
        merged.valid_count += result.valid_count
        if return_details and result.coefs is not None and result.pvals is not None:
            end = result.start + result.count
            merged.coefs[result.start:end] = result.coefs
            merged.pvals[result.start:end] = result.pvals
    return merged


def _simulate_replications(
    spec: CorrMisspecSpec,
    sims: int,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    return_details: bool = False,
) -> _SimWorkerResult:
    if sims <= 0:
        raise ValueError("sims must be a positive integer")

    chunk_info = _chunk_indices(sims, _effective_chunk_size(sims, chunk_size))
    seeds = _generate_chunk_seeds(spec.seed, len(chunk_info))
    payloads = [
        _SimWorkerInput(start=start, count=count, seed=seeds[idx], spec=spec, return_details=return_details)
        for idx, (start, count) in enumerate(chunk_info)
    ]

    worker_count = min(_resolve_n_jobs(n_jobs), len(payloads))
    if worker_count <= 1:
        return _merge_results(map(_run_simulation_chunk, payloads), sims, return_details)

    try:
        with ProcessPoolExecutor(max_workers=worker_count) as executor:
            return _merge_results(executor.map(_run_simulation_chunk, payloads), sims, return_details)
    except (PermissionError, NotImplementedError, OSError):
        # Process pools unavailable; chunks run in this process
        return _merge_results(map(_run_simulation_chunk, payloads), sims, return_details)


def _estimate_from(agg: _SimWorkerResult, spec: CorrMisspecSpec) -> PowerEstimate:
    n_failed = agg.count - agg.valid_count
    if n_failed > 0:
        warnings.warn(
            f"{n_failed} of {agg.count} fits failed (n_per_group={spec.n_per_group}, b={spec.b}, "
            f"r11={spec.r11}, r12={spec.r12}, model={spec.model}); excluded from the rejection rate",
            FitFailureWarning,
            stacklevel=3,
        )
    if agg.valid_count > 0:
        power = agg.hits / agg.valid_count
        avg_coef = agg.coef_sum / agg.valid_count
    else:
        power = float("nan")
        avg_coef = float("nan")
    return PowerEstimate(
        power=power,
        hits=agg.hits,
        n_valid=agg.valid_count,
        n_failed=n_failed,
        sims=agg.count,
        avg_coef=avg_coef,
    )


def simulate_power(
    spec: CorrMisspecSpec,
    sims: int = DEFAULT_SIMS,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> PowerEstimate:
    """Monte Carlo rejection rate for the time effect under ``spec``.

    Failed fits are excluded from the denominator and reported in n_failed.
    """
    spec.validate()
    agg = _simulate_replications(spec, sims, n_jobs=n_jobs, chunk_size=chunk_size)
    return _estimate_from(agg, spec)


def simulate_distribution(
    spec: CorrMisspecSpec,
    sims: int = 1000,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> Tuple[PowerEstimate, np.ndarray, np.ndarray]:
    """Run simulations and return (estimate, coefs, pvals).

    coefs and pvals hold one entry per repetition, NaN where the fit failed.
    """
    spec.validate()
    agg = _simulate_replications(spec, sims, n_jobs=n_jobs, chunk_size=chunk_size, return_details=True)
    return _estimate_from(agg, spec), agg.coefs, agg.pvals


def power_curve(
    base_spec: CorrMisspecSpec,
    b_values: Sequence[float] = DEFAULT_B_GRID,
    sims: int = DEFAULT_SIMS,
    alpha_ci: float = 0.05,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> pd.DataFrame:
    """Rejection rate across a grid of b with Wilson intervals.

    Returns a DataFrame with columns: b, power, ci_low, ci_high, n_valid, n_failed.
    """
    base_spec.validate()
    if len(b_values) == 0:
        raise ValueError("b_values must contain at least one value")
    rows = []
    for b in b_values:
        spec = replace(base_spec, b=float(b))
        est = simulate_power(spec, sims=sims, n_jobs=n_jobs, chunk_size=chunk_size)
        low, high = est.ci(alpha_ci)
        rows.append({
            "b": float(b),
            "power": est.power,
            "ci_low": low,
            "ci_high": high,
            "n_valid": est.n_valid,
            "n_failed": est.n_failed,
        })
    return pd.DataFrame(rows)


def compare_power_curves(
    scenarios: Mapping[str, CorrMisspecSpec],
    b_values: Sequence[float] = DEFAULT_B_GRID,
    sims: int = DEFAULT_SIMS,
    alpha_ci: float = 0.05,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> pd.DataFrame:
    """Power curves for several named configurations, stacked in long format."""
    frames = []
    for name, spec in scenarios.items():
        curve = power_curve(spec, b_values, sims=sims, alpha_ci=alpha_ci, n_jobs=n_jobs, chunk_size=chunk_size)
        curve.insert(0, "scenario", name)
        frames.append(curve)
    if not frames:
        raise ValueError("scenarios must contain at least one configuration")
    return pd.concat(frames, ignore_index=True)


def type1_error_grid(
    base_spec: CorrMisspecSpec,
    corr_pairs: Sequence[Tuple[float, float]],
    sims: int = DEFAULT_SIMS,
    alpha_ci: float = 0.05,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> pd.DataFrame:
    """Empirical type-I error (b = 0) for each (r11, r12) pair."""
    if len(corr_pairs) == 0:
        raise ValueError("corr_pairs must contain at least one (r11, r12) pair")
    rows = []
    for r11, r12 in corr_pairs:
        spec = replace(base_spec, b=0.0, r11=float(r11), r12=float(r12))
        est = simulate_power(spec, sims=sims, n_jobs=n_jobs, chunk_size=chunk_size)
        low, high = est.ci(alpha_ci)
        rows.append({
            "r11": float(r11),
            "r12": float(r12),
            "model": spec.model,
            "type1_error": est.power,
            "ci_low": low,
            "ci_high": high,
            "n_valid": est.n_valid,
            "n_failed": est.n_failed,
        })
    return pd.DataFrame(rows)


def find_n_for_power(
    target_power: float,
    base_spec: CorrMisspecSpec,
    sims: int = DEFAULT_SIMS,
    n_min: int = 10,
    n_max: int = 400,
    tol: float = 0.01,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    max_iter: int = 32,
    max_n_cap: int = 20_000,
) -> Tuple[int, float]:
    """Binary search for the minimum per-group N achieving target power.

    Returns (n_required, achieved_power_at_n). A NaN power (every fit failed)
    counts as not reaching the target.
    """
    validate_probability(target_power, "target_power", allow_zero=False, allow_one=False)
    base_spec.validate()
    if base_spec.b == 0:
        raise ValueError("b must be non-zero to search for a sample size")

    low = max(1, int(n_min))
    high = max(low, int(n_max))
    best_n = high
    best_pw = 0.0
    power_cache: dict[int, float] = {}

    def evaluate(n: int) -> float:
        if n not in power_cache:
            est = simulate_power(replace(base_spec, n_per_group=int(n)), sims=sims,
                                 n_jobs=n_jobs, chunk_size=chunk_size)
            power_cache[n] = est.power
        return power_cache[n]

    def reached(pw: float) -> bool:
        return np.isfinite(pw) and pw >= target_power - tol

    # Expand upper bound until power exceeds target or cap reached
    pw_high = evaluate(high)
    while not reached(pw_high) and high < max_n_cap:
        low = high + 1
        high = min(high * 2, max_n_cap)
        pw_high = evaluate(high)
    if not reached(pw_high):
        raise RuntimeError(f"Unable to achieve target power {target_power:.3f} within cap {max_n_cap}")
    best_n, best_pw = high, pw_high

    iterations = 0
    while low <= high and iterations < max_iter:
        mid = (low + high) // 2
        pw = evaluate(mid)
        if reached(pw):
            best_n, best_pw = mid, pw
            high = mid - 1
        else:
            low = mid + 1
        iterations += 1

    if iterations >= max_iter and low <= high:
        raise RuntimeError("Binary search did not converge within max_iter")

    return best_n, best_pw


# ---------- CLI ----------

def _parse_csv_numbers(s: Optional[str], cast=float) -> Optional[list]:
    """Parse a comma-separated list of numbers; None passes through."""
    if s is None:
        return None
    items = []
    for part in str(s).split(","):
        part = part.strip()
        if not part:
            continue
        items.append(cast(part))
    return items


def _parse_corr_pairs(s: str) -> List[Tuple[float, float]]:
    """Parse "r11:r12,r11:r12" into a list of float pairs."""
    pairs = []
    for part in str(s).split(","):
        part = part.strip()
        if not part:
            continue
        left, sep, right = part.partition(":")
        if not sep:
            raise ValueError(f"correlation pair {part!r} must look like r11:r12")
        pairs.append((float(left), float(right)))
    if not pairs:
        raise ValueError("at least one correlation pair is required")
    return pairs


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Power and type-I error of a common-correlation mixed model under heterogeneous pair correlation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--mode", choices=["power", "curve", "type1", "n-for-power"], default="power")
    p.add_argument("--n-per-group", type=int, default=100, help="Subjects per group (N)")
    p.add_argument("--b", type=float, default=0.0, help="Mean shift at time 1 for group 2")
    p.add_argument("--r11", type=float, default=0.6, help="Intra-pair correlation, group 1")
    p.add_argument("--r12", type=float, default=0.2, help="Intra-pair correlation, group 2")
    p.add_argument("--model", choices=list(MODELS), default="common",
                   help="common: y ~ time; dummy: y ~ time + grp; gls_known: true-covariance GLS")
    p.add_argument("--ml", action="store_true", help="Fit by maximum likelihood instead of REML")
    p.add_argument("--alpha", type=float, default=0.05, help="Significance level")
    p.add_argument("--sims", type=int, default=DEFAULT_SIMS, help="Monte Carlo repetitions per evaluation")
    p.add_argument("--seed", type=int, default=12345, help="Random seed")
    p.add_argument("--n-jobs", type=int, default=1, help="Worker processes (-1 uses all cores)")
    p.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="Repetitions per task")
    p.add_argument("--b-values", type=str, default=None,
                   help="Comma-separated b grid for mode=curve (default 0,0.05,...,0.5)")
    p.add_argument("--corr-pairs", type=str, default="0.6:0.6,0.6:0.2,0.2:0.6,0.2:0.2",
                   help="Comma-separated r11:r12 pairs for mode=type1")
    p.add_argument("--target-power", type=float, default=0.8, help="Target power for mode=n-for-power")
    p.add_argument("--n-min", type=int, default=10)
    p.add_argument("--n-max", type=int, default=400)
    p.add_argument("--output", type=str, default=None, help="Write the result table to this CSV path")
    return p


def _write_output(table: pd.DataFrame, path: Optional[str]) -> None:
    if path:
        table.to_csv(path, index=False)
        print(f"Wrote {len(table)} rows to {path}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    spec = CorrMisspecSpec(
        n_per_group=args.n_per_group,
        b=args.b,
        r11=args.r11,
        r12=args.r12,
        alpha=args.alpha,
        model=args.model,
        reml=not args.ml,
        seed=args.seed,
    )
    try:
        spec.validate()
        if args.sims <= 0:
            raise ValueError("sims must be a positive integer")
        b_values = _parse_csv_numbers(args.b_values) or list(DEFAULT_B_GRID)
        for b in b_values:
            replace(spec, b=b).validate()
        corr_pairs = _parse_corr_pairs(args.corr_pairs) if args.mode == "type1" else []
        for r11, r12 in corr_pairs:
            validate_correlation(r11, "r11")
            validate_correlation(r12, "r12")
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    method = "REML" if spec.reml else "ML"
    if args.mode == "power":
        est = simulate_power(spec, sims=args.sims, n_jobs=args.n_jobs, chunk_size=args.chunk_size)
        ci_low, ci_high = est.ci(0.05)
        analytic = analytic_power_time(spec.n_per_group, spec.b, spec.r11, spec.r12, spec.alpha)
        print("Rejection rate for the time effect (simulation)")
        print(f"  N per group: {spec.n_per_group} (rows per dataset: {4 * spec.n_per_group})")
        print(f"  b={spec.b}, r11={spec.r11}, r12={spec.r12}")
        print(f"  model={spec.model} ({method}), alpha={spec.alpha}, sims={args.sims}, n_jobs={args.n_jobs}")
        print(f"  Rejection rate: {est.power:.3f}")
        print(f"  95% CI (Wilson): [{ci_low:.3f}, {ci_high:.3f}]")
        print(f"  Valid fits: {est.n_valid}, failed fits: {est.n_failed}")
        print(f"  Avg estimated time effect: {est.avg_coef:.4f} (expected {spec.b / 2:.4f})")
        print(f"  Analytic reference (normal approx): {analytic:.3f}")
        _write_output(pd.DataFrame([{"b": spec.b, "power": est.power, "ci_low": ci_low, "ci_high": ci_high,
                                     "n_valid": est.n_valid, "n_failed": est.n_failed}]), args.output)
    elif args.mode == "curve":
        curve = power_curve(spec, b_values, sims=args.sims, n_jobs=args.n_jobs, chunk_size=args.chunk_size)
        print("b,power,ci_low,ci_high,n_valid,n_failed")
        for row in curve.itertuples(index=False):
            print(f"{row.b:g},{row.power:.3f},{row.ci_low:.3f},{row.ci_high:.3f},{row.n_valid},{row.n_failed}")
        _write_output(curve, args.output)
    elif args.mode == "type1":
        table = type1_error_grid(spec, corr_pairs, sims=args.sims, n_jobs=args.n_jobs, chunk_size=args.chunk_size)
        print(f"Type-I error (b=0, model={spec.model}, {method}, alpha={spec.alpha}, sims={args.sims})")
        for row in table.itertuples(index=False):
            print(f"  r11={row.r11:.2f} r12={row.r12:.2f}: {row.type1_error:.3f} "
                  f"[{row.ci_low:.3f}, {row.ci_high:.3f}] (failed {row.n_failed})")
        _write_output(table, args.output)
    else:
        try:
            n_req, pw = find_n_for_power(
                args.target_power,
                spec,
                sims=args.sims,
                n_min=args.n_min,
                n_max=args.n_max,
                n_jobs=args.n_jobs,
                chunk_size=args.chunk_size,
            )
        except (ValueError, RuntimeError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 2
        n_analytic, _ = analytic_n_for_power(args.target_power, spec.b, spec.r11, spec.r12, spec.alpha)
        print("Sample size for target power (simulation)")
        print(f"  Target power: {args.target_power}")
        print(f"  Required N per group: {n_req} (total subjects {2 * n_req})")
        print(f"  Achieved power at N: {pw:.3f}")
        print(f"  Analytic reference N per group: {n_analytic}")
        print(f"  b={spec.b}, r11={spec.r11}, r12={spec.r12}, model={spec.model} ({method}), sims={args.sims}")
        _write_output(pd.DataFrame([{"n_per_group": n_req, "power": pw}]), args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
