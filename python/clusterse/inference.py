"""Odds ratios, Wald confidence intervals and p-values from coefficient covariances."""

from typing import Optional, List, Union
import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .errors import InvalidVarianceError


def _critical_value(level: float) -> float:
    if not 0 < level < 1:
        raise ValueError(f"Confidence level must be in (0, 1), got {level}")
    return stats.norm.ppf(1 - (1 - level) / 2)


def transform_coefficients(
    beta: Union[np.ndarray, List[float], pd.Series],
    covariance: np.ndarray,
    feature_names: Optional[List[str]] = None,
    level: float = 0.95,
    pval_adjust_method: Optional[str] = None,
) -> pd.DataFrame:
    """
    Exponentiate log-odds coefficients into odds ratios with Wald inference.

    For each coefficient k the odds ratio is exp(beta_k), the confidence
    interval is exp(beta_k -/+ z * sqrt(Sigma_kk)) and the p-value comes from
    the two-sided Wald test of beta_k / sqrt(Sigma_kk) against the standard
    normal.

    Args:
        beta: Coefficients on the log-odds scale (features,).
        covariance: Coefficient covariance matrix (features × features).
        feature_names: Coefficient names. Taken from a Series index if beta is a
            Series, otherwise generated.
        level: Confidence level of the intervals.
        pval_adjust_method: Optional multiple testing correction passed to
            statsmodels' multipletests (e.g. "fdr_bh", "holm"). Adds a 'padj'
            column.

    Returns:
        DataFrame with columns 'term', 'log_odds', 'se', 'z', 'pval',
        'odds_ratio', 'ci_low', 'ci_high' (and 'padj').

    Raises:
        InvalidVarianceError: If a variance is negative or missing, or zero for
            a zero coefficient.
    """
    if feature_names is None and isinstance(beta, pd.Series):
        feature_names = [str(name) for name in beta.index]

    beta = np.asarray(beta, dtype=np.float64).reshape(-1)
    covariance = np.asarray(covariance, dtype=np.float64)
    n_coeffs = len(beta)

    if covariance.shape != (n_coeffs, n_coeffs):
        raise ValueError(
            f"Covariance shape {covariance.shape} does not match "
            f"{n_coeffs} coefficients"
        )

    if feature_names is None:
        feature_names = [f"feature_{i}" for i in range(n_coeffs)]
    elif len(feature_names) != n_coeffs:
        raise ValueError(
            f"Got {len(feature_names)} feature names for {n_coeffs} coefficients"
        )

    variances = np.diag(covariance)
    bad = np.flatnonzero(~np.isfinite(variances) | (variances < 0))
    if bad.size > 0:
        terms = [feature_names[i] for i in bad]
        raise InvalidVarianceError(
            f"Negative or missing variance for {terms}; "
            "cannot form confidence intervals"
        )

    degenerate = np.flatnonzero((variances == 0) & (beta == 0))
    if degenerate.size > 0:
        terms = [feature_names[i] for i in degenerate]
        raise InvalidVarianceError(f"Zero variance and zero coefficient for {terms}")

    se = np.sqrt(variances)
    with np.errstate(divide='ignore'):
        z = beta / se
    pvals = 2 * stats.norm.sf(np.abs(z))

    crit = _critical_value(level)

    results_df = pd.DataFrame({
        'term': feature_names,
        'log_odds': beta,
        'se': se,
        'z': z,
        'pval': pvals,
        'odds_ratio': np.exp(beta),
        'ci_low': np.exp(beta - crit * se),
        'ci_high': np.exp(beta + crit * se),
    })

    if pval_adjust_method is not None:
        _, padj, _, _ = multipletests(pvals, method=pval_adjust_method)
        results_df['padj'] = padj

    return results_df


def transform_coefficient_table(
    table: pd.DataFrame,
    estimate_col: str = "estimate",
    se_col: str = "std.error",
    term_col: Optional[str] = None,
    level: float = 0.95,
    pval_adjust_method: Optional[str] = None,
) -> pd.DataFrame:
    """
    Pass a pre-computed coefficient table through the odds-ratio transform.

    Mixed-effects fits arrive as tables of estimate, std.error, z and p.
    Their fixed effects are treated as independent, i.e. Sigma = diag(se^2).

    Args:
        table: Coefficient table, one row per fixed effect.
        estimate_col: Column holding log-odds estimates.
        se_col: Column holding standard errors.
        term_col: Column holding coefficient names. Uses the index if None.
        level: Confidence level of the intervals.
        pval_adjust_method: Optional multiple testing correction.

    Returns:
        DataFrame in the same layout as transform_coefficients().
    """
    missing = {estimate_col, se_col} - set(table.columns)
    if term_col is not None and term_col not in table.columns:
        missing.add(term_col)
    if missing:
        raise ValueError(f"Coefficient table is missing columns: {sorted(missing)}")

    se = table[se_col].to_numpy(dtype=np.float64)
    bad = ~np.isfinite(se) | (se < 0)
    if np.any(bad):
        raise InvalidVarianceError(
            f"{int(np.sum(bad))} standard errors are negative or missing"
        )

    if term_col is None:
        terms = [str(t) for t in table.index]
    else:
        terms = [str(t) for t in table[term_col]]

    return transform_coefficients(
        table[estimate_col].to_numpy(dtype=np.float64),
        np.diag(se ** 2),
        feature_names=terms,
        level=level,
        pval_adjust_method=pval_adjust_method,
    )
