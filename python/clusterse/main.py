"""Main module running model specifications through fit, robust variance and odds ratios."""

from typing import Optional, Dict, Any, Sequence
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from .models import ModelSpec, fit_logistic
from .variance import compute_sandwich_estimator
from .inference import transform_coefficients


def fit_model(
    data: pd.DataFrame,
    spec: ModelSpec,
    level: float = 0.95,
    pval_adjust_method: Optional[str] = None,
    cluster_adjustment: bool = True,
    dof_adjustment: bool = True,
    max_iter: int = 100,
    tolerance: float = 1e-8,
    verbose: bool = False,
) -> Dict[str, Any]:
    """
    Fit one logistic regression and report odds ratios.

    With a cluster column in the specification the coefficient covariance is
    the CR3 cluster-robust sandwich; without one it is the model-based
    covariance of the GLM.

    Args:
        data: Analysis dataset, one row per observation.
        spec: Model specification.
        level: Confidence level of the intervals.
        pval_adjust_method: Optional multiple testing correction across terms.
        cluster_adjustment: Apply the G/(G-1) factor.
        dof_adjustment: Apply the (N-1)/(N-K) factor.
        max_iter: Maximum IRLS iterations.
        tolerance: IRLS convergence tolerance.
        verbose: Whether to print progress messages.

    Returns:
        Dictionary containing:
        - 'spec': The model specification
        - 'fit': Output of fit_logistic()
        - 'variance': Output of compute_sandwich_estimator(), or None
        - 'covariance': Coefficient covariance used for inference
        - 'cov_type': 'CR3' or 'model'
        - 'table': Odds ratio table from transform_coefficients()
    """
    fit = fit_logistic(data, spec, max_iter=max_iter, tolerance=tolerance, verbose=verbose)

    if fit['clusters'] is not None:
        variance = compute_sandwich_estimator(
            fit['design_matrix'],
            fit['weights'],
            fit['working_residuals'],
            fit['clusters'],
            cluster_adjustment=cluster_adjustment,
            dof_adjustment=dof_adjustment,
            verbose=verbose,
        )
        covariance = variance['covariance']
        cov_type = 'CR3'
    else:
        variance = None
        covariance = fit['model_covariance']
        cov_type = 'model'

    table = transform_coefficients(
        fit['beta'],
        covariance,
        feature_names=fit['feature_names'],
        level=level,
        pval_adjust_method=pval_adjust_method,
    )
    table.attrs['model'] = spec.name
    table.attrs['cov_type'] = cov_type
    table.attrs['n_obs'] = fit['n_obs']
    if variance is not None:
        table.attrs['n_clusters'] = variance['n_clusters']

    if verbose:
        print(f"'{spec.name}': {fit['n_obs']} observations, {cov_type} covariance")

    return {
        'spec': spec,
        'fit': fit,
        'variance': variance,
        'covariance': covariance,
        'cov_type': cov_type,
        'table': table,
    }


def fit_models(
    data: pd.DataFrame,
    specs: Sequence[ModelSpec],
    n_jobs: Optional[int] = None,
    verbose: bool = False,
    **kwargs
) -> Dict[str, Dict[str, Any]]:
    """
    Run several independent model specifications.

    Specifications share no state, so they can be fitted in parallel.

    Args:
        data: Analysis dataset.
        specs: Model specifications with unique names.
        n_jobs: Number of parallel jobs. None runs sequentially, -1 uses all cores.
        verbose: Whether to show a progress bar.
        **kwargs: Other arguments passed to fit_model().

    Returns:
        Dictionary mapping specification name to the output of fit_model(),
        in the order the specifications were given.
    """
    specs = list(specs)
    names = [spec.name for spec in specs]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValueError(f"Model names must be unique, duplicated: {duplicates}")

    if verbose:
        print(f"Fitting {len(specs)} models")

    results = Parallel(n_jobs=n_jobs)(
        delayed(fit_model)(data, spec, **kwargs)
        for spec in tqdm(specs, desc="Fitting models", disable=not verbose)
    )

    return dict(zip(names, results))


def combine_tables(results: Dict[str, Dict[str, Any]]) -> pd.DataFrame:
    """
    Stack per-model odds ratio tables into one long table.

    Args:
        results: Output of fit_models().

    Returns:
        DataFrame with a leading 'model' and 'cov_type' column followed by the
        odds ratio columns.
    """
    if not results:
        return pd.DataFrame(columns=['model', 'cov_type', 'term', 'odds_ratio',
                                     'ci_low', 'ci_high', 'pval'])

    tables = []
    for name, result in results.items():
        table = result['table'].copy()
        table.insert(0, 'cov_type', result['cov_type'])
        table.insert(0, 'model', name)
        tables.append(table)

    combined = pd.concat(tables, ignore_index=True)
    combined.attrs = {}
    return combined


def summarize_clusters(data: pd.DataFrame, cluster: str) -> pd.DataFrame:
    """
    Count observations per cluster.

    Args:
        data: Analysis dataset.
        cluster: Cluster column.

    Returns:
        DataFrame with columns 'cluster', 'n_obs' and 'share'.
    """
    counts = data[cluster].value_counts(dropna=False).sort_index()
    return pd.DataFrame({
        'cluster': counts.index,
        'n_obs': counts.to_numpy(),
        'share': counts.to_numpy() / np.sum(counts.to_numpy()),
    })
