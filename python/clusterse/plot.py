"""Plotting functions for odds ratio results."""

from typing import Optional, List, Tuple
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import warnings


def plot_forest(
    or_table: pd.DataFrame,
    pval_threshold: float = 0.05,
    include_intercept: bool = False,
    colors: Optional[List[str]] = None,
    point_size: float = 40,
    figsize: Tuple[float, float] = (7, 5),
    title: str = "Odds Ratios",
    xlabel: Optional[str] = None,
    ax: Optional[plt.Axes] = None,
) -> plt.Axes:
    """
    Create a forest plot of odds ratios with confidence intervals.

    Args:
        or_table: DataFrame from transform_coefficients() containing columns
            'term', 'odds_ratio', 'ci_low', 'ci_high' and optionally 'padj' or
            'pval'.
        pval_threshold: P-value threshold used to colour significant terms.
        include_intercept: Whether to draw the intercept row.
        colors: Two colors for non-significant and significant terms.
        point_size: Size of the odds ratio markers.
        figsize: Figure size as (width, height).
        title: Plot title.
        xlabel: X-axis label. If None, uses default.
        ax: Existing axes to plot on. If None, creates new figure.

    Returns:
        Matplotlib axes object containing the plot.

    Examples:
        >>> ax = plot_forest(result['table'])
    """
    required_cols = {'term', 'odds_ratio', 'ci_low', 'ci_high'}
    if not required_cols.issubset(or_table.columns):
        raise ValueError(f"or_table must contain columns: {required_cols}")

    if 'padj' in or_table.columns:
        pval_col = 'padj'
    elif 'pval' in or_table.columns:
        pval_col = 'pval'
    else:
        pval_col = None

    plot_data = or_table.copy()
    if not include_intercept:
        plot_data = plot_data[plot_data['term'] != 'Intercept']

    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)

    value_cols = ['odds_ratio', 'ci_low', 'ci_high']
    if len(plot_data) > 0:
        values = plot_data[value_cols].to_numpy(dtype=np.float64)
        valid = np.all(np.isfinite(values) & (values > 0), axis=1)
        n_invalid = int(np.sum(~valid))
        if n_invalid > 0:
            warnings.warn(
                f"Removing {n_invalid} terms with non-finite or non-positive odds ratios"
            )
            plot_data = plot_data[valid]

    ax.set_xlabel(xlabel or 'Odds Ratio (log scale)')
    ax.set_title(title)

    if len(plot_data) == 0:
        warnings.warn("No data points to plot")
        ax.text(0.5, 0.5, 'No data to display', transform=ax.transAxes,
                ha='center', va='center', fontsize=12, alpha=0.7)
        return ax

    if colors is None:
        colors = ['#888888', '#DC143C']

    if pval_col is not None:
        significant = (plot_data[pval_col] <= pval_threshold).to_numpy()
    else:
        significant = np.zeros(len(plot_data), dtype=bool)

    # Top row first
    positions = np.arange(len(plot_data))[::-1]
    odds = plot_data['odds_ratio'].to_numpy()
    lower = plot_data['ci_low'].to_numpy()
    upper = plot_data['ci_high'].to_numpy()

    for is_sig, color, label in zip([False, True], colors, ['Not significant', 'Significant']):
        mask = significant == is_sig
        if not np.any(mask):
            continue
        ax.errorbar(
            odds[mask], positions[mask],
            xerr=[odds[mask] - lower[mask], upper[mask] - odds[mask]],
            fmt='none', ecolor=color, elinewidth=1.5, capsize=3
        )
        ax.scatter(odds[mask], positions[mask], c=color, s=point_size,
                   marker='s', label=label, zorder=3)

    ax.axvline(x=1.0, color='black', linestyle='--', alpha=0.5)
    ax.set_xscale('log')
    ax.set_yticks(positions)
    ax.set_yticklabels(plot_data['term'].tolist())
    ax.set_ylim(-0.5, len(plot_data) - 0.5)

    ax.legend(loc='best', frameon=True, framealpha=0.9)
    ax.grid(True, axis='x', alpha=0.3)
    sns.despine(ax=ax, left=True)

    return ax
