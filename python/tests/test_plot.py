"""
Unit tests for plotting functions.
"""

import pytest
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import matplotlib

from clusterse.plot import plot_forest


# Set matplotlib to non-interactive backend for testing
matplotlib.use('Agg')


class TestPlotForest:
    """Test forest plot function."""

    def teardown_method(self):
        plt.close('all')

    def test_plot_forest_basic(self, or_table):
        """Test basic forest plot creation."""
        ax = plot_forest(or_table)

        assert isinstance(ax, plt.Axes)
        assert ax.get_title() == 'Odds Ratios'
        assert ax.get_xlabel() == 'Odds Ratio (log scale)'
        assert ax.get_xscale() == 'log'

        # Intercept is left out by default
        labels = [label.get_text() for label in ax.get_yticklabels()]
        assert labels == ['arm[T.active]', 'sex[T.M]', 'age']

        # Reference line at an odds ratio of one
        reference_lines = [line for line in ax.lines if line.get_linestyle() == '--']
        assert len(reference_lines) == 1
        assert reference_lines[0].get_xdata()[0] == 1.0

    def test_plot_forest_include_intercept(self, or_table):
        ax = plot_forest(or_table, include_intercept=True)

        labels = [label.get_text() for label in ax.get_yticklabels()]
        assert labels[0] == 'Intercept'
        assert len(labels) == 4

    def test_plot_forest_significance_groups(self, or_table):
        """Significant and non-significant terms get separate legend entries."""
        ax = plot_forest(or_table)

        legend_labels = [t.get_text() for t in ax.get_legend().get_texts()]
        assert legend_labels == ['Not significant', 'Significant']

    def test_plot_forest_threshold(self, or_table):
        """With a strict threshold nothing is significant."""
        ax = plot_forest(or_table, pval_threshold=1e-12)

        legend_labels = [t.get_text() for t in ax.get_legend().get_texts()]
        assert legend_labels == ['Not significant']

    def test_plot_forest_prefers_padj(self, or_table):
        table = or_table.copy()
        table['padj'] = 1.0

        ax = plot_forest(table)

        legend_labels = [t.get_text() for t in ax.get_legend().get_texts()]
        assert legend_labels == ['Not significant']

    def test_plot_forest_without_pvalues(self, or_table):
        ax = plot_forest(or_table.drop(columns='pval'))

        assert isinstance(ax, plt.Axes)

    def test_plot_forest_custom_labels(self, or_table):
        ax = plot_forest(or_table, title='Primary endpoint', xlabel='OR')

        assert ax.get_title() == 'Primary endpoint'
        assert ax.get_xlabel() == 'OR'

    def test_plot_forest_custom_colors(self, or_table):
        ax = plot_forest(or_table, colors=['blue', 'orange'])

        assert len(ax.collections) > 0

    def test_plot_forest_with_existing_axes(self, or_table):
        fig, existing_ax = plt.subplots(figsize=(6, 4))

        ax = plot_forest(or_table, ax=existing_ax)

        assert ax is existing_ax

    def test_plot_forest_missing_columns(self, or_table):
        with pytest.raises(ValueError, match="must contain columns"):
            plot_forest(or_table.drop(columns='ci_high'))

    def test_plot_forest_empty_data(self, or_table):
        """Only the intercept left means nothing to draw."""
        intercept_only = or_table[or_table['term'] == 'Intercept']

        with pytest.warns(UserWarning, match="No data points to plot"):
            ax = plot_forest(intercept_only)

        texts = [t.get_text() for t in ax.texts]
        assert 'No data to display' in texts

    def test_plot_forest_nonfinite_values(self, or_table):
        table = or_table.copy()
        table.loc[1, 'ci_high'] = np.inf

        with pytest.warns(UserWarning, match="Removing 1 terms"):
            ax = plot_forest(table)

        labels = [label.get_text() for label in ax.get_yticklabels()]
        assert 'arm[T.active]' not in labels
        assert len(labels) == 2

    def test_plot_forest_from_pipeline(self, trial_data, trial_spec):
        """Forest plot of a fitted model table."""
        from clusterse.main import fit_model

        result = fit_model(trial_data, trial_spec)
        ax = plot_forest(result['table'])

        labels = [label.get_text() for label in ax.get_yticklabels()]
        assert labels == ['arm[T.active]', 'sex[T.M]', 'age']
