"""
clusterse: Cluster-robust standard errors and odds ratios for logistic regression.

A Python package computing small-sample (CR3) cluster-robust sandwich covariances
for GLM fits and turning coefficients into odds ratios with Wald confidence
intervals, for analyses with few clusters.
"""

from .main import fit_model, fit_models, combine_tables, summarize_clusters
from .models import ModelSpec, fit_logistic, make_specs
from .variance import compute_sandwich_estimator, working_quantities
from .inference import transform_coefficients, transform_coefficient_table
from .plot import plot_forest
from .errors import (
    ClusterRobustError,
    RankDeficientError,
    InsufficientClustersError,
    DegenerateWeightError,
    SingularMatrixError,
    InvalidVarianceError,
    NumericalInstabilityWarning,
)

__version__ = "0.1.0"
__all__ = [
    "fit_model",
    "fit_models",
    "combine_tables",
    "summarize_clusters",
    "ModelSpec",
    "fit_logistic",
    "make_specs",
    "compute_sandwich_estimator",
    "working_quantities",
    "transform_coefficients",
    "transform_coefficient_table",
    "plot_forest",
    "ClusterRobustError",
    "RankDeficientError",
    "InsufficientClustersError",
    "DegenerateWeightError",
    "SingularMatrixError",
    "InvalidVarianceError",
    "NumericalInstabilityWarning",
]
