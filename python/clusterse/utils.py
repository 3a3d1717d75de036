"""Utility functions for clusterse package."""

from typing import Union, Optional, Tuple, Any, List
import numpy as np
import pandas as pd

from .errors import (
    RankDeficientError, InsufficientClustersError, DegenerateWeightError
)


def handle_input_data(
    design_matrix: Union[np.ndarray, pd.DataFrame],
    feature_names: Optional[List[str]] = None
) -> Tuple[np.ndarray, List[str]]:
    """
    Handle various input formats for the design matrix.

    Args:
        design_matrix: Design matrix as numpy array or pandas DataFrame
            (observations × features).
        feature_names: Optional names for the design columns. Taken from the
            DataFrame columns when not given.

    Returns:
        Tuple of (design_matrix as float64 array, feature_names).
    """
    if isinstance(design_matrix, pd.DataFrame):
        if feature_names is None:
            feature_names = [str(c) for c in design_matrix.columns]
        X = design_matrix.to_numpy()
    elif isinstance(design_matrix, np.ndarray):
        X = design_matrix
    else:
        raise TypeError(
            f"Unsupported data type: {type(design_matrix)}. "
            "Expected numpy array or pandas DataFrame."
        )

    if X.ndim != 2:
        raise ValueError(f"Design matrix must be 2-dimensional, got {X.ndim} dimensions")

    if not np.issubdtype(X.dtype, np.number) and X.dtype != bool:
        raise ValueError("Design matrix must contain numeric values")

    X = X.astype(np.float64)

    n_features = X.shape[1]
    if feature_names is None:
        feature_names = [f"feature_{i}" for i in range(n_features)]
    elif len(feature_names) != n_features:
        raise ValueError(
            f"Got {len(feature_names)} feature names for {n_features} design columns"
        )

    return X, list(feature_names)


def as_vector(values: Any, name: str, n_obs: int) -> np.ndarray:
    """Convert a per-observation input to a 1D float64 array of length n_obs."""
    vec = np.asarray(values, dtype=np.float64).reshape(-1)
    if len(vec) != n_obs:
        raise ValueError(
            f"Length of {name} ({len(vec)}) must match number of "
            f"observations ({n_obs})"
        )
    return vec


def encode_clusters(clusters: Any) -> Tuple[np.ndarray, np.ndarray]:
    """
    Map arbitrary cluster labels to integer codes.

    Labels are sorted, so the same set of labels always gets the same codes.

    Args:
        clusters: Cluster label per observation (strings, numbers, categoricals).

    Returns:
        Tuple of (codes in 0..G-1, unique labels).
    """
    values = pd.Series(np.asarray(clusters).reshape(-1)) if not isinstance(
        clusters, pd.Series
    ) else clusters.reset_index(drop=True)
    # Missing labels cannot be assigned to a cluster
    if values.isna().any():
        raise ValueError("Cluster labels must not contain missing values")
    if _is_mixed(values):
        values = values.astype(str)
    unique_labels, codes = np.unique(values.to_numpy(), return_inverse=True)
    return codes.astype(np.intp), unique_labels


def _is_mixed(values: pd.Series) -> bool:
    """Whether labels mix types that np.unique cannot sort."""
    if values.dtype != object:
        return False
    return len({type(v) for v in values.dropna()}) > 1


def validate_inputs(
    design_matrix: np.ndarray,
    weights: np.ndarray,
    working_residuals: np.ndarray,
    cluster_codes: np.ndarray
) -> None:
    """
    Validate estimator inputs for compatibility.

    Args:
        design_matrix: Design matrix (observations × features).
        weights: Working weights (observations,).
        working_residuals: Working residuals (observations,).
        cluster_codes: Integer cluster codes (observations,).

    Raises:
        RankDeficientError: If there are no more observations than features or
            the design matrix is not of full column rank.
        InsufficientClustersError: If fewer than two clusters are present.
        DegenerateWeightError: If any weight is not strictly positive.
        ValueError: If inputs contain non-finite values.
    """
    n_obs, n_features = design_matrix.shape

    # Check dimensions
    if n_features == 0:
        raise ValueError("Design matrix has no columns")

    if n_obs <= n_features:
        raise RankDeficientError(
            f"Insufficient observations: need more observations ({n_obs}) "
            f"than features ({n_features})"
        )

    # Check for finite values
    if not np.all(np.isfinite(design_matrix)):
        raise ValueError("Design matrix must contain finite numeric values")

    if not np.all(np.isfinite(working_residuals)):
        raise ValueError("Working residuals must contain finite numeric values")

    bad_weights = ~np.isfinite(weights) | (weights <= 0)
    if np.any(bad_weights):
        raise DegenerateWeightError(
            f"{int(np.sum(bad_weights))} working weights are not strictly positive; "
            "the fit is degenerate"
        )

    # Need at least two clusters
    n_clusters = len(np.unique(cluster_codes))
    if n_clusters < 2:
        raise InsufficientClustersError(
            f"Need at least 2 clusters for cluster-robust variance, got {n_clusters}"
        )

    # Unit-norm columns so the rank does not depend on covariate units
    norms = np.linalg.norm(design_matrix, axis=0)
    norms[norms == 0] = 1.0
    rank = np.linalg.matrix_rank(design_matrix / norms)
    if rank < n_features:
        raise RankDeficientError(
            f"Design matrix is rank deficient: rank {rank} < {n_features} features"
        )
