"""Variance estimation functions including the cluster-robust CR3 sandwich estimator."""

from typing import Optional, Dict, Any, Tuple
import warnings
import numpy as np
from scipy import linalg

from .errors import (
    DegenerateWeightError, RankDeficientError, InsufficientClustersError,
    SingularMatrixError, NumericalInstabilityWarning
)
from .utils import handle_input_data, as_vector, encode_clusters, validate_inputs


def working_quantities(
    y: np.ndarray,
    mu: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compute IRLS working weights and working residuals for a logit link.

    For the canonical logit link the working weight is mu * (1 - mu) and the
    working residual is (y - mu) / (mu * (1 - mu)), so that
    weight * residual = y - mu.

    Args:
        y: Binary response values.
        mu: Fitted probabilities.

    Returns:
        Tuple of (weights, working_residuals).
    """
    y = np.asarray(y, dtype=np.float64)
    mu = np.asarray(mu, dtype=np.float64)
    if y.shape != mu.shape:
        raise ValueError(
            f"Response shape {y.shape} does not match fitted values shape {mu.shape}"
        )

    weights = mu * (1.0 - mu)
    if np.any(~np.isfinite(weights) | (weights <= 0)):
        raise DegenerateWeightError(
            "Fitted probabilities of exactly 0 or 1 give zero working weights "
            "(perfect separation?)"
        )

    return weights, (y - mu) / weights


def compute_bread(
    design_matrix: np.ndarray,
    weights: np.ndarray,
    tolerance: float = 1e-10
) -> np.ndarray:
    """
    Compute the bread matrix (X'WX)^-1.

    Uses a Cholesky factorisation of X'WX instead of an explicit inverse.
    X'WX is first scaled to unit diagonal, so the singularity check does not
    depend on the units of the covariates.

    Args:
        design_matrix: Predictor variables matrix (observations × features).
        weights: Working weights (observations,).
        tolerance: Threshold on the squared Cholesky diagonal of the scaled
            X'WX below which it is treated as singular.

    Returns:
        Symmetric bread matrix (features × features).

    Raises:
        SingularMatrixError: If X'WX is not numerically positive definite.
    """
    n_features = design_matrix.shape[1]
    xtwx = design_matrix.T @ (weights[:, np.newaxis] * design_matrix)

    scale = np.sqrt(np.diag(xtwx))
    if np.any(~np.isfinite(scale) | (scale == 0)):
        raise SingularMatrixError("X'WX has a zero diagonal entry (all-zero design column)")
    scaled = xtwx / np.outer(scale, scale)

    try:
        factor, lower = linalg.cho_factor(scaled, lower=False)
    except linalg.LinAlgError as e:
        raise SingularMatrixError(f"X'WX is not positive definite: {e}") from e

    # Pivots of a unit-diagonal matrix lie in (0, 1]
    pivots = np.abs(np.diag(factor)) ** 2
    if pivots.min() <= tolerance:
        raise SingularMatrixError(
            f"X'WX is numerically singular (smallest scaled pivot {pivots.min():.2e})"
        )

    bread = linalg.cho_solve((factor, lower), np.eye(n_features))
    bread = bread / np.outer(scale, scale)
    return (bread + bread.T) / 2


def compute_cluster_leverage(
    design_matrix: np.ndarray,
    weights: np.ndarray,
    bread: np.ndarray,
    clusters: Any
) -> Dict[Any, np.ndarray]:
    """
    Compute the cluster blocks of the weighted hat matrix.

    For cluster g the block is H_gg = X~_g (X'WX)^-1 X~_g' where
    X~ = diag(sqrt(w)) X. Its diagonal holds the usual hat values.

    Args:
        design_matrix: Predictor variables matrix (observations × features).
        weights: Working weights (observations,).
        bread: Bread matrix from compute_bread().
        clusters: Cluster label per observation.

    Returns:
        Dictionary mapping cluster label to its (n_g × n_g) hat block.
    """
    codes, labels = encode_clusters(clusters)
    whitened = np.sqrt(weights)[:, np.newaxis] * design_matrix

    blocks = {}
    for g, label in enumerate(labels):
        x_g = whitened[codes == g]
        blocks[label] = x_g @ bread @ x_g.T
    return blocks


def _whitened_residuals_from_scores(
    scores: np.ndarray,
    design_matrix: np.ndarray,
    weights: np.ndarray
) -> np.ndarray:
    """Recover sqrt(w) * r from score rows u_i = w_i r_i x_i."""
    nonzero = np.abs(design_matrix) > np.finfo(np.float64).eps
    ratios = np.divide(
        scores, design_matrix,
        out=np.zeros_like(scores), where=nonzero
    )
    counts = nonzero.sum(axis=1)
    if np.any(counts == 0):
        raise ValueError("Cannot recover residuals from scores for all-zero design rows")
    weighted_residuals = ratios.sum(axis=1) / counts
    return weighted_residuals / np.sqrt(weights)


def compute_meat(
    design_matrix: np.ndarray,
    weights: np.ndarray,
    clusters: Any,
    working_residuals: Optional[np.ndarray] = None,
    bread: Optional[np.ndarray] = None,
    leverage_adjustment: bool = True,
    scores: Optional[np.ndarray] = None,
    tolerance: float = 1e-10
) -> np.ndarray:
    """
    Compute the cluster-summed meat matrix.

    Each cluster contributes s_g s_g' with s_g = X~_g' e_g, where
    e_g = sqrt(w_g) r_g are the whitened working residuals of the cluster.
    With the leverage adjustment (CR3) e_g is replaced by
    (I - H_gg)^-1 e_g.

    Args:
        design_matrix: Predictor variables matrix (observations × features).
        weights: Working weights (observations,).
        clusters: Cluster label per observation.
        working_residuals: Working residuals (observations,).
        bread: Bread matrix. Computed if not given.
        leverage_adjustment: Whether to apply the CR3 cluster leverage adjustment.
        scores: Score contributions w_i r_i x_i (observations × features), used
            instead of working_residuals.
        tolerance: Threshold on the smallest eigenvalue of I - H_gg.

    Returns:
        Meat matrix (features × features).

    Raises:
        DegenerateWeightError: If any weight is not strictly positive.
        SingularMatrixError: If a cluster has leverage 1.
    """
    if (working_residuals is None) == (scores is None):
        raise ValueError("Provide exactly one of working_residuals or scores")

    weights = np.asarray(weights, dtype=np.float64)
    bad_weights = ~np.isfinite(weights) | (weights <= 0)
    if np.any(bad_weights):
        raise DegenerateWeightError(
            f"{int(np.sum(bad_weights))} working weights are not strictly positive; "
            "the fit is degenerate"
        )

    # Whitened residuals e~ = sqrt(w) r, from residuals or from score rows
    n_features = design_matrix.shape[1]
    if scores is not None:
        scores = np.asarray(scores, dtype=np.float64)
        if scores.shape != design_matrix.shape:
            raise ValueError(
                f"Scores shape {scores.shape} must match design matrix shape "
                f"{design_matrix.shape}"
            )
        whitened_resid = _whitened_residuals_from_scores(scores, design_matrix, weights)
    else:
        whitened_resid = np.sqrt(weights) * working_residuals

    if bread is None and leverage_adjustment:
        bread = compute_bread(design_matrix, weights, tolerance)

    codes, labels = encode_clusters(clusters)
    whitened = np.sqrt(weights)[:, np.newaxis] * design_matrix
    if leverage_adjustment:
        # Cluster blocks of the weighted hat matrix
        hat_blocks = compute_cluster_leverage(design_matrix, weights, bread, codes)

    meat = np.zeros((n_features, n_features))
    for g, label in enumerate(labels):
        mask = codes == g
        x_g = whitened[mask]
        e_g = whitened_resid[mask]

        # CR3: adjusted residuals (I - H_gg)^-1 e~_g
        if leverage_adjustment:
            residual_maker = np.eye(len(e_g)) - hat_blocks[g]
            residual_maker = (residual_maker + residual_maker.T) / 2
            if np.linalg.eigvalsh(residual_maker).min() <= tolerance:
                raise SingularMatrixError(
                    f"Cluster '{label}' has leverage 1 (I - H_gg is singular); "
                    "the CR3 adjustment is undefined"
                )
            e_g = linalg.solve(residual_maker, e_g, assume_a='pos')

        # Accumulate outer product of the cluster score
        cluster_score = x_g.T @ e_g
        meat += np.outer(cluster_score, cluster_score)

    return meat


def compute_correction_factor(
    n_obs: int,
    n_features: int,
    n_clusters: int,
    cluster_adjustment: bool = True,
    dof_adjustment: bool = True
) -> float:
    """
    Finite-sample multiplier G/(G-1) * (N-1)/(N-K).

    Args:
        n_obs: Number of observations N.
        n_features: Number of coefficients K.
        n_clusters: Number of clusters G.
        cluster_adjustment: Include the G/(G-1) factor.
        dof_adjustment: Include the (N-1)/(N-K) factor.

    Returns:
        Correction factor.

    Raises:
        InsufficientClustersError: If fewer than two clusters are given.
        RankDeficientError: If the dof adjustment is requested with N <= K.
    """
    if n_clusters < 2:
        raise InsufficientClustersError(
            f"Need at least 2 clusters for cluster-robust variance, got {n_clusters}"
        )

    factor = 1.0
    if cluster_adjustment:
        factor *= n_clusters / (n_clusters - 1)
    if dof_adjustment:
        if n_obs <= n_features:
            raise RankDeficientError(
                f"Degrees-of-freedom adjustment needs more observations ({n_obs}) "
                f"than features ({n_features})"
            )
        factor *= (n_obs - 1) / (n_obs - n_features)
    return factor


def compute_sandwich_estimator(
    design_matrix: np.ndarray,
    weights: np.ndarray,
    working_residuals: Optional[np.ndarray],
    clusters: Any,
    scores: Optional[np.ndarray] = None,
    cluster_adjustment: bool = True,
    dof_adjustment: bool = True,
    tolerance: float = 1e-10,
    verbose: bool = False
) -> Dict[str, Any]:
    """
    Compute the cluster-robust CR3 sandwich covariance of GLM coefficients.

    Calculates Sigma = c * B M B where B = (X'WX)^-1, M is the cluster-summed
    outer product of leverage-adjusted cluster scores and
    c = G/(G-1) * (N-1)/(N-K). Suited to a small number of clusters.

    Args:
        design_matrix: Predictor variables (observations × features), as numpy
            array or pandas DataFrame.
        weights: IRLS working weights from the final iteration (observations,).
        working_residuals: IRLS working residuals (observations,). May be None
            when scores are given.
        clusters: Cluster label per observation (strings or numbers).
        scores: Optional score contributions w_i r_i x_i (observations × features)
            used in place of working_residuals.
        cluster_adjustment: Apply the G/(G-1) factor.
        dof_adjustment: Apply the (N-1)/(N-K) factor.
        tolerance: Numerical tolerance for singularity checks.
        verbose: Whether to print progress messages.

    Returns:
        Dictionary containing:
        - 'covariance': Symmetric sandwich covariance (features × features)
        - 'bread': Bread matrix (X'WX)^-1
        - 'meat': Meat matrix
        - 'correction': Finite-sample correction factor applied
        - 'n_obs', 'n_features', 'n_clusters': Problem dimensions
        - 'feature_names': Design column names
        - 'cluster_labels': Sorted unique cluster labels
        - 'unstable': Whether negative variances were found
        - 'negative_variance_indices': Indices of negative diagonal entries

    Raises:
        RankDeficientError, InsufficientClustersError, DegenerateWeightError,
        SingularMatrixError: On invalid or degenerate input.
    """
    design_matrix, feature_names = handle_input_data(design_matrix)
    n_obs, n_features = design_matrix.shape

    # Validate inputs before any linear algebra
    weights = as_vector(weights, "weights", n_obs)
    codes, labels = encode_clusters(clusters)
    if len(codes) != n_obs:
        raise ValueError(
            f"Clusters length ({len(codes)}) must match number of "
            f"observations ({n_obs})"
        )

    if working_residuals is not None:
        working_residuals = as_vector(working_residuals, "working residuals", n_obs)
        validate_inputs(design_matrix, weights, working_residuals, codes)
    else:
        if scores is None:
            raise ValueError("Provide exactly one of working_residuals or scores")
        validate_inputs(design_matrix, weights, np.zeros(n_obs), codes)
        if not np.all(np.isfinite(scores)):
            raise ValueError("Scores must contain finite numeric values")

    n_clusters = len(labels)
    correction = compute_correction_factor(
        n_obs, n_features, n_clusters, cluster_adjustment, dof_adjustment
    )

    if verbose:
        print(
            f"Computing CR3 sandwich for {n_obs} observations, "
            f"{n_features} features, {n_clusters} clusters"
        )

    # Compute bread (inverse Fisher information) and leverage-adjusted meat
    bread = compute_bread(design_matrix, weights, tolerance)
    meat = compute_meat(
        design_matrix, weights, codes,
        working_residuals=working_residuals,
        bread=bread,
        leverage_adjustment=True,
        scores=scores,
        tolerance=tolerance
    )

    # Sandwich B M B with finite-sample correction, exactly symmetric
    sandwich = correction * (bread @ meat @ bread)
    sandwich = (sandwich + sandwich.T) / 2

    # Flag negative variances
    negative = np.flatnonzero(np.diag(sandwich) < 0)
    if negative.size > 0:
        warnings.warn(
            f"Sandwich covariance has {negative.size} negative variances "
            f"(coefficients {negative.tolist()}); too few clusters?",
            NumericalInstabilityWarning
        )

    if verbose:
        print(f"Correction factor: {correction:.4f}")

    return {
        'covariance': sandwich,
        'bread': bread,
        'meat': meat,
        'correction': correction,
        'n_obs': n_obs,
        'n_features': n_features,
        'n_clusters': n_clusters,
        'feature_names': feature_names,
        'cluster_labels': labels,
        'unstable': bool(negative.size > 0),
        'negative_variance_indices': negative,
    }
