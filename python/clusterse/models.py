"""Model specifications and logistic regression fitting."""

from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple, Mapping, Union, Sequence
import re
import warnings
import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm

from .variance import working_quantities


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_RELEVEL_TERM = re.compile(r"C\((\w+|Q\(.*?\)), Treatment\(reference=.*?\)\)")


@dataclass(frozen=True)
class ModelSpec:
    """
    Immutable description of one logistic regression.

    Args:
        name: Identifier of the model, used as key in pipeline results.
        outcome: Binary (0/1) outcome column.
        predictors: Predictor columns or patsy terms.
        cluster: Column holding the cluster id. None gives model-based
            (non-robust) standard errors.
        subset: Optional pandas query string selecting the analysis rows.
        reference_levels: Mapping from factor column to its reference level.
        intercept: Whether the model has an intercept.
    """

    name: str
    outcome: str
    predictors: Tuple[str, ...]
    cluster: Optional[str] = None
    subset: Optional[str] = None
    reference_levels: Union[Mapping[str, Any], Tuple[Tuple[str, Any], ...]] = ()
    intercept: bool = True

    def __post_init__(self):
        predictors = self.predictors
        if isinstance(predictors, str):
            predictors = (predictors,)
        object.__setattr__(self, "predictors", tuple(predictors))

        refs = self.reference_levels
        if isinstance(refs, Mapping):
            refs = refs.items()
        object.__setattr__(self, "reference_levels", tuple(sorted(refs)))

        if not self.predictors and not self.intercept:
            raise ValueError(f"Model '{self.name}' has neither predictors nor intercept")

    @property
    def reference_map(self) -> Dict[str, Any]:
        return dict(self.reference_levels)

    @property
    def columns(self) -> Tuple[str, ...]:
        """Data columns the model reads."""
        cols = [self.outcome]
        cols.extend(p for p in self.predictors if p not in cols)
        if self.cluster is not None and self.cluster not in cols:
            cols.append(self.cluster)
        return tuple(cols)

    def formula(self) -> str:
        """Patsy formula with factors re-levelled to their reference level."""
        refs = self.reference_map
        terms = []
        for predictor in self.predictors:
            if predictor in refs:
                terms.append(
                    f"C({_quote(predictor)}, Treatment(reference={refs[predictor]!r}))"
                )
            else:
                terms.append(predictor)
        rhs = " + ".join(terms) if terms else "1"
        if not self.intercept:
            rhs += " - 1"
        return f"{_quote(self.outcome)} ~ {rhs}"


def _quote(column: str) -> str:
    if _IDENTIFIER.match(column):
        return column
    return f"Q({column!r})"


def _clean_feature_name(name: str) -> str:
    """Strip the re-levelling wrapper from patsy column names."""
    return _RELEVEL_TERM.sub(lambda m: m.group(1), name)


def prepare_model_data(
    data: pd.DataFrame,
    spec: ModelSpec
) -> Tuple[np.ndarray, pd.DataFrame, Optional[np.ndarray]]:
    """
    Build the response, design matrix and cluster ids for one model.

    Applies the subset filter, drops rows with missing values in any used
    column and checks that the outcome is coded 0/1.

    Args:
        data: Analysis dataset, one row per observation.
        spec: Model specification.

    Returns:
        Tuple of (y, design DataFrame with cleaned column names, clusters or None).
    """
    if not isinstance(data, pd.DataFrame):
        raise TypeError(f"Expected pandas DataFrame, got {type(data)}")

    plain_columns = [c for c in spec.columns if c in data.columns]
    missing = {spec.outcome} - set(data.columns)
    if spec.cluster is not None and spec.cluster not in data.columns:
        missing.add(spec.cluster)
    missing.update(c for c in spec.reference_map if c not in data.columns)
    if missing:
        raise ValueError(f"Model '{spec.name}': columns not found in data: {sorted(missing)}")

    frame = data
    if spec.subset is not None:
        frame = frame.query(spec.subset)

    n_before = len(frame)
    frame = frame.dropna(subset=plain_columns)
    frame = frame.reset_index(drop=True)

    if len(frame) == 0:
        raise ValueError(f"Model '{spec.name}': no observations left after filtering")

    outcome = frame[spec.outcome]
    if not pd.api.types.is_numeric_dtype(outcome):
        raise ValueError(f"Model '{spec.name}': outcome '{spec.outcome}' must be coded 0/1")
    if not np.isin(outcome.astype(float).unique(), [0.0, 1.0]).all():
        raise ValueError(f"Model '{spec.name}': outcome '{spec.outcome}' must be coded 0/1")

    frame = frame.assign(**{spec.outcome: outcome.astype(float)})
    # patsy drops further rows where a term expression evaluates to missing
    y, X = patsy.dmatrices(spec.formula(), frame, return_type='dataframe')
    X.columns = [_clean_feature_name(c) for c in X.columns]

    if len(X) < n_before:
        warnings.warn(
            f"Model '{spec.name}': dropped {n_before - len(X)} rows "
            "with missing values"
        )
    if len(X) == 0:
        raise ValueError(f"Model '{spec.name}': no observations left after filtering")

    clusters = None
    if spec.cluster is not None:
        clusters = frame.loc[X.index, spec.cluster].to_numpy()

    return y.iloc[:, 0].to_numpy(dtype=np.float64), X, clusters


def fit_logistic(
    data: pd.DataFrame,
    spec: ModelSpec,
    max_iter: int = 100,
    tolerance: float = 1e-8,
    verbose: bool = False
) -> Dict[str, Any]:
    """
    Fit a logistic regression for one model specification.

    The fit itself is delegated to statsmodels' binomial GLM (IRLS). The
    quantities the sandwich estimator needs are taken from the final
    iteration.

    Args:
        data: Analysis dataset.
        spec: Model specification.
        max_iter: Maximum IRLS iterations.
        tolerance: IRLS convergence tolerance.
        verbose: Whether to print progress messages.

    Returns:
        Dictionary containing:
        - 'beta': Fitted log-odds coefficients (features,)
        - 'design_matrix': Design matrix used (observations × features)
        - 'weights': Final IRLS working weights (observations,)
        - 'working_residuals': Final IRLS working residuals (observations,)
        - 'fitted': Fitted probabilities (observations,)
        - 'y': Response (observations,)
        - 'clusters': Cluster ids (observations,) or None
        - 'feature_names': Names of design matrix columns
        - 'model_covariance': Model-based covariance (X'WX)^-1
        - 'converged': Whether IRLS converged
        - 'iterations': Number of IRLS iterations
        - 'n_obs': Number of observations
        - 'spec': The model specification
    """
    y, X, clusters = prepare_model_data(data, spec)

    if verbose:
        print(f"Fitting '{spec.name}': {spec.formula()} on {len(y)} observations")

    model = sm.GLM(y, X.to_numpy(), family=sm.families.Binomial())
    result = model.fit(maxiter=max_iter, tol=tolerance)

    converged = bool(getattr(result, "converged", True))
    if not converged:
        warnings.warn(
            f"Model '{spec.name}' did not converge within {max_iter} iterations. "
            "Consider increasing max_iter or tolerance."
        )

    fitted = np.asarray(result.mu, dtype=np.float64)
    weights, working_residuals = working_quantities(y, fitted)

    return {
        'beta': np.asarray(result.params, dtype=np.float64),
        'design_matrix': X.to_numpy(dtype=np.float64),
        'weights': weights,
        'working_residuals': working_residuals,
        'fitted': fitted,
        'y': y,
        'clusters': clusters,
        'feature_names': list(X.columns),
        'model_covariance': np.asarray(result.cov_params(), dtype=np.float64),
        'converged': converged,
        'iterations': int(result.fit_history.get('iteration', 0)),
        'n_obs': len(y),
        'spec': spec,
    }


def make_specs(
    outcomes: Sequence[str],
    predictors: Sequence[str],
    **kwargs
) -> Tuple[ModelSpec, ...]:
    """
    Create one specification per outcome sharing the same predictor set.

    Args:
        outcomes: Outcome columns; each becomes a model named after it.
        predictors: Predictor columns shared by all models.
        **kwargs: Other ModelSpec fields (cluster, subset, reference_levels, ...).

    Returns:
        Tuple of model specifications.
    """
    return tuple(
        ModelSpec(name=outcome, outcome=outcome, predictors=tuple(predictors), **kwargs)
        for outcome in outcomes
    )
