"""Exceptions and warnings raised by the cluster-robust variance routines."""


class ClusterRobustError(ValueError):
    """Base class for failures of a single estimation call."""


class RankDeficientError(ClusterRobustError):
    """Design matrix has fewer rows than columns or is not of full column rank."""


class InsufficientClustersError(ClusterRobustError):
    """Fewer than two distinct clusters were supplied."""


class DegenerateWeightError(ClusterRobustError):
    """A working weight is zero, negative or not finite."""


class SingularMatrixError(ClusterRobustError):
    """X'WX (or a cluster block I - H_gg) cannot be inverted."""


class InvalidVarianceError(ClusterRobustError):
    """A variance on the covariance diagonal is negative or missing."""


class NumericalInstabilityWarning(UserWarning):
    """Sandwich covariance has negative diagonal entries."""
