import numpy as np


class InvalidConfiguration(ValueError):
    """
    Raised when the inputs of a fit are inconsistent: malformed weight matrices,
    negative penalties, unknown options or shape mismatches between the samples
    and the polynomial bases. Always raised before the optimization starts.
    """


class LinearAlgebraError(np.linalg.LinAlgError):
    """
    Raised when a linear solve (e.g. the ridge regression of the forward map)
    produces a non-finite result.
    """


class GradientCheckError(RuntimeError):
    """
    Raised when the analytic gradient disagrees with its finite-difference estimate.
    """
