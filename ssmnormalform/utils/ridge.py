import logging

import numpy as np
from sklearn.linear_model import Ridge

from ssmnormalform.exceptions import InvalidConfiguration, LinearAlgebraError


logger = logging.getLogger("ridge_regression")


def realify_regression_problem(features, targets):
    """
    Write the complex problem W @ features = targets as a real regression problem for sklearn.
    With W^T = U + iV, the rows of the real problem are
        [Re(X), -Im(X)] [U; V] = Re(Y)
        [Im(X),  Re(X)] [U; V] = Im(Y)
    where X = features.T and Y = targets.T. The squared norm of [U; V] equals |W|^2, so the ridge
    penalty is unchanged.
    Returns:
        X_real: (2*n_samples, 2*n_features)
        y_real: (2*n_samples, n_targets)
    """
    X = features.T
    Y = targets.T
    X_real = np.block([[np.real(X), -np.imag(X)], [np.imag(X), np.real(X)]])
    y_real = np.concatenate((np.real(Y), np.imag(Y)), axis=0)
    return X_real, y_real


def fit_ridge_complex(
    features,
    targets,
    alpha: float = 0.0,
):
    """
    One-shot ridge regression with complex data:
        min_W ||W @ features - targets||^2 + alpha * ||W||^2
    Parameters:
    ----------
        features: (n_features, n_samples), complex
        targets: (n_targets, n_samples), complex
        alpha: non-negative regularization parameter
    Returns:
    -------
        coefficients: (n_targets, n_features), complex.
            For rank-deficient features the minimum-norm solution is returned.
    """
    if alpha < 0:
        raise InvalidConfiguration(f"Ridge penalty must be non-negative, got {alpha}")
    features = np.atleast_2d(np.asarray(features, dtype=complex))
    targets = np.atleast_2d(np.asarray(targets, dtype=complex))
    if features.shape[1] != targets.shape[1]:
        raise InvalidConfiguration(
            f"Features have {features.shape[1]} samples and targets {targets.shape[1]}"
        )
    logger.debug(f"features shape: {features.shape}, targets shape: {targets.shape}")
    n_features = features.shape[0]
    if n_features == 0:
        return np.zeros((targets.shape[0], 0), dtype=complex)
    if not (np.all(np.isfinite(features)) and np.all(np.isfinite(targets))):
        raise LinearAlgebraError("Ridge regression received non-finite features or targets")

    X_real, y_real = realify_regression_problem(features, targets)
    # the svd solver drops vanishing singular values, which gives the minimum-norm solution
    regressor = Ridge(alpha=alpha, fit_intercept=False, solver="svd")
    logger.info(f"Fitting ridge regression with {n_features} features, alpha = {alpha}")
    try:
        regressor.fit(X_real, y_real)
    except np.linalg.LinAlgError as err:
        raise LinearAlgebraError(f"Ridge regression failed: {err}") from err

    coefficients_real = np.atleast_2d(regressor.coef_)
    coefficients = coefficients_real[:, :n_features] + 1j * coefficients_real[:, n_features:]
    if not np.all(np.isfinite(coefficients)):
        raise LinearAlgebraError("Ridge regression produced non-finite coefficients")
    return coefficients
