import logging

import numpy as np

logger = logging.getLogger("compute_errors")


def nte_error(x_reference, x_prediction):
    """Normalized trajectory error: pointwise error over the largest norm of the reference"""
    x_norm = np.max(np.linalg.norm(x_reference, axis=0))
    return np.linalg.norm(x_reference - x_prediction, axis=0) / x_norm


def nmte_error(x_reference, x_prediction):
    return np.mean(nte_error(x_reference, x_prediction))


def te_error(x_reference, x_prediction):
    return np.linalg.norm(x_reference - x_prediction, axis=0)


def mte_error(x_reference, x_prediction):
    return np.mean(te_error(x_reference, x_prediction))


ERROR_METRICS = {
    'NTE': nte_error,
    'NMTE': nmte_error,
    'TE': te_error,
    'MTE': mte_error,
}


def compute_errors(reference, prediction, metric='NTE'):
    """
    Error between lists of (n_features, n_samples) reference and predicted trajectories.
    Predictions containing NaNs get a NaN error of the shape the metric would return.
    """
    if metric not in ERROR_METRICS:
        raise NotImplementedError(
            (
                f"{metric} not implemented, please specify an error metric that has "
                f"already been implemented: {list(ERROR_METRICS)}"
            )
        )
    error_fun = ERROR_METRICS[metric]

    errors = []
    for x_reference, x_prediction in zip(reference, prediction):
        if np.any(np.isnan(x_prediction)):
            logger.warning("Prediction contains NaNs")
            error_i = np.full(np.shape(error_fun(x_reference, x_reference)), np.nan)
        else:
            error_i = error_fun(x_reference, x_prediction)
        errors.append(error_i)
    return errors
