import logging
import numbers
from typing import Callable, NamedTuple

import numpy as np
from scipy.optimize import OptimizeResult, minimize

from ssmnormalform.exceptions import GradientCheckError, InvalidConfiguration
from ssmnormalform.reduced_dynamics.coefficients import CoefficientLayout, SparsityPattern
from ssmnormalform.reduced_dynamics.invariance import InvarianceContext, SampleSet
from ssmnormalform.utils.compute_errors import compute_errors
from ssmnormalform.utils.preprocessing import (
    PolynomialBasis,
    compute_polynomial_map,
    insert_complex_conjugate,
)
from ssmnormalform.utils.ridge import fit_ridge_complex


logger = logging.getLogger("normalform")


DEFAULT_OPTIONS = {
    "l2": 1.0,
    "display": "off",
    "optimality_tolerance": 1e-6,
    "max_iter": 400,
    "max_function_evaluations": 10000,
    "specify_objective_gradient": True,
    "check_gradients": False,
    "ic_nf": False,
    "t_poly_degree": 3,
    "method": "BFGS",
    "ridge_alpha": 0.0,
    "gradient_check_tolerance": 1e-6,
}

DISPLAY_LEVELS = ("off", "iter", "final")
# unconstrained, gradient-based methods of scipy.optimize.minimize
METHODS = ("BFGS", "L-BFGS-B", "CG")


def _is_real_number(value):
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def validate_options(options=None):
    """
    Merge the options with DEFAULT_OPTIONS and check them.
    Parameters:
        options: dict, optional. Recognized keys:
            - l2: scalar or (k_red, n_samples) array of non-negative weights of the squared residual
            - display: 'off', 'iter' or 'final'
            - optimality_tolerance: gradient tolerance of the minimizer
            - max_iter: maximum number of iterations
            - max_function_evaluations: maximum number of objective evaluations. Checked once per
                iteration, so the line search of the last iteration may exceed it
            - specify_objective_gradient: if True, the analytic gradient is passed to the minimizer.
                Otherwise the minimizer estimates it with finite differences
            - check_gradients: if True, compare the analytic gradient with finite differences at the initial guess
            - ic_nf: if False (cold start), the initial guess is the zero vector
            - t_poly_degree: polynomial degree of the forward transformation T
            - method: minimization method passed to scipy.optimize.minimize
            - ridge_alpha: regularization of the ridge regression of T
            - gradient_check_tolerance: tolerance of check_gradients
    Returns:
        dict with all the options
    """
    if options is None:
        options = {}
    unknown = set(options) - set(DEFAULT_OPTIONS)
    if unknown:
        raise InvalidConfiguration(
            f"Unknown options {sorted(unknown)}. Recognized options: {sorted(DEFAULT_OPTIONS)}"
        )
    opts = {**DEFAULT_OPTIONS, **options}

    if opts["display"] not in DISPLAY_LEVELS:
        raise InvalidConfiguration(
            f"display must be one of {DISPLAY_LEVELS}, got {opts['display']}"
        )
    if opts["method"] not in METHODS:
        raise InvalidConfiguration(f"method must be one of {METHODS}, got {opts['method']}")
    for key in ("optimality_tolerance", "gradient_check_tolerance"):
        if not _is_real_number(opts[key]) or not opts[key] > 0:
            raise InvalidConfiguration(f"{key} must be positive, got {opts[key]}")
    for key in ("max_iter", "max_function_evaluations", "t_poly_degree"):
        value = opts[key]
        if not _is_real_number(value) or int(value) != value or value < 1:
            raise InvalidConfiguration(f"{key} must be a positive integer, got {opts[key]}")
        opts[key] = int(opts[key])
    if not _is_real_number(opts["ridge_alpha"]) or not opts["ridge_alpha"] >= 0:
        raise InvalidConfiguration(
            f"ridge_alpha must be non-negative, got {opts['ridge_alpha']}"
        )
    return opts


class PolynomialMap(NamedTuple):
    """
    A map x -> map(x) built as coefficients @ phi(x), with phi the monomials given by exponents
    (shape (n_terms, n_variables)). The linear terms come first.
    """

    map: Callable
    coefficients: np.ndarray
    phi: Callable
    exponents: np.ndarray


class MapBundle(NamedTuple):
    """
    Result of the normal form fit.
        T: normal form coordinates [z; conj(z)] -> physical coordinates
        iT: physical coordinates -> normal form coordinates [z; conj(z)]
        N: normal form dynamics, acting on [z; conj(z)]
        V: linear change of basis between the physical and the reduced complex coordinates
        optimization: scipy.optimize.OptimizeResult of the minimizer, unmodified
    The maps expect arrays of shape (n_features, n_samples).
    """

    T: PolynomialMap
    iT: PolynomialMap
    N: PolynomialMap
    V: np.ndarray
    optimization: OptimizeResult

    def transform(self, z):
        """Apply T to a matrix of shape (n_features, n_samples), or a list of matrices"""
        if isinstance(z, list):
            return [self.T.map(z_i) for z_i in z]
        return self.T.map(z)

    def inverse_transform(self, x):
        """Apply iT to a matrix of shape (n_features, n_samples), or a list of matrices"""
        if isinstance(x, list):
            return [self.iT.map(x_i) for x_i in x]
        return self.iT.map(x)

    def dynamics(self, z):
        if isinstance(z, list):
            return [self.N.map(z_i) for z_i in z]
        return self.N.map(z)

    def consistency_error(self, x, metric="NTE"):
        """Error of T(iT(x)) with respect to x, for physical trajectories x (matrix or list)"""
        if not isinstance(x, list):
            x = [x]
        reconstruction = self.transform(self.inverse_transform(x))
        return compute_errors(x, reconstruction, metric=metric)


class _MinimizerMonitor:
    """
    Counts objective evaluations and reports the progress of the minimizer.
    The evaluation limit is checked between iterations: the minimizer is halted at the end of the
    first iteration that reaches it, and the OptimizeResult keeps the last accepted iterate.
    """

    def __init__(self, context: InvarianceContext, opts):
        self.context = context
        self.with_gradient = opts["specify_objective_gradient"]
        self.max_function_evaluations = opts["max_function_evaluations"]
        self.display = opts["display"]
        self.nfev = 0
        self.nit = 0

    def fun(self, x):
        self.nfev += 1
        return self.context.objective(x, return_gradient=self.with_gradient)

    def callback(self, intermediate_result):
        self.nit += 1
        if self.display == "iter":
            logger.info(
                f"Iteration {self.nit}: f(x) = {intermediate_result.fun:.6e}, "
                f"function evaluations = {self.nfev}"
            )
        if self.nfev >= self.max_function_evaluations:
            logger.info(
                f"Maximum number of function evaluations ({self.max_function_evaluations}) reached"
            )
            raise StopIteration


def check_gradient(context: InvarianceContext, x, tolerance=1e-6, step=1e-6):
    """
    Compare the analytic gradient of the objective with a central finite-difference estimate.
    Returns the largest relative difference and raises GradientCheckError if it exceeds tolerance.
    """
    x = np.asarray(x, dtype=float)
    if x.size == 0:
        return 0.0
    _, gradient = context.objective(x, return_gradient=True)
    estimate = np.zeros_like(gradient)
    for i in range(x.size):
        h = step * max(1.0, abs(x[i]))
        perturbation = np.zeros_like(x)
        perturbation[i] = h
        estimate[i] = (context.objective(x + perturbation) - context.objective(x - perturbation)) / (2 * h)
    difference = np.max(np.abs(gradient - estimate) / np.maximum(1.0, np.abs(gradient)))
    if difference > tolerance:
        raise GradientCheckError(
            f"Analytic and finite-difference gradients differ by {difference:.3e} (tolerance {tolerance:.1e})"
        )
    logger.info(f"Gradient check passed. Maximum relative difference: {difference:.3e}")
    return difference


def _minimizer_options(opts):
    minimizer_options = {
        "gtol": opts["optimality_tolerance"],
        "maxiter": opts["max_iter"],
    }
    if opts["method"] == "L-BFGS-B":
        minimizer_options["maxfun"] = opts["max_function_evaluations"]
    return minimizer_options


def optimize_invariance(context: InvarianceContext, initial_guess, opts):
    """
    Minimize the invariance objective starting from initial_guess.
    Non-convergence is logged, never raised: the result of the minimizer is returned as it is.
    """
    x0 = np.asarray(initial_guess, dtype=float)
    if x0.size == 0:
        logger.info("No free coefficients in the sparsity pattern, skipping the optimization")
        return OptimizeResult(
            x=x0,
            fun=context.objective(x0),
            jac=np.zeros(0),
            nit=0,
            nfev=1,
            success=True,
            status=0,
            message="No free coefficients to optimize",
        )
    if opts["check_gradients"]:
        check_gradient(context, x0, tolerance=opts["gradient_check_tolerance"])

    monitor = _MinimizerMonitor(context, opts)
    logger.info(f"Optimizing {x0.size} real parameters with {opts['method']}")
    res = minimize(
        monitor.fun,
        x0,
        method=opts["method"],
        jac=opts["specify_objective_gradient"],
        callback=monitor.callback,
        options=_minimizer_options(opts),
    )
    if res.success:
        if opts["display"] != "off":
            logger.info(f"Optimization converged. Message: {res.message}")
    else:
        logger.warning(f"Optimization did not converge. Message: {res.message}")
    if opts["display"] == "final":
        logger.info(
            f"Final objective {res.fun:.6e} after {res.nit} iterations "
            f"and {res.nfev} function evaluations"
        )
    return res


def _initial_guess(layout: CoefficientLayout, initial_guess, ic_nf):
    if not ic_nf:
        if initial_guess is not None:
            logger.info("Cold start (ic_nf = False): the initial guess is reset to zero")
        return np.zeros(layout.n_parameters)
    if initial_guess is None:
        raise InvalidConfiguration("ic_nf = True requires an initial guess")
    if np.iscomplexobj(initial_guess):
        raise InvalidConfiguration(
            "The initial guess must be real, use CoefficientLayout.pack to build it from coefficient matrices"
        )
    x0 = np.asarray(initial_guess, dtype=float).ravel()
    if x0.size != layout.n_parameters:
        raise InvalidConfiguration(
            f"Initial guess has length {x0.size}, expected {layout.n_parameters}"
        )
    return x0


def fit_normalform_coordinate_change(
    samples: SampleSet,
    inverse_transform_basis: PolynomialBasis,
    normalform_basis: PolynomialBasis,
    sparsity: SparsityPattern,
    linear_transform,
    initial_guess=None,
    options=None,
):
    """
    Fit a normal form coordinate change to sampled data.
    The invariance equation, for a map T^{-1}(y_{k+1}) = N(T^{-1}(y_k)), or for a flow
    DT^{-1}(y_k) dy_k/dt = N(T^{-1}(y_k)), is solved in the least-squares sense with
        z = T^{-1}(y) = y + W_it_nl phi_it(y),
        N(z) = d_r*z + W_n_nl phi_n(z),
    where only the entries of W_it_nl and W_n_nl listed in the sparsity pattern are optimized.
    The forward transformation y = T(z) is then obtained by ridge regression, and the maps are
    expressed in physical coordinates x = V y through linear_transform.

    Parameters:
        samples: SampleSet in reduced complex coordinates
        inverse_transform_basis: PolynomialBasis of phi_it, in 2*k_red variables
        normalform_basis: PolynomialBasis of phi_n, in 2*k_red variables
        sparsity: SparsityPattern of the free coefficients
        linear_transform: V, (2*k_red, 2*k_red) matrix whose last k_red columns are the conjugates of the first k_red
        initial_guess: real optimization vector, used only if options['ic_nf'] is True
        options: dict, see validate_options
    Returns:
        MapBundle
    """
    # configure
    opts = validate_options(options)
    layout = CoefficientLayout(sparsity)
    context = InvarianceContext(samples, normalform_basis, layout, l2=opts["l2"])
    samples = context.samples
    k_red = samples.reduced_dimension
    k = 2 * k_red
    if (
        inverse_transform_basis.n_variables != k
        or inverse_transform_basis.n_terms != sparsity.shape_it[1]
    ):
        raise InvalidConfiguration(
            f"Inverse transformation basis has {inverse_transform_basis.n_terms} terms in "
            f"{inverse_transform_basis.n_variables} variables, expected {sparsity.shape_it[1]} terms in {k} variables"
        )
    V = np.asarray(linear_transform, dtype=complex)
    if V.shape != (k, k):
        raise InvalidConfiguration(f"Linear transformation has shape {V.shape}, expected {(k, k)}")
    if not np.all(np.isfinite(V)) or np.linalg.matrix_rank(V) < k:
        raise InvalidConfiguration("Linear transformation must be finite and invertible")
    x0 = _initial_guess(layout, initial_guess, opts["ic_nf"])

    # optimize
    res = optimize_invariance(context, x0, opts)

    # reconstruct the coefficients: fixed linear block followed by the optimized nonlinear block
    W_it_nl, W_n_nl = layout.unpack(res.x)
    W_it = np.concatenate((np.eye(k_red), W_it_nl), axis=1)
    W_n = np.concatenate((np.diag(samples.d_r), W_n_nl), axis=1)

    def phi_it(y):
        return np.concatenate((y[:k_red, :], inverse_transform_basis.evaluate(y)), axis=0)

    def phi_n(z):
        return np.concatenate((z[:k_red, :], normalform_basis.evaluate(z)), axis=0)

    iT_reduced = compute_polynomial_map(W_it, phi_it, linear_transform=V)
    N_reduced = compute_polynomial_map(W_n, phi_n)

    # forward transformation from the normal form coordinates of the samples
    logger.info(f"Fitting the forward transformation with degree {opts['t_poly_degree']}")
    Zk = insert_complex_conjugate(samples.Yk_r + np.matmul(W_it_nl, samples.Phi_iT_Yk))
    forward_basis = PolynomialBasis.from_degree(k, opts["t_poly_degree"], min_degree=2)
    W_t_nl = fit_ridge_complex(
        forward_basis.evaluate(Zk),
        samples.Yk_r - Zk[:k_red, :],
        alpha=opts["ridge_alpha"],
    )
    W_t = np.concatenate((np.eye(k_red), W_t_nl), axis=1)

    def phi_t(z):
        return np.concatenate((z[:k_red, :], forward_basis.evaluate(z)), axis=0)

    T_reduced = compute_polynomial_map(np.matmul(V[:, :k_red], W_t), phi_t)

    # assemble
    linear_exponents = np.eye(k, dtype=np.int64)[:k_red, :]
    bundle = MapBundle(
        T=PolynomialMap(
            map=lambda z: 2 * np.real(T_reduced(z)),
            coefficients=W_t,
            phi=phi_t,
            exponents=np.concatenate((linear_exponents, forward_basis.exponents)),
        ),
        iT=PolynomialMap(
            map=lambda x: insert_complex_conjugate(iT_reduced(x)),
            coefficients=W_it,
            phi=phi_it,
            exponents=np.concatenate((linear_exponents, inverse_transform_basis.exponents)),
        ),
        N=PolynomialMap(
            map=lambda z: insert_complex_conjugate(N_reduced(z)),
            coefficients=W_n,
            phi=phi_n,
            exponents=np.concatenate((linear_exponents, normalform_basis.exponents)),
        ),
        V=V,
        optimization=res,
    )
    logger.info(f"Normal form fit completed. Final objective: {res.fun:.6e}")
    return bundle
