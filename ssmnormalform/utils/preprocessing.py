import logging
from typing import NamedTuple

import numba
import numpy as np
from sklearn.preprocessing import PolynomialFeatures

from ssmnormalform.exceptions import InvalidConfiguration


logger = logging.getLogger("preprocessing")


def get_matrix(trajectories):
    """Stack a list of (n_features, n_samples_i) arrays into one (n_features, sum(n_samples_i)) array"""
    if isinstance(trajectories, list):
        return np.concatenate(trajectories, axis=1)
    return trajectories


def insert_complex_conjugate(x):
    """
    Append the complex conjugate of the reduced coordinates below them.
    A (k_red, n_samples) array becomes a (2*k_red, n_samples) array [x; conj(x)],
    which is the input expected by all the polynomial bases in normal form coordinates.
    """
    return np.concatenate((x, np.conj(x)), axis=0)


def generate_exponents(n_variables, degree, min_degree=1):
    """
    Exponents of all the monomials in n_variables with min_degree <= total degree <= degree.
    The ordering is the graded one of sklearn.preprocessing.PolynomialFeatures.
    Returns:
        exponents: integer array of shape (n_terms, n_variables)
    """
    if degree < min_degree:
        return np.zeros((0, n_variables), dtype=np.int64)
    powers = (
        PolynomialFeatures(degree=degree, include_bias=False)
        .fit(np.ones((1, n_variables)))
        .powers_
    )
    powers = powers[np.sum(powers, axis=1) >= min_degree, :]
    return np.ascontiguousarray(powers, dtype=np.int64)


@numba.njit(cache=True)
def eval_complex_poly(y, powers):
    n_features, n_samples = y.shape
    n_terms = powers.shape[0]
    features = np.empty((n_terms, n_samples), dtype=np.complex128)

    for i in range(n_terms):
        prod = np.ones(n_samples, dtype=np.complex128)
        for j in range(n_features):
            for _ in range(powers[i, j]):
                prod *= y[j, :]
        features[i, :] = prod

    return features


class PartialDerivative(NamedTuple):
    """
    Derivative of every term of a PolynomialBasis with respect to one variable.
        exponents: exponents of the derivative basis, shape (n_derivative_terms, n_variables)
        indexes: for each term of the parent basis, the row of the derivative basis it maps to.
                 Terms that do not contain the variable point to row n_derivative_terms, which is zero.
        multiplicity: exponent of the variable in each term of the parent basis
    """

    exponents: np.ndarray
    indexes: np.ndarray
    multiplicity: np.ndarray


class PolynomialBasis:
    """
    Monomial basis defined by an exponent matrix of shape (n_terms, n_variables).
    Points are given as (n_variables, n_points) arrays and the evaluation has shape (n_terms, n_points).
    """

    def __init__(self, exponents):
        exponents = np.asarray(exponents, dtype=np.int64)
        if exponents.ndim != 2:
            raise InvalidConfiguration(
                f"Exponent matrix must be 2-dimensional, got shape {exponents.shape}"
            )
        if np.any(exponents < 0):
            raise InvalidConfiguration("Exponent matrix contains negative exponents")
        self.exponents = np.ascontiguousarray(exponents)
        self._derivatives = {}

    @classmethod
    def from_degree(cls, n_variables, degree, min_degree=2):
        return cls(generate_exponents(n_variables, degree, min_degree=min_degree))

    @property
    def n_terms(self):
        return self.exponents.shape[0]

    @property
    def n_variables(self):
        return self.exponents.shape[1]

    def _check_points(self, points):
        points = np.atleast_2d(np.asarray(points, dtype=np.complex128))
        if points.shape[0] != self.n_variables:
            raise InvalidConfiguration(
                f"Basis in {self.n_variables} variables evaluated at points with {points.shape[0]} coordinates"
            )
        return np.ascontiguousarray(points)

    def evaluate(self, points):
        return eval_complex_poly(self._check_points(points), self.exponents)

    def __call__(self, points):
        return self.evaluate(points)

    def derivative(self, variable):
        """
        Differentiate the basis with respect to the given variable:
        x^e becomes e_i * x^(e - unit_i) if e_i > 0 and is dropped otherwise.
        The surviving terms are collected without repetitions in a derivative basis,
        and the returned indexes align them to the ordering of this basis.
        """
        if not 0 <= variable < self.n_variables:
            raise IndexError(
                f"Variable {variable} out of range for a basis in {self.n_variables} variables"
            )
        if variable in self._derivatives:
            return self._derivatives[variable]

        multiplicity = self.exponents[:, variable].copy()
        contains_variable = multiplicity > 0
        reduced = self.exponents[contains_variable, :].copy()
        reduced[:, variable] -= 1
        if reduced.shape[0] > 0:
            derivative_exponents, inverse = np.unique(
                reduced, axis=0, return_inverse=True
            )
        else:
            derivative_exponents = np.zeros((0, self.n_variables), dtype=np.int64)
            inverse = np.zeros(0, dtype=np.int64)
        indexes = np.full(self.n_terms, derivative_exponents.shape[0], dtype=np.int64)
        indexes[contains_variable] = np.ravel(inverse)

        derivative = PartialDerivative(
            exponents=np.ascontiguousarray(derivative_exponents, dtype=np.int64),
            indexes=indexes,
            multiplicity=multiplicity,
        )
        self._derivatives[variable] = derivative
        return derivative

    def partial_derivative(self, points, variable):
        """
        Evaluate d/dx_variable of every term of the basis at the given points.
        Returns an array of shape (n_terms, n_points), aligned with self.exponents.
        """
        points = self._check_points(points)
        derivative = self.derivative(variable)
        values = eval_complex_poly(points, derivative.exponents)
        # one structurally zero row for the terms that do not contain the variable
        values = np.concatenate(
            (values, np.zeros((1, points.shape[1]), dtype=np.complex128)), axis=0
        )
        return derivative.multiplicity.reshape(-1, 1) * values[derivative.indexes, :]


def compute_polynomial_map(coefficients, phi, linear_transform=None):
    """
    Returns the callable x -> coefficients @ phi(x).
    If linear_transform is given, the input is first mapped by its inverse, i.e. phi is evaluated at
    linear_transform^{-1} x.
    """
    if linear_transform is None:
        return lambda x: np.matmul(coefficients, phi(x))
    return lambda x: np.matmul(coefficients, phi(np.linalg.solve(linear_transform, x)))
