import logging
from typing import NamedTuple

import numpy as np

from ssmnormalform.exceptions import InvalidConfiguration
from ssmnormalform.reduced_dynamics.coefficients import CoefficientLayout
from ssmnormalform.utils.preprocessing import PolynomialBasis, insert_complex_conjugate


logger = logging.getLogger("invariance")


class SampleSet(NamedTuple):
    """
    Data entering the invariance equation, in reduced complex coordinates.
        Yk_r: samples y_k, shape (k_red, n_samples)
        Yk_1_DYk_r: y_{k+1} - d_r*y_k for maps, dy_k/dt - d_r*y_k for flows, shape (k_red, n_samples)
        d_r: diagonal linear part of the normal form, shape (k_red,)
        Phi_iT_Yk: nonlinear basis of the inverse transformation at [y_k; conj(y_k)], shape (p_it, n_samples)
        Phi_iT_Yk_1: the same basis at y_{k+1} (maps) or its time derivative along the samples (flows)
    """

    Yk_r: np.ndarray
    Yk_1_DYk_r: np.ndarray
    d_r: np.ndarray
    Phi_iT_Yk: np.ndarray
    Phi_iT_Yk_1: np.ndarray

    @classmethod
    def from_map(cls, Yk_r, Yk1_r, d_r, inverse_transform_basis: PolynomialBasis):
        """Samples of a discrete map: Yk1_r[:, j] is the image of Yk_r[:, j]"""
        Yk_r, Yk1_r, d_r = _as_reduced_arrays(Yk_r, Yk1_r, d_r)
        return cls(
            Yk_r=Yk_r,
            Yk_1_DYk_r=Yk1_r - d_r.reshape(-1, 1) * Yk_r,
            d_r=d_r,
            Phi_iT_Yk=inverse_transform_basis.evaluate(insert_complex_conjugate(Yk_r)),
            Phi_iT_Yk_1=inverse_transform_basis.evaluate(insert_complex_conjugate(Yk1_r)),
        )

    @classmethod
    def from_flow(cls, Yk_r, dYk_r, d_r, inverse_transform_basis: PolynomialBasis):
        """Samples of a flow: dYk_r[:, j] is the time derivative at Yk_r[:, j]"""
        Yk_r, dYk_r, d_r = _as_reduced_arrays(Yk_r, dYk_r, d_r)
        z = insert_complex_conjugate(Yk_r)
        dz = insert_complex_conjugate(dYk_r)
        # chain rule: d/dt phi(z) = sum_i d phi/dz_i * dz_i/dt
        Phi_iT_dYk = np.zeros((inverse_transform_basis.n_terms, z.shape[1]), dtype=complex)
        for i in range(z.shape[0]):
            Phi_iT_dYk += inverse_transform_basis.partial_derivative(z, i) * dz[i, :]
        return cls(
            Yk_r=Yk_r,
            Yk_1_DYk_r=dYk_r - d_r.reshape(-1, 1) * Yk_r,
            d_r=d_r,
            Phi_iT_Yk=inverse_transform_basis.evaluate(z),
            Phi_iT_Yk_1=Phi_iT_dYk,
        )

    @property
    def n_samples(self):
        return self.Yk_r.shape[1]

    @property
    def reduced_dimension(self):
        return self.Yk_r.shape[0]


def _as_reduced_arrays(Yk_r, Yk_other, d_r):
    Yk_r = np.atleast_2d(np.asarray(Yk_r, dtype=complex))
    Yk_other = np.atleast_2d(np.asarray(Yk_other, dtype=complex))
    d_r = np.asarray(d_r, dtype=complex).ravel()
    if Yk_r.shape != Yk_other.shape:
        raise InvalidConfiguration(
            f"Paired samples must have the same shape, got {Yk_r.shape} and {Yk_other.shape}"
        )
    if d_r.size != Yk_r.shape[0]:
        raise InvalidConfiguration(
            f"Linear part has {d_r.size} entries for {Yk_r.shape[0]} reduced coordinates"
        )
    return Yk_r, Yk_other, d_r


def check_weights(l2, shape):
    """
    Validate the weights of the squared residual. A scalar is broadcast to the residual shape.
    Weights must be finite and non-negative.
    """
    weights = np.asarray(l2)
    if np.iscomplexobj(weights):
        raise InvalidConfiguration("Residual weights must be real")
    weights = weights.astype(float)
    if weights.ndim == 0:
        weights = np.full(shape, float(weights))
    elif weights.shape != tuple(shape):
        raise InvalidConfiguration(
            f"Residual weights have shape {weights.shape}, expected {tuple(shape)}"
        )
    if not np.all(np.isfinite(weights)):
        raise InvalidConfiguration("Residual weights must be finite")
    if np.any(weights < 0):
        raise InvalidConfiguration("Residual weights must be non-negative")
    return weights


class InvarianceContext:
    """
    Read-only collection of everything the invariance objective needs, shared by all the
    evaluations of one optimization.

    For z = T^{-1}(y) = y + W_it_nl phi_it(y) and N(z) = d_r*z + W_n_nl phi_n(z), the residual of the
    invariance equation at the samples is
        Err = Yk_1_DYk_r + W_it_nl Phi_iT_Yk_1 - (d_r * W_it_nl Phi_iT_Yk + W_n_nl phi_n([iTk; conj(iTk)]))
    and the objective is the weighted mean of |Err|^2.

    Parameters:
        samples: SampleSet
        normalform_basis: PolynomialBasis of the nonlinear part of the normal form, in 2*k_red variables
        layout: CoefficientLayout mapping the optimization vector to the coefficient matrices
        l2: scalar or (k_red, n_samples) array of non-negative weights
    """

    def __init__(
        self,
        samples: SampleSet,
        normalform_basis: PolynomialBasis,
        layout: CoefficientLayout,
        l2=1.0,
    ):
        self.samples = SampleSet(
            *(np.atleast_1d(np.asarray(field, dtype=complex)) for field in samples)
        )
        self.normalform_basis = normalform_basis
        self.layout = layout
        self._check_shapes()
        self.weights = check_weights(l2, self.samples.Yk_r.shape)
        # normalization of the loss: number of samples times number of (complex and conjugate) coordinates
        self.n_variables = normalform_basis.n_variables
        self.normalization = 1.0 / (self.samples.n_samples * self.n_variables)
        # the derivative bases only depend on the exponents; build them once
        for i in range(self.n_variables):
            normalform_basis.derivative(i)

    def _check_shapes(self):
        samples = self.samples
        pattern = self.layout.pattern
        if samples.Yk_r.ndim != 2:
            raise InvalidConfiguration(
                f"Samples must have shape (k_red, n_samples), got {samples.Yk_r.shape}"
            )
        k_red, n_samples = samples.Yk_r.shape
        if samples.Yk_1_DYk_r.shape != (k_red, n_samples):
            raise InvalidConfiguration(
                f"Yk_1_DYk_r has shape {samples.Yk_1_DYk_r.shape}, expected {(k_red, n_samples)}"
            )
        if np.ravel(samples.d_r).size != k_red:
            raise InvalidConfiguration(
                f"Linear part has {np.ravel(samples.d_r).size} entries for {k_red} reduced coordinates"
            )
        for name in ("Phi_iT_Yk", "Phi_iT_Yk_1"):
            shape = getattr(samples, name).shape
            if shape != (pattern.shape_it[1], n_samples):
                raise InvalidConfiguration(
                    f"{name} has shape {shape}, expected {(pattern.shape_it[1], n_samples)}"
                )
        if pattern.shape_it[0] != k_red or pattern.shape_n[0] != k_red:
            raise InvalidConfiguration(
                f"Sparsity pattern has {pattern.shape_it[0]} rows for {k_red} reduced coordinates"
            )
        if self.normalform_basis.n_variables != 2 * k_red:
            raise InvalidConfiguration(
                f"Normal form basis in {self.normalform_basis.n_variables} variables, expected {2 * k_red}"
            )
        if self.normalform_basis.n_terms != pattern.shape_n[1]:
            raise InvalidConfiguration(
                f"Normal form basis has {self.normalform_basis.n_terms} terms, "
                f"sparsity pattern expects {pattern.shape_n[1]}"
            )

    def residual(self, W_it_nl, W_n_nl):
        """
        Returns:
            Err: residual of the invariance equation, shape (k_red, n_samples)
            iTk: normal form coordinates of the samples [z; conj(z)], shape (2*k_red, n_samples)
            Phi_N: nonlinear normal form basis at iTk
        """
        samples = self.samples
        iTk_nl = np.matmul(W_it_nl, samples.Phi_iT_Yk)
        iTk = insert_complex_conjugate(samples.Yk_r + iTk_nl)
        Phi_N = self.normalform_basis.evaluate(iTk)
        Err = (
            samples.Yk_1_DYk_r
            + np.matmul(W_it_nl, samples.Phi_iT_Yk_1)
            - (samples.d_r.reshape(-1, 1) * iTk_nl + np.matmul(W_n_nl, Phi_N))
        )
        return Err, iTk, Phi_N

    def loss(self, Err):
        return float(np.sum(np.real(Err * np.conj(Err)) * self.weights) * self.normalization)

    def objective(self, x, return_gradient=False):
        """
        Weighted mean squared residual of the invariance equation.
        Parameters:
            x: real optimization vector (see CoefficientLayout)
            return_gradient: if True, also return the gradient with respect to x
        Returns:
            f or (f, gradient)
        """
        W_it_nl, W_n_nl = self.layout.unpack(x)
        Err, iTk, Phi_N = self.residual(W_it_nl, W_n_nl)
        f = self.loss(Err)
        if not return_gradient:
            return f
        samples = self.samples
        cErr_L = np.conj(Err) * self.weights
        # adjoint of the terms that are linear in the coefficients
        DF_it = np.matmul(cErr_L, samples.Phi_iT_Yk_1.T) - np.matmul(
            samples.d_r.reshape(-1, 1) * cErr_L, samples.Phi_iT_Yk.T
        )
        DF_n = -np.matmul(cErr_L, Phi_N.T)
        # dependence of Phi_N on W_it_nl through iTk
        chain_own, chain_conj = self.chain_rule_terms(cErr_L, iTk, W_n_nl)
        # real part: derivative w.r.t. Re(W), imaginary part: derivative w.r.t. Im(W)
        dW_it = np.conj(DF_it - chain_own) - chain_conj
        dW_n = np.conj(DF_n)
        gradient = self.layout.pack_gradient(dW_it, dW_n, scale=self.normalization)
        return f, gradient

    def chain_rule_terms(self, cErr_L, iTk, W_n_nl):
        """
        Contract the partial derivatives of the normal form basis at iTk with the adjoint of the
        residual. The first k_red coordinates of iTk depend on W_it_nl through Phi_iT_Yk, the last k_red
        are their conjugates and depend on conj(W_it_nl) through conj(Phi_iT_Yk).
        Returns:
            chain_own, chain_conj: arrays of shape (k_red, p_it)
        """
        Phi_iT_Yk = self.samples.Phi_iT_Yk
        k_red = self.samples.reduced_dimension
        chain_own = np.zeros((k_red, Phi_iT_Yk.shape[0]), dtype=complex)
        chain_conj = np.zeros((k_red, Phi_iT_Yk.shape[0]), dtype=complex)
        for i in range(self.n_variables):
            Di_Phi_N = self.normalform_basis.partial_derivative(iTk, i)
            term_i = np.sum(cErr_L * np.matmul(W_n_nl, Di_Phi_N), axis=0)
            if i < k_red:
                chain_own[i, :] += np.matmul(term_i, Phi_iT_Yk.T)
            else:
                chain_conj[i - k_red, :] += np.matmul(term_i, np.conj(Phi_iT_Yk).T)
        return chain_own, chain_conj
