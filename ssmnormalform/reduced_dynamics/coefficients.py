import logging

import numpy as np

from ssmnormalform.exceptions import InvalidConfiguration


logger = logging.getLogger("coefficients")


def _as_index_array(indexes):
    indexes = np.asarray(indexes, dtype=np.int64)
    if indexes.size == 0:
        return np.zeros((0, 2), dtype=np.int64)
    if indexes.ndim != 2 or indexes.shape[1] != 2:
        raise InvalidConfiguration(
            f"Sparsity indexes must be a list of (row, col) pairs, got shape {indexes.shape}"
        )
    return indexes


def _check_bounds(indexes, shape, name):
    out_of_bounds = (
        (indexes[:, 0] < 0)
        | (indexes[:, 0] >= shape[0])
        | (indexes[:, 1] < 0)
        | (indexes[:, 1] >= shape[1])
    )
    if np.any(out_of_bounds):
        first = indexes[np.argmax(out_of_bounds)]
        raise IndexError(
            f"Sparsity index ({first[0]}, {first[1]}) of {name} is out of bounds for a coefficient matrix of shape {shape}"
        )
    linear_indexes = np.ravel_multi_index((indexes[:, 0], indexes[:, 1]), shape)
    if np.unique(linear_indexes).size != linear_indexes.size:
        raise InvalidConfiguration(f"Sparsity indexes of {name} contain duplicates")
    return linear_indexes


class SparsityPattern:
    """
    Free (optimizable) entries of the nonlinear coefficient matrices of the inverse transformation
    and of the normal form dynamics.

    Parameters:
        inverse_transform_indexes: list of (row, col) pairs of the free entries of W_it_nl
        normalform_indexes: list of (row, col) pairs of the free entries of W_n_nl
        n_rows: number of reduced coordinates k_red
        n_features_it: number of nonlinear terms of the inverse transformation basis
        n_features_n: number of nonlinear terms of the normal form basis
    The indexes are validated here, so that the optimization never indexes out of bounds.
    """

    def __init__(
        self,
        inverse_transform_indexes,
        normalform_indexes,
        n_rows,
        n_features_it,
        n_features_n,
    ):
        self.shape_it = (int(n_rows), int(n_features_it))
        self.shape_n = (int(n_rows), int(n_features_n))
        self.idx_it = _as_index_array(inverse_transform_indexes)
        self.idx_n = _as_index_array(normalform_indexes)
        self.lidx_it = _check_bounds(self.idx_it, self.shape_it, "the inverse transformation")
        self.lidx_n = _check_bounds(self.idx_n, self.shape_n, "the normal form")
        logger.debug(
            f"Sparsity pattern: {len(self.idx_it)} free coefficients in the inverse transformation, "
            f"{len(self.idx_n)} in the normal form"
        )

    @classmethod
    def from_masks(cls, mask_it, mask_n):
        """Build the pattern from boolean matrices marking the free entries (row-major ordering)"""
        mask_it = np.asarray(mask_it, dtype=bool)
        mask_n = np.asarray(mask_n, dtype=bool)
        if mask_it.shape[0] != mask_n.shape[0]:
            raise InvalidConfiguration(
                f"Masks must have the same number of rows, got {mask_it.shape} and {mask_n.shape}"
            )
        return cls(
            np.argwhere(mask_it),
            np.argwhere(mask_n),
            mask_it.shape[0],
            mask_it.shape[1],
            mask_n.shape[1],
        )

    @property
    def n_it(self):
        return self.idx_it.shape[0]

    @property
    def n_n(self):
        return self.idx_n.shape[0]


class CoefficientLayout:
    """
    Maps the real optimization vector to the complex coefficient matrices and back.
    The vector is laid out as [Re(W_it entries), Re(W_n entries), Im(W_it entries), Im(W_n entries)],
    where the entries follow the ordering of the sparsity pattern.
    """

    def __init__(self, pattern: SparsityPattern):
        self.pattern = pattern

    @property
    def n_parameters(self):
        return 2 * (self.pattern.n_it + self.pattern.n_n)

    def to_complex(self, x):
        x = np.asarray(x, dtype=float).ravel()
        if x.size != self.n_parameters:
            raise InvalidConfiguration(
                f"Parameter vector has length {x.size}, expected {self.n_parameters}"
            )
        # first half is real, second half is imaginary
        n_unknowns = x.size // 2
        return x[:n_unknowns] + 1j * x[n_unknowns:]

    @staticmethod
    def from_complex(x_complex):
        return np.concatenate((np.real(x_complex), np.imag(x_complex)))

    def unpack(self, x):
        """
        Returns the dense nonlinear coefficient matrices (W_it_nl, W_n_nl). Entries not in the
        sparsity pattern are zero.
        """
        x_complex = self.to_complex(x)
        pattern = self.pattern
        W_it_nl = np.zeros(pattern.shape_it, dtype=complex)
        W_n_nl = np.zeros(pattern.shape_n, dtype=complex)
        W_it_nl[pattern.idx_it[:, 0], pattern.idx_it[:, 1]] = x_complex[: pattern.n_it]
        W_n_nl[pattern.idx_n[:, 0], pattern.idx_n[:, 1]] = x_complex[pattern.n_it :]
        return W_it_nl, W_n_nl

    def pack(self, W_it_nl, W_n_nl):
        """Inverse of unpack on the free entries. Entries outside the pattern are ignored."""
        pattern = self.pattern
        x_complex = np.concatenate(
            (
                np.ravel(W_it_nl)[pattern.lidx_it],
                np.ravel(W_n_nl)[pattern.lidx_n],
            )
        )
        return self.from_complex(x_complex)

    def pack_gradient(self, dW_it, dW_n, scale=1.0):
        """
        Extract the gradient entries on the sparsity pattern.
        dW_it and dW_n hold the derivative with respect to the real part of each coefficient in their
        real part, and the derivative with respect to the imaginary part in their imaginary part.
        The factor 2 comes from differentiating |.|^2 with respect to real and imaginary parts.
        """
        return 2 * scale * self.pack(dW_it, dW_n)
