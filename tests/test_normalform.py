import numpy as np
import pytest

from ssmnormalform import fit_normalform_coordinate_change
from ssmnormalform.exceptions import InvalidConfiguration
from ssmnormalform.reduced_dynamics.coefficients import CoefficientLayout, SparsityPattern
from ssmnormalform.reduced_dynamics.invariance import InvarianceContext, SampleSet
from ssmnormalform.reduced_dynamics.normalform import check_gradient, validate_options
from ssmnormalform.utils.preprocessing import PolynomialBasis, insert_complex_conjugate


LAMBDA = 0.9 + 0.1j
CUBIC_COEFF = 0.5 - 0.2j
QUADRATIC_COEFF = 0.1 + 0.05j
V = np.array([[1, 1], [1j, -1j]])

# [[2, 0], [1, 1], [0, 2]]
IT_BASIS = PolynomialBasis.from_degree(2, 2)
# [[2, 0], [1, 1], [0, 2], [3, 0], [2, 1], [1, 2], [0, 3]]
N_BASIS = PolynomialBasis.from_degree(2, 3)
RESONANT_TERM = 4


def inverse_of_quadratic(z):
    # y + QUADRATIC_COEFF * y^2 = z
    return (-1 + np.sqrt(1 + 4 * QUADRATIC_COEFF * z)) / (2 * QUADRATIC_COEFF)


def resonant_map_samples(n_samples=50, noise=0.0, seed=0):
    """
    Samples of a map whose normal form is z -> LAMBDA z + CUBIC_COEFF z^2 conj(z),
    observed through z = y + QUADRATIC_COEFF y^2
    """
    np.random.seed(seed)
    radius = 0.6 * np.sqrt(np.random.rand(n_samples))
    angle = 2 * np.pi * np.random.rand(n_samples)
    Yk_r = (radius * np.exp(1j * angle)).reshape(1, -1)
    Zk = Yk_r + QUADRATIC_COEFF * Yk_r ** 2
    Zk1 = LAMBDA * Zk + CUBIC_COEFF * Zk ** 2 * np.conj(Zk)
    Yk1_r = inverse_of_quadratic(Zk1)
    if noise > 0:
        Yk1_r = Yk1_r + noise * (np.random.randn(1, n_samples) + 1j * np.random.randn(1, n_samples))
    return Yk_r, Yk1_r


def full_pattern():
    return SparsityPattern(
        [[0, 0], [0, 1], [0, 2]], [[0, RESONANT_TERM]], 1, IT_BASIS.n_terms, N_BASIS.n_terms
    )


def fit(samples, options=None, initial_guess=None, pattern=None):
    if pattern is None:
        pattern = full_pattern()
    return fit_normalform_coordinate_change(
        samples, IT_BASIS, N_BASIS, pattern, V, initial_guess=initial_guess, options=options
    )


TIGHT = {"optimality_tolerance": 1e-12, "max_iter": 2000}


def test_resonant_cubic_map():
    Yk_r, Yk1_r = resonant_map_samples()
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    mdl = fit(samples, options={**TIGHT, "t_poly_degree": 5})

    assert mdl.optimization.fun < 1e-8
    # normal form coefficients: linear part followed by the nonlinear terms
    assert mdl.N.coefficients.shape == (1, 1 + N_BASIS.n_terms)
    assert np.isclose(mdl.N.coefficients[0, 0], LAMBDA)
    assert abs(mdl.N.coefficients[0, 1 + RESONANT_TERM] - CUBIC_COEFF) < 0.01 * abs(CUBIC_COEFF)
    assert abs(mdl.iT.coefficients[0, 1] - QUADRATIC_COEFF) < 0.01 * abs(QUADRATIC_COEFF)
    assert np.allclose(mdl.iT.coefficients[0, 2:], 0, atol=1e-3)
    assert mdl.N.exponents.shape == (1 + N_BASIS.n_terms, 2)
    assert np.all(mdl.N.exponents[0] == [1, 0])

    # the maps act on physical coordinates x = V [y; conj(y)]
    x = np.real(np.matmul(V, insert_complex_conjugate(Yk_r)))
    z = mdl.inverse_transform(x)
    assert z.shape == (2, 50)
    assert np.allclose(z[1, :], np.conj(z[0, :]))
    assert np.allclose(z[0, :], Yk_r + QUADRATIC_COEFF * Yk_r ** 2, atol=1e-3)
    assert np.all(np.isreal(mdl.transform(z)))
    z1 = mdl.dynamics(z)
    assert np.allclose(z1[0, :], mdl.inverse_transform(np.real(np.matmul(V, insert_complex_conjugate(Yk1_r))))[0, :], atol=1e-3)

    error = mdl.consistency_error(x)
    assert len(error) == 1
    assert np.max(error[0]) < 1e-2
    # list inputs
    assert len(mdl.inverse_transform([x, x])) == 2


def test_resonant_cubic_flow():
    # dz/dt = lamb z + c z^2 conj(z), z = y + a y^2
    lamb = -0.1 + 1j
    np.random.seed(4)
    radius = 0.5 * np.sqrt(np.random.rand(60))
    angle = 2 * np.pi * np.random.rand(60)
    Yk_r = (radius * np.exp(1j * angle)).reshape(1, -1)
    Zk = Yk_r + QUADRATIC_COEFF * Yk_r ** 2
    dZk = lamb * Zk + CUBIC_COEFF * Zk ** 2 * np.conj(Zk)
    dYk_r = dZk / (1 + 2 * QUADRATIC_COEFF * Yk_r)
    samples = SampleSet.from_flow(Yk_r, dYk_r, [lamb], IT_BASIS)
    mdl = fit(samples, options=TIGHT)
    assert mdl.optimization.fun < 1e-8
    assert abs(mdl.N.coefficients[0, 1 + RESONANT_TERM] - CUBIC_COEFF) < 0.01 * abs(CUBIC_COEFF)


def test_fit_is_deterministic():
    Yk_r, Yk1_r = resonant_map_samples(n_samples=30)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    mdl_1 = fit(samples)
    mdl_2 = fit(samples)
    assert np.array_equal(mdl_1.optimization.x, mdl_2.optimization.x)
    assert np.array_equal(mdl_1.T.coefficients, mdl_2.T.coefficients)


def test_empty_pattern_skips_optimization():
    Yk_r, Yk1_r = resonant_map_samples(n_samples=20)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    pattern = SparsityPattern([], [], 1, IT_BASIS.n_terms, N_BASIS.n_terms)
    mdl = fit(samples, pattern=pattern)
    assert mdl.optimization.nit == 0
    assert mdl.optimization.success
    assert mdl.optimization.x.size == 0
    assert np.allclose(mdl.iT.coefficients, [[1, 0, 0, 0]])
    assert np.allclose(mdl.N.coefficients[0, 1:], 0)
    expected = np.mean(np.abs(Yk1_r - LAMBDA * Yk_r) ** 2) / 2
    assert np.isclose(mdl.optimization.fun, expected)


def test_weights_change_the_optimum():
    Yk_r, Yk1_r = resonant_map_samples(noise=1e-2, seed=2)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    l2 = np.ones((1, 50))
    l2[0, :25] = 100.0
    uniform = fit(samples, options={"l2": 1.0})
    weighted = fit(samples, options={"l2": l2})
    assert not np.allclose(uniform.optimization.x, weighted.optimization.x)


def test_scaled_weights_keep_the_optimum():
    Yk_r, Yk1_r = resonant_map_samples(noise=1e-2, seed=2)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    mdl_1 = fit(samples, options={**TIGHT, "l2": 1.0})
    mdl_2 = fit(samples, options={**TIGHT, "l2": 3.0})
    assert np.allclose(mdl_1.optimization.x, mdl_2.optimization.x, atol=1e-5)


def test_cold_start_ignores_initial_guess():
    Yk_r, Yk1_r = resonant_map_samples(n_samples=30)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    mdl_1 = fit(samples)
    mdl_2 = fit(samples, initial_guess=np.ones(8))
    assert np.array_equal(mdl_1.optimization.x, mdl_2.optimization.x)


def test_warm_start():
    Yk_r, Yk1_r = resonant_map_samples(n_samples=30)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    layout = CoefficientLayout(full_pattern())
    W_it_nl = np.array([[QUADRATIC_COEFF, 0, 0]])
    W_n_nl = np.zeros((1, N_BASIS.n_terms), dtype=complex)
    W_n_nl[0, RESONANT_TERM] = CUBIC_COEFF
    x0 = layout.pack(W_it_nl, W_n_nl)
    mdl = fit(samples, options={"ic_nf": True}, initial_guess=x0)
    # the exact coefficients are already optimal
    assert mdl.optimization.fun < 1e-20
    assert np.allclose(mdl.optimization.x, x0)

    with pytest.raises(InvalidConfiguration):
        fit(samples, options={"ic_nf": True})
    with pytest.raises(InvalidConfiguration):
        fit(samples, options={"ic_nf": True}, initial_guess=np.zeros(5))


def test_invalid_options():
    with pytest.raises(InvalidConfiguration):
        validate_options({"unknown_option": 1})
    with pytest.raises(InvalidConfiguration):
        validate_options({"ridge_alpha": -1.0})
    with pytest.raises(InvalidConfiguration):
        validate_options({"display": "loud"})
    with pytest.raises(InvalidConfiguration):
        validate_options({"max_iter": 0})
    with pytest.raises(InvalidConfiguration):
        validate_options({"method": "Nelder-Mead"})
    for key in ("optimality_tolerance", "gradient_check_tolerance", "ridge_alpha", "max_iter"):
        with pytest.raises(InvalidConfiguration):
            validate_options({key: "tight"})
    with pytest.raises(InvalidConfiguration):
        validate_options({"optimality_tolerance": True})
    opts = validate_options({"max_iter": 10})
    assert opts["max_iter"] == 10
    assert opts["l2"] == 1.0


def test_invalid_inputs():
    Yk_r, Yk1_r = resonant_map_samples(n_samples=10)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    with pytest.raises(InvalidConfiguration):
        fit(samples, options={"l2": -np.ones((1, 10))})
    with pytest.raises(InvalidConfiguration):
        fit_normalform_coordinate_change(samples, IT_BASIS, N_BASIS, full_pattern(), np.eye(3))
    # singular change of basis
    with pytest.raises(InvalidConfiguration):
        fit_normalform_coordinate_change(samples, IT_BASIS, N_BASIS, full_pattern(), np.zeros((2, 2)))
    with pytest.raises(InvalidConfiguration):
        fit_normalform_coordinate_change(samples, IT_BASIS, N_BASIS, full_pattern(), [[1, 1], [1, 1]])
    with pytest.raises(InvalidConfiguration):
        fit_normalform_coordinate_change(
            samples, PolynomialBasis.from_degree(2, 3), N_BASIS, full_pattern(), V
        )


def test_gradient_check():
    Yk_r, Yk1_r = resonant_map_samples(n_samples=20)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    layout = CoefficientLayout(full_pattern())
    context = InvarianceContext(samples, N_BASIS, layout)
    np.random.seed(7)
    difference = check_gradient(context, 0.1 * np.random.randn(layout.n_parameters))
    assert difference < 1e-6
    empty_layout = CoefficientLayout(SparsityPattern([], [], 1, IT_BASIS.n_terms, N_BASIS.n_terms))
    empty_context = InvarianceContext(samples, N_BASIS, empty_layout)
    assert check_gradient(empty_context, np.zeros(0)) == 0.0
    mdl = fit(samples, options={"check_gradients": True})
    assert mdl.optimization.fun < 1e-6


def test_finite_difference_gradient_reduces_loss():
    Yk_r, Yk1_r = resonant_map_samples(n_samples=30)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    empty = fit(samples, pattern=SparsityPattern([], [], 1, IT_BASIS.n_terms, N_BASIS.n_terms))
    mdl = fit(samples, options={"specify_objective_gradient": False})
    assert mdl.optimization.fun < empty.optimization.fun


def test_function_evaluation_limit():
    Yk_r, Yk1_r = resonant_map_samples(n_samples=30)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    mdl = fit(samples, options={**TIGHT, "max_function_evaluations": 5})
    assert mdl.optimization.nit <= 5
    # checked between iterations: only the last line search can go past the limit
    assert mdl.optimization.nfev < 5 + 25
    assert not mdl.optimization.success


@pytest.mark.parametrize("method", ["L-BFGS-B", "CG"])
def test_other_methods(method):
    Yk_r, Yk1_r = resonant_map_samples(n_samples=30)
    samples = SampleSet.from_map(Yk_r, Yk1_r, [LAMBDA], IT_BASIS)
    mdl = fit(samples, options={"method": method, "display": "final"})
    assert mdl.optimization.fun < 1e-6
