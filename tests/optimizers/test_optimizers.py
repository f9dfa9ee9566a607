import numpy as np
import pytest
import scipy as sp
import scipy.optimize

from bqvi.optimizers import (
    AdamOptimizer,
    CMAESOptimizer,
    OptimizationError,
    Optimizer,
    ScipyOptimizer,
    minimize_adam,
)


def sphere(x):
    return float(np.sum((x - 1.0) ** 2))


def sphere_with_grad(x):
    return float(np.sum((x - 1.0) ** 2)), 2 * (x - 1.0)


def test_minimize_adam_sphere():
    f = lambda x_: (np.sum(x_**2), 2 * x_)
    x0 = np.array([-3.0, -4.0])

    x, y, _, _, _ = minimize_adam(f, x0)

    assert np.all(np.abs(x) < 0.1)
    assert np.abs(y) < 0.001


def test_minimize_adam_matyas():
    def f(x_):
        val = 0.26 * (x_[0] ** 2 + x_[1] ** 2) - 0.48 * x_[0] * x_[1]
        grad_1 = 0.52 * x_[0] - 0.48 * x_[1]
        grad_2 = 0.52 * x_[1] - 0.48 * x_[0]
        grad = np.array([grad_1, grad_2])
        return val, grad

    x0 = np.array([-0.3, -0.4])
    lb = np.array([-10.0, -10.0])
    ub = np.array([10.0, 10.0])

    x, y, _, _, _ = minimize_adam(f, x0, lb, ub)

    assert np.all(np.abs(x) < 0.1)
    assert np.abs(y) < 0.001


def test_minimize_adam_rosen():
    f = lambda x_: (sp.optimize.rosen(x_), sp.optimize.rosen_der(x_))
    x0 = np.array([-3.0, -4.0])

    # Without early stopping, to get close enough to the optimum
    x, y, _, _, _ = minimize_adam(
        f, x0, max_iter=50000, use_early_stopping=False
    )

    assert np.all(np.isclose(x, 1))
    assert np.isclose(y, 0.0)


def test_minimize_adam_box():
    x, _, x_tab, _, n_iter = minimize_adam(
        sphere_with_grad, np.zeros(2), lb=np.full(2, -1.0), ub=np.full(2, 0.5)
    )
    assert np.allclose(x, 0.5, atol=1e-3)
    assert np.all(x_tab <= 0.5)
    assert x_tab.shape == (2, n_iter)


def test_minimize_adam_noisy():
    rng = np.random.default_rng(1)

    def f(x_):
        return np.sum(x_**2) + 0.01 * rng.normal(), 2 * x_ + 0.01 * rng.normal(
            size=x_.shape
        )

    x, _, _, _, _ = minimize_adam(f, np.array([2.0, -2.0]))
    assert np.all(np.abs(x) < 0.1)


def test_adam_optimizer():
    optimizer = AdamOptimizer(max_iter=5000)
    x, f = optimizer.optimize(sphere_with_grad, np.array([[-2.0, 3.0]]))
    assert np.allclose(x, 1.0, atol=0.1)
    assert f < 1e-2
    assert optimizer.last_trace[0].shape[0] == 2


def test_adam_optimizer_no_finite_value():
    optimizer = AdamOptimizer(max_iter=50, use_early_stopping=False)
    with pytest.raises(OptimizationError):
        optimizer.optimize(
            lambda x_: (np.nan, np.zeros_like(x_)), np.zeros(2)
        )


@pytest.mark.parametrize("method", ["L-BFGS-B", "Nelder-Mead"])
def test_scipy_optimizer(method):
    optimizer = ScipyOptimizer(method=method, tol=1e-10)
    x, f = optimizer.optimize(sphere, np.zeros(3))
    assert np.allclose(x, 1.0, atol=1e-4)
    assert f < 1e-8


def test_scipy_optimizer_gradient_and_bounds():
    optimizer = ScipyOptimizer(jac=True)
    x, f = optimizer.optimize(
        sphere_with_grad,
        np.zeros(2),
        bounds=(np.full(2, -1.0), np.full(2, 0.5)),
        n_restarts=3,
    )
    assert np.allclose(x, 0.5)
    assert np.isclose(f, 0.5)


def test_scipy_optimizer_no_finite_value():
    optimizer = ScipyOptimizer()
    with pytest.raises(OptimizationError):
        optimizer.optimize(lambda x_: np.nan, np.zeros(2))


def test_cmaes_optimizer():
    optimizer = CMAESOptimizer(sigma0=0.5, noise_handling=False)
    x, f = optimizer.optimize(
        sphere, np.zeros(2), bounds=(np.full(2, -3.0), np.full(2, 3.0))
    )
    assert np.allclose(x, 1.0, atol=1e-3)
    assert f < 1e-6


def test_cmaes_optimizer_one_dimension():
    optimizer = CMAESOptimizer(tol_fun=1e-10)
    x, f = optimizer.optimize(sphere, np.zeros(1))
    assert x.shape == (1,)
    assert np.isclose(x[0], 1.0, atol=1e-4)


def test_starting_points_within_bounds():
    init = np.zeros((1, 2))
    starts = Optimizer._starting_points(
        init, (np.full(2, -1.0), np.full(2, 2.0)), 10
    )
    assert starts.shape == (10, 2)
    assert np.all(starts[0] == 0)
    assert np.all((starts >= -1) & (starts <= 2))


def test_starting_points_unbounded():
    init = np.array([[5.0, 5.0], [1.0, 1.0]])
    starts = Optimizer._starting_points(init, None, 4)
    assert starts.shape == (4, 2)
    assert np.all(starts[:2] == init)
    assert np.all(
        Optimizer._starting_points(init, None, 1) == init
    )
