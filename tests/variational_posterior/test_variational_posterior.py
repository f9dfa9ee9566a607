import matplotlib
import numpy as np
import pytest
import scipy.stats as sps

from bqvi.parameter_transformer import ParameterTransformer
from bqvi.variational_posterior import VariationalPosterior

matplotlib.use("Agg")


def get_gaussian_vp(D=2, mu=None, sigma=1.0):
    vp = VariationalPosterior(D, K=1)
    vp.mu = np.zeros((D, 1)) if mu is None else np.reshape(mu, (D, 1))
    vp.sigma = np.full((1, 1), sigma)
    vp.lambd = np.ones((D, 1))
    return vp


def test_init_weights_normalized():
    vp = VariationalPosterior(3, K=4)
    assert vp.mu.shape == (3, 4)
    assert np.isclose(np.sum(vp.w), 1)
    assert np.all(vp.w >= 0)
    assert np.all(vp.lambd > 0)


def test_init_K_zero():
    with pytest.raises(ValueError):
        VariationalPosterior(2, K=0)


def test_init_x0_recycled():
    x0 = np.array([[1.0, 2.0], [3.0, 4.0]])
    vp = VariationalPosterior(2, K=3, x0=x0)
    assert np.allclose(vp.mu[:, 2], [1.0, 2.0], atol=1e-4)


def test_pdf_gaussian():
    vp = get_gaussian_vp(D=2, mu=[1.0, -1.0], sigma=2.0)
    x = np.array([[0.5, 0.5], [1.0, -1.0]])
    expected = sps.multivariate_normal.pdf(
        x, mean=[1.0, -1.0], cov=4 * np.eye(2)
    )
    assert np.allclose(vp.pdf(x).ravel(), expected)
    assert np.allclose(vp.log_pdf(x).ravel(), np.log(expected))


def test_pdf_gradient():
    vp = VariationalPosterior(2, K=3)
    vp.sigma = np.array([[0.5, 1.0, 1.5]])
    x = np.array([[0.2, -0.3]])
    _, dy = vp.log_pdf(x, orig_flag=False, grad_flag=True)
    h = 1e-6
    numeric = np.zeros(2)
    for d in range(2):
        step = np.zeros((1, 2))
        step[0, d] = h
        numeric[d] = (
            vp.log_pdf(x + step, orig_flag=False)
            - vp.log_pdf(x - step, orig_flag=False)
        ).item() / (2 * h)
    assert np.allclose(dy.ravel(), numeric, rtol=1e-4)


def test_pdf_gradient_orig_space_not_available():
    vp = VariationalPosterior(2, K=1)
    with pytest.raises(NotImplementedError):
        vp.pdf(np.zeros((1, 2)), orig_flag=True, grad_flag=True)


def test_pdf_outside_bounds_is_zero():
    D = 1
    parameter_transformer = ParameterTransformer(
        D, np.zeros((1, D)), np.ones((1, D))
    )
    vp = VariationalPosterior(D, K=1, parameter_transformer=parameter_transformer)
    assert vp.pdf(np.array([[2.0]])).item() == 0
    assert vp.log_pdf(np.array([[-1.0]])).item() == -np.inf


def test_sample_shapes_and_bounds():
    D = 2
    parameter_transformer = ParameterTransformer(
        D, np.zeros((1, D)), np.ones((1, D))
    )
    vp = VariationalPosterior(D, K=2, parameter_transformer=parameter_transformer)
    vp.sigma = np.ones((1, 2))
    x, idx = vp.sample(500)
    assert x.shape == (500, D)
    assert idx.shape == (500,)
    assert np.all((x > 0) & (x < 1))


def test_sample_balanced_allocation():
    vp = VariationalPosterior(1, K=2)
    vp.w = np.array([[0.25, 0.75]])
    _, idx = vp.sample(100, balance_flag=True)
    assert np.sum(idx == 1) in (75, 76)


def test_get_set_parameters_roundtrip():
    vp = VariationalPosterior(2, K=3)
    vp.sigma = np.array([[0.5, 1.0, 2.0]])
    theta = vp.get_parameters()
    vp2 = VariationalPosterior(2, K=3)
    vp2.set_parameters(theta)
    assert np.allclose(vp2.mu, vp.mu)
    assert np.allclose(vp2.sigma, vp.sigma)
    assert np.allclose(vp2.w, vp.w)


def test_set_parameters_negative_not_raw():
    vp = VariationalPosterior(2, K=1)
    theta = vp.get_parameters(raw_flag=False)
    theta[-1] = -1
    with pytest.raises(ValueError):
        vp.set_parameters(theta, raw_flag=False)


def test_remove_component():
    vp = VariationalPosterior(2, K=3)
    vp.w = np.array([[0.2, 0.3, 0.5]])
    vp.remove_component(0)
    assert vp.K == 2
    assert np.allclose(vp.w, [[0.375, 0.625]])
    assert vp.mu.shape == (2, 2)


def test_remove_last_component():
    vp = VariationalPosterior(2, K=1)
    with pytest.raises(ValueError):
        vp.remove_component(0)


def test_moments_unconstrained_exact():
    vp = VariationalPosterior(2, K=2)
    vp.mu = np.array([[-1.0, 1.0], [0.0, 0.0]])
    vp.sigma = np.ones((1, 2))
    mean, cov = vp.moments(orig_flag=False, cov_flag=True)
    assert np.allclose(mean, 0)
    assert np.allclose(cov, np.diag([2.0, 1.0]))


def test_moments_orig_monte_carlo():
    vp = get_gaussian_vp(D=2, mu=[1.0, 2.0], sigma=0.5)
    mean = vp.moments(N=int(1e5))
    assert np.allclose(mean, [[1.0, 2.0]], atol=0.02)


def test_kl_div_self_is_zero():
    vp = VariationalPosterior(2, K=2)
    vp.sigma = np.ones((1, 2))
    assert np.all(vp.kl_div(vp2=vp, N=1000) == 0)


def test_kl_div_gaussians():
    vp1 = get_gaussian_vp(D=1, mu=[0.0], sigma=1.0)
    vp2 = get_gaussian_vp(D=1, mu=[1.0], sigma=1.0)
    kl = vp1.kl_div(vp2=vp2, N=int(1e5))
    assert np.allclose(kl, 0.5, atol=0.05)


def test_kl_div_no_arguments():
    vp = VariationalPosterior(2, K=1)
    with pytest.raises(ValueError):
        vp.kl_div()


def test_mode_gaussian():
    vp = get_gaussian_vp(D=2, mu=[0.5, -0.5], sigma=1.0)
    assert np.allclose(vp.mode(), [0.5, -0.5], atol=1e-3)


def test_mtv_identical():
    vp = get_gaussian_vp(D=2)
    mtv = vp.mtv(vp2=vp, N=2000)
    assert mtv.shape == (1, 2)
    assert np.all(mtv < 0.1)


def test_get_bounds_widen_only():
    vp = VariationalPosterior(2, K=2)
    options = {
        "tol_length": 1e-6,
        "tol_weight": 1e-2,
        "tol_con_loss": 0.01,
        "weight_penalty": 0.1,
    }
    X = np.random.uniform(-1, 1, size=(20, 2))
    theta_bnd = vp.get_bounds(X, options)
    theta_bnd2 = vp.get_bounds(X * 0.1, options)
    assert theta_bnd["lb"].size == vp.get_parameters().size
    assert np.all(theta_bnd2["lb"] <= theta_bnd["lb"])
    assert np.all(theta_bnd2["ub"] >= theta_bnd["ub"])
    assert theta_bnd["weight_threshold"] == max(1 / 8, 1e-2)


def test_plot():
    vp = VariationalPosterior(2, K=2)
    vp.sigma = np.ones((1, 2))
    fig = vp.plot(n_samples=1000)
    assert fig is not None


def test_str_and_repr():
    vp = VariationalPosterior(2, K=2)
    assert "VariationalPosterior" in str(vp)
    assert "VariationalPosterior" in repr(vp)
