import numpy as np

from bqvi.entropy import entlb, entmc
from bqvi.variational_posterior import VariationalPosterior


def get_vp(D, K, spread=1.0):
    vp = VariationalPosterior(D, K)
    vp.mu = spread * np.random.normal(size=(D, K))
    vp.sigma = np.random.uniform(0.5, 1.5, size=(1, K))
    vp.lambd = np.random.uniform(0.5, 1.5, size=(D, 1))
    w = np.random.uniform(0.2, 1.0, size=(1, K))
    vp.w = w / np.sum(w)
    vp.eta = np.log(vp.w)
    return vp


def exact_gaussian_entropy(vp):
    cov = np.diag((vp.sigma[0, 0] * vp.lambd.ravel()) ** 2)
    return 0.5 * np.linalg.slogdet(2 * np.pi * np.e * cov)[1]


def test_entlb_single_component_exact():
    vp = get_vp(3, 1)
    H, _ = entlb(vp)
    assert np.isclose(H, exact_gaussian_entropy(vp))


def test_entmc_single_component():
    vp = get_vp(2, 1)
    H, _ = entmc(vp, 2000)
    assert np.isclose(H, exact_gaussian_entropy(vp), atol=0.1)


def test_entlb_lower_than_entmc():
    vp = get_vp(2, 3, spread=3.0)
    H_lb, _ = entlb(vp, grad_flags=(False, False, False, False))
    H_mc, _ = entmc(vp, 5000, grad_flags=(False, False, False, False))
    assert H_lb <= H_mc + 0.05


def test_entlb_gradient_finite_difference():
    vp = get_vp(2, 3)
    theta = vp.get_parameters()
    _, dH = entlb(vp)
    assert dH.shape == theta.shape

    def H_at(theta):
        vp_h = get_vp(2, 3)
        vp_h.set_parameters(theta)
        return entlb(vp_h, grad_flags=(False, False, False, False))[0]

    h = 1e-6
    numeric = np.zeros_like(theta)
    for i in range(theta.size):
        step = np.zeros_like(theta)
        step[i] = h
        numeric[i] = (H_at(theta + step) - H_at(theta - step)) / (2 * h)
    assert np.allclose(dH, numeric, rtol=1e-4, atol=1e-6)


def test_entmc_gradient_shape():
    vp = get_vp(3, 2)
    _, dH = entmc(vp, 10)
    assert dH.shape == vp.get_parameters().shape
    assert np.all(np.isfinite(dH))
