import numpy as np
import pytest

from bqvi.inference.elbo import (
    neg_elcbo,
    soft_bound_loss,
    vp_bound_loss,
    weight_penalty,
)
from bqvi.surrogate import GPyRegSurrogate, MeanFunctionKind
from bqvi.variational_posterior import VariationalPosterior


def create_surrogate(D=2, N=20, seed=3):
    rng = np.random.default_rng(seed)
    X = rng.uniform(-2, 2, size=(N, D))
    y = -0.5 * np.sum(X**2, axis=1, keepdims=True)
    surrogate = GPyRegSurrogate(D)
    surrogate._new_gp(MeanFunctionKind.NEGATIVE_QUADRATIC)
    # log ell, log sf, log sn, m0, xm, log omega
    hyp = np.concatenate(
        [np.zeros(D), [0.5], [np.log(1e-3)], [0.0], np.zeros(D), np.zeros(D)]
    )
    surrogate.gp.update(X_new=X, y_new=y, hyp=hyp.reshape(1, -1))
    return surrogate


def create_vp(D=2, K=2):
    vp = VariationalPosterior(D, K)
    vp.mu = np.random.uniform(-1, 1, size=(D, K))
    vp.sigma = np.random.uniform(0.3, 0.8, size=(1, K))
    vp.lambd = np.random.uniform(0.7, 1.3, size=(D, 1))
    w = np.random.uniform(0.3, 1.0, size=(1, K))
    vp.w = w / np.sum(w)
    return vp


def test_soft_bound_loss():
    D = 3
    x1 = np.zeros((D,))
    slb = np.full((D,), -10.0)
    sub = np.full((D,), 10.0)

    assert np.isclose(soft_bound_loss(x1, slb, sub), 0.0)
    L, dL = soft_bound_loss(x1, slb, sub, compute_grad=True)
    assert np.isclose(L, 0.0)
    assert np.allclose(dL, 0.0)

    x2 = np.array([15.0, -20.0, 0.0])
    assert np.isclose(soft_bound_loss(x2, slb, sub), 156250.0)
    L, dL = soft_bound_loss(x2, slb, sub, compute_grad=True)
    assert np.isclose(L, 156250.0)
    assert np.allclose(dL, [12500.0, -25000.0, 0.0])


def test_vp_bound_loss_gradient():
    vp = create_vp()
    theta = vp.get_parameters()
    # Means, combined log scales and weight logits
    n_ext = 2 * vp.D * vp.K + vp.K
    theta_bnd = {"lb": np.full(n_ext, -0.5), "ub": np.full(n_ext, 0.5)}
    _, dL = vp_bound_loss(vp, theta, theta_bnd, tol_con=0.1)
    h = 1e-6
    numeric = np.zeros_like(theta)
    for i in range(theta.size):
        step = np.zeros_like(theta)
        step[i] = h
        numeric[i] = (
            vp_bound_loss(vp, theta + step, theta_bnd, 0.1, False)
            - vp_bound_loss(vp, theta - step, theta_bnd, 0.1, False)
        ) / (2 * h)
    assert np.allclose(dL, numeric, rtol=1e-4, atol=1e-4)


def test_weight_penalty():
    vp = VariationalPosterior(2, K=3)
    vp.w = np.array([[0.01, 0.49, 0.5]])
    theta_bnd = {"weight_threshold": 0.1, "weight_penalty": 0.1}
    L, dL = weight_penalty(vp, theta_bnd)
    assert np.isclose(L, 0.1 * (0.01 + 0.1 + 0.1))
    assert dL.shape == (3,)
    assert np.isclose(np.sum(dL), 0.0)


def test_expected_log_joint_matches_monte_carlo():
    surrogate = create_surrogate()
    vp = create_vp()
    G, _, _, _, _, _ = surrogate.expected_log_joint(vp, False)
    x, _ = vp.sample(int(1e5), orig_flag=False)
    f_mu, _ = surrogate.predict(x)
    assert np.isclose(G, np.mean(f_mu), atol=0.02)


def test_neg_elcbo_is_minus_elbo():
    surrogate = create_surrogate()
    vp = create_vp()
    theta = vp.get_parameters()
    F, dF, G, H, varF = neg_elcbo(theta, surrogate, vp, compute_grad=False)
    assert dF is None
    assert varF == 0
    assert np.isclose(F, -G - H)


def test_neg_elcbo_variance_with_beta():
    surrogate = create_surrogate()
    vp = create_vp()
    theta = vp.get_parameters()
    F0, _, _, _, varF = neg_elcbo(
        theta, surrogate, vp, compute_grad=False, compute_var=True
    )
    F1, _, _, _, _ = neg_elcbo(
        theta, surrogate, vp, beta=3, compute_grad=False
    )
    assert varF > 0
    assert np.isclose(F1, F0 + 3 * np.sqrt(varF))


def test_neg_elcbo_gradient():
    surrogate = create_surrogate()
    vp = create_vp()
    theta = vp.get_parameters()
    _, dF, _, _, _ = neg_elcbo(theta, surrogate, vp)

    h = 1e-6
    numeric = np.zeros_like(theta)
    for i in range(theta.size):
        step = np.zeros_like(theta)
        step[i] = h
        F_plus = neg_elcbo(theta + step, surrogate, vp, compute_grad=False)[0]
        F_minus = neg_elcbo(theta - step, surrogate, vp, compute_grad=False)[0]
        numeric[i] = (F_plus - F_minus) / (2 * h)
    assert np.allclose(dF, numeric, rtol=1e-3, atol=1e-5)


def test_neg_elcbo_gradient_with_variance_not_supported():
    surrogate = create_surrogate()
    vp = create_vp()
    with pytest.raises(NotImplementedError):
        neg_elcbo(vp.get_parameters(), surrogate, vp, beta=1)


def test_neg_elcbo_separate_K():
    surrogate = create_surrogate()
    vp = create_vp(K=3)
    result = neg_elcbo(
        vp.get_parameters(),
        surrogate,
        vp,
        compute_grad=False,
        compute_var=True,
        separate_K=True,
    )
    assert len(result) == 11
    I_sk, J_sjk = result[-2:]
    assert I_sk.shape == (1, 3)
    assert J_sjk.shape == (1, 3, 3)
    assert np.isclose(result[2], np.sum(vp.w * I_sk))


def test_expected_log_joint_variance_matches_component_terms():
    surrogate = create_surrogate()
    vp = create_vp(K=3)
    _, _, varG, _, I_sk, J_sjk = surrogate.expected_log_joint(
        vp, False, compute_var=True, separate_K=True
    )
    assert J_sjk.dtype == float
    assert np.allclose(J_sjk[0], J_sjk[0].T)
    assert np.isscalar(varG) or np.size(varG) == 1
    assert np.isclose(float(varG), (vp.w @ J_sjk[0] @ vp.w.T).item())
