import numpy as np
import pytest

from bqvi.surrogate import GPyRegSurrogate, MeanFunctionKind
from bqvi.variational_posterior import VariationalPosterior

D = 2
options = {
    "hpd_frac": 0.8,
    "tol_gp_noise": np.sqrt(1e-5),
    "noise_size": None,
    "upper_gp_length_factor": 0,
    "gp_quadratic_mean_bound": True,
    "tol_sd": 0.1,
    "gp_length_prior_mean": np.sqrt(D / 6),
    "gp_length_prior_std": 0.5 * np.log(1e3),
}
train_options = {
    "thin": 5,
    "init_method": "rand",
    "tol_opt": 1e-5,
    "tol_opt_mcmc": 1e-2,
    "widths": None,
    "sampler": "slicesample",
    "burn": 10,
    "init_N": 64,
    "opts_N": 2,
}


def training_set(N=30, seed=11):
    rng = np.random.default_rng(seed)
    X = rng.uniform(-2, 2, size=(N, D))
    y = -0.5 * np.sum(X**2, axis=1, keepdims=True)
    return X, y


def fitted_surrogate(n_samples=0, mean_kind="negquad"):
    X, y = training_set()
    surrogate = GPyRegSurrogate(D)
    hyp0, bounds, priors = surrogate.hyperparameter_setup(
        X, y, mean_kind, options, -np.ones((1, D)), np.ones((1, D))
    )
    surrogate.fit(
        X,
        y,
        mean_kind=mean_kind,
        priors=priors,
        n_samples=n_samples,
        hyp0=hyp0,
        bounds=bounds,
        train_options=train_options,
    )
    return surrogate


@pytest.mark.parametrize(
    "value, kind",
    [
        ("zero", MeanFunctionKind.ZERO),
        ("const", MeanFunctionKind.CONSTANT),
        ("negquad", MeanFunctionKind.NEGATIVE_QUADRATIC),
        (MeanFunctionKind.ZERO, MeanFunctionKind.ZERO),
    ],
)
def test_mean_function_kind_from_option(value, kind):
    assert MeanFunctionKind.from_option(value) == kind


def test_mean_function_kind_unknown():
    with pytest.raises(ValueError):
        MeanFunctionKind.from_option("linear")


def test_unfitted_has_no_samples():
    surrogate = GPyRegSurrogate(D)
    assert surrogate.n_samples == 0


def test_hyperparameter_setup():
    X, y = training_set()
    surrogate = GPyRegSurrogate(D)
    hyp0, bounds, priors = surrogate.hyperparameter_setup(
        X, y, MeanFunctionKind.NEGATIVE_QUADRATIC, options,
        -np.ones((1, D)), np.ones((1, D)),
    )
    # Length scales, output scale, noise, constant, centre, scales
    assert hyp0.size == 3 * D + 3
    assert np.isclose(hyp0[D + 1], np.log(options["tol_gp_noise"]))
    assert bounds["noise_log_scale"][0] == np.log(options["tol_gp_noise"])
    assert priors["noise_log_scale"][0] == "student_t"
    assert priors["covariance_log_lengthscale"][0] == "student_t"
    assert surrogate.mean_kind == MeanFunctionKind.NEGATIVE_QUADRATIC


def test_fit_optimization_predicts_training_data():
    surrogate = fitted_surrogate(n_samples=0)
    X, y = training_set()
    assert surrogate.n_samples == 1
    f_mu, f_s2 = surrogate.predict(X)
    assert f_mu.shape == (X.shape[0], 1)
    assert np.all(f_s2 >= 0)
    assert np.allclose(f_mu, y, atol=0.05)


def test_fit_sampling():
    surrogate = fitted_surrogate(n_samples=4)
    assert surrogate.n_samples == 4
    assert surrogate.hyp_full is not None
    assert surrogate.hyperparameters().shape[0] == 4


def test_update_adds_point():
    surrogate = fitted_surrogate()
    N = surrogate.X.shape[0]
    surrogate.update(np.array([0.1, 0.2]), -0.025)
    assert surrogate.X.shape[0] == N + 1
    f_mu, _ = surrogate.predict(np.array([[0.1, 0.2]]))
    assert np.isclose(f_mu.item(), -0.025, atol=0.01)


def test_refresh_with_subset():
    surrogate = fitted_surrogate()
    X, y = training_set()
    surrogate.refresh(X[:10], y[:10])
    assert surrogate.X.shape[0] == 10
    assert surrogate.n_samples == 1


def test_lcb_max_below_max_observation():
    surrogate = fitted_surrogate()
    _, y = training_set()
    assert surrogate.lcb_max() <= np.max(y) + 1e-6


def test_noise_variance_hpd_small():
    surrogate = fitted_surrogate()
    sn2 = surrogate.noise_variance_hpd()
    assert 0 < sn2 < 1e-2


def test_copy_is_independent():
    surrogate = fitted_surrogate()
    clone = surrogate.copy()
    clone.update(np.array([0.5, 0.5]), -0.25)
    assert clone.X.shape[0] == surrogate.X.shape[0] + 1


def test_expected_log_joint_constant_mean():
    surrogate = fitted_surrogate(mean_kind="const")
    vp = VariationalPosterior(D, 2)
    vp.sigma = np.full((1, 2), 0.5)
    G, dG, varG, var_ss, _, _ = surrogate.expected_log_joint(
        vp, True, compute_var=True
    )
    assert np.isfinite(G)
    assert dG.shape == vp.get_parameters().shape
    assert varG > 0
    assert var_ss == 0
