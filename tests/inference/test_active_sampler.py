from pathlib import Path

import numpy as np
import pytest

import bqvi.inference
from bqvi.evaluation_ledger import EvaluationLedger
from bqvi.inference import (
    ActiveSampler,
    IterationHistory,
    OptimizationState,
    Options,
    train_surrogate,
)
from bqvi.parameter_transformer import ParameterTransformer
from bqvi.surrogate import GPyRegSurrogate
from bqvi.variational_posterior import VariationalPosterior

CONFIG_PATH = Path(bqvi.inference.__file__).parent / "option_configs"
D = 2


def load_options(user_options=None):
    options = Options(
        str(CONFIG_PATH / "basic_options.ini"),
        evaluation_parameters={"D": D},
        user_options=user_options,
    )
    options.load_options_file(
        str(CONFIG_PATH / "advanced_options.ini"),
        evaluation_parameters={"D": D},
    )
    return options


def create_sampler(user_options=None):
    options = load_options(user_options)
    lb = np.full((1, D), -10.0)
    ub = np.full((1, D), 10.0)
    plb = np.full((1, D), -2.0)
    pub = np.full((1, D), 2.0)
    parameter_transformer = ParameterTransformer(D, lb, ub, plb, pub)
    ledger = EvaluationLedger(
        lambda x: -0.5 * np.sum(x**2),
        D,
        parameter_transformer=parameter_transformer,
    )
    optim_state = OptimizationState(
        ledger, options, parameter_transformer, lb, ub, plb, pub
    )
    optim_state.iter = 0
    sampler = ActiveSampler(options, ledger, parameter_transformer)
    return sampler, optim_state, ledger, parameter_transformer


def create_vp(parameter_transformer):
    vp = VariationalPosterior(D, 2, parameter_transformer=parameter_transformer)
    vp.mu = np.array([[-0.1, 0.1], [0.0, 0.0]])
    vp.sigma = np.full((1, 2), 0.3)
    return vp


def test_init_acquisition_functions():
    sampler, _, _, _ = create_sampler({"search_acq_fcn": "vanilla"})
    assert len(sampler.acq_fcns) == 1
    assert type(sampler.acq_fcns[0]).__name__ == "VanillaAcquisition"


def test_init_unknown_design():
    with pytest.raises(ValueError):
        create_sampler({"init_design": "sobol"})


def test_initial_design_with_cache():
    sampler, optim_state, ledger, _ = create_sampler()
    optim_state.cache_x_orig = np.array([[0.5, 0.5], [1.0, -1.0]])
    optim_state.cache_y_orig = np.array([-0.25, np.nan])
    surrogate, vp = sampler.sample(optim_state, 5)
    assert surrogate is None and vp is None
    assert ledger.cache_count == 1
    assert ledger.func_count == 4
    assert ledger.N == 5
    assert optim_state.cache_x_orig.shape == (0, D)
    assert np.allclose(ledger.X_orig[:2], [[0.5, 0.5], [1.0, -1.0]])
    # Random points of the plausible box
    assert np.all(np.abs(ledger.X_orig[2:5]) <= 2.0 + 1e-9)


def test_initial_design_narrow():
    sampler, optim_state, ledger, _ = create_sampler({"init_design": "narrow"})
    optim_state.cache_x_orig = np.array([[1.0, 1.0]])
    optim_state.cache_y_orig = np.array([np.nan])
    sampler.sample(optim_state, 10)
    assert ledger.func_count == 10
    assert np.all(np.abs(ledger.X_orig[:10] - 1.0) < 0.5)


def test_initial_design_budget():
    sampler, optim_state, ledger, _ = create_sampler({"max_fun_evals": 3})
    sampler.sample(optim_state, 10)
    assert ledger.func_count == 3
    assert sampler.timer.get_duration("fun_time") is not None


def test_search_points():
    sampler, optim_state, ledger, parameter_transformer = create_sampler()
    sampler.sample(optim_state, 10)
    vp = create_vp(parameter_transformer)
    X_search, idx_cache = sampler._search_points(200, optim_state, vp)
    assert X_search.shape == (200, D)
    assert np.all(np.isnan(idx_cache))
    assert np.all(X_search >= optim_state.lb_search)
    assert np.all(X_search <= optim_state.ub_search)


def test_search_points_from_cache():
    sampler, optim_state, ledger, parameter_transformer = create_sampler()
    sampler.sample(optim_state, 10)
    optim_state.cache_x_orig = np.random.uniform(-1, 1, size=(500, D))
    optim_state.cache_y_orig = np.full(500, np.nan)
    vp = create_vp(parameter_transformer)
    X_search, idx_cache = sampler._search_points(200, optim_state, vp)
    assert X_search.shape == (200, D)
    assert np.sum(np.isfinite(idx_cache)) == 100
    idx = idx_cache[0].astype(int)
    assert np.allclose(
        X_search[0], parameter_transformer(optim_state.cache_x_orig[idx])
    )


def test_search_points_fractions_too_large():
    sampler, optim_state, _, parameter_transformer = create_sampler(
        {"heavy_tail_search_frac": 0.8, "mvn_search_frac": 0.8}
    )
    sampler.sample(optim_state, 10)
    with pytest.raises(ValueError):
        sampler._search_points(
            100, optim_state, create_vp(parameter_transformer)
        )


def test_expand_search_bounds():
    sampler, optim_state, _, _ = create_sampler()
    lb_search = optim_state.lb_search.copy()
    ub_search = optim_state.ub_search.copy()
    x_new = np.array([[lb_search[0, 0] + 1e-6, 0.0]])
    sampler._expand_search_bounds(optim_state, x_new)
    assert optim_state.lb_search[0, 0] < lb_search[0, 0]
    assert optim_state.lb_search[0, 0] >= optim_state.lb_tran[0, 0]
    assert optim_state.lb_search[0, 1] == lb_search[0, 1]
    assert np.all(optim_state.ub_search == ub_search)


@pytest.mark.parametrize("search_optimizer", ["none", "cmaes"])
def test_active_search(search_optimizer):
    sampler, optim_state, ledger, parameter_transformer = create_sampler(
        {
            "ns_search": 256,
            "search_optimizer": search_optimizer,
            "search_max_fun_evals": 100,
        }
    )
    sampler.sample(optim_state, 10)
    options = sampler.options
    surrogate, _, _, hyp_dict = train_surrogate(
        GPyRegSurrogate(D), {}, optim_state, ledger, IterationHistory(), options
    )
    vp = create_vp(parameter_transformer)
    optim_state.iter = 1
    surrogate, vp_new = sampler.sample(
        optim_state, 3, surrogate, vp, IterationHistory(), hyp_dict
    )
    assert vp_new is vp
    assert ledger.func_count == 13
    # The surrogate knows every point but the last of the batch
    assert surrogate.X.shape == (12, D)
    assert np.all(np.isfinite(ledger.y[:13]))


def test_active_search_budget():
    sampler, optim_state, ledger, parameter_transformer = create_sampler(
        {"ns_search": 128, "search_optimizer": "none", "max_fun_evals": 11}
    )
    sampler.sample(optim_state, 10)
    surrogate, _, _, hyp_dict = train_surrogate(
        GPyRegSurrogate(D),
        {},
        optim_state,
        ledger,
        IterationHistory(),
        sampler.options,
    )
    sampler.sample(
        optim_state,
        5,
        surrogate,
        create_vp(parameter_transformer),
        IterationHistory(),
        hyp_dict,
    )
    assert ledger.func_count == 11
