from pathlib import Path
from types import SimpleNamespace

import numpy as np

import bqvi.inference
from bqvi.evaluation_ledger import EvaluationLedger
from bqvi.inference import (
    EventTag,
    IterationHistory,
    IterationRecord,
    OptimizationState,
    Options,
    WarmupController,
)
from bqvi.parameter_transformer import ParameterTransformer
from bqvi.variational_posterior import VariationalPosterior

CONFIG_PATH = Path(bqvi.inference.__file__).parent / "option_configs"


def load_options(D, user_options=None):
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


def create_history(elbo, lcb_max):
    history = IterationHistory()
    for i in range(len(elbo)):
        history.append(
            IterationRecord(
                iter=i,
                func_count=10 + 5 * i,
                cache_count=0,
                n_eff=10 + 5 * i,
                K=2,
                elbo=float(elbo[i]),
                elbo_sd=0.01,
                elcbo_impro=np.nan,
                skl=0.1,
                skl_true=np.nan,
                r_index=np.inf,
                n_gp=8,
                gp_noise_hpd=1e-5,
                lcb_max=float(lcb_max[i]),
                entropy_kind=None,
                warmup=True,
            )
        )
    return history


def stub_state(iteration, func_count, data_trim_list=None):
    return SimpleNamespace(
        iter=iteration,
        func_count=func_count,
        warmup=True,
        warmup_stable_count=0,
        data_trim_list=[] if data_trim_list is None else data_trim_list,
    )


def create_run(D=2):
    options = load_options(D)
    lb = np.full((1, D), -np.inf)
    ub = np.full((1, D), np.inf)
    plb = np.full((1, D), -3.0)
    pub = np.full((1, D), 3.0)
    parameter_transformer = ParameterTransformer(D, lb, ub, plb, pub)
    ledger = EvaluationLedger(
        lambda x: -0.5 * np.sum(x**2),
        D,
        parameter_transformer=parameter_transformer,
    )
    optim_state = OptimizationState(
        ledger, options, parameter_transformer, lb, ub, plb, pub
    )
    optim_state.iter = 5
    rng = np.random.default_rng(3)
    for x in rng.uniform(-0.3, 0.3, size=(12, D)):
        ledger(x)
    # Far below the mode
    ledger(np.full(D, 30.0))
    return options, optim_state, ledger


def test_check_no_longterm_improvement():
    controller = WarmupController(load_options(2), None)
    n = 8
    history = create_history(np.full(n, -3.0), np.full(n, -1.0))
    optim_state = stub_state(n, 50)
    assert controller.check(optim_state, history, -3.0, 0.01, -1.0)
    assert optim_state.warmup_stable_count == 1


def test_check_recent_trim_blocks():
    controller = WarmupController(load_options(2), None)
    n = 8
    history = create_history(np.full(n, -3.0), np.full(n, -1.0))
    optim_state = stub_state(n, 50, data_trim_list=[45])
    assert not controller.check(optim_state, history, -3.0, 0.01, -1.0)


def test_check_still_improving():
    controller = WarmupController(load_options(2), None)
    n = 8
    history = create_history(5.0 * np.arange(n), 5.0 * np.arange(n))
    optim_state = stub_state(n, 50)
    optim_state.warmup_stable_count = 5
    assert not controller.check(optim_state, history, 5.0 * n, 0.01, 5.0 * n)
    assert optim_state.warmup_stable_count == 0


def test_check_stable_elcbo():
    # Without the long-term criterion only the stable count can stop
    controller = WarmupController(
        load_options(2, {"warmup_no_impro_threshold": np.inf}), None
    )
    n = 8
    history = create_history(np.full(n, -3.0), np.full(n, -1.0))
    optim_state = stub_state(n, 50)
    optim_state.warmup_stable_count = 1
    assert not controller.check(optim_state, history, -3.0, 0.01, -1.0)
    assert optim_state.warmup_stable_count == 2
    assert controller.check(optim_state, history, -3.0, 0.01, -1.0)


def test_check_first_iteration():
    controller = WarmupController(load_options(2), None)
    optim_state = stub_state(0, 10)
    assert not controller.check(
        optim_state, IterationHistory(), -3.0, 0.01, -1.0
    )


def test_end_warmup():
    options, optim_state, ledger = create_run()
    controller = WarmupController(options, ledger)
    vp = VariationalPosterior(2, 2)
    vp.optimize_weights = False
    assert optim_state.warmup
    assert controller.end_warmup(optim_state, 10.0, vp)
    assert not optim_state.warmup
    assert optim_state.last_warmup == 5
    assert optim_state.events == [EventTag.END_WARMUP]
    assert optim_state.hyp_run_cov is None
    assert optim_state.recompute_var_post
    assert vp.optimize_weights
    # The point far below the mode is dropped
    assert ledger.N == 12


def test_end_warmup_false_alarm_then_end():
    options, optim_state, ledger = create_run()
    controller = WarmupController(options, ledger)
    assert not controller.end_warmup(optim_state, 500.0)
    assert optim_state.warmup
    assert optim_state.data_trim_list == [13]
    assert optim_state.events == [EventTag.TRIM_DATA]
    assert ledger.N == 12
    # Ends after one trim regardless of the reliability index
    assert controller.end_warmup(optim_state, 500.0)
    assert not optim_state.warmup


def test_trim_keeps_minimum_points():
    options, optim_state, ledger = create_run()
    controller = WarmupController(options, ledger)
    assert controller.trim_training_set(optim_state, 1e-12) == 3
    X, y = ledger.query()
    assert np.max(y) == ledger.y_max
    ledger.restore()
    assert ledger.N == 13


def test_warmup_end_is_one_way():
    options, optim_state, ledger = create_run()
    controller = WarmupController(options, ledger)
    assert controller.end_warmup(optim_state, 0.1)
    assert not optim_state.warmup
    n_train = ledger.N
    optim_state.events = []

    # Re-running the controller on the same history keeps the run stable
    n = 8
    history = create_history(np.full(n, -3.0), np.full(n, -1.0))
    optim_state.iter = n
    optim_state.warmup_stable_count = 4
    for _ in range(3):
        assert not controller.check(optim_state, history, -3.0, 0.01, -1.0)
        assert not controller.end_warmup(optim_state, 500.0)
    assert not optim_state.warmup
    assert optim_state.warmup_stable_count == 4
    assert optim_state.data_trim_list == []
    assert optim_state.events == []
    assert ledger.N == n_train


def test_check_idle_after_warmup():
    controller = WarmupController(load_options(2), None)
    n = 8
    history = create_history(np.full(n, -3.0), np.full(n, -1.0))
    optim_state = stub_state(n, 50)
    optim_state.warmup = False
    assert not controller.check(optim_state, history, -3.0, 0.01, -1.0)
    assert optim_state.warmup_stable_count == 0
