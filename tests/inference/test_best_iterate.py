import numpy as np
import pytest

from bqvi.inference import (
    IterationHistory,
    IterationRecord,
    determine_best_iterate,
)


def create_history(elbo, elbo_sd=None, stable=None, r_index=None):
    n = len(elbo)
    elbo_sd = np.zeros(n) if elbo_sd is None else elbo_sd
    stable = np.full(n, False) if stable is None else stable
    r_index = np.full(n, np.inf) if r_index is None else r_index
    history = IterationHistory()
    for i in range(n):
        history.append(
            IterationRecord(
                iter=i,
                func_count=10 + 5 * i,
                cache_count=0,
                n_eff=10 + 5 * i,
                K=2,
                elbo=float(elbo[i]),
                elbo_sd=float(elbo_sd[i]),
                elcbo_impro=np.nan,
                skl=0.1,
                skl_true=np.nan,
                r_index=float(r_index[i]),
                n_gp=8,
                gp_noise_hpd=1e-5 * (i + 1),
                lcb_max=-1.0,
                entropy_kind=None,
                warmup=False,
                stable=bool(stable[i]),
            )
        )
    return history


def test_determine_best_last_stable():
    history = create_history(np.arange(3), stable=np.full(3, True))
    idx_best, sn2_hpd, was_stable = determine_best_iterate(history)
    assert idx_best == 2
    assert np.isclose(sn2_hpd, 3e-5)
    assert was_stable


def test_determine_best_last_stable_beats_better_elcbo():
    elbo = np.array([5.0, 0.0, 0.0])
    history = create_history(elbo, stable=np.array([False, False, True]))
    idx_best, _, _ = determine_best_iterate(history)
    assert idx_best == 2


def test_determine_best_elcbo_window():
    elbo = np.zeros(8)
    elbo_sd = np.full(8, 0.01)
    # Outside of the window of the last quarter of iterations
    elbo[2] = 5.0
    elbo[6] = 1.0
    elbo_sd[6] = 0.1
    history = create_history(elbo, elbo_sd)
    idx_best, sn2_hpd, was_stable = determine_best_iterate(history)
    assert idx_best == 6
    assert np.isclose(sn2_hpd, 7e-5)
    assert not was_stable


def test_determine_best_safe_sd():
    elbo = np.array([0.0, 0.0, 0.0, 1.0, 0.9])
    elbo_sd = np.array([0.0, 0.0, 0.0, 0.5, 0.0])
    stable = np.array([False, False, True, False, False])
    history = create_history(elbo, elbo_sd, stable)
    assert determine_best_iterate(history)[0] == 4
    assert determine_best_iterate(history, safe_sd=0)[0] == 3


def test_determine_best_from_last_stable():
    elbo = np.array([9.0, 0.0, 0.0, 1.0, 0.0, 0.5])
    stable = np.array([False, True, False, False, False, False])
    history = create_history(elbo, stable=stable)
    idx_best, _, was_stable = determine_best_iterate(history)
    assert idx_best == 3
    assert not was_stable


def test_determine_best_ignores_nan_elbo():
    elbo = np.array([0.0, 0.0, 0.0, np.nan])
    history = create_history(elbo, stable=np.array([False, False, True, False]))
    idx_best, _, was_stable = determine_best_iterate(history)
    assert idx_best == 2
    assert was_stable


def test_determine_best_rank_criterion_elbo():
    n_iterations = 300
    history = create_history(
        np.arange(n_iterations), r_index=np.arange(n_iterations)
    )
    idx_best, _, _ = determine_best_iterate(history, rank_criterion=True)
    assert idx_best == n_iterations - 1


def test_determine_best_rank_criterion_max_idx():
    n_iterations = 300
    history = create_history(
        np.arange(n_iterations), r_index=np.arange(n_iterations)
    )
    idx_best, sn2_hpd, _ = determine_best_iterate(
        history, max_idx=100, rank_criterion=True
    )
    assert idx_best == 100
    assert np.isclose(sn2_hpd, 101e-5)


def test_determine_best_rank_criterion_prefers_stable():
    n_iterations = 20
    stable = np.full(n_iterations, False)
    stable[10] = True
    elbo = 0.01 * np.arange(n_iterations)
    elbo[10] = 1.0
    history = create_history(
        elbo, stable=stable, r_index=np.arange(n_iterations)
    )
    idx_best, _, was_stable = determine_best_iterate(
        history, rank_criterion=True
    )
    assert idx_best == 10
    assert was_stable


def test_determine_best_empty_history():
    with pytest.raises(ValueError):
        determine_best_iterate(IterationHistory())
