import dataclasses

import numpy as np
import pytest

from bqvi.inference import EventTag, IterationHistory, IterationRecord


def make_record(iteration, **changes):
    values = dict(
        iter=iteration,
        func_count=10 + 5 * iteration,
        cache_count=0,
        n_eff=10 + 5 * iteration,
        K=2,
        elbo=-3.0 + 0.1 * iteration,
        elbo_sd=0.01,
        elcbo_impro=np.nan,
        skl=0.1,
        skl_true=np.nan,
        r_index=np.inf,
        n_gp=8,
        gp_noise_hpd=1e-5,
        lcb_max=-1.0,
        entropy_kind=None,
        warmup=True,
    )
    values.update(changes)
    return IterationRecord(**values)


def test_append_and_columns():
    history = IterationHistory()
    assert not history
    for i in range(3):
        history.append(make_record(i))
    assert len(history) == 3
    assert np.allclose(history["elbo"], [-3.0, -2.9, -2.8])
    assert np.all(history["func_count"] == [10, 15, 20])
    assert history[1].iter == 1
    assert [r.iter for r in history] == [0, 1, 2]


def test_append_wrong_iteration():
    history = IterationHistory()
    with pytest.raises(ValueError):
        history.append(make_record(1))


def test_append_wrong_type():
    history = IterationHistory()
    with pytest.raises(TypeError):
        history.append({"iter": 0})


def test_unknown_column():
    history = IterationHistory()
    history.append(make_record(0))
    with pytest.raises(KeyError):
        history["foo"]


def test_records_are_frozen():
    record = make_record(0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        record.stable = True


def test_mark_stable():
    history = IterationHistory()
    history.append(make_record(0))
    old = history[0]
    history.mark_stable(0)
    assert history[0].stable
    assert not old.stable
    assert history["stable"].dtype == bool


def test_object_columns():
    history = IterationHistory()
    vp = object()
    history.append(make_record(0, vp=vp, timing={"total": 1.0}))
    history.append(make_record(1))
    assert history["vp"][0] is vp
    assert history["vp"][1] is None
    assert history["timing"][0] == {"total": 1.0}


def test_action():
    record = make_record(
        0, events=(EventTag.START_WARMUP, EventTag.STABLE_GP_SAMPLING)
    )
    assert record.action == "start warm-up, stable GP sampling"
    assert make_record(1).action == ""


def test_str_and_repr():
    history = IterationHistory()
    history.append(make_record(0))
    assert "num. iterations = 1" in str(history)
    assert "elbo" in history.__repr__(full=True)
    assert "'vp'" not in history.__repr__(full=True)
