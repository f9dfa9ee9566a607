import time

from bqvi.timer import Timer


def test_timer_accumulates():
    timer = Timer()
    timer.start_timer("fun_time")
    time.sleep(0.01)
    timer.stop_timer("fun_time")
    first = timer.get_duration("fun_time")
    assert first >= 0.01
    timer.start_timer("fun_time")
    timer.stop_timer("fun_time")
    assert timer.get_duration("fun_time") >= first


def test_timer_restart_is_noop():
    timer = Timer()
    timer.start_timer("gp_train")
    time.sleep(0.01)
    timer.start_timer("gp_train")
    timer.stop_timer("gp_train")
    assert timer.get_duration("gp_train") >= 0.01


def test_timer_missing_key(caplog):
    timer = Timer()
    assert timer.get_duration("nope") is None
    timer.stop_timer("nope")
    assert "Timer start not found for key 'nope'." in caplog.text
    assert timer.durations() == {}


def test_timer_reset():
    timer = Timer()
    timer.start_timer("a")
    timer.stop_timer("a")
    timer.start_timer("b")
    assert set(timer.durations()) == {"a"}
    timer.reset()
    assert timer.durations() == {}
    timer.stop_timer("b")
    assert timer.durations() == {}
