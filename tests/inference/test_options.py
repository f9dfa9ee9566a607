import copy

import numpy as np
import pytest

from bqvi.inference import Options

TEST_OPTIONS = """[BasicOptions]
# Level of display
foo = "iter"
# Some number
bar = 40
# Depends on the dimension
fooD = 2 * D
"""

MORE_OPTIONS = """[AdvancedOptions]
# Another option
baz = np.inf
"""


@pytest.fixture
def options_paths(tmp_path):
    basic = tmp_path / "test_options.ini"
    basic.write_text(TEST_OPTIONS)
    advanced = tmp_path / "more_options.ini"
    advanced.write_text(MORE_OPTIONS)
    return str(basic), str(advanced)


def test_options_no_user_options(options_paths):
    options = Options(options_paths[0], {"D": 2})
    assert options.get("bar") == 40
    assert len(options.user_option_names) == 0
    assert options.get("foo") == "iter"
    assert options.get("fooD") == 4
    assert options.descriptions["bar"] == "Some number"


def test_options_user_options(options_paths):
    options = Options(options_paths[0], {"D": 2}, {"foo": "iter2"})
    assert options.get("foo") == "iter2"
    assert options.get("fooD") == 4
    assert options.user_option_names == {"foo"}


def test_user_options_survive_later_files(options_paths):
    options = Options(options_paths[0], {"D": 2}, {"baz": 3})
    options.load_options_file(options_paths[1], {"D": 2})
    assert options["baz"] == 3


def test_load_options_file(options_paths):
    options = Options(options_paths[0], {"D": 2})
    options.load_options_file(options_paths[1], {"D": 2})
    assert options["baz"] == np.inf


def test_missing_options_file(tmp_path):
    with pytest.raises(ValueError):
        Options(str(tmp_path / "nope.ini"), {"D": 2})


def test_validate_option_names(options_paths):
    options = Options(options_paths[0], {"D": 2}, {"baz": 3})
    options.validate_option_names(list(options_paths))
    assert options.is_initialized


def test_validate_option_names_unknown(options_paths):
    options = Options(options_paths[0], {"D": 2}, {"bat": 3})
    with pytest.raises(ValueError) as execinfo:
        options.validate_option_names(list(options_paths))
    assert "The option bat does not exist." in execinfo.value.args[0]


def test_options_locked_after_validation(options_paths):
    options = Options(options_paths[0], {"D": 2})
    options.validate_option_names([options_paths[0]])
    with pytest.raises(AttributeError):
        options["bar"] = 80


def test_with_overrides(options_paths):
    options = Options(options_paths[0], {"D": 2})
    options.validate_option_names([options_paths[0]])
    other = options.with_overrides(bar=80)
    assert other["bar"] == 80
    assert options["bar"] == 40
    with pytest.raises(ValueError):
        options.with_overrides(bat=1)


def test_eval_callable(options_paths):
    options = Options(
        options_paths[0], {"D": 2}, {"bar": lambda K: 3 * K}
    )
    assert options.eval("bar", {"K": 2}) == 6
    assert options.eval("foo", {"K": 2}) == "iter"


def test_deepcopy_keeps_lock(options_paths):
    options = Options(options_paths[0], {"D": 2}, {"foo": "iter2"})
    options.validate_option_names([options_paths[0]])
    options_copy = copy.deepcopy(options)
    assert options_copy == options
    assert options_copy.is_initialized
    assert options_copy.user_option_names == {"foo"}


def test_str(options_paths):
    options = Options(options_paths[0], {"D": 2}, {"foo": "iter2"})
    assert "foo: iter2 (Level of display)" in str(options)
    options = Options(options_paths[0], {"D": 2})
    assert "None (use default options)" in str(options)


def test_update_defaults_noisy_target(tmp_path):
    path = tmp_path / "noise.ini"
    path.write_text(
        "[BasicOptions]\n"
        "specify_target_noise = False\n"
        "max_fun_evals = 100\n"
        "tol_stable_count = 60\n"
        "active_sample_gp_update = False\n"
        "active_sample_vp_update = False\n"
    )
    options = Options(
        str(path),
        {"D": 2},
        {"specify_target_noise": True, "tol_stable_count": 10},
    )
    options.update_defaults()
    assert options["max_fun_evals"] == 150
    assert options["tol_stable_count"] == 10
    assert options["active_sample_gp_update"]


def test_iteration_is_sorted(options_paths):
    options = Options(options_paths[0], {"D": 2})
    assert list(options) == ["bar", "foo", "fooD"]
    options.validate_option_names([options_paths[0]])
    with pytest.raises(AttributeError):
        del options["bar"]
