import configparser
import copy
from collections.abc import MutableMapping
from math import ceil
from pathlib import Path
from textwrap import indent

import numpy as np

from bqvi import acquisition
from bqvi.formatting import full_repr


class Options(MutableMapping):
    """
    Run options of a ``BQVI`` instance.

    Default values are read from ``.ini`` option tables. Every value in a
    table is a Python expression evaluated with the evaluation parameters
    (e.g. the dimension ``D``), with ``np``, ``ceil`` and the acquisition
    function classes in scope. The comment line directly above an option is
    kept as its description.

    Parameters
    ----------
    default_options_path : str
        Path of the first option table to load.
    evaluation_parameters : dict, optional
        Names available when evaluating the option expressions.
    user_options : dict, optional
        Values that take precedence over every option table.

    Attributes
    ----------
    user_option_names : set
        Names of the options set by the user. Option tables loaded later
        never overwrite them.
    descriptions : dict
        One-line description of each option.
    is_initialized : bool
        Set by :py:meth:`validate_option_names`. Afterwards the options are
        read-only.
    """

    def __init__(
        self,
        default_options_path: str,
        evaluation_parameters: dict = None,
        user_options: dict = None,
    ):
        self.is_initialized = False
        self._values = {}
        self.descriptions = {}
        self.user_option_names = set()

        self.load_options_file(default_options_path, evaluation_parameters)

        if user_options is not None:
            self._values.update(user_options)
            self.user_option_names.update(user_options)

    def update_defaults(self):
        """Adjust defaults that depend on other options."""
        if not self.get("specify_target_noise"):
            return
        # Noisy targets need more evaluations and per-point updates
        noisy_defaults = {
            "max_fun_evals": ceil(self["max_fun_evals"] * 1.5),
            "tol_stable_count": ceil(self["tol_stable_count"] * 1.5),
            "active_sample_gp_update": True,
            "active_sample_vp_update": True,
        }
        for key, val in noisy_defaults.items():
            if key not in self.user_option_names:
                self[key] = val

    def load_options_file(
        self, options_path: str, evaluation_parameters: dict = None
    ):
        """
        Load an option table and evaluate its expressions.

        Options already set by the user are skipped.

        Parameters
        ----------
        options_path : str
            Path of the ``.ini`` file.
        evaluation_parameters : dict, optional
            Names available when evaluating the option expressions.
        """
        namespace = {"np": np, "ceil": ceil}
        for name in acquisition.__all__:
            namespace[name] = getattr(acquisition, name)
        namespace.update(evaluation_parameters or {})

        for key, expression, description in _read_config_file(options_path):
            if key in self.user_option_names:
                continue
            self[key] = eval(expression, namespace)
            self.descriptions[key] = description

    def validate_option_names(self, options_paths: list):
        """
        Check every option name against the given option tables and lock
        the options.

        Parameters
        ----------
        options_paths : list of str
            Option tables holding the allowed names.

        Raises
        ------
        ValueError
            If an option appears in none of the tables.
        """
        known = set()
        for options_path in options_paths:
            known.update(row[0] for row in _read_config_file(options_path))

        unknown = sorted(set(self._values) - known)
        if unknown:
            raise ValueError(f"The option {unknown[0]} does not exist.")

        self.is_initialized = True

    def __setitem__(self, key, val):
        if self.is_initialized:
            raise AttributeError(
                f"Options are read-only after initialization (tried to set "
                f"{key!r}). Pass the value in the options dict instead."
            )
        self._values[key] = val

    def __getitem__(self, key):
        return self._values[key]

    def __delitem__(self, key):
        if self.is_initialized:
            raise AttributeError("Options are read-only after initialization.")
        del self._values[key]

    def __iter__(self):
        return iter(sorted(self._values))

    def __len__(self):
        return len(self._values)

    def __deepcopy__(self, memo):
        result = self.__class__.__new__(self.__class__)
        memo[id(self)] = result
        for name, attr in vars(self).items():
            setattr(result, name, copy.deepcopy(attr, memo))
        return result

    def with_overrides(self, **overrides):
        """
        Return a deep copy with some options replaced. The copy keeps the
        lock state of this object (used for the final boost).
        """
        missing = [key for key in overrides if key not in self._values]
        if missing:
            raise ValueError(f"The option {missing[0]} does not exist.")
        result = copy.deepcopy(self)
        result._values.update(overrides)
        return result

    def eval(self, key: str, evaluation_parameters: dict):
        """
        Value of an option, calling it with ``evaluation_parameters`` as
        keyword arguments when it is callable.

        Parameters
        ----------
        key : str
            The name of the option.
        evaluation_parameters : dict
            Keyword arguments of the callable; ignored for plain values.

        Returns
        -------
        val : object
            The (evaluated) option value.
        """
        val = self.get(key)
        if callable(val):
            return val(**evaluation_parameters)
        return val

    def _describe(self, key):
        return f"{key}: {self[key]} ({self.descriptions.get(key)})"

    def __str__(self):
        if not self.user_option_names:
            body = (
                "None (use default options).\n"
                "View current defaults with `repr(options)`."
            )
        else:
            body = "\n".join(
                self._describe(key) for key in sorted(self.user_option_names)
            )
        return "User Options:\n" + indent(body, "    ")

    def __repr__(self, full=False, expand=False):
        if full:
            return full_repr(self, "Options", expand=expand)
        body = "\n".join(self._describe(key) for key in self)
        return "Options:\n" + indent(body, "    ")


def _read_config_file(options_path: str):
    """
    Parse an option table into a list of ``(key, expression, description)``.

    Keys keep their case; the comment line directly above a key is its
    description.
    """
    path = Path(options_path)
    if not path.is_file():
        raise ValueError(f"{path.resolve()} does not exist.")
    parser = configparser.ConfigParser(
        comment_prefixes=(), allow_no_value=True
    )
    parser.optionxform = str
    parser.read(path)

    rows = []
    description = ""
    for section in parser.sections():
        for key, expression in parser.items(section):
            if key.startswith("#"):
                description = key.lstrip("# ")
                continue
            rows.append((key, expression, description))
            description = ""

    if not rows:
        raise ValueError(f"The option file at {path} does not contain options.")
    return rows
