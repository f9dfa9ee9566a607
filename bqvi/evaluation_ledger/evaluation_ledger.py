import logging
from copy import deepcopy
from textwrap import indent

import numpy as np

from bqvi.formatting import full_repr
from bqvi.parameter_transformer import ParameterTransformer
from bqvi.timer import Timer


class EvaluationLedger:
    """
    Evaluate the target log-density and keep a record of every call.

    All points are stored both in the original and in the unconstrained
    space. Repeated queries of an identical point are merged into one entry
    (precision-weighted when the target reports its noise). Evaluations
    that raise or return a non-finite value are kept as *invalid* entries:
    they count against the budget but never enter the training set.

    Parameters
    ----------
    fun : callable
        The target log-density. Takes a 1D array in the original space and
        returns a scalar, or ``(value, sd)`` when
        ``uncertainty_handling_level == 2``.
    D : int
        The dimension of the parameter space.
    noise_flag : bool
        Whether the target is stochastic.
    uncertainty_handling_level : {0, 1, 2}
        0: none; 1: unknown noise level; 2: the target returns its noise SD.
    cache_size : int, optional
        The initial number of preallocated rows, default 500.
    parameter_transformer : ParameterTransformer, optional
        Maps stored points between the two spaces. ``None`` means identity.
    """

    def __init__(
        self,
        fun,
        D: int,
        noise_flag: bool = False,
        uncertainty_handling_level: int = 0,
        cache_size: int = 500,
        parameter_transformer: ParameterTransformer = None,
    ):
        self.fun = fun
        self.D = D
        self.noise_flag = noise_flag
        self.uncertainty_handling_level = uncertainty_handling_level
        self.parameter_transformer = parameter_transformer
        self.logger = logging.getLogger("BQVI")

        self.func_count = 0
        self.cache_count = 0
        self.invalid_count = 0
        self.Xn = -1  # Last filled row
        self.y_max = -np.inf
        self.total_fun_eval_time = 0.0

        self.X_orig = np.full((cache_size, D), np.nan)
        self.y_orig = np.full((cache_size, 1), np.nan)
        self.X = np.full((cache_size, D), np.nan)
        self.y = np.full((cache_size, 1), np.nan)
        self.S = np.full((cache_size, 1), np.nan) if noise_flag else None
        self.n_evals = np.zeros((cache_size, 1), dtype=int)
        self.fun_eval_time = np.full((cache_size, 1), np.nan)
        # Training mask, and validity of the stored value.
        self.X_flag = np.zeros(cache_size, dtype=bool)
        self.valid = np.zeros(cache_size, dtype=bool)

    @property
    def N(self):
        """Number of points currently in the training set."""
        return int(np.sum(self.X_flag))

    @property
    def n_eff(self):
        """Number of evaluations behind the training set (with repeats)."""
        return int(np.sum(self.n_evals[self.X_flag]))

    def __call__(self, x: np.ndarray):
        """
        Evaluate the target at ``x`` (unconstrained space) and record it.

        A noiseless target is not evaluated again at a point that already
        holds a valid value: the stored value is returned and no budget is
        spent.

        Parameters
        ----------
        x : np.ndarray
            The point, shape ``(D,)`` or ``(1, D)``.

        Returns
        -------
        f_val : float
            The log-density in the unconstrained space (including the
            log-Jacobian of the transform), ``nan`` if invalid.
        f_sd : float or None
            The noise SD of the evaluation.
        idx : int
            The row of the ledger holding the point.
        """
        x = self._as_row(x)
        x_orig = self._to_orig(x)

        if not self.noise_flag:
            idx = self._find_valid(x_orig)
            if idx is not None:
                self.logger.debug(
                    "Cache hit at %s; target not evaluated.", x_orig
                )
                return self.y[idx, 0], None, idx

        timer = Timer()
        timer.start_timer("fun_time")
        valid = True
        f_sd = None
        try:
            if self.noise_flag and self.uncertainty_handling_level == 2:
                f_val_orig, f_sd = self.fun(x_orig)
            else:
                f_val_orig = self.fun(x_orig)
                if self.noise_flag:
                    f_sd = 1.0
            f_val_orig = float(np.asarray(f_val_orig).item())
        except Exception as err:
            self.logger.warning(
                "Target evaluation failed at %s (%s: %s); "
                "the point is recorded as invalid.",
                x_orig,
                type(err).__name__,
                err,
            )
            f_val_orig = np.nan
            valid = False
        timer.stop_timer("fun_time")

        if valid and not np.isfinite(f_val_orig):
            self.logger.warning(
                "Target returned a non-finite value (%s) at %s; "
                "the point is recorded as invalid.",
                f_val_orig,
                x_orig,
            )
            valid = False
        if valid and self.noise_flag:
            try:
                f_sd = self._check_sd(f_sd)
            except ValueError as err:
                self.logger.warning("%s The point is recorded as invalid.", err)
                valid = False

        self.func_count += 1
        idx = self._store(
            x, f_val_orig, valid, f_sd, timer.get_duration("fun_time")
        )
        return self.y[idx, 0], f_sd, idx

    def add(
        self,
        x: np.ndarray,
        f_val_orig: float,
        f_sd: float = None,
        fun_eval_time=np.nan,
    ):
        """
        Add a value computed elsewhere (e.g. provided by the user), without
        spending budget.

        Parameters
        ----------
        x : np.ndarray
            The point in the unconstrained space.
        f_val_orig : float
            The log-density in the original space.
        f_sd : float, optional
            Its noise SD (defaults to 1 for noisy targets).
        fun_eval_time : float, optional
            How long the evaluation took, by default ``nan``.

        Returns
        -------
        f_val, f_sd, idx
            As for ``__call__``.

        Raises
        ------
        ValueError
            If the value is not a finite real scalar, or the SD is not
            positive and finite.
        """
        x = self._as_row(x)
        if not np.isscalar(f_val_orig) and np.size(f_val_orig) == 1:
            f_val_orig = np.asarray(f_val_orig).item()
        if not np.isscalar(f_val_orig) or not np.isfinite(f_val_orig):
            raise ValueError(
                "Cached log-density values must be finite real scalars "
                f"(got {f_val_orig})."
            )
        if self.noise_flag:
            f_sd = self._check_sd(1.0 if f_sd is None else f_sd)
        else:
            f_sd = None

        self.cache_count += 1
        idx = self._store(x, f_val_orig, True, f_sd, fun_eval_time)
        return self.y[idx, 0], f_sd, idx

    def record(
        self,
        x: np.ndarray,
        f_val_orig: float,
        valid: bool = True,
        f_sd: float = None,
    ):
        """
        Record an evaluation of the target made outside the ledger.

        The evaluation counts against the budget like a call to the ledger.
        A non-finite value is recorded as invalid.

        Returns
        -------
        func_count : int
            The number of evaluations recorded so far.
        """
        valid = bool(valid) and np.isfinite(f_val_orig)
        if valid and self.noise_flag:
            f_sd = self._check_sd(1.0 if f_sd is None else f_sd)
        self.func_count += 1
        self._store(x, f_val_orig, valid, f_sd)
        return self.func_count

    def _store(
        self,
        x: np.ndarray,
        f_val_orig: float,
        valid: bool = True,
        f_sd: float = None,
        fun_eval_time: float = np.nan,
    ):
        """
        Store one evaluation and return the row it went to.

        Duplicate points are merged into their existing row. An invalid
        value never overwrites a valid one.

        Parameters
        ----------
        x : np.ndarray
            The point in the unconstrained space, shape ``(D,)``.
        f_val_orig : float
            The log-density in the original space (ignored if invalid).
        valid : bool, optional
            Whether the value can be used for training, default ``True``.
        f_sd : float, optional
            The noise SD of the value.
        fun_eval_time : float, optional
            Duration of the evaluation.

        Returns
        -------
        idx : int
            The row holding the point.
        """
        x = self._as_row(x)
        used = slice(0, self.Xn + 1)
        matches = np.flatnonzero(np.all(self.X[used] == x, axis=1))

        if matches.size > 0:
            idx = matches[0]
            if valid:
                self._merge(idx, f_val_orig, f_sd, fun_eval_time)
            else:
                self.n_evals[idx] += 1
                self.invalid_count += 1
            return idx

        self.Xn += 1
        if self.Xn >= self.X.shape[0]:
            self._expand_arrays()
        idx = self.Xn
        self.X[idx] = x
        self.X_orig[idx] = self._to_orig(x)
        self.n_evals[idx] = 1
        if not np.isnan(fun_eval_time):
            self.fun_eval_time[idx] = fun_eval_time
            self.total_fun_eval_time += fun_eval_time

        if valid:
            self.y_orig[idx] = f_val_orig
            self.y[idx] = f_val_orig + self._log_jacobian(x)
            if self.noise_flag:
                self.S[idx] = f_sd
            self.valid[idx] = True
            self.X_flag[idx] = True
            self.y_max = max(self.y_max, self.y[idx, 0])
        else:
            self.invalid_count += 1
        return idx

    def query(self, mask: np.ndarray = None, return_noise: bool = False):
        """
        Return the training set (valid points still flagged for training).

        Parameters
        ----------
        mask : np.ndarray, optional
            Extra boolean mask over the used rows, combined with the
            training flag.
        return_noise : bool, optional
            Also return the noise SD column (``None`` for noiseless
            targets).

        Returns
        -------
        X : np.ndarray
            Training points in the unconstrained space, shape ``(N, D)``.
        y : np.ndarray
            Their log-densities, shape ``(N, 1)``.
        S : np.ndarray, optional
            Their noise SDs, if ``return_noise``.
        """
        keep = self.X_flag[: self.Xn + 1].copy()
        if mask is not None:
            keep &= np.asarray(mask, dtype=bool)[: self.Xn + 1]
        X = self.X[: self.Xn + 1][keep]
        y = self.y[: self.Xn + 1][keep]
        if return_noise:
            S = None if self.S is None else self.S[: self.Xn + 1][keep]
            return X, y, S
        return X, y

    def lookup(self, x_orig: np.ndarray):
        """
        Look up a previously evaluated point in the original space.

        Returns
        -------
        f_val_orig : float or None
            The stored value if the identical point has a valid entry,
            otherwise ``None``.
        """
        idx = self._find_valid(x_orig)
        if idx is None:
            return None
        return self.y_orig[idx, 0]

    def _find_valid(self, x_orig):
        """Row of the first valid entry at ``x_orig``, or ``None``."""
        x_orig = np.ravel(x_orig)
        used = slice(0, self.Xn + 1)
        hits = np.flatnonzero(
            np.all(self.X_orig[used] == x_orig, axis=1) & self.valid[used]
        )
        if hits.size == 0:
            return None
        return int(hits[0])

    def trim(self, keep: np.ndarray):
        """
        Drop points from the training set. ``keep`` is a boolean mask over
        the used rows; invalid rows stay excluded regardless.
        """
        keep = np.asarray(keep, dtype=bool)
        n = self.Xn + 1
        self.X_flag[:n] = keep[:n] & self.valid[:n]
        self._update_y_max()

    def restore(self):
        """Put every valid point back into the training set."""
        self.X_flag[: self.Xn + 1] = self.valid[: self.Xn + 1]
        self._update_y_max()

    def finalize(self):
        """
        Drop the unused preallocated rows.
        """
        n = self.Xn + 1
        self.X_orig = self.X_orig[:n]
        self.y_orig = self.y_orig[:n]
        self.X = self.X[:n]
        self.y = self.y[:n]
        if self.S is not None:
            self.S = self.S[:n]
        self.n_evals = self.n_evals[:n]
        self.fun_eval_time = self.fun_eval_time[:n]
        self.X_flag = self.X_flag[:n]
        self.valid = self.valid[:n]

    def _merge(self, idx, f_val_orig, f_sd, fun_eval_time):
        n = self.n_evals[idx, 0]
        if not self.valid[idx]:
            # Earlier evaluations at this point were invalid.
            self.y_orig[idx] = f_val_orig
            if self.noise_flag:
                self.S[idx] = f_sd
            self.valid[idx] = True
            self.X_flag[idx] = True
        elif f_sd is not None:
            tau_n = 1 / self.S[idx] ** 2
            tau_1 = 1 / f_sd**2
            self.y_orig[idx] = (
                tau_n * self.y_orig[idx] + tau_1 * f_val_orig
            ) / (tau_n + tau_1)
            self.S[idx] = 1 / np.sqrt(tau_n + tau_1)
        else:
            self.y_orig[idx] = (n * self.y_orig[idx] + f_val_orig) / (n + 1)

        self.y[idx] = self.y_orig[idx] + self._log_jacobian(self.X[idx])
        if not np.isnan(fun_eval_time):
            if np.isnan(self.fun_eval_time[idx, 0]):
                self.fun_eval_time[idx] = fun_eval_time
            else:
                self.fun_eval_time[idx] = (
                    n * self.fun_eval_time[idx] + fun_eval_time
                ) / (n + 1)
            self.total_fun_eval_time += fun_eval_time
        self.n_evals[idx] += 1
        self._update_y_max()

    def _update_y_max(self):
        flagged = self.X_flag[: self.Xn + 1]
        if np.any(flagged):
            self.y_max = float(np.max(self.y[: self.Xn + 1][flagged]))
        else:
            self.y_max = -np.inf

    def _expand_arrays(self, resize_amount: int = None):
        """
        Grow every per-point array, by 50% of the used rows by default.
        """
        if resize_amount is None:
            resize_amount = int(max(np.ceil(self.Xn / 2), 1))

        def grow(arr, fill):
            pad_shape = (resize_amount,) + arr.shape[1:]
            return np.concatenate(
                (arr, np.full(pad_shape, fill, dtype=arr.dtype)), axis=0
            )

        self.X_orig = grow(self.X_orig, np.nan)
        self.y_orig = grow(self.y_orig, np.nan)
        self.X = grow(self.X, np.nan)
        self.y = grow(self.y, np.nan)
        if self.S is not None:
            self.S = grow(self.S, np.nan)
        self.n_evals = grow(self.n_evals, 0)
        self.fun_eval_time = grow(self.fun_eval_time, np.nan)
        self.X_flag = grow(self.X_flag, False)
        self.valid = grow(self.valid, False)

    def _as_row(self, x):
        x = np.asarray(x, dtype=float)
        if x.size != self.D:
            raise ValueError(
                f"Expected a point with {self.D} coordinates, "
                f"got shape {x.shape}."
            )
        return x.reshape(self.D)

    def _to_orig(self, x):
        if self.parameter_transformer is None:
            return x.copy()
        return self.parameter_transformer.inverse(x)

    def _log_jacobian(self, x):
        if self.parameter_transformer is None:
            return 0.0
        return self.parameter_transformer.log_abs_det_jacobian(x)

    def _check_sd(self, f_sd):
        if (
            not np.isscalar(f_sd)
            or not np.isfinite(f_sd)
            or not np.isreal(f_sd)
            or f_sd <= 0.0
        ):
            raise ValueError(
                "The estimated SD returned by the target must be a finite, "
                f"positive real-valued scalar (returned SD: {f_sd})."
            )
        return float(f_sd)

    def __deepcopy__(self, memo):
        cls = self.__class__
        result = cls.__new__(cls)
        memo[id(self)] = result
        for k, v in self.__dict__.items():
            # The target and the logger are shared, not copied.
            if k in ("fun", "logger"):
                setattr(result, k, v)
            else:
                setattr(result, k, deepcopy(v, memo))
        return result

    def __str__(self):
        return "EvaluationLedger:" + indent(
            f"""
function = {self.fun},
dimension = {self.D},
noisy = {self.noise_flag},
num. evaluations = {self.func_count},
num. invalid = {self.invalid_count},
y max = {self.y_max},
fun. eval. time = {self.total_fun_eval_time}""",
            "    ",
        )

    def __repr__(self, arr_size_thresh=10):
        return full_repr(
            self,
            "EvaluationLedger",
            exclude=["logger"],
            arr_size_thresh=arr_size_thresh,
        )

    def _short_repr(self):
        return object.__repr__(self)
