import logging
import math

import numpy as np

from bqvi.evaluation_ledger import EvaluationLedger
from bqvi.variational_posterior import VariationalPosterior

from .iteration_history import EventTag, IterationHistory
from .optimization_state import OptimizationState
from .options import Options

logger = logging.getLogger("BQVI")


def _with_current(iteration_history, key, value):
    """Column ``key`` of the history followed by the current value."""
    past = iteration_history[key] if iteration_history else np.zeros(0)
    return np.append(past.astype(float), float(value))


class WarmupController:
    """
    Decide when the warm-up stage ends.

    During warm-up the posterior has few components with fixed weights and
    the run behaves like a Bayesian optimization towards the mode. Warm-up
    ends once the ELCBO and the best values found stop improving. The end
    is one-way: once ``optim_state.warmup`` is ``False``, :py:meth:`check`
    returns ``False`` and :py:meth:`end_warmup` does nothing.

    Parameters
    ----------
    options : Options
        Run options.
    ledger : EvaluationLedger
        The evaluation ledger; trimming removes points from its training
        set.
    """

    def __init__(self, options: Options, ledger: EvaluationLedger):
        self.options = options
        self.ledger = ledger

    def check(
        self,
        optim_state: OptimizationState,
        iteration_history: IterationHistory,
        elbo: float,
        elbo_sd: float,
        lcb_max: float,
    ):
        """
        Whether the warm-up end conditions hold at the current iteration.

        The current iteration is not yet in ``iteration_history``; its
        ELBO, ELBO SD and ``lcb_max`` are passed explicitly. Updates
        ``optim_state.warmup_stable_count``.

        Returns
        -------
        stop_warmup : bool
        """
        if not optim_state.warmup:
            return False
        options = self.options
        iteration = optim_state.iter
        fun_evals_per_iter = options["fun_evals_per_iter"]
        stop_warmup_thresh = options["stop_warmup_thresh"] * fun_evals_per_iter
        tol_stable_warmup_iters = math.ceil(
            options["tol_stable_warmup"] / fun_evals_per_iter
        )

        # ELCBO of the first two iterations is unreliable
        elcbo = _with_current(
            iteration_history, "elbo", elbo
        ) - options["elcbo_impro_weight"] * _with_current(
            iteration_history, "elbo_sd", elbo_sd
        )
        if iteration >= 3:
            increase = elcbo[-1] - np.max(elcbo[2:-1])
            if increase < stop_warmup_thresh:
                optim_state.warmup_stable_count += 1
            else:
                optim_state.warmup_stable_count = 0
        stable_count_flag = (
            iteration > tol_stable_warmup_iters
            and optim_state.warmup_stable_count >= tol_stable_warmup_iters
        )

        # No substantial improvement of the best values in recent iters
        lcb_max_vec = _with_current(iteration_history, "lcb_max", lcb_max)
        if options["warmup_check_max"]:
            recent_past = max(1, iteration - (tol_stable_warmup_iters + 1))
            if recent_past < lcb_max_vec.size:
                impro_fcn = max(
                    0.0,
                    np.max(lcb_max_vec[recent_past:])
                    - np.max(lcb_max_vec[:recent_past]),
                )
            else:
                impro_fcn = 0.0
        else:
            impro_fcn = 0.0
        no_recent_improvement_flag = impro_fcn < stop_warmup_thresh

        # Alternatively, no improvement of the best value for a long time
        func_count = _with_current(
            iteration_history, "func_count", optim_state.func_count
        )
        max_thresh = np.max(lcb_max_vec) - options["tol_improvement"]
        idx_first = np.flatnonzero(lcb_max_vec > max_thresh)
        if idx_first.size > 0:
            no_longterm_improvement_flag = (
                optim_state.func_count - func_count[idx_first[0]]
                > options["warmup_no_impro_threshold"]
            )
        else:
            no_longterm_improvement_flag = False

        if len(optim_state.data_trim_list) > 0:
            last_data_trim = optim_state.data_trim_list[-1]
        else:
            last_data_trim = -np.inf
        no_recent_trim_flag = optim_state.func_count - last_data_trim >= 10

        return (
            (stable_count_flag and no_recent_improvement_flag)
            or no_longterm_improvement_flag
        ) and no_recent_trim_flag

    def end_warmup(
        self,
        optim_state: OptimizationState,
        r_index: float,
        vp: VariationalPosterior = None,
    ):
        """
        End warm-up, or trim the training set if the end looks like a false
        alarm (the solution is not yet reliable and no trim happened).

        Warm-up points far below the best value are removed from the
        training set in both cases, keeping at least ``D + 1`` points.

        Returns
        -------
        ended : bool
            Whether warm-up ended with this call.
        """
        if not optim_state.warmup:
            return False
        options = self.options
        n_trims = len(optim_state.data_trim_list)
        ended = r_index < options["stop_warmup_reliability"] or n_trims >= 1
        if ended:
            optim_state.warmup = False
            optim_state.last_warmup = optim_state.iter
            optim_state.last_successful_warmup = optim_state.iter
            optim_state.warmup_stable_count = 0
            optim_state.events.append(EventTag.END_WARMUP)
            threshold = options["warmup_keep_threshold"] * (n_trims + 1)
            # Samples of the warm-up stage do not describe the posterior
            optim_state.hyp_run_cov = None
            optim_state.skip_active_sampling = options[
                "skip_active_sampling_after_warmup"
            ]
            if vp is not None:
                vp.optimize_weights = options["variable_weights"]
        else:
            keep_threshold = options["warmup_keep_threshold_false_alarm"]
            if keep_threshold is None:
                keep_threshold = options["warmup_keep_threshold"]
            threshold = keep_threshold * (n_trims + 1)
            optim_state.data_trim_list.append(optim_state.func_count)
            optim_state.events.append(EventTag.TRIM_DATA)
            logger.debug(
                "Warm-up end rejected (reliability index %.3g); trimming "
                "the training set.",
                r_index,
            )

        self.trim_training_set(optim_state, threshold)
        optim_state.recompute_var_post = True
        return ended

    def trim_training_set(self, optim_state: OptimizationState, threshold):
        """
        Keep in the training set only the points whose value is within
        ``threshold`` of the best one (and at least ``D + 1`` points).
        """
        ledger = self.ledger
        n = ledger.Xn + 1
        y_orig = ledger.y_orig[:n, 0].copy()
        y_orig[~ledger.valid[:n]] = -np.inf
        y_max = np.max(y_orig)
        keep = (y_max - y_orig) < threshold
        n_keep_min = optim_state.D + 1
        if np.sum(keep) < n_keep_min:
            order = np.argsort(-y_orig, kind="stable")
            keep[order[: min(n_keep_min, n)]] = True
        ledger.trim(keep & ledger.X_flag[:n])
        return int(np.sum(ledger.X_flag[:n]))
