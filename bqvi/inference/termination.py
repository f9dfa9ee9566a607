import logging
import math

import numpy as np

from .iteration_history import EventTag, IterationHistory
from .optimization_state import OptimizationState
from .options import Options

logger = logging.getLogger("BQVI")


class TerminationEvaluator:
    """
    Stopping rules of the inference loop and the reliability index.

    Parameters
    ----------
    options : Options
        Run options.
    """

    def __init__(self, options: Options):
        self.options = options

    def tol_stable_iters(self, optim_state: OptimizationState):
        """
        Number of iterations in the stability window; shorter while the
        deterministic entropy is still in use.
        """
        if optim_state.entropy_switch:
            return int(self.options["tol_stable_entropy_iters"])
        return int(
            math.ceil(
                self.options["tol_stable_count"]
                / self.options["fun_evals_per_iter"]
            )
        )

    def force_entropy_switch(self, optim_state: OptimizationState):
        """
        Switch to the Monte Carlo entropy once ``entropy_force_switch`` of
        the budget is spent.

        Returns
        -------
        switched : bool
        """
        if optim_state.entropy_switch and (
            optim_state.func_count
            >= self.options["entropy_force_switch"]
            * self.options["max_fun_evals"]
        ):
            optim_state.entropy_switch = False
            optim_state.events.append(EventTag.ENTROPY_SWITCH)
            return True
        return False

    def compute_reliability_index(
        self,
        optim_state: OptimizationState,
        iteration_history: IterationHistory,
        elbo: float,
        elbo_sd: float,
        skl: float,
    ):
        """
        Reliability index of the current iteration and ELCBO improvement
        per function evaluation.

        The index averages the change of the ELBO and its SD (in units of
        ``tol_sd``, inflated by the estimated noise) and the symmetrized KL
        divergence between consecutive posteriors (in units of
        ``tol_skl``). Values below 1 mark a stable solution.

        Parameters
        ----------
        optim_state : OptimizationState
            State of the run; ``iter``, ``sn2_hpd`` and ``func_count`` are
            used.
        iteration_history : IterationHistory
            Records of the previous iterations (not the current one).
        elbo, elbo_sd, skl : float
            The values of the current iteration.

        Returns
        -------
        r_index : float
            The reliability index, ``inf`` for the first two iterations.
        elcbo_impro : float
            Slope of the ELCBO against the function count over the last
            ``ceil(tol_stable_iters / 2)`` iterations, ``nan`` for the
            first two iterations.
        """
        options = self.options
        iteration = optim_state.iter
        if iteration < 2 or len(iteration_history) < iteration:
            return np.inf, np.nan

        tol_sd = options["tol_sd"]
        sn = np.sqrt(optim_state.sn2_hpd)
        tol_sn = np.sqrt(sn / tol_sd) * tol_sd
        tol_sd = min(max(tol_sd, tol_sn), tol_sd * 10)

        r_index_vec = np.array(
            [
                np.abs(elbo - iteration_history["elbo"][iteration - 1])
                / tol_sd,
                elbo_sd / tol_sd,
                skl / options["tol_skl"],
            ]
        )

        # Average ELCBO improvement per evaluation in the past few iters
        idx0 = int(
            max(
                0,
                iteration
                - math.ceil(0.5 * self.tol_stable_iters(optim_state))
                + 1,
            )
        )
        xx = np.append(
            iteration_history["func_count"][idx0:iteration],
            optim_state.func_count,
        ).astype(float)
        yy = np.append(
            iteration_history["elbo"][idx0:iteration]
            - options["elcbo_impro_weight"]
            * iteration_history["elbo_sd"][idx0:iteration],
            elbo - options["elcbo_impro_weight"] * elbo_sd,
        ).astype(float)
        if xx.size < 2 or np.ptp(xx) == 0:
            elcbo_impro = 0.0
        else:
            elcbo_impro = np.polyfit(xx, yy, 1)[0]
        return float(np.mean(r_index_vec)), float(elcbo_impro)

    def check(
        self,
        optim_state: OptimizationState,
        iteration_history: IterationHistory,
        r_index: float,
        elcbo_impro: float,
    ):
        """
        Evaluate the stopping rules at the end of an iteration.

        The rules are checked in order: evaluation budget, iteration
        budget, then stability of the solution over the trailing window.
        A stable solution with the deterministic entropy still in use
        triggers the switch to the Monte Carlo entropy instead of stopping.
        ``min_fun_evals`` and ``min_iter`` block stopping for stability.
        The first stable iterate sets ``optim_state.stability_reached``.

        Parameters
        ----------
        optim_state : OptimizationState
            State of the run.
        iteration_history : IterationHistory
            Records of the previous iterations (not the current one).
        r_index, elcbo_impro : float
            Reliability index and ELCBO improvement of the current
            iteration.

        Returns
        -------
        is_finished : bool
            Whether the loop should stop.
        exit_code : int
            1 for a stable solution, 0 when a budget is exhausted.
        message : str
            The termination message (empty while running).
        stable : bool
            Whether the current iterate is stable.
        """
        options = self.options
        iteration = optim_state.iter

        if optim_state.func_count >= options["max_fun_evals"]:
            return (
                True,
                0,
                "Inference terminated: reached maximum number of function "
                "evaluations options.max_fun_evals.",
                False,
            )
        if iteration + 1 >= options["max_iter"]:
            return (
                True,
                0,
                "Inference terminated: reached maximum number of "
                "iterations options.max_iter.",
                False,
            )

        tol_stable_iters = self.tol_stable_iters(optim_state)
        stable = False
        if (
            iteration + 1 >= tol_stable_iters
            and r_index < 1
            and elcbo_impro < options["tol_improvement"]
        ):
            past = iteration_history["r_index"][
                max(0, iteration - tol_stable_iters + 1) : iteration
            ]
            # The current iterate is part of the window
            stable_count = np.sum(past < 1) + 1
            if stable_count >= tol_stable_iters - np.floor(
                tol_stable_iters * options["tol_stable_excpt_frac"]
            ):
                stable = True

        if not stable:
            return False, 0, "", False
        optim_state.stability_reached = True

        if optim_state.entropy_switch:
            optim_state.entropy_switch = False
            optim_state.events.append(EventTag.ENTROPY_SWITCH)
            return False, 0, "", False

        if (
            optim_state.func_count < options["min_fun_evals"]
            or iteration < options["min_iter"]
        ):
            return False, 0, "", True

        optim_state.events.append(EventTag.STABLE)
        return (
            True,
            1,
            "Inference terminated: variational solution stable for "
            "options.tol_stable_count fcn evaluations.",
            True,
        )
