import sys
from abc import ABC, abstractmethod
from enum import Enum

import numpy as np

from bqvi.evaluation_ledger import EvaluationLedger
from bqvi.surrogate import SurrogateModel
from bqvi.variational_posterior import VariationalPosterior


class AcquisitionKind(Enum):
    """Built-in acquisition functions, by option name."""

    PROSPECTIVE = "prospective"
    LOG_PROSPECTIVE = "log_prospective"
    VANILLA = "vanilla"


class AcquisitionFunction(ABC):
    """
    Abstract acquisition function for active sampling.

    Subclasses implement ``_compute_acquisition_function``; lower values
    mark more promising points.
    """

    # Whether the function value is in log space
    log_flag = False

    def __call__(
        self,
        Xs: np.ndarray,
        surrogate: SurrogateModel,
        vp: VariationalPosterior,
        ledger: EvaluationLedger,
        optim_state,
    ):
        """
        Calculate the acquisition function for the given inputs.

        Parameters
        ----------
        Xs : np.ndarray
            Input points, in the unconstrained space.
        surrogate : SurrogateModel
            The current surrogate of the log-density.
        vp : VariationalPosterior
            The current variational posterior.
        ledger : EvaluationLedger
            The evaluation ledger of the run.
        optim_state : OptimizationState
            The state of the run (``variance_regularized_acq_fcn``,
            ``tol_gp_var``, ``lb_eps_orig``, ``ub_eps_orig``).

        Returns
        -------
        acq : np.ndarray
            The acquisition function, shape ``(N,)``.
        """
        Xs = np.atleast_2d(Xs)

        # Mean and variance for each hyperparameter sample
        f_mu, f_s2 = surrogate.predict(Xs, separate_samples=True)
        Ns = f_mu.shape[1]
        f_bar = np.mean(f_mu, axis=1, keepdims=True)
        var_bar = np.mean(f_s2, axis=1, keepdims=True)
        if Ns > 1:
            var_f = np.sum((f_mu - f_bar) ** 2, axis=1, keepdims=True) / (
                Ns - 1
            )
        else:
            var_f = 0
        f_bar = np.ravel(f_bar)
        var_tot = np.ravel(var_f + var_bar)

        acq = np.ravel(
            self._compute_acquisition_function(
                Xs, vp, ledger, f_bar, var_tot
            )
        ).astype(float)

        # Penalize points where the surrogate uncertainty is below threshold
        if optim_state.variance_regularized_acq_fcn:
            tol_var = optim_state.tol_gp_var
            idx_low = var_tot < tol_var
            if np.any(idx_low):
                if self.log_flag:
                    acq[idx_low] += tol_var / var_tot[idx_low] - 1
                else:
                    acq[idx_low] *= np.exp(-(tol_var / var_tot[idx_low] - 1))

        acq = np.maximum(acq, -sys.float_info.max)

        # Discard points too close to the hard bounds
        X_orig = vp.parameter_transformer.inverse(Xs)
        idx_bounds = np.logical_or(
            np.any(X_orig < optim_state.lb_eps_orig, axis=1),
            np.any(X_orig > optim_state.ub_eps_orig, axis=1),
        )
        acq[idx_bounds] = np.inf
        return acq

    @abstractmethod
    def _compute_acquisition_function(
        self,
        Xs: np.ndarray,
        vp: VariationalPosterior,
        ledger: EvaluationLedger,
        f_bar: np.ndarray,
        var_tot: np.ndarray,
    ):
        """
        Value of the acquisition function given the predictive mean
        ``f_bar`` and total variance ``var_tot`` at ``Xs``.
        """

    def __str__(self):
        return type(self).__name__ + "()"

    __repr__ = __str__


def make_acquisition_function(kind):
    """
    Build an acquisition function from an instance, an
    ``AcquisitionKind`` or its name.

    Raises
    ------
    ValueError
        If ``kind`` names no known acquisition function.
    """
    from .prospective import (
        LogProspectiveAcquisition,
        ProspectiveAcquisition,
        VanillaAcquisition,
    )

    if isinstance(kind, AcquisitionFunction):
        return kind
    try:
        kind = AcquisitionKind(kind)
    except ValueError:
        raise ValueError(f"Unknown acquisition function {kind!r}.") from None
    return {
        AcquisitionKind.PROSPECTIVE: ProspectiveAcquisition,
        AcquisitionKind.LOG_PROSPECTIVE: LogProspectiveAcquisition,
        AcquisitionKind.VANILLA: VanillaAcquisition,
    }[kind]()
