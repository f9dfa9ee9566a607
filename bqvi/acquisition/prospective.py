import sys

import numpy as np

from .acquisition_function import AcquisitionFunction, AcquisitionKind


def _vp_density(vp, Xs, log_flag=False):
    realmin = sys.float_info.min
    if log_flag:
        return np.ravel(
            np.maximum(
                vp.pdf(Xs, orig_flag=False, log_flag=True), np.log(realmin)
            )
        )
    return np.ravel(np.maximum(vp.pdf(Xs, orig_flag=False), realmin))


class ProspectiveAcquisition(AcquisitionFunction):
    """
    Prospective uncertainty search: variance of the surrogate, weighted by
    the exponentiated surrogate mean and the variational density.
    """

    kind = AcquisitionKind.PROSPECTIVE

    def _compute_acquisition_function(self, Xs, vp, ledger, f_bar, var_tot):
        p = _vp_density(vp, Xs)
        return -var_tot * np.exp(f_bar - ledger.y_max) * p


class LogProspectiveAcquisition(AcquisitionFunction):
    """Prospective uncertainty search, in log space."""

    kind = AcquisitionKind.LOG_PROSPECTIVE
    log_flag = True

    def _compute_acquisition_function(self, Xs, vp, ledger, f_bar, var_tot):
        log_p = _vp_density(vp, Xs, log_flag=True)
        return -(np.log(var_tot) + f_bar - ledger.y_max + log_p)


class VanillaAcquisition(AcquisitionFunction):
    """Variance of the surrogate weighted by the squared variational density."""

    kind = AcquisitionKind.VANILLA

    def _compute_acquisition_function(self, Xs, vp, ledger, f_bar, var_tot):
        p = _vp_density(vp, Xs)
        return -var_tot * p**2
