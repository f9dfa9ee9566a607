import logging

import numpy as np
import scipy as sp

from .optimizer import OptimizationError, Optimizer


class ScipyOptimizer(Optimizer):
    """
    Multi-start wrapper around ``scipy.optimize.minimize``.

    Parameters
    ----------
    method : str, optional
        The ``scipy`` method, default ``"L-BFGS-B"``.
    jac : bool, optional
        Whether the objective returns ``(value, gradient)``.
    tol : float, optional
        Tolerance passed to ``scipy.optimize.minimize``.
    options : dict, optional
        Method options passed to ``scipy.optimize.minimize``.
    """

    def __init__(self, method="L-BFGS-B", jac=False, tol=None, options=None):
        self.method = method
        self.jac = jac
        self.tol = tol
        self.options = options
        self.logger = logging.getLogger("BQVI")

    def optimize(self, objective, init, bounds=None, n_restarts=1):
        starts = self._starting_points(init, bounds, n_restarts)
        scipy_bounds = None
        if bounds is not None and self.method not in ("Nelder-Mead",):
            scipy_bounds = list(
                zip(
                    np.broadcast_to(np.ravel(bounds[0]), starts.shape[1]),
                    np.broadcast_to(np.ravel(bounds[1]), starts.shape[1]),
                )
            )

        best_x, best_f = None, np.inf
        for x0 in starts:
            try:
                res = sp.optimize.minimize(
                    objective,
                    x0,
                    method=self.method,
                    jac=self.jac,
                    bounds=scipy_bounds,
                    tol=self.tol,
                    options=self.options,
                )
            except (ValueError, FloatingPointError, np.linalg.LinAlgError) as err:
                self.logger.debug("Local optimization failed: %s", err)
                continue
            f = float(np.asarray(res.fun).item())
            if np.isfinite(f) and f < best_f:
                best_x, best_f = np.array(res.x), f

        if best_x is None:
            raise OptimizationError(
                f"{self.method} did not return a finite value from any of "
                f"{starts.shape[0]} starting points."
            )
        return best_x, best_f
