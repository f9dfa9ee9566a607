import cma
import numpy as np

from .optimizer import OptimizationError, Optimizer
from .scipy_optimizer import ScipyOptimizer


class CMAESOptimizer(Optimizer):
    """
    Derivative-free search with CMA-ES (``cma.fmin``).

    One-dimensional problems are delegated to Nelder-Mead, which CMA-ES does
    not support.

    Parameters
    ----------
    sigma0 : float, optional
        Initial step size, default 1.
    tol_fun : float, optional
        Tolerance on the function value, default 1e-12.
    max_fun_evals : int, optional
        Maximum number of objective evaluations per start.
    noise_handling : bool, optional
        Attach a ``cma.NoiseHandler`` (for noisy objectives such as
        acquisition functions averaged over GP samples), default ``True``.
    """

    def __init__(
        self,
        sigma0: float = 1.0,
        tol_fun: float = 1e-12,
        max_fun_evals: int = None,
        noise_handling: bool = True,
    ):
        self.sigma0 = sigma0
        self.tol_fun = tol_fun
        self.max_fun_evals = max_fun_evals
        self.noise_handling = noise_handling

    def optimize(self, objective, init, bounds=None, n_restarts=1):
        starts = self._starting_points(init, bounds, n_restarts)
        D = starts.shape[1]
        if D == 1:
            return ScipyOptimizer(method="Nelder-Mead", tol=self.tol_fun).optimize(
                objective, starts, bounds, n_restarts
            )

        cma_options = {
            "verbose": -9,
            "tolfun": self.tol_fun,
            "seed": np.nan,
        }
        if self.max_fun_evals is not None:
            cma_options["maxfevals"] = self.max_fun_evals
        if bounds is not None:
            cma_options["bounds"] = (
                np.broadcast_to(np.ravel(bounds[0]), D).tolist(),
                np.broadcast_to(np.ravel(bounds[1]), D).tolist(),
            )

        best_x, best_f = None, np.inf
        for x0 in starts:
            noise_handler = cma.NoiseHandler(D) if self.noise_handling else None
            res = cma.fmin(
                objective,
                x0,
                self.sigma0,
                options=cma_options,
                noise_handler=noise_handler,
            )
            x, f = res[0], res[1]
            if x is not None and np.isfinite(f) and f < best_f:
                best_x, best_f = np.array(x), float(f)

        if best_x is None:
            raise OptimizationError("CMA-ES did not return a finite value.")
        return best_x, best_f
