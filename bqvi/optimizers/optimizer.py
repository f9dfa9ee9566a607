from abc import ABC, abstractmethod

import numpy as np


class OptimizationError(RuntimeError):
    """A local optimization failed to return a usable point."""


class Optimizer(ABC):
    """
    Interface of the continuous optimizers used by the inference loop.

    Implementations minimize ``objective`` from one or more starting points
    and return the best point found.
    """

    @abstractmethod
    def optimize(self, objective, init, bounds=None, n_restarts: int = 1):
        """
        Minimize ``objective``.

        Parameters
        ----------
        objective : callable
            The function to minimize. Whether it also returns its gradient
            depends on the implementation.
        init : np.ndarray
            Starting point, shape ``(D,)``, or several starting points, one
            per row.
        bounds : tuple of np.ndarray, optional
            ``(lb, ub)`` box constraints.
        n_restarts : int, optional
            Number of starts. Extra starts beyond the rows of ``init`` are
            drawn uniformly in ``bounds`` (or around the first start when
            unbounded).

        Returns
        -------
        x : np.ndarray
            The best point, shape ``(D,)``.
        f : float
            Its objective value.

        Raises
        ------
        OptimizationError
            If no start returned a finite value.
        """

    @staticmethod
    def _starting_points(init, bounds, n_restarts):
        init = np.atleast_2d(np.asarray(init, dtype=float))
        n_extra = n_restarts - init.shape[0]
        if n_extra <= 0:
            return init
        D = init.shape[1]
        if bounds is not None:
            lb = np.broadcast_to(np.ravel(bounds[0]), (D,))
            ub = np.broadcast_to(np.ravel(bounds[1]), (D,))
            if np.all(np.isfinite(lb)) and np.all(np.isfinite(ub)):
                extra = lb + (ub - lb) * np.random.rand(n_extra, D)
                return np.concatenate((init, extra))
        extra = init[0] + np.random.randn(n_extra, D)
        return np.concatenate((init, extra))
