"""Stochastic gradient descent with Adam, for noisy objectives."""

import math

import numpy as np

from .optimizer import OptimizationError, Optimizer


def minimize_adam(
    f: callable,
    x0: np.ndarray,
    lb: np.ndarray = None,
    ub: np.ndarray = None,
    tol_fun: float = 0.001,
    max_iter: int = 10000,
    master_min: float = 0.001,
    master_max: float = 0.1,
    master_decay: float = 200,
    use_early_stopping: bool = True,
):
    """
    Minimize a noisy function with Adam and an annealed learning rate.

    The learning rate decays exponentially from `master_max` to
    `master_min`. Every minibatch of 20 iterations, the trend of the
    objective and the drift of the iterates over the last two minibatches
    are checked; the run stops once both are negligible.

    Parameters
    ----------
    f : callable
        Returns the (stochastic) value of the objective and its gradient.
    x0 : np.ndarray, shape (D,)
        Starting point.
    lb, ub : np.ndarray, shape (D,), optional
        Box constraints; iterates are clipped to the box.
    tol_fun : float, optional
        Tolerance on the slope of the objective within a minibatch.
    max_iter : int, optional
        Maximum number of iterations.
    master_min, master_max : float, optional
        Final and initial learning rates.
    master_decay : float, optional
        Time constant of the learning-rate decay, in iterations.
    use_early_stopping : bool, optional
        Stop when the convergence test passes, default ``True``.

    Returns
    -------
    x : np.ndarray, shape (D,)
        Mean of the iterates in the last minibatch.
    y : float
        Mean of the objective in the last minibatch.
    x_tab : np.ndarray, shape (D, iterations)
        All iterates.
    y_tab : np.ndarray, shape (iterations,)
        All objective values.
    iterations : int
        Number of iterations performed.
    """
    eps = np.sqrt(np.spacing(1))
    beta_1, beta_2 = 0.9, 0.999
    batch = 20
    tol_x, tol_x_max = 0.001, 0.1
    tol_fun_max = tol_fun * 100

    x = np.array(x0, dtype=float).ravel()
    n_vars = x.size
    lb = np.full(n_vars, -np.inf) if lb is None else np.ravel(lb)
    ub = np.full(n_vars, np.inf) if ub is None else np.ravel(ub)

    m = np.zeros(n_vars)
    v = np.zeros(n_vars)
    x_tab = np.zeros((n_vars, max_iter))
    y_tab = np.full(max_iter, np.nan)
    # Centred abscissa for the slope fit over one minibatch.
    xx = np.linspace(-(batch - 1) / 2, (batch - 1) / 2, batch)

    for i in range(max_iter):
        y_tab[i], grad = f(x)
        grad = np.ravel(grad)

        m = beta_1 * m + (1 - beta_1) * grad
        v = beta_2 * v + (1 - beta_2) * grad**2
        m_hat = m / (1 - beta_1 ** (i + 1))
        v_hat = v / (1 - beta_2 ** (i + 1))
        step = master_min + (master_max - master_min) * math.exp(
            -(i + 1) / master_decay
        )
        x = np.clip(x - step * m_hat / (np.sqrt(v_hat) + eps), lb, ub)
        x_tab[:, i] = x

        if (
            use_early_stopping
            and (i + 1) % batch == 0
            and i + 1 >= 2 * batch
        ):
            last = slice(i - batch + 1, i + 1)
            previous = slice(i - 2 * batch + 1, i - batch + 1)
            p, V = np.polyfit(xx, y_tab[last], 1, cov=True)
            slope = abs(p[0])
            slope_err = np.sqrt(V[0, 0] + tol_fun**2)
            slope_err_max = np.sqrt(V[0, 0] + tol_fun_max**2)
            dx = np.sqrt(
                np.sum(
                    (
                        np.mean(x_tab[:, last], axis=1)
                        - np.mean(x_tab[:, previous], axis=1)
                    )
                    ** 2
                )
                / batch
            )
            if (dx < tol_x and slope < slope_err_max) or (
                slope < slope_err and dx < tol_x_max
            ):
                break

    n_iter = i + 1
    tail = slice(max(0, n_iter - batch), n_iter)
    x = np.mean(x_tab[:, tail], axis=1)
    y = np.mean(y_tab[tail])
    return x, y, x_tab[:, :n_iter], y_tab[:n_iter], n_iter


class AdamOptimizer(Optimizer):
    """
    ``Optimizer`` front end of ``minimize_adam``.

    The objective must return ``(value, gradient)``. Extra starts are run
    independently; the one with the lowest final minibatch mean wins.
    Keyword arguments are forwarded to ``minimize_adam``.
    """

    def __init__(self, **adam_options):
        self.adam_options = adam_options
        self.last_trace = None

    def optimize(self, objective, init, bounds=None, n_restarts=1):
        starts = self._starting_points(init, bounds, n_restarts)
        lb, ub = (None, None) if bounds is None else bounds

        best_x, best_f = None, np.inf
        for x0 in starts:
            x, f, x_tab, y_tab, _ = minimize_adam(
                objective, x0, lb, ub, **self.adam_options
            )
            if np.isfinite(f) and f < best_f:
                best_x, best_f = x, float(f)
                self.last_trace = (x_tab, y_tab)

        if best_x is None:
            raise OptimizationError("Adam did not reach a finite value.")
        return best_x, best_f
