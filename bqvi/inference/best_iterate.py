import math

import numpy as np

from .iteration_history import IterationHistory


def determine_best_iterate(
    iteration_history: IterationHistory,
    max_idx: int = None,
    safe_sd: float = 5,
    frac_back: float = 0.25,
    rank_criterion: bool = False,
):
    """
    Index of the iteration whose variational posterior should be returned.

    If the last iteration is stable it is chosen. Otherwise the search goes
    back to the last stable iteration (or ``frac_back`` of the iterations
    when none was stable) and picks the best ELCBO, ``elbo - safe_sd *
    elbo_sd``. With ``rank_criterion``, iterations are instead ranked by
    recency, ELCBO, reliability index and stability, and the best total
    rank wins.

    Parameters
    ----------
    iteration_history : IterationHistory
        Records of the run.
    max_idx : int, optional
        Consider iterations up to this one, by default the last.
    safe_sd : float, optional
        Penalization of the ELBO uncertainty, by default 5.
    frac_back : float, optional
        Fraction of the iterations to look back when none was stable, by
        default 0.25.
    rank_criterion : bool, optional
        Use the rank criterion, by default ``False``.

    Returns
    -------
    idx_best : int
        The chosen iteration.
    sn2_hpd : float
        The noise estimate of the surrogate at that iteration.
    was_stable : bool
        Whether the chosen iteration was stable.

    Raises
    ------
    ValueError
        If the history is empty.
    """
    if not iteration_history:
        raise ValueError("Cannot choose an iterate from an empty history.")
    if max_idx is None:
        max_idx = len(iteration_history) - 1

    stable = iteration_history["stable"][: max_idx + 1].astype(bool)
    elbo = iteration_history["elbo"][: max_idx + 1]
    elbo_sd = iteration_history["elbo_sd"][: max_idx + 1]

    if stable[max_idx]:
        idx_best = max_idx
    elif rank_criterion:
        n = max_idx + 1
        rank = np.zeros((n, 4))
        # Rank by position
        rank[:, 0] = np.arange(1, n + 1)[::-1]
        # Rank by ELCBO
        order = np.argsort(elbo - safe_sd * elbo_sd)[::-1]
        rank[order, 1] = np.arange(1, n + 1)
        # Rank by reliability index
        order = np.argsort(iteration_history["r_index"][:n])
        rank[order, 2] = np.arange(1, n + 1)
        # Penalty for unstable iterations
        rank[:, 3] = max_idx
        rank[stable, 3] = 1
        idx_best = int(np.argmin(np.sum(rank, axis=1)))
    else:
        last_stable = np.flatnonzero(stable)
        if last_stable.size == 0:
            idx_start = max(0, int(math.ceil(max_idx - max_idx * frac_back)))
        else:
            idx_start = int(last_stable[-1])
        elcbo = elbo[idx_start : max_idx + 1] - safe_sd * elbo_sd[
            idx_start : max_idx + 1
        ]
        # Iterations with a failed fit have a nan ELBO
        elcbo = np.where(np.isfinite(elcbo), elcbo, -np.inf)
        idx_best = idx_start + int(np.argmax(elcbo))

    sn2_hpd = float(iteration_history["gp_noise_hpd"][idx_best])
    return idx_best, sn2_hpd, bool(stable[idx_best])
