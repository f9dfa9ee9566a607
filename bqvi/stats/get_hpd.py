import numpy as np


def get_hpd(X: np.ndarray, y: np.ndarray, hpd_frac: float = 0.8):
    """
    Select the high-posterior-density subset of a training set.

    Parameters
    ==========
    X : ndarray, shape (N, D)
        The training inputs.
    y : ndarray, shape (N, 1)
        The log-density values at ``X``.
    hpd_frac : float
        The fraction of points with the highest values to keep, by default
        0.8.

    Returns
    =======
    hpd_X : ndarray
        The kept inputs, sorted by decreasing value.
    hpd_y : ndarray
        The kept values.
    hpd_range : ndarray, shape (D,)
        The extent of ``hpd_X`` along each dimension (``nan`` if empty).
    indices : ndarray
        Positions of the kept points in ``X``.
    """
    N, D = X.shape
    n_keep = int(round(hpd_frac * N))
    indices = np.argsort(y, axis=None)[::-1][:n_keep]
    hpd_X = X[indices]
    hpd_y = y[indices]

    if n_keep == 0:
        hpd_range = np.full(D, np.nan)
    else:
        hpd_range = np.ptp(hpd_X, axis=0)

    return hpd_X, hpd_y, hpd_range, indices
