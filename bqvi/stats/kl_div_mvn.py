import numpy as np


def _kl_one_way(mu1, sigma1, mu2, sigma2):
    D = mu1.size
    dmu = (mu2 - mu1).reshape(-1, 1)
    _, logdet1 = np.linalg.slogdet(sigma1)
    _, logdet2 = np.linalg.slogdet(sigma2)
    trace_term = np.trace(np.linalg.lstsq(sigma2, sigma1, rcond=None)[0])
    quad_term = dmu.T @ np.linalg.lstsq(sigma2, dmu, rcond=None)[0]
    return 0.5 * (trace_term + quad_term.item() - D + logdet2 - logdet1)


def kl_div_mvn(mu1, sigma1, mu2, sigma2):
    """
    Analytical Kullback-Leibler divergence between two multivariate normals.

    Parameters
    ----------
    mu1, mu2 : np.ndarray
        The mean vectors.
    sigma1, sigma2 : np.ndarray
        The covariance matrices.

    Returns
    -------
    kl_div : np.ndarray
        ``[KL(N1 || N2), KL(N2 || N1)]``.
    """
    mu1 = np.ravel(mu1)
    mu2 = np.ravel(mu2)
    sigma1 = np.atleast_2d(sigma1)
    sigma2 = np.atleast_2d(sigma2)
    return np.array(
        [
            _kl_one_way(mu1, sigma1, mu2, sigma2),
            _kl_one_way(mu2, sigma2, mu1, sigma1),
        ]
    )
