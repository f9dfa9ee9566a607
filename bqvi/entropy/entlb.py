import numpy as np

from bqvi.variational_posterior import VariationalPosterior


def _softmax_chain(w, w_grad):
    # Chain rule through w = softmax(eta).
    return w * (w_grad - np.dot(w, w_grad))


def entlb(
    vp: VariationalPosterior,
    grad_flags: tuple = (True, True, True, True),
    jacobian_flag: bool = True,
):
    r"""Deterministic lower bound on the entropy of the mixture.

    Uses Jensen's inequality on the log of the mixture density [1]_, which
    gives a closed form in terms of the pairwise overlaps of the components.
    For a single component the exact entropy is returned.

    Parameters
    ----------
    vp : VariationalPosterior
        The mixture.
    grad_flags : tuple of bool, optional
        Whether to compute the gradient with respect to
        ``(mu, sigma, lambda, w)``.
    jacobian_flag : bool, optional
        Return gradients with respect to the raw parameters (log sigma,
        log lambda, softmax logits of w), default ``True``.

    Returns
    -------
    H : float
        The entropy lower bound.
    dH : np.ndarray
        Its gradient, laid out like ``vp.get_parameters()``.

    References
    ----------
    .. [1] Gershman, S. J., Hoffman, M. D., & Blei, D. M. (2012).
        Nonparametric variational inference. Proceedings of the 29th
        International Conference on Machine Learning, 235-242.
    """
    D, K = vp.D, vp.K
    mu_t = vp.mu.T
    sigma = vp.sigma.ravel()
    lambd = vp.lambd.ravel()
    w = vp.w.ravel()

    if K == 1:
        H = (
            0.5 * D * (1 + np.log(2 * np.pi))
            + D * np.sum(np.log(sigma))
            + np.sum(np.log(lambd))
        )
        mu_grad = np.zeros((D, 1))
        sigma_grad = D / sigma
        lambd_grad = 1 / lambd
        w_grad = np.zeros(1)
    else:
        s2 = sigma[:, None] ** 2 + sigma[None, :] ** 2  # [K, K]
        diff = mu_t[:, None, :] - mu_t[None, :, :]  # [K, K, D]
        d2 = np.sum(diff**2 / (s2[..., None] * lambd**2), axis=2)
        gamma = (
            (2 * np.pi) ** (-D / 2)
            / np.prod(lambd)
            / s2 ** (D / 2)
            * np.exp(-0.5 * d2)
        )  # symmetric [K, K]
        gammasum = gamma @ w
        H = -np.dot(w, np.log(gammasum))

        mu_grad = np.zeros((D, K))
        sigma_grad = np.zeros(K)
        lambd_grad = np.zeros(D)
        w_grad = np.zeros(K)
        if any(grad_flags):
            # Pairwise weights shared by the mu and sigma gradients.
            A = w[:, None] * gamma * (1 / gammasum[:, None] + 1 / gammasum)
            if grad_flags[0]:
                dmu = diff / (s2[..., None] * lambd**2)
                mu_grad = -w * np.einsum("ij,ijd->dj", A, dmu)
            if grad_flags[1]:
                dsigma = -D / s2 + np.sum(diff**2 / lambd**2, axis=2) / s2**2
                sigma_grad = -w * sigma * np.sum(A * dsigma, axis=0)
            if grad_flags[2]:
                dmu2 = diff**2 / s2[..., None] / lambd**2
                lambd_grad = (
                    -np.einsum(
                        "i,j,ij,ijd->d", w, w / gammasum, gamma, dmu2 - 1
                    )
                    / lambd
                )
            if grad_flags[3]:
                w_grad = -np.log(gammasum) - gamma @ (w / gammasum)

    if jacobian_flag:
        sigma_grad = sigma_grad * sigma
        lambd_grad = lambd_grad * lambd
        if K > 1:
            w_grad = _softmax_chain(w, w_grad)

    blocks = [
        grad.ravel(order="F")
        for grad, flag in zip(
            (mu_grad, sigma_grad, lambd_grad, w_grad), grad_flags
        )
        if flag
    ]
    dH = np.concatenate(blocks) if blocks else np.array([])
    return H, dH
