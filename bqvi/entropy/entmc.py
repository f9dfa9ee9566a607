import numpy as np

from bqvi.variational_posterior import VariationalPosterior

from .entlb import _softmax_chain


def entmc(
    vp: VariationalPosterior,
    Ns: int,
    grad_flags: tuple = (True, True, True, True),
    jacobian_flag: bool = True,
):
    r"""Monte Carlo estimate of the entropy of the mixture.

    Draws `Ns` antithetic samples from every component and differentiates
    through them with the reparameterization trick.

    Parameters
    ----------
    vp : VariationalPosterior
        The mixture.
    Ns : int
        Samples per component (rounded up to an even number), ``Ns > 0``.
    grad_flags : tuple of bool, optional
        Whether to compute the gradient with respect to
        ``(mu, sigma, lambda, w)``.
    jacobian_flag : bool, optional
        Return gradients with respect to the raw parameters, default
        ``True``.

    Returns
    -------
    H : float
        The entropy estimate.
    dH : np.ndarray
        Its gradient, laid out like ``vp.get_parameters()``.
    """
    D, K = vp.D, vp.K
    mu = vp.mu
    sigma = vp.sigma.ravel()
    lambd = vp.lambd.ravel()
    w = vp.w.ravel()

    Ns = int(np.ceil(Ns / 2)) * 2
    half = Ns // 2
    sigmalambd = lambd[:, None] * sigma  # [D, K]
    nconst = (2 * np.pi) ** (-D / 2) / np.prod(lambd)

    mu_grad = np.zeros((D, K))
    sigma_grad = np.zeros(K)
    lambd_grad = np.zeros(D)
    w_grad = np.zeros(K)
    H = 0.0

    for j in range(K):
        eps = np.random.randn(half, D)
        eps = np.concatenate((eps, -eps))
        Xs = mu[:, j] + eps * lambd * sigma[j]  # [Ns, D]

        delta = (Xs[..., None] - mu) / sigmalambd  # [Ns, D, K]
        norm = nconst / sigma**D * np.exp(-0.5 * np.sum(delta**2, axis=1))
        q = norm @ w  # [Ns]
        H -= w[j] * np.mean(np.log(q))

        if not any(grad_flags):
            continue
        # Gradient of q with respect to the sample location.
        lsum = np.sum(delta / sigmalambd * w * norm[:, None, :], axis=2)
        ratio = lsum / q[:, None]  # [Ns, D]
        if grad_flags[0]:
            mu_grad[:, j] = w[j] * np.mean(ratio, axis=0)
        if grad_flags[1]:
            sigma_grad[j] = w[j] * np.mean(np.sum(ratio * eps * lambd, axis=1))
        if grad_flags[2]:
            lambd_grad += w[j] * sigma[j] * np.mean(ratio * eps, axis=0)
        if grad_flags[3]:
            w_grad[j] -= np.mean(np.log(q))
            w_grad -= w[j] * np.mean(norm / q[:, None], axis=0)

    if jacobian_flag:
        sigma_grad = sigma_grad * sigma
        lambd_grad = lambd_grad * lambd
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
