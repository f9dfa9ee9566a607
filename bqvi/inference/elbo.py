"""Negative evidence lower confidence bound and its soft-bound penalties."""

import numpy as np

from bqvi.entropy import entlb, entmc
from bqvi.surrogate import SurrogateModel
from bqvi.variational_posterior import VariationalPosterior


def neg_elcbo(
    theta: np.ndarray,
    surrogate: SurrogateModel,
    vp: VariationalPosterior,
    beta: float = 0.0,
    Ns: int = 0,
    compute_grad: bool = True,
    compute_var: bool = None,
    theta_bnd: dict = None,
    separate_K: bool = False,
):
    """
    Negative evidence lower confidence bound objective.

    The ELBO is the Bayesian-quadrature estimate of the expected log joint
    under the surrogate plus the entropy of the mixture. The entropy is
    estimated by Monte Carlo when ``Ns > 0``, otherwise by its
    deterministic lower bound.

    Parameters
    ----------
    theta : np.ndarray
        Raw variational parameters (see ``VariationalPosterior.get_parameters``).
        They are written into ``vp``.
    surrogate : SurrogateModel
        The surrogate of the log joint.
    vp : VariationalPosterior
        The variational posterior to evaluate.
    beta : float, optional
        Confidence weight; 0 gives the negative ELBO.
    Ns : int, optional
        Monte Carlo samples per component for the entropy.
    compute_grad : bool, optional
        Whether to compute the gradient, default ``True``.
    compute_var : bool, optional
        Whether to compute the variance; defaults to ``beta != 0``.
    theta_bnd : dict, optional
        Soft bounds of the parameters (``vp.get_bounds``). When given, the
        bound and weight penalties are added; this is done only while
        optimizing, never when reporting the ELBO.
    separate_K : bool, optional
        Also return per-component quantities.

    Returns
    -------
    F : float
        Negative ELCBO.
    dF : np.ndarray or None
        Its gradient.
    G : float
        Expected log joint.
    H : float
        Entropy.
    varF : float
        Variance of the estimate.
    dH, var_ss, varG, varH, I_sk, J_sjk
        Only with `separate_K`: entropy gradient, variance across
        hyperparameter samples, variances of the two terms, and the
        per-component expected log joint and its covariance.
    """
    if not np.isfinite(beta):
        beta = 0
    if compute_var is None:
        compute_var = beta != 0
    if compute_grad and beta != 0:
        raise NotImplementedError(
            "Gradient of the ELCBO with its variance is not supported."
        )
    if separate_K and compute_grad:
        raise ValueError(
            "Gradients cannot be computed together with per-component "
            "results."
        )

    vp.set_parameters(theta)

    if compute_grad:
        grad_flags = (
            vp.optimize_mu,
            vp.optimize_sigma,
            vp.optimize_lambd,
            vp.optimize_weights,
        )
    else:
        grad_flags = (False, False, False, False)

    G, dG, varG, var_ss, I_sk, J_sjk = surrogate.expected_log_joint(
        vp, grad_flags, compute_var=compute_var, separate_K=separate_K
    )
    if not compute_var:
        varG = 0
        var_ss = 0

    if Ns > 0:
        H, dH = entmc(vp, Ns, grad_flags, True)
    else:
        H, dH = entlb(vp, grad_flags, True)

    F = -G - H
    if compute_grad:
        dF = -dG - dH
    else:
        dF = None
        dH = None

    # Zero variance for the entropy
    varH = 0
    varF = varG + varH if compute_var else 0

    if beta != 0:
        F += beta * np.sqrt(varF)

    if theta_bnd is not None:
        if compute_grad:
            L, dL = vp_bound_loss(
                vp, theta, theta_bnd, tol_con=theta_bnd["tol_con"]
            )
            dF = dF + dL
        else:
            L = vp_bound_loss(
                vp,
                theta,
                theta_bnd,
                tol_con=theta_bnd["tol_con"],
                compute_grad=False,
            )
        F += L

        if vp.optimize_weights:
            L, dL = weight_penalty(vp, theta_bnd, compute_grad)
            F += L
            if compute_grad:
                dF[-vp.K :] += dL

    if separate_K:
        return F, dF, G, H, varF, dH, var_ss, varG, varH, I_sk, J_sjk
    return F, dF, G, H, varF


def weight_penalty(vp: VariationalPosterior, theta_bnd: dict, compute_grad=True):
    """
    Penalty on small mixture weights, and its gradient with respect to the
    softmax logits.
    """
    w = vp.w.ravel()
    thresh = theta_bnd["weight_threshold"]
    penalty = theta_bnd["weight_penalty"]
    L = np.sum(np.where(w < thresh, w, thresh)) * penalty
    if not compute_grad:
        return L, None
    w_grad = penalty * (w < thresh)
    # Jacobian of the softmax
    J_w = np.diag(w) - np.outer(w, w)
    return L, J_w @ w_grad


def vp_bound_loss(
    vp: VariationalPosterior,
    theta: np.ndarray,
    theta_bnd: dict,
    tol_con: float = 1e-3,
    compute_grad: bool = True,
):
    """
    Soft-bound loss of the variational parameters.

    The bounds of ``theta_bnd`` apply to the means, to the combined log
    scales ``log(sigma_k) + log(lambda_d)`` of every component, and to the
    weight logits.

    Parameters
    ----------
    vp : VariationalPosterior
        The posterior whose layout ``theta`` follows.
    theta : np.ndarray
        Raw variational parameters.
    theta_bnd : dict
        Soft bounds, from ``vp.get_bounds``.
    tol_con : float, optional
        Relative scale of the penalty.
    compute_grad : bool, optional
        Whether to return the gradient with respect to ``theta``.

    Returns
    -------
    L : float
    dL : np.ndarray, optional
    """
    D, K = vp.D, vp.K
    start = 0
    if vp.optimize_mu:
        mu = theta[: D * K]
        start = D * K
    if vp.optimize_sigma:
        ln_sigma = theta[start : start + K]
        start += K
    else:
        ln_sigma = np.log(vp.sigma.ravel())
    if vp.optimize_lambd:
        ln_lambd = theta[start : start + D]
    else:
        ln_lambd = np.log(vp.lambd.ravel())
    if vp.optimize_weights:
        eta = theta[-K:]

    optimize_scale = vp.optimize_sigma or vp.optimize_lambd
    ln_scale = ln_lambd.reshape(-1, 1) + ln_sigma.reshape(1, -1)
    theta_ext = []
    if vp.optimize_mu:
        theta_ext.append(mu.ravel())
    if optimize_scale:
        theta_ext.append(ln_scale.ravel(order="F"))
    if vp.optimize_weights:
        theta_ext.append(eta.ravel())
    theta_ext = np.concatenate(theta_ext)

    if not compute_grad:
        return soft_bound_loss(
            theta_ext, theta_bnd["lb"].ravel(), theta_bnd["ub"].ravel(), tol_con
        )

    L, dL = soft_bound_loss(
        theta_ext,
        theta_bnd["lb"].ravel(),
        theta_bnd["ub"].ravel(),
        tol_con,
        compute_grad=True,
    )
    blocks = []
    start = 0
    if vp.optimize_mu:
        blocks.append(dL[: D * K])
        start = D * K
    if optimize_scale:
        dlnscale = np.reshape(dL[start : start + D * K], (D, K), order="F")
        if vp.optimize_sigma:
            blocks.append(np.sum(dlnscale, axis=0))
        if vp.optimize_lambd:
            blocks.append(np.sum(dlnscale, axis=1))
    if vp.optimize_weights:
        blocks.append(dL[-K:])
    return L, np.concatenate(blocks)


def soft_bound_loss(
    x: np.ndarray,
    slb: np.ndarray,
    sub: np.ndarray,
    tol_con: float = 1e-3,
    compute_grad: bool = False,
):
    """
    Quadratic loss outside the soft bounds ``[slb, sub]``, on a length
    scale of ``tol_con`` times the bound range.

    Parameters
    ----------
    x : np.ndarray, shape (D,)
        The point.
    slb, sub : np.ndarray, shape (D,)
        Soft lower and upper bounds.
    tol_con : float, optional
        Relative scale of the penalty, default 1e-3.
    compute_grad : bool, optional
        Also return the gradient, default ``False``.

    Returns
    -------
    y : float
    dy : np.ndarray, shape (D,), optional
    """
    ell = (sub - slb) * tol_con
    y = 0.0
    dy = np.zeros(x.shape)

    idx = x < slb
    if np.any(idx):
        y += 0.5 * np.sum(((slb[idx] - x[idx]) / ell[idx]) ** 2)
        dy[idx] = (x[idx] - slb[idx]) / ell[idx] ** 2

    idx = x > sub
    if np.any(idx):
        y += 0.5 * np.sum(((x[idx] - sub[idx]) / ell[idx]) ** 2)
        dy[idx] = (x[idx] - sub[idx]) / ell[idx] ** 2

    if compute_grad:
        return y, dy
    return y
