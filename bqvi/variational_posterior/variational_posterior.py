# for annotating VP as input of itself in kl_div and mtv
from __future__ import annotations

import sys
from textwrap import indent
from typing import Optional

import corner
import matplotlib.pyplot as plt
import numpy as np
from scipy.integrate import trapezoid
from scipy.optimize import minimize
from scipy.special import gammaln
from scipy.stats import gaussian_kde

from bqvi.decorators import handle_0D_1D_input
from bqvi.formatting import format_dict, full_repr, summarize
from bqvi.parameter_transformer import ParameterTransformer
from bqvi.stats import kl_div_mvn


class VariationalPosterior:
    r"""
    Mixture-of-Gaussians approximation of the posterior.

    .. math:: q(\theta) = \sum_{k = 1}^K w_k N(\theta; \mu_k,
        \sigma^2_k \Lambda)

    where :math:`w_k` are the mixture weights, :math:`\mu_k` the component
    means, :math:`\sigma_k` per-component scales and :math:`\Lambda` a
    diagonal matrix shared by all components with :math:`\lambda^2_d` on its
    diagonal. The mixture lives in the unconstrained space defined by the
    ``ParameterTransformer``; densities and samples in the original space
    are obtained through it.

    Parameters
    ----------
    D : int
        The number of parameters.
    K : int, optional
        The number of mixture components, default 2.
    x0 : np.ndarray, optional
        Starting locations of the component means, one per row. Rows are
        recycled when fewer than `K` are given. Default: the origin.
    parameter_transformer : ParameterTransformer, optional
        The space transform, by default the identity.

    Attributes
    ----------
    w : np.ndarray
        Mixture weights, shape ``(1, K)``, non-negative and summing to 1.
    eta : np.ndarray
        Unnormalized log-weights, shape ``(1, K)``.
    mu : np.ndarray
        Component means, shape ``(D, K)``.
    sigma : np.ndarray
        Per-component scales, shape ``(1, K)``.
    lambd : np.ndarray
        Shared per-dimension scales, shape ``(D, 1)``, strictly positive.
    optimize_weights, optimize_mu, optimize_sigma, optimize_lambd : bool
        Which parameters are free during the variational fit.
    bounds : dict
        Soft bounds on the free parameters (see ``get_bounds``).
    stats : dict
        Statistics of the latest fit (``elbo``, ``elbo_sd``, ``e_log_joint``,
        ``entropy``, ``varF``, ``stable``...).
    """

    def __init__(
        self, D: int, K: int = 2, x0=None, parameter_transformer=None
    ):
        if K < 1:
            raise ValueError("A variational posterior needs K >= 1.")
        self.D = D
        self.K = K

        if x0 is None:
            x0 = np.zeros((1, D))
        x0 = np.atleast_2d(x0)
        reps = int(np.ceil(K / x0.shape[0]))
        self.mu = np.tile(x0, (reps, 1))[:K].T + 1e-6 * np.random.randn(D, K)
        self.w = np.ones((1, K)) / K
        self.eta = np.ones((1, K)) / K
        self.sigma = 1e-3 * np.ones((1, K))
        self.lambd = np.ones((D, 1))

        self.optimize_weights = True
        self.optimize_mu = True
        self.optimize_sigma = True
        self.optimize_lambd = True

        if parameter_transformer is None:
            parameter_transformer = ParameterTransformer(D)
        self.parameter_transformer = parameter_transformer

        self.bounds = None
        self.stats = None
        self._mode = None

    def get_bounds(self, X: np.ndarray, options, K: int = None):
        """
        Soft bounds for the variational parameters, given the training set.

        The bounds only widen across calls. Means are bounded by the extent
        of the training set and log-scales by its log-range.

        Parameters
        ----------
        X : ndarray, shape (N, D)
            Training inputs.
        options : Options
            Run options (``tol_length``, ``tol_weight``, ``tol_con_loss``,
            ``weight_penalty``).
        K : int, optional
            Number of components, default ``self.K``.

        Returns
        -------
        theta_bnd : dict
            ``lb`` and ``ub`` arrays matching ``get_parameters()``,
            ``tol_con``, and, when weights are optimized,
            ``weight_threshold`` and ``weight_penalty``.
        """
        if K is None:
            K = self.K

        if self.bounds is None:
            self.bounds = {
                "mu_lb": np.full(self.D, np.inf),
                "mu_ub": np.full(self.D, -np.inf),
                "lnscale_lb": np.full(self.D, np.inf),
                "lnscale_ub": np.full(self.D, -np.inf),
            }
        b = self.bounds
        b["mu_lb"] = np.minimum(np.min(X, axis=0), b["mu_lb"])
        b["mu_ub"] = np.maximum(np.max(X, axis=0), b["mu_ub"])
        ln_range = np.log(np.ptp(X, axis=0))
        b["lnscale_lb"] = np.minimum(
            b["lnscale_lb"], ln_range + np.log(options["tol_length"])
        )
        b["lnscale_ub"] = np.maximum(b["lnscale_ub"], ln_range)
        if self.optimize_weights:
            b["eta_lb"] = (
                -np.inf
                if options["tol_weight"] == 0
                else np.log(0.5 * options["tol_weight"])
            )
            b["eta_ub"] = 0

        lb, ub = [], []
        if self.optimize_mu:
            lb.append(np.tile(b["mu_lb"], K))
            ub.append(np.tile(b["mu_ub"], K))
        if self.optimize_sigma or self.optimize_lambd:
            lb.append(np.tile(b["lnscale_lb"], K))
            ub.append(np.tile(b["lnscale_ub"], K))
        if self.optimize_weights:
            lb.append(np.full(K, b["eta_lb"]))
            ub.append(np.full(K, b["eta_ub"]))

        theta_bnd = {
            "lb": np.concatenate(lb),
            "ub": np.concatenate(ub),
            "tol_con": options["tol_con_loss"],
        }
        if self.optimize_weights:
            theta_bnd["weight_threshold"] = max(
                1 / (4 * K), options["tol_weight"]
            )
            theta_bnd["weight_penalty"] = options["weight_penalty"]
        return theta_bnd

    def _draw_components(self, N: int, balance_flag: bool):
        if self.K == 1:
            return np.zeros(N, dtype=int)
        w = self.w.ravel()
        if not balance_flag:
            return np.random.choice(self.K, size=N, p=w)
        # Allocate samples to components in proportion to their weights,
        # then distribute the remainder at random.
        counts = np.floor(w * N).astype(int)
        idx = np.repeat(np.arange(self.K), counts)
        n_extra = N - idx.size
        if n_extra > 0:
            residual = w * N - counts
            residual /= np.sum(residual)
            idx = np.append(
                idx, np.random.choice(self.K, size=n_extra, p=residual)
            )
        np.random.shuffle(idx)
        return idx

    def sample(
        self,
        N: int,
        orig_flag: bool = True,
        balance_flag: bool = False,
        df: float = np.inf,
    ):
        """
        Draw random samples from the variational posterior.

        Parameters
        ----------
        N : int
            Number of samples.
        orig_flag : bool, optional
            Return samples in the original space (default) or in the
            unconstrained space.
        balance_flag : bool, optional
            Allocate samples to components exactly in proportion to the
            weights (as close as possible), default ``False``.
        df : float, optional
            Degrees of freedom of a heavy-tailed variant where each
            component is a multivariate t-distribution. ``np.inf`` (default)
            or 0 give the Gaussian mixture.

        Returns
        -------
        X : np.ndarray
            The samples, shape ``(N, D)``.
        I : np.ndarray
            The component index of each sample, shape ``(N,)``.
        """
        N = int(N)
        if N < 1:
            return np.zeros((0, self.D)), np.zeros(0, dtype=int)

        idx = self._draw_components(N, balance_flag)
        scale = self.lambd.reshape(1, -1) * self.sigma[0, idx][:, np.newaxis]
        z = np.random.randn(N, self.D)
        if np.isfinite(df) and df > 0:
            z = z / np.sqrt(np.random.gamma(df / 2, 2 / df, (N, 1)))
        x = self.mu.T[idx] + scale * z

        if orig_flag:
            x = self.parameter_transformer.inverse(x)
        return x, idx

    def _component_densities(self, x, df):
        """Weighted density of each component at ``x``, shape (N, K)."""
        D = self.D
        lambd_row = self.lambd.reshape(1, -1)
        # Normalized squared distance per component, shape (N, D, K).
        delta = (x[:, :, np.newaxis] - self.mu[np.newaxis]) / (
            lambd_row.T[np.newaxis] * self.sigma[np.newaxis]
        )
        scale_term = self.w / self.sigma**D / np.prod(self.lambd)

        if not np.isfinite(df) or df == 0:
            nf = (2 * np.pi) ** (-D / 2)
            return nf * scale_term * np.exp(-0.5 * np.sum(delta**2, axis=1))
        if df > 0:
            # Multivariate t-distribution.
            nf = np.exp(gammaln((df + D) / 2) - gammaln(df / 2)) / (
                df * np.pi
            ) ** (D / 2)
            d2 = np.sum(delta**2, axis=1)
            return nf * scale_term * (1 + d2 / df) ** (-(df + D) / 2)
        # Product of univariate t-distributions.
        nu = abs(df)
        nf = (
            np.exp(gammaln((nu + 1) / 2) - gammaln(nu / 2))
            / np.sqrt(nu * np.pi)
        ) ** D
        return (
            nf
            * scale_term
            * np.prod((1 + delta**2 / nu) ** (-(nu + 1) / 2), axis=1)
        )

    @handle_0D_1D_input(patched_kwargs=["x"], patched_argpos=[0])
    def pdf(
        self,
        x: np.ndarray,
        orig_flag: bool = True,
        log_flag: bool = False,
        grad_flag: bool = False,
        df: float = np.inf,
    ):
        """
        Density of the variational posterior at the rows of `x`.

        Parameters
        ----------
        x : np.ndarray
            Points, shape ``(N, D)``, in the original space if `orig_flag`
            else in the unconstrained space.
        orig_flag : bool, optional
            Evaluate the density in the original space (with the Jacobian
            correction), default ``True``.
        log_flag : bool, optional
            Return the log-density, default ``False``.
        grad_flag : bool, optional
            Also return the gradient with respect to `x`. Only available in
            the unconstrained space for the Gaussian mixture.
        df : float, optional
            Degrees of freedom of the heavy-tailed variant (see ``sample``).

        Returns
        -------
        pdf : np.ndarray
            Shape ``(N, 1)``.
        gradient : np.ndarray
            Shape ``(N, D)``, if `grad_flag`.

        Raises
        ------
        NotImplementedError
            If a gradient is requested in the original space or for the
            heavy-tailed variant.
        """
        heavy_tailed = np.isfinite(df) and df != 0
        if grad_flag and (orig_flag or heavy_tailed):
            raise NotImplementedError(
                "Gradients are only available for the Gaussian mixture "
                "in the unconstrained space."
            )
        x = np.array(x, dtype=float)
        N = x.shape[0]

        if orig_flag:
            inside = np.all(
                (x > self.parameter_transformer.lb_orig)
                & (x < self.parameter_transformer.ub_orig),
                axis=1,
            )
            x[inside] = self.parameter_transformer(x[inside])
        else:
            inside = np.ones(N, dtype=bool)

        nn = self._component_densities(x, df)
        y = np.sum(nn, axis=1, keepdims=True)

        if grad_flag:
            lambd_row = self.lambd.reshape(1, -1)
            dy = np.zeros((N, self.D))
            for k in range(self.K):
                dy -= (
                    nn[:, k : k + 1]
                    * (x - self.mu[:, k])
                    / (lambd_row**2 * self.sigma[0, k] ** 2)
                )

        if log_flag:
            if grad_flag:
                dy = dy / y
            with np.errstate(divide="ignore"):
                y = np.log(y)
            y[~inside] = -np.inf
        else:
            y[~inside] = 0

        if orig_flag and np.any(inside):
            log_jac = self.parameter_transformer.log_abs_det_jacobian(
                x[inside]
            )[:, np.newaxis]
            if log_flag:
                y[inside] -= log_jac
            else:
                y[inside] /= np.exp(log_jac)

        if grad_flag:
            return y, dy
        return y

    def log_pdf(self, x: np.ndarray, *args, **kwargs):
        """
        Log-density of the variational posterior, same arguments as
        ``pdf``.
        """
        return self.pdf(x, *args, **kwargs, log_flag=True)

    def _normalize(self):
        # Fold the scale of lambda into sigma and renormalize the weights.
        nl = np.sqrt(np.sum(self.lambd**2) / self.D)
        self.lambd = self.lambd.reshape(-1, 1) / nl
        self.sigma = self.sigma.reshape(1, -1) * nl
        if self.optimize_weights:
            self.w = self.w.reshape(1, -1) / np.sum(self.w)

    def get_parameters(self, raw_flag=True):
        """
        Return the free parameters as one flat vector.

        The layout is ``[mu (column-major), sigma, lambda, weights]``, each
        block present only if the matching ``optimize_*`` flag is set.

        Parameters
        ----------
        raw_flag : bool, optional
            Return sigma, lambda and weights on log scale (default).

        Returns
        -------
        theta : np.ndarray
        """
        self._normalize()
        blocks = []
        if self.optimize_mu:
            blocks.append(self.mu.ravel(order="F"))
        positive = []
        if self.optimize_sigma:
            positive.append(self.sigma.ravel())
        if self.optimize_lambd:
            positive.append(self.lambd.ravel())
        if self.optimize_weights:
            positive.append(self.w.ravel())
        if positive:
            positive = np.concatenate(positive)
            blocks.append(np.log(positive) if raw_flag else positive)
        if not blocks:
            return np.array([])
        return np.concatenate(blocks)

    def set_parameters(self, theta: np.ndarray, raw_flag=True):
        """
        Assign the free parameters from a flat vector (inverse of
        ``get_parameters``).

        Raises
        ------
        ValueError
            If `raw_flag` is ``False`` and sigma, lambda or the weights are
            negative.
        """
        theta = np.array(theta, dtype=float)
        n_positive = (
            self.K * self.optimize_sigma
            + self.D * self.optimize_lambd
            + self.K * self.optimize_weights
        )
        if not raw_flag and n_positive > 0 and np.any(theta[-n_positive:] < 0):
            raise ValueError(
                "sigma, lambda and weights must be positive "
                "when raw_flag = False"
            )

        start = 0
        if self.optimize_mu:
            self.mu = theta[: self.D * self.K].reshape(
                (self.D, self.K), order="F"
            )
            start = self.D * self.K
        if self.optimize_sigma:
            block = theta[start : start + self.K]
            self.sigma = np.exp(block) if raw_flag else block
            start += self.K
        if self.optimize_lambd:
            block = theta[start : start + self.D]
            self.lambd = np.exp(block) if raw_flag else block
            start += self.D
        if self.optimize_weights:
            eta = theta[start : start + self.K]
            if raw_flag:
                self.eta = (eta - np.max(eta)).reshape(1, -1)
                self.w = np.exp(self.eta)
            else:
                self.w = eta.reshape(1, -1)

        self._normalize()
        self._mode = None

    def remove_component(self, k: int):
        """
        Drop mixture component `k` and renormalize the weights.
        """
        if self.K == 1:
            raise ValueError("Cannot remove the last mixture component.")
        keep = np.arange(self.K) != k
        self.w = self.w[:, keep]
        self.w = self.w / np.sum(self.w)
        self.eta = self.eta[:, keep]
        self.mu = self.mu[:, keep]
        self.sigma = self.sigma[:, keep]
        self.K -= 1
        self._mode = None

    def moments(self, N: int = int(1e6), orig_flag=True, cov_flag=False):
        """
        Mean (and covariance) of the variational posterior.

        Moments in the original space are estimated by Monte Carlo, moments
        in the unconstrained space are exact.

        Parameters
        ----------
        N : int, optional
            Number of samples for the Monte Carlo estimate.
        orig_flag : bool, optional
            Original (default) or unconstrained space.
        cov_flag : bool, optional
            Also return the covariance matrix.

        Returns
        -------
        mean : np.ndarray
            Shape ``(1, D)``.
        cov : np.ndarray
            Shape ``(D, D)``, if `cov_flag`.
        """
        if orig_flag:
            x, _ = self.sample(int(N), orig_flag=True, balance_flag=True)
            mubar = np.mean(x, axis=0)
            if cov_flag:
                cov = np.atleast_2d(np.cov(x.T))
        else:
            mubar = np.sum(self.w * self.mu, axis=1)
            if cov_flag:
                cov = np.diag(
                    np.sum(self.w * self.sigma**2) * self.lambd.ravel() ** 2
                )
                dmu = self.mu - mubar[:, np.newaxis]
                cov = cov + (self.w * dmu) @ dmu.T
        if cov_flag:
            return mubar.reshape(1, -1), cov
        return mubar.reshape(1, -1)

    def mode(self, orig_flag=True, n_opts: Optional[int] = None):
        """
        Find the mode of the variational posterior by multi-start local
        optimization.

        The mode of a mixture is a brittle summary and is not invariant to
        reparameterization; prefer the mean or samples.

        Parameters
        ----------
        orig_flag : bool, optional
            Search in the original (default) or unconstrained space.
        n_opts : int, optional
            Number of starts, default ``ceil(sqrt(K))``.

        Returns
        -------
        mode : np.ndarray
            Shape ``(D,)``.
        """
        if orig_flag and self._mode is not None:
            return self._mode

        if orig_flag:

            def objective(x):
                return -self.log_pdf(x, orig_flag=True).item()

        else:

            def objective(x):
                y, dy = self.log_pdf(x, orig_flag=False, grad_flag=True)
                return -y.item(), -dy

        if n_opts is None:
            n_opts = int(np.ceil(np.sqrt(self.K)))

        bounds = None
        if orig_flag:
            eps = np.sqrt(np.finfo(float).eps)
            bounds = list(
                zip(
                    self.parameter_transformer.lb_orig.ravel() + eps,
                    self.parameter_transformer.ub_orig.ravel() - eps,
                )
            )

        best_x, best_f = None, np.inf
        for k in range(n_opts):
            candidates, _ = self.sample(int(1e4), orig_flag)
            if k == 0:
                centres = self.mu.T
                if orig_flag:
                    centres = self.parameter_transformer.inverse(centres)
                candidates = np.concatenate([candidates, centres])
            values = self.log_pdf(candidates, orig_flag=orig_flag).ravel()
            x0 = candidates[np.argmax(values)]
            res = minimize(objective, x0=x0, bounds=bounds, jac=not orig_flag)
            if res.fun < best_f:
                best_x, best_f = res.x, float(res.fun)

        if orig_flag:
            self._mode = best_x
        return best_x

    def mtv(
        self,
        vp2: VariationalPosterior = None,
        samples: np.ndarray = None,
        N: int = int(1e5),
    ):
        """
        Marginal total variation distance to another posterior, per
        dimension.

        The other posterior is given either as a ``VariationalPosterior`` or
        as an array of samples. Marginals are estimated with Gaussian kernel
        density estimates on a common grid.

        Returns
        -------
        mtv : np.ndarray
            Shape ``(1, D)``, each entry in [0, 1].

        Raises
        ------
        ValueError
            If neither `vp2` nor `samples` is given.
        """
        if vp2 is None and samples is None:
            raise ValueError("Either vp2 or samples have to be not None")
        xx1, _ = self.sample(N, True, True)
        xx2 = vp2.sample(N, True, True)[0] if vp2 is not None else samples

        mtv = np.zeros((1, self.D))
        for d in range(self.D):
            lo = min(np.min(xx1[:, d]), np.min(xx2[:, d]))
            hi = max(np.max(xx1[:, d]), np.max(xx2[:, d]))
            pad = (hi - lo) / 10
            grid = np.linspace(lo - pad, hi + pad, 2**12)
            yy1 = gaussian_kde(xx1[:, d])(grid)
            yy2 = gaussian_kde(xx2[:, d])(grid)
            yy1 /= trapezoid(yy1, grid)
            yy2 /= trapezoid(yy2, grid)
            mtv[0, d] = 0.5 * trapezoid(np.abs(yy1 - yy2), grid)
        return np.clip(mtv, 0, 1)

    def kl_div(
        self,
        vp2: VariationalPosterior = None,
        samples: np.ndarray = None,
        N: int = int(1e5),
        gauss_flag: bool = False,
    ):
        """
        Forward and reverse Kullback-Leibler divergence to another
        posterior.

        Parameters
        ----------
        vp2 : VariationalPosterior, optional
            The other posterior.
        samples : np.ndarray, optional
            Samples from the other posterior (only with `gauss_flag`).
        N : int, optional
            Number of Monte Carlo samples, by default ``int(1e5)``.
        gauss_flag : bool, optional
            Compute the divergence between Gaussians with the same moments
            as the two posteriors instead of the Monte Carlo estimate.

        Returns
        -------
        kl_div : np.ndarray
            ``[KL(self || vp2), KL(vp2 || self)]``, both non-negative.

        Raises
        ------
        ValueError
            If neither `vp2` nor `samples` is given, or if `vp2` is missing
            without `gauss_flag`.
        """
        if samples is None and vp2 is None:
            raise ValueError("Either vp2 or samples have to be not None")
        if not gauss_flag and vp2 is None:
            raise ValueError(
                "Unless the KL divergence is gaussianized, VP2 is required."
            )

        if gauss_flag:
            if N == 0:
                raise ValueError(
                    "Analytical moments are available only for the "
                    "transformed space."
                )
            q1mu, q1sigma = self.moments(N, True, True)
            if vp2 is not None:
                q2mu, q2sigma = vp2.moments(N, True, True)
            else:
                q2mu = np.mean(samples, axis=0)
                q2sigma = np.atleast_2d(np.cov(samples.T))
            kls = kl_div_mvn(q1mu, q1sigma, q2mu, q2sigma)
        else:
            minp = sys.float_info.min
            kls = np.zeros(2)
            for i, (p, q) in enumerate(((self, vp2), (vp2, self))):
                xx, _ = p.sample(N, True, True)
                log_p = p.log_pdf(xx, True).ravel()
                log_q = q.log_pdf(xx, True).ravel()
                log_p[~np.isfinite(log_p)] = 0.0
                log_q[~np.isfinite(log_q)] = np.log(minp)
                kls[i] = np.mean(log_p - log_q)

        return np.maximum(0, kls)

    def plot(
        self,
        n_samples: int = int(1e5),
        title: str = None,
        training_points: np.ndarray = None,
        plot_vp_centres: bool = False,
        plot_style: dict = None,
    ):
        """
        Corner plot of the 1D and 2D marginals of the posterior.

        Parameters
        ----------
        n_samples : int, optional
            Number of posterior samples behind the plot.
        title : str, optional
            The figure title.
        training_points : np.ndarray, optional
            Points in the original space to overlay (e.g. the surrogate's
            training inputs).
        plot_vp_centres : bool, optional
            Mark the component means, default ``False``.
        plot_style : dict, optional
            Style overrides under the keys ``"corner"`` (passed to
            ``corner.corner``), ``"data"`` and ``"vp_centre"``.

        Returns
        -------
        fig : matplotlib.figure.Figure
        """
        plot_style = {} if plot_style is None else plot_style
        Xs, _ = self.sample(n_samples)

        fig = plt.figure(figsize=(6, 6))
        corner_style = {
            "fig": fig,
            "labels": [f"$x_{i}$" for i in range(self.D)],
        }
        corner_style.update(plot_style.get("corner", {}))
        fig = corner.corner(Xs, quiet=True, **corner_style)
        axes = np.array(fig.axes).reshape((self.D, self.D))

        overlays = []
        if training_points is not None:
            style = {"s": 15, "color": "blue", "facecolors": "none"}
            style.update(plot_style.get("data", {}))
            overlays.append(("scatter", np.atleast_2d(training_points), style))
        if plot_vp_centres:
            style = {"marker": "x", "color": "red"}
            style.update(plot_style.get("vp_centre", {}))
            centres = self.parameter_transformer.inverse(self.mu.T)
            overlays.append(("centres", centres, style))

        for r in range(1, self.D):
            for c in range(r):
                for kind, pts, style in overlays:
                    if kind == "scatter":
                        axes[r, c].scatter(pts[:, c], pts[:, r], **style)
                    else:
                        axes[r, c].plot(
                            pts[:, c], pts[:, r], linestyle="none", **style
                        )

        if title is not None:
            fig.suptitle(title)
        fig.tight_layout(pad=0.5)
        return fig

    def __str__(self, arr_size_thresh=10):
        return "VariationalPosterior:" + indent(
            f"""
dimension = {self.D},
num. components = {self.K},
means: {summarize(self.mu, arr_size_thresh)},
weights: {summarize(self.w, arr_size_thresh)},
sigma (per-component scale): {summarize(self.sigma, arr_size_thresh)},
lambda (per-dimension scale): {summarize(self.lambd, arr_size_thresh)},
stats = {format_dict(self.stats, arr_size_thresh=arr_size_thresh)}""",
            "    ",
        )

    def __repr__(self, arr_size_thresh=10):
        return full_repr(
            self,
            "VariationalPosterior",
            order=["D", "K", "mu", "w", "sigma", "lambd", "stats"],
            arr_size_thresh=arr_size_thresh,
        )

    def _short_repr(self):
        return object.__repr__(self)
