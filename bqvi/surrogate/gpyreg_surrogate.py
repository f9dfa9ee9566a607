import copy
import math

import gpyreg as gpr
import numpy as np
import scipy as sp

from bqvi.stats import get_hpd

from .surrogate_model import MeanFunctionKind, SurrogateModel


def _mean_function(mean_kind: MeanFunctionKind):
    if mean_kind == MeanFunctionKind.ZERO:
        return gpr.mean_functions.ZeroMean()
    if mean_kind == MeanFunctionKind.CONSTANT:
        return gpr.mean_functions.ConstantMean()
    if mean_kind == MeanFunctionKind.NEGATIVE_QUADRATIC:
        return gpr.mean_functions.NegativeQuadratic()
    raise ValueError(f"Unknown mean function {mean_kind}.")


class GPyRegSurrogate(SurrogateModel):
    """
    Gaussian-process surrogate of the log-density, backed by ``gpyreg``.

    The GP uses a squared-exponential covariance with one length scale per
    dimension and a Gaussian noise model. The noise model always carries a
    small constant term for numerical stability; with
    ``uncertainty_handling_level == 2`` the per-point noise reported by the
    target is added to it, and with level 1 it is scaled by a fitted
    multiplier.

    Parameters
    ----------
    D : int
        The dimension of the input space.
    uncertainty_handling_level : {0, 1, 2}, optional
        How observation noise is modeled, default 0 (noiseless target).

    Attributes
    ----------
    gp : gpyreg.GP
        The underlying GP, ``None`` until the first ``fit``.
    mean_kind : MeanFunctionKind
        Mean function of the current GP.
    hyp_full : np.ndarray
        Hyperparameter samples of the latest fit before thinning, one
        row per sample, or ``None`` if the fit was a pure optimization.
    log_priors : np.ndarray
        Log prior density of the samples in ``hyp_full``.
    """

    def __init__(self, D: int, uncertainty_handling_level: int = 0):
        self.D = D
        self.uncertainty_handling_level = uncertainty_handling_level
        self.gp = None
        self.mean_kind = None
        self.hyp_full = None
        self.log_priors = None

    @property
    def X(self):
        return self.gp.X

    @property
    def y(self):
        return self.gp.y

    @property
    def s2(self):
        return self.gp.s2

    @property
    def n_samples(self):
        if self.gp is None or self.gp.posteriors is None:
            return 0
        return np.size(self.gp.posteriors)

    def _new_gp(self, mean_kind: MeanFunctionKind):
        noise_f = gpr.noise_functions.GaussianNoise(
            constant_add=True,
            user_provided_add=self.uncertainty_handling_level == 2,
            scale_user_provided=self.uncertainty_handling_level == 1,
            rectified_linear_output_dependent_add=False,
        )
        self.gp = gpr.GP(
            D=self.D,
            covariance=gpr.covariance_functions.SquaredExponential(),
            mean=_mean_function(mean_kind),
            noise=noise_f,
        )
        self.mean_kind = mean_kind

    def hyperparameter_setup(
        self,
        X,
        y,
        mean_kind,
        options,
        plb_tran,
        pub_tran,
        uncertainty_level=None,
    ):
        """
        Starting point, bounds and priors of the GP hyperparameters.

        Bounds are computed from the high-posterior-density subset of the
        training set. Length scales and noise get Student-t priors: the
        length-scale prior is centred on a fraction of the plausible range,
        the noise prior on the minimum noise level.

        Parameters
        ----------
        X : np.ndarray, shape (N, D)
            Training inputs.
        y : np.ndarray, shape (N, 1)
            Training targets.
        mean_kind : MeanFunctionKind or str
            The mean function.
        options : Options
            Run options (``hpd_frac``, ``tol_gp_noise``, ``noise_size``,
            ``upper_gp_length_factor``, ``gp_quadratic_mean_bound``,
            ``tol_sd``, ``gp_length_prior_mean``, ``gp_length_prior_std``).
        plb_tran, pub_tran : np.ndarray, shape (1, D)
            Plausible bounds in the unconstrained space.
        uncertainty_level : int, optional
            Overrides the level given at construction.

        Returns
        -------
        hyp0 : np.ndarray
            Initial hyperparameter vector.
        bounds : dict
            Hyperparameter bounds in ``gpyreg`` format.
        priors : dict
            Hyperparameter priors in ``gpyreg`` format.
        """
        mean_kind = MeanFunctionKind.from_option(mean_kind)
        if uncertainty_level is not None:
            self.uncertainty_handling_level = uncertainty_level
        self._new_gp(mean_kind)
        gp = self.gp

        hpd_X, hpd_y, _, _ = get_hpd(X, y, options["hpd_frac"])
        D = self.D

        cov_bounds_info = gp.covariance.get_bounds_info(hpd_X, hpd_y)
        mean_bounds_info = gp.mean.get_bounds_info(hpd_X, hpd_y)
        noise_bounds_info = gp.noise.get_bounds_info(hpd_X, hpd_y)
        cov_x0 = cov_bounds_info["x0"]
        mean_x0 = mean_bounds_info["x0"]
        noise_x0 = noise_bounds_info["x0"]

        min_noise = options["tol_gp_noise"]
        noise_mult = None
        if self.uncertainty_handling_level == 0:
            noise_size = min_noise
            if options["noise_size"] is not None:
                noise_size = max(options["noise_size"], min_noise)
            noise_std = 0.5
        elif self.uncertainty_handling_level == 1:
            if options["noise_size"] is not None:
                noise_mult = max(options["noise_size"], min_noise)
                noise_mult_std = np.log(10) / 2
            else:
                noise_mult = 1
                noise_mult_std = np.log(10)
            noise_size = min_noise
            noise_std = np.log(10)
        else:
            noise_size = min_noise
            noise_std = 0.5
        noise_x0[0] = np.log(noise_size)
        hyp0 = np.concatenate([cov_x0, noise_x0, mean_x0])

        bounds = gp.get_bounds()
        if options["upper_gp_length_factor"] > 0:
            bounds["covariance_log_lengthscale"] = (
                -np.inf,
                np.log(
                    options["upper_gp_length_factor"] * (pub_tran - plb_tran)
                ),
            )
        bounds["noise_log_scale"] = (np.log(min_noise), np.inf)

        if mean_kind == MeanFunctionKind.CONSTANT:
            bounds["mean_const"] = (-np.inf, np.min(hpd_y))
        elif (
            mean_kind == MeanFunctionKind.NEGATIVE_QUADRATIC
            and options["gp_quadratic_mean_bound"]
        ):
            delta_y = max(options["tol_sd"], min(D, np.ptp(hpd_y)))
            bounds["mean_const"] = (-np.inf, np.max(hpd_y) + delta_y)

        # Lower bounds from the HPD subset, which are wider than the ones
        # the full training set would give.
        bounds["covariance_log_outputscale"] = (
            cov_bounds_info["LB"][D],
            np.nan,
        )
        bounds["covariance_log_lengthscale"] = (
            cov_bounds_info["LB"][:D],
            np.nan,
        )

        priors = gp.get_priors()
        priors["noise_log_scale"] = (
            "student_t",
            (np.log(noise_size), noise_std, 3),
        )
        if noise_mult is not None:
            priors["noise_provided_log_multiplier"] = (
                "student_t",
                (np.log(noise_mult), noise_mult_std, 3),
            )
        priors["covariance_log_lengthscale"] = (
            "student_t",
            (
                np.log(
                    options["gp_length_prior_mean"] * (pub_tran - plb_tran)
                ),
                options["gp_length_prior_std"],
                3,
            ),
        )
        return hyp0, bounds, priors

    def fit(
        self,
        X,
        y,
        s2=None,
        mean_kind=MeanFunctionKind.NEGATIVE_QUADRATIC,
        priors=None,
        n_samples=0,
        hyp0=None,
        bounds=None,
        train_options=None,
    ):
        """
        Fit (or sample) the GP hyperparameters.

        Parameters
        ----------
        X, y : np.ndarray
            Training set.
        s2 : np.ndarray, optional
            Observation noise variance per point.
        mean_kind : MeanFunctionKind
            Mean function. A new GP is built when it differs from the
            current one.
        priors, bounds : dict, optional
            Hyperparameter priors and bounds in ``gpyreg`` format.
        n_samples : int, optional
            Number of hyperparameter samples, 0 for optimization only.
        hyp0 : np.ndarray, optional
            Starting points, one per row.
        train_options : dict, optional
            Extra ``gpyreg`` training options (sampler, thinning, burn-in,
            number of starts...).

        Returns
        -------
        self : GPyRegSurrogate
        """
        mean_kind = MeanFunctionKind.from_option(mean_kind)
        if self.gp is None or self.mean_kind != mean_kind:
            self._new_gp(mean_kind)
        if bounds is not None:
            self.gp.set_bounds(bounds)
        if priors is not None:
            self.gp.set_priors(priors)

        gp_train = {} if train_options is None else dict(train_options)
        gp_train["n_samples"] = int(n_samples)
        if hyp0 is not None:
            hyp0 = np.atleast_2d(hyp0)
            if hyp0.shape[1] != np.size(self.gp.hyper_priors["mu"]):
                hyp0 = None

        _, _, res = self.gp.fit(X, y, s2, hyp0=hyp0, options=gp_train)
        if res is not None:
            self.hyp_full = res["samples"]
            self.log_priors = res["log_priors"]
        else:
            self.hyp_full = None
            self.log_priors = None
        return self

    def predict(self, X, separate_samples=False):
        return self.gp.predict(
            x_star=np.atleast_2d(X), separate_samples=separate_samples
        )

    def update(self, x_new, y_new, s2_new=None):
        x_new = np.atleast_2d(x_new)
        y_new = np.reshape(y_new, (-1, 1))
        if s2_new is not None:
            s2_new = np.reshape(s2_new, (-1, 1))
        self.gp.update(
            X_new=x_new, y_new=y_new, s2_new=s2_new, compute_posterior=True
        )

    def refresh(self, X, y, s2=None, hyp=None):
        self.gp.X = X
        self.gp.y = y
        self.gp.s2 = s2
        if hyp is None:
            self.gp.update(compute_posterior=True)
        else:
            self.gp.update(hyp=np.atleast_2d(hyp), compute_posterior=True)

    def hyperparameters(self):
        return self.gp.get_hyperparameters(as_array=True)

    def noise_variance_hpd(self, hpd_top: float = 0.2):
        """
        Estimate the observation noise variance around the top
        ``hpd_top`` fraction of the training set, averaged over
        hyperparameter samples (median over points).
        """
        gp = self.gp
        N = gp.X.shape[0]
        order = np.argsort(gp.y, axis=None)[::-1]
        hpd_N = math.ceil(hpd_top * N)
        hpd_X = gp.X[order[:hpd_N]]
        hpd_y = gp.y[order[:hpd_N]]
        hpd_s2 = None if gp.s2 is None else gp.s2[order[:hpd_N]]

        cov_N = gp.covariance.hyperparameter_count(self.D)
        noise_N = gp.noise.hyperparameter_count()
        s_N = np.size(gp.posteriors)
        sn2 = np.zeros((hpd_N, s_N))
        for s in range(s_N):
            hyp = gp.posteriors[s].hyp[cov_N : cov_N + noise_N]
            sn2[:, s : s + 1] = gp.noise.compute(hyp, hpd_X, hpd_y, hpd_s2)
        return float(np.median(np.mean(sn2, axis=1)))

    def lcb_max(self, n_sd: float = 3.0):
        """
        Maximum over training inputs of the lower confidence bound
        ``mean - n_sd * sd`` of the latent function.
        """
        f_mu, f_s2 = self.predict(self.gp.X)
        return float(np.max(f_mu - n_sd * np.sqrt(f_s2)))

    def copy(self):
        return copy.deepcopy(self)

    def expected_log_joint(
        self, vp, grad_flags, compute_var=False, separate_K=False
    ):
        r"""
        Bayesian-quadrature estimate of the expected log joint
        :math:`E_{q}[f]`, with :math:`f` the GP posterior and :math:`q`
        the mixture ``vp``.

        With a squared-exponential kernel, each component contributes a
        Gaussian convolution of the kernel, available in closed form. The
        negative-quadratic mean adds its own closed-form expectation.

        Parameters
        ----------
        vp : VariationalPosterior
            The mixture.
        grad_flags : bool or tuple of bool
            Gradients to compute with respect to ``(mu, sigma, lambda, w)``.
            Gradients are taken with respect to the raw (log / softmax)
            parameters.
        compute_var : bool, optional
            Also compute the variance of the estimate.
        separate_K : bool, optional
            Also return the per-component contributions ``I_sk`` and
            ``J_sjk``.

        Returns
        -------
        G : float
        dG : np.ndarray or None
        varG : float or None
        var_ss : float
            Variance due to hyperparameter sampling (0 with one sample).
        I_sk : np.ndarray, shape (n_samples, K), optional
        J_sjk : np.ndarray, shape (n_samples, K, K), optional
        """
        if np.isscalar(grad_flags):
            grad_flags = (bool(grad_flags),) * 4
        gp = self.gp
        D, K = vp.D, vp.K
        mu = vp.mu
        sigma = vp.sigma.ravel()
        lambd = vp.lambd.reshape(-1, 1)
        w = vp.w.ravel()
        X_t = gp.X.T
        Ns = np.size(gp.posteriors)
        quadratic = self.mean_kind == MeanFunctionKind.NEGATIVE_QUADRATIC

        cov_N = gp.covariance.hyperparameter_count(D)
        noise_N = gp.noise.hyperparameter_count()

        G = np.zeros(Ns)
        mu_grad = np.zeros((D, K, Ns))
        sigma_grad = np.zeros((K, Ns))
        lambd_grad = np.zeros((D, Ns))
        w_grad = np.zeros((K, Ns))
        varG = np.zeros(Ns) if compute_var else None
        I_sk = np.zeros((Ns, K))
        J_sjk = np.zeros((Ns, K, K)) if compute_var else None

        for s in range(Ns):
            post = gp.posteriors[s]
            hyp = post.hyp
            ell = np.exp(hyp[:D]).reshape(-1, 1)
            ln_sf2 = 2 * hyp[D]
            sum_lnell = np.sum(hyp[:D])
            m0 = 0 if self.mean_kind == MeanFunctionKind.ZERO else hyp[
                cov_N + noise_N
            ]
            if quadratic:
                offset = cov_N + noise_N + 1
                xm = hyp[offset : offset + D].reshape(-1, 1)
                omega = np.exp(hyp[offset + D : offset + 2 * D]).reshape(
                    -1, 1
                )
            alpha = post.alpha

            z = np.zeros((K, X_t.shape[1]))
            for k in range(K):
                tau_k = np.sqrt(sigma[k] ** 2 * lambd**2 + ell**2)
                lnnf_k = ln_sf2 + sum_lnell - np.sum(np.log(tau_k))
                delta_k = (mu[:, k : k + 1] - X_t) / tau_k
                z_k = np.exp(lnnf_k - 0.5 * np.sum(delta_k**2, axis=0))
                z[k] = z_k
                I_k = np.dot(z_k, alpha).item() + m0

                if quadratic:
                    I_k -= 0.5 * np.sum(
                        (
                            mu[:, k : k + 1] ** 2
                            + sigma[k] ** 2 * lambd**2
                            - 2 * mu[:, k : k + 1] * xm
                            + xm**2
                        )
                        / omega**2
                    )
                G[s] += w[k] * I_k
                I_sk[s, k] = I_k

                if grad_flags[0]:
                    dz_dmu = -(delta_k / tau_k) * z_k
                    mu_grad[:, k, s] = w[k] * np.dot(dz_dmu, alpha).ravel()
                    if quadratic:
                        mu_grad[:, k, s] -= (
                            w[k] * (mu[:, k : k + 1] - xm) / omega**2
                        ).ravel()
                if grad_flags[1]:
                    dz_dsigma = (
                        np.sum((lambd / tau_k) ** 2 * (delta_k**2 - 1), axis=0)
                        * sigma[k]
                        * z_k
                    )
                    sigma_grad[k, s] = w[k] * np.dot(dz_dsigma, alpha).item()
                    if quadratic:
                        sigma_grad[k, s] -= (
                            w[k] * sigma[k] * np.sum(lambd**2 / omega**2)
                        )
                if grad_flags[2]:
                    dz_dlambd = (
                        (sigma[k] / tau_k) ** 2 * (delta_k**2 - 1) * lambd * z_k
                    )
                    lambd_grad[:, s] += (
                        w[k] * np.dot(dz_dlambd, alpha).ravel()
                    )
                    if quadratic:
                        lambd_grad[:, s] -= (
                            w[k] * sigma[k] ** 2 * lambd / omega**2
                        ).ravel()
                if grad_flags[3]:
                    w_grad[k, s] = I_k

            if compute_var:
                sn2_eff = 1 / np.ravel(post.sW)[0].item() ** 2
                for k in range(K):
                    for j in range(k + 1):
                        tau_jk = np.sqrt(
                            (sigma[j] ** 2 + sigma[k] ** 2) * lambd**2
                            + ell**2
                        )
                        lnnf_jk = ln_sf2 + sum_lnell - np.sum(np.log(tau_jk))
                        delta_jk = (mu[:, j : j + 1] - mu[:, k : k + 1]) / tau_jk
                        J_jk = float(
                            np.exp(lnnf_jk - 0.5 * np.sum(delta_jk**2))
                        )
                        if post.L_chol:
                            J_jk -= np.dot(
                                z[k],
                                sp.linalg.solve_triangular(
                                    post.L,
                                    sp.linalg.solve_triangular(
                                        post.L, z[j], trans=1, check_finite=False
                                    ),
                                    check_finite=False,
                                ),
                            ) / sn2_eff
                        else:
                            J_jk += np.dot(z[k], np.dot(post.L, z[j]))
                        J_sjk[s, j, k] = J_jk
                        J_sjk[s, k, j] = J_jk
                        if j == k:
                            varG[s] += w[k] ** 2 * max(np.spacing(1), J_jk)
                        else:
                            varG[s] += 2 * w[j] * w[k] * J_jk

        if compute_var:
            varG = np.maximum(varG, np.spacing(1))

        dG = None
        if np.any(grad_flags):
            blocks = []
            if grad_flags[0]:
                blocks.append(mu_grad.reshape((D * K, Ns), order="F"))
            # Chain rule for the log parametrization of sigma and lambda and
            # for the softmax parametrization of w.
            if grad_flags[1]:
                blocks.append(sigma_grad * sigma[:, np.newaxis])
            if grad_flags[2]:
                blocks.append(lambd_grad * lambd)
            if grad_flags[3]:
                blocks.append(
                    w[:, np.newaxis]
                    * (w_grad - np.dot(w, w_grad)[np.newaxis, :])
                )
            dG = np.concatenate(blocks, axis=0)

        var_ss = 0.0
        if Ns > 1:
            G_bar = np.mean(G)
            if compute_var:
                varG_ss = np.sum((G - G_bar) ** 2) / (Ns - 1)
                var_ss = varG_ss + np.std(varG, ddof=1)
                varG = np.mean(varG) + varG_ss
            G = G_bar
            if dG is not None:
                dG = np.mean(dG, axis=1)
        else:
            G = G[0]
            if compute_var:
                varG = varG[0]
            if dG is not None:
                dG = dG[:, 0]

        if separate_K:
            return G, dG, varG, var_ss, I_sk, J_sjk
        return G, dG, varG, var_ss, None, None
