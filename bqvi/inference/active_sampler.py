import copy
import logging
import math

import numpy as np

from bqvi.acquisition import make_acquisition_function
from bqvi.evaluation_ledger import EvaluationLedger
from bqvi.optimizers import CMAESOptimizer, OptimizationError
from bqvi.parameter_transformer import ParameterTransformer
from bqvi.stats import get_hpd
from bqvi.surrogate import SurrogateModel
from bqvi.timer import Timer
from bqvi.variational_posterior import VariationalPosterior

from .elbo import neg_elcbo
from .iteration_history import IterationHistory
from .optimization_state import OptimizationState
from .options import Options
from .surrogate_fit import refresh_surrogate, train_surrogate
from .variational_fit import optimize_vp

logger = logging.getLogger("BQVI")


class ActiveSampler:
    """
    Choose and evaluate new points of the target.

    Before a surrogate exists, the sampler evaluates the initial design.
    Afterwards each new point maximizes an acquisition function over a
    random search set, refined by CMA-ES; the surrogate is updated after
    each point so that the points of a batch spread out.

    Parameters
    ----------
    options : Options
        Run options.
    ledger : EvaluationLedger
        The evaluation ledger; every evaluation goes through it.
    parameter_transformer : ParameterTransformer
        Maps between the original and the unconstrained space.

    Attributes
    ----------
    acq_fcns : list of AcquisitionFunction
        The candidate acquisition functions (``search_acq_fcn``).
    timer : Timer
        Time spent evaluating the target and refitting within a batch.
    """

    def __init__(
        self,
        options: Options,
        ledger: EvaluationLedger,
        parameter_transformer: ParameterTransformer,
    ):
        self.options = options
        self.ledger = ledger
        self.parameter_transformer = parameter_transformer
        acq = options["search_acq_fcn"]
        if not isinstance(acq, (list, tuple)):
            acq = [acq]
        self.acq_fcns = [make_acquisition_function(a) for a in acq]
        if options["init_design"] not in ("plausible", "narrow"):
            raise ValueError(
                "The option 'init_design' must be 'plausible' or 'narrow' "
                f"but was {options['init_design']!r}."
            )
        self.timer = Timer()

    def sample(
        self,
        optim_state: OptimizationState,
        n_new: int,
        surrogate: SurrogateModel = None,
        vp: VariationalPosterior = None,
        iteration_history: IterationHistory = None,
        hyp_dict: dict = None,
    ):
        """
        Acquire up to ``n_new`` new points.

        Parameters
        ----------
        optim_state : OptimizationState
            State of the run; the starting cache and the search bounds are
            updated in place.
        n_new : int
            Number of points of the batch. Evaluations are capped by the
            remaining budget.
        surrogate : SurrogateModel, optional
            The current surrogate, ``None`` for the initial design.
        vp : VariationalPosterior, optional
            The current variational posterior (required with a surrogate).
        iteration_history : IterationHistory, optional
            Needed to decide on full updates within the batch.
        hyp_dict : dict, optional
            Hyperparameter summary, for full updates within the batch.

        Returns
        -------
        surrogate : SurrogateModel
            The surrogate, updated with the new points.
        vp : VariationalPosterior
            The variational posterior (refitted only with full updates).
        """
        self.timer.reset()
        if surrogate is None:
            self._initial_design(optim_state, n_new)
            return surrogate, vp
        return self._active_search(
            optim_state, n_new, surrogate, vp, iteration_history, hyp_dict
        )

    def _initial_design(self, optim_state, n_new):
        """
        Evaluate the provided starting points, then fill the batch with
        random points of the plausible box.
        """
        options = self.options
        x0 = optim_state.cache_x_orig
        y0 = optim_state.cache_y_orig
        n_provided, D = x0.shape

        if n_provided > n_new:
            logger.info(
                "More than %s initial points have been provided, using "
                "only the first %s points.",
                n_new,
                n_new,
            )
        Xs_orig = np.copy(x0[:n_new])
        ys = np.copy(y0[:n_new])
        optim_state.cache_x_orig = np.zeros((0, D))
        optim_state.cache_y_orig = np.zeros(0)

        Xs = self.parameter_transformer(Xs_orig) if Xs_orig.size else Xs_orig
        n_random = n_new - Xs.shape[0]
        if n_random > 0:
            plb, pub = optim_state.plb_tran, optim_state.pub_tran
            if options["init_design"] == "plausible" or Xs.shape[0] == 0:
                random_Xs = np.random.rand(n_random, D) * (pub - plb) + plb
            else:
                random_Xs = (np.random.rand(n_random, D) - 0.5) * 0.1 * (
                    pub - plb
                ) + Xs[0]
                random_Xs = np.minimum(np.maximum(random_Xs, plb), pub)
            Xs = np.concatenate((Xs, random_Xs))
            ys = np.concatenate((ys, np.full(n_random, np.nan)))

        for x, y_orig in zip(Xs, ys):
            if np.isfinite(y_orig):
                self.ledger.add(x, y_orig)
            elif optim_state.remaining_budget() > 0:
                self.timer.start_timer("fun_time")
                self.ledger(x)
                self.timer.stop_timer("fun_time")

    def _full_update_enabled(self, optim_state, iteration_history):
        options = self.options
        if not (
            options["active_sample_vp_update"]
            or options["active_sample_gp_update"]
        ):
            return False
        recent_warmup = (
            optim_state.iter - options["active_sample_full_update_past_warmup"]
            <= optim_state.last_warmup
        )
        unreliable = bool(iteration_history) and (
            iteration_history["r_index"][-1]
            > options["active_sample_full_update_threshold"]
        )
        return recent_warmup or unreliable

    def _active_search(
        self, optim_state, n_new, surrogate, vp, iteration_history, hyp_dict
    ):
        options = self.options
        full_update = (
            self._full_update_enabled(optim_state, iteration_history)
            and n_new > 1
        )
        if full_update:
            options_update = options.with_overrides(
                gp_tol_opt=options["gp_tol_opt_active"],
                gp_tol_opt_mcmc=options["gp_tol_opt_mcmc_active"],
                tol_weight=0,
            )
            recompute_var_post_old = optim_state.recompute_var_post
            vp0 = copy.deepcopy(vp)
            if hyp_dict is None:
                hyp_dict = {}

        # The hedge picks one acquisition function for the whole batch
        if optim_state.hedge is not None:
            optim_state.hedge.choose()
            idx_acq = optim_state.hedge.chosen

        for i in range(n_new):
            if optim_state.remaining_budget() == 0:
                break
            if optim_state.hedge is None:
                idx_acq = np.random.randint(len(self.acq_fcns))
            acq_fcn = self.acq_fcns[idx_acq]

            X_search, idx_cache = self._search_points(
                options["ns_search"], optim_state, vp
            )
            acq_fast = acq_fcn(X_search, surrogate, vp, self.ledger, optim_state)
            if options["search_cache_frac"] > 0:
                order = np.argsort(acq_fast)
                optim_state.search_cache = X_search[order]
                idx = order[0]
            else:
                idx = np.argmin(acq_fast)
            x_acq = X_search[idx].copy()
            idx_cache_acq = idx_cache[idx]

            if options["search_optimizer"] != "none":
                x_opt = self._refine(
                    acq_fcn, x_acq, acq_fast[idx], surrogate, vp, optim_state
                )
                if x_opt is not None:
                    x_acq = x_opt
                    idx_cache_acq = np.nan

            idx_new = self._evaluate(x_acq, idx_cache_acq, optim_state)

            # The surrogate is not needed after the last point of the batch
            if i + 1 < n_new:
                if full_update:
                    surrogate, vp = self._full_update(
                        optim_state,
                        surrogate,
                        vp,
                        iteration_history,
                        hyp_dict,
                        options_update,
                    )
                else:
                    surrogate = self._quick_update(surrogate, idx_new)

            self._expand_search_bounds(optim_state, x_acq)

        if full_update:
            optim_state.recompute_var_post = recompute_var_post_old
            vp = self._keep_better(vp0, vp, surrogate, optim_state)

        return surrogate, vp

    def _search_points(
        self,
        n_points: int,
        optim_state: OptimizationState,
        vp: VariationalPosterior,
    ):
        """
        Random search set for the acquisition function.

        The set mixes points of the starting cache, of the search cache,
        heavy-tailed samples of the posterior, samples of a Gaussian with
        the running posterior moments, of Gaussians fitted to the
        high-density training points, of a box around them, and plain
        posterior samples. It is clipped to the search bounds.

        Returns
        -------
        X_search : np.ndarray, shape (n_points, D)
            Search points in the unconstrained space.
        idx_cache : np.ndarray, shape (n_points,)
            Index in the starting cache of each point, ``nan`` for others.

        Raises
        ------
        ValueError
            If the search fractions add up to more than one.
        """
        options = self.options
        lb_search, ub_search = optim_state.lb_search, optim_state.ub_search
        D = ub_search.shape[1]
        x0 = optim_state.cache_x_orig

        X_search = np.zeros((0, D))
        idx_cache = np.zeros(0)
        if x0.shape[0] > 0:
            n_cache = math.ceil(n_points * options["cache_frac"])
            idx_cache = np.random.permutation(x0.shape[0])[
                : min(n_cache, x0.shape[0])
            ].astype(float)
            X_search = self.parameter_transformer(x0[idx_cache.astype(int)])

        n_random = n_points - X_search.shape[0]
        if n_random <= 0:
            return np.clip(X_search, lb_search, ub_search), idx_cache

        batches = []
        n_search_cache = round(options["search_cache_frac"] * n_random)
        if n_search_cache > 0 and len(optim_state.search_cache) > 0:
            batches.append(
                np.asarray(optim_state.search_cache)[:n_search_cache]
            )

        n_heavy = round(options["heavy_tail_search_frac"] * n_random)
        if n_heavy > 0:
            batches.append(
                vp.sample(n_heavy, orig_flag=False, balance_flag=True, df=3)[0]
            )

        n_mvn = round(options["mvn_search_frac"] * n_random)
        if n_mvn > 0:
            if optim_state.run_mean is not None:
                mu_bar = optim_state.run_mean
                sigma_bar = optim_state.run_cov
            else:
                mu_bar, sigma_bar = vp.moments(orig_flag=False, cov_flag=True)
            batches.append(
                np.random.multivariate_normal(
                    np.ravel(mu_bar), sigma_bar, size=n_mvn
                )
            )

        X, y = self.ledger.query()
        n_hpd = round(options["hpd_search_frac"] * n_random)
        if n_hpd > 0:
            batches.append(self._hpd_points(n_hpd, X, y, D))

        n_box = round(options["box_search_frac"] * n_random)
        if n_box > 0:
            X_hpd = get_hpd(X, y, options["hpd_frac"])[0]
            if X_hpd.shape[0] == 0:
                X_hpd = X
            X_diam = np.max(X_hpd, axis=0) - np.min(X_hpd, axis=0)
            if np.all(np.isfinite(lb_search)) and np.all(
                np.isfinite(ub_search)
            ):
                box_lb, box_ub = lb_search, ub_search
            else:
                prange = optim_state.pub_tran - optim_state.plb_tran
                box_lb = optim_state.plb_tran - 3 * prange
                box_ub = optim_state.pub_tran + 3 * prange
            box_lb = np.maximum(np.min(X_hpd, axis=0) - 0.5 * X_diam, box_lb)
            box_ub = np.minimum(np.max(X_hpd, axis=0) + 0.5 * X_diam, box_ub)
            batches.append(
                np.random.rand(n_box, D) * (box_ub - box_lb) + box_lb
            )

        n_taken = sum(b.shape[0] for b in batches)
        if n_taken > n_random:
            raise ValueError(
                f"A maximum of {n_random} points should be randomly sampled "
                f"but {n_taken} were sampled. Please validate the search "
                "fraction options."
            )
        n_vp = n_random - n_taken
        if n_vp > 0:
            batches.append(vp.sample(n_vp, orig_flag=False, balance_flag=True)[0])

        X_search = np.concatenate([X_search] + batches)
        idx_cache = np.concatenate((idx_cache, np.full(n_random, np.nan)))
        return np.clip(X_search, lb_search, ub_search), idx_cache

    def _hpd_points(self, n_hpd, X, y, D):
        """Samples of Gaussians fitted to nested high-density subsets."""
        hpd_max = self.options["hpd_frac"]
        hpd_min = hpd_max / 8
        hpd_fracs = np.sort(
            np.concatenate(
                (
                    np.random.uniform(size=4) * (hpd_max - hpd_min) + hpd_min,
                    [hpd_min, hpd_max],
                )
            )
        )
        n_per_frac = np.diff(
            np.round(np.linspace(0, n_hpd, len(hpd_fracs) + 1))
        ).astype(int)

        samples = []
        for frac, n in zip(hpd_fracs, n_per_frac):
            if n == 0:
                continue
            X_hpd = get_hpd(X, y, frac)[0]
            if X_hpd.shape[0] < 2:
                mu_bar = X[np.argmax(y)]
                sigma_bar = np.cov(X, rowvar=False)
            else:
                mu_bar = np.mean(X_hpd, axis=0)
                sigma_bar = np.cov(X_hpd, rowvar=False, bias=True)
            sigma_bar = np.atleast_2d(sigma_bar)
            if sigma_bar.shape != (D, D):
                sigma_bar = np.ones((D, D)) * sigma_bar
            samples.append(
                np.random.multivariate_normal(mu_bar, sigma_bar, size=n)
            )
        if not samples:
            return np.zeros((0, D))
        return np.concatenate(samples)

    def _refine(self, acq_fcn, x0, f_val_old, surrogate, vp, optim_state):
        """
        Local search of the acquisition function from the best search
        point. Returns the improved point, or ``None``.
        """
        options = self.options
        lb_search, ub_search = optim_state.lb_search, optim_state.ub_search
        if np.all(np.isfinite(lb_search)) and np.all(np.isfinite(ub_search)):
            lb = np.minimum(x0, lb_search)
            ub = np.maximum(x0, ub_search)
        else:
            X = surrogate.X
            xrange = np.max(X, axis=0) - np.min(X, axis=0)
            lb = np.minimum(np.min(X, axis=0), x0) - 0.1 * xrange
            ub = np.maximum(np.max(X, axis=0), x0) + 0.1 * xrange

        if acq_fcn.log_flag:
            tol_fun = 1e-2
        else:
            tol_fun = max(1e-12, abs(f_val_old * 1e-3))

        if options["search_optimizer"] != "cmaes":
            raise ValueError(
                "Unknown search optimizer "
                f"{options['search_optimizer']!r}; use 'cmaes' or 'none'."
            )
        if options["search_cmaes_vp_init"]:
            _, sigma = vp.moments(orig_flag=False, cov_flag=True)
        else:
            X_hpd = get_hpd(surrogate.X, surrogate.y, options["hpd_frac"])[0]
            sigma = np.cov(X_hpd, rowvar=False, bias=True)
        insigma = np.sqrt(np.diag(np.atleast_2d(sigma)))

        optimizer = CMAESOptimizer(
            sigma0=float(np.max(insigma)),
            tol_fun=tol_fun,
            max_fun_evals=options["search_max_fun_evals"],
        )

        def objective(x):
            return acq_fcn(
                x, surrogate, vp, self.ledger, optim_state
            ).item()

        try:
            x_opt, f_opt = optimizer.optimize(
                objective, x0, bounds=(lb.ravel(), ub.ravel())
            )
        except OptimizationError as err:
            logger.debug("Acquisition search failed: %s", err)
            return None
        if f_opt < f_val_old:
            return np.asarray(x_opt).ravel()
        return None

    def _evaluate(self, x, idx_cache, optim_state):
        """
        Evaluate the target at ``x``, or take the value from the starting
        cache when the point comes from it.
        """
        y_orig = np.nan
        if np.isfinite(idx_cache):
            idx_cache = int(idx_cache)
            y_orig = optim_state.cache_y_orig[idx_cache]
            optim_state.cache_x_orig = np.delete(
                optim_state.cache_x_orig, idx_cache, 0
            )
            optim_state.cache_y_orig = np.delete(
                optim_state.cache_y_orig, idx_cache, 0
            )
        self.timer.start_timer("fun_time")
        if np.isfinite(y_orig):
            _, _, idx_new = self.ledger.add(x, y_orig)
        else:
            _, _, idx_new = self.ledger(x)
        self.timer.stop_timer("fun_time")
        return idx_new

    def _quick_update(self, surrogate, idx_new):
        """
        Update the surrogate posterior with the new point, keeping the
        hyperparameters.
        """
        ledger = self.ledger
        if not ledger.valid[idx_new]:
            return surrogate
        if ledger.S is None and ledger.n_evals[idx_new, 0] == 1:
            surrogate.update(ledger.X[idx_new], ledger.y[idx_new])
            return surrogate
        return refresh_surrogate(surrogate, ledger)

    def _full_update(
        self,
        optim_state,
        surrogate,
        vp,
        iteration_history,
        hyp_dict,
        options_update,
    ):
        """Retrain the surrogate and refit the posterior after a point."""
        if self.options["active_sample_gp_update"]:
            surrogate, _, optim_state.sn2_hpd, _ = train_surrogate(
                surrogate,
                hyp_dict,
                optim_state,
                self.ledger,
                iteration_history,
                options_update,
            )
        else:
            surrogate = refresh_surrogate(surrogate, self.ledger)

        if self.options["active_sample_vp_update"]:
            n_fast_opts = math.ceil(
                options_update["ns_elbo_incr"]
                * options_update.eval("ns_elbo", {"K": vp.K})
            )
            try:
                vp, _, _ = optimize_vp(
                    options_update,
                    optim_state,
                    vp,
                    surrogate,
                    n_fast_opts,
                    1,
                )
            except OptimizationError as err:
                logger.debug("Variational refit within the batch failed: %s", err)
        return surrogate, vp

    def _keep_better(self, vp0, vp, surrogate, optim_state):
        """
        Return the posterior from before the batch if its ELBO under the
        updated surrogate beats the refitted one.
        """
        theta0 = vp0.get_parameters()
        theta = vp.get_parameters()
        if theta0.size == theta.size and np.all(theta0 == theta):
            return vp
        if vp.stats is None:
            return vp0
        if optim_state.entropy_switch or vp0.K == 1:
            ns_ent = 0
        else:
            ns_ent = math.ceil(
                self.options.eval("ns_ent_fine", {"K": vp0.K}) / vp0.K
            )
        elbo0 = -neg_elcbo(
            theta0, surrogate, vp0, 0.0, ns_ent, compute_grad=False
        )[0]
        if elbo0 > vp.stats["elbo"]:
            return vp0
        return vp

    def _expand_search_bounds(self, optim_state, x_new):
        """
        Widen the search bounds when a new point lands within 5% of them,
        within the hard bounds.
        """
        x_new = np.atleast_2d(x_new)
        delta = 0.05 * (optim_state.ub_search - optim_state.lb_search)
        idx = np.abs(x_new - optim_state.lb_search) < delta
        optim_state.lb_search[idx] = np.maximum(
            optim_state.lb_tran[idx], optim_state.lb_search[idx] - delta[idx]
        )
        idx = np.abs(x_new - optim_state.ub_search) < delta
        optim_state.ub_search[idx] = np.minimum(
            optim_state.ub_tran[idx], optim_state.ub_search[idx] + delta[idx]
        )
