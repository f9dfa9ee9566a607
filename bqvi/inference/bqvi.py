import copy
import logging
import math
import os
import sys
from textwrap import indent

import numpy as np

from bqvi.acquisition import AcquisitionHedge
from bqvi.evaluation_ledger import EvaluationLedger
from bqvi.formatting import full_repr, summarize
from bqvi.optimizers import OptimizationError
from bqvi.parameter_transformer import ParameterTransformer
from bqvi.stats import kl_div_mvn
from bqvi.surrogate import GPyRegSurrogate, MeanFunctionKind
from bqvi.timer import Timer
from bqvi.variational_posterior import VariationalPosterior

from .active_sampler import ActiveSampler
from .best_iterate import determine_best_iterate
from .iteration_history import EventTag, IterationHistory, IterationRecord
from .optimization_state import OptimizationState
from .options import Options
from .surrogate_fit import refresh_surrogate, train_surrogate
from .termination import TerminationEvaluator
from .variational_fit import evaluate_vp, final_boost, optimize_vp, update_K
from .warmup import WarmupController

# Logger levels of the display / log file options
_LOG_LEVELS = {
    "off": logging.WARN,
    "final": logging.WARN,
    "notify": logging.WARN,
    "iter": logging.INFO,
    "full": logging.DEBUG,
}


class BQVI:
    """
    Posterior and model inference via Bayesian-quadrature variational
    inference.

    ``BQVI`` computes a mixture-of-Gaussians approximation of the posterior
    and a lower bound on the log normalization constant (log marginal
    likelihood) of an unnormalized log posterior that is expensive to
    evaluate. The log density is modeled with a Gaussian-process surrogate,
    new evaluation points are chosen by active sampling, and the
    variational posterior is fitted to the surrogate by optimizing the
    ELBO, whose expected log joint is integrated analytically.

    Initialize a ``BQVI`` object to set up the inference problem, then run
    ``optimize()``.

    Parameters
    ----------
    log_density : callable
        The target unnormalized log posterior (log joint). It accepts ``x``
        of shape ``(D,)`` and returns a float, or a tuple ``(value, sd)``
        when ``options["specify_target_noise"]`` is true.
    x0 : np.ndarray, optional
        Starting point(s), one per row. By default the center of the
        plausible box.
    lower_bounds, upper_bounds : np.ndarray, optional
        Hard bounds of the parameters, ``-inf`` / ``inf`` (the default) for
        unbounded variables. Scalars are replicated in each dimension.
    plausible_lower_bounds, plausible_upper_bounds : np.ndarray, optional
        A finite box of high posterior probability mass inside the hard
        bounds. If missing, it is estimated from ``x0`` (with several
        starting points) or taken from the hard bounds.
    options : dict, optional
        Options overriding the defaults of the option tables.
    log_prior : callable, optional
        Separate log prior; ``log_density`` is then the log likelihood.

    Raises
    ------
    ValueError
        For an invalid configuration: missing dimension (neither ``x0`` nor
        plausible bounds), inconsistent bounds, ``x0`` outside the hard
        bounds, unknown option names, or unsupported mean function,
        acquisition function or bounded transform.
    TypeError
        If ``log_prior`` is neither callable nor ``None``.
    """

    def __init__(
        self,
        log_density: callable,
        x0: np.ndarray = None,
        lower_bounds: np.ndarray = None,
        upper_bounds: np.ndarray = None,
        plausible_lower_bounds: np.ndarray = None,
        plausible_upper_bounds: np.ndarray = None,
        options: dict = None,
        log_prior: callable = None,
    ):
        # Set up root logger (only changes stuff if not initialized yet)
        logging.basicConfig(stream=sys.stdout, format="%(message)s")

        if x0 is None:
            if (
                plausible_lower_bounds is None
                or plausible_upper_bounds is None
            ):
                raise ValueError(
                    "If no starting point is provided, the plausible bounds "
                    "need to be specified to determine the dimension."
                )
            x0 = np.full(np.atleast_2d(plausible_lower_bounds).shape, np.nan)

        x0 = np.asarray(x0)
        if x0.ndim == 1:
            logging.getLogger("BQVI").warning("Reshaping x0 to row vector.")
            x0 = x0.reshape((1, -1))
        self.D = x0.shape[1]

        # Load basic and advanced options and validate the names
        config_path = os.path.join(
            os.path.dirname(os.path.realpath(__file__)), "option_configs"
        )
        basic_path = os.path.join(config_path, "basic_options.ini")
        advanced_path = os.path.join(config_path, "advanced_options.ini")
        self.options = Options(
            basic_path,
            evaluation_parameters={"D": self.D},
            user_options=options,
        )
        self.options.load_options_file(
            advanced_path, evaluation_parameters={"D": self.D}
        )
        self.options.update_defaults()
        self.options.validate_option_names([basic_path, advanced_path])
        MeanFunctionKind.from_option(self.options["gp_mean_fun"])

        self.logger = self._init_logger("_init")

        if lower_bounds is None:
            lower_bounds = np.full((1, self.D), -np.inf)
        if upper_bounds is None:
            upper_bounds = np.full((1, self.D), np.inf)

        (
            self.x0,
            self.lower_bounds,
            self.upper_bounds,
            self.plausible_lower_bounds,
            self.plausible_upper_bounds,
        ) = self._bounds_check(
            x0,
            lower_bounds,
            upper_bounds,
            plausible_lower_bounds,
            plausible_upper_bounds,
        )

        f_vals = self._check_f_vals(self.options["f_vals"], self.x0)

        if not np.all(np.isfinite(self.x0)):
            # Start from the center of the plausible region
            self.x0 = 0.5 * (
                self.plausible_lower_bounds + self.plausible_upper_bounds
            )
            f_vals = np.full(self.x0.shape[0], np.nan)

        self.parameter_transformer = ParameterTransformer(
            self.D,
            self.lower_bounds,
            self.upper_bounds,
            self.plausible_lower_bounds,
            self.plausible_upper_bounds,
            transform_type=self.options["bounded_transform"],
        )

        self.vp = VariationalPosterior(
            D=self.D,
            K=self.options["k_warmup"],
            x0=self.parameter_transformer(self.x0),
            parameter_transformer=self.parameter_transformer,
        )
        if not self.options["warmup"]:
            self.vp.optimize_weights = self.options["variable_weights"]

        if callable(log_prior):
            self.log_prior = log_prior
            self.log_likelihood = log_density
            if self.options["specify_target_noise"]:

                def log_joint(theta):
                    log_likelihood, noise_est = log_density(theta)
                    return log_likelihood + log_prior(theta), noise_est

            else:

                def log_joint(theta):
                    return log_density(theta) + log_prior(theta)

        elif log_prior is None:
            log_joint = log_density
        else:
            raise TypeError("`log_prior` must be a callable or `None`.")
        self.log_joint = log_joint

        uncertainty_handling_level = self._uncertainty_handling_level()
        self.ledger = EvaluationLedger(
            fun=log_joint,
            D=self.D,
            noise_flag=uncertainty_handling_level > 0,
            uncertainty_handling_level=uncertainty_handling_level,
            cache_size=self.options["cache_size"],
            parameter_transformer=self.parameter_transformer,
        )

        self.optim_state = OptimizationState(
            self.ledger,
            self.options,
            self.parameter_transformer,
            self.lower_bounds,
            self.upper_bounds,
            self.plausible_lower_bounds,
            self.plausible_upper_bounds,
        )
        self.optim_state.cache_x_orig = self.x0.copy()
        self.optim_state.cache_y_orig = f_vals

        self.sampler = ActiveSampler(
            self.options, self.ledger, self.parameter_transformer
        )
        if self.options["acq_hedge"]:
            self.optim_state.hedge = AcquisitionHedge(
                self.sampler.acq_fcns,
                gamma=self.options["hedge_gamma"],
                beta=self.options["hedge_beta"],
                decay=self.options["hedge_decay"],
                max_reward=self.options["hedge_max"],
            )
        self.termination = TerminationEvaluator(self.options)
        self.warmup_controller = WarmupController(self.options, self.ledger)

        # The surrogate of the current iteration, None until the first fit
        self.surrogate = None
        self.hyp_dict = {}
        self.iteration = -1
        self.is_finished = False
        self.iteration_history = IterationHistory()
        self.timer = Timer()

    def _uncertainty_handling_level(self):
        if self.options["specify_target_noise"]:
            return 2
        if len(self.options["uncertainty_handling"]) > 0:
            return 1
        return 0

    def _check_f_vals(self, f_vals, x0):
        """
        Log-density values provided for the starting points, ``nan`` where
        none is given.
        """
        N0 = x0.shape[0]
        if f_vals is None or np.size(f_vals) == 0:
            return np.full(N0, np.nan)
        f_vals = np.ravel(np.asarray(f_vals, dtype=float))
        if f_vals.size != N0:
            raise ValueError(
                "The number of values in options['f_vals'] "
                f"({f_vals.size}) must match the number of starting points "
                f"({N0})."
            )
        return f_vals

    def _bounds_check(
        self,
        x0: np.ndarray,
        lower_bounds: np.ndarray,
        upper_bounds: np.ndarray,
        plausible_lower_bounds: np.ndarray = None,
        plausible_upper_bounds: np.ndarray = None,
    ):
        """
        Validate the bounds and starting points, moving them inside the
        feasible region when they are only numerically off.

        Returns
        -------
        x0, lb, ub, plb, pub : np.ndarray
            The checked starting points and bounds, bounds as ``(1, D)``
            rows.

        Raises
        ------
        ValueError
            If the bounds are malformed, unordered or half-open, or if
            ``x0`` lies outside the hard bounds.
        """
        D = x0.shape[1]
        lb = _as_bound_row(lower_bounds, D, "Lower bounds")
        ub = _as_bound_row(upper_bounds, D, "Upper bounds")
        if not np.all(np.isreal(x0)):
            raise ValueError("Starting points x0 need to be real valued.")
        x0 = x0.astype(float)

        plb, pub = plausible_lower_bounds, plausible_upper_bounds
        if plb is None or pub is None:
            plb, pub = self._guess_plausible_bounds(x0, lb, ub, plb, pub)
        plb = _as_bound_row(plb, D, "Plausible lower bounds")
        pub = _as_bound_row(pub, D, "Plausible upper bounds")

        if not (np.all(np.isfinite(plb)) and np.all(np.isfinite(pub))):
            raise ValueError(
                "Plausible interval bounds PLB and PUB need to be finite."
            )
        if np.any((lb == ub) & (ub == plb) & (plb == pub)):
            raise ValueError(
                "Fixed variables are not supported. Lower and upper bounds "
                "should be different."
            )
        if np.any(plb == pub):
            raise ValueError(
                "For all variables, plausible lower and upper bounds need "
                "to be distinct."
            )

        known = np.isfinite(x0)
        if np.any(known & ((x0 < lb) | (x0 > ub))):
            raise ValueError(
                "The starting points x0 are not inside the provided hard "
                "bounds LB and UB."
            )

        lb_eff, ub_eff = _effective_bounds(lb, ub)
        if np.any(lb_eff >= ub_eff):
            raise ValueError(
                "Hard bounds LB and UB are numerically too close. Make them "
                "more separate."
            )

        if np.any(known & ((x0 < lb_eff) | (x0 > ub_eff))):
            self.logger.warning(
                "The starting points x0 are on or numerically too close to "
                "the hard bounds LB and UB. Moving the initial points more "
                "inside..."
            )
            x0 = np.where(known, np.clip(x0, lb_eff, ub_eff), x0)

        _check_bound_order(lb, plb, pub, ub, strict=False)

        if np.any(plb < lb_eff) or np.any(pub > ub_eff):
            self.logger.warning(
                "For each variable, hard and plausible bounds should not be "
                "too close. Moving plausible bounds."
            )
            plb = np.maximum(plb, lb_eff)
            pub = np.minimum(pub, ub_eff)

        if np.all(known) and (np.any(x0 <= plb) or np.any(x0 >= pub)):
            self.logger.warning(
                "The starting points x0 are not inside the provided "
                "plausible bounds PLB and PUB. Expanding the plausible "
                "bounds..."
            )
            plb = np.minimum(plb, x0.min(0))
            pub = np.maximum(pub, x0.max(0))

        _check_bound_order(lb, plb, pub, ub, strict=True)

        half_open = np.isfinite(lb) != np.isfinite(ub)
        if np.any(half_open):
            raise ValueError(
                "Each variable needs to be unbounded or bounded. Variables "
                "bounded only below/above are not supported."
            )

        return x0, lb, ub, plb, pub

    def _guess_plausible_bounds(self, x0, lb, ub, plb, pub):
        """
        Fill in missing plausible bounds from the spread of a starting set,
        or from the hard bounds when ``x0`` holds a single point.
        """
        N0, D = x0.shape
        if N0 == 1:
            self.logger.warning(
                "Plausible bounds not specified and x0 is not a valid "
                "starting set. Using hard bounds instead."
            )
            plb = np.copy(lb) if plb is None else plb
            pub = np.copy(ub) if pub is None else pub
            return plb, pub

        self.logger.warning(
            "Plausible bounds not specified. Estimating plausible "
            "bounds from starting set x0..."
        )
        margin = (x0.max(0) - x0.min(0)) / N0
        if plb is None:
            plb = np.maximum(x0.min(0) - margin, lb)
        if pub is None:
            pub = np.minimum(x0.max(0) + margin, ub)
        plb = _as_bound_row(plb, D, "Plausible lower bounds")
        pub = _as_bound_row(pub, D, "Plausible upper bounds")

        collapsed = plb == pub
        if np.any(collapsed):
            plb[collapsed] = lb[collapsed]
            pub[collapsed] = ub[collapsed]
            self.logger.warning(
                "Some plausible bounds could not be determined from "
                "the starting set. Using hard bounds for those instead."
            )
        return plb, pub

    def optimize(self):
        """
        Run inference on an initialized ``BQVI`` object.

        Returns
        -------
        vp : VariationalPosterior
            The variational posterior of the best iteration (after the
            final boost, if enabled).
        results : dict
            Information about the run: ``elbo``, ``elbo_sd``,
            ``success_flag``, ``exit_code`` (1 for a stable solution, 0
            when a budget ran out), ``message``, ``iterations``,
            ``func_count``, ``best_iter``, ``r_index``,
            ``convergence_status`` and the ``iteration_history``.

        Raises
        ------
        ValueError
            If none of the initial evaluations of the target is valid.
        """
        self.logger = self._init_logger()
        options = self.options
        optim_state = self.optim_state

        if optim_state.uncertainty_handling_level > 0:
            self.logger.info(
                "Beginning variational optimization assuming NOISY "
                "observations of the log-joint"
            )
        else:
            self.logger.info(
                "Beginning variational optimization assuming EXACT "
                "observations of the log-joint."
            )

        if self.is_finished:
            self.logger.warning("Continuing optimization from previous state.")
            self.is_finished = False
            self.vp = copy.deepcopy(self.iteration_history[-1].vp)

        self._log_column_headers()
        display_format = self._display_format()
        exit_code = 0
        message = ""

        while not self.is_finished:
            self.iteration += 1
            optim_state.iter = self.iteration
            optim_state.events = []
            self.timer.reset()
            vp_old = copy.deepcopy(self.vp)

            if self.iteration == 0 and optim_state.warmup:
                optim_state.events.append(EventTag.START_WARMUP)
            self.termination.force_entropy_switch(optim_state)

            ## Actively sample new points into the training set
            self.timer.start_timer("active_sampling")
            if self.iteration == 0:
                n_new = options["fun_eval_start"]
            else:
                n_new = min(
                    options["fun_evals_per_iter"],
                    optim_state.remaining_budget(),
                )

            if optim_state.skip_active_sampling:
                optim_state.skip_active_sampling = False
                optim_state.events.append(EventTag.SKIP_ACTIVE_SAMPLING)
            else:
                self.surrogate, self.vp = self.sampler.sample(
                    optim_state,
                    n_new,
                    self.surrogate,
                    self.vp,
                    self.iteration_history,
                    self.hyp_dict,
                )
            self.timer.stop_timer("active_sampling")

            if self.iteration == 0 and optim_state.N == 0:
                raise ValueError(
                    "None of the initial evaluations of the target returned "
                    "a valid log-density. Check the target and the bounds."
                )

            ## Train the surrogate
            self.timer.start_timer("gp_train")
            if self.surrogate is None:
                self.surrogate = GPyRegSurrogate(
                    self.D, optim_state.uncertainty_handling_level
                )
            (
                self.surrogate,
                n_gp,
                optim_state.sn2_hpd,
                self.hyp_dict,
            ) = train_surrogate(
                self.surrogate,
                self.hyp_dict,
                optim_state,
                self.ledger,
                self.iteration_history,
                options,
            )
            self.timer.stop_timer("gp_train")

            ## Optimize variational parameters
            self.timer.start_timer("variational_fit")
            K_new = update_K(optim_state, self.iteration_history, options)
            n_fast_opts = math.ceil(options.eval("ns_elbo", {"K": self.vp.K}))
            if optim_state.recompute_var_post or options["always_refit_vp"]:
                n_slow_opts = options["elbo_starts"]
                optim_state.recompute_var_post = False
            else:
                # Only incremental change from previous iteration
                n_fast_opts = math.ceil(n_fast_opts * options["ns_elbo_incr"])
                n_slow_opts = 1

            pruned = 0
            try:
                self.vp, _, pruned = optimize_vp(
                    options,
                    optim_state,
                    self.vp,
                    self.surrogate,
                    n_fast_opts,
                    n_slow_opts,
                    K_new,
                )
            except OptimizationError as err:
                self.logger.warning(
                    "Variational optimization failed (%s); keeping the "
                    "previous variational posterior.",
                    err,
                )
                if vp_old.stats is None:
                    # Nothing fitted yet: score the starting posterior
                    self.vp = evaluate_vp(vp_old, self.surrogate, options)
                else:
                    self.vp = copy.deepcopy(vp_old)
                optim_state.events.append(EventTag.FIT_FALLBACK)
            if pruned > 0:
                optim_state.events.append(EventTag.REMOVE_COMPONENTS)
            optim_state.K = self.vp.K
            optim_state.pruned = pruned
            elbo = self.vp.stats["elbo"]
            elbo_sd = self.vp.stats["elbo_sd"]
            self.timer.stop_timer("variational_fit")

            ## Finalize iteration
            self.timer.start_timer("finalize")
            skl = max(
                0,
                0.5
                * np.sum(
                    self.vp.kl_div(
                        vp2=vp_old, N=int(1e5), gauss_flag=options["kl_gauss"]
                    )
                ),
            )
            lcb_max = self.surrogate.lcb_max(options["elcbo_impro_weight"])
            skl_true = self._skl_true()
            self._update_running_moments()
            self._update_hedge(elbo, elbo_sd)

            r_index, elcbo_impro = self.termination.compute_reliability_index(
                optim_state, self.iteration_history, elbo, elbo_sd, skl
            )
            optim_state.r_index = r_index
            (
                self.is_finished,
                exit_code,
                message,
                stable,
            ) = self.termination.check(
                optim_state, self.iteration_history, r_index, elcbo_impro
            )
            self.vp.stats["stable"] = stable

            # Check if we are still warming up
            if optim_state.warmup and self.iteration > 0:
                if self.warmup_controller.check(
                    optim_state, self.iteration_history, elbo, elbo_sd, lcb_max
                ):
                    ended = self.warmup_controller.end_warmup(
                        optim_state, r_index, self.vp
                    )
                    self.surrogate = refresh_surrogate(
                        self.surrogate, self.ledger
                    )
                    if ended:
                        self.hyp_dict["run_cov"] = None
            self.timer.stop_timer("finalize")

            timing = self.timer.durations()
            timing["total"] = sum(timing.values())
            timing.update(self.sampler.timer.durations())
            record = IterationRecord(
                iter=self.iteration,
                func_count=self.ledger.func_count,
                cache_count=self.ledger.cache_count,
                n_eff=optim_state.n_eff,
                K=self.vp.K,
                elbo=elbo,
                elbo_sd=elbo_sd,
                elcbo_impro=elcbo_impro,
                skl=skl,
                skl_true=skl_true,
                r_index=r_index,
                n_gp=n_gp,
                gp_noise_hpd=optim_state.sn2_hpd,
                lcb_max=lcb_max,
                entropy_kind=optim_state.entropy_kind,
                warmup=optim_state.warmup,
                pruned=pruned,
                timing=timing,
                events=tuple(optim_state.events),
                vp=copy.deepcopy(self.vp),
                gp=self.surrogate.copy(),
            )
            self.iteration_history.append(record)
            if stable:
                self.iteration_history.mark_stable(self.iteration)

            self.logger.info(
                display_format.format(
                    self.iteration,
                    self.ledger.func_count,
                    elbo,
                    elbo_sd,
                    skl,
                    self.vp.K,
                    r_index,
                    record.action,
                )
            )

        return self._finalize(exit_code, message, vp_old, display_format)

    def _finalize(self, exit_code, message, vp_old, display_format):
        """
        Pick the best iteration, boost it, and report the results.
        """
        options = self.options
        idx_best, _, was_stable = determine_best_iterate(
            self.iteration_history,
            safe_sd=options["best_safe_sd"],
            frac_back=options["best_frac_back"],
            rank_criterion=options["rank_criterion"],
        )
        best = self.iteration_history[idx_best]
        self.vp = copy.deepcopy(best.vp)
        self.vp.stats["stable"] = was_stable

        if options["do_final_boost"]:
            try:
                self.vp, changed = final_boost(
                    self.vp, best.gp, self.optim_state, options
                )
            except OptimizationError as err:
                self.logger.warning("Final boost failed (%s).", err)
                changed = False
            if changed:
                skl = max(
                    0,
                    0.5
                    * np.sum(
                        self.vp.kl_div(
                            vp2=vp_old,
                            N=int(1e5),
                            gauss_flag=options["kl_gauss"],
                        )
                    ),
                )
                self.logger.info(
                    display_format.format(
                        np.inf,
                        self.ledger.func_count,
                        self.vp.stats["elbo"],
                        self.vp.stats["elbo_sd"],
                        skl,
                        self.vp.K,
                        best.r_index,
                        EventTag.FINALIZE.value,
                    )
                )

        # A solution that was not stable cannot count as converged
        if not was_stable:
            exit_code = 0
        success_flag = exit_code == 1

        elbo = self.vp.stats["elbo"]
        elbo_sd = self.vp.stats["elbo_sd"]
        self.logger.warning(message)
        self.logger.warning(
            "Estimated ELBO: {:.3f} +/-{:.3f}.".format(elbo, elbo_sd)
        )
        if not success_flag:
            self.logger.warning(
                "Caution: Returned variational solution may have not "
                "converged."
            )

        self.ledger.finalize()
        results = self._create_result_dict(
            idx_best, message, success_flag, exit_code
        )
        return copy.deepcopy(self.vp), results

    def _skl_true(self):
        """
        Gaussianized symmetrized KL divergence to the true moments, if
        they are known.
        """
        true_mean = self.options["true_mean"]
        true_cov = self.options["true_cov"]
        if (
            true_mean is None
            or true_cov is None
            or not np.all(np.isfinite(true_mean))
            or not np.all(np.isfinite(true_cov))
        ):
            return np.nan
        mubar_orig, sigma_orig = self.vp.moments(int(1e6), True, True)
        kl = kl_div_mvn(mubar_orig, sigma_orig, true_mean, true_cov)
        return 0.5 * np.sum(kl)

    def _update_running_moments(self):
        """
        Running average of the posterior moments in the unconstrained
        space, weighted by ``moments_run_weight`` per new training point.
        """
        optim_state = self.optim_state
        mubar, sigma = self.vp.moments(orig_flag=False, cov_flag=True)
        if optim_state.run_mean is None or optim_state.run_cov is None:
            optim_state.run_mean = mubar.reshape(1, -1)
            optim_state.run_cov = sigma
        else:
            n_new = optim_state.N - optim_state.last_run_avg
            w_run = self.options["moments_run_weight"] ** max(n_new, 0)
            optim_state.run_mean = w_run * optim_state.run_mean + (
                1 - w_run
            ) * mubar.reshape(1, -1)
            optim_state.run_cov = w_run * optim_state.run_cov + (
                1 - w_run
            ) * sigma
        optim_state.last_run_avg = optim_state.N

    def _update_hedge(self, elbo, elbo_sd):
        """
        Reward the acquisition function chosen by the hedge with the ELCBO
        change of this iteration.
        """
        hedge = self.optim_state.hedge
        if hedge is None or not self.iteration_history:
            return
        weight = self.options["elcbo_impro_weight"]
        last = self.iteration_history[-1]
        elcbo_delta = (elbo - weight * elbo_sd) - (
            last.elbo - weight * last.elbo_sd
        )
        recent = math.ceil(
            self.termination.tol_stable_iters(self.optim_state) / 2
        )
        recent_elbo_sd = np.append(
            self.iteration_history["elbo_sd"][-(recent - 1) :]
            if recent > 1
            else [],
            elbo_sd,
        )
        hedge.update(
            elcbo_delta,
            recent_elbo_sd,
            min_beta=self.options["tol_improvement"],
        )

    def _create_result_dict(
        self,
        idx_best: int,
        termination_message: str,
        success_flag: bool,
        exit_code: int,
    ):
        output = {}
        output["function"] = str(self.ledger.fun)
        # Bounded variables are unbounded after the transform
        if np.all(np.isinf(self.lower_bounds)) and np.all(
            np.isinf(self.upper_bounds)
        ):
            output["problem_type"] = "unconstrained"
        else:
            output["problem_type"] = "bounded"

        best = self.iteration_history[idx_best]
        output["iterations"] = self.optim_state.iter
        output["func_count"] = self.ledger.func_count
        output["best_iter"] = idx_best
        output["train_set_size"] = best.n_eff
        output["components"] = self.vp.K
        output["r_index"] = best.r_index
        output["convergence_status"] = "probable" if best.stable else "no"
        output["algorithm"] = "Bayesian-quadrature variational inference"
        output["message"] = termination_message
        output["elbo"] = self.vp.stats["elbo"]
        output["elbo_sd"] = self.vp.stats["elbo_sd"]
        output["success_flag"] = success_flag
        output["exit_code"] = exit_code
        output["iteration_history"] = self.iteration_history
        return output

    def _log_column_headers(self):
        self.logger.info(
            " Iteration  f-count    Mean[ELBO]    Std[ELBO]    "
            "sKL-iter[q]   K[q]  Convergence  Action"
        )

    @staticmethod
    def _display_format():
        display_format = " {:5.0f}      {:5.0f}   {:12.2f} {:12.2f} "
        display_format += "{:12.2f}     {:4.0f} {:10.3g}     {}"
        return display_format

    def _init_logger(self, substring=""):
        """
        Initialize the logging object.

        The level follows ``options["display"]``; ``log_file_name`` adds a
        file handler with level ``log_file_level``.

        Parameters
        ----------
        substring : str
            ``"_init"`` for the logger used while checking the
            configuration; the file is then opened with
            ``log_file_mode``, later in append mode.

        Returns
        -------
        logger : logging.Logger
            The main logging interface.
        """
        logger = logging.getLogger("BQVI")
        display = self.options.get("display")
        logger.setLevel(_LOG_LEVELS.get(display, logging.INFO))

        log_file_name = self.options.get("log_file_name")
        # One handler per log file
        for handler in list(logger.handlers):
            if not isinstance(handler, logging.FileHandler):
                continue
            if log_file_name is None or handler.baseFilename == (
                os.path.abspath(log_file_name)
            ):
                logger.removeHandler(handler)
                handler.close()

        log_file_level = self.options.get("log_file_level")
        if not (log_file_name and log_file_level):
            return logger

        if log_file_level in _LOG_LEVELS:
            level = _LOG_LEVELS[log_file_level]
        elif log_file_level in (0, 10, 20, 30, 40, 50):
            level = log_file_level
        else:
            raise ValueError(
                "Log file logging level is not a recognized string or "
                "logging level."
            )
        mode = self.options.get("log_file_mode", "a")
        file_handler = logging.FileHandler(
            filename=log_file_name, mode=mode if substring == "_init" else "a"
        )
        file_handler.setLevel(level)
        logger.addHandler(file_handler)
        return logger

    def __str__(self):
        return "BQVI:" + indent(
            f"""
dimension = {self.D},
x0: {summarize(self.x0)},
lower bounds: {summarize(self.lower_bounds)},
upper bounds: {summarize(self.upper_bounds)},
plausible lower bounds: {summarize(self.plausible_lower_bounds)},
plausible upper bounds: {summarize(self.plausible_upper_bounds)},
log-density = {getattr(self, "log_likelihood", self.log_joint)},
log-prior = {getattr(self, "log_prior", None)},
variational posterior = {str(self.vp)},
user options = {str(self.options)}""",
            "    ",
        )

    def __repr__(self, arr_size_thresh=10, expand=False):
        return full_repr(
            self,
            "BQVI",
            order=[
                "D",
                "x0",
                "lower_bounds",
                "upper_bounds",
                "plausible_lower_bounds",
                "plausible_upper_bounds",
                "log_joint",
                "vp",
                "surrogate",
                "parameter_transformer",
                "optim_state",
                "options",
            ],
            expand=expand,
            arr_size_thresh=arr_size_thresh,
        )

    def _short_repr(self):
        return object.__repr__(self)


def _as_bound_row(bounds, D, name):
    """Broadcast scalar bounds and reshape to a ``(1, D)`` float row."""
    bounds = np.atleast_1d(np.asarray(bounds))
    if bounds.size == 1:
        bounds = np.full((1, D), bounds.item())
    if bounds.size != D:
        raise ValueError(f"{name} must match problem dimension D={D}.")
    if not np.all(np.isreal(bounds)):
        raise ValueError(f"{name} need to be real valued.")
    return bounds.reshape((1, D)).astype(float)


def _effective_bounds(lb, ub, scale_factor=1e-3):
    """
    Bounds moved inwards by a fraction of the (capped) bound range.

    A hard bound at (numerically) zero is replaced by the shift itself.
    Infinite bounds stay infinite.
    """
    shift = scale_factor * np.where(np.isinf(ub - lb), 1e3, ub - lb)
    at_zero_lb = np.abs(lb) <= sys.float_info.min
    at_zero_ub = np.abs(ub) <= sys.float_info.min
    lb_eff = np.where(at_zero_lb, shift, lb + shift)
    ub_eff = np.where(at_zero_ub, -shift, ub - shift)
    lb_eff = np.where(np.isinf(lb), lb, lb_eff)
    ub_eff = np.where(np.isinf(ub), ub, ub_eff)
    return lb_eff, ub_eff


def _check_bound_order(lb, plb, pub, ub, strict):
    if strict:
        ordered = (lb < plb) & (plb < pub) & (pub < ub)
    else:
        ordered = (lb <= plb) & (plb < pub) & (pub <= ub)
    if not np.all(ordered):
        raise ValueError(
            "For each variable, hard and plausible bounds should respect "
            "the ordering LB < PLB < PUB < UB."
        )
