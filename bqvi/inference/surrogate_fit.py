"""Training of the Gaussian-process surrogate of the log joint."""

import logging
import math

import numpy as np

from bqvi.evaluation_ledger import EvaluationLedger
from bqvi.surrogate import MeanFunctionKind, SurrogateModel

from .iteration_history import EventTag, IterationHistory
from .optimization_state import OptimizationState
from .options import Options

logger = logging.getLogger("BQVI")

# Errors of the GP library that trigger the fallback to the previous fit
FIT_ERRORS = (np.linalg.LinAlgError, ValueError, FloatingPointError)


def train_surrogate(
    surrogate: SurrogateModel,
    hyp_dict: dict,
    optim_state: OptimizationState,
    ledger: EvaluationLedger,
    iteration_history: IterationHistory,
    options: Options,
):
    """
    Fit the surrogate to the current training set.

    Hyperparameters are sampled (or optimized, once sampling is stable)
    starting from the best previous hyperparameters and a few earlier
    solutions. If the fit fails numerically, the previous hyperparameters
    (the starting ones on the first fit) are kept, the posterior is
    recomputed with the new data, and the iteration is tagged
    ``FIT_FALLBACK``.

    Parameters
    ----------
    surrogate : SurrogateModel
        The surrogate of the previous iteration (refitted in place).
    hyp_dict : dict
        Hyperparameter summary: ``hyp`` (last hyperparameters), ``full``
        (samples before thinning), ``logp`` and ``run_cov`` (running
        covariance of the samples).
    optim_state : OptimizationState
        State of the run.
    ledger : EvaluationLedger
        Source of the training set.
    iteration_history : IterationHistory
        Records of the previous iterations.
    options : Options
        Run options.

    Returns
    -------
    surrogate : SurrogateModel
        The trained surrogate.
    n_gp : int
        Number of hyperparameter samples.
    sn2_hpd : float
        Estimate of the observation noise variance in the high-density
        region.
    hyp_dict : dict
        The updated hyperparameter summary.
    """
    for key in ("hyp", "full", "logp", "run_cov"):
        hyp_dict.setdefault(key, None)

    X_train, y_train, S_train = ledger.query(return_noise=True)
    s2_train = None if S_train is None else S_train**2
    previous = surrogate.copy() if surrogate.n_samples > 0 else None

    mean_kind = MeanFunctionKind.from_option(options["gp_mean_fun"])
    hyp0, bounds, priors = surrogate.hyperparameter_setup(
        X_train,
        y_train,
        mean_kind,
        options,
        optim_state.plb_tran,
        optim_state.pub_tran,
        optim_state.uncertainty_handling_level,
    )
    last_r_index = (
        iteration_history[-1].r_index if len(iteration_history) > 0 else np.inf
    )
    n_gp = _hyperparameter_sample_count(optim_state, options, last_r_index)
    if hyp_dict["hyp"] is None or np.shape(hyp_dict["hyp"])[-1] != hyp0.size:
        hyp_dict["hyp"] = hyp0.copy()

    hyp_cov = hyperparameter_covariance(
        optim_state, iteration_history, options, hyp_dict
    )
    gp_train = training_options(
        optim_state, iteration_history, options, hyp_cov, n_gp
    )
    if gp_train["widths"] is not None and np.size(
        gp_train["widths"]
    ) != np.size(hyp0):
        gp_train["widths"] = None

    starts = _starting_points(
        optim_state, iteration_history, hyp_dict, gp_train["init_N"]
    )

    try:
        surrogate.fit(
            X_train,
            y_train,
            s2_train,
            mean_kind=mean_kind,
            priors=priors,
            n_samples=n_gp,
            hyp0=starts,
            bounds=bounds,
            train_options=gp_train,
        )
    except FIT_ERRORS as err:
        logger.warning(
            "Surrogate fit failed (%s: %s); keeping the previous (or "
            "starting) hyperparameters.",
            type(err).__name__,
            err,
        )
        if previous is None:
            # No earlier fit: use the default starting hyperparameters
            fallback_hyp = hyp0
        else:
            surrogate = previous
            fallback_hyp = surrogate.hyperparameters()
        surrogate.refresh(X_train, y_train, s2_train, hyp=fallback_hyp)
        hyp_dict["hyp"] = np.atleast_2d(fallback_hyp)
        optim_state.events.append(EventTag.FIT_FALLBACK)
        n_gp = surrogate.n_samples
    else:
        hyp_dict["hyp"] = surrogate.hyperparameters()
        hyp_dict["full"] = surrogate.hyp_full
        hyp_dict["logp"] = surrogate.log_priors

    _update_run_cov(hyp_dict, optim_state, options)
    sn2_hpd = surrogate.noise_variance_hpd()
    return surrogate, n_gp, sn2_hpd, hyp_dict


def _hyperparameter_sample_count(optim_state, options, r_index=np.inf):
    """
    Number of hyperparameter samples.

    The count decreases with the size of the training set and, below 1,
    with the reliability index of the last iteration. Once the solution
    has been stable, or ``stable_gp_sampling`` training points or
    ``stable_gp_vp_k`` components are reached, the count drops to
    ``stable_gp_samples`` for the rest of the run.
    """
    N = optim_state.N
    if optim_state.stop_sampling == 0:
        n_gp = options["ns_gp_max"] / np.sqrt(N)
        if optim_state.warmup:
            n_gp = min(n_gp, options["ns_gp_max_warmup"])
        else:
            n_gp = min(n_gp, options["ns_gp_max_main"])
        if np.isfinite(r_index):
            n_gp = max(1, n_gp * min(1.0, r_index))

        if (
            optim_state.stability_reached
            or N >= options["stable_gp_sampling"]
            or optim_state.K >= options["stable_gp_vp_k"]
        ):
            optim_state.stop_sampling = N

    if optim_state.stop_sampling > 0:
        n_gp = options["stable_gp_samples"]
        if not optim_state.stop_gp_sampling:
            optim_state.stop_gp_sampling = True
            optim_state.events.append(EventTag.STABLE_GP_SAMPLING)
    return int(round(n_gp))


def _starting_points(optim_state, iteration_history, hyp_dict, init_N):
    """
    Previous best hyperparameters, plus those of the second half of the
    past iterations (at most ``init_N / 2`` of them).
    """
    current = np.atleast_2d(hyp_dict["hyp"])
    starts = np.empty((0, current.shape[1]))
    if init_N > 0 and optim_state.iter > 0 and iteration_history:
        surrogates = iteration_history["gp"]
        for i in range(math.ceil((len(surrogates) + 1) / 2) - 1, len(surrogates)):
            if surrogates[i] is None or surrogates[i].n_samples == 0:
                continue
            hyp = np.atleast_2d(surrogates[i].hyperparameters())
            if hyp.shape[1] == starts.shape[1]:
                starts = np.concatenate((starts, hyp))
        if starts.shape[0] > init_N / 2:
            keep = np.random.choice(
                starts.shape[0], math.ceil(init_N / 2), replace=False
            )
            starts = starts[keep]
    starts = np.concatenate((starts, current))
    return np.unique(starts, axis=0)


def training_options(
    optim_state: OptimizationState,
    iteration_history: IterationHistory,
    options: Options,
    hyp_cov: np.ndarray,
    n_gp: int,
):
    """
    Options of the GP hyperparameter training for this iteration.

    The slice sampler is widened with the covariance of past samples. The
    number of random starting points follows a cubic schedule from
    ``gp_train_n_init`` down to ``gp_train_n_init_final``; a reliable
    previous iteration (``r_index`` below ``gp_retrain_threshold``) skips
    the random starts altogether.

    Returns
    -------
    gp_train : dict
        Options for ``gpyreg.GP.fit``.

    Raises
    ------
    ValueError
        If the hyperparameter sampler is unknown.
    """
    iteration = optim_state.iter
    if iteration > 0 and iteration_history:
        r_index = iteration_history["r_index"][iteration - 1]
    else:
        r_index = np.inf

    gp_train = {
        "thin": options["gp_sample_thin"],
        "init_method": options["gp_train_init_method"],
        "tol_opt": options["gp_tol_opt"],
        "tol_opt_mcmc": options["gp_tol_opt_mcmc"],
        "widths": None,
    }

    if options["gp_hyp_sampler"] != "slicesample":
        raise ValueError(
            "Unknown MCMC sampler for GP hyperparameters "
            f"{options['gp_hyp_sampler']!r}."
        )
    gp_train["sampler"] = "slicesample"
    if options["gp_sample_widths"] > 0 and hyp_cov is not None:
        width_mult = np.maximum(options["gp_sample_widths"], r_index)
        hyp_widths = np.sqrt(np.diag(hyp_cov))
        gp_train["widths"] = np.maximum(hyp_widths, 1e-3) * width_mult

    # Number of random starting points as a function of the training set
    a = -(options["gp_train_n_init"] - options["gp_train_n_init_final"])
    b = -3 * a
    c = 3 * a
    d = options["gp_train_n_init"]
    span = min(options["max_fun_evals"], 1e3) - options["fun_eval_start"]
    if span > 0:
        x = (optim_state.n_eff - options["fun_eval_start"]) / span
    else:
        # The initial design already spends the whole budget
        x = 1.0
    x = min(max(x, 0.0), 1.0)
    init_N = max(round(a * x**3 + b * x**2 + c * x + d), 9)

    if optim_state.recompute_var_post:
        gp_train["burn"] = gp_train["thin"] * n_gp
        gp_train["init_N"] = init_N
        gp_train["opts_N"] = 1 if n_gp > 0 else 2
    else:
        gp_train["burn"] = gp_train["thin"] * 3
        if iteration > 1 and r_index < options["gp_retrain_threshold"]:
            gp_train["init_N"] = 0
            gp_train["opts_N"] = 0 if n_gp > 0 else 1
        else:
            gp_train["init_N"] = init_N
            gp_train["opts_N"] = 1 if n_gp > 0 else 2

    gp_train["n_samples"] = int(n_gp)
    gp_train["burn"] = int(round(gp_train["burn"]))
    return gp_train


def hyperparameter_covariance(
    optim_state: OptimizationState,
    iteration_history: IterationHistory,
    options: Options,
    hyp_dict: dict,
):
    """
    Covariance of the surrogate hyperparameters across recent iterations.

    With ``weighted_hyp_cov``, the samples of past iterations are pooled
    with weights that decay by ``hyp_run_weight`` per evaluation (faster
    when the posterior changed a lot, as measured by sKL), stopping once
    the weight drops below ``tol_cov_weight``. Otherwise the running
    covariance is returned.

    Returns
    -------
    hyp_cov : np.ndarray or None
        ``None`` when no samples are available.
    """
    if optim_state.iter <= 0 or not iteration_history:
        return None
    if not options["weighted_hyp_cov"]:
        return hyp_dict["run_cov"]

    n_iter = len(iteration_history)
    surrogates = iteration_history["gp"]
    skl = iteration_history["skl"]
    func_count = iteration_history["func_count"]

    w_list, hyp_list = [], []
    w = 1.0
    for i in range(n_iter):
        j = n_iter - 1 - i
        if i > 0:
            n_new = max(1, func_count[j + 1] - func_count[j])
            with np.errstate(divide="ignore"):
                diff_mult = max(
                    1,
                    np.log(
                        skl[j + 1]
                        / options["tol_skl"]
                        * options["fun_evals_per_iter"]
                    ),
                )
            w *= options["hyp_run_weight"] ** (n_new * diff_mult)
        if w < options["tol_cov_weight"]:
            break
        hyp = None if surrogates[j] is None else surrogates[j].hyp_full
        if hyp is None:
            continue
        if hyp_list and hyp_list[0].shape[1] != hyp.shape[1]:
            continue
        hyp_n = hyp.shape[0]
        hyp_list.append(hyp)
        w_list.append(np.full((hyp_n, 1), w / hyp_n))

    if not hyp_list:
        return hyp_dict["run_cov"]

    w_all = np.concatenate(w_list)
    hyp_all = np.concatenate(hyp_list)
    w_all /= np.sum(w_all)
    if hyp_all.shape[0] < 2 or np.sum(w_all**2) >= 1:
        return hyp_dict["run_cov"]
    mu_star = np.sum(hyp_all * w_all, axis=0)
    centered = hyp_all - mu_star
    hyp_cov = (centered * w_all).T @ centered
    return hyp_cov / (1 - np.sum(w_all**2))


def _update_run_cov(hyp_dict, optim_state, options):
    """
    Running average of the covariance of the hyperparameter samples,
    decayed by ``hyp_run_weight`` per evaluation since the last update.
    """
    full = hyp_dict["full"]
    if full is None or full.shape[0] < 2:
        hyp_dict["run_cov"] = None
        optim_state.hyp_run_cov = None
    else:
        hyp_cov = np.cov(full.T)
        run_cov = hyp_dict["run_cov"]
        n_new = optim_state.func_count - optim_state.hyp_run_n
        if (
            run_cov is None
            or np.shape(run_cov) != np.shape(hyp_cov)
            or options["hyp_run_weight"] == 0
        ):
            hyp_dict["run_cov"] = hyp_cov
        else:
            w = options["hyp_run_weight"] ** n_new
            hyp_dict["run_cov"] = (1 - w) * hyp_cov + w * run_cov
        optim_state.hyp_run_cov = hyp_dict["run_cov"]
    optim_state.hyp_run_n = optim_state.func_count


def refresh_surrogate(surrogate: SurrogateModel, ledger: EvaluationLedger):
    """
    Recompute the surrogate posterior on the current training set with
    unchanged hyperparameters (e.g. after trimming data).
    """
    X_train, y_train, S_train = ledger.query(return_noise=True)
    s2_train = None if S_train is None else S_train**2
    surrogate.refresh(X_train, y_train, s2_train)
    return surrogate
