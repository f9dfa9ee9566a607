"""Fit of the variational posterior to the surrogate."""

import copy
import logging
import math

import numpy as np

from bqvi.optimizers import AdamOptimizer, OptimizationError, ScipyOptimizer
from bqvi.stats import get_hpd
from bqvi.surrogate import SurrogateModel
from bqvi.variational_posterior import VariationalPosterior

from .elbo import neg_elcbo
from .iteration_history import IterationHistory
from .optimization_state import OptimizationState
from .options import Options

logger = logging.getLogger("BQVI")


def update_K(
    optim_state: OptimizationState,
    iteration_history: IterationHistory,
    options: Options,
):
    """
    Number of mixture components for the next variational fit.

    During warm-up the number stays fixed. Afterwards one component is
    added when the ELCBO improved over the recent iterations and nothing
    was pruned, plus ``adaptive_k`` bonus components when the solution is
    also reliable. The number never exceeds ``k_fun_max(n_eff)`` (and never
    decreases here).

    Parameters
    ----------
    optim_state : OptimizationState
        State of the run.
    iteration_history : IterationHistory
        Records of the previous iterations.
    options : Options
        Run options.

    Returns
    -------
    K_new : int
        The new number of mixture components.
    """
    K_new = optim_state.K
    if optim_state.warmup or optim_state.iter == 0 or not iteration_history:
        return K_new

    K_max = math.ceil(options.eval("k_fun_max", {"N": optim_state.n_eff}))
    K_bonus = round(options.eval("adaptive_k", {}))
    recent_iters = math.ceil(
        0.5 * options["tol_stable_count"] / options["fun_evals_per_iter"]
    )

    lower_end = max(0, optim_state.iter - recent_iters)
    elcbos = (
        iteration_history["elbo"][lower_end:]
        - options["elcbo_impro_weight"]
        * iteration_history["elbo_sd"][lower_end:]
    )
    warmups = iteration_history["warmup"][lower_end:].astype(bool)
    elcbos_after = elcbos[~warmups]
    # Ignore two iterations right after warm-up
    elcbos_after[0 : min(2, optim_state.iter + 1)] = -np.inf
    improving_flag = (
        elcbos_after.size > 0
        and np.isfinite(elcbos_after[-1])
        and elcbos_after[-1] >= np.max(elcbos_after)
    )

    pruned = iteration_history["pruned"]
    if pruned[-1] == 0 and improving_flag:
        K_new += 1

    # Bonus components for a stable solution (speeds up exploration)
    if (
        iteration_history["r_index"][-1] < 1
        and not optim_state.recompute_var_post
        and improving_flag
    ):
        new_lower_end = max(
            0, optim_state.iter - math.ceil(0.5 * recent_iters)
        )
        if np.all(pruned[new_lower_end:] == 0):
            K_new += K_bonus

    return max(optim_state.K, min(K_new, K_max))


def _entropy_samples(options, optim_state, K, key="ns_ent"):
    """Monte Carlo entropy samples per component (0: deterministic)."""
    if optim_state.entropy_switch or K == 1:
        return 0
    return math.ceil(options.eval(key, {"K": K}) / K)


def optimize_vp(
    options: Options,
    optim_state: OptimizationState,
    vp: VariationalPosterior,
    surrogate: SurrogateModel,
    fast_opts_N: int,
    slow_opts_N: int,
    K: int = None,
):
    """
    Optimize the variational posterior against the surrogate.

    A quick sieve ranks many candidate starting points; the best
    ``slow_opts_N`` are optimized in full, the best optimum by ELCBO is
    kept, and components with negligible weight are pruned.

    Parameters
    ----------
    options : Options
        Run options.
    optim_state : OptimizationState
        State of the run.
    vp : VariationalPosterior
        The current variational posterior, basis of the candidates.
    surrogate : SurrogateModel
        The fitted surrogate.
    fast_opts_N : int
        Number of candidates evaluated by the sieve.
    slow_opts_N : int
        Number of full optimizations.
    K : int, optional
        Number of mixture components, default ``vp.K``.

    Returns
    -------
    vp : VariationalPosterior
        The optimized variational posterior, with ``stats`` filled in.
    var_ss : float
        Variance of the ELBO across surrogate hyperparameter samples.
    pruned : int
        Number of pruned components.

    Raises
    ------
    OptimizationError
        If none of the full optimizations succeeded.
    """
    if K is None:
        K = vp.K

    # No weight optimization during warm-up
    if optim_state.warmup:
        vp.optimize_weights = False

    vp0_vec, vp0_type, elcbo_beta, compute_var, ns_ent_K = sieve(
        options,
        optim_state,
        vp,
        surrogate,
        init_N=fast_opts_N,
        best_N=slow_opts_N,
        K=K,
    )
    theta_bnd = vp.get_bounds(surrogate.X, options, K)

    candidates = []
    for i in range(slow_opts_N):
        if len(vp0_vec) == 0:
            break
        # Pick a start from the best ones, cycling through the types
        if slow_opts_N == 1:
            idx = 0
        elif slow_opts_N == 2:
            wanted = (1,) if i == 0 else (2, 3)
            idx = _first_of_type(vp0_type, wanted)
        else:
            idx = _first_of_type(vp0_type, ((i % 3) + 1,))
        vp0 = vp0_vec.pop(idx)
        vp0_type = np.delete(vp0_type, idx)
        theta0 = vp0.get_parameters()

        try:
            thetas = _optimize_candidate(
                options, optim_state, vp, vp0, surrogate, theta0, theta_bnd,
                elcbo_beta, compute_var, ns_ent_K,
            )
        except OptimizationError as err:
            logger.debug("Variational optimization failed: %s", err)
            continue
        for theta in thetas:
            stats = _eval_full_elcbo(
                theta, copy.deepcopy(vp0), surrogate, elcbo_beta, options
            )
            candidates.append(stats)

    candidates = [c for c in candidates if np.isfinite(c["nelcbo"])]
    if not candidates:
        raise OptimizationError(
            "No variational optimization returned a finite ELCBO."
        )

    best = min(candidates, key=lambda c: c["nelcbo"])
    vp = best["vp"]
    vp, best, pruned = prune_components(vp, surrogate, best, options, K)
    vp.stats = _vp_stats(best)
    return vp, best["var_ss"], pruned


def evaluate_vp(
    vp: VariationalPosterior, surrogate: SurrogateModel, options: Options
):
    """
    Copy of ``vp`` with its ELBO statistics computed against
    ``surrogate``, without any optimization.

    Used when the variational optimization fails before any earlier
    solution exists.
    """
    vp = copy.deepcopy(vp)
    stats = _eval_full_elcbo(vp.get_parameters(), vp, surrogate, 0, options)
    vp.stats = _vp_stats(stats)
    return vp


def _vp_stats(best):
    return {
        "elbo": -best["nelbo"],
        "elbo_sd": np.sqrt(best["varF"]),
        "e_log_joint": best["G"],
        "e_log_joint_sd": np.sqrt(best["varG"]),
        "entropy": best["H"],
        "entropy_sd": np.sqrt(best["varH"]),
        "varF": best["varF"],
        # Unstable until proven otherwise
        "stable": False,
        "I_sk": best["I_sk"],
        "J_sjk": best["J_sjk"],
    }


def _first_of_type(vp0_type, wanted):
    hits = np.flatnonzero(np.isin(vp0_type, wanted))
    return int(hits[0]) if hits.size > 0 else 0


def _optimize_candidate(
    options,
    optim_state,
    vp,
    vp0,
    surrogate,
    theta0,
    theta_bnd,
    elcbo_beta,
    compute_var,
    ns_ent_K,
):
    """
    Run the full optimization of one candidate. Returns the parameter
    vectors whose ELCBO should be recomputed precisely (the end point and,
    with ``elcbo_midpoint``, the best iterate along the way).
    """
    if ns_ent_K == 0:
        # Deterministic entropy: smooth objective, quasi-Newton
        def objective(theta):
            F, dF, *_ = neg_elcbo(
                theta,
                surrogate,
                vp0,
                elcbo_beta,
                0,
                compute_grad=True,
                compute_var=compute_var,
                theta_bnd=theta_bnd,
            )
            return F, dF

        optimizer = ScipyOptimizer(
            method="BFGS", jac=True, tol=options["det_entropy_tol_opt"]
        )
        theta_opt, _ = optimizer.optimize(objective, theta0)
        return [theta_opt]

    if options["stochastic_optimizer"] != "adam":
        raise ValueError(
            "Unknown stochastic optimizer "
            f"{options['stochastic_optimizer']!r}."
        )

    def objective_mc(theta):
        F, dF, *_ = neg_elcbo(
            theta,
            surrogate,
            vp0,
            elcbo_beta,
            ns_ent_K,
            compute_grad=True,
            compute_var=compute_var,
            theta_bnd=theta_bnd,
        )
        return F, dF

    master_min = min(options["sgd_step_size"], 0.001)
    if optim_state.warmup or not vp.optimize_weights:
        master_max = min(0.1, options["sgd_step_size"] * 10)
    else:
        master_max = min(0.1, options["sgd_step_size"])
    optimizer = AdamOptimizer(
        tol_fun=options["tol_fun_stochastic"],
        max_iter=int(min(10000, options["max_iter_stochastic"])),
        master_min=master_min,
        master_max=max(master_min, master_max),
        master_decay=200,
    )
    theta_opt, _ = optimizer.optimize(objective_mc, theta0)
    thetas = [theta_opt]
    if options["elcbo_midpoint"] and optimizer.last_trace is not None:
        theta_lst, f_val_lst = optimizer.last_trace
        thetas.append(theta_lst[:, np.nanargmin(f_val_lst)])
    return thetas


def _eval_full_elcbo(theta, vp, surrogate, beta, options):
    """
    ELCBO with its full variance and the precise entropy estimate, without
    soft-bound penalties.
    """
    K = vp.K
    ns_ent_fine_K = math.ceil(options.eval("ns_ent_fine", {"K": K}) / K)
    if K == 1:
        ns_ent_fine_K = 0
    (
        nelbo,
        _,
        G,
        H,
        varF,
        _,
        var_ss,
        varG,
        varH,
        I_sk,
        J_sjk,
    ) = neg_elcbo(
        theta,
        surrogate,
        vp,
        0,
        ns_ent_fine_K,
        compute_grad=False,
        compute_var=True,
        separate_K=True,
    )
    return {
        "vp": vp,
        "theta": np.array(theta),
        "nelbo": nelbo,
        "nelcbo": nelbo + beta * np.sqrt(varF),
        "G": G,
        "H": H,
        "varF": varF,
        "varG": varG,
        "varH": varH,
        "var_ss": var_ss,
        "I_sk": I_sk,
        "J_sjk": J_sjk,
    }


def prune_components(vp, surrogate, stats, options, K=None):
    """
    Remove mixture components with negligible weight.

    Components with weight below ``tol_weight`` are tried one at a time in
    random order; a component is removed when doing so changes the ELCBO
    by less than ``tol_improvement * pruning_threshold_multiplier(K)``.

    Returns
    -------
    vp : VariationalPosterior
    stats : dict
        Full ELCBO statistics of the returned posterior.
    pruned : int
        Number of removed components.
    """
    if K is None:
        K = vp.K
    pruned = 0
    if not vp.optimize_weights:
        return vp, stats, pruned

    w_impro = options["elcbo_impro_weight"]
    elcbo = -stats["nelbo"] - w_impro * np.sqrt(stats["varF"])
    threshold = options["tol_improvement"] * options.eval(
        "pruning_threshold_multiplier", {"K": K}
    )
    already_checked = np.zeros(vp.K, dtype=bool)

    while vp.K > 1 and np.any(
        (vp.w.ravel() < options["tol_weight"]) & ~already_checked
    ):
        idx = np.flatnonzero(
            (vp.w.ravel() < options["tol_weight"]) & ~already_checked
        )
        idx = idx[np.random.randint(0, idx.size)]
        vp_pruned = copy.deepcopy(vp)
        vp_pruned.remove_component(idx)
        stats_pruned = _eval_full_elcbo(
            vp_pruned.get_parameters(), vp_pruned, surrogate, 0, options
        )
        elcbo_pruned = -stats_pruned["nelbo"] - w_impro * np.sqrt(
            stats_pruned["varF"]
        )

        if np.abs(elcbo_pruned - elcbo) < threshold:
            vp, stats, elcbo = vp_pruned, stats_pruned, elcbo_pruned
            already_checked = np.delete(already_checked, idx)
            pruned += 1
        else:
            already_checked[idx] = True

    return vp, stats, pruned


def sieve(
    options: Options,
    optim_state: OptimizationState,
    vp: VariationalPosterior,
    surrogate: SurrogateModel,
    init_N: int = None,
    best_N: int = 1,
    K: int = None,
):
    """
    Cheap evaluation of many candidate starting points.

    With ``best_N == 1`` all candidates are perturbations of the current
    posterior (incremental refit). Otherwise the candidates are an even mix
    of perturbed current solutions, mixtures centred on high-density
    training points, and random restarts from the training set.

    Returns
    -------
    vp0_vec : list of VariationalPosterior
        Candidates, sorted by increasing negative ELCBO.
    vp0_type : np.ndarray
        Type (1, 2 or 3) of each candidate.
    elcbo_beta : float
        Confidence weight of the objective.
    compute_var : bool
        Whether the objective needs the variance.
    ns_ent_K : int
        Monte Carlo entropy samples per component for the full fits.
    """
    if K is None:
        K = vp.K
    if init_N is None:
        init_N = math.ceil(options.eval("ns_elbo", {"K": K}))
    init_N = max(int(init_N), best_N)

    ns_ent_K = _entropy_samples(options, optim_state, K)
    ns_ent_K_fast = _entropy_samples(options, optim_state, K, "ns_ent_fast")

    elcbo_beta = 0
    compute_var = elcbo_beta != 0

    theta_bnd = vp.get_bounds(surrogate.X, options, K)
    X_star, y_star, _, _ = get_hpd(
        surrogate.X, surrogate.y, options["hpd_frac"]
    )

    if best_N == 1:
        vp0_vec, vp0_type = vb_init(vp, 1, init_N, K, X_star, y_star)
    else:
        n_third = math.ceil(init_N / 3)
        vp0_vec, vp0_type = [], []
        for vb_type, n in ((1, n_third), (2, n_third), (3, init_N - 2 * n_third)):
            vecs, types = vb_init(vp, vb_type, n, K, X_star, y_star)
            vp0_vec.extend(vecs)
            vp0_type.append(types)
        vp0_type = np.concatenate(vp0_type)

    nelcbo_fill = np.full(len(vp0_vec), np.inf)
    for i, vp0 in enumerate(vp0_vec):
        try:
            nelbo, _, _, _, varF = neg_elcbo(
                vp0.get_parameters(),
                surrogate,
                vp0,
                0,
                ns_ent_K_fast,
                compute_grad=False,
                compute_var=compute_var,
                theta_bnd=theta_bnd,
            )
        except (ValueError, FloatingPointError, np.linalg.LinAlgError):
            continue
        nelcbo_fill[i] = nelbo + elcbo_beta * np.sqrt(varF)
    nelcbo_fill[~np.isfinite(nelcbo_fill)] = np.inf

    order = np.argsort(nelcbo_fill, kind="stable")
    vp0_vec = [vp0_vec[i] for i in order]
    return vp0_vec, vp0_type[order], elcbo_beta, compute_var, ns_ent_K


def vb_init(
    vp: VariationalPosterior,
    vb_type: int,
    opts_N: int,
    K_new: int,
    X_star: np.ndarray,
    y_star: np.ndarray,
):
    """
    Random starting points for the variational optimization.

    Parameters
    ----------
    vp : VariationalPosterior
        The current posterior.
    vb_type : {1, 2, 3}
        1: perturb the current solution (adding components near existing
        ones when ``K_new > vp.K``); 2: centre the components on the
        highest-density training points; 3: centre them on random training
        points.
    opts_N : int
        Number of candidates.
    K_new : int
        Number of components of the candidates.
    X_star, y_star : np.ndarray
        High-density training points and their values.

    Returns
    -------
    vp0_vec : list of VariationalPosterior
    type_vec : np.ndarray, shape (opts_N,)
    """
    if vb_type not in (1, 2, 3):
        raise ValueError(
            "Unknown type for initialization of variational posteriors."
        )
    D, K = vp.D, vp.K
    N_star = X_star.shape[0]
    type_vec = np.full(opts_N, vb_type)
    lambd0 = vp.lambd.reshape(-1, 1).copy()
    mu0 = vp.mu.copy()
    w0 = vp.w.reshape(1, -1).copy()
    sigma0 = vp.sigma.reshape(1, -1).copy()

    def spread(mu):
        if mu.shape[1] > 1:
            return np.var(mu, axis=1, ddof=1)
        return np.var(X_star, axis=0, ddof=1)

    if vb_type == 2:
        if vp.optimize_mu:
            order = np.argsort(y_star, axis=None)[::-1]
            idx_order = np.tile(
                range(min(K_new, N_star)), math.ceil(K_new / N_star)
            )
            mu0 = X_star[order[idx_order[:K_new]], :].T
        sigma0 = np.sqrt(
            np.mean(spread(mu0) / lambd0.ravel() ** 2) / K_new
        ) * np.exp(0.2 * np.random.randn(1, K_new))

    vp0_list = []
    for i in range(opts_N):
        add_jitter = i > 0 or vb_type == 3
        mu = mu0.copy()
        sigma = sigma0.copy()
        lambd = lambd0.copy()
        w = w0.copy()

        if vb_type == 1:
            # Spawn new components near existing ones
            for i_new in range(K, K_new):
                idx = np.random.randint(0, K)
                mu = np.hstack((mu, mu[:, idx : idx + 1]))
                sigma = np.hstack((sigma, sigma[:, idx : idx + 1]))
                mu[:, i_new : i_new + 1] += (
                    0.5 * sigma[0, i_new] * lambd * np.random.randn(D, 1)
                )
                if vp.optimize_sigma:
                    sigma[0, i_new] *= np.exp(0.2 * np.random.randn())
                if vp.optimize_weights:
                    xi = 0.25 + 0.25 * np.random.rand()
                    w = np.hstack((w, xi * w[:, idx : idx + 1]))
                    w[0, idx] *= 1 - xi
        else:
            if vb_type == 3 and vp.optimize_mu:
                order = np.random.permutation(N_star)
                idx_order = np.tile(
                    range(min(K_new, N_star)), math.ceil(K_new / N_star)
                )
                mu = X_star[order[idx_order[:K_new]], :].T
            if vb_type == 3 and vp.optimize_sigma:
                sigma = np.sqrt(np.mean(spread(mu)) / K_new) * np.exp(
                    0.2 * np.random.randn(1, K_new)
                )
            if vp.optimize_lambd and N_star > 1:
                lambd = np.reshape(np.std(X_star, axis=0, ddof=1), (-1, 1))
                lambd *= np.sqrt(D / np.sum(lambd**2))
            w = np.ones((1, K_new)) / K_new

        if add_jitter:
            if vp.optimize_mu:
                mu = mu + sigma * lambd * np.random.randn(*mu.shape)
            if vp.optimize_sigma:
                sigma = sigma * np.exp(0.2 * np.random.randn(1, K_new))
            if vp.optimize_lambd:
                lambd = lambd * np.exp(0.2 * np.random.randn(D, 1))
            if vp.optimize_weights:
                w = w * np.exp(0.2 * np.random.randn(1, K_new))
                w /= np.sum(w)

        new_vp = copy.deepcopy(vp)
        new_vp.K = K_new
        new_vp.w = w if vp.optimize_weights else np.ones((1, K_new)) / K_new
        new_vp.eta = np.log(new_vp.w) - np.max(np.log(new_vp.w))
        new_vp.mu = mu
        new_vp.sigma = np.maximum(sigma, np.finfo(float).tiny)
        new_vp.lambd = lambd
        new_vp.bounds = None
        new_vp.stats = None
        vp0_list.append(new_vp)

    return vp0_list, type_vec


def final_boost(
    vp: VariationalPosterior,
    surrogate: SurrogateModel,
    optim_state: OptimizationState,
    options: Options,
):
    """
    Refit the chosen posterior with more components and finer entropy
    estimates at the end of the run.

    The refit is done only when the posterior has fewer than
    ``min_final_components`` components or when dedicated entropy sample
    sizes (``ns_ent_boost``, ...) are configured. Pruning is disabled and
    the stochastic optimizer runs to convergence.

    Returns
    -------
    vp : VariationalPosterior
        The boosted posterior, or ``vp`` itself if no boost was done.
    changed : bool
        Whether a boost was done.
    """
    K_new = max(vp.K, options["min_final_components"])
    overrides = {}
    for key in ("ns_ent", "ns_ent_fast", "ns_ent_fine"):
        boost = options[key + "_boost"]
        if boost is not None:
            overrides[key] = boost
    do_boost = vp.K < options["min_final_components"] or bool(overrides)
    if not do_boost:
        return vp, False

    boost_options = options.with_overrides(
        tol_weight=0, max_iter_stochastic=np.inf, **overrides
    )
    boost_state = copy.copy(optim_state)
    boost_state.warmup = False
    was_stable = vp.stats.get("stable", False) if vp.stats else False

    n_fast_opts = math.ceil(
        math.ceil(boost_options.eval("ns_elbo", {"K": K_new}))
        * options["ns_elbo_incr"]
    )
    vp_boost = copy.deepcopy(vp)
    vp_boost, _, _ = optimize_vp(
        boost_options,
        boost_state,
        vp_boost,
        surrogate,
        n_fast_opts,
        1,
        K_new,
    )
    vp_boost.stats["stable"] = was_stable
    return vp_boost, True
