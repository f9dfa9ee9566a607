from enum import Enum

import numpy as np

from bqvi.evaluation_ledger import EvaluationLedger
from bqvi.formatting import full_repr
from bqvi.parameter_transformer import ParameterTransformer


class EntropyKind(Enum):
    """How the entropy of the mixture is estimated."""

    DETERMINISTIC = "deterministic"
    MONTE_CARLO = "monte carlo"


class OptimizationState:
    """
    Mutable state of one inference run.

    The state is owned by a single ``BQVI`` instance and passed explicitly
    to the components of the loop. It references the evaluation ledger and
    keeps the counters, flags and running statistics that persist across
    iterations.

    Parameters
    ----------
    ledger : EvaluationLedger
        The evaluation ledger of the run.
    options : Options
        The run options.
    parameter_transformer : ParameterTransformer
        Maps between the original and the unconstrained space.
    lb_orig, ub_orig, plb_orig, pub_orig : np.ndarray, shape (1, D)
        Hard and plausible bounds in the original space.
    """

    def __init__(
        self,
        ledger: EvaluationLedger,
        options,
        parameter_transformer: ParameterTransformer,
        lb_orig: np.ndarray,
        ub_orig: np.ndarray,
        plb_orig: np.ndarray,
        pub_orig: np.ndarray,
    ):
        self.ledger = ledger
        D = parameter_transformer.D
        self.D = D

        self.lb_orig = lb_orig.copy()
        self.ub_orig = ub_orig.copy()
        self.plb_orig = plb_orig.copy()
        self.pub_orig = pub_orig.copy()
        eps_orig = (ub_orig - lb_orig) * options["tol_bound_x"]
        # inf - inf gives nan, which compares as False below
        with np.errstate(invalid="ignore"):
            self.lb_eps_orig = lb_orig + eps_orig
            self.ub_eps_orig = ub_orig - eps_orig
        with np.errstate(divide="ignore"):
            self.lb_tran = parameter_transformer(lb_orig)
            self.ub_tran = parameter_transformer(ub_orig)
        self.plb_tran = parameter_transformer(plb_orig)
        self.pub_tran = parameter_transformer(pub_orig)
        prange = self.pub_tran - self.plb_tran
        self.lb_search = np.maximum(
            self.plb_tran - prange * options["active_search_bound"],
            self.lb_tran,
        )
        self.ub_search = np.minimum(
            self.pub_tran + prange * options["active_search_bound"],
            self.ub_tran,
        )

        # Budgets
        self.max_fun_evals = options["max_fun_evals"]
        self.max_iter = options["max_iter"]

        # Iterations are counted from 0
        self.iter = -1
        self.K = options["k_warmup"]
        self.pruned = 0
        self.sn2_hpd = np.inf
        self.r_index = np.inf

        # Warm-up
        self.warmup = options["warmup"]
        self.last_warmup = np.inf if self.warmup else 0
        self.last_successful_warmup = np.inf if self.warmup else 0
        self.warmup_stable_count = 0
        self.data_trim_list = []

        self.recompute_var_post = True
        self.skip_active_sampling = False

        # Running moments of the posterior in the unconstrained space
        self.run_mean = None
        self.run_cov = None
        self.last_run_avg = np.nan

        # Running covariance of the surrogate hyperparameters, with the
        # number of evaluations at its last update
        self.hyp_run_cov = None
        self.hyp_run_n = 0

        # Surrogate hyperparameter sampling
        self.stop_sampling = 0 if options["ns_gp_max"] > 0 else np.inf
        self.stop_gp_sampling = False
        # Set the first time the solution is stable; never reset
        self.stability_reached = False

        # Entropy approximation
        self.entropy_switch = options["entropy_switch"]
        if D < options["det_entropy_min_d"]:
            self.entropy_switch = False
        self.entropy_force_switch = options["entropy_force_switch"]

        # Starting cache: provided points (original space) and their
        # log-densities, nan where the target still has to be evaluated
        self.cache_x_orig = np.zeros((0, D))
        self.cache_y_orig = np.zeros(0)

        # Acquisition functions
        self.tol_gp_var = options["tol_gp_var"]
        self.variance_regularized_acq_fcn = True
        self.search_cache = []
        self.hedge = None

        # Noise handling (0: none; 1: unknown noise; 2: user-provided noise)
        if options["specify_target_noise"]:
            self.uncertainty_handling_level = 2
        elif len(options["uncertainty_handling"]) > 0:
            self.uncertainty_handling_level = 1
        else:
            self.uncertainty_handling_level = 0

        self.events = []

    @property
    def entropy_kind(self):
        if self.entropy_switch or self.K == 1:
            return EntropyKind.DETERMINISTIC
        return EntropyKind.MONTE_CARLO

    @property
    def func_count(self):
        return self.ledger.func_count

    @property
    def cache_count(self):
        return self.ledger.cache_count

    @property
    def n_eff(self):
        return self.ledger.n_eff

    @property
    def N(self):
        return self.ledger.N

    @property
    def y_max(self):
        return self.ledger.y_max

    def remaining_budget(self):
        return max(0, self.max_fun_evals - self.func_count)

    def __repr__(self, expand=False):
        return full_repr(
            self,
            "OptimizationState",
            order=["iter", "K", "warmup", "entropy_switch", "r_index"],
            exclude=["ledger"],
            expand=expand,
        )

    def _short_repr(self):
        return object.__repr__(self)
