from abc import ABC, abstractmethod
from enum import Enum

import numpy as np


class MeanFunctionKind(Enum):
    """Mean-function family of the surrogate."""

    ZERO = "zero"
    CONSTANT = "const"
    NEGATIVE_QUADRATIC = "negquad"

    @classmethod
    def from_option(cls, value):
        """
        Convert an option value (a member or its string value) to a member.

        Raises
        ------
        ValueError
            If the value names no supported mean function.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError as exc:
            raise ValueError(
                f"Unsupported mean function {value!r}. Choose one of "
                f"{[kind.value for kind in cls]}."
            ) from exc


class SurrogateModel(ABC):
    """
    Probabilistic regression model standing in for the log-density.

    A surrogate holds one or more hyperparameter samples. Predictions and
    Bayesian-quadrature integrals are available per sample, so that callers
    can average over hyperparameter uncertainty.
    """

    @property
    @abstractmethod
    def X(self) -> np.ndarray:
        """Training inputs, shape ``(N, D)``."""

    @property
    @abstractmethod
    def y(self) -> np.ndarray:
        """Training targets, shape ``(N, 1)``."""

    @property
    @abstractmethod
    def n_samples(self) -> int:
        """Number of hyperparameter samples currently held."""

    @abstractmethod
    def hyperparameter_setup(
        self, X, y, mean_kind, options, plb_tran, pub_tran, uncertainty_level
    ):
        """
        Return ``(hyp0, bounds, priors)`` suited to the training set.
        """

    @abstractmethod
    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        s2: np.ndarray = None,
        mean_kind: MeanFunctionKind = MeanFunctionKind.NEGATIVE_QUADRATIC,
        priors: dict = None,
        n_samples: int = 0,
        hyp0: np.ndarray = None,
        bounds: dict = None,
        train_options: dict = None,
    ):
        """
        Fit hyperparameters to the data and return ``self``.

        With ``n_samples == 0`` a single optimized hyperparameter vector is
        kept, otherwise ``n_samples`` posterior draws.
        """

    @abstractmethod
    def predict(self, X: np.ndarray, separate_samples: bool = False):
        """
        Predictive mean and variance of the latent function at ``X``.

        Returns arrays of shape ``(N, 1)``, or ``(N, n_samples)`` when
        ``separate_samples``.
        """

    @abstractmethod
    def update(self, x_new, y_new, s2_new=None):
        """Add observations and recompute the posterior (rank-1 update)."""

    @abstractmethod
    def refresh(self, X, y, s2=None, hyp=None):
        """
        Replace the training data and recompute the posterior, keeping the
        current hyperparameters unless ``hyp`` is given.
        """

    @abstractmethod
    def expected_log_joint(
        self, vp, grad_flags, compute_var=False, separate_K=False
    ):
        """
        Expectation of the surrogate under the mixture ``vp``.

        Returns ``(G, dG, varG, var_ss, I_sk, J_sjk)``: the expectation
        averaged over hyperparameter samples, its gradient with respect to
        the raw parameters of ``vp`` (or ``None``), its variance (or
        ``None``), the variance due to hyperparameter sampling, and the
        per-component terms when ``separate_K``.
        """

    @abstractmethod
    def noise_variance_hpd(self) -> float:
        """Estimated observation noise variance in the best region."""

    @abstractmethod
    def hyperparameters(self) -> np.ndarray:
        """Current hyperparameter samples, shape ``(n_samples, n_hyp)``."""
