from textwrap import indent

import numpy as np
from scipy.special import erfc, erfcinv

from bqvi.decorators import handle_0D_1D_input
from bqvi.formatting import full_repr


def _logit(z):
    with np.errstate(divide="ignore"):
        return np.log(z) - np.log1p(-z)


def _inverse_logit(u):
    return 1 / (1 + np.exp(-u))


def _logit_log_jacobian(y):
    return -y - 2 * np.log1p(np.exp(-y))


def _probit(z):
    return -np.sqrt(2) * erfcinv(2 * z)


def _inverse_probit(u):
    return 0.5 * erfc(-u / np.sqrt(2))


def _probit_log_jacobian(y):
    return -0.5 * np.log(2 * np.pi) - 0.5 * y**2


def _student4(z):
    aa = np.sqrt(4 * z * (1 - z))
    q = np.cos(np.arccos(aa) / 3) / aa
    return np.sign(z - 0.5) * (2 * np.sqrt(q - 1))


def _inverse_student4(u):
    t2 = u**2
    return 0.5 + (3 / 8) * (u / np.sqrt(1 + t2 / 4)) * (
        1 - t2 / (1 + t2 / 4) / 12
    )


def _student4_log_jacobian(y):
    return np.log(3 / 8) - (5 / 2) * np.log1p(y**2 / 4)


# Each bounded transform maps the unit interval to the real line:
# (direct, inverse, log derivative of the inverse).
BOUNDED_TRANSFORMS = {
    "logit": (_logit, _inverse_logit, _logit_log_jacobian),
    "probit": (_probit, _inverse_probit, _probit_log_jacobian),
    "norminv": (_probit, _inverse_probit, _probit_log_jacobian),
    "student4": (_student4, _inverse_student4, _student4_log_jacobian),
}


class ParameterTransformer:
    """
    Bijection between the bounded original parameter space and the
    unconstrained space in which all inference happens.

    Bounded coordinates are mapped to the unit interval, then to the real
    line with one of the ``BOUNDED_TRANSFORMS``. Every coordinate is finally
    centered and rescaled so that the plausible box maps to a unit box
    around the origin.

    Parameters
    ----------
    D : int
        The dimension of the space.
    lb_orig, ub_orig : np.ndarray, optional
        Hard lower and upper bounds in the original space, shape ``(1, D)``.
        Missing bounds are infinite.
    plb_orig, pub_orig : np.ndarray, optional
        Plausible bounds with ``lb <= plb < pub <= ub``. By default equal to
        the hard bounds.
    transform_type : str, optional
        Name of the transform for bounded coordinates, one of ``"logit"``,
        ``"probit"`` (alias ``"norminv"``) or ``"student4"``. Default
        ``"logit"``.

    Raises
    ------
    ValueError
        If the bounds are not ordered or the transform name is unknown.
    """

    def __init__(
        self,
        D: int,
        lb_orig: np.ndarray = None,
        ub_orig: np.ndarray = None,
        plb_orig: np.ndarray = None,
        pub_orig: np.ndarray = None,
        transform_type: str = "logit",
    ):
        lb_orig = (
            np.full((1, D), -np.inf)
            if lb_orig is None
            else np.atleast_2d(np.asarray(lb_orig, dtype=float))
        )
        ub_orig = (
            np.full((1, D), np.inf)
            if ub_orig is None
            else np.atleast_2d(np.asarray(ub_orig, dtype=float))
        )
        plb_orig = (
            lb_orig.copy()
            if plb_orig is None
            else np.atleast_2d(np.asarray(plb_orig, dtype=float))
        )
        pub_orig = (
            ub_orig.copy()
            if pub_orig is None
            else np.atleast_2d(np.asarray(pub_orig, dtype=float))
        )

        if not (
            np.all(lb_orig <= plb_orig)
            and np.all(plb_orig < pub_orig)
            and np.all(pub_orig <= ub_orig)
        ):
            raise ValueError(
                "Variable bounds should be LB <= PLB < PUB <= UB "
                "for all variables."
            )
        if transform_type not in BOUNDED_TRANSFORMS:
            raise ValueError(
                f"Unrecognized bounded transform {transform_type}. "
                f"Choose one of {sorted(BOUNDED_TRANSFORMS)}."
            )

        self.D = D
        self.lb_orig = lb_orig
        self.ub_orig = ub_orig
        self.transform_type = transform_type
        self.bounded = (
            np.isfinite(lb_orig) & np.isfinite(ub_orig) & (lb_orig < ub_orig)
        ).ravel()

        self.mu = np.zeros(D)
        self.delta = np.ones(D)
        if not (np.all(plb_orig == lb_orig) and np.all(pub_orig == ub_orig)):
            plb_tran = self(plb_orig)
            pub_tran = self(pub_orig)
            finite = (np.isfinite(plb_tran) & np.isfinite(pub_tran)).ravel()
            self.mu[finite] = 0.5 * (plb_tran + pub_tran).ravel()[finite]
            self.delta[finite] = (pub_tran - plb_tran).ravel()[finite]

    @handle_0D_1D_input(patched_kwargs=["x"], patched_argpos=[0])
    def __call__(self, x: np.ndarray):
        """
        Map points ``x`` (N x D) from the original to the unconstrained
        space.
        """
        u = np.array(x, dtype=float)
        b = self.bounded
        if np.any(b):
            direct, _, _ = BOUNDED_TRANSFORMS[self.transform_type]
            z = self._to_unit_interval(x[:, b], b)
            u[:, b] = direct(z)
        return (u - self.mu) / self.delta

    @handle_0D_1D_input(patched_kwargs=["u"], patched_argpos=[0])
    def inverse(self, u: np.ndarray):
        """
        Map points ``u`` (N x D) from the unconstrained back to the original
        space.
        """
        y = np.asarray(u, dtype=float) * self.delta + self.mu
        x = y.copy()
        b = self.bounded
        if np.any(b):
            _, inverse, _ = BOUNDED_TRANSFORMS[self.transform_type]
            x[:, b] = self._from_unit_interval(inverse(y[:, b]), b)
        return x

    @handle_0D_1D_input(
        patched_kwargs=["u"], patched_argpos=[0], return_scalar=True
    )
    def log_abs_det_jacobian(self, u: np.ndarray):
        r"""
        Log absolute determinant of the Jacobian of the inverse map at
        ``u``, that is :math:`\log |\partial x / \partial u|`, summed over
        coordinates.
        """
        y = np.asarray(u, dtype=float) * self.delta + self.mu
        p = np.tile(np.log(self.delta), (y.shape[0], 1))
        b = self.bounded
        if np.any(b):
            _, _, log_jac = BOUNDED_TRANSFORMS[self.transform_type]
            width = np.log(self.ub_orig[:, b] - self.lb_orig[:, b])
            p[:, b] += width + log_jac(y[:, b])
        return np.sum(p, axis=1)

    def _to_unit_interval(self, x, b):
        lb = self.lb_orig[:, b]
        ub = self.ub_orig[:, b]
        z = (x - lb) / (ub - lb)
        # Points numerically on the boundary but not exactly equal to it
        # stay strictly inside.
        z = np.where((z == 0) & (x != lb), np.nextafter(0, 1), z)
        z = np.where((z == 1) & (x != ub), np.nextafter(1, 0), z)
        return z

    def _from_unit_interval(self, z, b):
        lb = self.lb_orig[:, b]
        ub = self.ub_orig[:, b]
        x = z * (ub - lb) + lb
        return np.clip(
            x, np.nextafter(lb, np.inf), np.nextafter(ub, -np.inf)
        )

    def __eq__(self, other):
        if not isinstance(other, ParameterTransformer):
            return NotImplemented
        return (
            self.transform_type == other.transform_type
            and np.array_equal(self.lb_orig, other.lb_orig)
            and np.array_equal(self.ub_orig, other.ub_orig)
            and np.array_equal(self.mu, other.mu)
            and np.array_equal(self.delta, other.delta)
        )

    __hash__ = object.__hash__

    def __str__(self):
        kinds = np.where(self.bounded, self.transform_type, "unbounded")
        return "ParameterTransformer:" + indent(
            f"""
dimension = {self.D},
lower bounds = {self.lb_orig},
upper bounds = {self.ub_orig},
transform per dimension = {list(kinds)}""",
            "    ",
        )

    def __repr__(self, arr_size_thresh=10):
        return full_repr(
            self,
            "ParameterTransformer",
            order=["lb_orig", "ub_orig", "bounded", "mu", "delta"],
            arr_size_thresh=arr_size_thresh,
        )

    def _short_repr(self):
        return object.__repr__(self)
