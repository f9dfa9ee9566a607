import numpy as np
import scipy.stats as scs

from bqvi import BQVI

D = 2

# Half-normal posterior on the negative orthant
lower_bounds = np.full((1, D), -20.0)
upper_bounds = np.zeros((1, D))
plausible_lower_bounds = np.full((1, D), -6.0)
plausible_upper_bounds = np.full((1, D), -0.05)
scales = np.arange(1, D + 1)


def log_density(x):
    return np.sum(scs.norm.logpdf(x, 0, scales)) + D * np.log(2)


options = {
    "display": "iter",
    "bounded_transform": "probit",
    "log_file_name": "bqvi_example_2.log",
}

bqvi = BQVI(
    log_density,
    -np.ones((1, D)),
    lower_bounds,
    upper_bounds,
    plausible_lower_bounds,
    plausible_upper_bounds,
    options=options,
)
vp, results = bqvi.optimize()

print("ELBO (true value 0):", format(results["elbo"], ".3f"))
print("Posterior mean:", vp.moments())
print("True mean:", -2 / np.sqrt(2 * np.pi) * scales)

history = results["iteration_history"]
print("ELBO per iteration:", np.round(history["elbo"], 2))
print("Reliability index per iteration:", np.round(history["r_index"], 2))
