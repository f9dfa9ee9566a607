import matplotlib.pyplot as plt
import numpy as np

from bqvi import BQVI

# Rosenbrock "banana" likelihood with a uniform prior on a box. The box is
# passed as hard bounds, so inference runs in the logit-transformed space.
D = 2
lower_bounds = np.array([[-3.0, -2.0]])
upper_bounds = np.array([[3.0, 8.0]])
plausible_lower_bounds = np.array([[-1.5, -0.5]])
plausible_upper_bounds = np.array([[1.5, 3.0]])


def log_likelihood(theta):
    x, y = np.ravel(theta)
    return -((x**2 - y) ** 2) - (x - 1) ** 2 / 100


def log_prior(theta):
    # Uniform density over the box
    return -np.sum(np.log(upper_bounds - lower_bounds))


options = {
    "display": "iter",
    "bounded_transform": "logit",
    "max_fun_evals": 150,
}

bqvi = BQVI(
    log_likelihood,
    np.array([[0.0, 0.5]]),
    lower_bounds,
    upper_bounds,
    plausible_lower_bounds,
    plausible_upper_bounds,
    options=options,
    log_prior=log_prior,
)
vp, results = bqvi.optimize()

print(results["message"])
print(
    f"ELBO: {results['elbo']:.3f} +/- {results['elbo_sd']:.3f} "
    f"({results['func_count']} evaluations, {results['problem_type']})"
)

# Per-iteration trace of the run
history = results["iteration_history"]
for record in history:
    print(
        f"{record.iter:4d} {record.func_count:5d} {record.elbo:9.3f} "
        f"{record.r_index:7.3f}  {record.action}"
    )

mean, cov = vp.moments(cov_flag=True)
print("Posterior mean:", mean)
print("Posterior covariance:\n", cov)
print("Posterior mode:", vp.mode())

# Samples never leave the box
Xs, _ = vp.sample(10000)
assert np.all((Xs > lower_bounds) & (Xs < upper_bounds))

ledger = bqvi.ledger
fig = vp.plot(
    title="Banana posterior",
    training_points=ledger.X_orig[ledger.X_flag],
)
plt.show()
