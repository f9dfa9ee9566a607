import numpy as np


class AcquisitionHedge:
    """
    Portfolio allocation among several acquisition functions.

    Each iteration one acquisition function is drawn with probability
    ``softmax(g)``, mixed with a uniform choice at rate ``gamma``. After the
    iteration, the chosen function is rewarded with the improvement of the
    ELCBO it produced, scaled by ``beta`` and importance-weighted by its
    selection probability. Past rewards decay by ``decay`` per iteration.

    Parameters
    ----------
    acq_fcns : list of AcquisitionFunction
        The portfolio.
    gamma : float
        Exploration rate.
    beta : float
        Initial scale of the reward.
    decay : float
        Decay of the accumulated rewards.
    max_reward : float
        Upper bound of a single reward.
    """

    def __init__(self, acq_fcns, gamma, beta, decay, max_reward):
        self.acq_fcns = list(acq_fcns)
        self.n = len(self.acq_fcns)
        self.gamma = gamma
        self.beta = beta
        self.decay = decay
        self.max_reward = max_reward
        self.g = np.zeros(self.n)
        self.p = np.full(self.n, 1 / self.n)
        self.chosen = None

    def probabilities(self):
        p = np.exp(self.g - np.max(self.g))
        p /= np.sum(p)
        return p * (1 - self.gamma) + self.gamma / self.n

    def choose(self):
        """Draw the acquisition function for the current iteration."""
        self.p = self.probabilities()
        self.chosen = int(np.random.choice(self.n, p=self.p))
        return self.acq_fcns[self.chosen]

    def update(self, elcbo_delta, recent_elbo_sd=None, min_beta=0.0):
        """
        Reward the last chosen acquisition function.

        Parameters
        ----------
        elcbo_delta : float
            Change of the ELCBO over the iteration.
        recent_elbo_sd : array_like, optional
            ELBO standard deviations of the recent iterations; their mean
            becomes the new reward scale (not below ``min_beta``).
        min_beta : float, optional
            Lower bound on the reward scale.
        """
        if self.chosen is None:
            return
        if recent_elbo_sd is not None and np.size(recent_elbo_sd) > 0:
            self.beta = max(min_beta, float(np.mean(recent_elbo_sd)))
        reward = np.zeros(self.n)
        if np.isfinite(elcbo_delta):
            reward[self.chosen] = min(
                self.max_reward,
                max(0.0, elcbo_delta) / self.beta / self.p[self.chosen],
            )
        self.g = self.decay * self.g + reward
        self.chosen = None
