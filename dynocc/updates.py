"""Parameter updates conditional on the latent occupancy states.

Beta-prior probabilities get closed-form conjugate draws from success/failure
counts. Logit-scale regression coefficients have no conjugate form and are
updated with random walk Metropolis steps.
"""
import logging

import numpy as np
from pymc.step_methods.metropolis import tune
from scipy.special import log_expit

from dynocc.data import DetectionData

def count_transitions(z: np.ndarray) -> dict:
    """Summarize season-to-season transitions of the latent states.

    Args:
        z: latent states of shape (n_sites, n_seasons)
    Returns:
        dict of per-interval counts, each of length n_seasons - 1
    """
    previous = z[:, :-1] == 1
    following = z[:, 1:] == 1

    counts = {
        'occupied': previous.sum(axis=0),
        'survived': (previous & following).sum(axis=0),
        'unoccupied': (~previous).sum(axis=0),
        'colonized': (~previous & following).sum(axis=0)
    }

    return counts

def count_detections(data: DetectionData, z: np.ndarray) -> dict:
    """Detections and usable surveys at occupied site-seasons, per season."""
    occupied = z == 1
    detections = np.where(occupied, data.detections, 0).sum(axis=0)
    trials = np.where(occupied, data.trials, 0).sum(axis=0)
    return {'detections': detections, 'trials': trials}

def draw_beta(successes, failures, a: float, b: float,
              rng: np.random.Generator):
    '''Conjugate draw from Beta(a + successes, b + failures).'''
    return rng.beta(a + np.asarray(successes), b + np.asarray(failures))

def bernoulli_logit_loglik(eta, successes, trials) -> float:
    """Binomial log-likelihood (without the constant) on the logit scale."""
    failures = trials - successes
    return float((successes * log_expit(eta) + failures * log_expit(-eta)).sum())

class RandomWalkMetropolis:
    """Gaussian random walk Metropolis step for one scalar.

    Proposals outside [lower, upper], or whose log posterior is not finite,
    are rejected without evaluating the acceptance ratio.

    Attributes:
        scale: standard deviation of the proposal
        lower: smallest admissible value
        upper: largest admissible value
        accepted: accepted proposals since the last tune
        proposed: proposals since the last tune
    """

    def __init__(self, scale: float = 0.1, lower: float = -np.inf,
                 upper: float = np.inf) -> None:
        if scale <= 0:
            raise ValueError('proposal scale must be positive')
        self.scale = scale
        self.lower = lower
        self.upper = upper
        self.accepted = 0
        self.proposed = 0

    @property
    def acceptance_rate(self) -> float:
        if self.proposed == 0:
            return np.nan
        return self.accepted / self.proposed

    def step(self, value: float, logp, rng: np.random.Generator,
             current_logp: float = None):
        """Propose a move from value and accept or reject it.

        Args:
            value: current value
            logp: function returning the log posterior (up to a constant)
            rng: generator for the proposal and the acceptance draw
            current_logp: logp(value), if already known
        Returns:
            tuple of the new value and its log posterior
        """
        if current_logp is None:
            current_logp = logp(value)

        proposal = value + rng.normal(0., self.scale)
        self.proposed += 1

        if not self.lower <= proposal <= self.upper:
            return value, current_logp

        proposal_logp = logp(proposal)
        if not np.isfinite(proposal_logp):
            return value, current_logp

        if np.log(rng.uniform()) < proposal_logp - current_logp:
            self.accepted += 1
            return proposal, proposal_logp

        return value, current_logp

    def tune(self) -> None:
        '''Rescale the proposal from the recent acceptance rate.'''
        if self.proposed == 0:
            return
        rate = self.acceptance_rate
        self.scale = float(tune(self.scale, rate))
        logging.debug(f'acceptance rate {rate:.2f}, new scale {self.scale:.3g}')
        self.accepted = 0
        self.proposed = 0
